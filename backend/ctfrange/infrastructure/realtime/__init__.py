"""Live update fan-out."""

from ctfrange.infrastructure.realtime.publisher import EventPublisher, stream_message

__all__ = ["EventPublisher", "stream_message"]
