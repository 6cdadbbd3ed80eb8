"""
Event & Scoring Application Service Module
"""

from ctfrange.application.scoring.service import RecordedEvent, ScoringService

__all__ = ["ScoringService", "RecordedEvent"]
