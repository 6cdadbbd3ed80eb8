"""Orchestrator services."""

from .sandbox_docker import DockerRuntime

__all__ = ["DockerRuntime"]
