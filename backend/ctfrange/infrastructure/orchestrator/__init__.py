"""
CTF Range Orchestrator - Container Runtime

Attacker sandboxes and victim targets on the Docker Engine:
- Per-player or per-team attacker containers
- Singleton victim containers per session level
- Label-scoped bulk operations
"""

from .models import (
    BulkAction,
    BulkOperationResult,
    ContainerKind,
    ContainerRef,
    NetworkConfig,
    RuntimeContainer,
)
from .services.sandbox_docker import DockerRuntime

__all__ = [
    "BulkAction",
    "BulkOperationResult",
    "ContainerKind",
    "ContainerRef",
    "DockerRuntime",
    "NetworkConfig",
    "RuntimeContainer",
]
