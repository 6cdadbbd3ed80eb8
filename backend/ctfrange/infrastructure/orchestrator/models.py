"""
Orchestrator Models - Data classes for runtime containers and bulk operations
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ContainerKind(str, Enum):
    """Kinds of containers the range deploys."""
    ATTACKER = "attacker"
    VICTIM = "victim"


class BulkAction(str, Enum):
    """Label-wide operations."""
    START = "start"
    STOP = "stop"
    REMOVE = "remove"


# Docker label keys
LABEL_APP = "range.app"
LABEL_TYPE = "range.type"
LABEL_SESSION = "range.session"
LABEL_LEVEL = "range.level"


@dataclass
class NetworkConfig:
    """Network configuration of a runtime container."""
    network_name: Optional[str] = None
    ip_addresses: List[str] = field(default_factory=list)
    port_mappings: Dict[int, int] = field(default_factory=dict)  # container_port -> host_port

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_name": self.network_name,
            "ip_addresses": list(self.ip_addresses),
            "port_mappings": dict(self.port_mappings),
        }

    @classmethod
    def from_inspect(
        cls,
        container_info: Dict[str, Any],
        preferred_network: Optional[str] = None,
    ) -> "NetworkConfig":
        """Extract network information from ``docker inspect`` output."""
        network_settings = container_info.get("NetworkSettings") or {}
        networks = network_settings.get("Networks") or {}

        ip_addresses = []
        if network_settings.get("IPAddress"):
            ip_addresses.append(network_settings["IPAddress"])
        for settings in networks.values():
            address = (settings or {}).get("IPAddress")
            if address and address not in ip_addresses:
                ip_addresses.append(address)

        port_mappings: Dict[int, int] = {}
        for container_port, host_bindings in (network_settings.get("Ports") or {}).items():
            if host_bindings:
                host_port = host_bindings[0].get("HostPort")
                if host_port:
                    port_mappings[int(container_port.split("/")[0])] = int(host_port)

        network_name = preferred_network if preferred_network in networks else None
        if network_name is None and networks:
            network_name = next(iter(networks))

        return cls(
            network_name=network_name,
            ip_addresses=ip_addresses,
            port_mappings=port_mappings,
        )


@dataclass
class RuntimeContainer:
    """A container as reported by the engine."""
    runtime_id: str
    name: str
    kind: ContainerKind = ContainerKind.ATTACKER
    image: Optional[str] = None
    state: Optional[str] = None
    access_url: Optional[str] = None
    ready: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    network: NetworkConfig = field(default_factory=NetworkConfig)

    @property
    def short_id(self) -> str:
        return self.runtime_id[:12]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.short_id,
            "name": self.name,
            "kind": self.kind.value,
            "image": self.image,
            "state": self.state,
            "access_url": self.access_url,
            "ready": self.ready,
            "labels": dict(self.labels),
            "network": self.network.to_dict(),
        }


@dataclass
class ContainerRef:
    """Short reference to a container in bulk results."""
    runtime_id: str
    name: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"id": self.runtime_id[:12], "name": self.name}
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class BulkOperationResult:
    """Partial-success result of a label-wide operation."""
    action: BulkAction
    labels: Dict[str, str] = field(default_factory=dict)
    succeeded: List[ContainerRef] = field(default_factory=list)
    failed: List[ContainerRef] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "labels": dict(self.labels),
            "count": self.count,
            "containers": [ref.to_dict() for ref in self.succeeded],
            "failed": [ref.to_dict() for ref in self.failed],
        }
