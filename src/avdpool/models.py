"""Domain records shared by the capacity reconciliation modules.

Session hosts, compute nodes and slots are observed from the external
services and never mutated locally. The only locally constructed records are
the node specs handed to the compute provider during host creation.
"""

from dataclasses import dataclass, field
from enum import Enum

SESSION_HOST_STATUS_AVAILABLE = "Available"
SESSION_HOST_STATUS_SHUTDOWN = "Shutdown"

# Tag naming the pool a session host node was created for
POOL_TAG = "avdpool-pool"


class NodeState(str, Enum):
    """Power state of a compute node as reported by the compute provider."""

    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DEALLOCATING = "deallocating"
    DEALLOCATED = "deallocated"
    UNKNOWN = "unknown"

    @classmethod
    def from_power_state(cls, power_state: str | None) -> "NodeState":
        """Map an Azure power state ("VM running", "PowerState/deallocated") to a NodeState."""
        if not power_state:
            return cls.UNKNOWN

        value = power_state.strip().lower()
        for prefix in ("powerstate/", "vm "):
            if value.startswith(prefix):
                value = value[len(prefix) :]

        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class SessionHost:
    """A session host record reported by the directory service."""

    name: str  # "<pool>/<host fqdn>"
    status: str | None = None
    resource_id: str | None = None
    sessions: int = 0
    update_error: str | None = None

    @property
    def is_available(self) -> bool:
        return self.status == SESSION_HOST_STATUS_AVAILABLE

    @property
    def is_shutdown(self) -> bool:
        return self.status == SESSION_HOST_STATUS_SHUTDOWN


@dataclass(frozen=True)
class HostNameParts:
    """Components of a session host name."""

    pool: str
    display_name: str
    node_id: str


@dataclass
class ComputeNode:
    """A compute node (virtual machine) known to the compute provider."""

    node_id: str
    name: str | None = None
    state: NodeState = NodeState.UNKNOWN
    private_ip: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state == NodeState.RUNNING


@dataclass
class NodeSpec:
    """Minimal specification for a new session host compute node."""

    node_id: str
    name: str
    image: str
    size: str
    security_type: str = "TrustedLaunch"
    operating_system: str = "windows"
    description: str = "a session host VM for a pooled host pool"
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class AppGroup:
    """A directory slot granting one reservation to a workload."""

    name: str
    resource_id: str | None = None
    workload_id: str | None = None


__all__ = [
    "SESSION_HOST_STATUS_AVAILABLE",
    "SESSION_HOST_STATUS_SHUTDOWN",
    "AppGroup",
    "ComputeNode",
    "HostNameParts",
    "NodeSpec",
    "NodeState",
    "SessionHost",
]
