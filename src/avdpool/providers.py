"""Capability protocols consumed by the capacity reconciler.

The reconciler never talks to Azure directly. It consumes two capabilities:

- ComputeProvider: create/start/stop/delete compute nodes, look them up and run
  setup scripts on them
- SessionDirectory: the host pool directory (session hosts, application groups
  acting as reservation slots and their workspace, assignments, registration
  tokens)

Concrete implementations live in azure_compute and azure_session_directory;
tests use in-memory fakes.
"""

from typing import Protocol, runtime_checkable

from avdpool.models import (
    AppGroup,
    ComputeNode,
    HostNameParts,
    NodeSpec,
    SessionHost,
)


class ProviderError(Exception):
    """Base error for external capability failures."""

    pass


class ComputeProviderError(ProviderError):
    """Raised when a compute provider operation fails."""

    pass


class SessionDirectoryError(ProviderError):
    """Raised when a session directory operation fails."""

    pass


class HostNameParseError(ProviderError, ValueError):
    """Raised when a session host name cannot be split into its parts."""

    pass


class ReadyTimeoutError(SessionDirectoryError):
    """Raised when a session host does not report Available before the deadline."""

    pass


def parse_session_host_name(name: str | None) -> HostNameParts:
    """Split a session host name into pool, display name and node ID.

    Example:
        "E2E-HP-Pooled-root/shvm-0m9rf333q1.dev.example.local" parses into
        pool "E2E-HP-Pooled-root", display name
        "shvm-0m9rf333q1.dev.example.local" and node ID "shvm-0m9rf333q1".

    Args:
        name: Session host name as reported by the directory service

    Returns:
        HostNameParts

    Raises:
        HostNameParseError: If the name does not have the "<pool>/<host>" shape
    """
    if not name or "/" not in name:
        raise HostNameParseError(f"Could not split session host name: {name!r}")

    pool, display_name = name.split("/", 1)
    if not pool or not display_name:
        raise HostNameParseError(f"Could not split session host name: {name!r}")

    # Some directory responses carry a nested path; keep the last segment
    if "/" in display_name:
        display_name = display_name.rsplit("/", 1)[1]

    node_id = display_name.split(".", 1)[0]
    if not node_id:
        raise HostNameParseError(f"Session host name has no node identifier: {name!r}")

    return HostNameParts(pool=pool, display_name=display_name, node_id=node_id)


@runtime_checkable
class ComputeProvider(Protocol):
    """Compute node lifecycle capability."""

    def create(self, spec: NodeSpec) -> ComputeNode:
        """Create a compute node from spec.

        Raises:
            ComputeProviderError: If creation fails
        """
        ...

    def start(self, node_id: str) -> None:
        """Start (resume) a stopped or deallocated node."""
        ...

    def stop(self, node_id: str) -> None:
        """Stop and deallocate a node."""
        ...

    def delete(self, node_id: str) -> None:
        """Delete a node.

        Raises:
            ComputeProviderError: If deletion fails. Deleting a node that no
                longer exists is not an error.
        """
        ...

    def get(self, node_id: str, include_state: bool = True) -> ComputeNode | None:
        """Look up a node.

        Returns:
            ComputeNode, or None if the node does not exist

        Raises:
            ComputeProviderError: If the lookup itself fails
        """
        ...

    def list_all(self, name_prefix: str | None = None) -> list[ComputeNode]:
        """List nodes with their power state, optionally filtered by name prefix."""
        ...

    def run_remote_script(
        self, node_id: str, script: str, timeout: float, poll_interval: float
    ) -> None:
        """Run a setup script on a node and wait for it to finish.

        Raises:
            ComputeProviderError: If the script fails or does not finish in time
        """
        ...


@runtime_checkable
class SessionDirectory(Protocol):
    """Host pool directory capability."""

    def list_hosts(self, pool: str) -> list[SessionHost]:
        ...

    def delete_host(self, host: SessionHost) -> None:
        ...

    def wait_for_ready(self, pool: str, node_id: str, timeout: float) -> SessionHost:
        """Block until the node is registered in pool and reports Available.

        Raises:
            ReadyTimeoutError: If the deadline passes first
            SessionDirectoryError: If polling fails
        """
        ...

    def list_app_groups(self, pool: str) -> list[AppGroup]:
        ...

    def create_app_group(self, pool: str, name: str, workload_id: str) -> AppGroup:
        """Create (or update) the slot of workload_id in pool, tagged with the workload ID."""
        ...

    def delete_app_group(self, name: str) -> None:
        ...

    def add_app_group_to_workspace(self, workspace: str, name: str) -> None:
        ...

    def remove_app_group_from_workspace(self, workspace: str, name: str) -> None:
        """Detach an application group; a missing workspace or reference is not an error."""
        ...

    def list_assignments(self, name: str) -> list[str]:
        """List principal assignments of an application group."""
        ...

    def assign_principal(self, name: str, principal_id: str, principal_type: str = "User") -> None:
        """Grant a user or group access to an application group."""
        ...

    def retrieve_registration_token(self, pool: str) -> str:
        ...

    def parse_host_name(self, host: SessionHost) -> HostNameParts:
        """Split a host name into pool, display name and node ID.

        Raises:
            HostNameParseError: If the name cannot be parsed
        """
        ...


__all__ = [
    "ComputeProvider",
    "ComputeProviderError",
    "HostNameParseError",
    "ProviderError",
    "ReadyTimeoutError",
    "SessionDirectory",
    "SessionDirectoryError",
    "parse_session_host_name",
]
