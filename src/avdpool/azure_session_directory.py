"""Azure Virtual Desktop session directory backed by the az CLI.

Implements the SessionDirectory protocol over `az desktopvirtualization`:
- Session hosts of a host pool (list, delete, wait until Available)
- Application groups acting as reservation slots, their workspace membership
  and their role assignments
- Host pool registration tokens (retrieved, or renewed when expired)

Requires the `desktopvirtualization` az CLI extension.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from avdpool.azure_cli_executor import AzureCliError, AzureResourceNotFoundError, run_az_json
from avdpool.config_manager import OrchestratorConfig
from avdpool.models import AppGroup, HostNameParts, SessionHost
from avdpool.providers import (
    ReadyTimeoutError,
    SessionDirectoryError,
    parse_session_host_name,
)

logger = logging.getLogger(__name__)

WORKLOAD_TAG = "vmid"
CREATED_BY_TAG = "created-by"
CREATED_BY = "avdpool: workload events"
USER_ROLE = "Desktop Virtualization User"
ASSIGNMENT_EXISTS_MARKERS = ("RoleAssignmentExists", "already exists")


class AzureCliSessionDirectory:
    """SessionDirectory implementation over `az desktopvirtualization`."""

    REGISTRATION_TOKEN_TTL = timedelta(hours=24)

    def __init__(
        self,
        resource_group: str,
        app_group_prefix: str = "",
        slot_suffix: str = "",
        ready_poll_interval: float = 10.0,
        location: str | None = None,
    ):
        if not resource_group:
            raise SessionDirectoryError("resource_group is required")
        self.resource_group = resource_group
        self.app_group_prefix = app_group_prefix
        self.slot_suffix = slot_suffix
        self.ready_poll_interval = ready_poll_interval
        self.location = location

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "AzureCliSessionDirectory":
        return cls(
            resource_group=config.resource_group or "",
            app_group_prefix=config.app_group_prefix,
            slot_suffix=config.slot_suffix,
            ready_poll_interval=config.timeouts.ready_poll_interval,
            location=config.location,
        )

    # Session hosts

    def list_hosts(self, pool: str, poll: bool = False) -> list[SessionHost]:
        data = self._json(
            [
                "az", "desktopvirtualization", "sessionhost", "list",
                "--host-pool-name", pool,
                "--resource-group", self.resource_group,
            ],
            f"list session hosts of {pool}",
            poll=poll,
        )
        return [self._to_host(item) for item in data or []]

    def delete_host(self, host: SessionHost) -> None:
        """Delete a session host record; a record that is already gone is not an error."""
        parts = self.parse_host_name(host)
        try:
            run_az_json(
                [
                    "az", "desktopvirtualization", "sessionhost", "delete",
                    "--host-pool-name", parts.pool,
                    "--name", parts.display_name,
                    "--resource-group", self.resource_group,
                    "--force", "true",
                    "--yes",
                ],
            )
        except AzureResourceNotFoundError:
            logger.debug(f"Session host {host.name} already deleted")
        except AzureCliError as e:
            raise SessionDirectoryError(f"Failed to delete session host {host.name}: {e}") from e

    def wait_for_ready(self, pool: str, node_id: str, timeout: float) -> SessionHost:
        """Poll the host pool until node_id is registered and Available.

        Raises:
            ReadyTimeoutError: If the host is not Available before timeout
            SessionDirectoryError: If listing the session hosts fails
        """
        deadline = time.monotonic() + timeout
        wanted = node_id.lower()
        last_status: str | None = None

        while True:
            for host in self.list_hosts(pool, poll=True):
                if self._node_id_of(host) != wanted:
                    continue
                if host.is_available:
                    logger.debug(f"Session host {host.name} is Available")
                    return host
                last_status = host.status

            if time.monotonic() >= deadline:
                raise ReadyTimeoutError(
                    f"Session host {node_id} in pool {pool} not Available after "
                    f"{timeout:.0f}s (last status: {last_status or 'not registered'})"
                )

            logger.debug(f"Waiting for {node_id} in pool {pool} (status: {last_status})")
            time.sleep(self.ready_poll_interval)

    def parse_host_name(self, host: SessionHost) -> HostNameParts:
        return parse_session_host_name(host.name)

    # Application groups (reservation slots)

    def list_app_groups(self, pool: str) -> list[AppGroup]:
        """List the application groups attached to pool."""
        data = self._json(
            [
                "az", "desktopvirtualization", "applicationgroup", "list",
                "--resource-group", self.resource_group,
            ],
            f"list application groups of {pool}",
        )

        suffix = f"/hostpools/{pool}".lower()
        groups = []
        for item in data or []:
            arm_path = (item.get("hostPoolArmPath") or "").lower()
            if not arm_path.endswith(suffix):
                continue
            groups.append(
                AppGroup(
                    name=item.get("name", ""),
                    resource_id=item.get("id"),
                    workload_id=self._workload_id_of(item),
                )
            )
        return groups

    def delete_app_group(self, name: str) -> None:
        try:
            run_az_json(
                [
                    "az", "desktopvirtualization", "applicationgroup", "delete",
                    "--name", name,
                    "--resource-group", self.resource_group,
                    "--yes",
                ],
            )
        except AzureResourceNotFoundError:
            logger.debug(f"Application group {name} already deleted")
        except AzureCliError as e:
            raise SessionDirectoryError(f"Failed to delete application group {name}: {e}") from e

    def create_app_group(self, pool: str, name: str, workload_id: str) -> AppGroup:
        """Create a RemoteApp application group on pool, tagged with its workload ID.

        `applicationgroup create` is a create-or-update, so repeating it for an
        existing slot only refreshes the slot.

        Args:
            pool: Host pool the group publishes from
            name: Application group (slot) name
            workload_id: Workload the slot belongs to

        Returns:
            AppGroup for the created group

        Raises:
            SessionDirectoryError: If the host pool lookup or the creation fails
        """
        host_pool = self._json(
            [
                "az", "desktopvirtualization", "hostpool", "show",
                "--name", pool,
                "--resource-group", self.resource_group,
            ],
            f"show host pool {pool}",
        )
        host_pool_id = (host_pool or {}).get("id")
        if not host_pool_id:
            raise SessionDirectoryError(f"Host pool {pool} has no resource ID")

        cmd = [
            "az", "desktopvirtualization", "applicationgroup", "create",
            "--name", name,
            "--resource-group", self.resource_group,
            "--application-group-type", "RemoteApp",
            "--host-pool-arm-path", host_pool_id,
            "--tags", f"{WORKLOAD_TAG}={workload_id}", f"{CREATED_BY_TAG}={CREATED_BY}",
        ]
        if self.location:
            cmd.extend(["--location", self.location])

        data = self._json(cmd, f"create application group {name}") or {}
        logger.debug(f"Created application group {name} for workload {workload_id}")
        return AppGroup(
            name=data.get("name", name), resource_id=data.get("id"), workload_id=workload_id
        )

    def add_app_group_to_workspace(self, workspace: str, name: str) -> None:
        """Publish an application group through a workspace.

        Raises:
            SessionDirectoryError: If the workspace or the group cannot be read or updated
        """
        group_id = self._app_group_id(name)
        try:
            refs = self._workspace_refs(workspace)
        except AzureResourceNotFoundError as e:
            raise SessionDirectoryError(f"Workspace {workspace} not found") from e
        if any(ref.lower() == group_id.lower() for ref in refs):
            logger.debug(f"Application group {name} already in workspace {workspace}")
            return
        self._update_workspace_refs(workspace, [*refs, group_id])
        logger.debug(f"Added application group {name} to workspace {workspace}")

    def remove_app_group_from_workspace(self, workspace: str, name: str) -> None:
        """Drop an application group from a workspace, matching the reference by name."""
        try:
            refs = self._workspace_refs(workspace)
        except AzureResourceNotFoundError:
            logger.debug(f"Workspace {workspace} not found, nothing to detach")
            return

        suffix = f"/applicationgroups/{name}".lower()
        kept = [ref for ref in refs if not ref.lower().endswith(suffix)]
        if len(kept) == len(refs):
            logger.debug(f"Application group {name} is not in workspace {workspace}")
            return
        self._update_workspace_refs(workspace, kept)
        logger.debug(f"Removed application group {name} from workspace {workspace}")

    def list_assignments(self, name: str) -> list[str]:
        """List principal IDs assigned to an application group."""
        scope = self._app_group_id(name)
        data = self._json(
            ["az", "role", "assignment", "list", "--scope", scope],
            f"list assignments of {name}",
        )
        return [item["principalId"] for item in data or [] if item.get("principalId")]

    def assign_principal(self, name: str, principal_id: str, principal_type: str = "User") -> None:
        """Grant the desktop user role on an application group.

        An assignment that already exists is not an error.

        Raises:
            SessionDirectoryError: If the group cannot be read or the assignment fails
        """
        scope = self._app_group_id(name)
        try:
            run_az_json(
                [
                    "az", "role", "assignment", "create",
                    "--assignee-object-id", principal_id,
                    "--assignee-principal-type", principal_type,
                    "--role", USER_ROLE,
                    "--scope", scope,
                ],
                timeout=60,
            )
        except AzureCliError as e:
            if any(marker in str(e) for marker in ASSIGNMENT_EXISTS_MARKERS):
                logger.debug(f"{principal_type} {principal_id} already assigned to {name}")
                return
            raise SessionDirectoryError(
                f"Failed to assign {principal_type} {principal_id} to {name}: {e}"
            ) from e

    # Registration

    def retrieve_registration_token(self, pool: str) -> str:
        """Get a valid registration token for pool, renewing it when missing or expired."""
        data = self._json(
            [
                "az", "desktopvirtualization", "hostpool", "retrieve-registration-token",
                "--name", pool,
                "--resource-group", self.resource_group,
            ],
            f"retrieve registration token of {pool}",
        )
        token = (data or {}).get("token")
        if token:
            return token

        logger.debug(f"No valid registration token for pool {pool}, renewing")
        expiration = (datetime.now(timezone.utc) + self.REGISTRATION_TOKEN_TTL).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        data = self._json(
            [
                "az", "desktopvirtualization", "hostpool", "update",
                "--name", pool,
                "--resource-group", self.resource_group,
                "--registration-info",
                f"expiration-time={expiration}",
                "registration-token-operation=Update",
            ],
            f"renew registration token of {pool}",
        )
        token = ((data or {}).get("registrationInfo") or {}).get("token")
        if not token:
            raise SessionDirectoryError(f"Host pool {pool} returned no registration token")
        return token

    # Helpers

    def _json(self, cmd: list[str], operation: str, poll: bool = False) -> Any:
        try:
            return run_az_json(cmd, timeout=60, poll=poll)
        except AzureCliError as e:
            raise SessionDirectoryError(f"Failed to {operation}: {e}") from e

    def _app_group_id(self, name: str) -> str:
        group = self._json(
            [
                "az", "desktopvirtualization", "applicationgroup", "show",
                "--name", name,
                "--resource-group", self.resource_group,
            ],
            f"show application group {name}",
        )
        group_id = (group or {}).get("id")
        if not group_id:
            raise SessionDirectoryError(f"Application group {name} has no resource ID")
        return group_id

    def _workspace_refs(self, workspace: str) -> list[str]:
        """Application group references of a workspace.

        Raises:
            AzureResourceNotFoundError: If the workspace does not exist
            SessionDirectoryError: If the workspace cannot be read
        """
        try:
            data = run_az_json(
                [
                    "az", "desktopvirtualization", "workspace", "show",
                    "--name", workspace,
                    "--resource-group", self.resource_group,
                ],
                timeout=60,
            )
        except AzureResourceNotFoundError:
            raise
        except AzureCliError as e:
            raise SessionDirectoryError(f"Failed to show workspace {workspace}: {e}") from e
        return list((data or {}).get("applicationGroupReferences") or [])

    def _update_workspace_refs(self, workspace: str, refs: list[str]) -> None:
        # Shorthand "[]" clears the list; the update replaces it whole
        self._json(
            [
                "az", "desktopvirtualization", "workspace", "update",
                "--name", workspace,
                "--resource-group", self.resource_group,
                "--application-group-references", *(refs or ["[]"]),
            ],
            f"update workspace {workspace}",
        )

    def _workload_id_of(self, item: dict[str, Any]) -> str | None:
        tags = item.get("tags") or {}
        if tags.get(WORKLOAD_TAG):
            return tags[WORKLOAD_TAG]

        name = item.get("name") or ""
        if not name.startswith(self.app_group_prefix) or not name.endswith(self.slot_suffix):
            return None
        workload_id = name[len(self.app_group_prefix) : len(name) - len(self.slot_suffix)]
        return workload_id or None

    @staticmethod
    def _node_id_of(host: SessionHost) -> str | None:
        try:
            return parse_session_host_name(host.name).node_id.lower()
        except ValueError:
            return None

    @staticmethod
    def _to_host(item: dict[str, Any]) -> SessionHost:
        return SessionHost(
            name=item.get("name", ""),
            status=item.get("status") or None,
            resource_id=item.get("resourceId"),
            sessions=item.get("sessions") or 0,
            update_error=item.get("updateErrorMessage") or None,
        )


__all__ = ["AzureCliSessionDirectory", "WORKLOAD_TAG"]
