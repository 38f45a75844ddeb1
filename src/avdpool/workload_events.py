"""Workload lifecycle triggers.

Upstream orchestration reports workload (VM) lifecycle events here:
- created / started: make sure the pool has room, then open the workload's
  reservation slot (application group tagged with the workload ID, published
  through the pool workspace and assigned to the user)
- stopped / deleted: detach and remove the workload's slot, then let the pool
  shrink

Capacity is ensured before the slot opens: the pass sizes the pool with one
session of headroom for the arriving workload.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from avdpool.capacity_reconciler import CapacityReconciler, ReconcileResult
from avdpool.models import AppGroup

logger = logging.getLogger(__name__)


class SlotProvisioningError(Exception):
    """Failed to open the reservation slot of a workload."""

    def __init__(self, step: str, slot: str, message: str):
        super().__init__(f"Reservation slot {slot} failed at {step}: {message}")
        self.step = step
        self.slot = slot


class WorkloadEvent(str, Enum):
    """Workload lifecycle events that trigger reconciliation."""

    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    DELETED = "deleted"


@dataclass
class SlotGrant:
    """Principal granted access to a slot."""

    principal_id: str
    principal_type: str


class WorkloadEventHandler:
    """Translate workload lifecycle events into reconciliation passes."""

    def __init__(self, reconciler: CapacityReconciler):
        self.reconciler = reconciler
        self.directory = reconciler.directory
        self.config = reconciler.config

    def handle(
        self,
        event: WorkloadEvent | str,
        pool: str,
        workload_id: str,
        user_id: str | None = None,
    ) -> ReconcileResult:
        """Dispatch an event by name.

        Args:
            event: Workload event or its name
            pool: Pool the workload belongs to
            workload_id: Workload (VM) identifier
            user_id: Object ID of the workload's user, used when a slot opens

        Raises:
            ValueError: If event is not a known workload event
            SlotProvisioningError: If the slot of a created or started workload
                cannot be opened
        """
        event = WorkloadEvent(event)
        if event == WorkloadEvent.CREATED:
            return self.on_workload_created(pool, workload_id, user_id)
        if event == WorkloadEvent.STARTED:
            return self.on_workload_started(pool, workload_id, user_id)
        if event == WorkloadEvent.STOPPED:
            return self.on_workload_stopped(pool, workload_id)
        return self.on_workload_deleted(pool, workload_id)

    def on_workload_created(
        self, pool: str, workload_id: str, user_id: str | None = None
    ) -> ReconcileResult:
        logger.debug(f"Workload {workload_id} created in pool {pool}")
        result = self.reconciler.ensure_capacity(pool)
        self.open_slot(pool, workload_id, user_id)
        return result

    def on_workload_started(
        self, pool: str, workload_id: str, user_id: str | None = None
    ) -> ReconcileResult:
        logger.debug(f"Workload {workload_id} started in pool {pool}")
        result = self.reconciler.ensure_capacity(pool)
        self.open_slot(pool, workload_id, user_id)
        return result

    def on_workload_stopped(self, pool: str, workload_id: str) -> ReconcileResult:
        logger.debug(f"Workload {workload_id} stopped in pool {pool}")
        self._remove_slot(pool, workload_id)
        return self.reconciler.ensure_capacity(pool)

    def on_workload_deleted(self, pool: str, workload_id: str) -> ReconcileResult:
        logger.debug(f"Workload {workload_id} deleted from pool {pool}")
        self._remove_slot(pool, workload_id)
        return self.reconciler.ensure_capacity(pool)

    def open_slot(self, pool: str, workload_id: str, user_id: str | None = None) -> AppGroup:
        """Create the workload's slot, publish it and grant access.

        The slot is assigned to user_id when given, otherwise to the configured
        users group. A slot with neither stays unassigned and is dropped by the
        next reservation rebuild.

        Args:
            pool: Pool the workload belongs to
            workload_id: Workload (VM) identifier
            user_id: Object ID of the workload's user

        Returns:
            AppGroup: The slot

        Raises:
            SlotProvisioningError: If a step fails (step attribute names it)
        """
        name = self.config.slot_name(workload_id)
        workspace = self.config.workspace_name(pool)

        step = "create_app_group"
        try:
            slot = self.directory.create_app_group(pool, name, workload_id)

            step = "add_to_workspace"
            self.directory.add_app_group_to_workspace(workspace, name)

            step = "assign_principal"
            grant = self._grant_for(user_id)
            if grant is None:
                logger.warning(
                    f"No user or users group to assign to {name}; "
                    "the slot will not count as a reservation"
                )
            else:
                self.directory.assign_principal(name, grant.principal_id, grant.principal_type)

        except Exception as e:
            logger.error(f"Failed to open reservation slot {name} ({step}): {e}")
            raise SlotProvisioningError(step, name, str(e)) from e

        logger.info(f"Opened reservation slot {name} in workspace {workspace}")
        return slot

    def _grant_for(self, user_id: str | None) -> SlotGrant | None:
        if user_id:
            return SlotGrant(principal_id=user_id, principal_type="User")
        if self.config.users_group_id:
            return SlotGrant(principal_id=self.config.users_group_id, principal_type="Group")
        return None

    def _remove_slot(self, pool: str, workload_id: str) -> bool:
        """Detach and delete the workload's application group; failures are logged only."""
        slot = self.config.slot_name(workload_id)
        workspace = self.config.workspace_name(pool)
        try:
            self.directory.remove_app_group_from_workspace(workspace, slot)
        except Exception as e:
            logger.warning(f"Failed to remove application group {slot} from {workspace}: {e}")

        try:
            self.directory.delete_app_group(slot)
        except Exception as e:
            logger.warning(f"Failed to delete application group {slot}: {e}")
            return False

        logger.debug(f"Deleted application group {slot}")
        return True


__all__ = ["SlotProvisioningError", "WorkloadEvent", "WorkloadEventHandler"]
