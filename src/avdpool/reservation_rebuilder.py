"""Reservation rebuild module.

Rebuild the reservation set of a pool from the directory service:
- List the application groups (slots) of the pool
- Fetch the workload inventory once
- Validate every slot in parallel, deleting invalid slots
- Swap the fresh set into the ReservationStore

A slot is valid when its workload exists, is running and the slot has at least
one assignment. Slot deletion is self-healing cleanup: failures are logged and
never block other validations.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from avdpool.models import AppGroup, ComputeNode
from avdpool.parallel import fan_out
from avdpool.providers import ComputeProvider, SessionDirectory
from avdpool.reservation_store import ReservationStore

logger = logging.getLogger(__name__)


class ReservationRebuildError(Exception):
    """Raised when reservation state cannot be rebuilt."""

    pass


class SlotVerdict(str, Enum):
    """Result of validating one slot."""

    VALID = "valid"
    WORKLOAD_MISSING = "workload_missing"
    WORKLOAD_NOT_RUNNING = "workload_not_running"
    NO_ASSIGNMENTS = "no_assignments"
    ASSIGNMENTS_UNAVAILABLE = "assignments_unavailable"
    UNPARSEABLE = "unparseable"


@dataclass
class SlotValidation:
    """Validation outcome for a slot."""

    slot: AppGroup
    verdict: SlotVerdict
    deleted: bool = False

    @property
    def valid(self) -> bool:
        return self.verdict == SlotVerdict.VALID


class ReservationRebuilder:
    """Rebuild reservation sets from directory slots."""

    def __init__(
        self,
        compute: ComputeProvider,
        directory: SessionDirectory,
        store: ReservationStore,
        max_workers: int = 8,
    ):
        self.compute = compute
        self.directory = directory
        self.store = store
        self.max_workers = max_workers

    def rebuild(self, pool: str) -> frozenset[str]:
        """Rebuild and replace the reservation set of pool.

        Args:
            pool: Pool name

        Returns:
            The fresh reservation set

        Raises:
            ReservationRebuildError: If slots or the workload inventory cannot be listed
        """
        logger.info(f"Rebuilding reservations for pool {pool}")

        try:
            slots = self.directory.list_app_groups(pool)
        except Exception as e:
            logger.error(f"Failed to list application groups for pool {pool}: {e}")
            raise ReservationRebuildError(f"Failed to list slots for pool {pool}: {e}") from e
        logger.debug(f"Fetched {len(slots)} application groups for pool {pool}")

        try:
            inventory = {node.node_id: node for node in self.compute.list_all()}
        except Exception as e:
            logger.error(f"Failed to fetch workload inventory: {e}")
            raise ReservationRebuildError(f"Failed to fetch workload inventory: {e}") from e
        logger.debug(f"Cached {len(inventory)} workloads for slot validation")

        outcomes = fan_out(
            lambda slot: self._validate_slot(slot, inventory),
            slots,
            max_workers=self.max_workers,
            label="Slot validation",
            describe=lambda slot: slot.name,
        )

        fresh = [
            outcome.result.slot.workload_id
            for outcome in outcomes
            if outcome.success and outcome.result.valid
        ]
        stored = self.store.replace(pool, fresh)

        logger.info(f"Rebuilt reservations for pool {pool}: {len(stored)} valid")
        return stored

    def _validate_slot(self, slot: AppGroup, inventory: dict[str, ComputeNode]) -> SlotValidation:
        """Validate one slot, deleting it when it no longer grants a reservation."""
        workload_id = slot.workload_id
        if not workload_id:
            logger.warning(f"Cannot determine workload of application group {slot.name}, skipping")
            return SlotValidation(slot=slot, verdict=SlotVerdict.UNPARSEABLE)

        node = inventory.get(workload_id)
        if node is None:
            logger.warning(
                f"Workload {workload_id} not found, deleting application group {slot.name}"
            )
            return self._invalidate(slot, SlotVerdict.WORKLOAD_MISSING)

        if not node.is_running:
            logger.warning(
                f"Workload {workload_id} is {node.state.value}, "
                f"deleting application group {slot.name}"
            )
            return self._invalidate(slot, SlotVerdict.WORKLOAD_NOT_RUNNING)

        try:
            assignments = self.directory.list_assignments(slot.name)
        except Exception as e:
            logger.warning(f"Failed to list assignments of {slot.name}: {e}")
            return SlotValidation(slot=slot, verdict=SlotVerdict.ASSIGNMENTS_UNAVAILABLE)

        if not assignments:
            logger.warning(f"No assignments, deleting application group {slot.name}")
            return self._invalidate(slot, SlotVerdict.NO_ASSIGNMENTS)

        logger.debug(f"Recorded reservation for workload {workload_id}")
        return SlotValidation(slot=slot, verdict=SlotVerdict.VALID)

    def _invalidate(self, slot: AppGroup, verdict: SlotVerdict) -> SlotValidation:
        try:
            self.directory.delete_app_group(slot.name)
            deleted = True
        except Exception as e:
            logger.warning(f"Failed to delete stale application group {slot.name}: {e}")
            deleted = False
        return SlotValidation(slot=slot, verdict=verdict, deleted=deleted)


__all__ = [
    "ReservationRebuildError",
    "ReservationRebuilder",
    "SlotValidation",
    "SlotVerdict",
]
