"""Capacity Reconciler Module

Keep the session hosts of a pooled host pool sized to its reservations.

One pass runs through these states under the pool lock:

    Locking -> RebuildingReservations -> Listing -> Classifying ->
    ComputingTarget -> DeletingStale -> ResumingHosts -> ProvisioningNew ->
    DeletingSurplus -> SweepingOrphans -> Done

Failure classes:
- Fatal to the pass (lock timeout, reservation rebuild, host listing): raised,
  hosts are left untouched
- Per host (resume, ready wait, creation): logged, the pass continues and
  may end short of target; the next trigger closes the gap
- Cleanup (stale, surplus and orphan deletion): best-effort, results logged

Passes for the same pool never overlap. Passes for different pools are
independent.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from avdpool.capacity_planner import CapacityPlan, CapacityPlanner
from avdpool.config_manager import OrchestratorConfig
from avdpool.host_classifier import HostClassifier
from avdpool.host_lifecycle import PurgeResult, SessionHostCreationError, SessionHostLifecycle
from avdpool.models import POOL_TAG, ComputeNode, SessionHost
from avdpool.parallel import fan_out
from avdpool.providers import ComputeProvider, SessionDirectory
from avdpool.reservation_rebuilder import ReservationRebuilder
from avdpool.reservation_store import PoolLockRegistry, ReservationStore

logger = logging.getLogger(__name__)


class CapacityReconcileError(Exception):
    """Raised when a reconciliation pass must abort."""

    pass


class CapacityLockTimeoutError(CapacityReconcileError):
    """Raised when the pool lock is not acquired in time."""

    pass


class ReconcileCancelledError(CapacityReconcileError):
    """Raised when a pass is cancelled by its caller."""

    pass


class ReconcileState(str, Enum):
    """States of one reconciliation pass."""

    LOCKING = "Locking"
    REBUILDING_RESERVATIONS = "RebuildingReservations"
    LISTING = "Listing"
    CLASSIFYING = "Classifying"
    COMPUTING_TARGET = "ComputingTarget"
    DELETING_STALE = "DeletingStale"
    RESUMING_HOSTS = "ResumingHosts"
    PROVISIONING_NEW = "ProvisioningNew"
    DELETING_SURPLUS = "DeletingSurplus"
    SWEEPING_ORPHANS = "SweepingOrphans"
    DONE = "Done"


@dataclass
class ReconcileResult:
    """Summary of one reconciliation pass."""

    pool: str
    reservations: int = 0
    target: int = 0
    up_count: int = 0
    plan: CapacityPlan | None = None
    resumed: list[str] = field(default_factory=list)
    failed_resumes: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    failed_creations: int = 0
    stale_purged: list[PurgeResult] = field(default_factory=list)
    surplus_purged: list[PurgeResult] = field(default_factory=list)
    kept_powered_off: list[str] = field(default_factory=list)
    orphans_deleted: list[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.up_count >= self.target

    @property
    def deletions(self) -> int:
        return len(self.stale_purged) + len(self.surplus_purged) + len(self.orphans_deleted)

    def summary(self) -> str:
        return (
            f"up {self.up_count}/{self.target} for {self.reservations} reservations "
            f"(resumed {len(self.resumed)}, created {len(self.created)}, "
            f"failed {len(self.failed_resumes) + self.failed_creations}, "
            f"deleted {self.deletions})"
        )


class CapacityReconciler:
    """Reconcile pool capacity against reservations.

    Reservation state and pool locks belong to the reconciler instance; two
    reconcilers share nothing unless handed the same store and registry.
    """

    def __init__(
        self,
        compute: ComputeProvider,
        directory: SessionDirectory,
        config: OrchestratorConfig,
        store: ReservationStore | None = None,
        locks: PoolLockRegistry | None = None,
        lifecycle: SessionHostLifecycle | None = None,
    ):
        self.compute = compute
        self.directory = directory
        self.config = config
        self.store = store or ReservationStore()
        self.locks = locks or PoolLockRegistry()
        self.lifecycle = lifecycle or SessionHostLifecycle(compute, directory, config)
        self.classifier = HostClassifier(compute, directory)
        self.rebuilder = ReservationRebuilder(
            compute, directory, self.store, max_workers=config.max_workers
        )

    def ensure_capacity(
        self, pool: str, cancel_event: threading.Event | None = None
    ) -> ReconcileResult:
        """Run one reconciliation pass for pool.

        Safe to call repeatedly and concurrently: callers for the same pool
        block until the running pass finishes.

        Args:
            pool: Pool name
            cancel_event: Set to abort the pass at the next checkpoint

        Returns:
            ReconcileResult summarizing the pass

        Raises:
            CapacityLockTimeoutError: If the pool lock is not acquired in time
            ReconcileCancelledError: If cancel_event is set during the pass
            ReservationRebuildError: If reservations cannot be rebuilt
            CapacityReconcileError: If the session hosts cannot be listed
        """
        self._enter(pool, ReconcileState.LOCKING, cancel_event)
        self._acquire(pool)
        try:
            return self._reconcile(pool, cancel_event)
        finally:
            self.locks.release(pool)
            logger.debug(f"Released capacity lock for pool {pool}")

    def rebuild_reservations(self, pool: str) -> frozenset[str]:
        """Rebuild the reservation set of pool under the pool lock.

        Raises:
            CapacityLockTimeoutError: If the pool lock is not acquired in time
            ReservationRebuildError: If slots or the inventory cannot be listed
        """
        self._acquire(pool)
        try:
            return self.rebuilder.rebuild(pool)
        finally:
            self.locks.release(pool)

    def _acquire(self, pool: str) -> None:
        timeout = self.config.timeouts.lock_timeout_seconds
        if self.locks.is_locked(pool):
            logger.info(f"Waiting up to {timeout:.0f}s for the running pass of pool {pool}")
        if not self.locks.acquire(pool, timeout=timeout):
            raise CapacityLockTimeoutError(
                f"Timed out after {timeout:.0f}s waiting for capacity lock of pool {pool}"
            )
        logger.debug(f"Acquired capacity lock for pool {pool}")

    def _reconcile(self, pool: str, cancel_event: threading.Event | None) -> ReconcileResult:
        result = ReconcileResult(pool=pool)
        scaling = self.config.scaling

        self._enter(pool, ReconcileState.REBUILDING_RESERVATIONS, cancel_event)
        reservations = self.rebuilder.rebuild(pool)
        result.reservations = len(reservations)

        self._enter(pool, ReconcileState.LISTING, cancel_event)
        try:
            hosts = self.directory.list_hosts(pool)
        except Exception as e:
            logger.error(f"Failed to list session hosts of pool {pool}: {e}")
            raise CapacityReconcileError(f"Failed to list session hosts of pool {pool}: {e}") from e

        self._enter(pool, ReconcileState.CLASSIFYING, cancel_event)
        classification = self.classifier.classify(hosts)
        known_nodes = self._node_ids(hosts)

        self._enter(pool, ReconcileState.COMPUTING_TARGET, cancel_event)
        result.plan = CapacityPlanner.plan(result.reservations, len(classification.up), scaling)
        result.target = result.plan.target_host_count
        logger.info(
            f"Pool {pool}: {result.reservations} reservations, target {result.target} hosts, "
            f"{classification.summary()}"
        )

        self._enter(pool, ReconcileState.DELETING_STALE, cancel_event)
        result.stale_purged = self._purge_all(classification.to_delete, "Stale host cleanup")

        up = list(classification.up)

        self._enter(pool, ReconcileState.RESUMING_HOSTS, cancel_event)
        queue = deque(classification.resumable)
        self._resume_hosts(pool, up, queue, result, cancel_event)

        self._enter(pool, ReconcileState.PROVISIONING_NEW, cancel_event)
        self._provision_hosts(pool, up, known_nodes, result, cancel_event)

        self._enter(pool, ReconcileState.DELETING_SURPLUS, cancel_event)
        surplus = list(queue)
        if surplus and scaling.delete_on_scale_down:
            result.surplus_purged = self._purge_all(surplus, "Surplus host cleanup")
        elif surplus:
            result.kept_powered_off = [host.name for host in surplus]
            logger.info(f"Keeping {len(surplus)} surplus hosts of pool {pool} powered off")

        if self.config.sweep_orphaned_nodes:
            self._enter(pool, ReconcileState.SWEEPING_ORPHANS, cancel_event)
            result.orphans_deleted = self._sweep_orphans(pool, known_nodes)

        self._enter(pool, ReconcileState.DONE)
        result.up_count = len(up)
        if result.converged:
            logger.info(f"Pool {pool} reconciled: {result.summary()}")
        else:
            logger.warning(f"Pool {pool} is short of target: {result.summary()}")
        return result

    def _resume_hosts(
        self,
        pool: str,
        up: list[SessionHost],
        queue: deque[SessionHost],
        result: ReconcileResult,
        cancel_event: threading.Event | None,
    ) -> None:
        timeout = self.config.timeouts.resume_ready_timeout

        while len(up) < result.target and queue:
            self._check_cancelled(pool, cancel_event)
            host = queue.popleft()
            try:
                node_id = self.directory.parse_host_name(host).node_id
                logger.info(f"Resuming session host {host.name}")
                self.compute.start(node_id)
                ready = self.directory.wait_for_ready(pool, node_id, timeout)
            except Exception as e:
                logger.warning(f"Failed to resume session host {host.name}: {e}")
                result.failed_resumes.append(host.name)
                continue

            up.append(ready)
            result.resumed.append(host.name)

    def _provision_hosts(
        self,
        pool: str,
        up: list[SessionHost],
        known_nodes: set[str],
        result: ReconcileResult,
        cancel_event: threading.Event | None,
    ) -> None:
        needed = result.target - len(up)
        if needed <= 0:
            return

        logger.info(f"Creating {needed} session hosts for pool {pool}")
        for attempt in range(1, needed + 1):
            self._check_cancelled(pool, cancel_event)
            try:
                host = self.lifecycle.create_session_host(pool)
            except SessionHostCreationError as e:
                # Node may still register; leave it to the next pass's orphan sweep
                known_nodes.add(e.node_id.lower())
                logger.warning(f"Session host creation {attempt}/{needed} failed: {e}")
                result.failed_creations += 1
                continue

            known_nodes.update(self._node_ids([host]))
            up.append(host)
            result.created.append(host.name)

    def _purge_all(self, hosts: list[SessionHost], label: str) -> list[PurgeResult]:
        if not hosts:
            return []

        logger.info(f"{label}: purging {len(hosts)} hosts")
        outcomes = fan_out(
            self.lifecycle.purge_host,
            hosts,
            max_workers=self.config.max_workers,
            label=label,
            describe=lambda host: host.name,
        )

        results = [outcome.result for outcome in outcomes if outcome.success]
        for purge in results:
            if not purge.success:
                logger.warning(f"{label}: incomplete purge of {purge.host_name}: {purge.message}")
        return results

    def _sweep_orphans(self, pool: str, known_nodes: set[str]) -> list[str]:
        """Delete compute nodes of this pool that have no session host record.

        Only nodes carrying the pool tag for this pool are candidates. Nodes
        of other pools sharing the resource group, and untagged nodes, are
        never touched.
        """
        prefix = self.config.host_template.name_prefix
        try:
            nodes = self.compute.list_all(name_prefix=prefix)
        except Exception as e:
            logger.warning(f"Failed to list compute nodes for orphan sweep of pool {pool}: {e}")
            return []

        owned = [node for node in nodes if self._owned_by(node, pool)]
        orphans = [node.node_id for node in owned if node.node_id.lower() not in known_nodes]
        logger.debug(
            f"Orphan sweep of pool {pool}: {len(owned)} of {len(nodes)} prefixed nodes "
            f"owned, {len(orphans)} orphaned"
        )
        if not orphans:
            return []

        logger.info(
            f"Deleting {len(orphans)} orphaned session host nodes of pool {pool}: "
            f"{', '.join(orphans)}"
        )
        outcomes = fan_out(
            self.compute.delete,
            orphans,
            max_workers=self.config.max_workers,
            label="Orphan node cleanup",
        )
        return [outcome.item for outcome in outcomes if outcome.success]

    @staticmethod
    def _owned_by(node: ComputeNode, pool: str) -> bool:
        owner = node.tags.get(POOL_TAG)
        return owner is not None and owner.lower() == pool.lower()

    def _node_ids(self, hosts: list[SessionHost]) -> set[str]:
        node_ids = set()
        for host in hosts:
            try:
                node_ids.add(self.directory.parse_host_name(host).node_id.lower())
            except Exception as e:
                logger.debug(f"Skipping unparseable session host {host.name}: {e}")
        return node_ids

    def _enter(
        self,
        pool: str,
        state: ReconcileState,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._check_cancelled(pool, cancel_event)
        logger.debug(f"Pool {pool}: {state.value}")

    @staticmethod
    def _check_cancelled(pool: str, cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelledError(f"Reconciliation of pool {pool} was cancelled")


__all__ = [
    "CapacityLockTimeoutError",
    "CapacityReconcileError",
    "CapacityReconciler",
    "ReconcileCancelledError",
    "ReconcileResult",
    "ReconcileState",
]
