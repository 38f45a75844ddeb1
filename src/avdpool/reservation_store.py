"""Reservation state and per-pool locks owned by one orchestrator.

Reservation sets are immutable snapshots. A rebuild produces a new set and
swaps it in whole, so readers see either the previous or the new set.
"""

import logging
import threading
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class ReservationStore:
    """Map pool name to the set of workload IDs holding a reservation."""

    def __init__(self):
        self._sets: dict[str, frozenset[str]] = {}
        self._guard = threading.Lock()

    def get(self, pool: str) -> frozenset[str]:
        """Return the current reservation set of pool (empty if never rebuilt)."""
        with self._guard:
            return self._sets.get(pool, frozenset())

    def replace(self, pool: str, workload_ids: Iterable[str]) -> frozenset[str]:
        """Swap in a fresh reservation set for pool.

        Args:
            pool: Pool name
            workload_ids: Workload IDs with a valid reservation

        Returns:
            The stored set
        """
        fresh = frozenset(workload_ids)
        with self._guard:
            previous = self._sets.get(pool, frozenset())
            self._sets[pool] = fresh

        dropped = previous - fresh
        if dropped:
            logger.debug(f"Dropped {len(dropped)} stale reservations from pool {pool}")
        return fresh


class PoolLockRegistry:
    """Hand out one non-reentrant lock per pool name."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, pool: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(pool)
            if lock is None:
                lock = threading.Lock()
                self._locks[pool] = lock
            return lock

    def acquire(self, pool: str, timeout: float | None = None) -> bool:
        """Acquire the lock of pool.

        Args:
            pool: Pool name
            timeout: Seconds to wait, None to wait indefinitely

        Returns:
            True if acquired, False if the timeout expired
        """
        lock = self.lock_for(pool)
        if timeout is None:
            return lock.acquire()
        return lock.acquire(timeout=timeout)

    def release(self, pool: str) -> None:
        self.lock_for(pool).release()

    def is_locked(self, pool: str) -> bool:
        return self.lock_for(pool).locked()


__all__ = ["PoolLockRegistry", "ReservationStore"]
