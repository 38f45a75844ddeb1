"""Structured fan-out/fan-in for best-effort parallel work.

All tasks are submitted to a thread pool and the caller waits for every one of
them before continuing. Failures are captured per task instead of propagating,
so one failed item never hides the outcome of the others.
"""

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TaskOutcome(Generic[T]):
    """Outcome of one fanned-out task."""

    item: T
    success: bool
    result: Any = None
    error: Exception | None = None


def fan_out(
    func: Callable[[T], Any],
    items: Iterable[T],
    max_workers: int = 8,
    label: str = "task",
    describe: Callable[[T], str] = str,
) -> list[TaskOutcome[T]]:
    """Run func over items in parallel and wait for all of them.

    Args:
        func: Callable applied to each item
        items: Items to process
        max_workers: Maximum parallel workers
        label: Operation name used in log messages
        describe: Renders an item for log messages

    Returns:
        One TaskOutcome per item, in completion order
    """
    items = list(items)
    if not items:
        return []

    outcomes: list[TaskOutcome[T]] = []
    num_workers = max(1, min(max_workers, len(items)))

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        future_to_item = {executor.submit(func, item): item for item in items}

        for future in as_completed(future_to_item):
            item = future_to_item[future]
            try:
                outcomes.append(TaskOutcome(item=item, success=True, result=future.result()))
            except Exception as e:
                logger.warning(f"{label} failed for {describe(item)}: {e}")
                outcomes.append(TaskOutcome(item=item, success=False, error=e))

    failed = sum(1 for o in outcomes if not o.success)
    logger.debug(f"{label}: {len(outcomes) - failed}/{len(outcomes)} tasks succeeded")
    return outcomes


__all__ = ["TaskOutcome", "fan_out"]
