"""Capacity Planner Module

Compute how many session hosts must be up for the current reservations.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)


@dataclass
class ScalingConfig:
    """Configuration for pool scaling behavior."""

    max_sessions_per_host: int = 2
    min_hosts: int = 1
    max_hosts: int = 10
    delete_on_scale_down: bool = True  # Purge surplus powered-off hosts

    def __post_init__(self):
        """Validate configuration."""
        if self.min_hosts < 0:
            raise ValueError("min_hosts cannot be negative")

        if self.max_hosts < self.min_hosts:
            raise ValueError("max_hosts must be >= min_hosts")

        if self.max_sessions_per_host <= 0:
            raise ValueError("max_sessions_per_host must be positive")


@dataclass
class CapacityPlan:
    """Target host count for a pool with rationale."""

    action: Literal["scale_up", "scale_down", "maintain"]
    target_host_count: int
    current_host_count: int
    reservations: int
    reason: str


class CapacityPlanner:
    """Turn reservation counts into target host counts."""

    @classmethod
    def calculate_target(cls, reservations: int, config: ScalingConfig) -> int:
        """Calculate the number of hosts that must be up.

        One reservation of headroom is added so the workload that triggered the
        pass has a slot even before it is recorded. Partial occupancy still
        needs a full host, so the division rounds up.

        Args:
            reservations: Current reservation count (negative counts as zero)
            config: Scaling configuration

        Returns:
            int: Target host count within [min_hosts, max_hosts]
        """
        needed_sessions = max(reservations, 0) + 1
        target = math.ceil(needed_sessions / config.max_sessions_per_host)

        # Apply min/max constraints
        return max(config.min_hosts, min(config.max_hosts, target))

    @classmethod
    def plan(
        cls, reservations: int, current_host_count: int, config: ScalingConfig
    ) -> CapacityPlan:
        """Build a capacity plan for reporting.

        Args:
            reservations: Current reservation count
            current_host_count: Number of hosts currently up
            config: Scaling configuration

        Returns:
            CapacityPlan: Target and scale direction

        Raises:
            ValueError: If current_host_count is negative
        """
        if current_host_count < 0:
            raise ValueError("current_host_count cannot be negative")

        target = cls.calculate_target(reservations, config)
        difference = target - current_host_count

        if difference > 0:
            action: Literal["scale_up", "scale_down", "maintain"] = "scale_up"
            reason = f"Need {difference} more hosts for {reservations} reservations"
        elif difference < 0:
            action = "scale_down"
            reason = f"Can remove {abs(difference)} unused hosts"
        else:
            action = "maintain"
            reason = f"Current host count ({current_host_count}) matches target"

        logger.debug(
            f"Capacity plan: reservations={reservations}, "
            f"max_sessions_per_host={config.max_sessions_per_host}, "
            f"target={target}, current={current_host_count}, action={action}"
        )

        return CapacityPlan(
            action=action,
            target_host_count=target,
            current_host_count=current_host_count,
            reservations=reservations,
            reason=reason,
        )
