"""Host classification module.

Partition the session hosts of a pool into three buckets for one pass:
- up: status Available
- resumable: status Shutdown and the backing compute node still exists
- to_delete: missing status, unknown status, or a Shutdown host whose node is
  gone or cannot be identified

Classification is total and uses only what is observed in the current pass.
"""

import logging
from dataclasses import dataclass, field

from avdpool.models import SessionHost
from avdpool.providers import ComputeProvider, SessionDirectory

logger = logging.getLogger(__name__)


@dataclass
class HostClassification:
    """Session hosts of a pool bucketed for one reconciliation pass."""

    up: list[SessionHost] = field(default_factory=list)
    resumable: list[SessionHost] = field(default_factory=list)
    to_delete: list[SessionHost] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.up) + len(self.resumable) + len(self.to_delete)

    def summary(self) -> str:
        return (
            f"available={len(self.up)}, shutdown={len(self.resumable)}, "
            f"stale={len(self.to_delete)}"
        )


class HostClassifier:
    """Classify session hosts by status and backing node existence."""

    def __init__(self, compute: ComputeProvider, directory: SessionDirectory):
        self.compute = compute
        self.directory = directory

    def classify(self, hosts: list[SessionHost]) -> HostClassification:
        """Bucket every host into exactly one of up, resumable or to_delete.

        Args:
            hosts: Session hosts as listed by the directory service

        Returns:
            HostClassification preserving the input order within each bucket
        """
        classification = HostClassification()

        for host in hosts:
            if host.status is None:
                logger.debug(f"Found stale host entry without status: {host.name}")
                classification.to_delete.append(host)
            elif host.is_available:
                classification.up.append(host)
            elif host.is_shutdown:
                if self._backing_node_exists(host):
                    classification.resumable.append(host)
                else:
                    classification.to_delete.append(host)
            else:
                logger.debug(f"Host {host.name} has status {host.status}, treating as stale")
                classification.to_delete.append(host)

        logger.debug(f"Host categorization complete: {classification.summary()}")
        return classification

    def _backing_node_exists(self, host: SessionHost) -> bool:
        try:
            parts = self.directory.parse_host_name(host)
        except Exception as e:
            logger.warning(f"Failed to parse session host name {host.name}: {e}")
            return False

        try:
            node = self.compute.get(parts.node_id, include_state=False)
        except Exception as e:
            logger.warning(f"Failed to look up node {parts.node_id} of host {host.name}: {e}")
            return False

        if node is None:
            logger.warning(f"Shutdown host {host.name} has no backing node {parts.node_id}")
            return False
        return True


__all__ = ["HostClassification", "HostClassifier"]
