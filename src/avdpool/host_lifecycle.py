"""Session Host Lifecycle Module

Create new session hosts and purge stale ones.

Creation steps:
1. Create the compute node from the host template
2. Get the pool registration token
3. Build the setup script with the token substituted in
4. Run the setup script on the node
5. Wait for the directory service to report the host Available

Purge is best-effort: it never raises, it reports what it managed to delete.
"""

import logging
import uuid
from dataclasses import dataclass

from avdpool.config_manager import OrchestratorConfig
from avdpool.models import POOL_TAG, NodeSpec, SessionHost
from avdpool.providers import ComputeProvider, SessionDirectory
from avdpool.setup_script import SetupScriptBuilder

logger = logging.getLogger(__name__)

STEP_CREATE_NODE = "create_node"
STEP_REGISTRATION_TOKEN = "registration_token"
STEP_BUILD_SCRIPT = "build_script"
STEP_RUN_SETUP = "run_setup"
STEP_WAIT_READY = "wait_ready"


class SessionHostCreationError(Exception):
    """Failed to create a session host."""

    def __init__(self, step: str, node_id: str, message: str):
        super().__init__(f"Session host {node_id} failed at {step}: {message}")
        self.step = step
        self.node_id = node_id


@dataclass
class PurgeResult:
    """Result from purging a session host."""

    host_name: str
    directory_deleted: bool
    node_deleted: bool
    node_id: str | None = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.directory_deleted and self.node_deleted


class SessionHostLifecycle:
    """Create and purge session hosts of a pool."""

    def __init__(
        self,
        compute: ComputeProvider,
        directory: SessionDirectory,
        config: OrchestratorConfig,
    ):
        self.compute = compute
        self.directory = directory
        self.config = config

    def new_node_id(self) -> str:
        """Allocate a unique node ID ("shvm-" + 10 hex chars fits a 15 char computer name)."""
        return f"{self.config.host_template.name_prefix}{uuid.uuid4().hex[:10]}"

    def build_node_spec(self, node_id: str, pool: str) -> NodeSpec:
        """Node spec from the host template, tagged with the owning pool."""
        template = self.config.host_template
        return NodeSpec(
            node_id=node_id,
            name=node_id,
            image=template.image,
            size=template.size,
            security_type=template.security_type,
            operating_system=template.operating_system,
            tags={**template.tags, POOL_TAG: pool},
        )

    def create_session_host(self, pool: str) -> SessionHost:
        """Provision a new session host and wait until it is Available.

        Args:
            pool: Pool the host registers with

        Returns:
            SessionHost: The ready host as reported by the directory service

        Raises:
            SessionHostCreationError: If any step fails (step attribute names it)
        """
        node_id = self.new_node_id()
        timeouts = self.config.timeouts
        logger.info(f"Creating session host {node_id} for pool {pool}")

        step = STEP_CREATE_NODE
        try:
            logger.debug(f"Step 1: Creating compute node {node_id}...")
            self.compute.create(self.build_node_spec(node_id, pool))

            step = STEP_REGISTRATION_TOKEN
            logger.debug("Step 2: Getting registration token...")
            token = self.directory.retrieve_registration_token(pool)

            step = STEP_BUILD_SCRIPT
            logger.debug("Step 3: Building setup script...")
            script = SetupScriptBuilder.build(self.config.setup_script, token)

            step = STEP_RUN_SETUP
            logger.debug(f"Step 4: Running setup script on {node_id}...")
            self.compute.run_remote_script(
                node_id,
                script,
                timeout=timeouts.script_timeout,
                poll_interval=timeouts.script_poll_interval,
            )

            step = STEP_WAIT_READY
            logger.debug(f"Step 5: Waiting for {node_id} to become available...")
            host = self.directory.wait_for_ready(pool, node_id, timeouts.create_ready_timeout)

        except Exception as e:
            logger.error(f"Failed to create session host {node_id} ({step}): {e}")
            raise SessionHostCreationError(step, node_id, str(e)) from e

        logger.info(f"Session host {host.name} is available")
        return host

    def purge_host(self, host: SessionHost) -> PurgeResult:
        """Delete the directory record and the backing node of a host.

        Both deletions are attempted independently; failures are logged and
        reported in the result, never raised.

        Args:
            host: Host to purge

        Returns:
            PurgeResult
        """
        try:
            node_id: str | None = self.directory.parse_host_name(host).node_id
        except Exception as e:
            logger.warning(f"Failed to parse session host name {host.name}: {e}")
            node_id = None

        logger.debug(f"Purging session host {host.name}")
        messages = []

        try:
            self.directory.delete_host(host)
            directory_deleted = True
            logger.debug(f"Deleted session host record {host.name}")
        except Exception as e:
            directory_deleted = False
            messages.append(f"directory: {e}")
            logger.warning(f"Failed to delete session host record {host.name}: {e}")

        node_deleted = False
        if node_id is None:
            messages.append("node: unknown node identifier")
        else:
            try:
                self.compute.delete(node_id)
                node_deleted = True
                logger.debug(f"Deleted session host node {node_id}")
            except Exception as e:
                messages.append(f"node: {e}")
                logger.warning(f"Failed to delete session host node {node_id}: {e}")

        return PurgeResult(
            host_name=host.name,
            directory_deleted=directory_deleted,
            node_deleted=node_deleted,
            node_id=node_id,
            message="; ".join(messages) or "purged",
        )


__all__ = [
    "PurgeResult",
    "STEP_BUILD_SCRIPT",
    "STEP_CREATE_NODE",
    "STEP_REGISTRATION_TOKEN",
    "STEP_RUN_SETUP",
    "STEP_WAIT_READY",
    "SessionHostCreationError",
    "SessionHostLifecycle",
]
