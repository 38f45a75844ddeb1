"""Azure compute provider backed by the az CLI.

Implements the ComputeProvider protocol for session host VMs:
- Create VMs from a NodeSpec (no public IP, no NSG, optional subnet)
- Start, deallocate and delete VMs
- Look up and list VMs with their power state
- Run setup scripts through managed run-commands and poll until they finish

Security:
- The admin password is read from the environment, never from config
- Sensitive command arguments are masked in error messages
- No shell=True
"""

import logging
import os
import subprocess
import time
from typing import Any

from avdpool.azure_cli_executor import (
    AzureCliError,
    AzureResourceNotFoundError,
    run_az_command,
    run_az_json,
)
from avdpool.config_manager import HostTemplate, OrchestratorConfig
from avdpool.models import ComputeNode, NodeSpec, NodeState
from avdpool.providers import ComputeProviderError

logger = logging.getLogger(__name__)

RUN_COMMAND_NAME = "avdpool-setup"
TERMINAL_EXECUTION_STATES = {"Succeeded", "Failed", "TimedOut", "Canceled"}


class AzureCliComputeProvider:
    """ComputeProvider implementation over `az vm`."""

    CREATE_TIMEOUT = 900
    LIFECYCLE_TIMEOUT = 600

    def __init__(
        self,
        resource_group: str,
        location: str,
        host_template: HostTemplate | None = None,
        subnet_id: str | None = None,
    ):
        if not resource_group:
            raise ComputeProviderError("resource_group is required")
        self.resource_group = resource_group
        self.location = location
        self.host_template = host_template or HostTemplate()
        self.subnet_id = subnet_id

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "AzureCliComputeProvider":
        return cls(
            resource_group=config.resource_group or "",
            location=config.location,
            host_template=config.host_template,
            subnet_id=config.subnet_id,
        )

    def create(self, spec: NodeSpec) -> ComputeNode:
        """Create a VM and return it in its post-create state.

        Raises:
            ComputeProviderError: If the admin password is missing or az fails
        """
        password = os.environ.get(self.host_template.admin_password_env)
        if not password:
            raise ComputeProviderError(
                f"Admin password not set (environment variable "
                f"{self.host_template.admin_password_env})"
            )

        cmd = [
            "az", "vm", "create",
            "--name", spec.name,
            "--computer-name", spec.node_id,
            "--resource-group", self.resource_group,
            "--location", self.location,
            "--image", spec.image,
            "--size", spec.size,
            "--security-type", spec.security_type,
            "--admin-username", self.host_template.admin_username,
            "--admin-password", password,
            "--public-ip-address", "",
            "--nsg", "",
            "--os-disk-delete-option", "Delete",
            "--nic-delete-option", "Delete",
        ]
        if self.subnet_id:
            cmd.extend(["--subnet", self.subnet_id])
        if spec.tags:
            cmd.append("--tags")
            cmd.extend(f"{key}={value}" for key, value in spec.tags.items())

        logger.debug(f"Creating VM {spec.name} ({spec.size}, {spec.image})")
        data = self._json(cmd, "create", spec.node_id, timeout=self.CREATE_TIMEOUT, max_attempts=1)

        return ComputeNode(
            node_id=spec.node_id,
            name=spec.name,
            state=NodeState.from_power_state((data or {}).get("powerState")),
            private_ip=(data or {}).get("privateIpAddress") or None,
            tags=dict(spec.tags),
        )

    def start(self, node_id: str) -> None:
        logger.debug(f"Starting VM {node_id}")
        self._run(
            ["az", "vm", "start", "--name", node_id, "--resource-group", self.resource_group],
            "start",
            node_id,
        )

    def stop(self, node_id: str) -> None:
        logger.debug(f"Deallocating VM {node_id}")
        self._run(
            ["az", "vm", "deallocate", "--name", node_id, "--resource-group", self.resource_group],
            "stop",
            node_id,
        )

    def delete(self, node_id: str) -> None:
        """Delete a VM; a VM that no longer exists counts as deleted."""
        logger.debug(f"Deleting VM {node_id}")
        cmd = [
            "az", "vm", "delete",
            "--name", node_id,
            "--resource-group", self.resource_group,
            "--yes",
        ]
        try:
            self._run(cmd, "delete", node_id)
        except ComputeProviderError as e:
            if isinstance(e.__cause__, AzureResourceNotFoundError):
                logger.debug(f"VM {node_id} already deleted")
                return
            raise

    def get(self, node_id: str, include_state: bool = True) -> ComputeNode | None:
        """Look up a VM.

        Args:
            node_id: VM name
            include_state: Fetch power state and IP (slower `az vm show -d`)

        Returns:
            ComputeNode or None if the VM does not exist
        """
        cmd = ["az", "vm", "show", "--name", node_id, "--resource-group", self.resource_group]
        if include_state:
            cmd.append("--show-details")

        try:
            data = run_az_json(cmd)
        except AzureResourceNotFoundError:
            return None
        except AzureCliError as e:
            raise ComputeProviderError(f"Failed to look up VM {node_id}: {e}") from e

        if not data:
            return None
        return self._to_node(data)

    def list_all(self, name_prefix: str | None = None) -> list[ComputeNode]:
        """List VMs of the resource group with their power state."""
        cmd = ["az", "vm", "list", "--resource-group", self.resource_group, "--show-details"]
        data = self._json(cmd, "list", self.resource_group, timeout=120)

        nodes = [self._to_node(vm) for vm in data or []]
        if name_prefix:
            nodes = [node for node in nodes if node.node_id.startswith(name_prefix)]

        logger.debug(f"Listed {len(nodes)} VMs in {self.resource_group}")
        return nodes

    def run_remote_script(
        self, node_id: str, script: str, timeout: float, poll_interval: float
    ) -> None:
        """Run a PowerShell script on a VM and wait until it finishes.

        The script is submitted as an asynchronous managed run-command and its
        instance view is polled every poll_interval seconds.

        Raises:
            ComputeProviderError: If the script fails, is canceled, or is still
                running when timeout expires
        """
        logger.debug(f"Submitting setup script to {node_id}")
        self._run(
            [
                "az", "vm", "run-command", "create",
                "--name", RUN_COMMAND_NAME,
                "--vm-name", node_id,
                "--resource-group", self.resource_group,
                "--location", self.location,
                "--async-execution", "true",
                "--timeout-in-seconds", str(int(timeout)),
                "--script", script,
            ],
            "run_remote_script",
            node_id,
        )

        deadline = time.monotonic() + timeout
        while True:
            data = self._json(
                [
                    "az", "vm", "run-command", "show",
                    "--name", RUN_COMMAND_NAME,
                    "--vm-name", node_id,
                    "--resource-group", self.resource_group,
                    "--instance-view",
                ],
                "run_remote_script",
                node_id,
                poll=True,
            )
            instance_view = (data or {}).get("instanceView") or {}
            state = instance_view.get("executionState")

            if state in TERMINAL_EXECUTION_STATES:
                if state == "Succeeded":
                    logger.debug(f"Setup script on {node_id} succeeded")
                    return
                error = instance_view.get("error") or instance_view.get("errorMessage") or ""
                raise ComputeProviderError(
                    f"Setup script on {node_id} ended in state {state}: {error}".rstrip(": ")
                )

            if time.monotonic() >= deadline:
                raise ComputeProviderError(
                    f"Setup script on {node_id} did not finish within {timeout:.0f}s "
                    f"(state: {state})"
                )

            logger.debug(f"Setup script on {node_id} is {state}, polling again")
            time.sleep(poll_interval)

    def _run(
        self, cmd: list[str], operation: str, target: str, timeout: int | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            return run_az_command(cmd, timeout=timeout or self.LIFECYCLE_TIMEOUT)
        except AzureCliError as e:
            raise ComputeProviderError(f"VM {operation} failed for {target}: {e}") from e
        except subprocess.CalledProcessError as e:
            raise ComputeProviderError(
                f"VM {operation} failed for {target}: {(e.stderr or '').strip()}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ComputeProviderError(f"VM {operation} timed out for {target}") from e

    def _json(
        self,
        cmd: list[str],
        operation: str,
        target: str,
        timeout: int = 30,
        max_attempts: int | None = None,
        poll: bool = False,
    ) -> Any:
        try:
            return run_az_json(cmd, timeout=timeout, max_attempts=max_attempts, poll=poll)
        except AzureCliError as e:
            raise ComputeProviderError(f"VM {operation} failed for {target}: {e}") from e

    @staticmethod
    def _to_node(vm: dict[str, Any]) -> ComputeNode:
        name = vm.get("name", "")
        private_ips = vm.get("privateIps") or ""
        return ComputeNode(
            node_id=name,
            name=name,
            state=NodeState.from_power_state(vm.get("powerState")),
            private_ip=private_ips.split(",")[0] or None,
            tags=vm.get("tags") or {},
        )


__all__ = ["AzureCliComputeProvider"]
