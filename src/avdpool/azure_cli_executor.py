"""Standardized Azure CLI subprocess execution with retry logic.

Provides run_az_command(), a thin wrapper around subprocess.run that adds
automatic retry with exponential backoff for transient Azure CLI failures
(CalledProcessError, TimeoutExpired), and run_az_json() for commands whose
output is parsed.

Status polls pass poll=True to retry with the poll_* settings of RetryConfig.

"Not found" failures are not transient: they raise AzureResourceNotFoundError
immediately so callers can treat a missing resource as a normal outcome.

Usage:
    from avdpool.azure_cli_executor import run_az_command, run_az_json

    result = run_az_command(["az", "vm", "start", "--name", "shvm-0123456789", ...])
    hosts = run_az_json(["az", "desktopvirtualization", "sessionhost", "list", ...])
"""

import json
import logging
import subprocess
from typing import Any

from avdpool.retry_config import get_retry_config
from avdpool.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("ResourceNotFound", "NotFound", "was not found", "could not be found")
SENSITIVE_FLAGS = ("--admin-password", "--password", "--registration-token", "--script")


class AzureCliError(Exception):
    """Raised when an Azure CLI command fails or returns unusable output."""

    def __init__(self, message: str, stderr: str | None = None):
        super().__init__(message)
        self.stderr = stderr


class AzureResourceNotFoundError(AzureCliError):
    """Raised when the Azure resource addressed by a command does not exist."""

    pass


def _mask_command(cmd: list[str]) -> list[str]:
    """Replace values following sensitive flags with ***."""
    masked = list(cmd)
    for i, arg in enumerate(masked[:-1]):
        if arg in SENSITIVE_FLAGS:
            masked[i + 1] = "***"
    return masked


def _is_not_found(stderr: str | None) -> bool:
    return bool(stderr) and any(marker in stderr for marker in NOT_FOUND_MARKERS)


def run_az_command(
    cmd: list[str],
    *,
    timeout: int = 30,
    max_attempts: int | None = None,
    check: bool = True,
    poll: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Execute an Azure CLI command with retry logic.

    Args:
        cmd: Command list starting with "az", e.g. ["az", "vm", "list"]
        timeout: Subprocess timeout in seconds (default: 30)
        max_attempts: Number of retry attempts (default: from RetryConfig)
        check: If True, raise on non-zero exit (default: True)
        poll: Use the poll_* retry settings instead of the azure_cli_* ones

    Returns:
        subprocess.CompletedProcess with stdout/stderr

    Raises:
        AzureResourceNotFoundError: If the addressed resource does not exist (no retry)
        subprocess.CalledProcessError: After retries exhausted (when check=True)
        subprocess.TimeoutExpired: After retries exhausted
    """
    config = get_retry_config()
    if poll:
        attempts = max_attempts or config.poll_max_attempts
        initial_delay, max_delay = config.poll_initial_delay, config.poll_max_delay
    else:
        attempts = max_attempts or config.azure_cli_max_attempts
        initial_delay, max_delay = config.azure_cli_initial_delay, config.azure_cli_max_delay

    @retry_with_exponential_backoff(
        max_attempts=attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        jitter=config.jitter_enabled,
        retryable_exceptions=(subprocess.CalledProcessError, subprocess.TimeoutExpired),
    )
    def _run() -> subprocess.CompletedProcess[str]:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
        if result.returncode != 0 and check:
            if _is_not_found(result.stderr):
                raise AzureResourceNotFoundError(
                    f"Resource not found: {' '.join(_mask_command(cmd)[:4])}",
                    stderr=result.stderr,
                )
            raise subprocess.CalledProcessError(
                result.returncode, _mask_command(cmd), output=result.stdout, stderr=result.stderr
            )
        return result

    return _run()


def run_az_json(
    cmd: list[str],
    *,
    timeout: int = 30,
    max_attempts: int | None = None,
    poll: bool = False,
) -> Any:
    """Execute an Azure CLI command and parse its JSON output.

    Args:
        cmd: Command list starting with "az" (without --output)
        timeout: Subprocess timeout in seconds (default: 30)
        max_attempts: Number of retry attempts (default: from RetryConfig)
        poll: Use the poll_* retry settings instead of the azure_cli_* ones

    Returns:
        Parsed JSON (None for empty output)

    Raises:
        AzureResourceNotFoundError: If the addressed resource does not exist
        AzureCliError: If the command fails or the output is not JSON
    """
    try:
        result = run_az_command(
            [*cmd, "--output", "json"], timeout=timeout, max_attempts=max_attempts, poll=poll
        )
    except AzureCliError:
        raise
    except subprocess.CalledProcessError as e:
        raise AzureCliError(
            f"Azure CLI command failed: {e.stderr.strip() if e.stderr else e}", stderr=e.stderr
        ) from e
    except subprocess.TimeoutExpired as e:
        raise AzureCliError(f"Azure CLI command timed out after {timeout}s") from e

    if not result.stdout.strip():
        return None

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise AzureCliError(f"Failed to parse Azure CLI output: {e}") from e


__all__ = [
    "AzureCliError",
    "AzureResourceNotFoundError",
    "run_az_command",
    "run_az_json",
]
