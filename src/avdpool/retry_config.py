"""Configuration for retry logic.

Retry settings for Azure CLI calls, tunable per environment.

Design Philosophy:
- Sensible defaults: Works out of the box
- Environment-aware: Can be overridden via env vars
"""

import os
from dataclasses import dataclass


@dataclass
class RetryConfig:
    """Retry configuration settings.

    These settings control retry behavior of avdpool's Azure CLI calls.
    """

    # Azure CLI operations
    azure_cli_max_attempts: int = 3
    azure_cli_initial_delay: float = 1.0
    azure_cli_max_delay: float = 30.0

    # Status polls (run-command instance view, session host listing)
    poll_max_attempts: int = 2
    poll_initial_delay: float = 1.0
    poll_max_delay: float = 5.0

    # Global settings
    jitter_enabled: bool = True

    @classmethod
    def from_environment(cls) -> "RetryConfig":
        """Load retry configuration from environment variables.

        Environment variables (all optional):
            AVDPOOL_RETRY_MAX_ATTEMPTS: Default max attempts (default: 3)
            AVDPOOL_RETRY_INITIAL_DELAY: Default initial delay in seconds (default: 1.0)
            AVDPOOL_RETRY_MAX_DELAY: Default max delay in seconds (default: 30.0)
            AVDPOOL_RETRY_POLL_MAX_ATTEMPTS: Attempts per status poll call (default: 2)
            AVDPOOL_RETRY_POLL_INITIAL_DELAY: Poll retry initial delay (default: 1.0)
            AVDPOOL_RETRY_POLL_MAX_DELAY: Poll retry max delay (default: 5.0)
            AVDPOOL_RETRY_JITTER_ENABLED: Enable jitter (default: true)

        Returns:
            RetryConfig with values from environment or defaults
        """
        default_max_attempts = int(os.getenv("AVDPOOL_RETRY_MAX_ATTEMPTS", "3"))
        default_initial_delay = float(os.getenv("AVDPOOL_RETRY_INITIAL_DELAY", "1.0"))
        default_max_delay = float(os.getenv("AVDPOOL_RETRY_MAX_DELAY", "30.0"))
        jitter_enabled = os.getenv("AVDPOOL_RETRY_JITTER_ENABLED", "true").lower() == "true"

        return cls(
            azure_cli_max_attempts=int(
                os.getenv("AVDPOOL_RETRY_AZURE_CLI_MAX_ATTEMPTS", str(default_max_attempts))
            ),
            azure_cli_initial_delay=float(
                os.getenv("AVDPOOL_RETRY_AZURE_CLI_INITIAL_DELAY", str(default_initial_delay))
            ),
            azure_cli_max_delay=float(
                os.getenv("AVDPOOL_RETRY_AZURE_CLI_MAX_DELAY", str(default_max_delay))
            ),
            poll_max_attempts=int(os.getenv("AVDPOOL_RETRY_POLL_MAX_ATTEMPTS", "2")),
            poll_initial_delay=float(os.getenv("AVDPOOL_RETRY_POLL_INITIAL_DELAY", "1.0")),
            poll_max_delay=float(os.getenv("AVDPOOL_RETRY_POLL_MAX_DELAY", "5.0")),
            jitter_enabled=jitter_enabled,
        )


# Global configuration instance (lazily loaded)
_config: RetryConfig | None = None


def get_retry_config() -> RetryConfig:
    """Get global retry configuration.

    Returns:
        RetryConfig instance (loaded from environment on first access)

    Example:
        >>> config = get_retry_config()
        >>> print(f"Max attempts: {config.azure_cli_max_attempts}")
    """
    global _config
    if _config is None:
        _config = RetryConfig.from_environment()
    return _config


def reset_retry_config() -> None:
    """Reset global retry configuration.

    Forces reload from environment on next access.
    """
    global _config
    _config = None


__all__ = ["RetryConfig", "get_retry_config", "reset_retry_config"]
