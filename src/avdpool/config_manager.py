"""Configuration management module.

This module handles persistent orchestrator configuration stored in TOML:
scaling bounds, timeouts, the session host template and setup script options.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation
- Secrets (domain join password) are referenced by environment variable name,
  never stored in the file
"""

import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for Python versions shipping tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

from avdpool.capacity_planner import ScalingConfig

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class TimeoutConfig:
    """Bounded waits used during a reconciliation pass (seconds)."""

    lock_timeout_seconds: float = 3600.0
    resume_ready_timeout: float = 300.0  # 5 minutes
    create_ready_timeout: float = 600.0  # 10 minutes
    script_timeout: float = 1200.0  # 20 minutes
    script_poll_interval: float = 15.0
    ready_poll_interval: float = 10.0

    def __post_init__(self):
        for name, value in asdict(self).items():
            if value <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass
class HostTemplate:
    """Template for new session host compute nodes."""

    name_prefix: str = "shvm-"
    image: str = "MicrosoftWindowsDesktop:windows-11:win11-22h2-avd:latest"
    size: str = "Standard_D2s_v4"
    security_type: str = "TrustedLaunch"
    operating_system: str = "windows"
    admin_username: str = "avdadmin"
    admin_password_env: str = "AVDPOOL_ADMIN_PASSWORD"
    tags: dict[str, str] = field(
        default_factory=lambda: {"created-by": "avdpool: capacity reconciler"}
    )


@dataclass
class SetupScriptConfig:
    """Options for the session host setup script."""

    domain_name: str | None = None
    domain_username: str | None = None
    domain_password_env: str = "AVDPOOL_DOMAIN_PASSWORD"
    organizational_unit_path: str | None = None
    avd_agent_url: str | None = None
    avd_bootloader_url: str | None = None
    restart_after_setup: bool = True
    restart_delay_seconds: int = 5

    @property
    def domain_join_enabled(self) -> bool:
        return bool(self.domain_name)


@dataclass
class OrchestratorConfig:
    """Orchestrator configuration data."""

    name: str = "default"
    resource_group: str | None = None
    location: str = "eastus"
    subnet_id: str | None = None
    app_group_prefix: str = ""
    slot_suffix: str = "-linux-avd"
    workspace_prefix: str = ""
    users_group_id: str | None = None
    max_workers: int = 8
    sweep_orphaned_nodes: bool = True
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    host_template: HostTemplate = field(default_factory=HostTemplate)
    setup_script: SetupScriptConfig = field(default_factory=SetupScriptConfig)

    def __post_init__(self):
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")

    def slot_name(self, workload_id: str) -> str:
        """Application group name acting as the reservation slot of a workload."""
        return f"{self.app_group_prefix}{workload_id}{self.slot_suffix}"

    def workspace_name(self, pool: str) -> str:
        """Workspace that publishes the slots of pool."""
        return f"{self.workspace_prefix}{pool}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to nested dictionary, excluding None values."""
        return _drop_none(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        """Create from dictionary.

        Raises:
            ValueError: If a value fails validation
            TypeError: If a section contains unknown keys
        """
        return cls(
            name=data.get("name", "default"),
            resource_group=data.get("resource_group"),
            location=data.get("location", "eastus"),
            subnet_id=data.get("subnet_id"),
            app_group_prefix=data.get("app_group_prefix", ""),
            slot_suffix=data.get("slot_suffix", "-linux-avd"),
            workspace_prefix=data.get("workspace_prefix", ""),
            users_group_id=data.get("users_group_id"),
            max_workers=data.get("max_workers", 8),
            sweep_orphaned_nodes=data.get("sweep_orphaned_nodes", True),
            scaling=ScalingConfig(**data.get("scaling", {})),
            timeouts=TimeoutConfig(**data.get("timeouts", {})),
            host_template=HostTemplate(**data.get("host_template", {})),
            setup_script=SetupScriptConfig(**data.get("setup_script", {})),
        )


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    # TOML has no null
    result: dict[str, Any] = {}
    for key, value in data.items():
        if value is None:
            continue
        result[key] = _drop_none(value) if isinstance(value, dict) else value
    return result


class ConfigManager:
    """Manage the avdpool configuration file.

    Configuration is stored at ~/.avdpool/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".avdpool"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _validate_config_path(cls, path: Path) -> Path:
        """Validate configuration file path for security.

        Args:
            path: Path to validate

        Returns:
            Validated (resolved) path

        Raises:
            ConfigError: If path is outside allowed directories
        """
        resolved_path = path.resolve()

        allowed_dirs = [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),  # Allow pytest tmp_path
        ]

        for allowed_dir in allowed_dirs:
            try:
                resolved_path.relative_to(allowed_dir)
                return resolved_path
            except ValueError:
                continue

        raise ConfigError(
            f"Config path outside allowed directories: {resolved_path}\n"
            f"Allowed directories:\n"
            f"  - {cls.DEFAULT_CONFIG_DIR}\n"
            f"  - {Path.cwd()}"
        )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            Path to config file

        Raises:
            ConfigError: If path is invalid or outside allowed directories
        """
        if custom_path:
            path = cls._validate_config_path(Path(custom_path).expanduser())
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure config directory exists with secure permissions.

        Raises:
            ConfigError: If directory creation fails
        """
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)
            logger.debug(f"Config directory ready: {cls.DEFAULT_CONFIG_DIR}")
            return cls.DEFAULT_CONFIG_DIR

        except Exception as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> OrchestratorConfig:
        """Load configuration from file.

        Args:
            custom_path: Custom config file path (optional)

        Returns:
            OrchestratorConfig object (defaults if no file exists)

        Raises:
            ConfigError: If loading or validation fails
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return OrchestratorConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]

            logger.debug(f"Loaded config from: {config_path}")
            return OrchestratorConfig.from_dict(data)

        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: OrchestratorConfig, custom_path: str | None = None) -> Path:
        """Save configuration to file.

        Existing comments and formatting are preserved by tomlkit.

        Args:
            config: Configuration to save
            custom_path: Custom config file path (optional)

        Returns:
            Path the configuration was written to

        Raises:
            ConfigError: If saving fails or path is outside allowed directories
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = cls._validate_config_path(Path(custom_path).expanduser())
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e


__all__ = [
    "ConfigError",
    "ConfigManager",
    "HostTemplate",
    "OrchestratorConfig",
    "SetupScriptConfig",
    "TimeoutConfig",
]
