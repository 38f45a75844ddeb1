"""Session host setup script builder.

Build the PowerShell script that turns a fresh compute node into a session
host: optional domain join, AVD agent + boot loader install registered with the
pool's token, optional restart.

Security Requirements:
- Values are embedded as single-quoted PowerShell literals
- The domain password is read from the environment, never from config
- The registration token is never logged
"""

import logging
import os

from avdpool.config_manager import SetupScriptConfig

logger = logging.getLogger(__name__)


class SetupScriptError(Exception):
    """Raised when the setup script cannot be built."""

    pass


class SetupScriptBuilder:
    """Build session host setup scripts from configuration."""

    LOG_PATH = r"C:\avdpool\setup.log"

    @classmethod
    def build(cls, config: SetupScriptConfig, registration_token: str) -> str:
        """Build the setup script with the registration token substituted in.

        Args:
            config: Setup script configuration
            registration_token: Host pool registration token

        Returns:
            str: PowerShell script

        Raises:
            SetupScriptError: If required values are missing
        """
        if not registration_token:
            raise SetupScriptError("Registration token cannot be empty")

        sections = [cls._script_start()]

        if config.domain_join_enabled:
            sections.append(cls._join_domain(config))

        sections.append(cls._install_avd(config, registration_token))

        if config.restart_after_setup:
            sections.append(cls._restart(config.restart_delay_seconds))

        sections.append(cls._script_end())

        logger.debug(
            f"Built setup script: domain_join={config.domain_join_enabled}, "
            f"restart={config.restart_after_setup}"
        )
        return "\n\n".join(sections) + "\n"

    @classmethod
    def _script_start(cls) -> str:
        log_path = cls._quote(cls.LOG_PATH)
        return "\n".join(
            [
                "$ErrorActionPreference = 'Stop'",
                f"New-Item -ItemType Directory -Force -Path (Split-Path {log_path}) | Out-Null",
                f"Start-Transcript -Path {log_path} -Append",
            ]
        )

    @classmethod
    def _join_domain(cls, config: SetupScriptConfig) -> str:
        if not config.domain_username:
            raise SetupScriptError("domain_username is required when domain_name is set")

        password = os.environ.get(config.domain_password_env)
        if not password:
            raise SetupScriptError(
                f"Domain join password not set (environment variable {config.domain_password_env})"
            )

        lines = [
            "# Join Active Directory domain",
            f"$password = ConvertTo-SecureString {cls._quote(password)} -AsPlainText -Force",
            "$credential = New-Object System.Management.Automation.PSCredential("
            f"{cls._quote(config.domain_username)}, $password)",
        ]

        join = f"Add-Computer -DomainName {cls._quote(config.domain_name or '')} -Credential $credential"
        if config.organizational_unit_path:
            join += f" -OUPath {cls._quote(config.organizational_unit_path)}"
        lines.append(join + " -Force")

        return "\n".join(lines)

    @classmethod
    def _install_avd(cls, config: SetupScriptConfig, registration_token: str) -> str:
        if not config.avd_agent_url or not config.avd_bootloader_url:
            raise SetupScriptError("avd_agent_url and avd_bootloader_url are required")

        return "\n".join(
            [
                "# Install AVD agent and boot loader",
                "$agent = Join-Path $env:TEMP 'RDAgent.msi'",
                "$bootloader = Join-Path $env:TEMP 'RDAgentBootLoader.msi'",
                f"Invoke-WebRequest -UseBasicParsing -Uri {cls._quote(config.avd_agent_url)} -OutFile $agent",
                f"Invoke-WebRequest -UseBasicParsing -Uri {cls._quote(config.avd_bootloader_url)} -OutFile $bootloader",
                "Start-Process msiexec.exe -Wait -ArgumentList @('/i', $agent, '/quiet', "
                f"'REGISTRATIONTOKEN={cls._escape(registration_token)}')",
                "Start-Process msiexec.exe -Wait -ArgumentList @('/i', $bootloader, '/quiet')",
            ]
        )

    @classmethod
    def _restart(cls, delay_seconds: int) -> str:
        return "\n".join(
            [
                "# Restart so the agent registers with the host pool",
                f"shutdown.exe /r /t {int(delay_seconds)}",
            ]
        )

    @classmethod
    def _script_end(cls) -> str:
        return "Stop-Transcript"

    @classmethod
    def _escape(cls, value: str) -> str:
        return value.replace("'", "''")

    @classmethod
    def _quote(cls, value: str) -> str:
        """Quote value as a single-quoted PowerShell literal."""
        return f"'{cls._escape(value)}'"


__all__ = ["SetupScriptBuilder", "SetupScriptError"]
