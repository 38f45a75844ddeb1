"""Unit tests for the avdpool command line interface.

Test Coverage:
- plan previews with configured and overridden bounds
- ensure-capacity, rebuild-reservations and notify with a patched reconciler
- status with in-memory providers
- config init/show
- Usage errors show contextual help
"""

from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from avdpool import __version__
from avdpool.capacity_reconciler import CapacityLockTimeoutError, ReconcileResult
from avdpool.cli import cli
from avdpool.config_manager import ConfigManager, OrchestratorConfig
from avdpool.models import NodeState
from avdpool.providers import ProviderError
from avdpool.reservation_rebuilder import ReservationRebuildError


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def configured(isolated_config):
    """Write a config with a resource group into the isolated config dir."""
    ConfigManager.save_config(OrchestratorConfig(resource_group="avd-rg"))
    return isolated_config


@pytest.fixture
def mock_reconciler():
    reconciler = MagicMock()
    with patch("avdpool.cli.build_reconciler", return_value=reconciler):
        yield reconciler


def _invoke(runner, args):
    return runner.invoke(cli, args, obj={})


class TestPlan:
    """Test the plan preview command."""

    def test_plan_with_defaults(self, runner, isolated_config):
        result = _invoke(runner, ["plan", "--reservations", "3"])

        assert result.exit_code == 0
        assert "Target hosts: 2" in result.output
        assert "scale_up" in result.output

    def test_plan_overrides(self, runner, isolated_config):
        result = _invoke(
            runner, ["plan", "--reservations", "39", "--max-sessions", "4", "--current", "10"]
        )

        assert result.exit_code == 0
        assert "Target hosts: 10" in result.output

    def test_plan_invalid_bounds(self, runner, isolated_config):
        result = _invoke(
            runner, ["plan", "--reservations", "3", "--min-hosts", "5", "--max-hosts", "2"]
        )

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_plan_zero_sessions_is_rejected(self, runner, isolated_config):
        result = _invoke(runner, ["plan", "--reservations", "3", "--max-sessions", "0"])

        assert result.exit_code == 1
        assert "max_sessions_per_host" in result.output


class TestEnsureCapacity:
    def test_reports_result(self, runner, configured, mock_reconciler):
        mock_reconciler.ensure_capacity.return_value = ReconcileResult(
            pool="HP-Pooled-dev", reservations=3, target=2, up_count=2, resumed=["a"]
        )

        result = _invoke(runner, ["ensure-capacity", "--pool", "HP-Pooled-dev"])

        assert result.exit_code == 0
        assert "Pool HP-Pooled-dev: 2/2 hosts up" in result.output
        mock_reconciler.ensure_capacity.assert_called_once_with("HP-Pooled-dev")

    def test_requires_resource_group(self, runner, isolated_config, mock_reconciler):
        result = _invoke(runner, ["ensure-capacity", "--pool", "HP-Pooled-dev"])

        assert result.exit_code == 1
        assert "resource_group is not configured" in result.output
        mock_reconciler.ensure_capacity.assert_not_called()

    def test_reconcile_error(self, runner, configured, mock_reconciler):
        mock_reconciler.ensure_capacity.side_effect = CapacityLockTimeoutError("lock busy")

        result = _invoke(runner, ["ensure-capacity", "--pool", "HP-Pooled-dev"])

        assert result.exit_code == 1
        assert "lock busy" in result.output

    def test_missing_pool_shows_help(self, runner, configured):
        result = _invoke(runner, ["ensure-capacity"])

        assert result.exit_code != 0
        assert "Usage:" in result.output


class TestRebuildReservations:
    def test_lists_reservations(self, runner, configured, mock_reconciler):
        mock_reconciler.rebuild_reservations.return_value = frozenset({"uvm-2", "uvm-1"})

        result = _invoke(runner, ["rebuild-reservations", "--pool", "HP-Pooled-dev"])

        assert result.exit_code == 0
        assert "2 reservations" in result.output
        assert result.output.index("uvm-1") < result.output.index("uvm-2")

    def test_rebuild_error(self, runner, configured, mock_reconciler):
        mock_reconciler.rebuild_reservations.side_effect = ReservationRebuildError("inventory")

        result = _invoke(runner, ["rebuild-reservations", "--pool", "HP-Pooled-dev"])

        assert result.exit_code == 1


class TestNotify:
    def test_started_event(self, runner, configured, mock_reconciler):
        mock_reconciler.ensure_capacity.return_value = ReconcileResult(
            pool="HP-Pooled-dev", reservations=1, target=1, up_count=1
        )

        result = _invoke(
            runner, ["notify", "started", "--pool", "HP-Pooled-dev", "--workload-id", "uvm-1"]
        )

        assert result.exit_code == 0
        assert "Workload uvm-1 started" in result.output
        mock_reconciler.directory.delete_app_group.assert_not_called()

    def test_created_event_assigns_user(self, runner, configured, mock_reconciler):
        mock_reconciler.config = OrchestratorConfig(resource_group="avd-rg", workspace_prefix="WS-")
        mock_reconciler.ensure_capacity.return_value = ReconcileResult(
            pool="HP-Pooled-dev", reservations=0, target=1, up_count=1
        )

        result = _invoke(
            runner,
            [
                "notify", "created",
                "--pool", "HP-Pooled-dev",
                "--workload-id", "uvm-1",
                "--user-id", "user-object-id",
            ],
        )

        assert result.exit_code == 0
        directory = mock_reconciler.directory
        directory.create_app_group.assert_called_once_with(
            "HP-Pooled-dev", "uvm-1-linux-avd", "uvm-1"
        )
        directory.add_app_group_to_workspace.assert_called_once_with(
            "WS-HP-Pooled-dev", "uvm-1-linux-avd"
        )
        directory.assign_principal.assert_called_once_with(
            "uvm-1-linux-avd", "user-object-id", "User"
        )

    def test_slot_failure_is_reported(self, runner, configured, mock_reconciler):
        mock_reconciler.config = OrchestratorConfig(resource_group="avd-rg")
        mock_reconciler.directory.create_app_group.side_effect = ProviderError("quota")

        result = _invoke(
            runner, ["notify", "started", "--pool", "HP-Pooled-dev", "--workload-id", "uvm-1"]
        )

        assert result.exit_code == 1
        assert "create_app_group" in result.output

    def test_invalid_event(self, runner, configured, mock_reconciler):
        result = _invoke(
            runner, ["notify", "rebooted", "--pool", "HP-Pooled-dev", "--workload-id", "uvm-1"]
        )

        assert result.exit_code != 0
        mock_reconciler.ensure_capacity.assert_not_called()


class TestStatus:
    def test_shows_classification(self, runner, configured, compute, directory, pool):
        compute.add_node("shvm-0000000001")
        directory.add_host(pool, "shvm-0000000001", "Available")
        compute.add_node("shvm-0000000002", state=NodeState.DEALLOCATED)
        directory.add_host(pool, "shvm-0000000002", "Shutdown")
        directory.add_host(pool, "shvm-0000000003", None)

        with (
            patch("avdpool.cli.AzureCliComputeProvider.from_config", return_value=compute),
            patch("avdpool.cli.AzureCliSessionDirectory.from_config", return_value=directory),
        ):
            result = _invoke(runner, ["status", "--pool", pool])

        assert result.exit_code == 0
        assert "Session Hosts" in result.output
        assert "available=1, shutdown=1, stale=1" in result.output

    def test_listing_error(self, runner, configured, compute, directory, pool):
        directory.fail_list_hosts = True

        with (
            patch("avdpool.cli.AzureCliComputeProvider.from_config", return_value=compute),
            patch("avdpool.cli.AzureCliSessionDirectory.from_config", return_value=directory),
        ):
            result = _invoke(runner, ["status", "--pool", pool])

        assert result.exit_code == 1


class TestConfigCommands:
    def test_init_and_show(self, runner, isolated_config):
        result = _invoke(runner, ["config", "init", "--rg", "avd-rg", "--location", "westus"])

        assert result.exit_code == 0
        assert (isolated_config / "config.toml").exists()

        result = _invoke(runner, ["config", "show"])

        assert result.exit_code == 0
        assert 'resource_group = "avd-rg"' in result.output
        assert 'location = "westus"' in result.output

    def test_init_refuses_overwrite(self, runner, configured):
        result = _invoke(runner, ["config", "init", "--rg", "other-rg"])

        assert result.exit_code == 1
        assert "already exists" in result.output
        assert ConfigManager.load_config().resource_group == "avd-rg"

    def test_init_force(self, runner, configured):
        result = _invoke(runner, ["config", "init", "--rg", "other-rg", "--force"])

        assert result.exit_code == 0
        assert ConfigManager.load_config().resource_group == "other-rg"


class TestAutoHelp:
    def test_unknown_command_shows_help(self, runner):
        result = _invoke(runner, ["ensure-capcity"])

        assert result.exit_code != 0
        assert "Usage:" in result.output

    def test_version(self, runner):
        result = _invoke(runner, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output
