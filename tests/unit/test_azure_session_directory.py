"""Tests for the az CLI session directory."""

from unittest.mock import MagicMock, patch

import pytest

from avdpool.azure_cli_executor import AzureCliError, AzureResourceNotFoundError
from avdpool.azure_session_directory import AzureCliSessionDirectory
from avdpool.config_manager import OrchestratorConfig
from avdpool.models import SessionHost
from avdpool.providers import ReadyTimeoutError, SessionDirectoryError

POOL = "HP-Pooled-dev"
HOST_POOL_PATH = f"/subscriptions/sub-id/resourceGroups/avd-rg/providers/x/hostpools/{POOL}"


@pytest.fixture
def directory():
    return AzureCliSessionDirectory(
        resource_group="avd-rg", slot_suffix="-linux-avd", ready_poll_interval=2.0
    )


def _host(node_id, status="Available", sessions=0):
    return {
        "name": f"{POOL}/{node_id}.corp.local",
        "status": status,
        "resourceId": f"/subscriptions/sub-id/virtualMachines/{node_id}",
        "sessions": sessions,
    }


class TestConstruction:
    def test_requires_resource_group(self):
        with pytest.raises(SessionDirectoryError):
            AzureCliSessionDirectory(resource_group="")

    def test_from_config(self):
        config = OrchestratorConfig(resource_group="avd-rg", app_group_prefix="ag-")
        directory = AzureCliSessionDirectory.from_config(config)
        assert directory.app_group_prefix == "ag-"
        assert directory.slot_suffix == "-linux-avd"
        assert directory.ready_poll_interval == config.timeouts.ready_poll_interval
        assert directory.location == config.location


class TestSessionHosts:
    @patch("avdpool.azure_session_directory.run_az_json")
    def test_list_hosts(self, mock_json: MagicMock, directory):
        mock_json.return_value = [_host("shvm-1", sessions=2), _host("shvm-2", status=None)]

        hosts = directory.list_hosts(POOL)

        assert [h.name for h in hosts] == [
            f"{POOL}/shvm-1.corp.local",
            f"{POOL}/shvm-2.corp.local",
        ]
        assert hosts[0].sessions == 2
        assert hosts[1].status is None
        assert mock_json.call_args.kwargs["poll"] is False
        cmd = mock_json.call_args[0][0]
        assert cmd[cmd.index("--host-pool-name") + 1] == POOL

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_list_hosts_failure(self, mock_json: MagicMock, directory):
        mock_json.side_effect = AzureCliError("Forbidden")

        with pytest.raises(SessionDirectoryError, match="Forbidden"):
            directory.list_hosts(POOL)

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_delete_host_uses_display_name(self, mock_json: MagicMock, directory):
        directory.delete_host(SessionHost(name=f"{POOL}/shvm-1.corp.local"))

        cmd = mock_json.call_args[0][0]
        assert cmd[cmd.index("--host-pool-name") + 1] == POOL
        assert cmd[cmd.index("--name") + 1] == "shvm-1.corp.local"
        assert cmd[cmd.index("--force") + 1] == "true"

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_delete_missing_host_succeeds(self, mock_json: MagicMock, directory):
        mock_json.side_effect = AzureResourceNotFoundError("ResourceNotFound")
        directory.delete_host(SessionHost(name=f"{POOL}/shvm-1.corp.local"))

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_delete_host_failure(self, mock_json: MagicMock, directory):
        mock_json.side_effect = AzureCliError("Conflict")

        with pytest.raises(SessionDirectoryError, match="Conflict"):
            directory.delete_host(SessionHost(name=f"{POOL}/shvm-1.corp.local"))


class TestWaitForReady:
    @pytest.fixture(autouse=True)
    def fake_clock(self):
        with patch("avdpool.azure_session_directory.time") as mock_time:
            mock_time.monotonic.side_effect = [0.0, 5.0, 10.0, 15.0]
            yield mock_time

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_waits_until_available(self, mock_json: MagicMock, directory, fake_clock):
        mock_json.side_effect = [
            [],
            [_host("SHVM-1", status="Unavailable")],
            [_host("shvm-2"), _host("SHVM-1")],
        ]

        host = directory.wait_for_ready(POOL, "shvm-1", timeout=60)

        assert host.name == f"{POOL}/SHVM-1.corp.local"
        assert fake_clock.sleep.call_count == 2
        fake_clock.sleep.assert_called_with(2.0)
        assert all(c.kwargs["poll"] is True for c in mock_json.call_args_list)

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_timeout_reports_last_status(self, mock_json: MagicMock, directory):
        mock_json.return_value = [_host("shvm-1", status="Upgrading")]

        with pytest.raises(ReadyTimeoutError, match="last status: Upgrading"):
            directory.wait_for_ready(POOL, "shvm-1", timeout=8)

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_timeout_when_never_registered(self, mock_json: MagicMock, directory):
        mock_json.return_value = [{"name": "malformed"}]

        with pytest.raises(ReadyTimeoutError, match="not registered"):
            directory.wait_for_ready(POOL, "shvm-1", timeout=8)


class TestApplicationGroups:
    @patch("avdpool.azure_session_directory.run_az_json")
    def test_list_app_groups_filters_by_pool(self, mock_json: MagicMock, directory):
        mock_json.return_value = [
            {"name": "uvm-1-linux-avd", "id": "/ag/1", "hostPoolArmPath": HOST_POOL_PATH},
            {
                "name": "renamed",
                "id": "/ag/2",
                "hostPoolArmPath": HOST_POOL_PATH.upper(),
                "tags": {"vmid": "uvm-2"},
            },
            {"name": "desktop", "id": "/ag/3", "hostPoolArmPath": HOST_POOL_PATH},
            {"name": "uvm-9-linux-avd", "hostPoolArmPath": "/x/hostpools/other-pool"},
        ]

        groups = directory.list_app_groups(POOL)

        assert [(g.name, g.workload_id) for g in groups] == [
            ("uvm-1-linux-avd", "uvm-1"),
            ("renamed", "uvm-2"),
            ("desktop", None),
        ]
        assert groups[0].resource_id == "/ag/1"

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_delete_app_group(self, mock_json: MagicMock, directory):
        directory.delete_app_group("uvm-1-linux-avd")

        cmd = mock_json.call_args[0][0]
        assert cmd[:4] == ["az", "desktopvirtualization", "applicationgroup", "delete"]

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_delete_missing_app_group_succeeds(self, mock_json: MagicMock, directory):
        mock_json.side_effect = AzureResourceNotFoundError("ResourceNotFound")
        directory.delete_app_group("uvm-1-linux-avd")

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_list_assignments(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [
            {"id": "/ag/1"},
            [{"principalId": "user-1"}, {"principalId": None}, {"principalId": "user-2"}],
        ]

        assert directory.list_assignments("uvm-1-linux-avd") == ["user-1", "user-2"]
        scope_cmd = mock_json.call_args[0][0]
        assert scope_cmd[scope_cmd.index("--scope") + 1] == "/ag/1"

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_list_assignments_without_id(self, mock_json: MagicMock, directory):
        mock_json.return_value = {}

        with pytest.raises(SessionDirectoryError, match="no resource ID"):
            directory.list_assignments("uvm-1-linux-avd")


class TestRegistrationToken:
    @patch("avdpool.azure_session_directory.run_az_json")
    def test_existing_token(self, mock_json: MagicMock, directory):
        mock_json.return_value = {"token": "tok-123", "expirationTime": "2099-01-01T00:00:00Z"}

        assert directory.retrieve_registration_token(POOL) == "tok-123"
        assert mock_json.call_count == 1

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_renews_missing_token(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [{"token": None}, {"registrationInfo": {"token": "tok-new"}}]

        assert directory.retrieve_registration_token(POOL) == "tok-new"
        update = mock_json.call_args[0][0]
        assert "registration-token-operation=Update" in update
        assert any(arg.startswith("expiration-time=") for arg in update)

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_renewal_without_token(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [None, {}]

        with pytest.raises(SessionDirectoryError, match="no registration token"):
            directory.retrieve_registration_token(POOL)


class TestSlotPublishing:
    """Test slot creation, workspace membership and assignments."""

    WORKSPACE = f"WS-{POOL}"
    AG_ID = "/subscriptions/sub-id/providers/x/applicationgroups/uvm-1-linux-avd"

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_create_app_group_tags_workload(self, mock_json: MagicMock):
        directory = AzureCliSessionDirectory(
            resource_group="avd-rg", slot_suffix="-linux-avd", location="westeurope"
        )
        mock_json.side_effect = [
            {"id": HOST_POOL_PATH},
            {"name": "uvm-1-linux-avd", "id": self.AG_ID},
        ]

        slot = directory.create_app_group(POOL, "uvm-1-linux-avd", "uvm-1")

        assert slot.name == "uvm-1-linux-avd"
        assert slot.resource_id == self.AG_ID
        assert slot.workload_id == "uvm-1"
        cmd = mock_json.call_args[0][0]
        assert cmd[:4] == ["az", "desktopvirtualization", "applicationgroup", "create"]
        assert cmd[cmd.index("--application-group-type") + 1] == "RemoteApp"
        assert cmd[cmd.index("--host-pool-arm-path") + 1] == HOST_POOL_PATH
        assert cmd[cmd.index("--tags") + 1] == "vmid=uvm-1"
        assert cmd[cmd.index("--location") + 1] == "westeurope"

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_create_app_group_without_host_pool_id(self, mock_json: MagicMock, directory):
        mock_json.return_value = {}

        with pytest.raises(SessionDirectoryError, match="no resource ID"):
            directory.create_app_group(POOL, "uvm-1-linux-avd", "uvm-1")

        assert mock_json.call_count == 1

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_add_to_workspace_appends_reference(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [
            {"id": self.AG_ID},
            {"applicationGroupReferences": ["/ag/desktop"]},
            {},
        ]

        directory.add_app_group_to_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        update = mock_json.call_args[0][0]
        assert update[:4] == ["az", "desktopvirtualization", "workspace", "update"]
        refs = update[update.index("--application-group-references") + 1 :]
        assert refs == ["/ag/desktop", self.AG_ID]

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_add_to_workspace_is_idempotent(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [
            {"id": self.AG_ID},
            {"applicationGroupReferences": [self.AG_ID.upper()]},
        ]

        directory.add_app_group_to_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        assert mock_json.call_count == 2

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_add_to_missing_workspace(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [{"id": self.AG_ID}, AzureResourceNotFoundError("NotFound")]

        with pytest.raises(SessionDirectoryError, match="not found"):
            directory.add_app_group_to_workspace(self.WORKSPACE, "uvm-1-linux-avd")

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_remove_from_workspace_matches_by_name(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [
            {"applicationGroupReferences": [self.AG_ID, "/ag/desktop"]},
            {},
        ]

        directory.remove_app_group_from_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        update = mock_json.call_args[0][0]
        refs = update[update.index("--application-group-references") + 1 :]
        assert refs == ["/ag/desktop"]

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_remove_last_reference_clears_list(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [{"applicationGroupReferences": [self.AG_ID]}, {}]

        directory.remove_app_group_from_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        update = mock_json.call_args[0][0]
        assert update[update.index("--application-group-references") + 1 :] == ["[]"]

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_remove_from_missing_workspace_succeeds(self, mock_json: MagicMock, directory):
        mock_json.side_effect = AzureResourceNotFoundError("ResourceNotFound")

        directory.remove_app_group_from_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        assert mock_json.call_count == 1

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_remove_absent_reference_skips_update(self, mock_json: MagicMock, directory):
        mock_json.return_value = {"applicationGroupReferences": ["/ag/desktop"]}

        directory.remove_app_group_from_workspace(self.WORKSPACE, "uvm-1-linux-avd")

        assert mock_json.call_count == 1

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_assign_principal(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [{"id": self.AG_ID}, {"id": "/role-assignment"}]

        directory.assign_principal("uvm-1-linux-avd", "group-id", "Group")

        cmd = mock_json.call_args[0][0]
        assert cmd[:4] == ["az", "role", "assignment", "create"]
        assert cmd[cmd.index("--assignee-object-id") + 1] == "group-id"
        assert cmd[cmd.index("--assignee-principal-type") + 1] == "Group"
        assert cmd[cmd.index("--role") + 1] == "Desktop Virtualization User"
        assert cmd[cmd.index("--scope") + 1] == self.AG_ID

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_existing_assignment_succeeds(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [
            {"id": self.AG_ID},
            AzureCliError("(RoleAssignmentExists) The role assignment already exists."),
        ]

        directory.assign_principal("uvm-1-linux-avd", "user-1")

    @patch("avdpool.azure_session_directory.run_az_json")
    def test_assignment_failure(self, mock_json: MagicMock, directory):
        mock_json.side_effect = [{"id": self.AG_ID}, AzureCliError("AuthorizationFailed")]

        with pytest.raises(SessionDirectoryError, match="AuthorizationFailed"):
            directory.assign_principal("uvm-1-linux-avd", "user-1")
