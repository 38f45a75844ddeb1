"""
Shared test fixtures for avdpool tests.

- In-memory compute provider and session directory fakes
- Orchestrator configuration with short timeouts
- A reconciler wired to the fakes
"""

import pytest

from avdpool.capacity_planner import ScalingConfig
from avdpool.capacity_reconciler import CapacityReconciler
from avdpool.config_manager import OrchestratorConfig, SetupScriptConfig, TimeoutConfig
from tests.mocks.fakes import FakeComputeProvider, FakeSessionDirectory

POOL = "HP-Pooled-test"


@pytest.fixture
def pool():
    return POOL


@pytest.fixture
def compute():
    return FakeComputeProvider()


@pytest.fixture
def directory(compute):
    return FakeSessionDirectory(compute)


@pytest.fixture
def orchestrator_config():
    """Configuration with max 2 sessions per host and 1..10 hosts."""
    return OrchestratorConfig(
        resource_group="avd-test-rg",
        max_workers=4,
        scaling=ScalingConfig(max_sessions_per_host=2, min_hosts=1, max_hosts=10),
        timeouts=TimeoutConfig(
            lock_timeout_seconds=5.0,
            resume_ready_timeout=30.0,
            create_ready_timeout=60.0,
            script_timeout=120.0,
            script_poll_interval=1.0,
            ready_poll_interval=1.0,
        ),
        setup_script=SetupScriptConfig(
            avd_agent_url="https://example.invalid/RDAgent.msi",
            avd_bootloader_url="https://example.invalid/RDAgentBootLoader.msi",
        ),
    )


@pytest.fixture
def reconciler(compute, directory, orchestrator_config):
    return CapacityReconciler(compute, directory, orchestrator_config)
