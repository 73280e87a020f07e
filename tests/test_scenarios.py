"""End-to-end runs of the bundled scenarios against the in-memory cluster."""

import pytest

from faultline.config import HarnessSettings
from faultline.core.collaborator import DatabaseStatus
from faultline.core.port_allocator import PortAllocator
from faultline.faults import ChainState
from faultline.node.process import NodeState
from faultline.scenarios import (
    SCENARIOS,
    ConcurrentWritesScenario,
    ContendedLockScenario,
    CrashRestartScenario,
    PartitionScenario,
)
from faultline.testing.memory import InMemoryCluster
from tests.conftest import HarnessTestContext

pytestmark = pytest.mark.slow


@pytest.fixture
def run_scenario(
    test_context: HarnessTestContext,
    settings: HarnessSettings,
    port_allocator: PortAllocator,
):
    """Run a bundled scenario with the test settings and return (scenario, report)."""

    def _run(scenario_class, server_count=None):
        scenario = scenario_class(settings, allocator=port_allocator)
        test_context.orchestrators.append(scenario)
        report = scenario.run(server_count)
        return scenario, report

    return _run


class TestRegistry:
    """Test the scenario registry."""

    def test_bundled_names(self):
        """Test every bundled scenario is registered under its name."""
        assert set(SCENARIOS) == {
            "concurrent-writes",
            "crash-restart",
            "partition",
            "contended-lock",
        }
        assert SCENARIOS["partition"] is PartitionScenario

    def test_memory_cluster_by_default(self, settings: HarnessSettings):
        """Test bundled scenarios build an in-memory cluster when nothing is configured."""
        scenario = ConcurrentWritesScenario(settings)
        assert isinstance(scenario.client, InMemoryCluster)
        assert scenario.backend is scenario.client


class TestBundledScenarios:
    """Test the bundled scenarios pass against a healthy cluster."""

    def test_concurrent_writes(self, run_scenario):
        """Test two writers on three nodes replicate every record without conflicts."""
        scenario, report = run_scenario(ConcurrentWritesScenario)

        assert report.passed, report.failures
        assert report.expected == 2 * 400 + 1
        assert report.counts == {node_id: 801 for node_id in ("node-0", "node-1", "node-2")}
        assert report.conflicts == 0
        writers = {outcome.driver for outcome in report.outcomes if outcome.role == "writer"}
        assert writers == {"writer-0-0", "writer-1-1"}

    def test_crash_restart(self, run_scenario):
        """Test the victim is seen crashed, comes back and catches up."""
        scenario, report = run_scenario(CrashRestartScenario)

        assert report.passed, report.failures
        assert scenario.chain is not None
        assert scenario.chain.state == ChainState.COMPLETED
        victim = scenario.node(2)
        assert victim.start_count == 2
        assert set(report.counts) == {"node-0", "node-1", "node-2"}
        assert set(report.counts.values()) == {1001}
        events = scenario.membership.events_for("node-2")
        assert any(event.status == DatabaseStatus.NOT_AVAILABLE for event in events)

    def test_partition(self, run_scenario):
        """Test a split node converges after the heal."""
        scenario, report = run_scenario(PartitionScenario)

        assert report.passed, report.failures
        assert scenario.chain.state == ChainState.COMPLETED
        assert set(report.counts.values()) == {601}
        assert not scenario.client.is_partitioned("node-0", "node-2")

    def test_contended_lock(self, run_scenario):
        """Test conflicts happen and the counter equals the successful increments."""
        scenario, report = run_scenario(ContendedLockScenario)

        assert report.passed, report.failures
        assert report.conflicts > 0
        assert report.expected is None
        assert report.successes == sum(
            outcome.successes for outcome in scenario.workload.outcomes
        )

    def test_scenario_with_more_nodes(self, run_scenario):
        """Test the server count can be overridden per run."""
        scenario, report = run_scenario(ConcurrentWritesScenario, 4)

        assert report.passed, report.failures
        assert len(report.counts) == 4
        assert all(node.state == NodeState.STOPPED for node in scenario.topology)
