"""Pytest configuration and fixtures for faultline testing.

Fixtures hand out per-test settings rooted in ``tmp_path``, an isolated port
allocator and in-memory clusters. Everything a fixture starts (topologies,
proxies, orchestrators) is torn down afterwards so no relay thread or node
outlives its test.
"""

import sys
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from faultline.conditions import ConditionGate
from faultline.config import HarnessSettings
from faultline.core.collaborator import NodeAddress
from faultline.core.port_allocator import PortAllocator
from faultline.node.process import NodeConfig
from faultline.orchestrator import ClusterTestOrchestrator
from faultline.proxy.partition import PartitionProxy
from faultline.testing.memory import InMemoryCluster
from faultline.topology import ClusterTopology


class HarnessTestContext:
    """Tracks harness objects created by a test and cleans them up."""

    def __init__(self) -> None:
        self.topologies: list[ClusterTopology] = []
        self.proxies: list[PartitionProxy] = []
        self.orchestrators: list[ClusterTestOrchestrator] = []

    def __enter__(self) -> "HarnessTestContext":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Ensure all resources are released, newest first."""
        for orchestrator in reversed(self.orchestrators):
            try:
                orchestrator.teardown()
            except Exception as e:
                logger.warning(f"Error tearing down orchestrator: {e}")

        for topology in reversed(self.topologies):
            for node in topology:
                try:
                    node.crash()
                except Exception as e:
                    logger.warning(f"Error stopping {node.node_id}: {e}")
            topology.release()

        for proxy in reversed(self.proxies):
            proxy.shutdown()

        self.orchestrators.clear()
        self.topologies.clear()
        self.proxies.clear()


@pytest.fixture(autouse=True)
def _restore_logging() -> Generator[None, None, None]:
    """Undo any sink changes a test (or the CLI) made to loguru."""
    yield
    logger.remove()
    logger.add(lambda message: sys.stderr.write(message), level="DEBUG")


@pytest.fixture
def test_context() -> Generator[HarnessTestContext, None, None]:
    """Provides a clean harness context with automatic resource cleanup."""
    with HarnessTestContext() as ctx:
        yield ctx


@pytest.fixture
def port_allocator(tmp_path: Path) -> Generator[PortAllocator, None, None]:
    """Port allocator whose lock files live under this test's tmp_path.

    Example Usage:
        def test_two_ports(port_allocator):
            first, second = port_allocator.allocate_ports(2, "relay")
            assert first != second
    """
    allocator = PortAllocator(base_dir=tmp_path)
    yield allocator
    allocator.release_all()


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    """Harness settings tuned for fast in-process runs."""
    return HarnessSettings(
        root_dir=tmp_path / "cluster",
        poll_interval=0.02,
        readiness_timeout=5.0,
        shutdown_grace=2.0,
        convergence_timeout=10.0,
        execution_timeout=60.0,
        retry_backoff=0.001,
    )


@pytest.fixture
def gate() -> ConditionGate:
    """Condition gate polling every 10ms for up to 5s."""
    return ConditionGate(poll_interval=0.01, timeout=5.0)


@pytest.fixture
def memory_cluster() -> InMemoryCluster:
    """A fresh in-process cluster-under-test."""
    return InMemoryCluster()


@pytest.fixture
def memory_topology(
    test_context: HarnessTestContext,
    settings: HarnessSettings,
    memory_cluster: InMemoryCluster,
    port_allocator: PortAllocator,
) -> Any:
    """Factory building topologies backed by ``memory_cluster``.

    Example Usage:
        def test_three_nodes(memory_topology):
            topology = memory_topology(3)
            for node in topology:
                node.start()
    """

    def _build(server_count: int, **overrides: Any) -> ClusterTopology:
        topology_settings = settings.model_copy(update=overrides)
        topology = ClusterTopology.build(
            topology_settings,
            server_count,
            memory_cluster,
            allocator=port_allocator,
        )
        test_context.topologies.append(topology)
        return topology

    return _build


@pytest.fixture
def memory_nodes(memory_cluster: InMemoryCluster, tmp_path: Path) -> Any:
    """Factory launching bare in-memory nodes with a created database.

    Example Usage:
        def test_replication(memory_cluster, memory_nodes):
            first, second = memory_nodes(2)
            session = memory_cluster.open_session(first, "db")
    """

    def _launch(count: int, database: str = "db") -> list[NodeAddress]:
        addresses = []
        for ordinal in range(count):
            node_id = f"node-{ordinal}"
            memory_cluster.launch(
                NodeConfig(
                    node_id=node_id,
                    ordinal=ordinal,
                    host="127.0.0.1",
                    client_port=0,
                    internode_port=0,
                    root_dir=tmp_path / node_id,
                )
            )
            addresses.append(NodeAddress(node_id, "127.0.0.1", 0))
        memory_cluster.create_database(addresses[0], database)
        return addresses

    return _launch


def pytest_configure(config: Any) -> None:
    """Register the markers used by the faultline suite."""
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "slow: end-to-end scenario runs")
