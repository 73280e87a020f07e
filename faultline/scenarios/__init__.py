"""
Bundled cluster scenarios.

Each scenario is a ``ClusterTestOrchestrator`` subclass that runs against the
in-memory cluster by default, or against any cluster reachable through a
configured ``client_factory``.
"""

from faultline.orchestrator import ClusterTestOrchestrator

from .concurrent_writes import ConcurrentWritesScenario
from .contended_lock import ContendedLockScenario
from .crash_restart import CrashRestartScenario
from .partition import PartitionScenario

SCENARIOS: dict[str, type[ClusterTestOrchestrator]] = {
    scenario.name: scenario
    for scenario in (
        ConcurrentWritesScenario,
        CrashRestartScenario,
        PartitionScenario,
        ContendedLockScenario,
    )
    if scenario.name is not None
}

__all__ = [
    "SCENARIOS",
    "ConcurrentWritesScenario",
    "ContendedLockScenario",
    "CrashRestartScenario",
    "PartitionScenario",
]
