"""
faultline - orchestration and fault injection for replicated database clusters

faultline drives an external cluster-under-test through a black-box process
and network layer, injects failures while a concurrent workload is in
flight, and asserts eventual-consistency and availability properties.

## Architecture

- **node**: lifecycle of one cluster member (start, shutdown, crash, restart)
- **proxy**: transparent TCP relays that simulate network partitions
- **topology**: the nodes of one run, their ports and routing
- **workload**: concurrent writer/reader drivers with retry-on-conflict
- **conditions** / **faults**: polling gates and condition-triggered fault chains
- **orchestrator**: the phases of a run, from build to teardown

## Quick Start

```python
from faultline import ClusterTestOrchestrator, HarnessSettings
from faultline.testing.memory import InMemoryCluster


class Inserts(ClusterTestOrchestrator):
    iterations = 200


report = Inserts(HarnessSettings(root_dir="target/inserts"), client=InMemoryCluster()).run(3)
```
"""

from .conditions import ConditionGate, wait_for
from .config import HarnessSettings, SeedMode, StartMode, TeardownMode
from .core.collaborator import (
    DatabaseClient,
    DatabaseStatus,
    MembershipRecorder,
    NodeAddress,
    Session,
)
from .core.errors import (
    ConcurrentModificationError,
    ConditionTimeoutError,
    DistributedLockError,
    HarnessError,
    HarnessFatalError,
    NodeUnreachableError,
    RetryableError,
    ScenarioFailedError,
)
from .faults import FaultChain, FaultRule, FaultScheduler, RuleState, at_least
from .node import NodeProcess, NodeState, StopMode
from .orchestrator import ClusterTestOrchestrator, RunPhase, RunReport
from .proxy import PartitionProxy
from .topology import ClusterTopology
from .workload import DriverOutcome, DriverRole, RetryPolicy, Workload, WorkloadDriver

__version__ = "0.1.0"

__all__ = [
    "ClusterTestOrchestrator",
    "ClusterTopology",
    "ConcurrentModificationError",
    "ConditionGate",
    "ConditionTimeoutError",
    "DatabaseClient",
    "DatabaseStatus",
    "DistributedLockError",
    "DriverOutcome",
    "DriverRole",
    "FaultChain",
    "FaultRule",
    "FaultScheduler",
    "HarnessError",
    "HarnessFatalError",
    "HarnessSettings",
    "MembershipRecorder",
    "NodeAddress",
    "NodeProcess",
    "NodeState",
    "NodeUnreachableError",
    "PartitionProxy",
    "RetryPolicy",
    "RetryableError",
    "RuleState",
    "RunPhase",
    "RunReport",
    "ScenarioFailedError",
    "SeedMode",
    "Session",
    "StartMode",
    "StopMode",
    "TeardownMode",
    "Workload",
    "WorkloadDriver",
    "at_least",
    "wait_for",
]
