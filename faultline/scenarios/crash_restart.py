"""Crash a node a third of the way through a workload and bring it back."""

from __future__ import annotations

from loguru import logger

from faultline.core.collaborator import DatabaseStatus
from faultline.faults import FaultChain, at_least
from faultline.node.process import NodeProcess
from faultline.scenarios.base import BundledScenario


class CrashRestartScenario(BundledScenario):
    """Crash node 2 at 1/3 of a 1000-record workload, restart it at 2/3.

    Node 0 must see node 2 as NOT_AVAILABLE within 10s of the crash and as
    ONLINE again within 20s of the restart; node 2 must then converge to the
    same record count as nodes 0 and 1.
    """

    name = "crash-restart"
    server_count = 3
    writers_per_node = 1
    iterations = 500
    workload_nodes = (0, 1)
    check_timeout = 20.0

    victim: int = 2
    observer: int = 0
    detection_timeout: float = 10.0
    recovery_timeout: float = 20.0

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.chain: FaultChain | None = None

    @property
    def total_writes(self) -> int:
        return self.writers_per_node * self.iterations * len(self.workload_nodes)

    def on_server_started(self, node: NodeProcess) -> None:
        if node.ordinal != self.victim or self.chain is not None:
            return
        total = self.total_writes
        self.chain = (
            self.fault_chain("crash-restart")
            .when(at_least(self.progress, total // 3), self._crash, name="crash")
            .when(at_least(self.progress, 2 * total // 3), self._restart, name="restart")
        )

    def _crash(self) -> None:
        self.simulate_fault(self.victim, "crash")
        self.require_checks().wait_for_status(
            self.observer,
            self.victim,
            DatabaseStatus.NOT_AVAILABLE,
            timeout=self.detection_timeout,
        )

    def _restart(self) -> None:
        self.restart(self.victim)
        self.require_checks().wait_for_status(
            self.observer,
            self.victim,
            DatabaseStatus.ONLINE,
            timeout=self.recovery_timeout,
        )

    def execute_test(self) -> None:
        super().execute_test()
        chain = self.chain
        if chain is not None:
            self.wait_for(
                lambda: chain.done,
                timeout=self.recovery_timeout,
                description="crash/restart chain finished",
            )
            logger.info("Fault chain finished: {}", chain.states())

    def on_after_execution(self) -> None:
        victim = self.node(self.victim).node_id
        kinds = self.membership.kinds_for(victim)
        if "left" in kinds:
            self.fail(f"{victim} was crashed but peers saw a graceful leave: {kinds}")
        if "status" not in kinds:
            self.fail(f"No status change recorded for crashed node {victim}")
