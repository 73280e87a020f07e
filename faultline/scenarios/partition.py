"""Split one node from the rest mid-workload, then heal the split."""

from __future__ import annotations

from faultline.core.collaborator import DatabaseStatus
from faultline.faults import FaultChain, at_least
from faultline.node.process import NodeProcess
from faultline.scenarios.base import BundledScenario


class PartitionScenario(BundledScenario):
    """Partition node 2 from nodes 0 and 1 while writers run, then heal.

    Node 0 must report node 2 NOT_AVAILABLE while split and ONLINE after the
    heal, and every node must converge to the full record count.
    """

    name = "partition"
    server_count = 3
    writers_per_node = 1
    iterations = 300
    workload_nodes = (0, 1)
    check_timeout = 20.0

    isolated: int = 2
    detection_timeout: float = 10.0

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.chain: FaultChain | None = None

    def majority(self) -> list[int]:
        return [ordinal for ordinal in range(self.server_count) if ordinal != self.isolated]

    def on_server_started(self, node: NodeProcess) -> None:
        if node.ordinal != self.isolated or self.chain is not None:
            return
        total = self.writers_per_node * self.iterations * len(self.workload_nodes)
        self.chain = (
            self.fault_chain("split-heal")
            .when(at_least(self.progress, total // 3), self._split, name="split")
            .when(at_least(self.progress, 2 * total // 3), self._heal, name="heal")
        )

    def _split(self) -> None:
        for ordinal in self.majority():
            self.partition(ordinal, self.isolated)
        self.require_checks().wait_for_status(
            self.majority()[0],
            self.isolated,
            DatabaseStatus.NOT_AVAILABLE,
            timeout=self.detection_timeout,
        )

    def _heal(self) -> None:
        for ordinal in self.majority():
            self.heal(ordinal, self.isolated)
        self.require_checks().wait_for_status(
            self.majority()[0],
            self.isolated,
            DatabaseStatus.ONLINE,
            timeout=self.detection_timeout,
        )

    def execute_test(self) -> None:
        super().execute_test()
        chain = self.chain
        if chain is not None:
            self.wait_for(
                lambda: chain.done,
                timeout=self.detection_timeout,
                description="split/heal chain finished",
            )
