"""
Post-condition checks over live cluster state.

Every wait here is a ``ConditionGate`` poll against something the
cluster-under-test reports (record counts, a record's fields, a node's
distributed status), never a fixed sleep.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

from faultline.conditions import ConditionGate
from faultline.core.collaborator import (
    DatabaseClient,
    DatabaseStatus,
    NodeAddress,
    Session,
)
from faultline.datastructures.type_aliases import (
    DatabaseName,
    DurationSeconds,
    NodeId,
    RecordCount,
    RecordKey,
    TypeName,
)
from faultline.topology import ClusterTopology
from faultline.workload import DEFAULT_TYPE_NAME, find_record

type NodeRef = NodeId | int


class ClusterChecks:
    """Reusable count, propagation and status checks for one topology."""

    def __init__(
        self,
        client: DatabaseClient,
        topology: ClusterTopology,
        *,
        gate: ConditionGate | None = None,
        timeout: DurationSeconds = 20.0,
        type_name: TypeName = DEFAULT_TYPE_NAME,
    ) -> None:
        self.client = client
        self.topology = topology
        self.gate = gate or ConditionGate()
        self.timeout = timeout
        self.type_name = type_name

    @property
    def database(self) -> DatabaseName:
        return self.topology.database_name

    def _addresses(self, nodes: Iterable[NodeRef] | None) -> list[NodeAddress]:
        targets = self.topology.target_nodes(nodes)
        return [self.topology.address_of(node) for node in targets]

    def _with_session[T](self, address: NodeAddress, work: Callable[[Session], T]) -> T:
        session = self.client.open_session(address, self.database)
        try:
            return work(session)
        finally:
            session.close()

    def count_on(self, node: NodeRef, type_name: TypeName | None = None) -> RecordCount:
        address = self.topology.address_of(node)
        return self._with_session(
            address, lambda session: session.count_of_type(type_name or self.type_name)
        )

    def counts(
        self, nodes: Iterable[NodeRef] | None = None, type_name: TypeName | None = None
    ) -> dict[NodeId, RecordCount]:
        return {
            address.node_id: self.count_on(address.node_id, type_name)
            for address in self._addresses(nodes)
        }

    def wait_for_record_count(
        self,
        expected: RecordCount,
        nodes: Iterable[NodeRef] | None = None,
        *,
        type_name: TypeName | None = None,
        timeout: DurationSeconds | None = None,
    ) -> dict[NodeId, RecordCount]:
        """Wait until every node in ``nodes`` holds exactly ``expected`` records."""
        selection = list(nodes) if nodes is not None else None
        observed: dict[NodeId, RecordCount] = {}

        def all_at_expected() -> dict[NodeId, RecordCount] | bool:
            observed.clear()
            observed.update(self.counts(selection, type_name))
            if observed and all(count == expected for count in observed.values()):
                return dict(observed)
            return False

        result = self.gate.wait_for_result(
            all_at_expected,
            timeout=timeout or self.timeout,
            description=f"{type_name or self.type_name} count == {expected} on "
            f"{selection if selection is not None else 'active nodes'} "
            f"(last counts {observed})",
        )
        logger.info("Record count {} reached on {}", expected, sorted(result.value))
        return result.value

    def wait_for_convergence(
        self,
        nodes: Iterable[NodeRef] | None = None,
        *,
        type_name: TypeName | None = None,
        timeout: DurationSeconds | None = None,
    ) -> RecordCount:
        """Wait until every node reports the same record count; return it."""
        selection = list(nodes) if nodes is not None else None

        def converged() -> dict[NodeId, RecordCount] | bool:
            counts = self.counts(selection, type_name)
            if counts and len(set(counts.values())) == 1:
                return counts
            logger.debug("Not converged yet: {}", counts)
            return False

        result = self.gate.wait_for_result(
            converged,
            timeout=timeout or self.timeout,
            description="record counts converge",
        )
        return next(iter(result.value.values()))

    def wait_for_record_propagation(
        self,
        key: RecordKey,
        *,
        present: bool = True,
        nodes: Iterable[NodeRef] | None = None,
        type_name: TypeName | None = None,
        timeout: DurationSeconds | None = None,
    ) -> None:
        """Wait until ``key`` is present (or absent) on every node."""
        addresses = self._addresses(nodes)
        type_name = type_name or self.type_name

        def propagated() -> bool:
            for address in addresses:
                record = self._with_session(
                    address, lambda session: find_record(session, type_name, key)
                )
                if (record is not None) != present:
                    return False
            return True

        self.gate.wait_for(
            propagated,
            timeout=timeout or self.timeout,
            description=f"{type_name} {key} {'present' if present else 'absent'} everywhere",
        )

    def wait_for_field_value(
        self,
        key: RecordKey,
        field_name: str,
        value: Any,
        *,
        nodes: Iterable[NodeRef] | None = None,
        type_name: TypeName | None = None,
        timeout: DurationSeconds | None = None,
    ) -> None:
        """Wait until ``key``'s ``field_name`` equals ``value`` on every node."""
        addresses = self._addresses(nodes)
        type_name = type_name or self.type_name

        def matches() -> bool:
            for address in addresses:
                record = self._with_session(
                    address, lambda session: find_record(session, type_name, key)
                )
                if record is None or record.get(field_name) != value:
                    return False
            return True

        self.gate.wait_for(
            matches,
            timeout=timeout or self.timeout,
            description=f"{type_name} {key}.{field_name} == {value!r} everywhere",
        )

    def status(self, observer: NodeRef, node: NodeRef) -> DatabaseStatus:
        observer_address = self.topology.address_of(observer)
        node_id = self.topology.node(node).node_id
        return self.client.distributed_status(observer_address, node_id, self.database)

    def wait_for_status(
        self,
        observer: NodeRef,
        node: NodeRef,
        status: DatabaseStatus,
        *,
        timeout: DurationSeconds | None = None,
    ) -> None:
        """Wait until ``observer`` reports ``node``'s database as ``status``."""
        observer_id = self.topology.node(observer).node_id
        node_id = self.topology.node(node).node_id
        self.gate.wait_for(
            lambda: self.status(observer, node) == status,
            timeout=timeout or self.timeout,
            description=f"{node_id} is {status} as seen from {observer_id}",
        )
        logger.info("[{}] sees {} as {}", observer_id, node_id, status)

    def wait_for_membership(
        self,
        observer: NodeRef,
        expected: Iterable[NodeRef],
        *,
        timeout: DurationSeconds | None = None,
    ) -> None:
        address = self.topology.address_of(observer)
        wanted = frozenset(self.topology.node(node).node_id for node in expected)
        self.gate.wait_for(
            lambda: self.client.membership(address) == wanted,
            timeout=timeout or self.timeout,
            description=f"membership of {address.node_id} == {sorted(wanted)}",
        )

    def missing_records(
        self,
        node: NodeRef,
        expected_keys: Iterable[RecordKey],
        *,
        type_name: TypeName | None = None,
    ) -> list[RecordKey]:
        """Keys from ``expected_keys`` that ``node`` does not hold."""
        address = self.topology.address_of(node)
        type_name = type_name or self.type_name

        def scan(session: Session) -> list[RecordKey]:
            return [
                key
                for key in expected_keys
                if find_record(session, type_name, key) is None
            ]

        return self._with_session(address, scan)

    def count_problems(
        self,
        expected: RecordCount,
        nodes: Iterable[NodeRef] | None = None,
        *,
        expected_keys: Iterable[RecordKey] = (),
        type_name: TypeName | None = None,
    ) -> list[str]:
        """Describe every node whose count differs from ``expected``.

        When ``expected_keys`` is given, the missing keys are listed too.
        """
        keys = list(expected_keys)
        problems: list[str] = []
        for node_id, count in self.counts(nodes, type_name).items():
            if count == expected:
                continue
            problem = f"{node_id} holds {count} records, expected {expected}"
            if keys:
                missing = self.missing_records(node_id, keys, type_name=type_name)
                if missing:
                    shown = ", ".join(missing[:20])
                    more = f" and {len(missing) - 20} more" if len(missing) > 20 else ""
                    problem += f"; missing {shown}{more}"
                    logger.error("[{}] Missing records: {}{}", node_id, shown, more)
            problems.append(problem)
        return problems
