"""
Public contract of the cluster-under-test.

The harness never reaches into the database: it opens sessions, executes
statements, counts records and asks a node what it believes about the
distributed state. Anything that implements these protocols can be driven
by the orchestrator, whether it talks to real server processes over the
wire or to the in-process cluster in ``faultline.testing.memory``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from faultline.datastructures.type_aliases import (
    DatabaseName,
    Endpoint,
    HostAddress,
    NodeId,
    PortNumber,
    StatementParams,
    StatementText,
    Timestamp,
    TypeName,
)


class DatabaseStatus(StrEnum):
    """Database status of one node as seen by an observer node."""

    ONLINE = "ONLINE"
    SYNCHRONIZING = "SYNCHRONIZING"
    BACKUP = "BACKUP"
    OFFLINE = "OFFLINE"
    NOT_AVAILABLE = "NOT_AVAILABLE"


@dataclass(frozen=True, slots=True)
class NodeAddress:
    """Where a client reaches a node, possibly through the partition proxy."""

    node_id: NodeId
    host: HostAddress
    port: PortNumber

    @property
    def endpoint(self) -> Endpoint:
        return (self.host, self.port)

    def url(self, database: DatabaseName) -> str:
        return f"remote:{self.host}:{self.port}/{database}"


@dataclass(frozen=True, slots=True)
class DistributedConfiguration:
    """Snapshot of a database's distributed configuration."""

    database: DatabaseName
    servers: tuple[NodeId, ...]
    owners: Mapping[str, NodeId] = field(default_factory=dict)

    def owner_of(self, cluster: str) -> NodeId | None:
        return self.owners.get(cluster)

    def all_configured_servers(self) -> tuple[NodeId, ...]:
        return self.servers


@runtime_checkable
class Session(Protocol):
    """A database session bound to one node and one database."""

    def execute(
        self, statement: StatementText, params: StatementParams | None = None
    ) -> Any:
        """Execute a statement, returning rows or a scalar."""
        ...

    def begin(self) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def count_of_type(self, type_name: TypeName) -> int:
        """Count records of ``type_name`` visible on this node."""
        ...

    def reload(self) -> None:
        """Drop any cached state so the next read sees the node's latest data."""
        ...

    def close(self) -> None: ...


class MembershipListener(Protocol):
    """Node lifecycle callbacks published by the cluster-under-test."""

    def on_node_joining(self, node_id: NodeId) -> None: ...
    def on_node_joined(self, node_id: NodeId) -> None: ...
    def on_node_left(self, node_id: NodeId) -> None: ...

    def on_database_status_changed(
        self, node_id: NodeId, database: DatabaseName, status: DatabaseStatus
    ) -> None: ...


@runtime_checkable
class DatabaseClient(Protocol):
    """Entry point to the cluster-under-test.

    Implementations raise ``NodeUnreachableError`` when ``address`` cannot be
    contacted and translate their own conflict exceptions into
    ``ConcurrentModificationError`` / ``DistributedLockError``.
    """

    def create_database(self, address: NodeAddress, database: DatabaseName) -> None:
        """Create ``database`` on the node at ``address`` if missing."""
        ...

    def open_session(self, address: NodeAddress, database: DatabaseName) -> Session:
        ...

    def membership(self, address: NodeAddress) -> frozenset[NodeId]:
        """Return the node ids the node at ``address`` considers members."""
        ...

    def distributed_status(
        self, observer: NodeAddress, node_id: NodeId, database: DatabaseName
    ) -> DatabaseStatus:
        ...

    def distributed_configuration(
        self, observer: NodeAddress, database: DatabaseName
    ) -> DistributedConfiguration:
        ...

    def add_membership_listener(
        self, address: NodeAddress, listener: MembershipListener
    ) -> None:
        ...


@dataclass(frozen=True, slots=True)
class MembershipEvent:
    """One recorded membership callback."""

    kind: str
    node_id: NodeId
    timestamp: Timestamp
    database: DatabaseName | None = None
    status: DatabaseStatus | None = None


class MembershipRecorder:
    """MembershipListener that keeps every callback for later assertions.

    A graceful shutdown shows up as ``left``; a crash shows up as a
    ``status`` change to NOT_AVAILABLE without a preceding ``left``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[MembershipEvent] = []

    def _record(self, event: MembershipEvent) -> None:
        with self._lock:
            self._events.append(event)

    def on_node_joining(self, node_id: NodeId) -> None:
        self._record(MembershipEvent("joining", node_id, _now()))

    def on_node_joined(self, node_id: NodeId) -> None:
        self._record(MembershipEvent("joined", node_id, _now()))

    def on_node_left(self, node_id: NodeId) -> None:
        self._record(MembershipEvent("left", node_id, _now()))

    def on_database_status_changed(
        self, node_id: NodeId, database: DatabaseName, status: DatabaseStatus
    ) -> None:
        self._record(
            MembershipEvent("status", node_id, _now(), database=database, status=status)
        )

    @property
    def events(self) -> tuple[MembershipEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def events_for(self, node_id: NodeId) -> tuple[MembershipEvent, ...]:
        return tuple(event for event in self.events if event.node_id == node_id)

    def kinds_for(self, node_id: NodeId) -> tuple[str, ...]:
        return tuple(event.kind for event in self.events_for(node_id))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def _now() -> Timestamp:
    return time.time()
