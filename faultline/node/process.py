"""
Lifecycle of one cluster member.

``NodeProcess`` owns at most one running instance of a node at a time and
moves it through ``STOPPED -> STARTING -> ACTIVE -> (SHUTTING_DOWN ->
STOPPED | CRASHED)``. The mechanics of launching and killing live behind the
``NodeBackend`` protocol so the same lifecycle works for OS processes
(``SubprocessBackend``) and for the in-process test cluster.

Graceful shutdown and crash must look different to the rest of the cluster:
``shutdown`` lets the node run its hooks and leave membership cleanly, while
``crash`` first severs the node's membership links (when a severer is wired,
typically the partition proxy) and then kills it without hooks.
"""

from __future__ import annotations

import json
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum, StrEnum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from faultline.conditions import ConditionGate
from faultline.core.errors import (
    ConditionTimeoutError,
    NodeStartError,
    NodeStateError,
)
from faultline.datastructures.type_aliases import (
    DurationSeconds,
    Endpoint,
    HostAddress,
    NodeId,
    NodeOrdinal,
    PortNumber,
)

CONFIG_FILE_NAME = "node-config.json"


class NodeState(StrEnum):
    """Lifecycle state of a NodeProcess."""

    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    CRASHED = "crashed"
    SHUTTING_DOWN = "shutting_down"


class StopMode(Enum):
    """How a backend terminates a node."""

    GRACEFUL = "graceful"  # run shutdown hooks, leave membership
    FORCE_KILL = "force_kill"  # no hooks, peers see a failure


@dataclass(slots=True)
class NodeConfig:
    """Per-node configuration rendered to ``node-config.json`` before start."""

    node_id: NodeId
    ordinal: NodeOrdinal
    host: HostAddress
    client_port: PortNumber
    internode_port: PortNumber
    root_dir: Path
    peers: dict[NodeId, Endpoint] = field(default_factory=dict)
    advertised_client: Endpoint | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def data_dir(self) -> Path:
        return self.root_dir / "data"

    @property
    def config_file(self) -> Path:
        return self.root_dir / CONFIG_FILE_NAME

    @property
    def client_endpoint(self) -> Endpoint:
        return self.advertised_client or (self.host, self.client_port)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["root_dir"] = str(self.root_dir)
        payload["data_dir"] = str(self.data_dir)
        payload["peers"] = {
            node_id: f"{host}:{port}" for node_id, (host, port) in self.peers.items()
        }
        payload["advertised_client"] = "{}:{}".format(*self.client_endpoint)
        return payload

    def write(self) -> Path:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True))
        return self.config_file


@runtime_checkable
class NodeBackend(Protocol):
    """Launches and terminates node instances.

    ``launch`` returns an opaque handle passed back to ``stop``/``is_alive``.
    """

    def launch(self, config: NodeConfig) -> Any: ...

    def stop(self, handle: Any, mode: StopMode, grace: DurationSeconds) -> None: ...

    def is_alive(self, handle: Any) -> bool: ...


type NodePredicate = Callable[["NodeProcess"], bool]
type NodeHook = Callable[["NodeProcess"], None]


class NodeProcess:
    """One cluster member's process and on-disk state."""

    def __init__(
        self,
        config: NodeConfig,
        backend: NodeBackend,
        *,
        readiness: NodePredicate | None = None,
        online: NodePredicate | None = None,
        gate: ConditionGate | None = None,
        readiness_timeout: DurationSeconds = 30.0,
        shutdown_grace: DurationSeconds = 10.0,
        sever_membership: NodeHook | None = None,
        restore_membership: NodeHook | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.readiness = readiness
        self.online = online
        self.gate = gate or ConditionGate()
        self.readiness_timeout = readiness_timeout
        self.shutdown_grace = shutdown_grace
        self.sever_membership = sever_membership
        self.restore_membership = restore_membership

        self._lock = threading.RLock()
        self._state = NodeState.STOPPED
        self._handle: Any = None
        self._severed = False
        self.start_count = 0
        self.started_at: float | None = None

    @property
    def node_id(self) -> NodeId:
        return self.config.node_id

    @property
    def ordinal(self) -> NodeOrdinal:
        return self.config.ordinal

    @property
    def data_dir(self) -> Path:
        return self.config.data_dir

    @property
    def state(self) -> NodeState:
        with self._lock:
            return self._state

    @property
    def handle(self) -> Any:
        with self._lock:
            return self._handle

    def is_active(self) -> bool:
        return self.state == NodeState.ACTIVE

    def is_running(self) -> bool:
        return self.state in (NodeState.STARTING, NodeState.ACTIVE)

    def start(self, config: NodeConfig | None = None, *, wait: bool = True) -> None:
        """Launch the node and, if ``wait``, block until it reports readiness.

        Raises ``NodeStateError`` if the node is already running and
        ``NodeStartError`` if the launch fails or readiness never arrives.
        """
        with self._lock:
            if self._state in (
                NodeState.STARTING,
                NodeState.ACTIVE,
                NodeState.SHUTTING_DOWN,
            ):
                raise NodeStateError(
                    f"Node {self.node_id} cannot start while {self._state}"
                )
            if config is not None:
                self.config = config
            self._state = NodeState.STARTING
            self.config.data_dir.mkdir(parents=True, exist_ok=True)
            self.config.write()
            logger.info("[{}] Starting node (ordinal {})", self.node_id, self.ordinal)
            try:
                self._handle = self.backend.launch(self.config)
            except Exception as e:
                self._state = NodeState.STOPPED
                self._handle = None
                raise NodeStartError(self.node_id, repr(e)) from e
            self.start_count += 1
            self.started_at = time.monotonic()
            handle = self._handle

        if wait:
            self._await_ready(handle)
        else:
            self._mark_active_if_starting(handle)

    def _await_ready(self, handle: Any) -> None:
        exited = False

        def ready() -> bool:
            nonlocal exited
            if self.handle is not handle or not self.backend.is_alive(handle):
                exited = True
                return True
            return self.readiness is None or self.readiness(self)

        try:
            self.gate.wait_for(
                ready,
                timeout=self.readiness_timeout,
                description=f"node {self.node_id} readiness",
            )
        except ConditionTimeoutError as e:
            logger.error("[{}] Node never became ready, killing it", self.node_id)
            self._kill_quietly(handle)
            with self._lock:
                if self._handle is handle:
                    self._state = NodeState.STOPPED
                    self._handle = None
            raise NodeStartError(self.node_id, str(e)) from e

        if exited:
            with self._lock:
                if self._handle is handle:
                    self._state = NodeState.STOPPED
                    self._handle = None
                    raise NodeStartError(self.node_id, "process exited during startup")
            logger.info("[{}] Startup interrupted by a concurrent stop", self.node_id)
            return

        self._mark_active_if_starting(handle)

    def _mark_active_if_starting(self, handle: Any) -> None:
        with self._lock:
            if self._handle is handle and self._state == NodeState.STARTING:
                self._state = NodeState.ACTIVE
                elapsed = time.monotonic() - (self.started_at or time.monotonic())
                logger.info("[{}] Node active after {:.2f}s", self.node_id, elapsed)

    def shutdown(self) -> None:
        """Stop gracefully. Calling it on a stopped node does nothing."""
        with self._lock:
            if self._state in (NodeState.STOPPED, NodeState.CRASHED):
                logger.debug("[{}] Shutdown ignored, node is {}", self.node_id, self._state)
                return
            if self._state == NodeState.SHUTTING_DOWN:
                return
            self._state = NodeState.SHUTTING_DOWN
            handle = self._handle

        logger.info("[{}] Shutting down node", self.node_id)
        try:
            self.backend.stop(handle, StopMode.GRACEFUL, self.shutdown_grace)
        except Exception as e:
            logger.warning("[{}] Error during graceful shutdown: {!r}", self.node_id, e)

        with self._lock:
            self._state = NodeState.STOPPED
            self._handle = None

    def crash(self) -> None:
        """Kill without shutdown hooks after severing membership links."""
        with self._lock:
            if self._state in (NodeState.STOPPED, NodeState.CRASHED):
                logger.debug("[{}] Crash ignored, node is {}", self.node_id, self._state)
                return
            handle = self._handle
            self._state = NodeState.CRASHED
            self._handle = None

        logger.info("[{}] Crashing node", self.node_id)
        if self.sever_membership is not None:
            try:
                self.sever_membership(self)
                self._severed = True
            except Exception as e:
                logger.warning("[{}] Could not sever membership: {!r}", self.node_id, e)
        self._kill_quietly(handle)

    def _kill_quietly(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            self.backend.stop(handle, StopMode.FORCE_KILL, 0.0)
        except Exception as e:
            logger.debug("[{}] Kill of dead process raised {!r}", self.node_id, e)

    def restart(
        self, config: NodeConfig | None = None, *, wait_online: bool = True
    ) -> None:
        """Start again after a shutdown or crash.

        With ``wait_online`` the call returns only once the node has rejoined
        and its database reports ONLINE.
        """
        if self._severed and self.restore_membership is not None:
            self.restore_membership(self)
            self._severed = False

        self.start(config, wait=True)

        if wait_online and self.online is not None:
            self.gate.wait_for(
                lambda: self.online(self),
                timeout=self.readiness_timeout,
                description=f"node {self.node_id} back online",
            )
            logger.info("[{}] Node back online", self.node_id)

    def delete_data(self) -> None:
        """Remove the node's on-disk state. Only valid while stopped."""
        with self._lock:
            if self._state not in (NodeState.STOPPED, NodeState.CRASHED):
                raise NodeStateError(
                    f"Node {self.node_id} data cannot be deleted while {self._state}"
                )
            if self.data_dir.exists():
                shutil.rmtree(self.data_dir)
            logger.debug("[{}] Deleted data directory {}", self.node_id, self.data_dir)

    def copy_data_from(self, source: NodeProcess) -> None:
        """Replace this node's data with a copy of ``source``'s (cold replica)."""
        with self._lock:
            if self._state not in (NodeState.STOPPED, NodeState.CRASHED):
                raise NodeStateError(
                    f"Node {self.node_id} cannot receive data while {self._state}"
                )
            if source.is_running():
                raise NodeStateError(
                    f"Source node {source.node_id} must be stopped before copying"
                )
            if self.data_dir.exists():
                shutil.rmtree(self.data_dir)
            shutil.copytree(source.data_dir, self.data_dir)
            logger.info(
                "[{}] Copied data from {}", self.node_id, source.node_id
            )

    def __repr__(self) -> str:
        return f"NodeProcess({self.node_id!r}, ordinal={self.ordinal}, state={self.state})"
