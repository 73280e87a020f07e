"""
Partition proxy: a table of relays between cluster members.

Node ``a`` reaches node ``b`` only through the relay keyed ``(a, b)``, so a
network split is a matter of switching relays off. The proxy never touches
the processes or the host firewall and never forces reconnection; peers
notice a healed link at their own heartbeat cadence.

Relay state is derived from two sets, both guarded by the proxy lock:
explicit partitions (unordered node pairs) and isolated nodes (used when a
crash must sever a node's membership links). A relay is enabled iff neither
endpoint is isolated and the pair is not partitioned.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from loguru import logger

from faultline.core.errors import ProxyBindError
from faultline.core.task_manager import ThreadManager
from faultline.datastructures.type_aliases import (
    DurationSeconds,
    HostAddress,
    NodeId,
    PortNumber,
    RelayKey,
)
from faultline.proxy.relay import DEFAULT_BUFFER_SIZE, Relay
from faultline.proxy.rewrite import RewriteRule

CLIENT = "client"


@runtime_checkable
class PartitionController(Protocol):
    """Anything that can split and heal connectivity between nodes."""

    def close_partition(self, node_a: NodeId, node_b: NodeId) -> None: ...

    def heal_partition(self, node_a: NodeId, node_b: NodeId) -> None: ...

    def isolate(self, node_id: NodeId) -> None: ...

    def rejoin(self, node_id: NodeId) -> None: ...

    def is_partitioned(self, node_a: NodeId, node_b: NodeId) -> bool: ...


class PartitionProxy:
    """Relays between nodes (and optionally clients) that can be switched off."""

    def __init__(
        self,
        host: HostAddress = "127.0.0.1",
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        connect_timeout: DurationSeconds = 5.0,
    ) -> None:
        self.host = host
        self.buffer_size = buffer_size
        self.connect_timeout = connect_timeout
        self.threads = ThreadManager("proxy")

        self._lock = threading.Lock()
        self._apply_lock = threading.Lock()
        self._relays: dict[RelayKey, Relay] = {}
        self._anonymous: list[Relay] = []
        self._partitions: set[frozenset[NodeId]] = set()
        self._isolated: set[NodeId] = set()
        self._closed = False

    def open_relay(
        self,
        local_port: PortNumber,
        remote_host: HostAddress,
        remote_port: PortNumber,
        rewrite_rule: RewriteRule | None = None,
        *,
        downstream_rule: RewriteRule | None = None,
        key: RelayKey | None = None,
    ) -> Relay:
        """Start forwarding ``local_port`` to ``remote_host:remote_port``.

        ``rewrite_rule`` patches bytes travelling towards the remote;
        ``downstream_rule`` patches the replies (defaults to the same rule).
        """
        name = f"relay-{key[0]}-{key[1]}" if key else f"relay-{local_port}"
        relay = Relay(
            name,
            (self.host, local_port),
            (remote_host, remote_port),
            self.threads,
            upstream_rule=rewrite_rule,
            downstream_rule=downstream_rule if downstream_rule is not None else rewrite_rule,
            buffer_size=self.buffer_size,
            connect_timeout=self.connect_timeout,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("Partition proxy is shut down")
            if key is not None:
                if key in self._relays:
                    raise ValueError(f"Relay {key} already open")
                self._relays[key] = relay
            else:
                self._anonymous.append(relay)
            should_enable = key is None or self._allowed(key)

        if should_enable:
            relay.enable()
        logger.info(
            "Relay {} listening on {}:{} -> {}:{}",
            relay.name,
            self.host,
            local_port,
            remote_host,
            remote_port,
        )
        return relay

    def route(
        self,
        source: NodeId,
        target: NodeId,
        local_port: PortNumber,
        remote_host: HostAddress,
        remote_port: PortNumber,
        *,
        upstream_rule: RewriteRule | None = None,
        downstream_rule: RewriteRule | None = None,
    ) -> Relay:
        """Open the relay ``source`` uses to reach ``target``."""
        return self.open_relay(
            local_port,
            remote_host,
            remote_port,
            upstream_rule,
            downstream_rule=downstream_rule,
            key=(source, target),
        )

    def relay(self, source: NodeId, target: NodeId) -> Relay | None:
        with self._lock:
            return self._relays.get((source, target))

    @property
    def relays(self) -> dict[RelayKey, Relay]:
        with self._lock:
            return dict(self._relays)

    def _allowed(self, key: RelayKey) -> bool:
        source, target = key
        if source in self._isolated or target in self._isolated:
            return False
        return frozenset((source, target)) not in self._partitions

    def _apply(self, affected: Iterable[NodeId]) -> None:
        nodes = set(affected)
        with self._apply_lock:
            with self._lock:
                changes = [
                    (relay, self._allowed(key))
                    for key, relay in self._relays.items()
                    if nodes & set(key)
                ]
            errors: list[tuple[Relay, Exception]] = []
            for relay, allowed in changes:
                try:
                    if allowed:
                        relay.enable()
                    else:
                        relay.disable()
                except (ProxyBindError, OSError) as e:
                    logger.warning("Could not switch {}: {!r}", relay.name, e)
                    errors.append((relay, e))
        if errors:
            names = ", ".join(relay.name for relay, _ in errors)
            raise ProxyBindError(f"Relays not switched: {names}") from errors[0][1]

    def close_partition(self, node_a: NodeId, node_b: NodeId) -> None:
        """Cut every relay between ``node_a`` and ``node_b`` in both directions."""
        with self._lock:
            self._partitions.add(frozenset((node_a, node_b)))
        logger.info("Partition closed between {} and {}", node_a, node_b)
        self._apply((node_a, node_b))

    def heal_partition(self, node_a: NodeId, node_b: NodeId) -> None:
        with self._lock:
            self._partitions.discard(frozenset((node_a, node_b)))
        logger.info("Partition healed between {} and {}", node_a, node_b)
        self._apply((node_a, node_b))

    def split(self, side_a: Iterable[NodeId], side_b: Iterable[NodeId]) -> None:
        """Partition every node of ``side_a`` from every node of ``side_b``."""
        side_b = tuple(side_b)
        for node_a in side_a:
            for node_b in side_b:
                self.close_partition(node_a, node_b)

    def heal_all(self) -> None:
        with self._lock:
            nodes = {node for pair in self._partitions for node in pair}
            self._partitions.clear()
        logger.info("All partitions healed")
        self._apply(nodes)

    def isolate(self, node_id: NodeId) -> None:
        """Cut every relay touching ``node_id``."""
        with self._lock:
            self._isolated.add(node_id)
        logger.info("Node {} isolated", node_id)
        self._apply((node_id,))

    def rejoin(self, node_id: NodeId) -> None:
        with self._lock:
            self._isolated.discard(node_id)
        logger.info("Node {} rejoined", node_id)
        self._apply((node_id,))

    def is_partitioned(self, node_a: NodeId, node_b: NodeId) -> bool:
        with self._lock:
            return not self._allowed((node_a, node_b))

    def shutdown(self, timeout: DurationSeconds = 5.0) -> None:
        """Close every relay and listening socket."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            relays = [*self._relays.values(), *self._anonymous]
        for relay in relays:
            try:
                relay.close()
            except Exception as e:
                logger.warning("Error closing {}: {!r}", relay.name, e)
        self.threads.shutdown(timeout)
        logger.info("Partition proxy shut down ({} relays)", len(relays))
