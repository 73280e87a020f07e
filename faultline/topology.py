"""
Cluster topology for one test run.

``ClusterTopology.build`` allocates N ``NodeProcess`` instances with their own
directories under the per-test root and their own ports, and optionally puts
a ``PartitionProxy`` between them:

- every ordered pair ``(a, b)`` gets a relay port; ``a``'s configuration lists
  ``b`` at that relay instead of at ``b``'s real inter-node port;
- with ``proxy_client_ports`` every node also gets a ``(client, node)`` relay
  and advertises it as its client address;
- when an announcement marker is configured, each relay rewrites address
  announcements so the receiving side learns the relay it must dial, never a
  real port.

Ordinals are assigned once at build time and never change, even when nodes
are crashed, wiped and restarted.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from faultline.conditions import ConditionGate
from faultline.config import HarnessSettings
from faultline.core.collaborator import NodeAddress
from faultline.core.port_allocator import PortAllocator, get_port_allocator
from faultline.datastructures.type_aliases import (
    DatabaseName,
    Endpoint,
    NodeId,
    NodeOrdinal,
    PortNumber,
)
from faultline.node.process import (
    NodeBackend,
    NodeConfig,
    NodePredicate,
    NodeProcess,
    NodeState,
)
from faultline.proxy.partition import CLIENT, PartitionController, PartitionProxy
from faultline.proxy.rewrite import AddressAnnouncementRule

type ConfigRewrite = Callable[[NodeConfig], NodeConfig | None]


def node_id_for(ordinal: NodeOrdinal) -> NodeId:
    return f"node-{ordinal}"


@dataclass(slots=True)
class PortPlan:
    """Ports reserved for one topology."""

    client: dict[NodeId, PortNumber] = field(default_factory=dict)
    internode: dict[NodeId, PortNumber] = field(default_factory=dict)
    relays: dict[tuple[str, NodeId], PortNumber] = field(default_factory=dict)

    def all_ports(self) -> list[PortNumber]:
        return [*self.client.values(), *self.internode.values(), *self.relays.values()]


class ClusterTopology:
    """The ordered set of nodes of a test run plus their routing."""

    def __init__(
        self,
        settings: HarnessSettings,
        nodes: list[NodeProcess],
        ports: PortPlan,
        *,
        proxy: PartitionProxy | None = None,
        partitions: PartitionController | None = None,
        allocator: PortAllocator | None = None,
    ) -> None:
        self.settings = settings
        self._nodes = nodes
        self._by_id = {node.node_id: node for node in nodes}
        self.ports = ports
        self.proxy = proxy
        self.partitions = partitions
        self.allocator = allocator
        self._released = False

    @classmethod
    def build(
        cls,
        settings: HarnessSettings,
        server_count: int,
        backend: NodeBackend,
        *,
        allocator: PortAllocator | None = None,
        readiness: NodePredicate | None = None,
        online: NodePredicate | None = None,
        clean: bool = True,
    ) -> ClusterTopology:
        """Allocate directories, ports and (optionally) proxy relays.

        With ``clean`` each node directory is deleted and recreated; pass
        ``clean=False`` to reuse data left behind by an earlier prepare run.
        """
        if server_count < 1:
            raise ValueError(f"server_count must be at least 1, got {server_count}")

        allocator = allocator or get_port_allocator()
        host = settings.host
        node_ids = [node_id_for(ordinal) for ordinal in range(server_count)]
        ports = cls._allocate_ports(settings, node_ids, allocator)

        proxy: PartitionProxy | None = None
        partitions: PartitionController | None = None
        if settings.use_proxy:
            proxy = PartitionProxy(host)
            partitions = proxy
        elif isinstance(backend, PartitionController):
            partitions = backend

        gate = ConditionGate(poll_interval=settings.poll_interval)
        severer = _isolator(partitions)
        restorer = _rejoiner(partitions)

        nodes: list[NodeProcess] = []
        for ordinal, node_id in enumerate(node_ids):
            root = settings.root_dir / node_id
            if clean and root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True, exist_ok=True)

            peers: dict[NodeId, Endpoint] = {}
            for other in node_ids:
                if other == node_id:
                    continue
                if proxy is not None:
                    peers[other] = (host, ports.relays[(node_id, other)])
                else:
                    peers[other] = (host, ports.internode[other])

            advertised = None
            if (CLIENT, node_id) in ports.relays:
                advertised = (host, ports.relays[(CLIENT, node_id)])

            config = NodeConfig(
                node_id=node_id,
                ordinal=ordinal,
                host=host,
                client_port=ports.client[node_id],
                internode_port=ports.internode[node_id],
                root_dir=root,
                peers=peers,
                advertised_client=advertised,
                extra={"database": settings.database_name},
            )
            nodes.append(
                NodeProcess(
                    config,
                    backend,
                    readiness=readiness,
                    online=online,
                    gate=gate,
                    readiness_timeout=settings.readiness_timeout,
                    shutdown_grace=settings.shutdown_grace,
                    sever_membership=severer,
                    restore_membership=restorer,
                )
            )

        topology = cls(
            settings,
            nodes,
            ports,
            proxy=proxy,
            partitions=partitions,
            allocator=allocator,
        )
        if proxy is not None:
            try:
                topology._open_relays()
            except Exception:
                topology.release()
                raise

        logger.info(
            "Built topology of {} nodes under {} (proxy={})",
            server_count,
            settings.root_dir,
            proxy is not None,
        )
        return topology

    @staticmethod
    def _allocate_ports(
        settings: HarnessSettings, node_ids: list[NodeId], allocator: PortAllocator
    ) -> PortPlan:
        plan = PortPlan()
        count = len(node_ids)
        try:
            plan.client = dict(zip(node_ids, allocator.allocate_ports(count, "client")))
            plan.internode = dict(
                zip(node_ids, allocator.allocate_ports(count, "internode"))
            )
            if settings.use_proxy:
                keys: list[tuple[str, NodeId]] = [
                    (source, target)
                    for source in node_ids
                    for target in node_ids
                    if source != target
                ]
                if settings.proxy_client_ports:
                    keys.extend((CLIENT, node_id) for node_id in node_ids)
                if keys:
                    plan.relays = dict(
                        zip(keys, allocator.allocate_ports(len(keys), "relay"))
                    )
        except Exception:
            for port in plan.all_ports():
                allocator.release_port(port)
            raise
        return plan

    def _announcement_rule(self, receiver: NodeId) -> AddressAnnouncementRule | None:
        """Rule mapping every real inter-node address to ``receiver``'s relay."""
        marker = self.settings.announcement_marker
        if not marker:
            return None
        host = self.settings.host
        mapping = {
            (host, self.ports.internode[other]): (host, self.ports.relays[(receiver, other)])
            for other in self._by_id
            if other != receiver
        }
        return AddressAnnouncementRule(bytes.fromhex(marker), mapping)

    def _open_relays(self) -> None:
        assert self.proxy is not None
        host = self.settings.host
        for (source, target), port in self.ports.relays.items():
            if source == CLIENT:
                self.proxy.route(
                    CLIENT, target, port, host, self.ports.client[target]
                )
                continue
            self.proxy.route(
                source,
                target,
                port,
                host,
                self.ports.internode[target],
                upstream_rule=self._announcement_rule(target),
                downstream_rule=self._announcement_rule(source),
            )

    @property
    def nodes(self) -> tuple[NodeProcess, ...]:
        return tuple(self._nodes)

    @property
    def node_ids(self) -> tuple[NodeId, ...]:
        return tuple(node.node_id for node in self._nodes)

    @property
    def database_name(self) -> DatabaseName:
        return self.settings.database_name

    @property
    def seed_node(self) -> NodeProcess:
        return self._nodes[0]

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeProcess]:
        return iter(self._nodes)

    def node(self, key: NodeId | NodeOrdinal) -> NodeProcess:
        """Look a node up by id or ordinal."""
        if isinstance(key, int):
            return self._nodes[key]
        try:
            return self._by_id[key]
        except KeyError:
            raise KeyError(f"Unknown node {key!r}") from None

    def active_nodes(self) -> list[NodeProcess]:
        return [node for node in self._nodes if node.state == NodeState.ACTIVE]

    def stopped_nodes(self) -> list[NodeProcess]:
        return [
            node
            for node in self._nodes
            if node.state in (NodeState.STOPPED, NodeState.CRASHED)
        ]

    def target_nodes(
        self, selection: Iterable[NodeId | NodeOrdinal] | None = None
    ) -> list[NodeProcess]:
        """Nodes a workload should target: ``selection`` or every active node."""
        if selection is None:
            return self.active_nodes()
        return [self.node(key) for key in selection]

    def others(self, node: NodeProcess | NodeId) -> list[NodeProcess]:
        node_id = node if isinstance(node, str) else node.node_id
        return [other for other in self._nodes if other.node_id != node_id]

    def address_of(self, node: NodeProcess | NodeId | NodeOrdinal) -> NodeAddress:
        """Client-facing address of ``node``, routed through the proxy if configured."""
        process = node if isinstance(node, NodeProcess) else self.node(node)
        host, port = process.config.client_endpoint
        return NodeAddress(process.node_id, host, port)

    def internode_address(self, source: NodeId, target: NodeId) -> Endpoint:
        """Address ``source`` dials to reach ``target``."""
        return self.node(source).config.peers[target]

    def database_url(self, node: NodeProcess | NodeId | NodeOrdinal) -> str:
        return self.address_of(node).url(self.database_name)

    def rewrite_configuration(
        self, node: NodeProcess | NodeId | NodeOrdinal, rewrite: ConfigRewrite
    ) -> NodeConfig:
        """Apply ``rewrite`` to a node's configuration before its next start.

        ``rewrite`` may mutate the config in place and return None, or return
        a replacement.
        """
        process = node if isinstance(node, NodeProcess) else self.node(node)
        if process.is_running():
            logger.warning(
                "[{}] Configuration rewritten while running; applies at next start",
                process.node_id,
            )
        replacement = rewrite(process.config)
        if replacement is not None:
            if replacement.ordinal != process.ordinal:
                raise ValueError(
                    f"Rewrite of {process.node_id} must keep ordinal {process.ordinal}"
                )
            process.config = replacement
        return process.config

    def data_dirs(self) -> dict[NodeId, Path]:
        return {node.node_id: node.data_dir for node in self._nodes}

    def release(self) -> None:
        """Close the proxy and give the ports back. Safe to call twice."""
        if self._released:
            return
        self._released = True
        if self.proxy is not None:
            try:
                self.proxy.shutdown()
            except Exception as e:
                logger.warning("Error shutting down partition proxy: {!r}", e)
        if self.allocator is not None:
            for port in self.ports.all_ports():
                self.allocator.release_port(port)
        logger.debug("Topology released {} ports", len(self.ports.all_ports()))


def _isolator(
    partitions: PartitionController | None,
) -> Callable[[NodeProcess], None] | None:
    if partitions is None:
        return None

    def sever(node: NodeProcess) -> None:
        partitions.isolate(node.node_id)

    return sever


def _rejoiner(
    partitions: PartitionController | None,
) -> Callable[[NodeProcess], None] | None:
    if partitions is None:
        return None

    def restore(node: NodeProcess) -> None:
        partitions.rejoin(node.node_id)

    return restore
