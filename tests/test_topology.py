"""Tests for building cluster topologies."""

import pytest

from faultline.config import HarnessSettings
from faultline.core.port_allocator import PortAllocator
from faultline.node.process import NodeConfig, NodeState
from faultline.proxy.partition import CLIENT, PartitionProxy
from faultline.proxy.rewrite import AddressAnnouncementRule
from faultline.testing.memory import InMemoryCluster
from faultline.topology import ClusterTopology, node_id_for


class TestTopologyBuild:
    """Test directory, port and peer allocation."""

    def test_nodes_and_directories(self, memory_topology, settings: HarnessSettings):
        """Test every node gets an ordinal, an id and its own directory."""
        topology = memory_topology(3)

        assert topology.node_ids == ("node-0", "node-1", "node-2")
        assert [node.ordinal for node in topology] == [0, 1, 2]
        assert topology.seed_node.node_id == "node-0"
        for node in topology:
            assert node.config.root_dir == settings.root_dir / node.node_id
            assert node.config.root_dir.is_dir()
            assert node.state == NodeState.STOPPED

    def test_ports_are_distinct(self, memory_topology):
        """Test no two listeners share a port."""
        topology = memory_topology(3)
        ports = topology.ports.all_ports()
        assert len(ports) == 6
        assert len(set(ports)) == len(ports)

    def test_direct_peers(self, memory_topology):
        """Test without a proxy peers point at real inter-node ports."""
        topology = memory_topology(3)
        node0 = topology.node(0)
        assert set(node0.config.peers) == {"node-1", "node-2"}
        assert node0.config.peers["node-1"] == (
            "127.0.0.1",
            topology.ports.internode["node-1"],
        )
        assert topology.proxy is None
        assert isinstance(topology.partitions, InMemoryCluster)

    def test_clean_build_wipes_old_data(self, memory_topology, settings: HarnessSettings):
        """Test a clean build deletes what an earlier run left behind."""
        leftover = settings.root_dir / "node-0" / "data" / "old.bin"
        leftover.parent.mkdir(parents=True)
        leftover.write_text("stale")

        memory_topology(1)
        assert not leftover.exists()

    def test_reuse_keeps_data(self, settings: HarnessSettings):
        """Test clean=False keeps existing node data."""
        leftover = settings.root_dir / "node-0" / "data" / "old.bin"
        leftover.parent.mkdir(parents=True)
        leftover.write_text("kept")

        topology = ClusterTopology.build(
            settings,
            1,
            InMemoryCluster(),
            allocator=PortAllocator(base_dir=settings.root_dir.parent / "locks"),
            clean=False,
        )
        try:
            assert leftover.read_text() == "kept"
        finally:
            topology.release()

    def test_zero_nodes_rejected(self, settings: HarnessSettings):
        """Test a topology needs at least one node."""
        with pytest.raises(ValueError, match="at least 1"):
            ClusterTopology.build(settings, 0, InMemoryCluster())


class TestProxiedTopology:
    """Test topologies routed through the partition proxy."""

    def test_peers_route_through_relays(self, memory_topology):
        """Test every ordered pair dials the other side's relay."""
        topology = memory_topology(3, use_proxy=True)
        proxy = topology.proxy

        assert isinstance(proxy, PartitionProxy)
        assert topology.partitions is proxy
        assert len(proxy.relays) == 6
        for node in topology:
            for other in topology.others(node):
                relay_port = topology.ports.relays[(node.node_id, other.node_id)]
                assert node.config.peers[other.node_id] == ("127.0.0.1", relay_port)
                relay = proxy.relay(node.node_id, other.node_id)
                assert relay is not None
                assert relay.target == ("127.0.0.1", topology.ports.internode[other.node_id])
                assert relay.enabled

    def test_client_ports_routed(self, memory_topology):
        """Test clients reach nodes through their own relays when configured."""
        topology = memory_topology(2, use_proxy=True, proxy_client_ports=True)

        for node in topology:
            relay_port = topology.ports.relays[(CLIENT, node.node_id)]
            address = topology.address_of(node)
            assert address.port == relay_port
            assert topology.database_url(node).endswith(f":{relay_port}/faultline-test")
            assert topology.proxy.relay(CLIENT, node.node_id).target == (
                "127.0.0.1",
                node.config.client_port,
            )

    def test_announcement_rules_map_to_receiver_relays(self, memory_topology):
        """Test each relay rewrites real addresses into the receiver's relay ports."""
        topology = memory_topology(3, use_proxy=True, announcement_marker="fa17")
        relay = topology.proxy.relay("node-0", "node-1")

        upstream = relay.upstream_rule
        assert isinstance(upstream, AddressAnnouncementRule)
        host = "127.0.0.1"
        node2_real = (host, topology.ports.internode["node-2"])
        assert upstream.mapping[node2_real] == (
            host,
            topology.ports.relays[("node-1", "node-2")],
        )
        downstream = relay.downstream_rule
        assert downstream.mapping[node2_real] == (
            host,
            topology.ports.relays[("node-0", "node-2")],
        )

    def test_crash_isolates_through_proxy(self, memory_topology):
        """Test a crashed node's relays are cut until it restarts."""
        topology = memory_topology(2, use_proxy=True)
        for node in topology:
            node.start()

        victim = topology.node(1)
        victim.crash()
        assert topology.proxy.is_partitioned("node-0", "node-1")
        assert not topology.proxy.relay("node-0", "node-1").enabled

        victim.restart(wait_online=False)
        assert not topology.proxy.is_partitioned("node-0", "node-1")

    def test_release_is_idempotent(self, memory_topology):
        """Test releasing twice gives ports back once and stops the proxy."""
        topology = memory_topology(2, use_proxy=True)
        allocator = topology.allocator
        ports = set(topology.ports.all_ports())
        assert ports <= allocator.allocated_ports

        topology.release()
        topology.release()
        assert not (ports & allocator.allocated_ports)
        assert not any(relay.enabled for relay in topology.proxy.relays.values())


class TestTopologyAccessors:
    """Test node lookup and configuration rewriting."""

    def test_lookup_by_id_and_ordinal(self, memory_topology):
        """Test nodes are addressable both ways."""
        topology = memory_topology(2)
        assert topology.node(1) is topology.node("node-1")
        assert node_id_for(1) == "node-1"
        with pytest.raises(KeyError):
            topology.node("node-9")

    def test_active_and_target_nodes(self, memory_topology):
        """Test default targets are the active nodes."""
        topology = memory_topology(3)
        topology.node(0).start()
        topology.node(2).start()

        assert [node.node_id for node in topology.active_nodes()] == ["node-0", "node-2"]
        assert [node.node_id for node in topology.stopped_nodes()] == ["node-1"]
        assert topology.target_nodes() == topology.active_nodes()
        assert [node.ordinal for node in topology.target_nodes([1, "node-0"])] == [1, 0]

    def test_rewrite_in_place(self, memory_topology):
        """Test a rewrite may mutate the config and return None."""
        topology = memory_topology(2)
        config = topology.rewrite_configuration(
            1, lambda c: c.extra.update({"quorum": 2})
        )
        assert config.extra["quorum"] == 2
        assert topology.node(1).config.extra["quorum"] == 2

    def test_rewrite_replacement_keeps_ordinal(self, memory_topology):
        """Test a replacement config must keep the node's ordinal."""
        topology = memory_topology(2)
        node = topology.node(1)

        def renumber(config: NodeConfig) -> NodeConfig:
            return NodeConfig(
                node_id=config.node_id,
                ordinal=5,
                host=config.host,
                client_port=config.client_port,
                internode_port=config.internode_port,
                root_dir=config.root_dir,
            )

        with pytest.raises(ValueError, match="keep ordinal"):
            topology.rewrite_configuration(node, renumber)
        assert node.ordinal == 1

    def test_ordinals_stable_across_restarts(self, memory_topology):
        """Test crash, wipe and restart keeps ids and ordinals."""
        topology = memory_topology(2)
        node = topology.node(1)
        node.start()
        node.crash()
        node.delete_data()
        node.restart(wait_online=False)
        assert (node.node_id, node.ordinal) == ("node-1", 1)
        assert topology.node(1) is node
