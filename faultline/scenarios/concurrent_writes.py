from faultline.scenarios.base import BundledScenario


class ConcurrentWritesScenario(BundledScenario):
    """Two writers race on two of three nodes; every node ends with every record.

    Nodes start sequentially, one record is seeded, and each writer inserts,
    updates and reads back 400 records without expecting a single conflict.
    Every node must hold ``2 * 400 + 1`` records within 10s of the writers
    finishing.
    """

    name = "concurrent-writes"
    server_count = 3
    writers_per_node = 1
    iterations = 400
    workload_nodes = (0, 1)
    expect_conflicts = False
    check_timeout = 10.0
