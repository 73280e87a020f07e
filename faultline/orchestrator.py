"""
Top-level driver of a cluster test run.

A scenario subclasses ``ClusterTestOrchestrator`` and composes three phases:

    scenario = MyScenario(settings)
    scenario.init(3)                   # Built: directories, ports, proxy
    scenario.prepare(start_nodes=True) # Starting + Seeding
    report = scenario.execute()        # Running -> Verifying -> TornDown

``execute`` always tears down, even when a phase failed, and raises
``ScenarioFailedError`` when the accumulated outcomes are a failure. Faults
are scripted from ``on_server_started`` or ``execute_test`` through
``execute_when`` / ``fault_chain`` and fire on the shared ``FaultScheduler``.

The default ``execute_test`` runs the insert workload: ``writers_per_node``
writers on every target node, each inserting, updating and reading back
``iterations`` records. Verification then waits until every active node
holds ``writers_per_node * iterations * targets + base_count`` records.
"""

from __future__ import annotations

import importlib
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from faultline.checks import ClusterChecks
from faultline.conditions import ConditionGate
from faultline.config import HarnessSettings, SeedMode, StartMode, TeardownMode
from faultline.core.collaborator import (
    DatabaseClient,
    DatabaseStatus,
    MembershipRecorder,
    Session,
)
from faultline.core.errors import (
    ExecutionTimeoutError,
    HarnessError,
    HarnessFatalError,
    NodeStateError,
    ScenarioFailedError,
)
from faultline.core.port_allocator import PortAllocator
from faultline.core.task_manager import ThreadManager
from faultline.datastructures.sync import AtomicCounter
from faultline.datastructures.type_aliases import (
    DurationSeconds,
    NodeId,
    NodeOrdinal,
    RecordCount,
)
from faultline.faults import Action, Condition, FaultChain, FaultFailure, FaultScheduler
from faultline.node.process import NodeBackend, NodeProcess, NodeState
from faultline.node.subprocess_backend import SubprocessBackend
from faultline.topology import ClusterTopology
from faultline.workload import (
    DriverOutcome,
    InsertUpdateCheck,
    RetryPolicy,
    UnitFactory,
    Workload,
)


class RunPhase(StrEnum):
    BUILT = "built"
    STARTING = "starting"
    SEEDING = "seeding"
    RUNNING = "running"
    VERIFYING = "verifying"
    TORN_DOWN = "torn_down"


class FaultKind(StrEnum):
    SHUTDOWN = "shutdown"
    CRASH = "crash"


@dataclass(slots=True)
class RunReport:
    """Accumulated result of one run."""

    scenario: str
    phase: RunPhase = RunPhase.BUILT
    passed: bool = False
    failures: list[str] = field(default_factory=list)
    outcomes: list[DriverOutcome] = field(default_factory=list)
    fault_failures: list[FaultFailure] = field(default_factory=list)
    counts: dict[NodeId, RecordCount] = field(default_factory=dict)
    expected: RecordCount | None = None
    elapsed: DurationSeconds = 0.0
    leaked_threads: tuple[str, ...] = ()

    @property
    def conflicts(self) -> int:
        return sum(outcome.conflicts for outcome in self.outcomes)

    @property
    def successes(self) -> int:
        return sum(outcome.successes for outcome in self.outcomes if outcome.role == "writer")


def load_object(path: str) -> Any:
    """Import ``module:attribute`` (or ``module.attribute``)."""
    if ":" in path:
        module_name, _, attribute = path.partition(":")
    else:
        module_name, _, attribute = path.rpartition(".")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attribute!r}") from None


class ClusterTestOrchestrator:
    """Base class for cluster scenarios."""

    name: str | None = None
    server_count: int = 2

    # insert workload
    writers_per_node: int = 1
    iterations: int = 100
    use_transactions: bool = False
    expect_conflicts: bool | None = False
    readers: bool = True
    type_name: str = "Person"
    workload_nodes: Sequence[NodeOrdinal] | None = None
    # window for the final count check; defaults to settings.convergence_timeout
    check_timeout: DurationSeconds | None = None

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        *,
        client: DatabaseClient | None = None,
        backend: NodeBackend | None = None,
        allocator: PortAllocator | None = None,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self._client = client
        self._backend = backend
        self.allocator = allocator
        self.report = RunReport(self.name or type(self).__name__)
        self.gate = ConditionGate(poll_interval=self.settings.poll_interval)
        self.threads = ThreadManager("drivers")
        self.stop_event = self.threads.stop_event
        self.faults = FaultScheduler(self.settings.poll_interval / 2, name="faults")
        self.membership = MembershipRecorder()
        self.topology: ClusterTopology | None = None
        self.checks: ClusterChecks | None = None
        self.workload: Workload | None = None
        self.base_count: RecordCount = 0
        self.expected: RecordCount | None = None
        self.progress = AtomicCounter()
        self._listening: set[NodeId] = set()
        self._started_at = time.monotonic()
        self._run_started: float | None = None
        self._torn_down = False

    # -- extension points ----------------------------------------------------

    def create_client(self) -> DatabaseClient:
        if self.settings.client_factory is None:
            raise HarnessFatalError(
                "No database client: pass client= or set FAULTLINE_CLIENT_FACTORY"
            )
        factory = load_object(self.settings.client_factory)
        return factory()

    def create_backend(self) -> NodeBackend:
        if isinstance(self.client, NodeBackend):
            return self.client
        return SubprocessBackend(self.settings.node_command)

    def on_after_database_creation(self, session: Session) -> None:
        """Seed schema and initial records on the seed node."""

    def on_server_started(self, node: NodeProcess) -> None:
        """Called after each node reports readiness; install fault scripts here."""

    def on_before_checks(self) -> None:
        pass

    def on_after_execution(self) -> None:
        """Final assertions; raise AssertionError or call ``fail`` to fail the run."""

    def get_database_url(self, node: NodeProcess) -> str:
        return self.require_topology().database_url(node)

    def get_distributed_server_configuration(self, node: NodeProcess) -> dict[str, Any]:
        """Extra per-node settings merged into ``node-config.json``."""
        topology = self.require_topology()
        return {
            "database": topology.database_name,
            "servers": list(topology.node_ids),
            "write_quorum": "majority",
        }

    def create_workload(self) -> Workload:
        topology = self.require_topology()
        targets = topology.target_nodes(self.workload_nodes)
        return Workload(
            client=self.client,
            database=topology.database_name,
            targets=[(node.ordinal, topology.address_of(node)) for node in targets],
            writers_per_node=self.writers_per_node,
            iterations=self.iterations,
            unit_factory=self.unit_factory(),
            policy=self.retry_policy(),
            readers=self.readers,
            type_name=self.type_name,
            stop_event=self.stop_event,
            progress=self.progress,
        )

    def unit_factory(self) -> UnitFactory | None:
        type_name, use_transactions = self.type_name, self.use_transactions
        return lambda: InsertUpdateCheck(type_name, use_transactions)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.settings.max_retries,
            backoff=self.settings.retry_backoff,
            expect_conflicts=self.expect_conflicts,
        )

    def execute_test(self) -> None:
        """Run the insert workload and wait for every writer to finish."""
        topology = self.require_topology()
        workload = self.create_workload()
        if not workload.targets:
            raise HarnessFatalError("No active nodes to run the workload against")
        first = workload.targets[0][1].node_id
        self.base_count = self.require_checks().count_on(first, self.type_name)
        self.workload = workload
        self.expected = workload.expected_writes + self.base_count
        logger.info(
            "Expected {} records ({} writes + {} existing)",
            self.expected,
            workload.expected_writes,
            self.base_count,
        )
        workload.start(self.threads)
        workload.wait()
        logger.info("All writers finished; {} active nodes", len(topology.active_nodes()))

    # -- helpers for scenarios ------------------------------------------------

    @property
    def client(self) -> DatabaseClient:
        if self._client is None:
            self._client = self.create_client()
        return self._client

    @property
    def backend(self) -> NodeBackend:
        if self._backend is None:
            self._backend = self.create_backend()
        return self._backend

    def require_topology(self) -> ClusterTopology:
        if self.topology is None:
            raise NodeStateError("init() must be called first")
        return self.topology

    def require_checks(self) -> ClusterChecks:
        if self.checks is None:
            raise NodeStateError("init() must be called first")
        return self.checks

    def node(self, key: NodeId | NodeOrdinal) -> NodeProcess:
        return self.require_topology().node(key)

    def fail(self, message: str) -> None:
        logger.error("[{}] {}", self.report.scenario, message)
        self.report.failures.append(message)

    def wait_for(
        self,
        predicate: Condition,
        *,
        timeout: DurationSeconds | None = None,
        description: str | None = None,
    ) -> bool:
        return self.gate.wait_for(
            predicate,
            timeout=timeout or self.settings.convergence_timeout,
            description=description,
        )

    def execute_when(
        self, condition: Condition, action: Action, *, name: str | None = None
    ) -> FaultChain:
        return self.faults.execute_when(condition, action, name=name)

    def fault_chain(self, name: str) -> FaultChain:
        return self.faults.chain(name)

    def simulate_fault(self, node: NodeProcess | NodeId | NodeOrdinal, kind: FaultKind | str) -> None:
        process = node if isinstance(node, NodeProcess) else self.node(node)
        match FaultKind(kind):
            case FaultKind.SHUTDOWN:
                process.shutdown()
            case FaultKind.CRASH:
                process.crash()

    def restart(self, node: NodeProcess | NodeId | NodeOrdinal, *, wait_online: bool = True) -> None:
        process = node if isinstance(node, NodeProcess) else self.node(node)
        process.restart(wait_online=wait_online)
        self._node_started(process, notify=False)

    def partition(self, node_a: NodeId | NodeOrdinal, node_b: NodeId | NodeOrdinal) -> None:
        controller = self._partitions()
        controller.close_partition(self.node(node_a).node_id, self.node(node_b).node_id)

    def heal(self, node_a: NodeId | NodeOrdinal, node_b: NodeId | NodeOrdinal) -> None:
        controller = self._partitions()
        controller.heal_partition(self.node(node_a).node_id, self.node(node_b).node_id)

    def _partitions(self) -> Any:
        controller = self.require_topology().partitions
        if controller is None:
            raise HarnessFatalError("Topology has no partition controller (enable use_proxy)")
        return controller

    def remaining_time(self) -> DurationSeconds:
        """Time left before the execution ceiling."""
        started = self._run_started if self._run_started is not None else time.monotonic()
        return max(0.0, self.settings.execution_timeout - (time.monotonic() - started))

    # -- phases ------------------------------------------------------------------

    def _set_phase(self, phase: RunPhase) -> None:
        logger.info("[{}] Phase {} -> {}", self.report.scenario, self.report.phase, phase)
        self.report.phase = phase

    def init(self, server_count: int | None = None, *, clean: bool = True) -> ClusterTopology:
        """Build the topology. With ``clean=False`` existing node data is kept."""
        if self.topology is not None:
            raise NodeStateError("Topology already built")
        count = server_count if server_count is not None else self.server_count
        self.server_count = count
        topology = ClusterTopology.build(
            self.settings,
            count,
            self.backend,
            allocator=self.allocator,
            readiness=self._ready,
            online=self._online,
            clean=clean,
        )
        self.topology = topology
        for node in topology:
            extra = self.get_distributed_server_configuration(node)
            topology.rewrite_configuration(node, lambda config: config.extra.update(extra))
        self.checks = ClusterChecks(
            self.client,
            topology,
            gate=self.gate,
            timeout=self.settings.convergence_timeout,
            type_name=self.type_name,
        )
        self._set_phase(RunPhase.BUILT)
        return topology

    def _ready(self, node: NodeProcess) -> bool:
        return bool(self.client.membership(self.require_topology().address_of(node)))

    def _online(self, node: NodeProcess) -> bool:
        topology = self.require_topology()
        observers = [other for other in topology.active_nodes() if other is not node]
        observer = observers[0] if observers else node
        status = self.client.distributed_status(
            topology.address_of(observer), node.node_id, topology.database_name
        )
        return status == DatabaseStatus.ONLINE

    def _node_started(self, node: NodeProcess, *, notify: bool = True) -> None:
        if node.node_id not in self._listening:
            try:
                self.client.add_membership_listener(
                    self.require_topology().address_of(node), self.membership
                )
                self._listening.add(node.node_id)
            except HarnessError as e:
                logger.warning("[{}] Could not register membership listener: {!r}", node.node_id, e)
        if notify:
            self.on_server_started(node)

    def start_nodes(
        self, nodes: Iterable[NodeProcess] | None = None, *, notify: bool = True
    ) -> None:
        """Start ``nodes`` (default: every stopped node) per ``start_mode``.

        ``on_server_started`` fires for each node unless ``notify`` is False.
        """
        topology = self.require_topology()
        pending = [
            node
            for node in (nodes if nodes is not None else topology.nodes)
            if node.state in (NodeState.STOPPED, NodeState.CRASHED)
        ]
        if not pending:
            return
        if self.settings.start_mode == StartMode.CONCURRENT:
            with ThreadPoolExecutor(
                max_workers=len(pending), thread_name_prefix="start"
            ) as executor:
                futures = [executor.submit(node.start) for node in pending]
                errors = [future.exception() for future in futures]
            first_error = next((error for error in errors if error is not None), None)
            if first_error is not None:
                raise first_error
            for node in pending:
                self._node_started(node, notify=notify)
            return

        for index, node in enumerate(pending):
            node.start()
            self._node_started(node, notify=notify)
            if self.settings.start_delay > 0 and index < len(pending) - 1:
                if self.stop_event.wait(self.settings.start_delay):
                    raise HarnessFatalError("Interrupted while starting nodes")

    def prepare(self, start_nodes: bool = True) -> None:
        """Start nodes and seed the database on the seed node.

        COPY mode seeds the seed node alone, stops it and copies its data to
        every other node before they start. REPLICATE mode starts everyone,
        seeds one node and waits for the others to converge.
        """
        topology = self.require_topology()
        try:
            self._set_phase(RunPhase.STARTING)
            seed = topology.seed_node
            if self.settings.seed_mode == SeedMode.COPY:
                self.start_nodes([seed], notify=False)
                self._set_phase(RunPhase.SEEDING)
                self._seed(seed)
                seed.shutdown()
                for node in topology.others(seed):
                    node.copy_data_from(seed)
                if start_nodes:
                    self._set_phase(RunPhase.STARTING)
                    self.start_nodes()
            else:
                self.start_nodes(notify=start_nodes)
                self._set_phase(RunPhase.SEEDING)
                self._seed(seed)
                checks = self.require_checks()
                checks.wait_for_convergence(topology.node_ids, type_name=self.type_name)
                for node in topology.others(seed):
                    checks.wait_for_status(seed.node_id, node.node_id, DatabaseStatus.ONLINE)
                if not start_nodes:
                    for node in topology.active_nodes():
                        node.shutdown()
        except Exception as e:
            self._record_error(e)
            self.teardown()
            self._finish()
            raise ScenarioFailedError(self.report) from e

    def _seed(self, seed: NodeProcess) -> None:
        topology = self.require_topology()
        address = topology.address_of(seed)
        self.client.create_database(address, topology.database_name)
        session = self.client.open_session(address, topology.database_name)
        try:
            self.on_after_database_creation(session)
        finally:
            session.close()
        logger.info("[{}] Database {} seeded", seed.node_id, topology.database_name)

    def execute(self) -> RunReport:
        """Run, verify and tear down. Raises ``ScenarioFailedError`` on failure."""
        self.require_topology()
        try:
            self.start_nodes()
            self._set_phase(RunPhase.RUNNING)
            self._run_started = time.monotonic()
            self.faults.start()
            self._run_with_ceiling()
            self._set_phase(RunPhase.VERIFYING)
            self.verify()
        except Exception as e:
            self._record_error(e)
        finally:
            self.teardown()
        self._finish()
        if not self.report.passed:
            raise ScenarioFailedError(self.report)
        return self.report

    def run(self, server_count: int | None = None) -> RunReport:
        """``init`` + ``prepare`` + ``execute``."""
        self.init(server_count)
        self.prepare(start_nodes=True)
        return self.execute()

    def _run_with_ceiling(self) -> None:
        errors: list[BaseException] = []

        def guarded() -> None:
            try:
                self.execute_test()
            except BaseException as e:
                errors.append(e)

        worker = self.threads.spawn(guarded, name="execute-test")
        worker.join(self.remaining_time())
        if worker.is_alive():
            logger.error(
                "[{}] Execution exceeded {:.0f}s, interrupting drivers",
                self.report.scenario,
                self.settings.execution_timeout,
            )
            self.stop_event.set()
            worker.join(self.settings.shutdown_grace)
            raise ExecutionTimeoutError(
                f"Execution exceeded the {self.settings.execution_timeout:.0f}s ceiling"
            )
        if errors:
            raise errors[0]

    def verify(self) -> None:
        self.on_before_checks()
        if self.workload is not None:
            for problem in self.workload.problems():
                self.fail(problem)
        for failure in self.faults.failures:
            self.fail(f"fault {failure.chain}/{failure.rule} failed: {failure.error!r}")
        if self.expected is not None:
            self._verify_counts(self.expected)
        self.on_after_execution()

    def _verify_counts(self, expected: RecordCount) -> None:
        checks = self.require_checks()
        self.report.expected = expected
        try:
            self.report.counts = checks.wait_for_record_count(
                expected, type_name=self.type_name, timeout=self.check_timeout
            )
        except HarnessFatalError as e:
            keys = self.workload.expected_keys() if self.workload else []
            problems = checks.count_problems(
                expected, expected_keys=keys, type_name=self.type_name
            )
            self.report.counts = checks.counts(type_name=self.type_name)
            for problem in problems or [str(e)]:
                self.fail(problem)

    def _record_error(self, error: BaseException) -> None:
        if isinstance(error, ScenarioFailedError):
            return
        if isinstance(error, AssertionError):
            self.fail(f"assertion failed: {error}")
        elif isinstance(error, HarnessError):
            self.fail(f"{type(error).__name__}: {error}")
        else:
            logger.exception("[{}] Unexpected error", self.report.scenario)
            self.fail(f"unexpected {type(error).__name__}: {error}")

    def teardown(self) -> None:
        """Stop everything. Errors are logged, never raised."""
        if self._torn_down:
            return
        self._torn_down = True
        self.stop_event.set()
        leaked: list[str] = []
        try:
            leaked.extend(self.faults.stop(self.settings.shutdown_grace))
        except Exception as e:
            logger.warning("Error stopping fault scheduler: {!r}", e)
        leaked.extend(self.threads.shutdown(self.settings.shutdown_grace))

        if self.topology is not None:
            for node in self.topology:
                try:
                    if self.settings.teardown_mode == TeardownMode.CRASH:
                        node.crash()
                    else:
                        node.shutdown()
                except Exception as e:
                    logger.warning("[{}] Error during teardown: {!r}", node.node_id, e)
            try:
                self.topology.release()
            except Exception as e:
                logger.warning("Error releasing topology: {!r}", e)

        self.report.leaked_threads = tuple(leaked)
        self._set_phase(RunPhase.TORN_DOWN)

    def close(self) -> RunReport:
        """Tear down after a phase run on its own (for example prepare only)."""
        self.teardown()
        self._finish()
        return self.report

    def _finish(self) -> None:
        if self.workload is not None:
            self.report.outcomes = self.workload.outcomes
        self.report.fault_failures = list(self.faults.failures)
        self.report.elapsed = time.monotonic() - self._started_at
        self.report.passed = not self.report.failures
        logger.info(
            "[{}] Run {} in {:.2f}s",
            self.report.scenario,
            "passed" if self.report.passed else "FAILED",
            self.report.elapsed,
        )
