"""
Concurrent read/write traffic against the cluster.

A ``WorkloadDriver`` is one thread's worth of traffic against one node.
Writers run a unit of work per iteration; readers periodically log the
node's record count until every writer is done. Drivers never raise: every
exit path (success, retry exhaustion, fatal error, interruption) ends in a
``DriverOutcome`` and the session is always closed.

Retryable errors (optimistic-lock conflicts, distributed-lock contention, a
node that is unreachable during a scripted partition) roll the session back,
reload it and try again up to ``RetryPolicy.max_retries`` times. Anything
else stops the driver and is recorded as its fatal error.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from faultline.core.collaborator import DatabaseClient, NodeAddress, Session
from faultline.core.errors import (
    ConcurrentModificationError,
    DistributedLockError,
    DuplicateRecordError,
    RecordCheckError,
    RetryableError,
)
from faultline.core.task_manager import ThreadManager
from faultline.datastructures.sync import AtomicCounter, CountDownLatch
from faultline.datastructures.type_aliases import (
    ConflictCount,
    DatabaseName,
    DurationSeconds,
    IterationCount,
    NodeOrdinal,
    RecordCount,
    RecordKey,
    RetryCount,
    TypeName,
)

DEFAULT_TYPE_NAME: TypeName = "Person"


class DriverRole(StrEnum):
    WRITER = "writer"
    READER = "reader"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Per-scenario retry budget and conflict expectation.

    ``expect_conflicts`` is a tri-state: True means a run without conflicts
    is a failure (a lock must have been contended), False means any conflict
    is a failure, None means conflicts are not asserted.
    """

    max_retries: RetryCount = 5
    backoff: DurationSeconds = 0.05
    max_backoff: DurationSeconds = 1.0
    expect_conflicts: bool | None = None
    fail_on_exhaustion: bool = True

    def delay(self, attempt: int) -> DurationSeconds:
        return min(self.backoff * attempt, self.max_backoff)


@dataclass(slots=True)
class DriverOutcome:
    """What one driver did, recorded rather than raised."""

    driver: str
    node_id: str
    role: DriverRole
    successes: int = 0
    conflicts: ConflictCount = 0
    retries: RetryCount = 0
    exhausted: int = 0
    fatal_error: BaseException | None = None
    interrupted: bool = False
    elapsed: DurationSeconds = 0.0
    last_count: RecordCount | None = None

    @property
    def failed(self) -> bool:
        return self.fatal_error is not None

    def problems(self, policy: RetryPolicy) -> list[str]:
        """Failures this outcome represents under ``policy``."""
        found: list[str] = []
        if self.fatal_error is not None:
            found.append(f"{self.driver}: fatal error {self.fatal_error!r}")
        if self.role != DriverRole.WRITER:
            return found
        if self.exhausted and policy.fail_on_exhaustion:
            found.append(f"{self.driver}: {self.exhausted} operations exhausted retries")
        if policy.expect_conflicts is False and self.conflicts > 0:
            found.append(f"{self.driver}: {self.conflicts} conflicts, expected none")
        return found


def conflict_expectation_problems(
    outcomes: Sequence[DriverOutcome], policy: RetryPolicy
) -> list[str]:
    """Check ``expect_conflicts=True`` across all completed writers.

    Contention is a property of the whole workload, so a positive
    expectation is satisfied when any writer saw a conflict.
    """
    if policy.expect_conflicts is not True:
        return []
    writers = [o for o in outcomes if o.role == DriverRole.WRITER]
    if not writers or any(o.conflicts > 0 for o in writers):
        return []
    return ["expected conflicts but no writer observed any"]


@dataclass(frozen=True, slots=True)
class WorkContext:
    """Identity of the unit of work being executed."""

    driver: str
    ordinal: NodeOrdinal
    thread_id: int
    iteration: IterationCount
    attempt: int
    stop_event: threading.Event

    @property
    def key(self) -> RecordKey:
        return f"{self.ordinal}-{self.thread_id}-{self.iteration}"


class UnitOfWork(Protocol):
    def __call__(self, session: Session, context: WorkContext) -> None: ...


def find_record(
    session: Session, type_name: TypeName, key: RecordKey
) -> dict[str, Any] | None:
    rows = session.execute(f"select from {type_name}", {"key": key})
    if not rows:
        return None
    if len(rows) > 1:
        raise RecordCheckError(f"{len(rows)} {type_name} records found with key {key}")
    return rows[0]


@dataclass(frozen=True, slots=True)
class InsertUpdateCheck:
    """Insert a uniquely keyed record, update it and read the update back.

    With ``use_transactions`` the insert is committed in its own
    transaction before the update. A duplicate key on a retry means an
    earlier attempt already wrote the record.
    """

    type_name: TypeName = DEFAULT_TYPE_NAME
    use_transactions: bool = False

    def __call__(self, session: Session, context: WorkContext) -> None:
        key = context.key
        fields = {
            "key": key,
            "uid": str(uuid.uuid4()),
            "name": f"Billy{key}",
            "surname": f"Mayes{key}",
            "children": key,
        }

        if self.use_transactions:
            session.begin()
        try:
            session.execute(f"insert into {self.type_name}", fields)
        except DuplicateRecordError:
            if context.attempt == 0:
                raise
            logger.debug("[{}] Record {} already written", context.driver, key)
        if self.use_transactions:
            session.commit()

        record = find_record(session, self.type_name, key)
        if record is None:
            raise RecordCheckError(f"No {self.type_name} record found with key {key}")
        session.execute(
            f"update {self.type_name}",
            {"key": key, "set": {"updated": True}, "version": record.get("@version")},
        )

        session.reload()
        record = find_record(session, self.type_name, key)
        if record is None or record.get("updated") is not True:
            raise RecordCheckError(f"Update of {self.type_name} {key} not visible: {record!r}")


@dataclass(frozen=True, slots=True)
class ContendedIncrement:
    """Read-modify-write of one shared counter record.

    Every driver targets the same key, so concurrent drivers collide on the
    record version. ``think_time`` widens the window between read and write.
    """

    type_name: TypeName = "Counter"
    key: RecordKey = "shared"
    think_time: DurationSeconds = 0.0

    def __call__(self, session: Session, context: WorkContext) -> None:
        record = find_record(session, self.type_name, self.key)
        if record is None:
            try:
                session.execute(
                    f"insert into {self.type_name}", {"key": self.key, "value": 0}
                )
            except DuplicateRecordError:
                pass
            record = find_record(session, self.type_name, self.key)
            if record is None:
                raise RecordCheckError(f"Counter {self.key} vanished")
        if self.think_time > 0:
            context.stop_event.wait(self.think_time)
        session.execute(
            f"update {self.type_name}",
            {
                "key": self.key,
                "set": {"value": record.get("value", 0) + 1},
                "version": record.get("@version"),
            },
        )


class WorkloadDriver:
    """One writer or reader thread bound to one node."""

    def __init__(
        self,
        name: str,
        role: DriverRole,
        client: DatabaseClient,
        address: NodeAddress,
        database: DatabaseName,
        *,
        unit: UnitOfWork | None = None,
        iterations: IterationCount = 0,
        policy: RetryPolicy | None = None,
        progress: AtomicCounter | None = None,
        writers_done: CountDownLatch | None = None,
        stop_event: threading.Event | None = None,
        ordinal: NodeOrdinal = 0,
        thread_id: int = 0,
        type_name: TypeName = DEFAULT_TYPE_NAME,
        report_interval: DurationSeconds = 1.0,
        progress_log_every: int = 100,
    ) -> None:
        if role == DriverRole.WRITER and unit is None:
            unit = InsertUpdateCheck(type_name)
        self.name = name
        self.role = role
        self.client = client
        self.address = address
        self.database = database
        self.unit = unit
        self.iterations = iterations
        self.policy = policy or RetryPolicy()
        self.progress = progress if progress is not None else AtomicCounter()
        self.writers_done = writers_done
        self.stop_event = stop_event or threading.Event()
        self.ordinal = ordinal
        self.thread_id = thread_id
        self.type_name = type_name
        self.report_interval = report_interval
        self.progress_log_every = progress_log_every
        self.outcome = DriverOutcome(name, address.node_id, role)

    def run(self) -> DriverOutcome:
        """Run to completion; never raises."""
        outcome = self.outcome
        started = time.monotonic()
        logger.debug("[{}] Driver starting against {}", self.name, self.address.node_id)
        try:
            if self.role == DriverRole.WRITER:
                self._run_writer(outcome)
            else:
                self._run_reader(outcome)
        except Exception as e:
            outcome.fatal_error = e
            logger.error("[{}] Driver crashed: {!r}", self.name, e)
        finally:
            outcome.elapsed = time.monotonic() - started
            if self.role == DriverRole.WRITER and self.writers_done is not None:
                self.writers_done.count_down()
            logger.info(
                "[{}] Driver finished: {} ok, {} conflicts, {} retries, {} exhausted in {:.2f}s",
                self.name,
                outcome.successes,
                outcome.conflicts,
                outcome.retries,
                outcome.exhausted,
                outcome.elapsed,
            )
        return outcome

    def _run_writer(self, outcome: DriverOutcome) -> None:
        for iteration in range(self.iterations):
            if self.stop_event.is_set():
                outcome.interrupted = True
                logger.info("[{}] Writer interrupted at {}", self.name, iteration)
                return
            self._run_unit(iteration, outcome)
            if outcome.fatal_error is not None or outcome.interrupted:
                return
            done = iteration + 1
            if done % self.progress_log_every == 0:
                logger.info(
                    "[{}] Writer managed {}/{} records so far",
                    self.name,
                    done,
                    self.iterations,
                )

    def _run_unit(self, iteration: IterationCount, outcome: DriverOutcome) -> None:
        assert self.unit is not None
        session: Session | None = None
        attempt = 0
        try:
            while True:
                try:
                    if session is None:
                        session = self.client.open_session(self.address, self.database)
                    self.unit(
                        session,
                        WorkContext(
                            driver=self.name,
                            ordinal=self.ordinal,
                            thread_id=self.thread_id,
                            iteration=iteration,
                            attempt=attempt,
                            stop_event=self.stop_event,
                        ),
                    )
                except RetryableError as e:
                    if isinstance(e, ConcurrentModificationError | DistributedLockError):
                        outcome.conflicts += 1
                    session = self._recover(session)
                    if attempt >= self.policy.max_retries:
                        outcome.exhausted += 1
                        logger.warning(
                            "[{}] Iteration {} gave up after {} retries: {!r}",
                            self.name,
                            iteration,
                            attempt,
                            e,
                        )
                        return
                    attempt += 1
                    outcome.retries += 1
                    logger.debug(
                        "[{}] Retry {}/{} of iteration {} after {!r}",
                        self.name,
                        attempt,
                        self.policy.max_retries,
                        iteration,
                        e,
                    )
                    if self.stop_event.wait(self.policy.delay(attempt)):
                        outcome.interrupted = True
                        return
                    continue
                except Exception as e:
                    outcome.fatal_error = e
                    logger.error(
                        "[{}] Unrecoverable error at iteration {}: {!r}",
                        self.name,
                        iteration,
                        e,
                    )
                    if session is not None:
                        self._rollback_quietly(session)
                    return

                outcome.successes += 1
                self.progress.increment()
                return
        finally:
            if session is not None:
                self._close_quietly(session)

    def _recover(self, session: Session | None) -> Session | None:
        """Roll back and reload, or drop a session that cannot be reused."""
        if session is None:
            return None
        try:
            session.rollback()
            session.reload()
            return session
        except Exception as e:
            logger.debug("[{}] Session unusable after error, reopening: {!r}", self.name, e)
            self._close_quietly(session)
            return None

    def _rollback_quietly(self, session: Session) -> None:
        try:
            session.rollback()
        except Exception as e:
            logger.debug("[{}] Rollback failed: {!r}", self.name, e)

    def _close_quietly(self, session: Session) -> None:
        try:
            session.close()
        except Exception as e:
            logger.debug("[{}] Session close failed: {!r}", self.name, e)

    def _run_reader(self, outcome: DriverOutcome) -> None:
        latch = self.writers_done
        while not self.stop_event.is_set():
            self._report_count(outcome)
            if latch is None or latch.wait(self.report_interval):
                break
        if self.stop_event.is_set():
            outcome.interrupted = True
        self._report_count(outcome, final=True)

    def _report_count(self, outcome: DriverOutcome, *, final: bool = False) -> None:
        session: Session | None = None
        try:
            session = self.client.open_session(self.address, self.database)
            count = session.count_of_type(self.type_name)
        except RetryableError as e:
            logger.debug("[{}] Count unavailable: {!r}", self.name, e)
            return
        finally:
            if session is not None:
                self._close_quietly(session)
        outcome.successes += 1
        outcome.last_count = count
        logger.info(
            "[{}] {}{} {} records on {}",
            self.name,
            "final: " if final else "",
            count,
            self.type_name,
            self.address.node_id,
        )


type UnitFactory = Callable[[], UnitOfWork]


@dataclass(slots=True)
class Workload:
    """Writers (and optional readers) spread over a set of target nodes.

    Every target gets ``writers_per_node`` writers running ``iterations``
    units each, so ``expected_writes`` is
    ``writers_per_node * iterations * len(targets)``.
    """

    client: DatabaseClient
    database: DatabaseName
    targets: Sequence[tuple[NodeOrdinal, NodeAddress]]
    writers_per_node: int = 1
    iterations: IterationCount = 100
    unit_factory: UnitFactory | None = None
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    readers: bool = True
    type_name: TypeName = DEFAULT_TYPE_NAME
    report_interval: DurationSeconds = 1.0
    stop_event: threading.Event = field(default_factory=threading.Event)
    progress: AtomicCounter = field(default_factory=AtomicCounter)
    drivers: list[WorkloadDriver] = field(default_factory=list)
    writers_done: CountDownLatch | None = None

    @property
    def writer_count(self) -> int:
        return self.writers_per_node * len(self.targets)

    @property
    def expected_writes(self) -> int:
        return self.writer_count * self.iterations

    def build(self) -> list[WorkloadDriver]:
        self.writers_done = CountDownLatch(self.writer_count)
        self.drivers = []
        thread_id = 0
        for ordinal, address in self.targets:
            for _ in range(self.writers_per_node):
                unit = self.unit_factory() if self.unit_factory else None
                self.drivers.append(
                    WorkloadDriver(
                        f"writer-{ordinal}-{thread_id}",
                        DriverRole.WRITER,
                        self.client,
                        address,
                        self.database,
                        unit=unit,
                        iterations=self.iterations,
                        policy=self.policy,
                        progress=self.progress,
                        writers_done=self.writers_done,
                        stop_event=self.stop_event,
                        ordinal=ordinal,
                        thread_id=thread_id,
                        type_name=self.type_name,
                    )
                )
                thread_id += 1
            if self.readers:
                self.drivers.append(
                    WorkloadDriver(
                        f"reader-{ordinal}",
                        DriverRole.READER,
                        self.client,
                        address,
                        self.database,
                        writers_done=self.writers_done,
                        stop_event=self.stop_event,
                        ordinal=ordinal,
                        type_name=self.type_name,
                        report_interval=self.report_interval,
                    )
                )
        return self.drivers

    def start(self, threads: ThreadManager) -> None:
        if not self.drivers:
            self.build()
        logger.info(
            "Starting {} drivers on {} nodes, expecting {} writes",
            len(self.drivers),
            len(self.targets),
            self.expected_writes,
        )
        for driver in self.drivers:
            threads.spawn(driver.run, name=driver.name)

    def wait(self, timeout: DurationSeconds | None = None) -> bool:
        """Block until every writer finished; False on timeout."""
        if self.writers_done is None:
            return True
        return self.writers_done.wait(timeout)

    def interrupt(self) -> None:
        self.stop_event.set()

    def expected_keys(self) -> list[RecordKey]:
        """Keys the writers insert with the default unit of work."""
        return [
            f"{driver.ordinal}-{driver.thread_id}-{iteration}"
            for driver in self.drivers
            if driver.role == DriverRole.WRITER
            for iteration in range(driver.iterations)
        ]

    @property
    def outcomes(self) -> list[DriverOutcome]:
        return [driver.outcome for driver in self.drivers]

    def problems(self) -> list[str]:
        found: list[str] = []
        for outcome in self.outcomes:
            found.extend(outcome.problems(self.policy))
        found.extend(conflict_expectation_problems(self.outcomes, self.policy))
        return found
