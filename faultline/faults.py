"""
Condition-triggered fault scripts.

A fault script is a ``FaultChain``: an ordered list of ``FaultRule``s, each a
``(condition, action)`` pair. Only the first unfinished rule of a chain is
ARMED; once its condition is observed true the action runs exactly once, and
when it returns the next rule is armed:

    chain = FaultChain("crash-restart")
    chain.when(lambda: progress.get() >= 333, lambda: node.crash(), name="crash")
    chain.when(lambda: progress.get() >= 666, lambda: node.restart(), name="restart")
    scheduler.submit(chain)

One ``FaultScheduler`` loop thread polls every armed condition; actions run
on a small worker pool so a long restart does not stall other chains. A
failing action marks its rule FAILED and cancels the rest of its chain. An
exception raised by a condition is treated as "not yet".

``execute_when(condition, action)`` submits a one-rule chain and may be
called from inside an action to extend a timeline on the fly.

``scheduler.chain(name)`` submits an empty chain first; rules appended with
``when`` afterwards are armed by the loop. A chain with no rules stays RUNNING.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from faultline.core.task_manager import ThreadManager
from faultline.datastructures.sync import AtomicCounter
from faultline.datastructures.type_aliases import ChainName, DurationSeconds, RuleName

type Condition = Callable[[], Any]
type Action = Callable[[], Any]


class RuleState(StrEnum):
    PENDING = "pending"
    ARMED = "armed"
    FIRED = "fired"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChainState(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class FaultRule:
    """One step of a fault script."""

    name: RuleName
    condition: Condition
    action: Action
    state: RuleState = RuleState.PENDING
    error: BaseException | None = None
    armed_at: float | None = None
    fired_at: float | None = None
    result: Any = None

    @property
    def finished(self) -> bool:
        return self.state in (RuleState.FIRED, RuleState.FAILED, RuleState.CANCELLED)


@dataclass(slots=True)
class FaultChain:
    """An ordered, cancellable sequence of fault rules."""

    name: ChainName
    rules: list[FaultRule] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _executing: bool = field(default=False, repr=False)
    _cancelled: bool = field(default=False, repr=False)
    _on_extend: Callable[[FaultChain], None] | None = field(default=None, repr=False)

    def when(
        self, condition: Condition, action: Action, *, name: RuleName | None = None
    ) -> FaultChain:
        """Append a rule; returns the chain so calls can be chained."""
        with self._lock:
            if self._cancelled:
                raise RuntimeError(f"Chain {self.name} is cancelled")
            rule_name = name or f"{self.name}-{len(self.rules) + 1}"
            state = self._state_locked()
            rule = FaultRule(rule_name, condition, action)
            if state == ChainState.FAILED:
                rule.state = RuleState.CANCELLED
            self.rules.append(rule)
            reopened = state == ChainState.COMPLETED
            on_extend = self._on_extend
        if reopened and on_extend is not None:
            on_extend(self)
        return self

    @property
    def state(self) -> ChainState:
        with self._lock:
            return self._state_locked()

    def _state_locked(self) -> ChainState:
        if any(rule.state == RuleState.FAILED for rule in self.rules):
            return ChainState.FAILED
        if self._cancelled:
            return ChainState.CANCELLED
        if self.rules and all(rule.state == RuleState.FIRED for rule in self.rules):
            return ChainState.COMPLETED
        return ChainState.RUNNING

    @property
    def done(self) -> bool:
        return self.state != ChainState.RUNNING

    def current(self) -> FaultRule | None:
        """The first rule that has not finished yet."""
        with self._lock:
            return self._current_locked()

    def _current_locked(self) -> FaultRule | None:
        for rule in self.rules:
            if not rule.finished:
                return rule
        return None

    def states(self) -> dict[RuleName, RuleState]:
        with self._lock:
            return {rule.name: rule.state for rule in self.rules}

    def cancel(self) -> None:
        """Cancel every rule that has not fired. A running action is not interrupted."""
        with self._lock:
            self._cancelled = True
            for rule in self.rules:
                if rule.state in (RuleState.PENDING, RuleState.ARMED) and not (
                    self._executing and rule is self._current_locked()
                ):
                    rule.state = RuleState.CANCELLED

    def _arm_next(self) -> FaultRule | None:
        with self._lock:
            return self._arm_locked()

    def _arm_locked(self) -> FaultRule | None:
        rule = self._current_locked()
        if rule is not None and rule.state == RuleState.PENDING and not self._cancelled:
            rule.state = RuleState.ARMED
            rule.armed_at = time.monotonic()
        return rule


@dataclass(frozen=True, slots=True)
class FaultFailure:
    chain: ChainName
    rule: RuleName
    error: BaseException


class FaultScheduler:
    """Single loop that fires armed fault rules once their condition holds."""

    def __init__(
        self,
        poll_interval: DurationSeconds = 0.1,
        *,
        name: str = "faults",
        max_workers: int = 4,
    ) -> None:
        self.poll_interval = poll_interval
        self.name = name
        self.threads = ThreadManager(name)
        self.fired = AtomicCounter()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-action"
        )
        self._changed = threading.Condition()
        self._active: list[FaultChain] = []
        self._finished: list[FaultChain] = []
        self._futures: set[Future[Any]] = set()
        self._failures: list[FaultFailure] = []
        self._started = False
        self._stopped = False
        self._counter = 0

    def start(self) -> FaultScheduler:
        with self._changed:
            if self._started:
                return self
            if self._stopped:
                raise RuntimeError(f"[{self.name}] Scheduler already stopped")
            self._started = True
        self.threads.spawn(self._loop, name=f"{self.name}-loop")
        logger.debug("[{}] Fault scheduler started", self.name)
        return self

    def submit(self, chain: FaultChain) -> FaultChain:
        """Register ``chain`` and arm its first rule."""
        with self._changed:
            if self._stopped:
                raise RuntimeError(f"[{self.name}] Scheduler is stopped")
            chain._on_extend = self._reopen
            self._active.append(chain)
            self._changed.notify_all()
        chain._arm_next()
        logger.info(
            "[{}] Chain {} submitted with {} rules", self.name, chain.name, len(chain.rules)
        )
        return chain

    def chain(self, name: ChainName) -> FaultChain:
        """Create and submit an empty chain to be filled with ``when``."""
        return self.submit(FaultChain(name))

    def execute_when(
        self, condition: Condition, action: Action, *, name: RuleName | None = None
    ) -> FaultChain:
        """Run ``action`` once, the first time ``condition`` is observed true."""
        with self._changed:
            self._counter += 1
            chain_name = name or f"when-{self._counter}"
        chain = FaultChain(chain_name)
        chain.when(condition, action, name=chain_name)
        return self.submit(chain)

    @property
    def chains(self) -> tuple[FaultChain, ...]:
        with self._changed:
            return (*self._finished, *self._active)

    @property
    def failures(self) -> tuple[FaultFailure, ...]:
        with self._changed:
            return tuple(self._failures)

    def pending(self) -> list[FaultChain]:
        with self._changed:
            return [chain for chain in self._active if not chain.done]

    def wait(self, timeout: DurationSeconds | None = None) -> bool:
        """Block until every submitted chain is finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while any(not chain.done for chain in self._active):
                if deadline is None:
                    self._changed.wait(self.poll_interval)
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(min(remaining, self.poll_interval))
            return True

    def cancel_all(self) -> None:
        for chain in self.chains:
            chain.cancel()
        with self._changed:
            self._changed.notify_all()

    def _loop(self) -> None:
        stop = self.threads.stop_event
        while not stop.is_set():
            with self._changed:
                active = list(self._active)
            for chain in active:
                self._poll(chain)
            self._prune()
            stop.wait(self.poll_interval)

    def _prune(self) -> None:
        with self._changed:
            active: list[FaultChain] = []
            for chain in self._active:
                (self._finished if chain.done else active).append(chain)
            if len(active) != len(self._active):
                self._active = active
                self._changed.notify_all()

    def _reopen(self, chain: FaultChain) -> None:
        with self._changed:
            if any(finished is chain for finished in self._finished):
                self._finished = [c for c in self._finished if c is not chain]
                self._active.append(chain)
            self._changed.notify_all()

    def _poll(self, chain: FaultChain) -> None:
        with chain._lock:
            if chain._executing or chain._cancelled:
                return
            rule = chain._arm_locked()
            if rule is None or rule.state != RuleState.ARMED:
                return

        try:
            satisfied = bool(rule.condition())
        except Exception as e:
            logger.debug("[{}] Condition of {} raised {!r}", self.name, rule.name, e)
            satisfied = False
        if not satisfied:
            return

        with chain._lock:
            if chain._cancelled or rule.state != RuleState.ARMED:
                return
            chain._executing = True
        logger.info("[{}] Condition met, firing {}/{}", self.name, chain.name, rule.name)
        try:
            future = self._executor.submit(self._run_action, chain, rule)
        except RuntimeError as e:
            with chain._lock:
                chain._executing = False
                rule.state = RuleState.CANCELLED
            logger.debug("[{}] Could not fire {}: {!r}", self.name, rule.name, e)
            return
        with self._changed:
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[Any]) -> None:
        with self._changed:
            self._futures.discard(future)

    def _run_action(self, chain: FaultChain, rule: FaultRule) -> None:
        rule.fired_at = time.monotonic()
        try:
            rule.result = rule.action()
        except Exception as e:
            logger.error(
                "[{}] Fault action {}/{} failed: {!r}", self.name, chain.name, rule.name, e
            )
            with chain._lock:
                rule.state = RuleState.FAILED
                rule.error = e
                chain._executing = False
                for later in chain.rules:
                    if later.state in (RuleState.PENDING, RuleState.ARMED):
                        later.state = RuleState.CANCELLED
            with self._changed:
                self._failures.append(FaultFailure(chain.name, rule.name, e))
                self._changed.notify_all()
            return

        self.fired.increment()
        with chain._lock:
            rule.state = RuleState.FIRED
            chain._executing = False
            cancelled = chain._cancelled
            if cancelled:
                for later in chain.rules:
                    if later.state == RuleState.PENDING:
                        later.state = RuleState.CANCELLED
        if not cancelled:
            chain._arm_next()
        with self._changed:
            self._changed.notify_all()
        logger.debug("[{}] Fault {}/{} done", self.name, chain.name, rule.name)

    def stop(self, timeout: DurationSeconds = 10.0) -> tuple[str, ...]:
        """Cancel unfired rules, stop the loop and wait for running actions.

        Returns the names of threads or actions still running after ``timeout``.
        """
        with self._changed:
            if self._stopped:
                return ()
            self._stopped = True
        self.cancel_all()
        deadline = time.monotonic() + timeout
        leaked = list(self.threads.shutdown(timeout))

        with self._changed:
            futures = set(self._futures)
        if futures:
            _, still_running = wait_futures(
                futures, timeout=max(0.0, deadline - time.monotonic())
            )
            if still_running:
                logger.warning(
                    "[{}] {} fault actions still running at stop",
                    self.name,
                    len(still_running),
                )
                leaked.extend(f"{self.name}-action" for _ in still_running)
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("[{}] Fault scheduler stopped", self.name)
        return tuple(leaked)

    def __enter__(self) -> FaultScheduler:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def at_least(counter: AtomicCounter, threshold: int) -> Condition:
    """Condition true once ``counter`` reaches ``threshold``."""

    def reached() -> bool:
        return counter.get() >= threshold

    reached.__name__ = f"counter>={threshold}"
    return reached
