"""
Polling-based synchronization against live cluster state.

``ConditionGate.wait_for`` is the only way the harness decides that "enough
time has passed": instead of sleeping a fixed number of milliseconds it polls
an observable predicate (record counts, node status) until it holds.

A predicate may return any value; a truthy value satisfies the gate. An
exception raised by the predicate (a node that is mid-restart, a session that
cannot be opened yet) counts as "not yet" and is kept for the timeout
diagnostic.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from faultline.core.errors import ConditionTimeoutError
from faultline.datastructures.type_aliases import DurationSeconds

type Predicate = Callable[[], Any]

DEFAULT_POLL_INTERVAL: DurationSeconds = 0.2
DEFAULT_TIMEOUT: DurationSeconds = 30.0


@dataclass(frozen=True, slots=True)
class ConditionResult:
    """Outcome of a satisfied wait."""

    value: Any
    elapsed: DurationSeconds
    polls: int


@dataclass(frozen=True, slots=True)
class ConditionGate:
    """Polls predicates until they hold.

    The gate keeps no state between calls, so one instance can be shared by
    any number of threads; each ``wait_for`` polls independently.
    """

    poll_interval: DurationSeconds = DEFAULT_POLL_INTERVAL
    timeout: DurationSeconds = DEFAULT_TIMEOUT
    stop_event: threading.Event | None = None

    def wait_for(
        self,
        predicate: Predicate,
        *,
        poll_interval: DurationSeconds | None = None,
        timeout: DurationSeconds | None = None,
        description: str | None = None,
    ) -> bool:
        """Block until ``predicate()`` is truthy.

        Returns True once satisfied; raises ``ConditionTimeoutError`` with the
        last observed value (and last predicate error) otherwise.
        """
        self.wait_for_result(
            predicate,
            poll_interval=poll_interval,
            timeout=timeout,
            description=description,
        )
        return True

    def wait_for_result(
        self,
        predicate: Predicate,
        *,
        poll_interval: DurationSeconds | None = None,
        timeout: DurationSeconds | None = None,
        description: str | None = None,
    ) -> ConditionResult:
        interval = self.poll_interval if poll_interval is None else poll_interval
        limit = self.timeout if timeout is None else timeout
        label = description or getattr(predicate, "__name__", "condition")

        started = time.monotonic()
        deadline = started + limit
        last_value: Any = None
        last_error: BaseException | None = None
        polls = 0

        while True:
            polls += 1
            try:
                last_value = predicate()
                last_error = None
            except Exception as e:
                last_value = None
                last_error = e
                logger.debug("Condition '{}' raised {!r}, retrying", label, e)

            if last_error is None and last_value:
                elapsed = time.monotonic() - started
                logger.debug(
                    "Condition '{}' satisfied after {:.2f}s ({} polls)",
                    label,
                    elapsed,
                    polls,
                )
                return ConditionResult(value=last_value, elapsed=elapsed, polls=polls)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConditionTimeoutError(
                    label,
                    last_value=last_value,
                    last_error=last_error,
                    elapsed=time.monotonic() - started,
                    polls=polls,
                )

            pause = min(interval, remaining)
            if self.stop_event is not None:
                if self.stop_event.wait(pause):
                    raise ConditionTimeoutError(
                        f"{label} (abandoned: harness stopping)",
                        last_value=last_value,
                        last_error=last_error,
                        elapsed=time.monotonic() - started,
                        polls=polls,
                    )
            else:
                time.sleep(pause)

    def check(self, predicate: Predicate) -> bool:
        """Evaluate ``predicate`` once, treating errors as False."""
        try:
            return bool(predicate())
        except Exception as e:
            logger.debug("Condition check raised {!r}", e)
            return False


def wait_for(
    predicate: Predicate,
    poll_interval: DurationSeconds = DEFAULT_POLL_INTERVAL,
    timeout: DurationSeconds = DEFAULT_TIMEOUT,
    description: str | None = None,
) -> bool:
    """Module-level shortcut for a one-off ``ConditionGate().wait_for``."""
    return ConditionGate(poll_interval=poll_interval, timeout=timeout).wait_for(
        predicate, description=description
    )
