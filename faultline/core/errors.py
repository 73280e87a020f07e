"""
Error taxonomy for the harness.

Three families matter to the orchestration layer:

- ``RetryableError``: transient conditions a workload driver retries locally
  (optimistic-lock conflicts, distributed-lock contention, a node that is
  momentarily unreachable during a scripted partition).
- ``HarnessFatalError``: the run cannot continue (node start failure, proxy
  bind failure, a condition that never became true). The orchestrator goes
  straight to teardown.
- ``ScenarioFailedError``: raised once, by the orchestrator, after
  verification decided the accumulated outcomes are a failure.

Adapters for a concrete cluster-under-test translate their client library's
exceptions into the retryable classes below.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from faultline.datastructures.type_aliases import DurationSeconds, NodeId

if TYPE_CHECKING:
    from faultline.orchestrator import RunReport


class HarnessError(Exception):
    """Base exception for all harness errors."""

    pass


class RetryableError(HarnessError):
    """A transient failure the caller may retry."""

    pass


class ConcurrentModificationError(RetryableError):
    """Optimistic-lock conflict: the record changed under the caller."""

    pass


class DistributedLockError(RetryableError):
    """Transient contention on a distributed lock."""

    pass


class NodeUnreachableError(RetryableError):
    """The target node cannot be contacted right now."""

    def __init__(self, node_id: NodeId, reason: str = "unreachable") -> None:
        super().__init__(f"Node {node_id} is {reason}")
        self.node_id = node_id
        self.reason = reason


class DuplicateRecordError(HarnessError):
    """A uniquely-keyed record already exists."""

    pass


class RecordCheckError(HarnessError):
    """A record read back by a workload did not hold the expected data."""

    pass


class NodeStateError(HarnessError):
    """An operation was requested in a lifecycle state that forbids it."""

    pass


class HarnessFatalError(HarnessError):
    """The run cannot continue and must proceed to teardown."""

    pass


class NodeStartError(HarnessFatalError):
    """A node process failed to launch or never reported readiness."""

    def __init__(self, node_id: NodeId, reason: str) -> None:
        super().__init__(f"Node {node_id} failed to start: {reason}")
        self.node_id = node_id
        self.reason = reason


class ProxyBindError(HarnessFatalError):
    """A relay could not bind its listening port."""

    pass


class ConditionTimeoutError(HarnessFatalError):
    """A polled condition did not become true in time."""

    def __init__(
        self,
        description: str,
        *,
        last_value: Any,
        last_error: BaseException | None,
        elapsed: DurationSeconds,
        polls: int,
    ) -> None:
        detail = f"{description}: not satisfied after {elapsed:.2f}s ({polls} polls), last value={last_value!r}"
        if last_error is not None:
            detail += f", last error={last_error!r}"
        super().__init__(detail)
        self.description = description
        self.last_value = last_value
        self.last_error = last_error
        self.elapsed = elapsed
        self.polls = polls


class ExecutionTimeoutError(HarnessFatalError):
    """The run exceeded its hard execution ceiling."""

    pass


class ScenarioFailedError(HarnessError):
    """Verification found the run's accumulated outcomes to be a failure."""

    def __init__(self, report: RunReport) -> None:
        failures = "; ".join(report.failures) or "unknown failure"
        super().__init__(f"Scenario {report.scenario} failed: {failures}")
        self.report = report
