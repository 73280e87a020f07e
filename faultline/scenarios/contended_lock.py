"""Writers fight over one record; conflicts are required, lost updates are not."""

from __future__ import annotations

from faultline.core.collaborator import Session
from faultline.scenarios.base import BundledScenario
from faultline.workload import ContendedIncrement, DriverRole, RetryPolicy, UnitFactory

COUNTER_TYPE = "Counter"
COUNTER_KEY = "shared"


class ContendedLockScenario(BundledScenario):
    """Four writers increment one shared counter and must observe conflicts.

    Optimistic versioning must turn every race into a conflict, so the final
    counter value equals the number of successful increments on every node.
    """

    name = "contended-lock"
    server_count = 2
    writers_per_node = 2
    iterations = 25
    expect_conflicts = True
    readers = False
    think_time = 0.005

    def on_after_database_creation(self, session: Session) -> None:
        super().on_after_database_creation(session)
        session.execute(f"insert into {COUNTER_TYPE}", {"key": COUNTER_KEY, "value": 0})

    def unit_factory(self) -> UnitFactory | None:
        think_time = self.think_time
        return lambda: ContendedIncrement(COUNTER_TYPE, COUNTER_KEY, think_time)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=50,
            backoff=self.settings.retry_backoff / 10,
            expect_conflicts=True,
            fail_on_exhaustion=False,
        )

    def execute_test(self) -> None:
        super().execute_test()
        # the record count does not change; the counter value is checked instead
        self.expected = None

    def on_after_execution(self) -> None:
        assert self.workload is not None
        increments = sum(
            outcome.successes
            for outcome in self.workload.outcomes
            if outcome.role == DriverRole.WRITER
        )
        self.require_checks().wait_for_field_value(
            COUNTER_KEY, "value", increments, type_name=COUNTER_TYPE
        )
