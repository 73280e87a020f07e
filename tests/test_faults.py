"""Tests for condition-triggered fault chains."""

import threading
from collections.abc import Generator

import pytest

from faultline.conditions import ConditionGate
from faultline.datastructures.sync import AtomicCounter
from faultline.faults import ChainState, FaultChain, FaultScheduler, RuleState, at_least


@pytest.fixture
def scheduler() -> Generator[FaultScheduler, None, None]:
    scheduler = FaultScheduler(poll_interval=0.01, name="test-faults")
    scheduler.start()
    yield scheduler
    scheduler.stop(timeout=5.0)


class TestFaultChain:
    """Test chain bookkeeping without a scheduler."""

    def test_rules_named_in_order(self):
        """Test unnamed rules get positional names."""
        chain = FaultChain("script").when(lambda: True, lambda: None).when(
            lambda: True, lambda: None, name="second"
        )
        assert list(chain.states()) == ["script-1", "second"]
        assert chain.state == ChainState.RUNNING

    def test_only_first_rule_armed(self):
        """Test arming touches the first unfinished rule only."""
        chain = FaultChain("script").when(lambda: True, lambda: None).when(
            lambda: True, lambda: None
        )
        chain._arm_next()
        assert list(chain.states().values()) == [RuleState.ARMED, RuleState.PENDING]

    def test_cancel_before_start(self):
        """Test cancelling marks every rule and blocks new ones."""
        chain = FaultChain("script").when(lambda: True, lambda: None)
        chain.cancel()
        assert chain.state == ChainState.CANCELLED
        assert chain.done
        with pytest.raises(RuntimeError, match="cancelled"):
            chain.when(lambda: True, lambda: None)


class TestFaultScheduler:
    """Test rules firing on the scheduler loop."""

    def test_rules_fire_in_order(self, scheduler: FaultScheduler):
        """Test a later rule never fires before the earlier one, even if already true."""
        gate = threading.Event()
        fired: list[str] = []

        chain = (
            scheduler.chain("ordered")
            .when(gate.is_set, lambda: fired.append("first"), name="first")
            .when(lambda: True, lambda: fired.append("second"), name="second")
        )

        assert not scheduler.wait(timeout=0.1)
        assert fired == []

        gate.set()
        assert scheduler.wait(timeout=5.0)
        assert fired == ["first", "second"]
        assert chain.state == ChainState.COMPLETED
        assert scheduler.fired.get() == 2

    def test_progress_thresholds(self, scheduler: FaultScheduler):
        """Test counter thresholds trigger rules once."""
        progress = AtomicCounter()
        hits = AtomicCounter()
        chain = (
            scheduler.chain("thresholds")
            .when(at_least(progress, 10), hits.increment)
            .when(at_least(progress, 20), hits.increment)
        )

        progress.set(15)
        ConditionGate(poll_interval=0.01, timeout=5.0).wait_for(lambda: hits.get() == 1)
        assert chain.rules[1].state != RuleState.FIRED
        assert hits.get() == 1

        progress.set(25)
        assert scheduler.wait(timeout=5.0)
        assert hits.get() == 2

    def test_action_runs_exactly_once(self, scheduler: FaultScheduler):
        """Test a condition that stays true fires its action once."""
        runs = AtomicCounter()
        chain = scheduler.execute_when(lambda: True, runs.increment, name="once")
        assert scheduler.wait(timeout=5.0)
        assert runs.get() == 1
        assert chain.states() == {"once": RuleState.FIRED}

    def test_execute_when_from_inside_action(self, scheduler: FaultScheduler):
        """Test an action can schedule follow-up faults."""
        fired: list[str] = []

        def first() -> None:
            fired.append("first")
            scheduler.execute_when(lambda: True, lambda: fired.append("follow-up"))

        scheduler.execute_when(lambda: True, first)
        assert scheduler.wait(timeout=5.0)
        assert fired == ["first", "follow-up"]
        assert len(scheduler.chains) == 2

    def test_condition_errors_mean_not_yet(self, scheduler: FaultScheduler):
        """Test a raising condition is retried instead of failing the chain."""
        attempts = AtomicCounter()

        def flaky() -> bool:
            if attempts.increment() < 3:
                raise ConnectionError("node restarting")
            return True

        chain = scheduler.execute_when(flaky, lambda: "done")
        assert scheduler.wait(timeout=5.0)
        assert chain.state == ChainState.COMPLETED
        assert chain.rules[0].result == "done"
        assert scheduler.failures == ()

    def test_failed_action_cancels_rest(self, scheduler: FaultScheduler):
        """Test a failing action fails the chain and cancels later rules."""

        def boom() -> None:
            raise RuntimeError("kill failed")

        chain = (
            scheduler.chain("broken")
            .when(lambda: True, boom, name="crash")
            .when(lambda: True, lambda: None, name="restart")
        )
        assert scheduler.wait(timeout=5.0)

        assert chain.state == ChainState.FAILED
        assert chain.states() == {"crash": RuleState.FAILED, "restart": RuleState.CANCELLED}
        [failure] = scheduler.failures
        assert (failure.chain, failure.rule) == ("broken", "crash")
        assert isinstance(failure.error, RuntimeError)

    def test_cancel_pending_rules(self, scheduler: FaultScheduler):
        """Test cancelled rules never run."""
        runs = AtomicCounter()
        chain = scheduler.chain("never").when(lambda: False, runs.increment)
        chain.cancel()
        assert scheduler.wait(timeout=5.0)
        assert chain.state == ChainState.CANCELLED
        assert runs.get() == 0

    def test_rules_added_after_submit_fire(self, scheduler: FaultScheduler):
        """Test rules appended to a submitted chain are armed and fired by the loop."""
        hits = AtomicCounter()
        chain = scheduler.chain("late").when(lambda: True, hits.increment, name="late")

        assert scheduler.wait(timeout=5.0)
        assert hits.get() == 1
        assert chain.states() == {"late": RuleState.FIRED}
        assert chain.state == ChainState.COMPLETED

    def test_empty_chain_is_running(self, scheduler: FaultScheduler):
        """Test a chain with no rules is neither complete nor waited past."""
        hits = AtomicCounter()
        chain = scheduler.chain("empty")

        assert chain.state == ChainState.RUNNING
        assert not scheduler.wait(timeout=0.1)
        assert scheduler.pending() == [chain]

        chain.when(lambda: True, hits.increment)
        assert scheduler.wait(timeout=5.0)
        assert hits.get() == 1

    def test_finished_chains_leave_the_loop(self, scheduler: FaultScheduler):
        """Test finished chains stop being polled but stay listed."""
        hits = AtomicCounter()
        for _ in range(5):
            scheduler.execute_when(lambda: True, hits.increment)
        assert scheduler.wait(timeout=5.0)

        ConditionGate(poll_interval=0.01, timeout=5.0).wait_for(
            lambda: not scheduler._active, description="chains pruned"
        )
        assert hits.get() == 5
        assert len(scheduler.chains) == 5
        assert all(chain.state == ChainState.COMPLETED for chain in scheduler.chains)

    def test_extending_a_completed_chain(self, scheduler: FaultScheduler):
        """Test a rule appended after the chain completed still fires."""
        hits = AtomicCounter()
        chain = scheduler.execute_when(lambda: True, hits.increment, name="first")
        assert scheduler.wait(timeout=5.0)
        ConditionGate(poll_interval=0.01, timeout=5.0).wait_for(
            lambda: all(active is not chain for active in scheduler._active),
            description="chain pruned",
        )

        chain.when(lambda: True, hits.increment, name="second")
        assert chain.state == ChainState.RUNNING
        assert scheduler.wait(timeout=5.0)
        assert hits.get() == 2
        assert chain.states() == {"first": RuleState.FIRED, "second": RuleState.FIRED}
        assert len(scheduler.chains) == 1

    def test_rule_added_to_failed_chain_is_cancelled(self, scheduler: FaultScheduler):
        """Test a failed chain never runs rules appended after the failure."""
        runs = AtomicCounter()

        def explode() -> None:
            raise RuntimeError("boom")

        chain = scheduler.chain("doomed").when(lambda: True, explode, name="explode")
        assert scheduler.wait(timeout=5.0)
        assert chain.state == ChainState.FAILED

        chain.when(lambda: True, runs.increment, name="after")
        assert chain.states()["after"] == RuleState.CANCELLED
        assert scheduler.wait(timeout=1.0)
        assert runs.get() == 0


    def test_cancel_does_not_interrupt_running_action(self, scheduler: FaultScheduler):
        """Test a running action finishes while the rest of its chain is cancelled."""
        started = threading.Event()
        release = threading.Event()

        def slow() -> None:
            started.set()
            release.wait(5.0)

        chain = (
            scheduler.chain("slow")
            .when(lambda: True, slow, name="slow")
            .when(lambda: True, lambda: None, name="after")
        )
        assert started.wait(5.0)
        chain.cancel()
        assert chain.states()["after"] == RuleState.CANCELLED
        release.set()

        assert scheduler.wait(timeout=5.0)
        assert chain.states() == {"slow": RuleState.FIRED, "after": RuleState.CANCELLED}

    def test_stop_is_idempotent(self):
        """Test stopping twice is safe and blocks new submissions."""
        scheduler = FaultScheduler(poll_interval=0.01)
        scheduler.start()
        assert scheduler.stop(timeout=5.0) == ()
        assert scheduler.stop(timeout=5.0) == ()
        with pytest.raises(RuntimeError):
            scheduler.execute_when(lambda: True, lambda: None)

    def test_context_manager(self):
        """Test the scheduler starts and stops as a context manager."""
        runs = AtomicCounter()
        with FaultScheduler(poll_interval=0.01) as scheduler:
            scheduler.execute_when(lambda: True, runs.increment)
            assert scheduler.wait(timeout=5.0)
        assert runs.get() == 1
