"""Tests for the thread-safe counters and latches."""

import threading

import pytest
from hypothesis import given
from hypothesis import strategies as st

from faultline.datastructures.sync import AtomicCounter, CountDownLatch


class TestAtomicCounter:
    """Test AtomicCounter under concurrent use."""

    def test_increment_and_add(self):
        """Test increments and deltas return the new value."""
        counter = AtomicCounter(5)
        assert counter.increment() == 6
        assert counter.add(4) == 10
        assert counter.add(-3) == 7
        assert int(counter) == 7

    def test_concurrent_increments(self):
        """Test no increment is lost across threads."""
        counter = AtomicCounter()

        def bump() -> None:
            for _ in range(1000):
                counter.increment()

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter.get() == 8000

    @given(st.lists(st.integers(min_value=-1000, max_value=1000)))
    def test_adds_sum(self, deltas: list[int]):
        """Test the counter equals the sum of its deltas."""
        counter = AtomicCounter()
        for delta in deltas:
            counter.add(delta)
        assert counter.get() == sum(deltas)


class TestCountDownLatch:
    """Test CountDownLatch release semantics."""

    def test_zero_latch_is_released(self):
        """Test a latch created at zero never blocks."""
        assert CountDownLatch(0).wait(0.0)

    def test_negative_count_rejected(self):
        """Test negative counts are invalid."""
        with pytest.raises(ValueError, match="non-negative"):
            CountDownLatch(-1)

    def test_wait_times_out(self):
        """Test wait returns False while the count is positive."""
        latch = CountDownLatch(2)
        latch.count_down()
        assert latch.count == 1
        assert not latch.wait(0.05)

    def test_release_wakes_waiters(self):
        """Test every waiter wakes once the count reaches zero."""
        latch = CountDownLatch(3)
        released: list[bool] = []

        def waiter() -> None:
            released.append(latch.wait(5.0))

        threads = [threading.Thread(target=waiter) for _ in range(4)]
        for thread in threads:
            thread.start()
        for _ in range(3):
            latch.count_down()
        for thread in threads:
            thread.join(5.0)

        assert released == [True, True, True, True]

    def test_extra_count_downs_ignored(self):
        """Test counting down a released latch keeps it at zero."""
        latch = CountDownLatch(1)
        latch.count_down()
        latch.count_down()
        assert latch.count == 0
