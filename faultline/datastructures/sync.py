"""Thread-safe counters and latches shared by drivers and watchers."""

from __future__ import annotations

import threading
import time

from faultline.datastructures.type_aliases import DurationSeconds


class AtomicCounter:
    """Integer counter safe for concurrent increments from driver threads."""

    __slots__ = ("_lock", "_value")

    def __init__(self, initial: int = 0) -> None:
        self._lock = threading.Lock()
        self._value = initial

    def increment(self) -> int:
        return self.add(1)

    def add(self, delta: int) -> int:
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def __int__(self) -> int:
        return self.get()

    def __repr__(self) -> str:
        return f"AtomicCounter({self.get()})"


class CountDownLatch:
    """One-shot barrier released once ``count`` reaches zero."""

    __slots__ = ("_condition", "_count")

    def __init__(self, count: int) -> None:
        if count < 0:
            raise ValueError("Latch count must be non-negative")
        self._condition = threading.Condition()
        self._count = count

    def count_down(self) -> None:
        with self._condition:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                self._condition.notify_all()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    def wait(self, timeout: DurationSeconds | None = None) -> bool:
        """Block until released; return False if ``timeout`` elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._count > 0:
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True
