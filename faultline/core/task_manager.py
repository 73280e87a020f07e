"""
Thread lifecycle management for harness background work.

Relays, fault watchers and workload drivers all run on real OS threads.
``ThreadManager`` names and tracks them, shares one stop event with them and
joins them with a bounded timeout at shutdown so a stuck thread is reported
instead of hanging teardown.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from faultline.datastructures.type_aliases import DurationSeconds


class ThreadManager:
    """Tracks background threads and stops them together."""

    def __init__(self, name: str = "ThreadManager") -> None:
        self.name = name
        self.stop_event = threading.Event()
        self._threads: set[threading.Thread] = set()
        self._lock = threading.Lock()
        self._counter = 0

    def spawn(
        self,
        target: Callable[..., Any],
        *args: Any,
        name: str | None = None,
    ) -> threading.Thread:
        """Start and track a daemon thread running ``target(*args)``."""
        if self.stop_event.is_set():
            raise RuntimeError(f"[{self.name}] Cannot spawn threads after shutdown")

        with self._lock:
            self._counter += 1
            thread_name = name or f"{self.name}-{self._counter}"

        def _run() -> None:
            try:
                target(*args)
            except Exception as e:
                logger.error("[{}] Thread {} failed: {!r}", self.name, thread_name, e)
            finally:
                with self._lock:
                    self._threads.discard(threading.current_thread())
                logger.debug("[{}] Thread {} finished", self.name, thread_name)

        thread = threading.Thread(target=_run, name=thread_name, daemon=True)
        with self._lock:
            self._threads.add(thread)
        thread.start()
        return thread

    def shutdown(self, timeout: DurationSeconds = 5.0) -> tuple[str, ...]:
        """Signal every thread to stop and join them.

        Returns the names of threads still alive after ``timeout``.
        """
        self.stop_event.set()
        with self._lock:
            threads = [t for t in self._threads if t is not threading.current_thread()]

        if threads:
            logger.debug("[{}] Joining {} threads", self.name, len(threads))

        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        leaked = tuple(t.name for t in threads if t.is_alive())
        for thread_name in leaked:
            logger.warning("[{}] Thread {} did not stop in time", self.name, thread_name)
        return leaked

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._threads)

    def __bool__(self) -> bool:
        return len(self) > 0
