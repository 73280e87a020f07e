"""Port allocation for node listeners and proxy relays.

Every test run needs ``2 * N`` node ports plus up to ``N * (N - 1) + N``
relay ports. Ports are claimed with a lock file per port so concurrent
pytest-xdist workers (or two harness runs on one host) never hand the same
port to two nodes.
"""

from __future__ import annotations

import os
import socket
import tempfile
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from faultline.datastructures.type_aliases import HostAddress, PortNumber

STALE_LOCK_SECONDS = 3600.0
PORTS_PER_WORKER = 200
MAX_WORKERS = 20


@dataclass(frozen=True, slots=True)
class PortRange:
    """Port range reserved for one usage category."""

    start: int
    end: int
    description: str = ""


class PortAllocator:
    """File-lock-based port allocator with worker-aware ranges."""

    RANGES = {
        "client": PortRange(31000, 36000, "Client-facing node ports"),
        "internode": PortRange(36000, 41000, "Inter-node (membership) ports"),
        "relay": PortRange(41000, 46000, "Partition proxy relay ports"),
        "testing": PortRange(46000, 51000, "General testing ports"),
    }

    def __init__(
        self, base_dir: str | Path | None = None, host: HostAddress = "127.0.0.1"
    ) -> None:
        if base_dir is None:
            base_dir = os.environ.get("PYTEST_CURRENT_TEST_DIR", tempfile.gettempdir())

        self.base_dir = Path(base_dir) / "faultline_port_locks"
        self.base_dir.mkdir(exist_ok=True, parents=True)
        self.host = host

        self.worker_id = os.environ.get("PYTEST_XDIST_WORKER", "master")
        self.worker_offset = self._calculate_worker_offset()

        self._lock = threading.Lock()
        self._allocated_ports: set[PortNumber] = set()

        self._cleanup_stale_locks()

    def _calculate_worker_offset(self) -> int:
        if self.worker_id == "master":
            return 0
        try:
            worker_num = int(self.worker_id.removeprefix("gw")) + 1
        except ValueError:
            worker_num = hash(self.worker_id) % 1000 + 1
        return (((worker_num - 1) % MAX_WORKERS) + 1) * PORTS_PER_WORKER

    def _worker_range(self, category: str) -> tuple[PortNumber, PortNumber]:
        if category not in self.RANGES:
            raise ValueError(
                f"Unknown port category: {category}. Available: {list(self.RANGES)}"
            )
        port_range = self.RANGES[category]
        span = port_range.end - port_range.start
        start = port_range.start + (self.worker_offset % span)
        end = min(start + PORTS_PER_WORKER - 1, port_range.end)
        return start, end

    def _lock_path(self, port: PortNumber) -> Path:
        return self.base_dir / f"port_{port}.lock"

    def _owner_is_dead(self, lock_file: Path) -> bool:
        try:
            _, pid_str, _ = lock_file.read_text().strip().split(":")[:3]
            os.kill(int(pid_str), 0)
        except (ValueError, OSError):
            return True
        return False

    def _cleanup_stale_locks(self) -> None:
        cutoff = time.time() - STALE_LOCK_SECONDS
        removed = 0
        for lock_file in self.base_dir.glob("port_*.lock"):
            with suppress(OSError):
                if lock_file.stat().st_mtime < cutoff or self._owner_is_dead(lock_file):
                    lock_file.unlink()
                    removed += 1
        if removed:
            logger.debug("Cleaned up {} stale port lock files", removed)

    def _is_port_available(self, port: PortNumber) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind((self.host, port))
                return True
        except OSError:
            return False

    def _acquire_port_lock(self, port: PortNumber) -> bool:
        lock_file = self._lock_path(port)
        try:
            with lock_file.open("x") as handle:
                handle.write(f"{self.worker_id}:{os.getpid()}:{time.time()}\n")
            return True
        except FileExistsError:
            if self._owner_is_dead(lock_file):
                with suppress(FileNotFoundError):
                    lock_file.unlink()
                return self._acquire_port_lock(port)
            return False

    def _claim_port(self, port: PortNumber) -> bool:
        if port in self._allocated_ports or not self._acquire_port_lock(port):
            return False
        if not self._is_port_available(port):
            with suppress(FileNotFoundError):
                self._lock_path(port).unlink()
            return False
        self._allocated_ports.add(port)
        return True

    def allocate_port(self, category: str = "testing") -> PortNumber:
        return self.allocate_ports(1, category)[0]

    def allocate_ports(self, count: int, category: str = "testing") -> list[PortNumber]:
        """Claim ``count`` free ports from ``category``, all or nothing."""
        if count <= 0:
            return []
        with self._lock:
            start, end = self._worker_range(category)
            ports: list[PortNumber] = []
            for port in range(start, end + 1):
                if len(ports) == count:
                    break
                if self._claim_port(port):
                    ports.append(port)

            if len(ports) == count:
                return ports

            for port in ports:
                self._release(port)
            raise RuntimeError(
                f"Could not allocate {count} ports in {category} range "
                f"({start}-{end}) for worker {self.worker_id}"
            )

    def _release(self, port: PortNumber) -> None:
        self._allocated_ports.discard(port)
        with suppress(FileNotFoundError):
            self._lock_path(port).unlink()

    def release_port(self, port: PortNumber) -> None:
        with self._lock:
            self._release(port)

    def release_all(self) -> None:
        with self._lock:
            for port in list(self._allocated_ports):
                self._release(port)

    @property
    def allocated_ports(self) -> frozenset[PortNumber]:
        with self._lock:
            return frozenset(self._allocated_ports)


_port_allocator: PortAllocator | None = None


def get_port_allocator() -> PortAllocator:
    global _port_allocator
    if _port_allocator is None:
        _port_allocator = PortAllocator()
    return _port_allocator
