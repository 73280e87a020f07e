"""
A single TCP relay: one local listening port forwarding to one target.

Each accepted connection gets two pump threads, one per direction, so a
peer that stops reading only stalls its own direction. Disabling a relay
shuts its listening socket down (new connections are refused at once) and
shuts down every open connection; enabling it waits for the previous accept
thread to exit and binds the same port again. The target is dialled on a
per-connection thread, so an unreachable target never stalls the accept loop.
"""

from __future__ import annotations

import select
import socket
import threading
from contextlib import suppress
from dataclasses import dataclass, field

from loguru import logger

from faultline.core.errors import ProxyBindError
from faultline.core.task_manager import ThreadManager
from faultline.datastructures.sync import AtomicCounter
from faultline.datastructures.type_aliases import DurationSeconds, Endpoint
from faultline.proxy.rewrite import RewriteRule, StreamRewriter

DEFAULT_BUFFER_SIZE = 64 * 1024
ACCEPT_POLL_INTERVAL: DurationSeconds = 0.2
REWRITE_IDLE_FLUSH: DurationSeconds = 0.05


@dataclass(slots=True)
class RelayStats:
    """Byte and connection counters for one relay."""

    accepted: AtomicCounter = field(default_factory=AtomicCounter)
    refused: AtomicCounter = field(default_factory=AtomicCounter)
    bytes_upstream: AtomicCounter = field(default_factory=AtomicCounter)
    bytes_downstream: AtomicCounter = field(default_factory=AtomicCounter)


class RelayConnection:
    """One client connection bridged to the target."""

    def __init__(self, relay: Relay, client: socket.socket, upstream: socket.socket) -> None:
        self.relay = relay
        self.client = client
        self.upstream = upstream
        self._lock = threading.Lock()
        self._closed = False
        self._finished_pumps = 0

    def start(self, threads: ThreadManager) -> None:
        name = self.relay.name
        upstream_rule = self.relay.upstream_rule
        downstream_rule = self.relay.downstream_rule
        threads.spawn(
            self._pump,
            self.client,
            self.upstream,
            StreamRewriter(upstream_rule) if upstream_rule else None,
            self.relay.stats.bytes_upstream,
            name=f"{name}-up",
        )
        threads.spawn(
            self._pump,
            self.upstream,
            self.client,
            StreamRewriter(downstream_rule) if downstream_rule else None,
            self.relay.stats.bytes_downstream,
            name=f"{name}-down",
        )

    def _pump(
        self,
        source: socket.socket,
        sink: socket.socket,
        rewriter: StreamRewriter | None,
        counter: AtomicCounter,
    ) -> None:
        clean_eof = False
        try:
            while not self._closed:
                if rewriter is not None and rewriter.pending:
                    readable, _, _ = select.select([source], [], [], REWRITE_IDLE_FLUSH)
                    if not readable:
                        self._send(sink, rewriter.flush(), counter)
                        continue
                chunk = source.recv(self.relay.buffer_size)
                if not chunk:
                    clean_eof = True
                    break
                data = rewriter.feed(chunk) if rewriter is not None else chunk
                self._send(sink, data, counter)
            if rewriter is not None and clean_eof:
                self._send(sink, rewriter.flush(), counter)
        except (OSError, ValueError) as e:
            if not self._closed:
                logger.debug("[{}] Pump stopped: {!r}", self.relay.name, e)
            clean_eof = False
        finally:
            self._pump_finished(sink, clean_eof)

    @staticmethod
    def _send(sink: socket.socket, data: bytes, counter: AtomicCounter) -> None:
        if data:
            sink.sendall(data)
            counter.add(len(data))

    def _pump_finished(self, sink: socket.socket, clean_eof: bool) -> None:
        with self._lock:
            self._finished_pumps += 1
            both_done = self._finished_pumps >= 2
        if clean_eof and not both_done:
            try:
                sink.shutdown(socket.SHUT_WR)
            except OSError:
                self.close()
            return
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for sock in (self.client, self.upstream):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        self.relay._forget(self)


class Relay:
    """Forwards ``listen`` to ``target`` while enabled."""

    def __init__(
        self,
        name: str,
        listen: Endpoint,
        target: Endpoint,
        threads: ThreadManager,
        *,
        upstream_rule: RewriteRule | None = None,
        downstream_rule: RewriteRule | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        connect_timeout: DurationSeconds = 5.0,
    ) -> None:
        self.name = name
        self.listen = listen
        self.target = target
        self.threads = threads
        self.upstream_rule = upstream_rule
        self.downstream_rule = downstream_rule
        self.buffer_size = buffer_size
        self.connect_timeout = connect_timeout
        self.stats = RelayStats()

        self._lock = threading.Lock()
        self._switch_lock = threading.Lock()
        self._enabled = False
        self._closed = False
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._connections: set[RelayConnection] = set()

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def _bind(self) -> socket.socket:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind(self.listen)
            listener.listen(64)
        except OSError as e:
            listener.close()
            raise ProxyBindError(f"Relay {self.name} cannot bind {self.listen}: {e}") from e
        listener.settimeout(ACCEPT_POLL_INTERVAL)
        return listener

    def enable(self) -> None:
        with self._switch_lock:
            with self._lock:
                if self._closed:
                    raise RuntimeError(f"Relay {self.name} is closed")
                if self._enabled:
                    return
                previous = self._accept_thread
            if previous is not None:
                previous.join(ACCEPT_POLL_INTERVAL * 5)
                if previous.is_alive():
                    raise ProxyBindError(
                        f"Relay {self.name}: previous accept thread still running"
                    )
            with self._lock:
                listener = self._bind()
                self._listener = listener
                self._enabled = True
            self._accept_thread = self.threads.spawn(
                self._accept_loop, listener, name=f"{self.name}-accept"
            )
        logger.debug("[{}] Relay enabled {} -> {}", self.name, self.listen, self.target)

    def disable(self) -> None:
        with self._switch_lock:
            with self._lock:
                if not self._enabled:
                    return
                self._enabled = False
                listener, self._listener = self._listener, None
                connections = list(self._connections)
            if listener is not None:
                with suppress(OSError):
                    listener.shutdown(socket.SHUT_RDWR)
                listener.close()
        for connection in connections:
            connection.close()
        logger.debug(
            "[{}] Relay disabled, dropped {} connections", self.name, len(connections)
        )

    def close(self) -> None:
        self.disable()
        with self._lock:
            self._closed = True

    def _forget(self, connection: RelayConnection) -> None:
        with self._lock:
            self._connections.discard(connection)

    def _accept_loop(self, listener: socket.socket) -> None:
        while not self.threads.stopping:
            with self._lock:
                if self._listener is not listener:
                    return
            try:
                client, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            client.settimeout(None)
            try:
                self.threads.spawn(self._bridge, client, name=f"{self.name}-dial")
            except RuntimeError:
                client.close()
                return

    def _bridge(self, client: socket.socket) -> None:
        if not self.enabled:
            self.stats.refused.increment()
            client.close()
            return
        try:
            upstream = socket.create_connection(self.target, timeout=self.connect_timeout)
            upstream.settimeout(None)
        except OSError as e:
            logger.debug("[{}] Target {} unreachable: {!r}", self.name, self.target, e)
            self.stats.refused.increment()
            client.close()
            return

        connection = RelayConnection(self, client, upstream)
        with self._lock:
            if not self._enabled:
                admitted = False
            else:
                self._connections.add(connection)
                admitted = True
        if not admitted:
            self.stats.refused.increment()
            client.close()
            upstream.close()
            return

        self.stats.accepted.increment()
        connection.start(self.threads)

    def __repr__(self) -> str:
        state = "enabled" if self.enabled else "disabled"
        return f"Relay({self.name!r}, {self.listen} -> {self.target}, {state})"
