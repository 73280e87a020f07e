"""OS-process node backend driven by an argv template."""

from __future__ import annotations

import os
import signal
import socket
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import IO

import psutil
from loguru import logger

from faultline.datastructures.type_aliases import DurationSeconds
from faultline.node.process import NodeConfig, StopMode

LOG_FILE_NAME = "node.log"


@dataclass(slots=True)
class ProcessHandle:
    """A launched node process and its log file."""

    process: subprocess.Popen[bytes]
    log_file: IO[bytes]

    @property
    def pid(self) -> int:
        return self.process.pid


def tcp_ready(host: str, port: int, timeout: DurationSeconds = 1.0) -> bool:
    """True when something accepts TCP connections on (host, port)."""
    with socket.socket() as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def render_command(template: Sequence[str], config: NodeConfig) -> list[str]:
    """Fill ``{placeholder}`` fields of an argv template from ``config``."""
    peers = ",".join(f"{host}:{port}" for host, port in config.peers.values())
    values = {
        "node_id": config.node_id,
        "ordinal": config.ordinal,
        "host": config.host,
        "client_port": config.client_port,
        "internode_port": config.internode_port,
        "data_dir": str(config.data_dir),
        "root_dir": str(config.root_dir),
        "config_file": str(config.config_file),
        "peers": peers,
    }
    return [part.format(**values) for part in template]


@dataclass(slots=True)
class SubprocessBackend:
    """Runs each node as its own process group.

    Graceful stop sends SIGTERM to the group and escalates to SIGKILL after
    the grace period; a forced kill sends SIGKILL to the whole process tree
    immediately so no shutdown hook gets a chance to run.
    """

    command: Sequence[str]
    env: Mapping[str, str] = field(default_factory=dict)

    def launch(self, config: NodeConfig) -> ProcessHandle:
        if not self.command:
            raise ValueError("No node command configured")
        argv = render_command(self.command, config)
        log_file = (config.root_dir / LOG_FILE_NAME).open("ab")
        env = {**os.environ, **self.env, "FAULTLINE_NODE_ID": config.node_id}
        logger.debug("[{}] Launching {}", config.node_id, argv)
        try:
            process = subprocess.Popen(
                argv,
                cwd=config.root_dir,
                env=env,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError:
            log_file.close()
            raise
        return ProcessHandle(process=process, log_file=log_file)

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.process.poll() is None

    def stop(
        self, handle: ProcessHandle, mode: StopMode, grace: DurationSeconds
    ) -> None:
        try:
            if mode is StopMode.FORCE_KILL:
                self._kill_tree(handle)
            else:
                self._terminate_group(handle, grace)
        finally:
            handle.log_file.close()

    def _terminate_group(self, handle: ProcessHandle, grace: DurationSeconds) -> None:
        process = handle.process
        if process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            logger.warning(
                "Process {} ignored SIGTERM for {:.1f}s, killing it", process.pid, grace
            )
        self._kill_tree(handle)

    def _kill_tree(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process.poll() is not None:
            return
        try:
            parent = psutil.Process(process.pid)
            victims = [parent, *parent.children(recursive=True)]
        except psutil.NoSuchProcess:
            return
        for victim in victims:
            try:
                victim.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(victims, timeout=5.0)
        process.poll()
