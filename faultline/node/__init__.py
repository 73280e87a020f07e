"""Node lifecycle management."""

from faultline.node.process import (
    NodeBackend,
    NodeConfig,
    NodeProcess,
    NodeState,
    StopMode,
)
from faultline.node.subprocess_backend import SubprocessBackend, tcp_ready

__all__ = [
    "NodeBackend",
    "NodeConfig",
    "NodeProcess",
    "NodeState",
    "StopMode",
    "SubprocessBackend",
    "tcp_ready",
]
