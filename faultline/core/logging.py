"""Logging setup for harness runs.

Everything logs through loguru with ``[node-id]`` style prefixes. Records
carry the thread name because nearly every interesting event happens on a
driver, relay or fault-action thread.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{thread.name: <18} | {name}:{function}:{line} - {message}"
)

RUN_LOG_NAME = "faultline.log"


class DebugScopeFilter:
    """Pass DEBUG records whose module is inside one of ``scopes``.

    A bare scope such as ``proxy`` also matches ``faultline.proxy``.
    """

    def __init__(self, scopes: Iterable[str]) -> None:
        prefixes: list[str] = []
        for scope in scopes:
            scope = scope.strip()
            if not scope:
                continue
            prefixes.append(scope)
            if not scope.startswith("faultline."):
                prefixes.append(f"faultline.{scope}")
        self.prefixes = tuple(prefixes)

    def __bool__(self) -> bool:
        return bool(self.prefixes)

    def __call__(self, record: Mapping[str, Any]) -> bool:
        if record["level"].name != "DEBUG":
            return False
        return (record.get("name") or "").startswith(self.prefixes)


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    """Replace all sinks with a stderr sink at ``level``.

    When ``level`` is above DEBUG, DEBUG records from ``debug_scopes`` are
    still emitted through a second, filtered sink.
    """
    logger.remove()
    handler_ids = [
        logger.add(sys.stderr, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]
    scope_filter = DebugScopeFilter(debug_scopes)
    if scope_filter and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=scope_filter,
            )
        )
    return tuple(handler_ids)


def add_run_log(root_dir: Path) -> int:
    """Append every record of this run, DEBUG included, to ``<root_dir>/faultline.log``."""
    root_dir.mkdir(parents=True, exist_ok=True)
    path = root_dir / RUN_LOG_NAME
    handler_id = logger.add(
        path, level="DEBUG", format=DEFAULT_LOG_FORMAT, enqueue=True, encoding="utf-8"
    )
    logger.debug("Run log at {}", path)
    return handler_id
