"""Tests for log sink configuration."""

from pathlib import Path
from types import SimpleNamespace

from loguru import logger

from faultline.core.logging import DebugScopeFilter, add_run_log, configure_logging


def record(level: str, name: str) -> dict:
    return {"level": SimpleNamespace(name=level), "name": name}


class TestDebugScopeFilter:
    """Test which records the scoped DEBUG sink lets through."""

    def test_bare_and_qualified_scopes(self):
        """Test a bare scope matches the faultline package module too."""
        scope_filter = DebugScopeFilter(["proxy", "faultline.workload", " "])
        assert scope_filter.prefixes == ("proxy", "faultline.proxy", "faultline.workload")
        assert scope_filter(record("DEBUG", "faultline.proxy.relay"))
        assert scope_filter(record("DEBUG", "faultline.workload"))
        assert not scope_filter(record("DEBUG", "faultline.orchestrator"))

    def test_only_debug_records(self):
        """Test records above DEBUG are left to the main sink."""
        assert not DebugScopeFilter(["proxy"])(record("INFO", "faultline.proxy.relay"))

    def test_empty_filter_is_falsy(self):
        assert not DebugScopeFilter([])


class TestSinks:
    """Test sink installation."""

    def test_scoped_sink_only_above_debug(self):
        """Test the extra sink is skipped when everything is logged anyway."""
        assert len(configure_logging("INFO", debug_scopes=["proxy"])) == 2
        assert len(configure_logging("DEBUG", debug_scopes=["proxy"])) == 1
        assert len(configure_logging("INFO")) == 1

    def test_run_log(self, tmp_path: Path):
        """Test the run log captures DEBUG records under the root directory."""
        handler_id = add_run_log(tmp_path / "root")
        try:
            logger.debug("[node-0] relay message")
        finally:
            logger.remove(handler_id)
        text = (tmp_path / "root" / "faultline.log").read_text()
        assert "[node-0] relay message" in text
