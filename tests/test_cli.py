"""Tests for the faultline command-line interface."""

from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from faultline.cli.main import EXIT_FAILED, EXIT_OK, EXIT_USAGE, cli, main, resolve_scenario
from faultline.orchestrator import ClusterTestOrchestrator
from faultline.scenarios import ConcurrentWritesScenario
from faultline.testing.memory import InMemoryCluster


class FailingScenario(ClusterTestOrchestrator):
    """Always fails its final check; used to exercise the failure exit code."""

    name = "always-fails"
    server_count = 1
    iterations = 2
    readers = False

    def create_client(self):
        return InMemoryCluster()

    def on_after_execution(self) -> None:
        self.fail("deliberate failure")


def exit_code(*argv: str) -> int:
    with pytest.raises(SystemExit) as info:
        main(list(argv))
    return info.value.code


class TestInformationalCommands:
    """Test commands that only print."""

    def test_scenarios_lists_bundled(self):
        """Test every bundled scenario appears in the listing."""
        result = CliRunner().invoke(cli, ["scenarios"])
        assert result.exit_code == 0
        for name in ("concurrent-writes", "crash-restart", "partition", "contended-lock"):
            assert name in result.output

    def test_settings_shows_environment(self, monkeypatch):
        """Test settings reflect FAULTLINE_ environment variables."""
        monkeypatch.setenv("FAULTLINE_DATABASE_NAME", "from-env")
        result = CliRunner().invoke(cli, ["settings"])
        assert result.exit_code == 0
        assert "from-env" in result.output
        assert "execution_timeout" in result.output


class TestResolveScenario:
    """Test scenario name resolution."""

    def test_bundled_and_dotted(self):
        """Test bundled names and module:Class paths both resolve."""
        assert resolve_scenario("concurrent-writes") is ConcurrentWritesScenario
        resolved = resolve_scenario("tests.test_cli:FailingScenario")
        assert resolved.name == FailingScenario.name
        assert issubclass(resolved, ClusterTestOrchestrator)

    def test_not_a_scenario(self):
        """Test a path to something that is not an orchestrator is rejected."""
        with pytest.raises(click.BadParameter):
            resolve_scenario("faultline.cli.main:main")


class TestRunCommand:
    """Test exit codes of the run command."""

    def test_invalid_mode(self, tmp_path: Path):
        """Test an unknown mode is a usage error."""
        assert exit_code("run", "concurrent-writes", "sideways", "--root-dir", str(tmp_path)) == EXIT_USAGE

    def test_unknown_scenario(self, tmp_path: Path):
        """Test an unknown scenario is a usage error."""
        assert exit_code("run", "no-such-scenario", "prepare", "--root-dir", str(tmp_path)) == EXIT_USAGE

    def test_invalid_server_count(self, tmp_path: Path):
        """Test a server count below one is a usage error."""
        assert exit_code("run", "concurrent-writes", "prepare", "0", "--root-dir", str(tmp_path)) == EXIT_USAGE

    @pytest.mark.slow
    def test_prepare_and_execute(self, tmp_path: Path):
        """Test a full run passes."""
        code = exit_code(
            "run",
            "concurrent-writes",
            "prepare+execute",
            "3",
            "--root-dir",
            str(tmp_path / "run"),
            "--execution-timeout",
            "120",
        )
        assert code == EXIT_OK
        assert (tmp_path / "run" / "faultline.log").exists()

    @pytest.mark.slow
    def test_separate_prepare_then_execute(self, tmp_path: Path):
        """Test execute reuses the data a separate prepare invocation left behind."""
        root = str(tmp_path / "split")
        assert exit_code("run", "concurrent-writes", "prepare", "2", "--root-dir", root) == EXIT_OK
        assert (tmp_path / "split" / "node-1" / "data" / "store.json").exists()
        assert exit_code("run", "concurrent-writes", "execute", "2", "--root-dir", root) == EXIT_OK

    def test_failed_run_exit_code(self, tmp_path: Path):
        """Test a failing scenario exits with the failure status."""
        code = exit_code(
            "run",
            "tests.test_cli:FailingScenario",
            "prepare+execute",
            "--root-dir",
            str(tmp_path),
        )
        assert code == EXIT_FAILED
