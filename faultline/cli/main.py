#!/usr/bin/env python3
"""
Command-line entry point for running cluster scenarios.

    faultline run <scenario> <prepare|execute|prepare+execute> [<server_count>]

``scenario`` is a bundled scenario name (see ``faultline scenarios``) or a
``module:Class`` path to a ``ClusterTestOrchestrator`` subclass. Invalid
arguments exit with status 1; a failed run exits with status 2.
"""

import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from faultline.config import HarnessSettings, SeedMode, StartMode
from faultline.core.errors import ScenarioFailedError
from faultline.core.logging import add_run_log, configure_logging
from faultline.orchestrator import ClusterTestOrchestrator, RunReport, load_object
from faultline.scenarios import SCENARIOS

console = Console()

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILED = 2

MODES = ("prepare", "execute", "prepare+execute")


def resolve_scenario(name: str) -> type[ClusterTestOrchestrator]:
    """Map a bundled scenario name or ``module:Class`` path to its class."""
    if name in SCENARIOS:
        return SCENARIOS[name]
    try:
        scenario = load_object(name)
    except (ImportError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint="SCENARIO") from e
    if not isinstance(scenario, type) or not issubclass(scenario, ClusterTestOrchestrator):
        raise click.BadParameter(
            f"{name} is not a ClusterTestOrchestrator subclass", param_hint="SCENARIO"
        )
    return scenario


def display_report(report: RunReport) -> None:
    """Render a run report as rich tables."""
    result = "[green]✅ PASSED[/green]" if report.passed else "[red]❌ FAILED[/red]"
    summary = Table(title=f"🧪 {report.scenario}", show_header=False)
    summary.add_column("Field", style="cyan", no_wrap=True)
    summary.add_column("Value")
    summary.add_row("Result", result)
    summary.add_row("Phase reached", str(report.phase))
    summary.add_row("Elapsed", f"{report.elapsed:.2f}s")
    if report.expected is not None:
        summary.add_row("Expected records", str(report.expected))
    summary.add_row("Writes", str(report.successes))
    summary.add_row("Conflicts", str(report.conflicts))
    if report.leaked_threads:
        summary.add_row("Leaked threads", ", ".join(report.leaked_threads))
    console.print(summary)

    if report.counts:
        counts = Table(title="📊 Records per node")
        counts.add_column("Node", style="cyan")
        counts.add_column("Records", justify="right")
        for node_id, count in sorted(report.counts.items()):
            style = "green" if count == report.expected else "yellow"
            counts.add_row(node_id, f"[{style}]{count}[/{style}]")
        console.print(counts)

    if report.outcomes:
        drivers = Table(title="🚗 Drivers")
        drivers.add_column("Driver", style="cyan", no_wrap=True)
        drivers.add_column("Node", style="magenta")
        drivers.add_column("OK", justify="right")
        drivers.add_column("Conflicts", justify="right")
        drivers.add_column("Retries", justify="right")
        drivers.add_column("Exhausted", justify="right")
        drivers.add_column("Status")
        for outcome in report.outcomes:
            if outcome.fatal_error is not None:
                status = f"[red]{outcome.fatal_error!r}[/red]"
            elif outcome.interrupted:
                status = "[yellow]interrupted[/yellow]"
            else:
                status = "[green]done[/green]"
            drivers.add_row(
                outcome.driver,
                outcome.node_id,
                str(outcome.successes),
                str(outcome.conflicts),
                str(outcome.retries),
                str(outcome.exhausted),
                status,
            )
        console.print(drivers)

    if report.failures:
        console.print(
            Panel(
                "\n".join(f"• {failure}" for failure in report.failures),
                title="Failures",
                border_style="red",
            )
        )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable DEBUG logging")
@click.option(
    "--debug-scope",
    multiple=True,
    help="Module scope (e.g. proxy, workload) whose DEBUG logs are always shown",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug_scope: tuple[str, ...]) -> None:
    """faultline: orchestrate and fault-inject a replicated database cluster."""
    settings = HarnessSettings()
    level = "DEBUG" if verbose else settings.log_level
    configure_logging(level, debug_scopes=(*settings.debug_scopes, *debug_scope))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("scenario")
@click.argument("mode", type=click.Choice(MODES))
@click.argument("server_count", type=click.IntRange(min=1), required=False)
@click.option("--root-dir", type=click.Path(path_type=Path), help="Per-test root directory")
@click.option("--client-factory", help="module:callable returning the database client")
@click.option(
    "--seed-mode", type=click.Choice([mode.value for mode in SeedMode]), help="Seeding mode"
)
@click.option(
    "--start-mode", type=click.Choice([mode.value for mode in StartMode]), help="Start mode"
)
@click.option("--execution-timeout", type=float, help="Hard ceiling in seconds")
@click.pass_context
def run(
    ctx: click.Context,
    scenario: str,
    mode: str,
    server_count: int | None,
    root_dir: Path | None,
    client_factory: str | None,
    seed_mode: str | None,
    start_mode: str | None,
    execution_timeout: float | None,
) -> int:
    """Run SCENARIO in MODE (prepare, execute or prepare+execute)."""
    scenario_class = resolve_scenario(scenario)
    overrides: dict[str, Any] = {
        key: value
        for key, value in {
            "root_dir": root_dir,
            "client_factory": client_factory,
            "seed_mode": SeedMode(seed_mode) if seed_mode else None,
            "start_mode": StartMode(start_mode) if start_mode else None,
            "execution_timeout": execution_timeout,
        }.items()
        if value is not None
    }
    settings: HarnessSettings = ctx.obj["settings"].model_copy(update=overrides)

    orchestrator = scenario_class(settings)
    count = server_count if server_count is not None else scenario_class.server_count
    console.print(
        f"[bold blue]▶ {orchestrator.report.scenario}[/bold blue] {mode} on {count} nodes "
        f"under {settings.root_dir}"
    )
    run_log = add_run_log(settings.root_dir)

    try:
        match mode:
            case "prepare":
                orchestrator.init(count)
                orchestrator.prepare(start_nodes=False)
                report = orchestrator.close()
            case "execute":
                orchestrator.init(count, clean=False)
                report = orchestrator.execute()
            case _:
                report = orchestrator.run(count)
    except ScenarioFailedError as e:
        report = e.report
    except Exception as e:
        logger.exception("Run aborted")
        report = orchestrator.close()
        if not report.failures:
            report.failures.append(f"{type(e).__name__}: {e}")
        report.passed = False
    finally:
        logger.remove(run_log)

    display_report(report)
    return EXIT_OK if report.passed else EXIT_FAILED


@cli.command()
def scenarios() -> None:
    """List bundled scenarios."""
    table = Table(title="📚 Bundled scenarios")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Class", style="magenta")
    table.add_column("Nodes", justify="right")
    table.add_column("Description")
    for name, scenario_class in sorted(SCENARIOS.items()):
        doc = (scenario_class.__doc__ or "").strip().splitlines()
        table.add_row(
            name,
            f"{scenario_class.__module__}:{scenario_class.__name__}",
            str(scenario_class.server_count),
            doc[0] if doc else "",
        )
    console.print(table)


@cli.command()
@click.pass_context
def settings(ctx: click.Context) -> None:
    """Show the effective harness settings."""
    current: HarnessSettings = ctx.obj["settings"]
    table = Table(title="⚙️ Harness settings")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_column("Description", style="dim")
    for name, info in HarnessSettings.model_fields.items():
        table.add_row(name, str(getattr(current, name)), info.description or "")
    console.print(table)


def main(argv: Sequence[str] | None = None) -> None:
    """Main CLI entry point."""
    try:
        code = cli.main(args=list(argv) if argv is not None else None, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(EXIT_USAGE)
    except click.exceptions.Abort:
        console.print("\n[yellow]⚠️ Operation cancelled by user[/yellow]")
        sys.exit(EXIT_USAGE)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Operation cancelled by user[/yellow]")
        sys.exit(EXIT_USAGE)
    sys.exit(code if isinstance(code, int) else EXIT_OK)


if __name__ == "__main__":
    main()
