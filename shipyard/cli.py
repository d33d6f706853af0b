"""CLI for the Shipyard daemon.

Thin command-line wrappers around the daemon, its state document and
the event log. Exit code 0 on success, 1 on a reported user error.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shipyard.config import DEFAULT_CONFIG_PATH, DaemonConfig
from shipyard.daemon import Daemon
from shipyard.dora import compute
from shipyard.errors import ShipyardError
from shipyard.events import EventLog
from shipyard.lock import DaemonLock
from shipyard.notifier import format_duration
from shipyard.pause import PauseFlag
from shipyard.state import StateStore
from shipyard.telemetry import setup_telemetry

console = Console()

GRADE_COLORS = {"Elite": "green", "High": "cyan", "Medium": "yellow", "Low": "red"}


def _load_config(config_path: str | None, required: bool = False) -> DaemonConfig:
    """Load the daemon config, optionally insisting that the file exists."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if required or path.exists():
        return DaemonConfig.from_env(path)
    return DaemonConfig.from_env()


def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


def _configure_logging(state_dir: Path, verbose: bool) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(state_dir / "daemon.log"),
        ],
    )


@click.group()
@click.version_option(package_name="shipyard")
def cli() -> None:
    """Shipyard - Autonomous issue-to-pipeline daemon."""
    pass


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def start(config_path: str | None, verbose: bool) -> None:
    """Start the daemon in the foreground."""
    try:
        config = _load_config(config_path, required=True)
    except ShipyardError as e:
        _fail(str(e))
        return

    _configure_logging(config.state_dir, verbose)
    setup_telemetry(config)

    daemon = Daemon(config)
    try:
        asyncio.run(daemon.run())
    except ShipyardError as e:
        _fail(str(e))
    sys.exit(0)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
def stop(config_path: str | None) -> None:
    """Stop the running daemon."""
    config = _load_config(config_path)
    pid = DaemonLock(config.state_dir).running_pid()
    if pid is None:
        _fail("No running daemon found")
        return

    os.kill(pid, signal.SIGTERM)
    console.print(f"Sent stop signal to daemon (PID {pid})")
    sys.exit(0)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
@click.option("--json", "as_json", is_flag=True, help="Print raw state JSON")
def status(config_path: str | None, as_json: bool) -> None:
    """Show active jobs, queue and outcome counts."""
    config = _load_config(config_path)
    try:
        state = StateStore(config.state_dir).load()
        pause = PauseFlag(config.state_dir).read()
    except ShipyardError as e:
        _fail(str(e))
        return
    if state is None:
        _fail(f"No daemon state found in {config.state_dir}")
        return

    if as_json:
        click.echo(json.dumps(state.to_dict(), indent=2))
        sys.exit(0)

    running = DaemonLock(config.state_dir).running_pid()
    if running:
        console.print(f"Daemon: [green]running[/green] (PID {running})")
    else:
        console.print("Daemon: [red]stopped[/red]")
    if pause is not None:
        console.print(f"[yellow]Paused:[/yellow] {escape(pause.reason)}")

    now = datetime.now(timezone.utc)
    table = Table(title="Active Jobs")
    table.add_column("Issue", style="cyan")
    table.add_column("Title")
    table.add_column("PID", justify="right")
    table.add_column("Stage")
    table.add_column("Elapsed", justify="right")
    table.add_column("Retry", justify="right")
    for job in state.active_jobs:
        elapsed = (now - job.started_at).total_seconds()
        table.add_row(
            f"#{job.id}",
            job.title,
            str(job.pid),
            job.stage,
            format_duration(elapsed),
            str(job.retry_count),
        )
    console.print(table)
    console.print(
        f"Queued: {len(state.queued)} | "
        f"Completed: [green]{len(state.completed)}[/green] | "
        f"Failed: [red]{len(state.failed)}[/red]"
    )
    sys.exit(0)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.option("--period", default=7, type=click.IntRange(min=1), help="Window in days")
@click.option("--offset", default=0, type=click.IntRange(min=0), help="Days before now")
def metrics(config_path: str | None, as_json: bool, period: int, offset: int) -> None:
    """Show DORA delivery metrics from the event log."""
    config = _load_config(config_path)
    events = EventLog(config.state_dir / "events.jsonl")
    if not events.exists():
        _fail(f"No events found at {events.path}")
        return

    report = compute(events.read(), window_days=period, offset_days=offset)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(0)

    table = Table(title=f"DORA Metrics (last {period} days)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Grade")
    rows = [
        ("deploy_freq", "Deploy frequency", f"{report.deploy_freq:.1f}/week"),
        ("cycle_time", "Cycle time (median)", format_duration(report.cycle_time)),
        ("cfr", "Change failure rate", f"{report.cfr:.1f}%"),
        ("mttr", "Mean time to recovery", format_duration(report.mttr)),
    ]
    for key, label, value in rows:
        grade = report.grades[key]
        color = GRADE_COLORS[grade]
        table.add_row(label, value, f"[{color}]{grade}[/{color}]")
    console.print(table)
    console.print(
        f"Completions: {report.total} "
        f"([green]{report.successes}[/green] ok, [red]{report.failures}[/red] failed) | "
        f"Cycle time p95: {format_duration(report.cycle_time_p95)}"
    )
    sys.exit(0)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
@click.option("--reason", default="manual", help="Reason recorded in the pause flag")
def pause(config_path: str | None, reason: str) -> None:
    """Pause new dispatch (running jobs continue)."""
    config = _load_config(config_path)
    flag = PauseFlag(config.state_dir)
    flag.pause(reason, datetime.now(timezone.utc))
    EventLog(config.state_dir / "events.jsonl").emit("daemon.paused", reason=reason)
    console.print(f"Dispatch paused ({reason})")
    sys.exit(0)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to daemon config JSON")
def resume(config_path: str | None) -> None:
    """Clear the pause flag."""
    config = _load_config(config_path)
    if not PauseFlag(config.state_dir).clear():
        _fail("Daemon is not paused")
        return
    EventLog(config.state_dir / "events.jsonl").emit("daemon.resumed")
    console.print("Dispatch resumed")
    sys.exit(0)


def main() -> None:
    """Main entry point for the shipyard CLI."""
    cli()


if __name__ == "__main__":
    main()
