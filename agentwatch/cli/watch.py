#!/usr/bin/env python3
"""
Main CLI for AgentWatch - agent activity detection and recovery.

Usage:
    agentwatch run              - Run the engine until interrupted
    agentwatch status           - One-shot health and activity check
    agentwatch recover          - Run a manual recovery now
    agentwatch analyze [FILE]   - Classify terminal text from a file or stdin
    agentwatch patterns         - Show the pattern catalogs
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..daemon import completion_patterns
from ..daemon.analyzer import ActivityAnalyzer, clean_output
from ..daemon.config import Config, LoggingConfig
from ..daemon.error_handling import ConfigurationError
from ..daemon.main import AgentWatchEngine, main as engine_main, setup_logging
from ..daemon.models import AgentState, HealthLevel, RecoveryAttempt
from ..daemon.patterns import DEFAULT_CATALOG

console = Console()

STATE_STYLES = {
    AgentState.OFFLINE: "dim",
    AgentState.IDLE: "yellow",
    AgentState.WORKING: "green",
    AgentState.ERROR: "red",
}

HEALTH_STYLES = {
    HealthLevel.HEALTHY: "green",
    HealthLevel.DEGRADED: "yellow",
    HealthLevel.CRITICAL: "red",
}


def load_config(path: Optional[str]) -> Config:
    try:
        return Config.load(Path(path) if path else None)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Show engine logs")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """AgentWatch - watch, classify and recover terminal agents."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand != "run":
        setup_logging_for_cli(verbose)


def setup_logging_for_cli(verbose: bool) -> None:
    setup_logging(LoggingConfig(level="DEBUG" if verbose else "WARNING", file=None))


@cli.command()
@click.pass_context
def run(ctx):
    """Run the engine until SIGINT/SIGTERM."""
    sys.exit(asyncio.run(engine_main(ctx.obj["config_path"])))


@cli.command()
@click.pass_context
def status(ctx):
    """Check health and classify every target once."""
    config = load_config(ctx.obj["config_path"])
    asyncio.run(show_status(config))


async def show_status(config: Config):
    engine = AgentWatchEngine(config)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console
    ) as progress:
        progress.add_task(description="Checking agents...", total=None)
        verdict = await engine.health.check()
        for target in engine.monitor.targets:
            await engine.monitor.poll_once(target.name)

    style = HEALTH_STYLES[verdict.overall]
    console.print(
        f"System health: [{style}]{verdict.overall.value}[/{style}] "
        f"({verdict.agents_up}/{len(verdict.per_agent_up)} agents up)"
    )
    for session, up in verdict.per_session_up.items():
        mark = "[green]✓[/green]" if up else "[red]✗[/red]"
        console.print(f"  {mark} session {session}")

    table = Table(title="Agents")
    table.add_column("Target", style="cyan")
    table.add_column("Address")
    table.add_column("Role", style="magenta")
    table.add_column("Detected", justify="center")
    table.add_column("State")
    table.add_column("Activity", no_wrap=False)

    snapshot = engine.monitor.snapshot()
    for target in engine.monitor.targets:
        status = snapshot[target.name]
        detected = verdict.per_agent_up.get(target.name)
        state_style = STATE_STYLES[status.state]
        table.add_row(
            target.name,
            target.address,
            target.role,
            "-" if detected is None else ("[green]yes[/green]" if detected else "[red]no[/red]"),
            f"[{state_style}]{status.state.value}[/{state_style}]",
            escape(status.current_activity or "")
        )

    console.print(table)


@cli.command()
@click.pass_context
def recover(ctx):
    """Recover missing sessions and agents now, ignoring the cooldown."""
    config = load_config(ctx.obj["config_path"])
    asyncio.run(run_recovery(config))


async def run_recovery(config: Config):
    engine = AgentWatchEngine(config)
    verdict = await engine.health.check()
    if verdict.overall == HealthLevel.HEALTHY:
        console.print("[green]All sessions and agents are up, nothing to recover[/green]")
        return

    console.print(
        f"Recovering: sessions {verdict.down_sessions or '-'}, agents {verdict.down_agents or '-'}"
    )
    result = await engine.recovery.attempt_recovery(verdict, manual=True)
    if not isinstance(result, RecoveryAttempt):
        console.print(f"[yellow]Recovery skipped:[/yellow] {result.reason}")
        return

    table = Table(title=f"Recovery {result.id}")
    table.add_column("Action", style="cyan")
    table.add_column("Target")
    table.add_column("Result")
    for action in result.actions_taken:
        outcome = "[green]ok[/green]" if action.ok else f"[red]{escape(action.error or '')}[/red]"
        table.add_row(action.kind, action.target, outcome)
    console.print(table)
    console.print(f"Outcome: [bold]{result.outcome.value}[/bold]")


@cli.command()
@click.argument("source", type=click.File("r"), default="-")
def analyze(source):
    """Classify terminal text from SOURCE (default: stdin)."""
    text = clean_output(source.read())
    match = ActivityAnalyzer().analyze(text)

    if match is None:
        console.print("[yellow]No activity pattern matched[/yellow]")
    else:
        console.print(f"[bold]{match.kind.value}[/bold] (priority {match.priority}, confidence {match.confidence:.2f})")
        console.print(f"  {escape(match.description)}")
        if match.extracted_file:
            console.print(f"  file: [cyan]{escape(match.extracted_file)}[/cyan]")
        if match.extracted_command:
            console.print(f"  command: [cyan]{escape(match.extracted_command)}[/cyan]")

    completion = completion_patterns.match_completion(text)
    if completion:
        kind = "official declaration" if completion.official else "completion phrasing"
        console.print(f"[green]✓[/green] {kind}: {escape(completion.source)}")


@cli.command()
def patterns():
    """Show pattern catalog statistics."""
    table = Table(title=f"Activity patterns ({len(DEFAULT_CATALOG)})")
    table.add_column("Kind", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Top priority", justify="right")
    for kind, count in DEFAULT_CATALOG.get_stats().items():
        entries = [e for e in DEFAULT_CATALOG.entries if e.kind.value == kind]
        top = max((e.priority for e in entries), default=0)
        table.add_row(kind, str(count), str(top))
    console.print(table)

    stats = completion_patterns.get_stats()
    console.print(
        f"Completion: {stats['completion_patterns']} patterns "
        f"({stats['official_patterns']} official), {stats['exclusion_patterns']} exclusions"
    )


if __name__ == "__main__":
    cli()
