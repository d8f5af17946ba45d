"""Command line tools for inspecting cron expressions."""

from datetime import datetime
from pathlib import Path
from typing import Annotated
from zoneinfo import ZoneInfo

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cadence.config import SchedulerConfig, load_config
from cadence.errors import ConfigError, ParseError
from cadence.logging import configure_logging
from cadence.parser import Dialect, Schedule, parse, utcnow

app = typer.Typer(
    name="cadence",
    help="cadence - cron expression tools",
    no_args_is_help=True,
)

console = Console()

TIME_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def error(msg: str) -> None:
    console.print(f"[red]{escape(msg)}[/red]")


def success(msg: str) -> None:
    console.print(f"[green]{msg}[/green]")


def format_countdown(fire_at: datetime, now: datetime) -> str:
    """Format a countdown string for a fire time."""
    if fire_at <= now:
        return "now"

    total_seconds = int((fire_at - now).total_seconds())
    if total_seconds < 60:
        return f"in {total_seconds}s"

    total_minutes = total_seconds // 60
    if total_minutes < 60:
        return f"in {total_minutes}m"

    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours < 24:
        if minutes:
            return f"in {hours}h {minutes}m"
        return f"in {hours}h"

    days = hours // 24
    hours = hours % 24
    if hours:
        return f"in {days}d {hours}h"
    return f"in {days}d"


SecondsOption = Annotated[
    bool,
    typer.Option("--seconds", "-s", help="Use the 6-field seconds dialect"),
]
TimezoneOption = Annotated[
    str | None,
    typer.Option("--tz", help="IANA time zone for field expressions"),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to configuration file"),
]


def _load(config_path: Path | None) -> SchedulerConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        error(str(e))
        raise typer.Exit(1) from e


def _parse(
    expression: str, seconds: bool, tz: str | None, config_path: Path | None
) -> tuple[Schedule, Dialect, str]:
    config = _load(config_path)
    dialect = Dialect.SECONDS if seconds else config.dialect
    timezone = tz or config.timezone
    try:
        return parse(expression, dialect, timezone), dialect, timezone
    except ParseError as e:
        error(str(e))
        raise typer.Exit(1) from e


@app.callback()
def main(
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = None,
) -> None:
    configure_logging(level=log_level, use_rich=True)


@app.command()
def check(
    expression: Annotated[str, typer.Argument(help="Cron expression")],
    seconds: SecondsOption = False,
    tz: TimezoneOption = None,
    config: ConfigOption = None,
) -> None:
    """Validate a cron expression.

    Examples:
        cadence check "*/5 * * * *"
        cadence check --seconds "* * * * * *"
    """
    schedule, dialect, timezone = _parse(expression, seconds, tz, config)
    success(f"Valid {dialect.value} expression")
    fire_at = schedule.next(utcnow())
    console.print(f"Next: {fire_at.astimezone(ZoneInfo(timezone)).strftime(TIME_FORMAT)}")


@app.command("next")
def next_runs(
    expression: Annotated[str, typer.Argument(help="Cron expression")],
    count: Annotated[
        int,
        typer.Option("--count", "-n", min=1, max=1000, help="Number of fire times"),
    ] = 5,
    seconds: SecondsOption = False,
    tz: TimezoneOption = None,
    config: ConfigOption = None,
) -> None:
    """Show upcoming fire times for a cron expression."""
    schedule, _, timezone = _parse(expression, seconds, tz, config)
    zone = ZoneInfo(timezone)

    table = Table(show_header=True)
    table.add_column("#", style="dim")
    table.add_column("UTC")
    table.add_column(f"Local ({timezone})")
    table.add_column("Countdown")

    now = utcnow()
    fire_at = now
    for index in range(1, count + 1):
        fire_at = schedule.next(fire_at)
        table.add_row(
            str(index),
            fire_at.strftime(TIME_FORMAT),
            fire_at.astimezone(zone).strftime(TIME_FORMAT),
            format_countdown(fire_at, now),
        )

    console.print(table)
