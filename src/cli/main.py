"""
Typer CLI for the pulse analytics engine.

Commands:
    pulse replay FILE        - Run a JSON-lines event file through the engine
    pulse replay FILE --json - Same, printing results as JSON
    pulse db init            - Create the processed-results table

Usage:
    pulse --help
    pulse replay events.jsonl --as-of 2025-03-01T12:00:00Z
    python -m src.cli.main replay events.jsonl --user learner-42
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.analytics.engine import AnalyticsEngine
from src.analytics.errors import DataShapeError
from src.analytics.events import AnalyticsEvent, parse_event, parse_timestamp
from src.analytics.logging_setup import configure_logging

app = typer.Typer(
    help="pulse: real-time learning analytics engine",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Database operations")
app.add_typer(db_app, name="db")

console = Console()


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Configure logging before any command runs."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, settings.log_file)


# ========================================
# Helpers
# ========================================


def load_events(path: Path) -> list[AnalyticsEvent]:
    """Read a JSON-lines file, skipping lines that are not usable events."""
    events: list[AnalyticsEvent] = []
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Line {}: invalid JSON ({})", line_number, exc)
                continue
            if not isinstance(raw, dict):
                logger.warning("Line {}: expected an object", line_number)
                continue
            try:
                events.append(parse_event(raw))
            except DataShapeError as exc:
                logger.warning("Line {}: {}", line_number, exc)
    return events


def _render_user(engine: AnalyticsEngine, user_id: str) -> None:
    console.rule(f"[bold cyan]{user_id}")

    insights = engine.get_user_insights(user_id)
    if insights:
        table = Table(title="Insights", show_lines=False)
        table.add_column("Impact", style="bold")
        table.add_column("Type")
        table.add_column("Title")
        table.add_column("Expires")
        for insight in insights:
            colour = {"high": "red", "medium": "yellow", "low": "green"}[insight.impact.value]
            table.add_row(
                f"[{colour}]{insight.impact.value}[/{colour}]",
                insight.insight_type.value,
                insight.title,
                insight.expires_at.strftime("%Y-%m-%d"),
            )
        console.print(table)

    patterns = engine.get_user_patterns(user_id)
    if patterns:
        table = Table(title="Patterns")
        table.add_column("Type", style="bold")
        table.add_column("Confidence", justify="right")
        table.add_column("Description")
        for pattern in patterns:
            table.add_row(pattern.pattern_type.value, f"{pattern.confidence:.2f}", pattern.description)
        console.print(table)

    predictions = engine.get_user_predictions(user_id)
    if predictions:
        table = Table(title="Predictions")
        table.add_column("Key", style="bold")
        table.add_column("Value", justify="right")
        for key, value in sorted(predictions.items()):
            table.add_row(key, f"{value:.1f}")
        console.print(table)

    for anomaly in engine.get_user_anomalies(user_id):
        console.print(f"[red]! {anomaly.anomaly_type.value}[/red] ({anomaly.severity.value}) {anomaly.description}")


# ========================================
# Commands
# ========================================


@app.command()
def replay(
    path: Annotated[Path, typer.Argument(help="JSON-lines file of events", exists=True, dir_okay=False)],
    as_of: Annotated[
        str | None,
        typer.Option("--as-of", help="Evaluation time (ISO-8601); defaults to the latest event time"),
    ] = None,
    user: Annotated[str | None, typer.Option("--user", "-u", help="Only show this user")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print results as JSON")] = False,
):
    """Feed a recorded event stream through the engine and show the results."""
    events = load_events(path)
    if not events:
        console.print("[yellow]No usable events found[/yellow]")
        raise typer.Exit(1)

    try:
        now = parse_timestamp(as_of) if as_of else max(e.timestamp_utc for e in events)
    except DataShapeError as exc:
        console.print(f"[red]Invalid --as-of value: {exc}[/red]")
        raise typer.Exit(2) from exc

    engine = AnalyticsEngine.from_settings(get_settings(), clock=lambda: now)
    for event in events:
        engine.enqueue(event)
    engine.stop()  # final flush, releases worker threads

    users = [user] if user else engine.store.known_users()
    if as_json:
        payload = {
            uid: {
                "insights": [i.to_dict() for i in engine.get_user_insights(uid)],
                "patterns": [p.to_dict() for p in engine.get_user_patterns(uid)],
                "predictions": engine.get_user_predictions(uid),
                "anomalies": [a.to_dict() for a in engine.get_user_anomalies(uid)],
            }
            for uid in users
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    console.print(
        f"[bold]Replayed {len(events)} events for {len(engine.store.known_users())} users "
        f"(as of {now:%Y-%m-%d %H:%M} UTC)[/bold]"
    )
    for uid in users:
        _render_user(engine, uid)


@db_app.command("init")
def db_init():
    """Create the processed-results table."""
    from src.db.database import init_db

    init_db()
    console.print("[green]Database tables initialized[/green]")


def run() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    run()
