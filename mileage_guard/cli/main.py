"""
CLI interface for Mileage Guard.

Provides command-line access to recording, history, validation and audit.
"""

import asyncio
import sys
from datetime import date
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from mileage_guard.config.loader import DEFAULT_CONFIG, MileageConfig, load_config
from mileage_guard.core.anomaly import AnomalyReport
from mileage_guard.core.logging import setup_logging
from mileage_guard.core.providers import ReplayLocationProvider, load_points
from mileage_guard.core.recovery import GPSTrackingError
from mileage_guard.core.service import MileageService, NoStartRecordError
from mileage_guard.core.tracking import ActiveSessionGuard, GPSTrackingSession
from mileage_guard.core.validation import MileageRangeError
from mileage_guard.storage.db import DEFAULT_DB_PATH
from mileage_guard.storage.models import MileageRecord, MileageSource
from mileage_guard.storage.repository import SqliteRecordStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    db_path: str = DEFAULT_DB_PATH
    config: MileageConfig = DEFAULT_CONFIG


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for engine events"),
):
    """Mileage Guard CLI."""
    setup_logging(log_level, json_logs=False)
    state.db_path = db
    if config is not None:
        try:
            state.config = load_config(config)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        state.config = DEFAULT_CONFIG
    if ctx.invoked_subcommand is None:
        console.print("Mileage Guard - Use --help to see available commands")


def _service() -> MileageService:
    store = SqliteRecordStore(state.db_path)
    # Schema creation is idempotent; saves a separate `init` on first use
    store.initialize()
    return MileageService(store, config=state.config)


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected a date as YYYY-MM-DD, got {value!r}")


@app.command()
def init():
    """Initialize the Mileage Guard database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def start(
    mileage: float = typer.Argument(..., help="Start odometer reading in km"),
    related: Optional[str] = typer.Option(None, "--related", help="Related record id (e.g. roll-call)"),
):
    """Record today's start mileage (manual entry)."""
    try:
        record = asyncio.run(_service().record_start(mileage, gps_enabled=False, related_record_id=related))
    except MileageRangeError as e:
        console.print(f"[red]Invalid mileage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Start mileage {record.start_mileage:,.1f} km recorded ({record.id})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def end(
    mileage: float = typer.Argument(..., help="End odometer reading in km"),
    source: MileageSource = typer.Option(MileageSource.MANUAL, "--source", "-s", help="How the distance was obtained"),
    gps_distance: Optional[float] = typer.Option(None, "--gps-distance", "-g", help="GPS-measured distance in km"),
    related: Optional[str] = typer.Option(None, "--related", help="Related record id (e.g. roll-call)"),
):
    """Record today's end mileage."""
    try:
        record = asyncio.run(_service().record_end(
            mileage, source, gps_distance=gps_distance, related_record_id=related
        ))
    except (MileageRangeError, NoStartRecordError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    _display_record(record)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def today(
    day: Optional[str] = typer.Option(None, "--date", "-d", help="Day to show (YYYY-MM-DD)"),
):
    """Show the mileage record for a day."""
    target = _parse_day(day) if day else None
    record = asyncio.run(_service().get_current_day_record(target))
    if record is None:
        console.print("[yellow]No mileage recorded for this day[/]")
        sys.exit(EXIT_CODE_PASS)
    _display_record(record)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    from_day: str = typer.Option(..., "--from", help="First day (YYYY-MM-DD)"),
    to_day: str = typer.Option(..., "--to", help="Last day (YYYY-MM-DD)"),
):
    """List mileage records in a date range."""
    records = asyncio.run(_service().get_mileage_history(_parse_day(from_day), _parse_day(to_day)))
    if not records:
        console.print("[dim]No mileage records in this range.[/]")
        sys.exit(EXIT_CODE_PASS)
    _display_history(records)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def anomalies(
    from_day: str = typer.Option(..., "--from", help="First day (YYYY-MM-DD)"),
    to_day: str = typer.Option(..., "--to", help="Last day (YYYY-MM-DD)"),
):
    """Scan a date range for mileage anomalies."""
    reports = asyncio.run(_service().detect_anomalies(_parse_day(from_day), _parse_day(to_day)))
    if not reports:
        console.print("[green]✓[/] No anomalies found")
        sys.exit(EXIT_CODE_PASS)
    _display_anomalies(reports)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def validate(
    start_mileage: float = typer.Argument(..., help="Start odometer reading in km"),
    end_mileage: Optional[float] = typer.Argument(None, help="End odometer reading in km"),
    gps_distance: Optional[float] = typer.Option(None, "--gps-distance", "-g", help="GPS-measured distance in km"),
):
    """Run the validation rules on a pair of readings.

    Warnings are non-failing: the command exits 0 whether or not flags fire.
    """
    result = _service().validate_mileage_data(start_mileage, end_mileage, gps_distance)
    if result.is_valid:
        console.print("[green]✓[/] Readings are valid")
    else:
        for flag, warning in zip(result.flags, result.warnings):
            console.print(f"[yellow]{flag.value}[/] {warning}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def audit(record_id: str = typer.Argument(..., help="Mileage record id")):
    """Print the audit ledger of a record."""
    entries = asyncio.run(_service().get_audit_log(record_id))
    if not entries:
        console.print("[dim]No audit entries for this record.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Audit log {record_id}")
    table.add_column("Timestamp")
    table.add_column("Action")
    table.add_column("Old", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            entry.timestamp.isoformat(timespec="seconds"),
            entry.action.value,
            _format_km(entry.old_value),
            _format_km(entry.new_value),
            entry.reason,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def track(points_file: str = typer.Argument(..., help="JSON file of recorded location points")):
    """Replay recorded location points through a GPS tracking session."""
    try:
        points = load_points(points_file)
        tracking = asyncio.run(_replay(points))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except GPSTrackingError as e:
        console.print(f"[red]GPS error:[/] {str(e)}")
        console.print(f"Suggested action: {e.recovery.message}")
        sys.exit(EXIT_CODE_FAIL)

    metrics = tracking.quality_metrics
    console.print("\n[bold]GPS Tracking Result[/bold]")
    console.print("-" * 40)
    console.print(f"Distance: {tracking.total_distance:,.3f} km")
    console.print(f"Points: {metrics.valid_location_points}/{metrics.total_location_points} accepted")
    console.print(f"Quality score: {metrics.quality_score:.1f}")
    console.print(f"Signal quality: {metrics.signal_quality:.2f}")
    console.print(f"Battery impact: {metrics.battery_impact:.2f}")
    sys.exit(EXIT_CODE_PASS)


async def _replay(points):
    session = GPSTrackingSession(
        ReplayLocationProvider(points),
        ActiveSessionGuard(),
        config=state.config.tracking,
    )
    await session.start()
    await session.wait_closed()
    return await session.stop()


def _format_km(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:,.1f}"


def _display_record(record: MileageRecord):
    """Display one record with its derived values."""
    console.print(f"\n[bold]Mileage record {record.date.isoformat()}[/bold]")
    console.print("-" * 40)
    console.print(f"Start: {_format_km(record.start_mileage)} km")
    console.print(f"End: {_format_km(record.end_mileage)} km")
    console.print(f"Distance: {_format_km(record.calculated_distance)} km")
    console.print(f"Source: {record.source.value}")
    if record.has_meter_reversal:
        console.print("[red]Meter reversal detected[/]")
    elif record.has_anomalies:
        console.print("[yellow]Distance anomaly detected[/]")


def _display_history(records: List[MileageRecord]):
    table = Table(title="Mileage history")
    table.add_column("Date")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Distance", justify="right")
    table.add_column("Source")
    for record in records:
        table.add_row(
            record.date.isoformat(),
            _format_km(record.start_mileage),
            _format_km(record.end_mileage),
            _format_km(record.calculated_distance),
            record.source.value,
        )
    console.print(table)


def _display_anomalies(reports: List[AnomalyReport]):
    table = Table(title="Mileage anomalies")
    table.add_column("Date")
    table.add_column("Severity")
    table.add_column("Types")
    table.add_column("Distance", justify="right")
    for report in reports:
        table.add_row(
            report.record.date.isoformat(),
            report.severity.name,
            ", ".join(t.value for t in report.anomaly_types),
            _format_km(report.record.calculated_distance),
        )
    console.print(table)


if __name__ == "__main__":
    app()
