# ABOUTME: Batch CLI that classifies session tables, applies the daily cap, and reports anomalies.
# ABOUTME: Reads parquet/CSV inputs, writes parquet/JSON outputs, and prints rich summary tables.

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from src.anomaly.report import generate_anomaly_report, summarize_anomalies
from src.archive.summarizer import summarize_archive
from src.common.config import load_engine_config
from src.common.enums import AnomalyType
from src.common.errors import ConfigurationError, StudyTimeError
from src.common.store import InMemoryStore, records_to_frame

from .pipeline import StudyTimeEngine

console = Console()
app = typer.Typer(help="Compute effective study time and detect learning anomalies.")
logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _parse_as_of(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return stamp.to_pydatetime()


def _build_engine(config_path: Path, sessions: Path, events: Path, devices: Optional[Path]):
    try:
        config = load_engine_config(config_path)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc

    store = InMemoryStore.from_files(sessions, events, devices)
    return StudyTimeEngine(store, config), store


def _anomaly_types(values: Optional[List[str]]) -> Optional[List[AnomalyType]]:
    if not values:
        return None
    try:
        return [AnomalyType(v) for v in values]
    except ValueError as exc:
        allowed = ", ".join(t.value for t in AnomalyType)
        raise typer.BadParameter(f"{exc}. Expected one of: {allowed}.", param_hint="--anomaly-type") from exc


def _print_records(records_df: pd.DataFrame) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    table.add_column("Total (s)", justify="right")
    table.add_column("Effective (s)", justify="right")
    table.add_column("Invalid (s)", justify="right")
    if not records_df.empty:
        grouped = records_df.groupby("status")[["total_duration", "effective_duration", "invalid_duration"]]
        sums = grouped.sum()
        counts = grouped.size()
        for status, row in sums.iterrows():
            table.add_row(
                str(status),
                str(int(counts[status])),
                f"{row['total_duration']:.0f}",
                f"{row['effective_duration']:.0f}",
                f"{row['invalid_duration']:.0f}",
            )
    console.print(table)


def _print_anomalies(report: pd.DataFrame) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Session")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Description")
    for row in report.itertuples(index=False):
        table.add_row(row.session_id, row.anomaly_type, row.severity, row.status, row.description)
    console.print(table)


@app.command()
def run(
    sessions: Path = typer.Option(..., "--sessions", exists=True, dir_okay=False, help="Session table (parquet or CSV)."),
    events: Path = typer.Option(..., "--events", exists=True, dir_okay=False, help="Behavior event table (parquet or CSV)."),
    devices: Optional[Path] = typer.Option(None, "--devices", exists=True, dir_okay=False, help="Optional device activity table."),
    config: Path = typer.Option(Path("configs/effective_time.yaml"), "--config", help="Policy configuration YAML."),
    out_dir: Path = typer.Option(Path("reports"), "--out-dir", help="Directory for records, anomalies, and archives."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Close open sessions at this ISO timestamp."),
    workers: int = typer.Option(1, "--workers", min=1, help="Sessions processed in parallel."),
    strict: bool = typer.Option(False, "--strict", help="Exit non-zero when any session or day fails."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """
    Classify every session, cap each user's day, and write the results.
    """
    configure_logging(verbose)
    engine, store = _build_engine(config, sessions, events, devices)
    cutoff = _parse_as_of(as_of)

    console.rule("[bold blue]Effective Study Time[/bold blue]")
    result = engine.run_batch(store.session_ids, as_of=cutoff, max_workers=workers)

    records = store.fetch_all_records()
    anomalies = store.fetch_all_anomalies()
    records_df = records_to_frame(records)
    report = generate_anomaly_report(anomalies, now=cutoff or engine.clock())
    archives = summarize_archive(
        [store.fetch_session_window(sid) for sid in store.session_ids],
        records,
        anomalies,
        [e for sid in store.session_ids for e in store.fetch_events(sid)],
        generated_at=cutoff or engine.clock(),
    )

    out_dir.mkdir(parents=True, exist_ok=True)
    records_path = out_dir / "effective_study_records.parquet"
    anomalies_path = out_dir / "learn_anomalies.parquet"
    archives_path = out_dir / "learn_archives.json"
    records_df.to_parquet(records_path, index=False)
    report.to_parquet(anomalies_path, index=False)
    archives_path.write_text(
        json.dumps(
            [
                {
                    "user_id": a.user_id,
                    "course_id": a.course_id,
                    "total_sessions": a.total_sessions,
                    "total_effective_time": a.total_effective_time,
                    "total_invalid_time": a.total_invalid_time,
                    "session_summary": a.session_summary,
                    "behavior_summary": a.behavior_summary,
                    "anomaly_summary": a.anomaly_summary,
                    "generated_at": a.generated_at.isoformat(),
                    "record_ids": a.record_ids,
                }
                for a in archives
            ],
            indent=2,
            default=str,
        ),
        encoding="utf-8",
    )

    console.print(f"[bold]Sessions:[/] {len(result.processed)} processed, {len(result.failures)} failed")
    console.print(f"[bold]Daily cap:[/] {len(result.capped)} record(s) trimmed")
    console.print()
    console.print("[bold green]Records[/bold green]")
    _print_records(records_df)
    console.print()
    console.print("[bold yellow]Anomalies[/bold yellow]")
    summary = summarize_anomalies(anomalies)
    console.print(
        f"total={summary['total']} high_priority={summary['high_priority']} "
        f"auto_resolved={summary['auto_resolved']}"
    )
    _print_anomalies(report)
    console.print()
    console.print(f"Wrote {records_path}, {anomalies_path}, {archives_path}")

    for unit, error in sorted(result.failures.items()):
        console.print(f"[red]{unit}[/red]: {error}")
    if result.failures and strict:
        raise typer.Exit(code=1)


@app.command()
def detect(
    sessions: Path = typer.Option(..., "--sessions", exists=True, dir_okay=False, help="Session table (parquet or CSV)."),
    events: Path = typer.Option(..., "--events", exists=True, dir_okay=False, help="Behavior event table (parquet or CSV)."),
    devices: Optional[Path] = typer.Option(None, "--devices", exists=True, dir_okay=False, help="Optional device activity table."),
    config: Path = typer.Option(Path("configs/effective_time.yaml"), "--config", help="Policy configuration YAML."),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Only this session."),
    anomaly_type: Optional[List[str]] = typer.Option(None, "--anomaly-type", help="Only these anomaly types."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Close open sessions at this ISO timestamp."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """
    Print the anomalies the detectors would raise, without writing anything.
    """
    configure_logging(verbose)
    engine, store = _build_engine(config, sessions, events, devices)
    types = _anomaly_types(anomaly_type)
    cutoff = _parse_as_of(as_of)

    session_ids = [session_id] if session_id else store.session_ids
    found = []
    failed = 0
    for sid in session_ids:
        try:
            found.extend(engine.detect_session(sid, as_of=cutoff, anomaly_types=types))
        except StudyTimeError as exc:
            failed += 1
            logger.error("Session %s failed: %s", sid, exc)

    console.rule("[bold blue]Anomaly Detection (dry run)[/bold blue]")
    _print_anomalies(generate_anomaly_report(found))
    summary = summarize_anomalies(found)
    console.print(f"[bold]By type:[/] {summary['by_type']}")
    console.print(f"[bold]By severity:[/] {summary['by_severity']}")
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
