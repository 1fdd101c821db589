"""student_etl.import_student_csv

CLI entrypoint for student CSV ingestion.

Commands:
  ingest   stream a CSV export into the student tables (one job, foreground)
  preview  validate the header and first rows of a CSV, no database needed
  health   check that the database is reachable

Usage:
    python -m student_etl.import_student_csv ingest \\
        --db-dsn "$DB_DSN" \\
        --csv-path "exports/students_2024.csv" \\
        --batch-size 500

    python -m student_etl.import_student_csv preview \\
        --csv-path "exports/students_2024.csv" --rows 10
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from student_etl.config import Settings, SettingsValidationError, load_settings
from student_etl.db import Database
from student_etl.jobs import JobRegistry
from student_etl.shared import JobStatus, write_run_report
from student_etl.transform import preview_file


def _load(settings_path: str | None, **overrides) -> Settings:
    try:
        return load_settings(Path(settings_path) if settings_path else None, **overrides)
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"FATAL: invalid settings: {exc}", err=True)
        sys.exit(2)


def _check_file(csv_file: Path, settings: Settings) -> None:
    if not csv_file.is_file():
        click.echo(f"FATAL: CSV file not found: {csv_file}", err=True)
        sys.exit(2)
    size = csv_file.stat().st_size
    if size > settings.max_file_size_bytes:
        click.echo(
            f"FATAL: {csv_file} is {size} bytes; limit is {settings.max_file_size_bytes}",
            err=True,
        )
        sys.exit(2)


@click.group()
def main() -> None:
    """Student CSV ingestion."""


@main.command()
@click.option("--csv-path", required=True, type=click.Path(), help="Input CSV export")
@click.option("--db-dsn", envvar="STUDENT_ETL_DB_DSN", default=None, help="PostgreSQL DSN")
@click.option("--dry-run", is_flag=True, default=False, help="Validate and resolve rows without writing")
@click.option("--batch-size", default=None, type=int, help="Rows per batch (default from settings)")
@click.option("--temp-dir", default=None, type=click.Path(), help="Directory for failed-record artifacts")
@click.option("--settings", "settings_path", default=None, type=click.Path(), help="YAML settings file")
@click.option("--report-dir", default="artifacts/reports", show_default=True, type=click.Path())
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def ingest(
    csv_path: str,
    db_dsn: str | None,
    dry_run: bool,
    batch_size: int | None,
    temp_dir: str | None,
    settings_path: str | None,
    report_dir: str,
    log_level: str,
) -> None:
    """Ingest one CSV export."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = _load(settings_path, db_dsn=db_dsn, batch_size=batch_size, temp_dir=temp_dir)
    if not settings.db_dsn:
        click.echo("FATAL: --db-dsn (or STUDENT_ETL_DB_DSN) is required", err=True)
        sys.exit(2)
    csv_file = Path(csv_path)
    _check_file(csv_file, settings)

    with Database(
        settings.db_dsn,
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
    ) as database:
        registry = JobRegistry(database, settings)
        job = registry.create_job(dry_run=dry_run)
        click.echo(f"[{job.id}] Starting ingest of {csv_file} (dry_run={dry_run})")

        last_message = None
        try:
            with registry.subscribe(job.id) as updates:
                thread = registry.start_job(job, csv_file)
                for snapshot in updates:
                    if snapshot.message != last_message:
                        click.echo(f"[{job.id}] {snapshot.progress:6.2f}% {snapshot.message}")
                        last_message = snapshot.message
                thread.join()
        except KeyboardInterrupt:
            click.echo(f"[{job.id}] Interrupted; cancelling", err=True)
            registry.cancel_job(job.id)
            if job.thread is not None:
                job.thread.join()

        final = job.processor.get_progress()
        failed_artifact = registry.failed_artifact_path(job.id)
        report_path = write_run_report(
            job.id, str(csv_file), dry_run, final, failed_artifact, report_dir=Path(report_dir)
        )
        registry.shutdown()

    click.echo(
        f"[{job.id}] processed={final.processed_records} inserted={final.inserted_records} "
        f"failed={final.failed_records_count} of {final.total_records}"
    )
    if failed_artifact is not None:
        click.echo(f"[{job.id}] Failed records: {failed_artifact}")
    click.echo(f"[{job.id}] Run report: {report_path}")

    if final.status is not JobStatus.COMPLETED:
        click.echo(f"[{job.id}] Job {final.status.value}: {final.message}", err=True)
        sys.exit(1)


@main.command()
@click.option("--csv-path", required=True, type=click.Path(), help="Input CSV export")
@click.option("--rows", default=10, show_default=True, type=int, help="Rows to validate")
@click.option("--settings", "settings_path", default=None, type=click.Path(), help="YAML settings file")
def preview(csv_path: str, rows: int, settings_path: str | None) -> None:
    """Check headers and the first rows without touching the database."""
    settings = _load(settings_path)
    csv_file = Path(csv_path)
    _check_file(csv_file, settings)

    report = preview_file(csv_file, preview_rows=rows)
    if report.missing_headers:
        click.echo(f"Missing required headers: {', '.join(report.missing_headers)}", err=True)
        sys.exit(1)

    click.echo(f"Headers: {', '.join(report.headers)}")
    for row in report.rows:
        status = "ok" if row.is_valid else "; ".join(row.errors)
        click.echo(f"  row {row.row_number}: {status}")
    click.echo(
        f"{report.total_rows} data rows; previewed {len(report.rows)} "
        f"({report.valid_rows} valid, {report.invalid_rows} invalid)"
    )
    if report.has_more_rows:
        click.echo(f"... {report.total_rows - len(report.rows)} more rows not previewed")


@main.command()
@click.option("--db-dsn", envvar="STUDENT_ETL_DB_DSN", required=True, help="PostgreSQL DSN")
def health(db_dsn: str) -> None:
    """Exit 0 when the database answers, 1 otherwise."""
    with Database(db_dsn, min_size=1, max_size=1) as database:
        ok = database.ping()
    click.echo("database: ok" if ok else "database: unreachable", err=not ok)
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
