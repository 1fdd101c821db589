"""student_etl.processor

Streaming batch processor: one instance per ingestion job.

Lifecycle:
  created -> counting -> initializing -> processing
          -> completed | cancelled | failed

Processing order:
  1.  Stream the file once to count data rows (denominator for progress).
      A failed count is not fatal; the total is back-filled at the end.
  2.  Ping the store.  Unreachable store -> StorageUnavailableError (job fails).
  3.  Stream-parse.  Missing required headers -> MissingHeadersError (job fails,
      no row processed).
  4.  Group rows into batches of batch_size while reading; batches run one
      after another, rows within a batch one at a time.
  5.  Per batch: a row whose Matric Number repeats an earlier row of the
      same batch is skipped (processed, not inserted, not failed).
  6.  Per row: transform -> upsert (or count only, in dry-run), each record
      on its own pooled connection.  Any exception sends the row to the
      failed-record artifact; the job carries on.
  7.  Cancellation is polled at the top of every batch and every row.

Progress snapshots are immutable; every emission builds a new one and hands
it to on_progress under the processor lock, so observers receive them in
order.
"""

from __future__ import annotations

import csv
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Protocol

import psycopg

from student_etl.normalize import trim
from student_etl.shared import (
    FailedRecordWriter,
    IngestError,
    JobStatus,
    MissingHeadersError,
    ProcessingError,
    Progress,
    StorageUnavailableError,
    canonicalize_row,
    missing_headers,
)
from student_etl.transform import CanonicalRecord, RecordTransformer
from student_etl.upsert import upsert_record

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
MAX_RETAINED_ERRORS = 1000

ProgressCallback = Callable[[Progress], None]
ErrorCallback = Callable[[ProcessingError], None]
Upserter = Callable[[psycopg.Connection, CanonicalRecord], bool]


class Store(Protocol):
    def connection(self): ...

    def ping(self) -> bool: ...


@dataclass(frozen=True)
class Pacing:
    """Optional delays, in seconds.  Waits end early on cancellation."""

    row_delay: float = 0.0
    batch_delay: float = 0.0
    initializing_delay: float = 0.0


def failed_artifact_path(failed_dir: Path, job_id: str) -> Path:
    return failed_dir / f"failed_records_{job_id}.csv"


class BatchProcessor:
    def __init__(
        self,
        job_id: str,
        database: Store,
        *,
        dry_run: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        failed_dir: Path = Path("./temp"),
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
        transformer: RecordTransformer | None = None,
        upserter: Upserter = upsert_record,
        pacing: Pacing = Pacing(),
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0 (got {batch_size})")
        self.job_id = job_id
        self.dry_run = dry_run
        self.batch_size = batch_size
        self._database = database
        self._on_progress = on_progress
        self._on_error = on_error
        self._transformer = transformer or RecordTransformer()
        self._upserter = upserter
        self._pacing = pacing
        self._failed_path = failed_artifact_path(failed_dir, job_id)

        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._started = False
        self._errors: list[ProcessingError] = []

        self._status = JobStatus.CREATED
        self._message = "Job created, waiting to start processing..."
        self._percent = 0.0
        self._total = 0
        self._processed = 0
        self._inserted = 0
        self._failed = 0
        self._current_row = 0
        self._complete = False
        self._start_time = datetime.now(timezone.utc)
        self._end_time: datetime | None = None

        self._emit()

    # ------------------------------------------------------------------
    # Public accessors
    # ------------------------------------------------------------------

    @property
    def failed_artifact_path(self) -> Path:
        return self._failed_path

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    def get_progress(self) -> Progress:
        with self._lock:
            return self._snapshot()

    def get_errors(self) -> list[ProcessingError]:
        with self._lock:
            return list(self._errors)

    def cancel(self) -> None:
        """Request cooperative cancellation; returns immediately."""
        with self._lock:
            if self._complete:
                return
            self._cancel.set()
            self._message = "Cancelling after current row..."
            self._emit()
        log.info("[%s] cancellation requested", self.job_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process_file(self, path: Path | str) -> Progress:
        """Run the whole pipeline over path and return the final snapshot.

        Raises:
            MissingHeadersError: required headers absent; no row processed.
            StorageUnavailableError: store unreachable before the first row.
            OSError / csv.Error: the file could not be read or parsed.
        """
        with self._lock:
            if self._started:
                raise RuntimeError(f"job {self.job_id} has already been started")
            self._started = True

        path = Path(path)
        log.info(
            "[%s] processing %s (batch_size=%d dry_run=%s)",
            self.job_id, path, self.batch_size, self.dry_run,
        )
        writer = FailedRecordWriter(self._failed_path)
        try:
            self._set_state(JobStatus.COUNTING, "Counting total records...")
            counted = self._count_records(path)
            with self._lock:
                self._total = counted or 0

            self._set_state(JobStatus.INITIALIZING, "Initializing CSV processing...")
            if not self._database.ping():
                raise StorageUnavailableError("Database connection failed")
            self._pause(self._pacing.initializing_delay)

            with path.open(encoding="utf-8-sig", newline="") as fh:
                reader = csv.DictReader(fh)
                missing = missing_headers(reader.fieldnames)
                if missing:
                    raise MissingHeadersError(missing)
                writer.set_fieldnames(list(reader.fieldnames or []))

                self._set_state(JobStatus.PROCESSING, "Processing CSV rows...")
                rows_seen = self._run_batches(reader, writer)
        except IngestError as exc:
            self._fail(str(exc))
            raise
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            self._fail(f"CSV parsing failed: {exc}")
            raise
        except Exception as exc:
            self._fail(str(exc) or exc.__class__.__name__)
            raise
        finally:
            writer.close()

        return self._finish(rows_seen, count_failed=counted is None)

    def _count_records(self, path: Path) -> int | None:
        try:
            with path.open(encoding="utf-8-sig", newline="") as fh:
                total = sum(1 for _ in csv.DictReader(fh))
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            log.warning("[%s] failed to count records, total will be derived: %s", self.job_id, exc)
            return None
        log.info("[%s] counted %d records", self.job_id, total)
        return total

    def _run_batches(self, reader: Iterable[dict], writer: FailedRecordWriter) -> int:
        batch: list[tuple[int, dict]] = []
        batch_number = 0
        rows_seen = 0
        for raw in reader:
            if self._cancel.is_set():
                break
            rows_seen += 1
            batch.append((rows_seen, raw))
            if len(batch) >= self.batch_size:
                batch_number += 1
                self._process_batch(batch, batch_number, writer)
                batch = []
        if batch and not self._cancel.is_set():
            batch_number += 1
            self._process_batch(batch, batch_number, writer)
        return rows_seen

    def _process_batch(
        self,
        batch: list[tuple[int, dict]],
        batch_number: int,
        writer: FailedRecordWriter,
    ) -> None:
        if self._cancel.is_set():
            return
        with self._lock:
            self._message = f"Processing batch {batch_number} of {len(batch)} records..."
            self._emit()
        self._pause(self._pacing.batch_delay)

        # Duplicate suppression is batch-local; repeats across batches are
        # settled by the upserter's existence check.
        seen: set[str] = set()
        for row_number, raw in batch:
            if self._cancel.is_set():
                break

            row = canonicalize_row(raw)
            matric = trim(row.get("Matric Number"))
            if matric is not None and matric in seen:
                log.info("[%s] row %d: duplicate matric %s in batch, skipped",
                         self.job_id, row_number, matric)
                self._row_done(row_number, inserted=False)
                continue
            if matric is not None:
                seen.add(matric)

            try:
                inserted = self._process_row(row, row_number)
            except Exception as exc:  # noqa: BLE001
                self._record_failure(writer, raw, row_number, exc)
                inserted = False
            self._row_done(row_number, inserted=inserted)
            self._pause(self._pacing.row_delay)

        with self._lock:
            self._message = (
                f"Batch {batch_number} done: {self._processed} processed, "
                f"{self._inserted} inserted, {self._failed} failed"
            )
            self._emit()

    def _process_row(self, row: dict[str, str], row_number: int) -> bool:
        with self._database.connection() as conn:
            record = self._transformer.transform(conn, row, row_number)
            if self.dry_run:
                log.debug("[%s] dry run: would write %s", self.job_id, record.student_id.matric_no)
                return True
            return self._upserter(conn, record)

    def _record_failure(
        self,
        writer: FailedRecordWriter,
        raw: dict,
        row_number: int,
        exc: Exception,
    ) -> None:
        reason = str(exc) or exc.__class__.__name__
        error = ProcessingError(
            row_number=row_number,
            original_row={k: v for k, v in raw.items() if k is not None},
            reason=reason,
            field=getattr(exc, "field", None),
        )
        log.debug("[%s] row %d failed: %s", self.job_id, row_number, reason)
        writer.write(raw, reason, row_number)
        with self._lock:
            self._failed += 1
            if len(self._errors) < MAX_RETAINED_ERRORS:
                self._errors.append(error)
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:  # noqa: BLE001
                log.exception("[%s] error callback raised", self.job_id)

    # ------------------------------------------------------------------
    # State + progress
    # ------------------------------------------------------------------

    def _row_done(self, row_number: int, inserted: bool) -> None:
        with self._lock:
            self._processed += 1
            if inserted:
                self._inserted += 1
            self._current_row = row_number
            if self._total > 0:
                self._percent = max(
                    self._percent, min(100.0, self._processed / self._total * 100.0)
                )
            self._emit()

    def _set_state(self, status: JobStatus, message: str) -> None:
        with self._lock:
            self._status = status
            if not self._cancel.is_set():
                self._message = message
            self._emit()

    def _fail(self, message: str) -> None:
        log.error("[%s] job failed: %s", self.job_id, message)
        with self._lock:
            self._status = JobStatus.FAILED
            self._message = f"Processing failed: {message}"
            self._complete = True
            self._end_time = datetime.now(timezone.utc)
            self._emit()

    def _finish(self, rows_seen: int, count_failed: bool) -> Progress:
        with self._lock:
            self._complete = True
            self._end_time = datetime.now(timezone.utc)
            if self._cancel.is_set():
                self._status = JobStatus.CANCELLED
                self._message = (
                    f"Processing cancelled. {self._inserted} records updated/inserted, "
                    f"{self._failed} failed before cancellation."
                )
            else:
                if count_failed:
                    self._total = rows_seen
                self._status = JobStatus.COMPLETED
                self._percent = 100.0
                self._message = (
                    f"Processing complete. {self._inserted} records updated/inserted, "
                    f"{self._failed} failed."
                )
            self._emit()
            snapshot = self._snapshot()
        log.info("[%s] %s", self.job_id, snapshot.message)
        return snapshot

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._cancel.wait(seconds)

    def _snapshot(self) -> Progress:
        return Progress(
            job_id=self.job_id,
            progress=round(self._percent, 2),
            total_records=self._total,
            processed_records=self._processed,
            inserted_records=self._inserted,
            failed_records_count=self._failed,
            current_row=self._current_row,
            message=self._message,
            is_complete=self._complete,
            status=self._status,
            start_time=self._start_time,
            end_time=self._end_time,
        )

    def _emit(self) -> None:
        # Callers hold self._lock, so snapshots reach on_progress in order.
        if self._on_progress is None:
            return
        snapshot = self._snapshot()
        try:
            self._on_progress(snapshot)
        except Exception:  # noqa: BLE001
            log.exception("[%s] progress callback raised", self.job_id)
