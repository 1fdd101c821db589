"""student_etl.shared

Shared types and utilities used across the ingestion pipeline.
Includes the exception hierarchy, the Progress snapshot, header
normalization, FailedRecordWriter, and report-writing support.
"""

from __future__ import annotations

import csv
import enum
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from student_etl.normalize import header_key


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestError(Exception):
    """Base class for pipeline errors."""


class MissingHeadersError(IngestError):
    """Raised when the input file lacks one or more required headers."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required CSV headers: {', '.join(self.missing)}")


class StorageUnavailableError(IngestError):
    """Raised when the store cannot be reached before any row is processed."""


class RecordValidationError(IngestError):
    """Raised when a single row fails validation; names the offending field."""

    def __init__(self, field_name: str, reason: str) -> None:
        self.field = field_name
        super().__init__(reason)


class IdentifierExhaustedError(IngestError):
    """Raised when no unique applicant number could be generated."""


# ---------------------------------------------------------------------------
# Input header contract
# ---------------------------------------------------------------------------

REQUIRED_HEADERS = (
    "Matric Number",
    "Last Name",
    "First Name",
    "Gender",
    "DoB",
    "Year Of Entry",
    "Department",
)

OPTIONAL_HEADERS = (
    "S/N",
    "Application Number",
    "Othernames",
    "Marital Status",
    "Religion",
    "Phone",
    "Email",
    "Contact Address",
    "Postal Address",
    "Profession",
    "State Of Origin",
    "LGA",
    "Nationality",
    "Faculty",
    "Programme",
    "Programme Duration",
    "Entry Mode",
    "Current Level",
    "Mode Of Study",
    "Interective Center",
    "Exam Center",
    "Teaching Subject",
    "Verification Status",
)

_CANONICAL = {header_key(h): h for h in REQUIRED_HEADERS + OPTIONAL_HEADERS}


def missing_headers(fieldnames: list[str] | None) -> list[str]:
    """Return required headers absent from fieldnames (case-insensitive)."""
    present = {header_key(f) for f in fieldnames or [] if f is not None}
    return [h for h in REQUIRED_HEADERS if header_key(h) not in present]


def canonicalize_row(raw: dict[str | None, Any]) -> dict[str, str]:
    """Return a new dict keyed by canonical header spelling.

    Known columns are matched case-insensitively and re-keyed to the
    spelling in REQUIRED_HEADERS / OPTIONAL_HEADERS; unknown columns are
    passed through with whitespace-stripped keys.  Overflow cells that
    csv.DictReader files under a None key are dropped.
    """
    out: dict[str, str] = {}
    for key, value in raw.items():
        if key is None:
            continue
        canonical = _CANONICAL.get(header_key(key), key.strip())
        out[canonical] = value if isinstance(value, str) else ("" if value is None else str(value))
    return out


# ---------------------------------------------------------------------------
# Job status + progress snapshot
# ---------------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    CREATED = "created"
    COUNTING = "counting"
    INITIALIZING = "initializing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED)


@dataclass(frozen=True)
class Progress:
    """Immutable progress snapshot for one job.

    The processor builds a fresh instance for every emission, so a reader
    never sees a half-updated value and cannot mutate shared state.
    """

    job_id: str
    progress: float
    total_records: int
    processed_records: int
    inserted_records: int
    failed_records_count: int
    current_row: int
    message: str
    is_complete: bool
    status: JobStatus
    start_time: datetime
    end_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["start_time"] = self.start_time.isoformat()
        d["end_time"] = self.end_time.isoformat() if self.end_time else None
        return d


@dataclass(frozen=True)
class ProcessingError:
    row_number: int
    original_row: dict[str, str]
    reason: str
    field: str | None = None


# ---------------------------------------------------------------------------
# FailedRecordWriter
# ---------------------------------------------------------------------------

FAILURE_REASON_COLUMN = "failure_reason"
ROW_NUMBER_COLUMN = "row_number"


class FailedRecordWriter:
    """Lazy-open, append-only CSV writer for rejected rows.

    The header row is written only when the artifact does not exist yet,
    so the file is never truncated mid-job.
    """

    def __init__(self, path: Path, fieldnames: list[str] | None = None) -> None:
        self._path = path
        self._fieldnames = [f for f in fieldnames or [] if f is not None]
        self._fh = None
        self._writer = None

    @property
    def path(self) -> Path:
        return self._path

    def set_fieldnames(self, fieldnames: list[str | None]) -> None:
        """Fix the artifact columns before the first write."""
        if self._fh is None:
            self._fieldnames = [f for f in fieldnames if f is not None]

    def write(self, row: dict[str | None, Any], reason: str, row_number: int) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            needs_header = not self._path.exists()
            self._fh = open(self._path, "a", newline="", encoding="utf-8")
            columns = self._fieldnames or [k for k in row.keys() if k is not None]
            fieldnames = columns + [FAILURE_REASON_COLUMN, ROW_NUMBER_COLUMN]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore", restval=""
            )
            if needs_header:
                self._writer.writeheader()
        out = {k: v for k, v in row.items() if k is not None}
        out[FAILURE_REASON_COLUMN] = reason
        out[ROW_NUMBER_COLUMN] = row_number
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None
            self._writer = None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    job_id: str,
    csv_path: str,
    dry_run: bool,
    progress: Progress,
    failed_artifact: Path | None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "job_id": job_id,
        "csv_path": csv_path,
        "dry_run": dry_run,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "failed_artifact": str(failed_artifact) if failed_artifact else None,
        "progress": progress.to_dict(),
    }
    report_path = report_dir / f"{job_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path

