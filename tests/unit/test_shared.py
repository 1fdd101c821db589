"""Unit tests for student_etl.shared: headers, Progress, FailedRecordWriter."""

import csv
import json
from dataclasses import FrozenInstanceError
from datetime import datetime, timezone

import pytest

from student_etl.shared import (
    FailedRecordWriter,
    JobStatus,
    MissingHeadersError,
    Progress,
    canonicalize_row,
    missing_headers,
    write_run_report,
)


def _progress(**kw):
    base = dict(
        job_id="job-1",
        progress=50.0,
        total_records=10,
        processed_records=5,
        inserted_records=4,
        failed_records_count=1,
        current_row=5,
        message="halfway",
        is_complete=False,
        status=JobStatus.PROCESSING,
        start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    base.update(kw)
    return Progress(**base)


# ---------------------------------------------------------------------------
# Header contract
# ---------------------------------------------------------------------------

class TestMissingHeaders:
    def test_all_present(self):
        headers = ["Matric Number", "Last Name", "First Name", "Gender", "DoB",
                   "Year Of Entry", "Department", "Email"]
        assert missing_headers(headers) == []

    def test_case_insensitive(self):
        headers = ["matric number", "LAST NAME", "first name", "gender", "dob",
                   "year of entry", "department"]
        assert missing_headers(headers) == []

    def test_reports_missing_dob(self):
        headers = ["Matric Number", "Last Name", "First Name", "Gender",
                   "Year Of Entry", "Department"]
        assert missing_headers(headers) == ["DoB"]

    def test_none_fieldnames(self):
        assert len(missing_headers(None)) == 7

    def test_error_message(self):
        err = MissingHeadersError(["DoB", "Gender"])
        assert err.missing == ["DoB", "Gender"]
        assert str(err) == "Missing required CSV headers: DoB, Gender"


class TestCanonicalizeRow:
    def test_rekeys_known_columns(self):
        row = canonicalize_row({" matric number ": "M1", "EMAIL": "a@b.co"})
        assert row == {"Matric Number": "M1", "Email": "a@b.co"}

    def test_unknown_columns_pass_through(self):
        assert canonicalize_row({"Extra ": "x"}) == {"Extra": "x"}

    def test_drops_overflow_key(self):
        assert canonicalize_row({"DoB": "2001-01-01", None: ["spill"]}) == {"DoB": "2001-01-01"}

    def test_none_value_becomes_empty(self):
        assert canonicalize_row({"Gender": None}) == {"Gender": ""}


# ---------------------------------------------------------------------------
# JobStatus / Progress
# ---------------------------------------------------------------------------

class TestProgress:
    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    def test_immutable(self):
        p = _progress()
        with pytest.raises(FrozenInstanceError):
            p.processed_records = 6

    def test_to_dict_is_json_ready(self):
        d = _progress().to_dict()
        assert d["status"] == "processing"
        assert d["start_time"] == "2024-01-01T00:00:00+00:00"
        assert d["end_time"] is None
        json.dumps(d)


# ---------------------------------------------------------------------------
# FailedRecordWriter
# ---------------------------------------------------------------------------

class TestFailedRecordWriter:
    def test_no_file_until_first_write(self, tmp_path):
        w = FailedRecordWriter(tmp_path / "failed.csv")
        w.close()
        assert not (tmp_path / "failed.csv").exists()

    def test_original_columns_plus_reason_and_row(self, tmp_path):
        path = tmp_path / "out" / "failed.csv"
        w = FailedRecordWriter(path, ["Matric Number", "Gender"])
        w.write({"Matric Number": "M1", "Gender": "X"}, "Invalid gender: X", 3)
        w.close()
        with path.open(newline="") as fh:
            rows = list(csv.DictReader(fh))
        assert rows == [{
            "Matric Number": "M1",
            "Gender": "X",
            "failure_reason": "Invalid gender: X",
            "row_number": "3",
        }]

    def test_appends_without_second_header(self, tmp_path):
        path = tmp_path / "failed.csv"
        for n in (1, 2):
            w = FailedRecordWriter(path, ["Matric Number"])
            w.write({"Matric Number": f"M{n}"}, "bad", n)
            w.close()
        lines = path.read_text().splitlines()
        assert lines[0] == "Matric Number,failure_reason,row_number"
        assert len(lines) == 3

    def test_close_is_idempotent(self, tmp_path):
        w = FailedRecordWriter(tmp_path / "failed.csv")
        w.write({"a": "1"}, "bad", 1)
        w.close()
        w.close()


class TestRunReport:
    def test_writes_json(self, tmp_path):
        path = write_run_report(
            "job-1", "in.csv", False, _progress(is_complete=True), None, report_dir=tmp_path
        )
        data = json.loads(path.read_text())
        assert path.name == "job-1.json"
        assert data["progress"]["processed_records"] == 5
        assert data["failed_artifact"] is None
