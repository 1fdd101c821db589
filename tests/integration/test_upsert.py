"""Integration tests: RecordTransformer + upsert_record against a real database."""

from __future__ import annotations

import psycopg
import pytest

from student_etl.transform import RecordTransformer
from student_etl.upsert import find_existing_student, upsert_record


@pytest.fixture
def transformer():
    return RecordTransformer(salt_rounds=4)


def _student(conn, matric_no):
    return conn.execute(
        """
        SELECT s.serial_id, s.applicant_no, s.email_address, s.study_mode::text,
               s.password, si.stud_email, s.gender::text, s.date_of_birth::text,
               s.lga_origin
        FROM student s
        JOIN student_identifier si ON si.applicant_serial = s.serial_id
        WHERE si.matric_no = %s
        """,
        (matric_no,),
    ).fetchone()


def _count(conn, table):
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


class TestInsert:
    def test_insert_creates_student_and_identifier(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        record = transformer.transform(conn, student_row(), 1)

        assert upsert_record(conn, record) is True

        row = _student(conn, "MAT/2024/001")
        assert row is not None
        serial_id, applicant_no, email, study_mode, password, stud_email, gender, dob, lga = row
        assert applicant_no == record.student.applicant_no
        assert email == "ada.okafor@example.com"
        assert stud_email == "ada.okafor@example.com"
        assert study_mode == "DIRECT_ENTRY"
        assert gender == "Female"
        assert dob == "2001-03-15"
        assert lga is not None
        assert password.startswith("$2")
        assert _count(conn, "student_identifier") == 1

    def test_idempotent_reingest(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        assert upsert_record(conn, transformer.transform(conn, student_row(), 1)) is True
        before = _student(conn, "MAT/2024/001")

        assert upsert_record(conn, transformer.transform(conn, student_row(), 1)) is False

        assert _student(conn, "MAT/2024/001") == before
        assert _count(conn, "student") == 1
        assert _count(conn, "student_identifier") == 1


class TestMerge:
    def test_fills_only_blank_fields(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(Email=""), 1))
        serial_id, _, email, _, password, stud_email, *_ = _student(conn, "MAT/2024/001")
        assert email is None
        assert stud_email is None

        changed = upsert_record(
            conn, transformer.transform(conn, student_row(Email="new@example.com"), 1)
        )

        assert changed is True
        row = _student(conn, "MAT/2024/001")
        assert row[0] == serial_id
        assert row[2] == "new@example.com"
        assert row[5] == "new@example.com"
        assert row[4] == password

    def test_never_overwrites_populated_fields(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(), 1))

        changed = upsert_record(
            conn,
            transformer.transform(conn, student_row(Email="other@example.com", **{"Programme Duration": "5"}), 1),
        )

        assert changed is False
        row = _student(conn, "MAT/2024/001")
        assert row[2] == "ada.okafor@example.com"
        assert row[3] == "DIRECT_ENTRY"

    def test_blank_incoming_value_is_no_op(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(Email=""), 1))
        assert upsert_record(conn, transformer.transform(conn, student_row(Email=""), 1)) is False

    def test_fills_blank_password(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(), 1))
        conn.execute("UPDATE student SET password = NULL")

        assert upsert_record(conn, transformer.transform(conn, student_row(), 1)) is True
        assert _student(conn, "MAT/2024/001")[4].startswith("$2")

    def test_fills_null_study_mode(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(), 1))
        conn.execute("UPDATE student SET study_mode = NULL")

        assert upsert_record(conn, transformer.transform(conn, student_row(), 1)) is True
        assert _student(conn, "MAT/2024/001")[3] == "DIRECT_ENTRY"


class TestFindExisting:
    def test_match_by_matric(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        upsert_record(conn, transformer.transform(conn, student_row(), 1))
        assert find_existing_student(conn, "no-such-applicant", "MAT/2024/001") is not None

    def test_no_match(self, db_conn):
        conn, _ = db_conn
        assert find_existing_student(conn, "x", "y") is None


class TestRollback:
    def test_failed_identifier_insert_rolls_back_student(self, db_conn, transformer, student_row):
        conn, _ = db_conn
        record = transformer.transform(conn, student_row(), 1)
        record.student_id.matric_no = "M" * 60  # exceeds varchar(50)

        with pytest.raises(psycopg.errors.StringDataRightTruncation):
            upsert_record(conn, record)

        assert _count(conn, "student") == 0
