"""student_etl.upsert

Insert-or-merge for one CanonicalRecord, inside one storage transaction.

  - No existing student (matched by applicant_no OR matric_no):
      INSERT student, then INSERT student_identifier pointing at it.
  - Existing student:
      fill only blank email_address / study_mode / password on student and
      blank stud_email on student_identifier.  Populated values are never
      overwritten.  When nothing is blank (or the incoming value is blank
      too) no statement is issued.

Returns True when a write occurred.  Any error propagates out of the
transaction block, which rolls the whole record back.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from student_etl.transform import CanonicalRecord

log = logging.getLogger(__name__)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


_BLANK_FILL = {
    "email_address": (
        "email_address = CASE WHEN email_address IS NULL OR btrim(email_address) = '' "
        "THEN %(email_address)s ELSE email_address END"
    ),
    # study_mode is an enum column, so NULL is its only blank value.
    "study_mode": (
        "study_mode = COALESCE(study_mode, %(study_mode)s::student_study_mode)"
    ),
    "password": (
        "password = CASE WHEN password IS NULL OR btrim(password) = '' "
        "THEN %(password)s ELSE password END"
    ),
}


def find_existing_student(
    conn: psycopg.Connection,
    applicant_no: str,
    matric_no: str,
) -> tuple | None:
    """Return (serial_id, email_address, study_mode, password, stud_email, identifier_id)."""
    return conn.execute(
        """
        SELECT s.serial_id, s.email_address, s.study_mode::text, s.password,
               si.stud_email, si.id
        FROM student s
        LEFT JOIN student_identifier si ON si.applicant_serial = s.serial_id
        WHERE s.applicant_no = %(applicant_no)s OR si.matric_no = %(matric_no)s
        ORDER BY s.serial_id ASC
        LIMIT 1
        """,
        {"applicant_no": applicant_no, "matric_no": matric_no},
    ).fetchone()


def insert_student(conn: psycopg.Connection, record: CanonicalRecord) -> int:
    s = record.student
    row = conn.execute(
        """
        INSERT INTO student
          (applicant_no, last_name, first_name, middle_name, gender,
           date_of_birth, marital_status, religion, phone_no, email_address,
           application_session, course_of_study, country, study_mode,
           password, profession, lga_origin)
        VALUES
          (%(applicant_no)s, %(last_name)s, %(first_name)s, %(middle_name)s,
           %(gender)s::student_gender, %(date_of_birth)s::date, %(marital_status)s,
           %(religion)s, %(phone_no)s, %(email_address)s, %(application_session)s,
           %(course_of_study)s, %(country)s, %(study_mode)s::student_study_mode,
           %(password)s, %(profession)s, %(lga_origin)s)
        RETURNING serial_id
        """,
        {
            "applicant_no": s.applicant_no,
            "last_name": s.last_name,
            "first_name": s.first_name,
            "middle_name": s.middle_name,
            "gender": s.gender,
            "date_of_birth": s.date_of_birth,
            "marital_status": s.marital_status,
            "religion": s.religion,
            "phone_no": s.phone_no,
            "email_address": s.email_address,
            "application_session": s.application_session,
            "course_of_study": s.course_of_study,
            "country": s.country,
            "study_mode": s.study_mode,
            "password": s.password,
            "profession": s.profession,
            "lga_origin": s.lga_origin,
        },
    ).fetchone()
    serial_id = int(row[0])

    sid = record.student_id
    conn.execute(
        """
        INSERT INTO student_identifier (applicant_no, matric_no, applicant_serial, stud_email)
        VALUES (%s, %s, %s, %s)
        """,
        (sid.applicant_no, sid.matric_no, serial_id, sid.stud_email),
    )
    return serial_id


def upsert_record(conn: psycopg.Connection, record: CanonicalRecord) -> bool:
    """Insert record, or merge its values into blank fields of the existing one."""
    s = record.student
    sid = record.student_id

    with conn.transaction():
        existing = find_existing_student(conn, s.applicant_no, sid.matric_no)

        if existing is None:
            serial_id = insert_student(conn, record)
            log.debug("Inserted student %s (serial_id=%s)", sid.matric_no, serial_id)
            return True

        serial_id, email, study_mode, password, stud_email, identifier_id = existing
        incoming = {
            "email_address": s.email_address,
            "study_mode": s.study_mode,
            "password": s.password,
        }
        current = {
            "email_address": email,
            "study_mode": study_mode,
            "password": password,
        }
        student_fields = [
            name for name in _BLANK_FILL
            if _is_blank(current[name]) and not _is_blank(incoming[name])
        ]
        needs_stud_email = (
            identifier_id is not None
            and _is_blank(stud_email)
            and not _is_blank(sid.stud_email)
        )

        if not student_fields and not needs_stud_email:
            log.debug("Student %s already complete; nothing to merge", sid.matric_no)
            return False

        if student_fields:
            assignments = ",\n  ".join(_BLANK_FILL[name] for name in student_fields)
            params = {name: incoming[name] for name in student_fields}
            params["serial_id"] = serial_id
            conn.execute(
                f"UPDATE student SET\n  {assignments},\n  updated_at = now()\n"
                "WHERE serial_id = %(serial_id)s",
                params,
            )

        if needs_stud_email:
            conn.execute(
                """
                UPDATE student_identifier SET stud_email = %(stud_email)s
                WHERE applicant_serial = %(serial_id)s
                  AND (stud_email IS NULL OR btrim(stud_email) = '')
                """,
                {"stud_email": sid.stud_email, "serial_id": serial_id},
            )

        log.debug(
            "Merged blank fields for student %s: %s%s",
            sid.matric_no,
            ", ".join(student_fields) or "-",
            " + stud_email" if needs_stud_email else "",
        )
        return True
