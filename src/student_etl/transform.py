"""student_etl.transform

Validate one raw CSV row and turn it into a CanonicalRecord.

Rules run in a fixed order and stop at the first violation, raising
RecordValidationError with the offending column name:

  1.  required columns present and non-blank
  2.  Gender          -> Male / Female
  3.  DoB             -> YYYY-MM-DD
  4.  Email           (optional) shape check
  5.  Phone           (optional) character check
  6.  Marital Status  -> FK, defaults when unmatched
  7.  Year Of Entry   -> session FK (hard failure)
  8.  Department      -> course FK, Programme as fallback (hard failure)
  9.  State Of Origin / LGA -> FKs, never fail
  10. applicant number
  11. default credential: bcrypt(lower(Last Name))
  12. Programme Duration -> study mode
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import bcrypt
import psycopg

from student_etl.lookups import (
    DEFAULT_ID_RETRIES,
    LookupResolver,
    generate_applicant_no,
)
from student_etl.normalize import (
    is_valid_email,
    is_valid_phone,
    map_study_mode,
    normalize_gender,
    parse_birth_date,
    trim,
)
from student_etl.shared import (
    REQUIRED_HEADERS,
    RecordValidationError,
    canonicalize_row,
    missing_headers,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical record types
# ---------------------------------------------------------------------------

@dataclass
class StudentRecord:
    applicant_no: str
    last_name: str
    first_name: str
    gender: str
    date_of_birth: str
    marital_status: int
    application_session: int
    course_of_study: int
    study_mode: str
    password: str
    middle_name: str | None = None
    religion: str | None = None
    phone_no: str | None = None
    email_address: str | None = None
    country: str | None = None
    profession: str | None = None
    lga_origin: int | None = None


@dataclass
class StudentIdRecord:
    applicant_no: str
    matric_no: str
    stud_email: str | None = None


@dataclass
class CanonicalRecord:
    student: StudentRecord
    student_id: StudentIdRecord
    row_number: int = 0
    warnings: list[str] = field(default_factory=list)


def hash_password(raw: str, salt_rounds: int = 10) -> str:
    return bcrypt.hashpw(raw.encode("utf-8"), bcrypt.gensalt(rounds=salt_rounds)).decode("ascii")


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------

class RecordTransformer:
    def __init__(
        self,
        salt_rounds: int = 10,
        id_max_retries: int = DEFAULT_ID_RETRIES,
        resolver_factory: Callable[[psycopg.Connection], LookupResolver] = LookupResolver,
        id_generator: Callable[..., str] = generate_applicant_no,
    ) -> None:
        self.salt_rounds = salt_rounds
        self.id_max_retries = id_max_retries
        self._resolver_factory = resolver_factory
        self._id_generator = id_generator

    def transform(
        self,
        conn: psycopg.Connection,
        row: dict[str, str],
        row_number: int,
    ) -> CanonicalRecord:
        """Validate one CSV row and resolve its foreign keys.

        Raises:
            RecordValidationError: first rule the row violates.
            IdentifierExhaustedError: no unique applicant number.
        """
        row = canonicalize_row(row)

        for name in REQUIRED_HEADERS:
            if trim(row.get(name)) is None:
                raise RecordValidationError(name, f"Missing required field: {name}")

        gender = normalize_gender(row.get("Gender"))
        if gender is None:
            raise RecordValidationError("Gender", f"Invalid gender: {row.get('Gender')}")

        date_of_birth = parse_birth_date(row.get("DoB"))
        if date_of_birth is None:
            raise RecordValidationError("DoB", f"Invalid date of birth: {row.get('DoB')}")

        email = trim(row.get("Email"))
        if email is not None and not is_valid_email(email):
            raise RecordValidationError("Email", f"Invalid email format: {email}")

        phone = trim(row.get("Phone"))
        if phone is not None and not is_valid_phone(phone):
            raise RecordValidationError("Phone", f"Invalid phone format: {phone}")

        resolver = self._resolver_factory(conn)
        warnings: list[str] = []

        marital = resolver.marital_status(row.get("Marital Status"))
        if marital.defaulted:
            log.warning("Row %d: using default marital status", row_number)
            warnings.append("marital_status_defaulted")

        session = resolver.session(row.get("Year Of Entry"))
        if not session.found:
            raise RecordValidationError(
                "Year Of Entry", f"Session not found for year: {row.get('Year Of Entry')}"
            )

        course = resolver.course_of_study(row.get("Department"), row.get("Programme"))
        if not course.found:
            raise RecordValidationError(
                "Department",
                f"Course of study not found for department: {row.get('Department')}",
            )

        state = resolver.state(row.get("State Of Origin"))
        lga = resolver.lga(row.get("LGA"), state.value)
        if lga.fallback:
            log.warning("Row %d: LGA lookup used name-only fallback", row_number)
            warnings.append("lga_fallback")

        applicant_no = self._id_generator(resolver, self.id_max_retries)

        last_name = trim(row["Last Name"])
        student = StudentRecord(
            applicant_no=applicant_no,
            last_name=last_name,
            first_name=trim(row["First Name"]),
            middle_name=trim(row.get("Othernames")),
            gender=gender,
            date_of_birth=date_of_birth,
            marital_status=marital.value,
            religion=trim(row.get("Religion")),
            phone_no=phone,
            email_address=email,
            application_session=session.value,
            course_of_study=course.value,
            country=trim(row.get("Nationality")),
            study_mode=map_study_mode(row.get("Programme Duration")),
            password=hash_password(last_name.lower(), self.salt_rounds),
            profession=trim(row.get("Profession")),
            lga_origin=lga.value,
        )
        student_id = StudentIdRecord(
            applicant_no=applicant_no,
            matric_no=trim(row["Matric Number"]),
            stud_email=email,
        )
        return CanonicalRecord(student, student_id, row_number=row_number, warnings=warnings)


# ---------------------------------------------------------------------------
# Preview (database-free)
# ---------------------------------------------------------------------------

@dataclass
class PreviewRow:
    row_number: int
    data: dict[str, str]
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class PreviewReport:
    headers: list[str]
    missing_headers: list[str]
    total_rows: int = 0
    rows: list[PreviewRow] = field(default_factory=list)

    @property
    def valid_rows(self) -> int:
        return sum(1 for r in self.rows if r.is_valid)

    @property
    def invalid_rows(self) -> int:
        return len(self.rows) - self.valid_rows

    @property
    def has_more_rows(self) -> bool:
        return self.total_rows > len(self.rows)


def preview_row_errors(row: dict[str, str]) -> list[str]:
    """Cheap checks that need no database: required fields, gender, email."""
    errors = [f"Missing {name}" for name in REQUIRED_HEADERS if trim(row.get(name)) is None]
    gender = trim(row.get("Gender"))
    if gender is not None and normalize_gender(gender) is None:
        errors.append("Invalid gender format")
    email = trim(row.get("Email"))
    if email is not None and not is_valid_email(email):
        errors.append("Invalid email format")
    return errors


def preview_file(csv_path: Path, preview_rows: int = 10) -> PreviewReport:
    """Validate the header and the first preview_rows rows of csv_path."""
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = [h for h in reader.fieldnames or []]
        report = PreviewReport(headers=headers, missing_headers=missing_headers(headers))
        for raw in reader:
            report.total_rows += 1
            if report.total_rows <= preview_rows:
                row = canonicalize_row(raw)
                report.rows.append(
                    PreviewRow(report.total_rows, row, preview_row_errors(row))
                )
    return report
