"""student_etl.lookups

Reference-table resolution and applicant-number generation.

Every LookupResolver method is total: a missing match or a failed query
comes back as a LookupResult, never as an exception.  The result says
whether the value was found, substituted by a default, or obtained by a
relaxed (fallback) match, so callers can audit degraded rows.

Each query runs inside its own ``conn.transaction()`` block, which is a
savepoint when the caller already holds a transaction, so a failed lookup
never aborts the caller's unit of work.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import psycopg
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from student_etl.normalize import trim
from student_etl.shared import IdentifierExhaustedError

log = logging.getLogger(__name__)

DEFAULT_MARITAL_STATUS = 1
DEFAULT_ID_RETRIES = 20


@dataclass(frozen=True)
class LookupResult:
    value: int | None
    defaulted: bool = False
    fallback: bool = False

    @property
    def found(self) -> bool:
        return self.value is not None and not self.defaulted


NOT_FOUND = LookupResult(None)


class LookupResolver:
    """Case-insensitive exact-text lookups against the reference tables."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _fetch_id(self, what: str, sql: str, params: dict[str, Any]) -> int | None:
        try:
            with self._conn.transaction():
                row = self._conn.execute(sql, params).fetchone()
        except psycopg.Error as exc:
            log.warning("%s lookup failed: %s", what, exc)
            return None
        return int(row[0]) if row else None

    # -- marital status -----------------------------------------------------

    def marital_status(self, status_name: str | None) -> LookupResult:
        """Match by name, or default to DEFAULT_MARITAL_STATUS (flagged)."""
        name = trim(status_name)
        if name is not None:
            found = self._fetch_id(
                "marital_status",
                """
                SELECT status_serial FROM marital_status
                WHERE lower(status_name) = lower(%(name)s)
                ORDER BY status_serial LIMIT 1
                """,
                {"name": name},
            )
            if found is not None:
                return LookupResult(found)
        return LookupResult(DEFAULT_MARITAL_STATUS, defaulted=True)

    # -- session --------------------------------------------------------------

    def session(self, entry_year: str | None) -> LookupResult:
        """Match the literal year, or the 'YYYY/YYYY+1' spelling of a numeric session."""
        year = trim(entry_year)
        if year is None:
            return NOT_FOUND
        found = self._fetch_id(
            "session",
            """
            SELECT session_id FROM academic_session
            WHERE session_name = %(year)s
               OR %(year)s = CASE
                    WHEN session_name ~ '^[0-9]{1,9}$'
                      THEN session_name || '/' || (session_name::bigint + 1)::text
                  END
            ORDER BY session_id LIMIT 1
            """,
            {"year": year},
        )
        return LookupResult(found) if found is not None else NOT_FOUND

    # -- course of study ------------------------------------------------------

    def course_of_study(self, department: str | None, programme: str | None = None) -> LookupResult:
        """Match department text; programme text is used when department is blank."""
        term = trim(department) or trim(programme)
        if term is None:
            return NOT_FOUND
        found = self._fetch_id(
            "course_of_study",
            """
            SELECT serial_id FROM course_of_study
            WHERE lower(course_of_study) = lower(%(term)s)
            ORDER BY serial_id LIMIT 1
            """,
            {"term": term},
        )
        return LookupResult(found) if found is not None else NOT_FOUND

    # -- state / lga ----------------------------------------------------------

    def state(self, state_name: str | None) -> LookupResult:
        name = trim(state_name)
        if name is None:
            return NOT_FOUND
        found = self._fetch_id(
            "state",
            """
            SELECT state_id FROM state
            WHERE lower(state_name) = lower(%(name)s)
            ORDER BY state_id LIMIT 1
            """,
            {"name": name},
        )
        return LookupResult(found) if found is not None else NOT_FOUND

    def lga(self, lga_name: str | None, state_id: int | None = None) -> LookupResult:
        """Match name within state_id first; otherwise match name anywhere (fallback)."""
        name = trim(lga_name)
        if name is None:
            return NOT_FOUND

        if state_id:
            scoped = self._fetch_id(
                "lga",
                """
                SELECT lga_id FROM lga
                WHERE lower(lga_name) = lower(%(name)s) AND state_id = %(state_id)s
                ORDER BY lga_id LIMIT 1
                """,
                {"name": name, "state_id": state_id},
            )
            if scoped is not None:
                return LookupResult(scoped)

        anywhere = self._fetch_id(
            "lga",
            """
            SELECT lga_id FROM lga
            WHERE lower(lga_name) = lower(%(name)s)
            ORDER BY lga_id LIMIT 1
            """,
            {"name": name},
        )
        if anywhere is not None:
            return LookupResult(anywhere, fallback=True)
        return NOT_FOUND

    # -- applicant number uniqueness -----------------------------------------

    def applicant_no_exists(self, applicant_no: str) -> bool:
        """True if either storage table already holds applicant_no.

        Unlike the lookups above, query errors propagate.
        """
        with self._conn.transaction():
            row = self._conn.execute(
                """
                SELECT EXISTS (SELECT 1 FROM student WHERE applicant_no = %(no)s)
                    OR EXISTS (SELECT 1 FROM student_identifier WHERE applicant_no = %(no)s)
                """,
                {"no": applicant_no},
            ).fetchone()
        return bool(row[0])


# ---------------------------------------------------------------------------
# Applicant number generation
# ---------------------------------------------------------------------------

def build_applicant_no(now: datetime, suffix: int) -> str:
    """YYYY + last 6 digits of epoch seconds + 4-digit suffix."""
    epoch = str(int(now.timestamp()))
    return f"{now.year}{epoch[-6:]}{suffix:04d}"


def _log_failed_attempt(state: RetryCallState) -> None:
    if state.outcome is not None and state.outcome.failed:
        log.warning(
            "Applicant number attempt %d failed: %s",
            state.attempt_number, state.outcome.exception(),
        )


def generate_applicant_no(
    resolver: LookupResolver,
    max_retries: int = DEFAULT_ID_RETRIES,
    now: Callable[[], datetime] = datetime.now,
    rng: random.Random | None = None,
) -> str:
    """Return an applicant number unused in both storage tables.

    Raises:
        IdentifierExhaustedError: No unique candidate within max_retries.
    """
    rand = rng or random

    def attempt() -> str | None:
        candidate = build_applicant_no(now(), rand.randint(1000, 9999))
        return None if resolver.applicant_no_exists(candidate) else candidate

    retrying = Retrying(
        stop=stop_after_attempt(max_retries),
        retry=retry_if_result(lambda candidate: candidate is None)
        | retry_if_exception_type(psycopg.Error),
        before_sleep=_log_failed_attempt,
    )
    try:
        return retrying(attempt)
    except RetryError as exc:
        raise IdentifierExhaustedError(
            f"Failed to generate unique applicant number after {max_retries} attempts"
        ) from exc
