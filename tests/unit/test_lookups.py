"""Unit tests for student_etl.lookups (no database; connection is mocked)."""

import random
from datetime import datetime
from unittest.mock import MagicMock

import psycopg
import pytest

from student_etl.lookups import (
    DEFAULT_MARITAL_STATUS,
    LookupResolver,
    LookupResult,
    build_applicant_no,
    generate_applicant_no,
)
from student_etl.shared import IdentifierExhaustedError


def _conn(*rows) -> MagicMock:
    """Connection whose successive execute().fetchone() calls return rows."""
    conn = MagicMock()
    conn.execute.return_value.fetchone.side_effect = list(rows)
    return conn


def _failing_conn() -> MagicMock:
    conn = MagicMock()
    conn.execute.side_effect = psycopg.OperationalError("server closed the connection")
    return conn


# ---------------------------------------------------------------------------
# LookupResult
# ---------------------------------------------------------------------------

class TestLookupResult:
    def test_found(self):
        assert LookupResult(4).found

    def test_defaulted_is_not_found(self):
        assert not LookupResult(1, defaulted=True).found

    def test_none_is_not_found(self):
        assert not LookupResult(None).found


# ---------------------------------------------------------------------------
# marital_status
# ---------------------------------------------------------------------------

class TestMaritalStatus:
    def test_match(self):
        result = LookupResolver(_conn((2,))).marital_status("Married")
        assert result == LookupResult(2)

    def test_unmatched_defaults(self):
        result = LookupResolver(_conn(None)).marital_status("Complicated")
        assert result.value == DEFAULT_MARITAL_STATUS
        assert result.defaulted

    def test_blank_defaults_without_query(self):
        conn = _conn()
        result = LookupResolver(conn).marital_status("  ")
        assert result.defaulted
        conn.execute.assert_not_called()

    def test_query_error_defaults(self):
        result = LookupResolver(_failing_conn()).marital_status("Single")
        assert result.defaulted


# ---------------------------------------------------------------------------
# session / course
# ---------------------------------------------------------------------------

class TestSession:
    def test_match(self):
        assert LookupResolver(_conn((7,))).session("2024").value == 7

    def test_not_found(self):
        assert not LookupResolver(_conn(None)).session("1999").found

    def test_blank(self):
        assert not LookupResolver(_conn()).session("").found

    def test_passes_trimmed_year(self):
        conn = _conn((1,))
        LookupResolver(conn).session(" 2023/2024 ")
        assert conn.execute.call_args.args[1] == {"year": "2023/2024"}

    def test_query_error_is_not_found(self):
        assert not LookupResolver(_failing_conn()).session("2024").found


class TestCourseOfStudy:
    def test_department(self):
        conn = _conn((3,))
        assert LookupResolver(conn).course_of_study("Physics", "B.Sc Physics").value == 3
        assert conn.execute.call_args.args[1] == {"term": "Physics"}

    def test_programme_used_when_department_blank(self):
        conn = _conn((5,))
        LookupResolver(conn).course_of_study("", "Mathematics")
        assert conn.execute.call_args.args[1] == {"term": "Mathematics"}

    def test_both_blank(self):
        assert not LookupResolver(_conn()).course_of_study(None, None).found


# ---------------------------------------------------------------------------
# state / lga
# ---------------------------------------------------------------------------

class TestLga:
    def test_scoped_match(self):
        result = LookupResolver(_conn((11,))).lga("Ikeja", 25)
        assert result == LookupResult(11)

    def test_fallback_when_not_in_state(self):
        result = LookupResolver(_conn(None, (40,))).lga("Ikeja", 3)
        assert result.value == 40
        assert result.fallback

    def test_no_state_uses_name_only(self):
        conn = _conn((40,))
        result = LookupResolver(conn).lga("Ikeja", None)
        assert result.fallback
        assert conn.execute.call_count == 1

    def test_not_found(self):
        assert not LookupResolver(_conn(None, None)).lga("Atlantis", 3).found

    def test_state_not_found(self):
        assert not LookupResolver(_conn(None)).state("Atlantis").found


# ---------------------------------------------------------------------------
# Applicant numbers
# ---------------------------------------------------------------------------

class TestBuildApplicantNo:
    def test_shape(self):
        now = datetime(2024, 5, 1, 12, 0, 0)
        no = build_applicant_no(now, 42)
        epoch = str(int(now.timestamp()))
        assert no == f"2024{epoch[-6:]}0042"
        assert len(no) == 14


class _FakeResolver:
    def __init__(self, answers):
        self._answers = list(answers)
        self.calls = []

    def applicant_no_exists(self, candidate):
        self.calls.append(candidate)
        answer = self._answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class TestGenerateApplicantNo:
    def test_first_free_candidate(self):
        resolver = _FakeResolver([False])
        no = generate_applicant_no(resolver, rng=random.Random(1))
        assert resolver.calls == [no]

    def test_retries_past_collisions(self):
        resolver = _FakeResolver([True, True, False])
        no = generate_applicant_no(resolver, rng=random.Random(1))
        assert len(resolver.calls) == 3
        assert no == resolver.calls[-1]

    def test_query_error_counts_as_attempt(self):
        resolver = _FakeResolver([psycopg.OperationalError("down"), False])
        generate_applicant_no(resolver, rng=random.Random(1))
        assert len(resolver.calls) == 2

    def test_exhaustion(self):
        resolver = _FakeResolver([True] * 5)
        with pytest.raises(IdentifierExhaustedError, match="after 5 attempts"):
            generate_applicant_no(resolver, max_retries=5, rng=random.Random(1))
        assert len(resolver.calls) == 5

    def test_query_errors_exhaust(self):
        resolver = _FakeResolver([psycopg.OperationalError("down")] * 3)
        with pytest.raises(IdentifierExhaustedError, match="after 3 attempts"):
            generate_applicant_no(resolver, max_retries=3, rng=random.Random(1))
        assert len(resolver.calls) == 3

    def test_unexpected_error_is_not_retried(self):
        resolver = _FakeResolver([ValueError("bad"), False])
        with pytest.raises(ValueError):
            generate_applicant_no(resolver, rng=random.Random(1))
        assert len(resolver.calls) == 1
