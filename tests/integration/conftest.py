"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_reference_tables.sql",
    PROJECT_ROOT / "migrations" / "0002_student_tables.sql",
    PROJECT_ROOT / "migrations" / "0003_seed_reference_data.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit psycopg connection, dsn) with schema and seed data applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        yield conn, dsn
    finally:
        conn.close()


def _student_row(**overrides) -> dict[str, str]:
    row = {
        "Matric Number": "MAT/2024/001",
        "Last Name": "Okafor",
        "First Name": "Ada",
        "Othernames": "",
        "Gender": "F",
        "DoB": "15/03/2001",
        "Marital Status": "Single",
        "Email": "ada.okafor@example.com",
        "Phone": "+234 803 000 0001",
        "Year Of Entry": "2024",
        "Department": "Computer Science",
        "Programme Duration": "4 years",
        "State Of Origin": "Lagos",
        "LGA": "Ikeja",
    }
    row.update(overrides)
    return row


@pytest.fixture
def student_row():
    """Factory for a valid CSV row; keyword overrides replace columns."""
    return _student_row
