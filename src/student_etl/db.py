"""student_etl.db

Bounded connection pool shared by every job in the process.

Connections are handed out in autocommit mode; callers open storage
transactions explicitly with ``conn.transaction()``.  A running job never
holds a connection between records: each record checks one out and
returns it when its unit of work ends.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg
from psycopg_pool import ConnectionPool, PoolTimeout

log = logging.getLogger(__name__)


class Database:
    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self._pool = ConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"autocommit": True},
            open=False,
        )
        self._opened = False

    def open(self) -> None:
        if not self._opened:
            self._pool.open()
            self._opened = True

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[psycopg.Connection]:
        self.open()
        with self._pool.connection(timeout=timeout) as conn:
            yield conn

    def ping(self, timeout: float | None = 5.0) -> bool:
        """Return True if a pooled connection can run a trivial query."""
        try:
            with self.connection(timeout=timeout) as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except (psycopg.Error, PoolTimeout) as exc:
            log.warning("Database ping failed: %s", exc)
            return False

    def close(self) -> None:
        if self._opened:
            self._pool.close()
            self._opened = False

    def __enter__(self) -> "Database":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
