from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from procureflow.errors import StoreUnavailableError


class SqliteTxRunner:
    """Run callback logic in one SQLite write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, which gives
    the same serialization a row lock gives on PostgreSQL.
    """

    def __init__(self, db_path: str, *, busy_timeout_ms: int = 5000) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = busy_timeout_ms / 1000.0

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_s, isolation_level=None)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"sqlite unavailable: {exc}") from exc
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(f"sqlite write lock not acquired: {exc}") from exc
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        with self.transaction() as conn:
            return fn(conn)
