from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from procureflow.errors import StoreUnavailableError


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with a bounded statement timeout."""

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 5000) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        if statement_timeout_ms <= 0:
            raise ValueError("statement_timeout_ms must be positive")
        self._dsn = dsn.strip()
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(self._statement_timeout_ms),),
                    )
                yield conn
                conn.commit()
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"postgres unavailable: {exc}") from exc

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        with self.transaction() as conn:
            return fn(conn)
