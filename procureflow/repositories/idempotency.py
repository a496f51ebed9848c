from __future__ import annotations

from typing import Any

from procureflow.db.schema import POSTGRES, SqlDialect
from procureflow.repositories._sql import execute, validate_identifier


class InMemoryIdempotencyRepository:
    def __init__(self, keys: dict[str, float]) -> None:
        self._keys = keys

    def consume(self, *, scope_key: str, now: float, ttl_seconds: float) -> bool:
        """Record ``scope_key`` and report whether it was unused (or expired)."""
        expires_at = self._keys.get(scope_key)
        if expires_at is not None and expires_at > now:
            return False
        for key in [k for k, exp in self._keys.items() if exp <= now]:
            del self._keys[key]
        self._keys[scope_key] = now + ttl_seconds
        return True


class SqlIdempotencyRepository:
    def __init__(self, conn: Any, *, dialect: SqlDialect = POSTGRES, table_name: str = "idempotency_keys") -> None:
        self._conn = conn
        self._dialect = dialect
        self._table_name = validate_identifier(table_name)

    def consume(self, *, scope_key: str, now: float, ttl_seconds: float) -> bool:
        # Single statement: the row is only rewritten when the previous use has expired.
        p = self._dialect.placeholder
        sql = f"""
            INSERT INTO {self._table_name} (scope_key, expires_at)
            VALUES ({p}, {p})
            ON CONFLICT (scope_key) DO UPDATE
            SET expires_at = excluded.expires_at
            WHERE {self._table_name}.expires_at <= {p}
        """
        return execute(self._conn, sql, (scope_key, now + ttl_seconds, now)) == 1
