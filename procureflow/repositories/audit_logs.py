from __future__ import annotations

from typing import Any

from procureflow.db.schema import POSTGRES, SqlDialect
from procureflow.repositories._sql import dump_json, execute, fetch_all, load_json, validate_identifier


class InMemoryAuditLogsRepository:
    """Append-only audit entries kept per case in insertion order."""

    def __init__(self, audit_logs: dict[str, list[dict[str, Any]]]) -> None:
        self._audit_logs = audit_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.setdefault(str(item["case_id"]), []).append(item)
        return dict(item)

    def list_for_case(self, *, case_id: str, descending: bool = False) -> list[dict[str, Any]]:
        rows = sorted((dict(x) for x in self._audit_logs.get(case_id, [])), key=lambda x: int(x["seq"]))
        if descending:
            rows.reverse()
        return rows

    def last_for_case(self, *, case_id: str) -> dict[str, Any] | None:
        rows = self._audit_logs.get(case_id, [])
        if not rows:
            return None
        return dict(max(rows, key=lambda x: int(x["seq"])))


class SqlAuditLogsRepository:
    def __init__(self, conn: Any, *, dialect: SqlDialect = POSTGRES, table_name: str = "audit_logs") -> None:
        self._conn = conn
        self._dialect = dialect
        self._table_name = validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        p = self._dialect.placeholder
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, case_id, seq, action, occurred_at, payload
            ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}{self._dialect.json_cast})
        """
        execute(
            self._conn,
            sql,
            (
                item["audit_id"],
                item["case_id"],
                int(item["seq"]),
                item.get("action"),
                item.get("occurred_at"),
                dump_json(item),
            ),
        )
        return item

    def _select(self, *, case_id: str, descending: bool, limit: int | None) -> list[dict[str, Any]]:
        p = self._dialect.placeholder
        order = "DESC" if descending else "ASC"
        params: list[Any] = [case_id]
        limit_clause = ""
        if limit is not None:
            limit_clause = f" LIMIT {p}"
            params.append(int(limit))
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE case_id = {p}
            ORDER BY seq {order}{limit_clause}
        """
        out: list[dict[str, Any]] = []
        for row in fetch_all(self._conn, sql, params):
            payload = load_json(row[0])
            if isinstance(payload, dict):
                out.append(payload)
        return out

    def list_for_case(self, *, case_id: str, descending: bool = False) -> list[dict[str, Any]]:
        return self._select(case_id=case_id, descending=descending, limit=None)

    def last_for_case(self, *, case_id: str) -> dict[str, Any] | None:
        rows = self._select(case_id=case_id, descending=True, limit=1)
        return rows[0] if rows else None
