from __future__ import annotations

from typing import Any

from procureflow.db.schema import POSTGRES, SqlDialect
from procureflow.repositories._sql import dump_json, execute, fetch_all, fetch_one, load_json, validate_identifier


def _matches(case: dict[str, Any], *, state: str | None, method: str | None) -> bool:
    if state and case.get("current_state") != state:
        return False
    if method and case.get("method") != method:
        return False
    return True


class InMemoryCasesRepository:
    def __init__(self, cases: dict[str, dict[str, Any]]) -> None:
        self._cases = cases

    def create(self, *, case: dict[str, Any]) -> dict[str, Any]:
        self._cases[str(case["case_id"])] = dict(case)
        return dict(case)

    def get(self, *, case_id: str, for_update: bool = False) -> dict[str, Any] | None:
        row = self._cases.get(case_id)
        if row is None:
            return None
        return dict(row)

    def update(self, *, case: dict[str, Any]) -> dict[str, Any]:
        case_id = str(case["case_id"])
        if case_id not in self._cases:
            raise KeyError(case_id)
        self._cases[case_id] = dict(case)
        return dict(case)

    def list(
        self,
        *,
        state: str | None = None,
        method: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [dict(x) for x in list(self._cases.values()) if _matches(x, state=state, method=method)]
        rows.sort(key=lambda x: (str(x.get("created_at") or ""), str(x.get("case_id"))))
        return rows[offset : offset + limit]


class SqlCasesRepository:
    """Cases table access bound to one open transaction."""

    def __init__(self, conn: Any, *, dialect: SqlDialect = POSTGRES, table_name: str = "cases") -> None:
        self._conn = conn
        self._dialect = dialect
        self._table_name = validate_identifier(table_name)

    def create(self, *, case: dict[str, Any]) -> dict[str, Any]:
        item = dict(case)
        p = self._dialect.placeholder
        sql = f"""
            INSERT INTO {self._table_name} (
                case_id, title, method, current_state, version, created_at, updated_at, payload
            ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}{self._dialect.json_cast})
        """
        execute(
            self._conn,
            sql,
            (
                item["case_id"],
                item.get("title", ""),
                item["method"],
                item["current_state"],
                int(item.get("version", 1)),
                item["created_at"],
                item["updated_at"],
                dump_json(item),
            ),
        )
        return item

    def get(self, *, case_id: str, for_update: bool = False) -> dict[str, Any] | None:
        lock = self._dialect.lock_clause if for_update else ""
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE case_id = {self._dialect.placeholder}{lock}
        """
        row = fetch_one(self._conn, sql, (case_id,))
        if row is None:
            return None
        payload = load_json(row[0])
        return payload if isinstance(payload, dict) else None

    def update(self, *, case: dict[str, Any]) -> dict[str, Any]:
        item = dict(case)
        p = self._dialect.placeholder
        sql = f"""
            UPDATE {self._table_name}
            SET title = {p}, current_state = {p}, version = {p}, updated_at = {p}, payload = {p}{self._dialect.json_cast}
            WHERE case_id = {p}
        """
        updated = execute(
            self._conn,
            sql,
            (
                item.get("title", ""),
                item["current_state"],
                int(item.get("version", 1)),
                item["updated_at"],
                dump_json(item),
                item["case_id"],
            ),
        )
        if updated != 1:
            raise KeyError(item["case_id"])
        return item

    def list(
        self,
        *,
        state: str | None = None,
        method: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        p = self._dialect.placeholder
        clauses: list[str] = []
        params: list[Any] = []
        if state:
            clauses.append(f"current_state = {p}")
            params.append(state)
        if method:
            clauses.append(f"method = {p}")
            params.append(method)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            {where}
            ORDER BY created_at ASC, case_id ASC
            LIMIT {p} OFFSET {p}
        """
        rows = fetch_all(self._conn, sql, (*params, int(limit), int(offset)))
        out: list[dict[str, Any]] = []
        for row in rows:
            payload = load_json(row[0])
            if isinstance(payload, dict):
                out.append(payload)
        return out
