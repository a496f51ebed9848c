from __future__ import annotations

from typing import Any

from procureflow.db.schema import POSTGRES, SqlDialect
from procureflow.repositories._sql import dump_json, execute, fetch_all, load_json, validate_identifier


def _order_key(record: dict[str, Any]) -> tuple[str, str]:
    return str(record.get("created_at") or ""), str(record.get("record_id") or "")


class InMemoryStageRecordsRepository:
    """Stage records grouped as ``{case_id: {kind: [record, ...]}}``."""

    def __init__(self, records: dict[str, dict[str, list[dict[str, Any]]]]) -> None:
        self._records = records

    def list(self, *, case_id: str, kind: str | None = None) -> list[dict[str, Any]]:
        per_case = self._records.get(case_id, {})
        if kind is not None:
            rows = [dict(x) for x in per_case.get(kind, [])]
        else:
            rows = [dict(x) for items in per_case.values() for x in items]
        return sorted(rows, key=_order_key)

    def count(self, *, case_id: str, kind: str) -> int:
        return len(self._records.get(case_id, {}).get(kind, []))

    def kinds_present(self, *, case_id: str) -> set[str]:
        return {kind for kind, items in self._records.get(case_id, {}).items() if items}

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        per_case = self._records.setdefault(str(item["case_id"]), {})
        per_case.setdefault(str(item["kind"]), []).append(item)
        return dict(item)

    def update(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        items = self._records.get(str(item["case_id"]), {}).get(str(item["kind"]), [])
        for idx, existing in enumerate(items):
            if existing["record_id"] == item["record_id"]:
                items[idx] = item
                return dict(item)
        raise KeyError(item["record_id"])

    def delete(self, *, case_id: str, kind: str, record_id: str) -> bool:
        items = self._records.get(case_id, {}).get(kind, [])
        for idx, existing in enumerate(items):
            if existing["record_id"] == record_id:
                del items[idx]
                return True
        return False


class SqlStageRecordsRepository:
    def __init__(self, conn: Any, *, dialect: SqlDialect = POSTGRES, table_name: str = "stage_records") -> None:
        self._conn = conn
        self._dialect = dialect
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_record(row: tuple[Any, ...]) -> dict[str, Any]:
        record_id, case_id, kind, created_at, updated_at, data = row
        data = load_json(data)
        return {
            "record_id": record_id,
            "case_id": case_id,
            "kind": kind,
            "created_at": created_at,
            "updated_at": updated_at,
            "data": data if isinstance(data, dict) else {},
        }

    def list(self, *, case_id: str, kind: str | None = None) -> list[dict[str, Any]]:
        p = self._dialect.placeholder
        params: list[Any] = [case_id]
        kind_clause = ""
        if kind is not None:
            kind_clause = f" AND kind = {p}"
            params.append(kind)
        sql = f"""
            SELECT record_id, case_id, kind, created_at, updated_at, data
            FROM {self._table_name}
            WHERE case_id = {p}{kind_clause}
            ORDER BY created_at ASC, record_id ASC
        """
        return [self._row_to_record(row) for row in fetch_all(self._conn, sql, params)]

    def count(self, *, case_id: str, kind: str) -> int:
        p = self._dialect.placeholder
        sql = f"SELECT COUNT(*) FROM {self._table_name} WHERE case_id = {p} AND kind = {p}"
        rows = fetch_all(self._conn, sql, (case_id, kind))
        return int(rows[0][0]) if rows else 0

    def kinds_present(self, *, case_id: str) -> set[str]:
        sql = f"SELECT DISTINCT kind FROM {self._table_name} WHERE case_id = {self._dialect.placeholder}"
        return {str(row[0]) for row in fetch_all(self._conn, sql, (case_id,))}

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        p = self._dialect.placeholder
        sql = f"""
            INSERT INTO {self._table_name} (
                record_id, case_id, kind, created_at, updated_at, data
            ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}{self._dialect.json_cast})
        """
        execute(
            self._conn,
            sql,
            (
                item["record_id"],
                item["case_id"],
                item["kind"],
                item["created_at"],
                item["updated_at"],
                dump_json(item.get("data", {})),
            ),
        )
        return item

    def update(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        p = self._dialect.placeholder
        sql = f"""
            UPDATE {self._table_name}
            SET updated_at = {p}, data = {p}{self._dialect.json_cast}
            WHERE record_id = {p} AND case_id = {p}
        """
        updated = execute(
            self._conn,
            sql,
            (item["updated_at"], dump_json(item.get("data", {})), item["record_id"], item["case_id"]),
        )
        if updated != 1:
            raise KeyError(item["record_id"])
        return item

    def delete(self, *, case_id: str, kind: str, record_id: str) -> bool:
        p = self._dialect.placeholder
        sql = f"DELETE FROM {self._table_name} WHERE case_id = {p} AND kind = {p} AND record_id = {p}"
        return execute(self._conn, sql, (case_id, kind, record_id)) == 1
