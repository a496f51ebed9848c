from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class SqlDialect:
    name: str
    placeholder: str
    json_type: str
    json_cast: str
    lock_clause: str


SQLITE = SqlDialect(name="sqlite", placeholder="?", json_type="TEXT", json_cast="", lock_clause="")
POSTGRES = SqlDialect(
    name="postgres",
    placeholder="%s",
    json_type="JSONB",
    json_cast="::jsonb",
    lock_clause=" FOR UPDATE",
)


def schema_statements(dialect: SqlDialect) -> list[str]:
    json_type = dialect.json_type
    return [
        """
        CREATE TABLE IF NOT EXISTS cases (
          case_id TEXT PRIMARY KEY,
          title TEXT NOT NULL,
          method TEXT NOT NULL,
          current_state TEXT NOT NULL,
          version INTEGER NOT NULL DEFAULT 1,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          payload {json_type} NOT NULL
        )
        """.format(json_type=json_type),
        """
        CREATE TABLE IF NOT EXISTS stage_records (
          record_id TEXT PRIMARY KEY,
          case_id TEXT NOT NULL REFERENCES cases(case_id) ON DELETE CASCADE,
          kind TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          data {json_type} NOT NULL
        )
        """.format(json_type=json_type),
        "CREATE INDEX IF NOT EXISTS idx_stage_records_case_kind ON stage_records (case_id, kind)",
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
          audit_id TEXT PRIMARY KEY,
          case_id TEXT NOT NULL,
          seq INTEGER NOT NULL,
          action TEXT NOT NULL,
          occurred_at TEXT NOT NULL,
          payload {json_type} NOT NULL,
          UNIQUE (case_id, seq)
        )
        """.format(json_type=json_type),
        """
        CREATE TABLE IF NOT EXISTS idempotency_keys (
          scope_key TEXT PRIMARY KEY,
          expires_at DOUBLE PRECISION NOT NULL
        )
        """,
    ]


TABLES = ("audit_logs", "stage_records", "idempotency_keys", "cases")


def apply_schema(conn: Any, dialect: SqlDialect) -> None:
    with closing(conn.cursor()) as cur:
        for statement in schema_statements(dialect):
            cur.execute(statement)
