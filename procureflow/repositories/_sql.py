from __future__ import annotations

import json
import re
from collections.abc import Sequence
from contextlib import closing
from typing import Any


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def load_json(value: Any) -> Any:
    # psycopg decodes JSONB itself; sqlite hands back the stored text.
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def fetch_all(conn: Any, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
    with closing(conn.cursor()) as cur:
        cur.execute(sql, tuple(params))
        return list(cur.fetchall() or [])


def fetch_one(conn: Any, sql: str, params: Sequence[Any] = ()) -> tuple[Any, ...] | None:
    with closing(conn.cursor()) as cur:
        cur.execute(sql, tuple(params))
        return cur.fetchone()


def execute(conn: Any, sql: str, params: Sequence[Any] = ()) -> int:
    with closing(conn.cursor()) as cur:
        cur.execute(sql, tuple(params))
        return int(cur.rowcount or 0)
