from __future__ import annotations

import copy
import logging
import os
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from procureflow.config import WorkflowConfig
from procureflow.db.postgres import PostgresTxRunner
from procureflow.db.schema import POSTGRES, SQLITE, TABLES, SqlDialect, apply_schema
from procureflow.db.sqlite import SqliteTxRunner
from procureflow.repositories import (
    InMemoryAuditLogsRepository,
    InMemoryCasesRepository,
    InMemoryIdempotencyRepository,
    InMemoryStageRecordsRepository,
    SqlAuditLogsRepository,
    SqlCasesRepository,
    SqlIdempotencyRepository,
    SqlStageRecordsRepository,
)
from procureflow.repositories._sql import execute

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitOfWork:
    """Repositories bound to one open transaction."""

    cases: Any
    records: Any
    audit: Any


@runtime_checkable
class CaseStore(Protocol):
    """What the engine needs from a backend: per-case transactions and idempotency keys."""

    backend_name: str

    def transaction(self, case_id: str | None = None) -> Any: ...

    def consume_idempotency_key(self, *, scope_key: str, now: float, ttl_seconds: float) -> bool: ...

    def reset(self) -> None: ...


class InMemoryStore:
    """Process-local store.

    A transaction holds the case's lock for its whole duration and restores
    the case's rows if the body raises, which gives the same all-or-nothing
    behaviour the SQL backends get from the database.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self.cases: dict[str, dict[str, Any]] = {}
        self.stage_records: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.audit_logs: dict[str, list[dict[str, Any]]] = {}
        self.idempotency_keys: dict[str, float] = {}
        self._registry_lock = threading.Lock()
        # case_id -> (lock, transactions using it); dropped when the count reaches zero.
        self._case_locks: dict[str, tuple[threading.RLock, int]] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.cases_repository = InMemoryCasesRepository(self.cases)
        self.records_repository = InMemoryStageRecordsRepository(self.stage_records)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)
        self.idempotency_repository = InMemoryIdempotencyRepository(self.idempotency_keys)

    def reset(self) -> None:
        with self._registry_lock:
            self.cases.clear()
            self.stage_records.clear()
            self.audit_logs.clear()
            self.idempotency_keys.clear()
            self._case_locks.clear()

    @contextmanager
    def _case_lock(self, case_id: str | None) -> Iterator[None]:
        key = case_id or ""
        with self._registry_lock:
            lock, users = self._case_locks.get(key, (None, 0))
            if lock is None:
                lock = threading.RLock()
            self._case_locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                entry = self._case_locks.get(key)
                if entry is not None and entry[0] is lock:
                    if entry[1] <= 1:
                        del self._case_locks[key]
                    else:
                        self._case_locks[key] = (lock, entry[1] - 1)

    def _snapshot(self, case_id: str) -> tuple[Any, Any, int]:
        return (
            copy.deepcopy(self.cases.get(case_id)),
            copy.deepcopy(self.stage_records.get(case_id)),
            len(self.audit_logs.get(case_id, [])),
        )

    def _restore(self, case_id: str, snapshot: tuple[Any, Any, int]) -> None:
        case, records, audit_count = snapshot
        if case is None:
            self.cases.pop(case_id, None)
        else:
            self.cases[case_id] = case
        if records is None:
            self.stage_records.pop(case_id, None)
        else:
            self.stage_records[case_id] = records
        if case_id in self.audit_logs:
            del self.audit_logs[case_id][audit_count:]

    @contextmanager
    def transaction(self, case_id: str | None = None) -> Iterator[UnitOfWork]:
        with self._case_lock(case_id):
            snapshot = self._snapshot(case_id) if case_id else None
            try:
                yield UnitOfWork(
                    cases=self.cases_repository,
                    records=self.records_repository,
                    audit=self.audit_repository,
                )
            except BaseException:
                if snapshot is not None:
                    self._restore(case_id or "", snapshot)
                raise

    def consume_idempotency_key(self, *, scope_key: str, now: float, ttl_seconds: float) -> bool:
        with self._registry_lock:
            return self.idempotency_repository.consume(scope_key=scope_key, now=now, ttl_seconds=ttl_seconds)


class SqlBackedStore:
    """Store whose transactions are real database transactions."""

    backend_name = "sql"

    def __init__(self, *, tx_runner: Any, dialect: SqlDialect) -> None:
        self._tx_runner = tx_runner
        self.dialect = dialect

    def initialize(self) -> None:
        self._tx_runner.run_in_tx(fn=lambda conn: apply_schema(conn, self.dialect))

    def _unit_of_work(self, conn: Any) -> UnitOfWork:
        return UnitOfWork(
            cases=SqlCasesRepository(conn, dialect=self.dialect),
            records=SqlStageRecordsRepository(conn, dialect=self.dialect),
            audit=SqlAuditLogsRepository(conn, dialect=self.dialect),
        )

    @contextmanager
    def transaction(self, case_id: str | None = None) -> Iterator[UnitOfWork]:
        # The case row lock is taken by ``cases.get(..., for_update=True)``.
        with self._tx_runner.transaction() as conn:
            yield self._unit_of_work(conn)

    def consume_idempotency_key(self, *, scope_key: str, now: float, ttl_seconds: float) -> bool:
        def _op(conn: Any) -> bool:
            repo = SqlIdempotencyRepository(conn, dialect=self.dialect)
            return repo.consume(scope_key=scope_key, now=now, ttl_seconds=ttl_seconds)

        return self._tx_runner.run_in_tx(fn=_op)

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            for table in TABLES:
                execute(conn, f"DELETE FROM {table}")

        self._tx_runner.run_in_tx(fn=_op)


class SqliteBackedStore(SqlBackedStore):
    backend_name = "sqlite"

    def __init__(self, db_path: str, *, busy_timeout_ms: int = 5000) -> None:
        super().__init__(tx_runner=SqliteTxRunner(db_path, busy_timeout_ms=busy_timeout_ms), dialect=SQLITE)
        self.initialize()


class PostgresBackedStore(SqlBackedStore):
    backend_name = "postgres"

    def __init__(self, *, dsn: str, statement_timeout_ms: int = 5000, initialize: bool = True) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        super().__init__(
            tx_runner=PostgresTxRunner(dsn, statement_timeout_ms=statement_timeout_ms),
            dialect=POSTGRES,
        )
        if initialize:
            self.initialize()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore | SqlBackedStore:
    env = os.environ if environ is None else environ
    cfg = WorkflowConfig.from_env(env)
    backend = env.get("PROCUREFLOW_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        db_path = env.get("PROCUREFLOW_STORE_SQLITE_PATH", ".local/procureflow.sqlite3")
        logger.info("store_backend backend=sqlite path=%s", db_path)
        return SqliteBackedStore(db_path, busy_timeout_ms=cfg.store_tx_timeout_ms)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when PROCUREFLOW_STORE_BACKEND=postgres")
        logger.info("store_backend backend=postgres")
        return PostgresBackedStore(dsn=dsn, statement_timeout_ms=cfg.store_tx_timeout_ms)
    if backend != "memory":
        raise ValueError(f"unknown PROCUREFLOW_STORE_BACKEND: {backend}")
    return InMemoryStore()


store = create_store_from_env()
