from procureflow.repositories.audit_logs import InMemoryAuditLogsRepository, SqlAuditLogsRepository
from procureflow.repositories.cases import InMemoryCasesRepository, SqlCasesRepository
from procureflow.repositories.idempotency import InMemoryIdempotencyRepository, SqlIdempotencyRepository
from procureflow.repositories.stage_records import InMemoryStageRecordsRepository, SqlStageRecordsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "SqlAuditLogsRepository",
    "InMemoryCasesRepository",
    "SqlCasesRepository",
    "InMemoryIdempotencyRepository",
    "SqlIdempotencyRepository",
    "InMemoryStageRecordsRepository",
    "SqlStageRecordsRepository",
]
