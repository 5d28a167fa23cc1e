"""Append-only audit log of orchestrated research runs."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from pharmasignal.config import settings
from pharmasignal.models.records import AuditRecord, QueryLogRecord
from pharmasignal.observability.metrics import metrics
from pharmasignal.services.research.cache import create_sql_engine

logger = logging.getLogger(__name__)


class AuditLogError(RuntimeError):
    """Raised when an audit record cannot be written."""

    def __init__(self, message: str, code: str = "AUDIT_WRITE_FAILED") -> None:
        super().__init__(message)
        self.code = code


class AuditLog(Protocol):
    """Persistence contract for query audit records."""

    def append(self, record: AuditRecord) -> None:
        ...

    def list(self, fingerprint: str) -> list[AuditRecord]:
        ...


class InMemoryAuditLog(AuditLog):
    """Thread-safe audit log used for API/local development."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list(self, fingerprint: str) -> list[AuditRecord]:
        with self._lock:
            return [record for record in self._records if record.fingerprint == fingerprint]

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)


class SQLAuditLog(AuditLog):
    """SQLModel-backed audit log writing to the ``query_logs`` table."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        self._engine = create_sql_engine(
            database_url,
            pool_min_size=pool_min_size,
            pool_max_size=pool_max_size,
        )
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine, tables=[QueryLogRecord.__table__])

    def dispose(self) -> None:
        self._engine.dispose()

    def append(self, record: AuditRecord) -> None:
        try:
            with self._session() as session:
                session.add(QueryLogRecord.from_audit_record(record))
                session.commit()
        except SQLAlchemyError as exc:
            raise AuditLogError(f"Failed to append audit record for {record.fingerprint}: {exc}") from exc

    def list(self, fingerprint: str) -> list[AuditRecord]:
        with self._session() as session:
            statement = (
                select(QueryLogRecord)
                .where(QueryLogRecord.fingerprint == fingerprint)
                .order_by(QueryLogRecord.created_at)
            )
            return [row.to_audit_record() for row in session.exec(statement).all()]

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def append_best_effort(audit_log: AuditLog, record: AuditRecord) -> bool:
    """Write ``record``; failures are logged and never reach the caller."""
    try:
        audit_log.append(record)
    except Exception as exc:
        metrics.increment("research.audit.errors", tags={"code": getattr(exc, "code", type(exc).__name__)})
        logger.exception(
            "research.audit.write_failed",
            extra={"fingerprint": record.fingerprint, "trace_id": record.trace_id, "error": str(exc)},
        )
        return False
    return True


def build_audit_log(database_url: str | None = None) -> AuditLog:
    """Instantiate an AuditLog using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("research.audit.initialized", extra={"backend": "memory"})
        return InMemoryAuditLog()
    try:
        audit_log = SQLAuditLog(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
        )
        logger.info("research.audit.initialized", extra={"backend": "database"})
        return audit_log
    except Exception:
        logger.exception("research.audit.init_failed", extra={"backend": "database"})
        raise
