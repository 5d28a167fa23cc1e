"""SQLModel mappings for the result cache and the query audit log."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import Column, DateTime, Float, Integer, LargeBinary, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class ResearchCacheRecord(SQLModel, table=True):
    """One serialized ResearchResult keyed by request fingerprint."""

    __tablename__ = "research_cache"
    __table_args__ = (sa.Index("ix_research_cache_expires_at", "expires_at"),)

    cache_key: str = Field(
        sa_column=Column(String(length=128), primary_key=True, nullable=False),
    )
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class AuditRecord(BaseModel):
    """Append-only record describing one orchestrated research run."""

    fingerprint: str
    trace_id: str
    model: str
    outcome: str
    inputs: dict[str, Any] = PydanticField(default_factory=dict)
    search_params: dict[str, Any] = PydanticField(default_factory=dict)
    attempts: int = 0
    duration_ms: float = 0.0
    source_count: int = 0
    cost_usd: float = 0.0
    created_at: datetime = PydanticField(default_factory=_utcnow)


class QueryLogRecord(SQLModel, table=True):
    """ORM row for AuditRecord."""

    __tablename__ = "query_logs"
    __table_args__ = (
        sa.Index("ix_query_logs_fingerprint", "fingerprint"),
        sa.Index("ix_query_logs_trace_id", "trace_id"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    fingerprint: str = Field(sa_column=Column(String(length=64), nullable=False))
    trace_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    model: str = Field(sa_column=Column(String(length=128), nullable=False))
    outcome: str = Field(sa_column=Column(String(length=32), nullable=False))
    inputs: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    search_params: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    attempts: int = Field(sa_column=Column(Integer, nullable=False))
    duration_ms: float = Field(sa_column=Column(Float, nullable=False))
    source_count: int = Field(sa_column=Column(Integer, nullable=False))
    cost_usd: float = Field(sa_column=Column(Float, nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @classmethod
    def from_audit_record(cls, record: AuditRecord) -> QueryLogRecord:
        return cls(**record.model_dump())

    def to_audit_record(self) -> AuditRecord:
        return AuditRecord.model_validate(self.model_dump(exclude={"id"}))
