"""Research result returned to callers and stored in the result cache."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from pharmasignal.models.facts import DerivedFacts, VerifiedFacts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageSummary(BaseModel):
    """Token and cost totals accumulated across one request's retrieval calls."""

    api_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    models: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ResearchResult(BaseModel):
    """Verified facts merged with derived metrics for one fingerprint."""

    fingerprint: str
    trace_id: str
    model: str
    facts: VerifiedFacts
    derived: DerivedFacts
    attempts: int = Field(..., ge=1)
    repairs: list[str] = Field(default_factory=list)
    usage: UsageSummary = Field(default_factory=UsageSummary)
    generated_at: datetime = Field(default_factory=_utcnow)
    cache_hit: bool = False

    model_config = ConfigDict(frozen=True)

    def merged(self) -> dict[str, Any]:
        """Flatten facts and derived metrics into one camelCase mapping."""
        payload = self.facts.model_dump(mode="json", by_alias=True)
        payload.update(self.derived.model_dump(mode="json", by_alias=True))
        return payload

    def to_cache_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_cache_bytes(cls, payload: bytes) -> ResearchResult:
        return cls.model_validate_json(payload)
