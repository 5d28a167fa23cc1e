"""Shared error classes for the research pipeline."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pharmasignal.models.facts import ValidationIssue


class ResearchError(RuntimeError):
    """Base exception raised by the research pipeline."""

    def __init__(
        self,
        message: str,
        code: str = "RESEARCH_ERROR",
        *,
        trace_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.trace_id = trace_id

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self), "trace_id": self.trace_id}


class ClientInputError(ResearchError):
    """Raised when the inbound request is malformed or out of range."""

    def __init__(self, message: str, *, details: Sequence[dict[str, Any]] = ()) -> None:
        super().__init__(message, code="400_INVALID_REQUEST")
        self.details = list(details)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "details": self.details}


class TransportError(ResearchError):
    """Raised when the retrieval call fails, times out or returns garbage."""

    def __init__(
        self,
        message: str,
        code: str = "502_RETRIEVAL_UPSTREAM",
        *,
        trace_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code, trace_id=trace_id)


class ResponseParseError(TransportError):
    """Raised when the retrieval payload cannot be decoded into facts."""

    def __init__(self, message: str, *, trace_id: str | None = None) -> None:
        super().__init__(message, code="502_MALFORMED_RESPONSE", trace_id=trace_id)


class DataQualityRejected(ResearchError):
    """Raised when validation or sanity issues survive the escalation budget."""

    def __init__(
        self,
        message: str,
        *,
        issues: Sequence[ValidationIssue],
        attempts: int,
        trace_id: str | None = None,
    ) -> None:
        super().__init__(message, code="422_DATA_QUALITY_REJECTED", trace_id=trace_id)
        self.issues = list(issues)
        self.attempts = attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "attempts": self.attempts,
            "issues": [issue.model_dump() for issue in self.issues],
        }


class ComputationError(ResearchError):
    """Raised when validated facts violate a calculator precondition."""

    def __init__(self, message: str, *, trace_id: str | None = None) -> None:
        super().__init__(message, code="500_COMPUTATION_DEFECT", trace_id=trace_id)


class CacheWriteWarning(ResearchError):
    """Raised by cache backends on a failed write; callers log and continue."""

    def __init__(self, message: str, code: str = "CACHE_WRITE_SKIPPED") -> None:
        super().__init__(message, code=code)
