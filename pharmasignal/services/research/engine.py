"""Research service: request parsing, cache lookup, orchestration and audit."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from pharmasignal.clients.perplexity import PerplexityClient
from pharmasignal.config import settings
from pharmasignal.models.records import AuditRecord
from pharmasignal.models.request import RequestSpec
from pharmasignal.models.research import ResearchResult
from pharmasignal.observability.metrics import metrics
from pharmasignal.services.research.audit import AuditLog, append_best_effort, build_audit_log
from pharmasignal.services.research.cache import ResultCache, build_result_cache, write_guarded
from pharmasignal.services.research.errors import (
    ClientInputError,
    ComputationError,
    DataQualityRejected,
    ResearchError,
    TransportError,
)
from pharmasignal.services.research.escalation import build_search_params, select_model
from pharmasignal.services.research.fingerprint import cache_key, fingerprint
from pharmasignal.services.research.orchestrator import (
    ResearchOrchestrator,
    ResearchOutcome,
    ResearchState,
    RetrievalClient,
)

logger = logging.getLogger(__name__)


class ResearchService:
    """Serves research results from cache or runs the quality-gated pipeline."""

    def __init__(
        self,
        *,
        client: RetrievalClient | None = None,
        cache: ResultCache | None = None,
        audit_log: AuditLog | None = None,
        orchestrator: ResearchOrchestrator | None = None,
        cache_ttl_seconds: int | None = None,
        cache_max_bytes: int | None = None,
    ) -> None:
        self._client = client
        self._orchestrator = orchestrator
        self._cache = cache or build_result_cache()
        self._audit_log = audit_log or build_audit_log()
        self._cache_ttl_seconds = (
            settings.research_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self._cache_max_bytes = settings.research_cache_max_bytes if cache_max_bytes is None else cache_max_bytes

    def analyze(
        self,
        request: RequestSpec | Mapping[str, Any],
        *,
        force: bool = False,
    ) -> ResearchResult:
        """Return verified and derived facts for ``request``, raising typed errors on failure."""
        spec = parse_request(request)
        model = select_model(spec)
        params = build_search_params(spec)
        digest = fingerprint(spec, model, params)
        key = cache_key(digest)
        metrics_tags = {"model": model}
        with metrics.timer("research.latency_ms", tags={**metrics_tags, "cache": "miss"}) as timing_tags:
            try:
                if not force:
                    cached = self._load_cached(key)
                    if cached is not None:
                        timing_tags["cache"] = "hit"
                        metrics.increment("research.cache_hit", tags=metrics_tags)
                        logger.info(
                            "research.cache.hit",
                            extra={"fingerprint": digest, "trace_id": cached.trace_id, "model": model},
                        )
                        return cached.model_copy(update={"cache_hit": True})

                metrics.increment("research.cache_miss", tags=metrics_tags)
                outcome = self._ensure_orchestrator().run(
                    spec,
                    model=model,
                    fingerprint=digest,
                    trace_id=uuid.uuid4().hex,
                )
                metrics.increment("research.outcome", tags={**metrics_tags, "state": outcome.state.value})
                if outcome.succeeded and outcome.result is not None:
                    write_guarded(
                        self._cache,
                        key,
                        outcome.result.to_cache_bytes(),
                        ttl_seconds=self._cache_ttl_seconds,
                        max_bytes=self._cache_max_bytes,
                    )
                self._audit(outcome, spec=spec, digest=digest, model=model, params=params)
                result = _unwrap(outcome)
            except ResearchError as exc:
                metrics.increment("research.errors", tags={**metrics_tags, "code": exc.code})
                raise

            logger.info(
                "research.completed",
                extra={
                    "fingerprint": digest,
                    "trace_id": result.trace_id,
                    "model": result.model,
                    "attempts": result.attempts,
                    "repairs": len(result.repairs),
                    "cost_usd": result.usage.cost_usd,
                },
            )
            return result

    def _load_cached(self, key: str) -> ResearchResult | None:
        payload = self._cache.get(key)
        if payload is None:
            return None
        try:
            return ResearchResult.from_cache_bytes(payload)
        except ValidationError:
            logger.warning("research.cache.corrupt", extra={"cache_key": key})
            return None

    def _ensure_orchestrator(self) -> ResearchOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = ResearchOrchestrator(self._ensure_client())
        return self._orchestrator

    def _ensure_client(self) -> RetrievalClient:
        if self._client:
            return self._client
        if not settings.perplexity_api_key:
            raise TransportError(
                "PERPLEXITY_API_KEY is required for research retrieval.",
                code="503_RETRIEVAL_UNCONFIGURED",
            )
        self._client = PerplexityClient.from_settings()
        return self._client

    def _audit(
        self,
        outcome: ResearchOutcome,
        *,
        spec: RequestSpec,
        digest: str,
        model: str,
        params: dict[str, Any],
    ) -> None:
        source_count = outcome.result.facts.source_count if outcome.result else 0
        record = AuditRecord(
            fingerprint=digest,
            trace_id=outcome.trace_id,
            model=outcome.result.model if outcome.result else model,
            outcome=outcome.state.value,
            inputs=spec.to_wire(),
            search_params=params,
            attempts=outcome.attempts,
            duration_ms=round(outcome.duration_ms, 3),
            source_count=source_count,
            cost_usd=outcome.usage.cost_usd,
        )
        append_best_effort(self._audit_log, record)


def parse_request(request: RequestSpec | Mapping[str, Any]) -> RequestSpec:
    """Normalize an inbound payload into a RequestSpec or raise ClientInputError."""
    if isinstance(request, RequestSpec):
        return request
    try:
        return RequestSpec.model_validate(dict(request))
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors(include_url=False)
        ]
        raise ClientInputError("Research request is invalid.", details=details) from exc
    except TypeError as exc:
        raise ClientInputError("Research request must be a JSON object.") from exc


def _unwrap(outcome: ResearchOutcome) -> ResearchResult:
    if outcome.state is ResearchState.DONE and outcome.result is not None:
        return outcome.result
    if outcome.state is ResearchState.REJECTED:
        raise DataQualityRejected(
            f"Retrieved facts failed data-quality checks after {outcome.attempts} attempt(s).",
            issues=outcome.issues,
            attempts=outcome.attempts,
            trace_id=outcome.trace_id,
        )
    if outcome.error is not None:
        raise outcome.error
    raise ComputationError(
        f"Research run ended in unexpected state {outcome.state.value}.",
        trace_id=outcome.trace_id,
    )


_SERVICE_INSTANCE: ResearchService | None = None


def get_research_service() -> ResearchService:
    """Singleton accessor used by API routes."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = ResearchService()
    return _SERVICE_INSTANCE
