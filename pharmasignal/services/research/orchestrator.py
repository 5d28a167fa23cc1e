"""Bounded retrieve, validate and escalate state machine.

One ``run()`` walks ``IDLE -> FETCHING -> VALIDATING -> {ESCALATING ->
FETCHING} x N -> SANITY_CHECKING -> COMPUTING`` and ends in exactly one of
``DONE``, ``REJECTED`` or ``FAILED``. The retrieval client is called at most
``1 + max_escalations`` times; only data-quality issues trigger another call.
Under policies that allow repair, a fetched payload is repaired against its
own issues and validated again within the same attempt.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from pharmasignal.config import settings
from pharmasignal.models.facts import RawFacts, ValidationIssue
from pharmasignal.models.request import RequestSpec
from pharmasignal.models.research import ResearchResult, UsageSummary
from pharmasignal.observability.metrics import metrics
from pharmasignal.services.research.calculator import CalculationError, derive_facts
from pharmasignal.services.research.errors import (
    ComputationError,
    ResearchError,
    ResponseParseError,
    TransportError,
)
from pharmasignal.services.research.escalation import (
    ESCALATION_LADDER,
    EscalationPolicy,
    RetrievalRequest,
    RetrievalResponse,
    build_retrieval_request,
    policy_for_attempt,
)
from pharmasignal.services.research.repair import repair_facts
from pharmasignal.services.research.sanity import SanityThresholds, check_sanity
from pharmasignal.services.research.usage import UsageLedger
from pharmasignal.services.research.validator import validate_facts, verify_facts

logger = logging.getLogger(__name__)


class ResearchState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    VALIDATING = "validating"
    ESCALATING = "escalating"
    SANITY_CHECKING = "sanity_checking"
    COMPUTING = "computing"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ResearchState.DONE, ResearchState.REJECTED, ResearchState.FAILED)


class RetrievalClient(Protocol):
    """Minimal contract for the fact-retrieval service."""

    def retrieve(self, request: RetrievalRequest) -> RetrievalResponse:
        ...


@dataclass(frozen=True)
class ResearchOutcome:
    """Terminal result of one orchestrated run."""

    state: ResearchState
    trace_id: str
    attempts: int
    transitions: tuple[ResearchState, ...]
    result: ResearchResult | None = None
    issues: tuple[ValidationIssue, ...] = ()
    error: ResearchError | None = None
    repairs: tuple[str, ...] = ()
    usage: UsageSummary = field(default_factory=UsageSummary)
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is ResearchState.DONE


class _Run:
    """Mutable bookkeeping for a single invocation."""

    def __init__(self, trace_id: str, ledger: UsageLedger) -> None:
        self.trace_id = trace_id
        self.ledger = ledger
        self.state = ResearchState.IDLE
        self.transitions: list[ResearchState] = [ResearchState.IDLE]
        self.attempts = 0
        self.repairs: list[str] = []
        self.started = time.perf_counter()

    def advance(self, state: ResearchState) -> None:
        logger.debug(
            "research.transition",
            extra={"trace_id": self.trace_id, "from": self.state.value, "to": state.value},
        )
        self.state = state
        self.transitions.append(state)

    def finish(self, state: ResearchState, **kwargs: Any) -> ResearchOutcome:
        self.advance(state)
        return ResearchOutcome(
            state=state,
            trace_id=self.trace_id,
            attempts=self.attempts,
            transitions=tuple(self.transitions),
            repairs=tuple(self.repairs),
            usage=self.ledger.summary(),
            duration_ms=(time.perf_counter() - self.started) * 1000,
            **kwargs,
        )


class ResearchOrchestrator:
    """Drives retrieval through validation, escalation, sanity checks and computation."""

    def __init__(
        self,
        client: RetrievalClient,
        *,
        max_escalations: int | None = None,
        policies: tuple[EscalationPolicy, ...] = ESCALATION_LADDER,
        timeout_seconds: float | None = None,
        thresholds: SanityThresholds | None = None,
        max_cost_usd: float | None = None,
    ) -> None:
        resolved_escalations = (
            settings.research_max_escalations if max_escalations is None else max_escalations
        )
        if resolved_escalations < 0:
            raise ValueError("max_escalations must be zero or a positive integer.")
        if not policies:
            raise ValueError("At least one escalation policy is required.")
        self._client = client
        self._max_escalations = resolved_escalations
        self._policies = policies
        self._timeout_seconds = timeout_seconds
        self._thresholds = thresholds
        self._max_cost_usd = max_cost_usd

    @property
    def max_attempts(self) -> int:
        return 1 + self._max_escalations

    def run(
        self,
        spec: RequestSpec,
        *,
        model: str,
        fingerprint: str,
        trace_id: str | None = None,
    ) -> ResearchOutcome:
        """Execute one research request; transport, quality and computation failures land on the outcome."""
        run = _Run(trace_id or uuid.uuid4().hex, UsageLedger(max_cost_usd=self._max_cost_usd))
        issues: list[ValidationIssue] = []

        while True:
            run.attempts += 1
            policy = policy_for_attempt(run.attempts, self._policies)
            run.advance(ResearchState.FETCHING)
            try:
                raw, served_model = self._fetch(spec, policy, model=model, prior_issues=issues, run=run)
            except TransportError as exc:
                exc.trace_id = run.trace_id
                logger.warning(
                    "research.failed",
                    extra={"trace_id": run.trace_id, "code": exc.code, "attempt": run.attempts},
                )
                return run.finish(ResearchState.FAILED, error=exc, issues=tuple(issues))

            run.advance(ResearchState.VALIDATING)
            issues = validate_facts(raw)
            repairs: list[str] = []
            if issues and policy.apply_repair:
                repaired = repair_facts(raw, issues)
                if repaired.changed:
                    raw = repaired.facts
                    repairs = repaired.repairs
                    issues = validate_facts(raw)
            if not issues:
                run.repairs = repairs
                break
            if run.attempts >= self.max_attempts:
                logger.warning(
                    "research.rejected",
                    extra={
                        "trace_id": run.trace_id,
                        "attempts": run.attempts,
                        "issue_count": len(issues),
                        "stage": "validation",
                    },
                )
                return run.finish(ResearchState.REJECTED, issues=tuple(issues))
            metrics.increment("research.escalations", tags={"policy": policy.name})
            logger.info(
                "research.retry",
                extra={
                    "trace_id": run.trace_id,
                    "attempt": run.attempts,
                    "policy": policy.name,
                    "issue_count": len(issues),
                },
            )
            run.advance(ResearchState.ESCALATING)

        facts = verify_facts(raw)
        run.advance(ResearchState.SANITY_CHECKING)
        sanity_issues = check_sanity(facts, self._thresholds)
        if sanity_issues:
            logger.warning(
                "research.rejected",
                extra={
                    "trace_id": run.trace_id,
                    "attempts": run.attempts,
                    "issue_count": len(sanity_issues),
                    "stage": "sanity",
                },
            )
            return run.finish(ResearchState.REJECTED, issues=tuple(sanity_issues))

        run.advance(ResearchState.COMPUTING)
        try:
            derived = derive_facts(facts)
        except CalculationError as exc:
            logger.error(
                "research.computation_defect",
                extra={"trace_id": run.trace_id, "error": str(exc)},
            )
            error = ComputationError(f"Derived metrics could not be computed: {exc}", trace_id=run.trace_id)
            return run.finish(ResearchState.FAILED, error=error)

        result = ResearchResult(
            fingerprint=fingerprint,
            trace_id=run.trace_id,
            model=served_model,
            facts=facts,
            derived=derived,
            attempts=run.attempts,
            repairs=list(run.repairs),
            usage=run.ledger.summary(),
        )
        return run.finish(ResearchState.DONE, result=result)

    def _fetch(
        self,
        spec: RequestSpec,
        policy: EscalationPolicy,
        *,
        model: str,
        prior_issues: list[ValidationIssue],
        run: _Run,
    ) -> tuple[RawFacts, str]:
        request = build_retrieval_request(
            spec,
            policy,
            model=model,
            prior_issues=prior_issues,
            timeout_seconds=self._timeout_seconds,
        )
        resolved_model = run.ledger.resolve_model(
            model,
            input_tokens=request.prompt_characters // 4,
            output_tokens=request.max_tokens,
        )
        if resolved_model != model:
            request = build_retrieval_request(
                spec,
                policy,
                model=resolved_model,
                prior_issues=prior_issues,
                timeout_seconds=self._timeout_seconds,
            )
        response = self._client.retrieve(request)
        run.ledger.record(
            resolved_model,
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        return parse_facts_payload(response.content), resolved_model


def parse_facts_payload(raw_text: str) -> RawFacts:
    """Decode a retrieval response into RawFacts, tolerating code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(line for line in candidate.splitlines() if not line.strip().startswith("```")).strip()
    try:
        if candidate.startswith("{") and candidate.endswith("}"):
            payload = json.loads(candidate)
        else:
            start = candidate.find("{")
            end = candidate.rfind("}")
            if start == -1 or end <= start:
                raise ResponseParseError("Retrieval response did not contain a JSON object.")
            payload = json.loads(candidate[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ResponseParseError("Retrieval response was not valid JSON.") from exc

    if not isinstance(payload, dict):
        raise ResponseParseError("Retrieval response JSON must be an object.")
    return RawFacts.model_validate(payload)
