"""Escalation ladder, model selection and retrieval request construction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final

from pharmasignal.config import settings
from pharmasignal.models.facts import ValidationIssue, VerifiedFacts
from pharmasignal.models.request import RequestSpec

SCHEMA_VERSION: Final[str] = "2025-01"

DEFAULT_DOMAIN_FILTER: Final[tuple[str, ...]] = (
    "fda.gov",
    "ema.europa.eu",
    "clinicaltrials.gov",
    "pubmed.ncbi.nlm.nih.gov",
    "sec.gov",
    "evaluate.com",
    "iqvia.com",
    "citeline.com",
    "biospace.com",
    "fiercebiotech.com",
)

SYSTEM_PROMPT: Final[str] = (
    "You are a senior pharmaceutical commercial analyst. Research the request using current, "
    "verifiable public sources and return ONLY a JSON object matching the supplied schema. "
    "Every block must carry a substantive rationale and at least one real source URL. "
    "Never emit placeholder values such as 'Unknown', 'N/A', 99999 or example.com links; "
    "omit nothing. Do not compute CAGR, patient counts, pipeline density or similarity scores."
)

_MAX_LISTED_DEFECTS: Final[int] = 25


@dataclass(frozen=True)
class EscalationPolicy:
    """Retrieval strictness for one attempt."""

    name: str
    reasoning_effort: str
    temperature: float
    max_tokens: int
    search_context_size: str
    enumerate_defects: bool = False
    apply_repair: bool = False


ESCALATION_LADDER: Final[tuple[EscalationPolicy, ...]] = (
    EscalationPolicy(
        name="baseline",
        reasoning_effort="medium",
        temperature=0.1,
        max_tokens=4000,
        search_context_size="medium",
    ),
    EscalationPolicy(
        name="corrective",
        reasoning_effort="high",
        temperature=0.05,
        max_tokens=6000,
        search_context_size="high",
        enumerate_defects=True,
        apply_repair=True,
    ),
    EscalationPolicy(
        name="maximal",
        reasoning_effort="high",
        temperature=0.0,
        max_tokens=8000,
        search_context_size="high",
        enumerate_defects=True,
        apply_repair=True,
    ),
)


def policy_for_attempt(attempt: int, ladder: tuple[EscalationPolicy, ...] = ESCALATION_LADDER) -> EscalationPolicy:
    """Return the policy for a 1-based attempt number, clamped to the strictest rung."""
    if not ladder:
        raise ValueError("Escalation ladder cannot be empty.")
    return ladder[min(max(attempt, 1), len(ladder)) - 1]


@dataclass(frozen=True)
class RetrievalRequest:
    """Provider-agnostic retrieval call built from a request and a policy."""

    model: str
    messages: list[dict[str, str]]
    response_format: dict[str, Any]
    reasoning_effort: str
    temperature: float
    max_tokens: int
    search_context_size: str
    timeout_seconds: float
    search_domain_filter: list[str] = field(default_factory=lambda: list(DEFAULT_DOMAIN_FILTER))
    policy: str = "baseline"

    @property
    def prompt_characters(self) -> int:
        return sum(len(message.get("content", "")) for message in self.messages)


def estimate_input_tokens(spec: RequestSpec) -> int:
    """Rough token estimate of the rendered research prompt (characters / 4)."""
    return (len(SYSTEM_PROMPT) + len(render_research_prompt(spec))) // 4


def select_model(spec: RequestSpec) -> str:
    """Deep research model for full research or long prompts, default model otherwise."""
    if spec.full_research or estimate_input_tokens(spec) > settings.research_deep_token_threshold:
        return settings.research_deep_model
    return settings.research_default_model


def build_search_params(spec: RequestSpec) -> dict[str, Any]:
    """Parameters that change the answer and therefore belong in the fingerprint."""
    return {
        "fullResearch": spec.full_research,
        "maxEscalations": settings.research_max_escalations,
        "schemaVersion": SCHEMA_VERSION,
    }


def facts_response_format() -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"schema": VerifiedFacts.model_json_schema(by_alias=True)},
    }


def render_research_prompt(spec: RequestSpec) -> str:
    return (
        "Assess the commercial potential of the following development program and return JSON only.\n"
        f"Therapeutic area: {spec.therapeutic_area}\n"
        f"Indication: {spec.indication}\n"
        f"Target: {spec.target}\n"
        f"Geography: {spec.geography}\n"
        f"Development phase: {spec.development_phase}\n"
        "Required: currentMarket, peakRevenue2030, yearsToPeak, avgPrice, persistenceRate, "
        "sameTargetAssets, totalAssets, vectorA, vectorB, dealActivity (at least one deal with asset, "
        "stage, priceUSD, dateISO as YYYY-MM-DD, a rationale of 20+ characters and source URLs), "
        "keyMarketAssumptions, regIncentives, ipStrength, financialForecast and sourceMap.\n"
    )


def render_corrective_prompt(issues: list[ValidationIssue]) -> str:
    listed = [f"- {issue.path}: {issue.description}" for issue in issues[:_MAX_LISTED_DEFECTS]]
    if len(issues) > _MAX_LISTED_DEFECTS:
        listed.append(f"- ... and {len(issues) - _MAX_LISTED_DEFECTS} more")
    return (
        "The previous answer was rejected by data-quality validation. Fix every defect below, "
        "replace placeholders with sourced values and resend the complete JSON object.\n"
        + "\n".join(listed)
    )


def build_retrieval_request(
    spec: RequestSpec,
    policy: EscalationPolicy,
    *,
    model: str,
    prior_issues: list[ValidationIssue] | None = None,
    timeout_seconds: float | None = None,
) -> RetrievalRequest:
    """Compose the retrieval request for one attempt under the given policy."""
    user_prompt = render_research_prompt(spec)
    if policy.enumerate_defects and prior_issues:
        user_prompt = f"{user_prompt}\n{render_corrective_prompt(prior_issues)}"
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
    return RetrievalRequest(
        model=model,
        messages=messages,
        response_format=facts_response_format(),
        reasoning_effort=policy.reasoning_effort,
        temperature=policy.temperature,
        max_tokens=policy.max_tokens,
        search_context_size=policy.search_context_size,
        timeout_seconds=timeout_seconds if timeout_seconds is not None else settings.research_timeout_seconds,
        policy=policy.name,
    )


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class RetrievalResponse:
    """Raw text returned by the retrieval service plus accounting data."""

    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    citations: list[str] = field(default_factory=list)
    model: str | None = None
