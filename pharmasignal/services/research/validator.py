"""Structural and business validation of retrieved facts.

The validator never raises on bad data: it returns a flat, stably ordered list
of ``ValidationIssue`` objects and an empty list means the facts are accepted.
Business issues (missing critical fields, placeholder values) are reported
first; structural issues follow, skipping any path already reported.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any, Final
from urllib.parse import urlparse

from pydantic import ValidationError

from pharmasignal.models.facts import RawFacts, ValidationIssue, VerifiedFacts

logger = logging.getLogger(__name__)

CRITICAL_FIELDS: Final[tuple[str, ...]] = (
    "currentMarket",
    "peakRevenue2030",
    "yearsToPeak",
    "avgPrice",
    "persistenceRate",
    "sameTargetAssets",
    "totalAssets",
    "vectorA",
    "vectorB",
    "dealActivity",
    "keyMarketAssumptions",
    "regIncentives",
    "ipStrength",
    "financialForecast",
    "sourceMap",
)

# Stand-ins the retrieval service emits when it cannot find a value.
PLACEHOLDER_NUMBERS: Final[frozenset[float]] = frozenset(
    {99_999.0, 999_999.0, 9_999_999.0, 123_456.0, 1_234_567.0, 12_345_678.0}
)
PLACEHOLDER_STRINGS: Final[frozenset[str]] = frozenset(
    {
        "unknown",
        "n/a",
        "na",
        "tbd",
        "tba",
        "none",
        "null",
        "placeholder",
        "not available",
        "not specified",
        "not applicable",
        "lorem ipsum",
        "xxx",
        "...",
        "deal rationale from public sources",
    }
)
PLACEHOLDER_HOSTS: Final[frozenset[str]] = frozenset(
    {"example.com", "example.org", "example.net", "placeholder.com", "url.com", "source.com"}
)
_UNSCANNED_FIELDS: Final[frozenset[str]] = frozenset({"vectorA", "vectorB"})


def validate_facts(facts: RawFacts | VerifiedFacts | Mapping[str, Any]) -> list[ValidationIssue]:
    """Return every data-quality issue found in the facts payload."""
    payload = _as_payload(facts)
    issues = _critical_field_issues(payload)
    issues.extend(_placeholder_issues(payload))
    reported = [issue.path for issue in issues]
    for issue in _structural_issues(payload):
        if not _covered(issue.path, reported):
            issues.append(issue)
    if issues:
        logger.info(
            "research.validation.issues",
            extra={"issue_count": len(issues), "paths": [issue.path for issue in issues[:10]]},
        )
    return issues


def verify_facts(facts: RawFacts) -> VerifiedFacts:
    """Freeze facts that produced an empty issue list into VerifiedFacts."""
    return VerifiedFacts.model_validate(facts.to_payload())


def summarize_issues(issues: list[ValidationIssue], *, limit: int = 20) -> list[str]:
    lines = [str(issue) for issue in issues[:limit]]
    if len(issues) > limit:
        lines.append(f"... {len(issues) - limit} more issue(s)")
    return lines


def _as_payload(facts: RawFacts | VerifiedFacts | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(facts, RawFacts):
        payload = facts.to_payload()
    elif isinstance(facts, VerifiedFacts):
        payload = facts.model_dump(mode="json", by_alias=True)
    else:
        payload = RawFacts.model_validate(dict(facts)).to_payload()
    return {name: payload.get(name) for name in CRITICAL_FIELDS}


def _critical_field_issues(payload: Mapping[str, Any]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for name in CRITICAL_FIELDS:
        value = payload.get(name)
        if value is None or (isinstance(value, (str, list, dict)) and not value):
            issues.append(
                ValidationIssue(
                    path=name,
                    description="Critical field is missing or empty",
                    severity="critical",
                )
            )
    return issues


def _placeholder_issues(payload: Mapping[str, Any]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for name in CRITICAL_FIELDS:
        if name in _UNSCANNED_FIELDS:
            continue
        for path, value in _walk(payload.get(name), name):
            reason = _placeholder_reason(value)
            if reason:
                issues.append(ValidationIssue(path=path, description=reason, severity="error"))
    return issues


def _placeholder_reason(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if float(value) in PLACEHOLDER_NUMBERS:
            return f"Placeholder number {value!r} is not an accepted value"
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in PLACEHOLDER_STRINGS:
        return f"Placeholder text {value!r} is not an accepted value"
    if normalized.startswith(("http://", "https://")):
        host = (urlparse(normalized).hostname or "").removeprefix("www.")
        if any(host == blocked or host.endswith(f".{blocked}") for blocked in PLACEHOLDER_HOSTS):
            return f"Placeholder source URL {value!r} is not an accepted citation"
    return None


def _walk(value: Any, path: str) -> Iterator[tuple[str, Any]]:
    if isinstance(value, Mapping):
        for key, child in value.items():
            yield from _walk(child, f"{path}.{key}")
    elif isinstance(value, list):
        for index, child in enumerate(value):
            yield from _walk(child, f"{path}[{index}]")
    else:
        yield path, value


def _structural_issues(payload: Mapping[str, Any]) -> list[ValidationIssue]:
    try:
        VerifiedFacts.model_validate(dict(payload))
    except ValidationError as exc:
        return [
            ValidationIssue(
                path=_format_loc(error["loc"]),
                description=_format_message(error),
                severity="error",
            )
            for error in exc.errors(include_url=False)
        ]
    return []


def _format_loc(loc: tuple[int | str, ...]) -> str:
    if not loc:
        return "facts"
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _format_message(error: Mapping[str, Any]) -> str:
    if error.get("type") == "missing":
        return "Required field is missing"
    message = str(error.get("msg", "Invalid value"))
    return message.removeprefix("Value error, ")


def _covered(path: str, reported: list[str]) -> bool:
    return any(
        path == prior or path.startswith(f"{prior}.") or path.startswith(f"{prior}[")
        for prior in reported
    )
