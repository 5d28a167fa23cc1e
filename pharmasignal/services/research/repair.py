"""Deterministic, issue-targeted repair of retrieval payloads.

Repairs only touch paths named by validation issues and only rewrite values
that are present but malformed. Absent attributes are never filled in, deals
are never dropped and magnitudes are never invented. Every repaired payload is validated again by the
caller; ``RepairResult.repairs`` labels what was changed.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Final

from pharmasignal.models.facts import DEAL_STAGES, RawFacts, ValidationIssue

logger = logging.getLogger(__name__)

_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")
_PLAIN_NUMBER = re.compile(r"^\$?\s*-?\d[\d,]*(\.\d+)?$")

# Checked in order; explicit phase mentions win over regulatory wording.
_STAGE_PATTERNS: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
    ("Phase 3", re.compile(r"\bphase\s*-?\s*(3|iii)\b", re.IGNORECASE)),
    ("Phase 2", re.compile(r"\bphase\s*-?\s*(2|ii)\b", re.IGNORECASE)),
    ("Phase 1", re.compile(r"\bphase\s*-?\s*(1|i)\b", re.IGNORECASE)),
    ("Preclinical", re.compile(r"\b(pre-?clinical|ind-enabling|discovery stage)\b", re.IGNORECASE)),
    ("Filed", re.compile(r"\b(filed|nda|bla|maa|regulatory submission|under review)\b", re.IGNORECASE)),
    ("Marketed", re.compile(r"\b(marketed|approved|launched|commercial(ly)? available)\b", re.IGNORECASE)),
)

_DATE_FORMATS: Final[tuple[str, ...]] = (
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%Y-%m-%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)


@dataclass(frozen=True)
class RepairResult:
    """Possibly repaired facts plus a label per change."""

    facts: RawFacts
    repairs: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.repairs)


def repair_facts(raw: RawFacts, issues: list[ValidationIssue]) -> RepairResult:
    """Rewrite malformed values at the paths the issues point to; absent values stay absent."""
    if not issues:
        return RepairResult(facts=raw)

    payload = copy.deepcopy(raw.to_payload())
    repairs: list[str] = []
    for path in dict.fromkeys(issue.path for issue in issues):
        located = _locate(payload, path)
        if located is None:
            continue
        container, key = located
        if not _has(container, key) or _is_blank(container[key]):
            continue
        current = container[key]
        label = _repair_value(container, key, current, path)
        if label:
            repairs.append(label)

    if not repairs:
        return RepairResult(facts=raw)
    logger.info("research.repair.applied", extra={"repairs": repairs})
    return RepairResult(facts=RawFacts.model_validate(payload), repairs=repairs)


def infer_stage(*texts: str | None) -> str | None:
    """Map free text onto a canonical deal stage, or ``None`` when ambiguous."""
    for text in texts:
        if not text:
            continue
        stripped = text.strip()
        for stage in DEAL_STAGES:
            if stripped.lower() == stage.lower():
                return stage
        for stage, pattern in _STAGE_PATTERNS:
            if pattern.search(stripped):
                return stage
    return None


def normalize_date(value: str) -> str | None:
    """Return ``YYYY-MM-DD`` for unambiguous calendar dates, else ``None``."""
    candidate = value.strip()
    if "T" in candidate:
        candidate = candidate.split("T", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _repair_value(container: Any, key: str | int, current: Any, path: str) -> str | None:
    if key == "stage" and path.startswith("dealActivity["):
        if not isinstance(current, str):
            return None
        rationale = container.get("rationale") if isinstance(container, dict) else None
        stage = infer_stage(current, rationale)
        if stage and stage != current:
            container[key] = stage
            return f"{path}: inferred stage {stage!r} from deal text"
        return None

    if key == "dateISO" and path.startswith("dealActivity["):
        if isinstance(current, date):
            container[key] = current.isoformat()
            return f"{path}: normalized date to {container[key]}"
        if isinstance(current, str):
            normalized = normalize_date(current)
            if normalized and normalized != current:
                container[key] = normalized
                return f"{path}: normalized date {current!r} to {normalized}"
        return None

    if isinstance(current, str) and _PLAIN_NUMBER.match(current.strip()):
        number = float(current.strip().lstrip("$").replace(",", "").strip())
        container[key] = number
        return f"{path}: coerced numeric string {current!r} to {number:g}"
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _locate(payload: dict[str, Any], path: str) -> tuple[Any, str | int] | None:
    tokens: list[str | int] = [
        int(index) if index else name for name, index in _PATH_TOKEN.findall(path)
    ]
    if not tokens:
        return None
    node: Any = payload
    for token in tokens[:-1]:
        if not _has(node, token):
            return None
        node = node[token]
    if not isinstance(node, (dict, list)):
        return None
    return node, tokens[-1]


def _has(node: Any, key: str | int) -> bool:
    if isinstance(node, dict):
        return key in node
    if isinstance(node, list) and isinstance(key, int):
        return 0 <= key < len(node)
    return False
