"""Deterministic request fingerprints used as cache keys."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from pharmasignal.models.request import RequestSpec

CACHE_KEY_PREFIX = "research:"


def canonical_json(payload: Any) -> str:
    """Serialize with sorted keys at every depth so key order never matters."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def fingerprint(
    spec: RequestSpec | Mapping[str, Any],
    model: str,
    params: Mapping[str, Any] | None = None,
) -> str:
    """Return the SHA-256 hex digest identifying a logically unique request."""
    inputs = spec.to_wire() if isinstance(spec, RequestSpec) else dict(spec)
    raw = canonical_json({"inputs": inputs, "model": model, "params": dict(params or {})})
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def cache_key(digest: str) -> str:
    return f"{CACHE_KEY_PREFIX}{digest}"
