"""API endpoint for running the quality-gated research pipeline."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from pharmasignal.services.research.engine import ResearchService, get_research_service
from pharmasignal.services.research.errors import ResearchError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/research", status_code=status.HTTP_200_OK)
def create_research(
    payload: Any = Body(..., description="RequestSpec in camelCase."),
    *,
    force: bool = Query(False, description="Bypass the result cache."),
    service: ResearchService = Depends(get_research_service),
) -> dict[str, Any]:
    """Run (or serve from cache) one research request."""
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body must be a JSON object.")
    try:
        result = service.analyze(payload, force=force)
    except ResearchError as exc:
        logger.error(
            "research.api_error",
            extra={"code": exc.code, "trace_id": exc.trace_id},
        )
        raise HTTPException(status_code=_map_error_code(exc.code), detail=exc.to_dict()) from exc
    return {
        "fingerprint": result.fingerprint,
        "traceId": result.trace_id,
        "model": result.model,
        "cacheHit": result.cache_hit,
        "attempts": result.attempts,
        "repairs": result.repairs,
        "usage": result.usage.model_dump(),
        "generatedAt": result.generated_at.isoformat(),
        "data": result.merged(),
    }


def _map_error_code(code: str) -> int:
    if code == "400_INVALID_REQUEST":
        return status.HTTP_400_BAD_REQUEST
    if code == "422_DATA_QUALITY_REJECTED":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code == "429_RATE_LIMIT":
        return status.HTTP_429_TOO_MANY_REQUESTS
    if code == "503_RETRIEVAL_UNCONFIGURED":
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code == "504_RETRIEVAL_TIMEOUT":
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code.startswith("502_"):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
