from __future__ import annotations

import logging

from fastapi import APIRouter

from pharmasignal.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "configured" if settings.database_url else "not configured",
        "retrieval": "configured" if settings.perplexity_api_key else "not configured",
    }
