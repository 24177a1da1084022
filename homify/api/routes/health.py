"""Health check that also reports whether the remote engine is reachable.

Always returns 200; a "disconnected" engine is reported, not fatal, so load
balancers keep routing while the engine recovers.
"""

from __future__ import annotations

import asyncio

import httpx
import structlog
from fastapi import APIRouter, Request

from homify.config import settings

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds


async def _check_engine(http: httpx.AsyncClient) -> str:
    """HEAD the Supabase REST root; any HTTP answer counts as reachable."""
    if not settings.supabase_url:
        return "unconfigured"
    url = f"{settings.supabase_url.rstrip('/')}/rest/v1/"
    try:
        await asyncio.wait_for(
            http.head(url, headers={"apikey": settings.supabase_anon_key}),
            timeout=_CHECK_TIMEOUT,
        )
        return "connected"
    except (httpx.HTTPError, TimeoutError) as exc:
        logger.debug("health_engine_failed", error=str(exc))
        return "disconnected"


@router.get("/health")
async def health(request: Request) -> dict:
    services = request.app.state.services
    return {
        "status": "ok",
        "version": request.app.version,
        "environment": settings.environment,
        "engine": await _check_engine(services.http),
        "photos": services.cache.get_photo_count(),
        "active_polls": services.poller.get_active_polling_count(),
    }
