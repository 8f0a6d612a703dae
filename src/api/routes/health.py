"""
Health and probe endpoints.

``/health/detailed`` reports the durable store (feed_cache reachability),
whether the LLM reranker is active, and the in-process interest profile
cache once a feed request has built the pipeline.
"""

import time
from typing import Any, Dict

from fastapi import APIRouter, Response, status

from config.database import get_supabase_client_optional
from config.settings import get_settings
from feed.pipeline import peek_feed_pipeline


router = APIRouter(tags=["Health"])

SERVICE_NAME = "feed-ranking-api"


def _check_feed_store() -> Dict[str, Any]:
    client = get_supabase_client_optional()
    if client is None:
        return {"status": "not_configured"}
    started = time.perf_counter()
    try:
        client.table("feed_cache").select("user_id").limit(1).execute()
    except Exception as e:
        return {"status": "error", "error": str(e)}
    return {"status": "connected", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _pipeline_state() -> Dict[str, Any]:
    pipeline = peek_feed_pipeline()
    if pipeline is None:
        return {"status": "not_initialized"}
    return {
        "status": "initialized",
        "llm_rerank": "enabled" if pipeline.llm.enabled else "disabled",
        "llm_top_n": pipeline.llm.top_n,
        "profile_cache": pipeline.profiles.cache.get_stats(),
    }


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/health/detailed")
def detailed_health_check() -> Dict[str, Any]:
    """
    Store connectivity, LLM configuration and pipeline cache state.

    Status is ``degraded`` when the feed store is unreachable; the feed still
    answers in that case (empty fallback), so this is not an outage.
    """
    settings = get_settings()
    store = _check_feed_store()

    return {
        "status": "healthy" if store["status"] == "connected" else "degraded",
        "service": SERVICE_NAME,
        "environment": settings.environment,
        "checks": {
            "feed_store": store,
            "llm_configured": bool(settings.llm_rerank_enabled and settings.llm_api_key),
            "auth_configured": bool(settings.supabase_jwt_secret),
            "pipeline": _pipeline_state(),
        },
    }


@router.get("/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """Ready once the store client exists and tokens can be verified."""
    settings = get_settings()
    if get_supabase_client_optional() is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": "database_not_configured"}
    if not settings.supabase_jwt_secret:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": "auth_not_configured"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}
