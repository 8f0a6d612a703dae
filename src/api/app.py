"""
FastAPI Application Factory.

Usage:
    # Development
    uvicorn api.app:create_app --factory --reload

    # Production
    uvicorn api.app:app --host 0.0.0.0 --port 8080 --workers 4

    # Or use the convenience function
    from api.app import create_app
    app = create_app()
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from core.logging import configure_logging, get_logger
from core.middleware import RequestTracingMiddleware


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Runs on startup:
    - Initialize logging

    Pipeline components (Supabase client, LLM client) are lazy-loaded on
    the first request.
    """
    settings = get_settings()

    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    logger.info(
        "Starting feed ranking API",
        environment=settings.environment,
        port=settings.port,
        llm_rerank_enabled=settings.llm_rerank_enabled and bool(settings.llm_api_key),
    )

    yield

    logger.info("Shutting down feed ranking API")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title="Feed Ranking API",
        description="""
        Personalized feed ranking for a professional social network.

        ## Main Endpoints

        - `GET /api/feed` - Ranked feed page (cursor pagination)
        - `POST /api/feed/refresh` - Drop caches and recompute
        - `POST /api/feed/events` - Telemetry batches and session lifecycle
        - `POST /api/feed/extract-topics` - Topic/keyword extraction for a post
        - `/api/feed/experiments/*` - A/B experiment management and results

        ## Health Checks

        - `/health` - Basic health check
        - `/health/detailed` - Detailed health with dependency status
        - `/ready` - Kubernetes readiness probe
        - `/live` - Kubernetes liveness probe
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # =========================================================================
    # Middleware (order matters - first added = outermost)
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request tracing (adds X-Request-ID, logs timing)
    app.add_middleware(RequestTracingMiddleware)

    # =========================================================================
    # Routes
    # =========================================================================

    from api.routes.health import router as health_router
    app.include_router(health_router, tags=["Health"])

    from api.routes.experiments import router as experiments_router
    app.include_router(experiments_router)

    from api.routes.feed import router as feed_router
    app.include_router(feed_router)

    return app


# Create default app instance for uvicorn
# Usage: uvicorn api.app:app
app = create_app()


def get_app() -> FastAPI:
    """Get the application instance (for ASGI servers)."""
    return app
