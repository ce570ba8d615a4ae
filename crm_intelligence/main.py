"""
Customer Intelligence Engine API

FastAPI application providing:
1. AI customer insights, natural-language store queries and dashboard alerts
2. RFM customer health scores
3. Rule-based customer segments

Run with:
    uvicorn crm_intelligence.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from crm_intelligence import __version__
from crm_intelligence.api.dependencies import Engine, build_engine
from crm_intelligence.api.routers import ai_router, customers_router, segments_router
from crm_intelligence.cache.health_cache import HealthScoreCache
from crm_intelligence.core.config import Settings, get_settings
from crm_intelligence.core.database import create_engine, create_session_factory
from crm_intelligence.middleware.error_handling import register_exception_handlers
from crm_intelligence.middleware.logging_config import configure_logging, correlation_id_middleware, get_logger
from crm_intelligence.repository.memory import InMemoryRepository
from crm_intelligence.repository.sql import SqlRepository

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    """
    Build the application.

    When ``engine`` is given it is used as-is (tests); otherwise the
    lifespan wires one from ``settings``.
    """
    settings = settings or (engine.settings if engine else get_settings())
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs or settings.environment == "production",
    )

    # ==================== Application Lifespan ====================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        logger.info("application_starting", version=__version__, environment=settings.environment)

        if getattr(app.state, "engine", None) is not None:
            yield
            logger.info("application_shutdown")
            return

        db_engine = None
        if settings.database_url:
            db_engine = create_engine(settings.database_url)
            repository = SqlRepository(create_session_factory(db_engine))
            await repository.create_schema()
            logger.info("repository_mode", mode="sql")
        else:
            repository = InMemoryRepository()
            logger.warning("repository_mode", mode="in_memory", reason="no_database_url")

        health_cache = await HealthScoreCache.connect(settings.redis_url, settings.health_cache_ttl_seconds)
        app.state.engine = build_engine(settings, repository, health_cache=health_cache)

        logger.info(
            "application_ready",
            ai_capability=app.state.engine.completion.capability.value,
            rate_limit_quota=settings.ai_rate_limit_quota,
        )

        yield

        await health_cache.close()
        if db_engine is not None:
            await db_engine.dispose()
        app.state.engine = None
        logger.info("application_shutdown")

    app = FastAPI(
        title="Customer Intelligence Engine",
        description="Customer health scoring, segmentation and AI insights for store admins",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ==================== Middleware ====================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.middleware("http")(correlation_id_middleware)

    register_exception_handlers(app)

    # ==================== Routers ====================

    app.include_router(ai_router)
    app.include_router(customers_router)
    app.include_router(segments_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness probe; reports the completion-service capability."""
        current = request.app.state.engine
        return {
            "status": "healthy",
            "version": __version__,
            "ai_capability": current.completion.capability.value if current else "unknown",
            "cache_enabled": current.health_cache.enabled if current else False,
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "crm_intelligence.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
