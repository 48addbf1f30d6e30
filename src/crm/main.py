"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan events for database
initialization and repository wiring, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.crm.api.middleware.logging import LoggingMiddleware
from src.crm.api.v1.router import router as v1_router
from src.crm.config import get_settings
from src.crm.core.database import close_db, get_session, init_db
from src.crm.core.logging import configure_structlog


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and repositories on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    configure_structlog()
    await init_db()

    try:
        from src.crm.pipeline.repository import DealRepository, StageRepository

        app.state.deal_repository = DealRepository(session_factory=get_session)
        app.state.stage_repository = StageRepository(session_factory=get_session)
        log.info("pipeline.repositories_initialized")
    except Exception:
        log.warning("pipeline.repositories_init_failed", exc_info=True)
        app.state.deal_repository = None
        app.state.stage_repository = None

    yield

    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Pipeline API",
        version="0.1.0",
        description="Sales pipeline board: stages, deals, filters and drag-and-drop moves",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    return app


# Module-level app for uvicorn
app = create_app()
