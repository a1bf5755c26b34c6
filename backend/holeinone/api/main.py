"""
Hole-in-One Engine - FastAPI Application
========================================

Main application factory with all routers and middleware.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from holeinone.api import access, entries, sweeps, verifications, witnesses
from holeinone.api.deps import close_notifier
from holeinone.core.config import settings
from holeinone.core.database import close_db, get_db_session, init_db
from holeinone.core.engine.sweeper import ExpirySweeper
from holeinone.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database connection
    - Start the expiry sweeper (when SWEEP_ENABLED)

    Shutdown:
    - Stop the sweeper
    - Close notification client and database connections
    """
    logger.info("Starting Hole-in-One Entry Engine", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    sweeper_task = None
    if settings.SWEEP_ENABLED:
        sweeper = ExpirySweeper()
        sweeper_task = asyncio.create_task(sweeper.run_forever(settings.SWEEP_INTERVAL_SECONDS))
    app.state.sweeper_task = sweeper_task

    yield

    logger.info("Shutting down Hole-in-One Entry Engine")
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    await close_notifier()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Hole-in-One entry and verification lifecycle engine",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions (storage failures end up here)."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """
        Check application health.

        Returns status of:
        - Application
        - Database connection
        - Expiry sweeper
        """
        try:
            async with get_db_session() as session:
                await session.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.warning("health_database_unavailable", error=str(e))
            database = "unavailable"

        task = getattr(app.state, "sweeper_task", None)
        if task is None:
            sweeper_state = "disabled"
        elif task.done():
            sweeper_state = "stopped"
        else:
            sweeper_state = "running"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            sweeper=sweeper_state,
        )

    app.include_router(entries.router, prefix=settings.API_V1_PREFIX)
    app.include_router(verifications.router, prefix=settings.API_V1_PREFIX)
    app.include_router(witnesses.router, prefix=settings.API_V1_PREFIX)
    app.include_router(access.router, prefix=settings.API_V1_PREFIX)
    app.include_router(sweeps.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "holeinone.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
