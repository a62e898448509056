"""
Ticket Flow - FastAPI Application
=================================

Main application factory with routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ticketflow.api import workflow
from ticketflow.core.config import settings
from ticketflow.core.database import AsyncSessionLocal, close_db, init_db
from ticketflow.core.errors import (
    DemoScriptValidationError,
    GitError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    WorkflowError,
)
from ticketflow.core.schemas import ErrorResponse, HealthResponse
from ticketflow.core.workflow import ProcessLock

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


def error_status(exc: WorkflowError) -> int:
    """HTTP status for a workflow error."""
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, DemoScriptValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, PreconditionError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, GitError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, PersistenceError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Take the process lock (a live foreign lock only warns)
    - Initialize database

    Shutdown:
    - Close database connections
    - Release the process lock
    """
    logger.info("Starting Ticket Flow", version=settings.APP_VERSION)

    process_lock = ProcessLock()
    lock = process_lock.acquire("api")
    if lock.warning:
        logger.warning("Process lock warning", detail=lock.warning)

    try:
        await init_db()
        logger.info("Database initialized")

        yield

        logger.info("Shutting down Ticket Flow")
        await close_db()
        logger.info("Database connections closed")
    finally:
        if lock.acquired:
            process_lock.release()


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
        description="Ticket and epic workflow orchestration for coding agents",
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

    @app.exception_handler(WorkflowError)
    async def workflow_exception_handler(request: Request, exc: WorkflowError) -> JSONResponse:
        """Map engine errors to error responses."""
        status_code = error_status(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "Workflow error",
            code=exc.code,
            error=exc.message,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
                code=exc.code,
                details=exc.details or None,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
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

    # Health check (no prefix)
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Check application and database health."""
        database = "connected"
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(workflow.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

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
        "ticketflow.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
