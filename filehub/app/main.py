from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from filehub.app.api.logs import router as logs_router
from filehub.app.core.config import settings
from filehub.app.core.logging import get_logger, setup_logging
from filehub.app.core.store import close_store, get_store, is_store_healthy
from filehub.app.db.async_session import close_async_engine, get_async_engine, init_async_db
from filehub.app.exceptions import FilehubException
from filehub.app.middleware.rate_limit import (
    RateLimitMiddleware,
    rate_limit_config,
    upload_rate_limit_config,
)
from filehub.app.middleware.request_id import RequestIdMiddleware
from filehub.app.services.log_batcher import (
    LogBatcher,
    console_log_writer,
    database_log_writer,
)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the counter store and the log batcher, tear both down on exit."""
        store = get_store()
        if not await is_store_healthy(store):
            # Rate limiting and caching fail open, so keep serving
            logger.warning("Counter store unreachable at startup")

        if settings.log_to_database:
            await init_async_db()

        writer = database_log_writer if settings.log_to_database else console_log_writer
        batcher = LogBatcher(writer)
        batcher.start()
        app.state.log_batcher = batcher

        logger.info(
            "Application startup complete",
            extra={
                "store": type(store).__name__,
                "log_to_database": settings.log_to_database,
                "debug_mode": settings.debug,
            },
        )

        yield

        await batcher.shutdown()
        await close_store()
        if settings.log_to_database:
            await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="filehub",
        description="File sharing API with rate limiting, caching and log collection",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    # Default limiter: every request, keyed by client IP and path
    app.add_middleware(RateLimitMiddleware, config=rate_limit_config())

    # Client log ingestion shares the stricter upload budget per client
    app.add_middleware(
        RateLimitMiddleware,
        config=upload_rate_limit_config(paths=("/api/logs",)),
    )

    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(logs_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with counter store and database status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        store = get_store()
        if await is_store_healthy(store):
            health_status["components"]["store"] = {
                "status": "ok",
                "type": "redis" if type(store).__name__ == "RedisStore" else "memory",
            }
        else:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {"status": "error"}

        if settings.log_to_database:
            try:
                engine = get_async_engine()
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                health_status["components"]["database"] = {"status": "ok"}
            except Exception as e:
                health_status["status"] = "degraded"
                health_status["components"]["database"] = {
                    "status": "error",
                    "error": str(e)[:100],  # Truncate for security
                }
        else:
            health_status["components"]["database"] = {"status": "disabled"}

        return health_status

    @app.exception_handler(FilehubException)
    async def filehub_exception_handler(request: Request, exc: FilehubException) -> JSONResponse:
        """Map FilehubException subclasses to their HTTP status."""
        logger.warning(
            f"{type(exc).__name__}: {exc.message}",
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
