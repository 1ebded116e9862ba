"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from colloquy.api import topics, traces
from colloquy.config import settings
from colloquy.errors import (
    ColloquyError,
    ConflictError,
    IllegalTransition,
    NotFoundError,
    PermissionDenied,
    PreconditionError,
    RateLimitExceeded,
    StageError,
    UpstreamError,
    ValidationError,
)
from colloquy.services.cache import build_cache

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ColloquyError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    IllegalTransition: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
    PreconditionError: status.HTTP_409_CONFLICT,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    UpstreamError: status.HTTP_502_BAD_GATEWAY,
    StageError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the key/value cache and its sweep task; stop them on shutdown."""
    cache = build_cache(settings)
    await cache.start()
    app.state.cache = cache
    yield
    await cache.stop()
    app.state.cache = None


async def colloquy_error_handler(request: Request, exc: ColloquyError) -> JSONResponse:
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"X-RateLimit-Reset": exc.reset_at.isoformat()}
    logger.info(f"{request.method} {request.url.path} -> {code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Colloquy API",
        description="Content analysis for discussion topics and sourced traces",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(ColloquyError, colloquy_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Include routers
    app.include_router(topics.router, prefix="/v1", tags=["topics"])
    app.include_router(traces.router, prefix="/v1", tags=["traces"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
