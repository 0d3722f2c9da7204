"""API application factory."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from stockfunnel.api.schemas import ErrorResponse
from stockfunnel.core.config import settings
from stockfunnel.core.exceptions import register_exception_handlers
from stockfunnel.core.logging import get_logger, request_id_var, setup_logging

from .routes import health, pipeline, portfolios


logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - initialize and cleanup resources."""
    from stockfunnel.database.connection import (
        close_sqlalchemy_engine,
        init_schema,
        init_sqlalchemy_engine,
    )

    try:
        await init_sqlalchemy_engine()
        await init_schema()
    except Exception as e:
        logger.warning(f"Resource initialization failed (may be ok in tests): {e}")

    yield

    try:
        await close_sqlalchemy_engine()
    except Exception as e:
        logger.warning(f"Resource cleanup failed: {e}")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add request ID to all requests for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start_time

        path = request.url.path
        logger.info(
            f"{request.method} {path} -> {response.status_code} ({duration:.3f}s)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": int(duration * 1000),
            },
        )
        return response


def create_api_app() -> FastAPI:
    """Create and configure the API application."""
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Three-tier stock funnel: screening, triage, research and portfolio construction",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        responses={
            404: {"model": ErrorResponse, "description": "Not Found"},
            409: {"model": ErrorResponse, "description": "Conflict"},
            422: {"model": ErrorResponse, "description": "Validation Error"},
            500: {"model": ErrorResponse, "description": "Internal Server Error"},
        },
    )

    # First added is outermost
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(pipeline.router)
    app.include_router(portfolios.router)

    return app
