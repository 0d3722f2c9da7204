"""Custom exceptions and centralized exception handlers."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }


class DataUnavailable(AppException):
    """A ticker's required market data could not be fetched."""

    status_code = status.HTTP_424_FAILED_DEPENDENCY
    error_code = "DATA_UNAVAILABLE"
    message = "Market data unavailable"

    def __init__(self, ticker: str, reason: str | None = None, **kwargs: Any):
        self.ticker = ticker
        self.reason = reason or "no data returned"
        super().__init__(
            message=f"{ticker}: {self.reason}",
            details={"ticker": ticker},
            **kwargs,
        )


class ProviderFailure(AppException):
    """An external market data or analysis provider errored."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "PROVIDER_FAILURE"
    message = "External provider temporarily unavailable"


class ValidationFailure(AppException):
    """Configuration or input failed validation before a run started."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code = "VALIDATION_ERROR"
    message = "Validation failed"


class PersistenceFailure(AppException):
    """A store read or write failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "PERSISTENCE_FAILURE"
    message = "Persistence operation failed"


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class RunStateError(AppException):
    """A write was attempted against a run in a terminal state."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "RUN_STATE_CONFLICT"
    message = "Run is already finished"


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger = logging.getLogger("stockfunnel.error")
        logger.exception(
            "Unhandled exception",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )

        from .config import settings

        if settings.debug:
            message = str(exc)
        else:
            message = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )
