"""
FastAPI Middleware for the Employee Compliance API

Provides CORS configuration, request logging, and global error handling.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from employee_compliance.repositories import EntityNotFoundError

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8000",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def sanitize_for_logging(text: str) -> str:
    """Strip control characters from request data before it reaches a log line."""
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500]


def get_cors_origins() -> List[str]:
    """Allowed origins from CORS_ORIGINS (comma-separated) or the localhost defaults."""
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        return [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    return DEFAULT_CORS_ORIGINS


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and stamps X-Request-ID / X-Processing-Time-MS on the response."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            sanitize_for_logging(request_id),
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                sanitize_for_logging(request_id),
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            sanitize_for_logging(request_id),
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    if isinstance(exc, SQLAlchemyError):
        return create_error_response(
            code="DATABASE_ERROR",
            message="The compliance store is unavailable. Please try again later.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def not_found_handler(request: Request, exc: EntityNotFoundError) -> JSONResponse:
    logger.info(
        "Not found: %s request_id=%s",
        sanitize_for_logging(str(exc)),
        getattr(request.state, "request_id", "unknown"),
    )
    return create_error_response(code="NOT_FOUND", message=str(exc), status_code=404)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Service-level argument errors (unknown sort field, bad page) become 400s."""
    return create_error_response(
        code="INVALID_ARGUMENT",
        message=sanitize_for_logging(str(exc)),
        status_code=400,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    return create_error_response(
        code="VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=422,
        field=".".join(location) or None,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EntityNotFoundError, not_found_handler)
    app.add_exception_handler(ValueError, value_error_handler)
