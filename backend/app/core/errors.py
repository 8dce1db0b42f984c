"""
Delivery-service errors and the FastAPI handlers that render them.

Every error leaves the API as {"error": {"code", "message", "status", ...}}.
Outside production the request path and method ride along.

Usage:
    from backend.app.core.errors import (
        NotificationServiceError,
        NotFoundError,
        PushFailedError,
        PersistenceError,
        register_error_handlers,
    )

    raise NotFoundError("Message", id="3f1c...")

Not every failure is an exception here: an already-acknowledged message is a
success, an unreachable recipient is the ``queued`` outcome and expiry is a
message state.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotificationServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(NotificationServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotificationServiceError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class PushFailedError(NotificationServiceError):
    """Push over the realtime channel failed (502). Transient."""

    def __init__(self, recipient_id: str, message_id: str, reason: str = ""):
        super().__init__(
            message=f"Push of {message_id} to {recipient_id} failed: {reason}",
            status_code=502,
            error_code="PUSH_FAILED",
            details={"recipient_id": recipient_id, "message_id": message_id},
        )


class PersistenceError(NotificationServiceError):
    """Message store unavailable or write rejected (503). Retryable."""

    def __init__(
        self,
        operation: str,
        message: str = "",
        *,
        status_code: int = 503,
        error_code: str = "PERSISTENCE_FAILED",
        **details: Any,
    ):
        super().__init__(
            message=f"Store operation '{operation}' failed: {message}",
            status_code=status_code,
            error_code=error_code,
            details={"operation": operation, "retryable": True, **details},
        )


class StaleMessageError(PersistenceError):
    """Optimistic write lost against a concurrent update (409)."""

    def __init__(self, message_id: str, expected_version: int):
        super().__init__(
            "update",
            f"message {message_id} changed since version {expected_version}",
            status_code=409,
            error_code="CONCURRENT_UPDATE",
            message_id=message_id,
            expected_version=expected_version,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotificationServiceError)
    async def handle_service_error(request: Request, exc: NotificationServiceError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "%s %s -> %s: %s | details=%s",
            request.method, request.url.path, exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
