"""Error taxonomy, raising helpers and FastAPI handlers."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tessera_analytics.core.logging import get_request_id

logger = logging.getLogger("tessera")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class AnalyticsError(AppError):
    """Analytics failure carrying severity and structured context."""
    code = "ANALYTICS_ERROR"
    severity = "medium"

    def __init__(
        self,
        message: str,
        *,
        original_error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message, request_id=request_id)
        self.original_error = original_error
        self.metadata = dict(metadata or {})
        if severity:
            self.severity = severity
        self.metadata.setdefault("severity", self.severity)
        self.metadata.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "metadata": self.metadata,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class DatabaseError(AnalyticsError):
    code = "DATABASE_ERROR"
    status_code = 503
    severity = "high"


class PrivacyViolationError(AnalyticsError):
    """Never suppressed: every component re-raises it to the caller."""
    code = "PRIVACY_VIOLATION"
    status_code = 500
    severity = "critical"


class AccessDeniedError(AnalyticsError):
    code = "ACCESS_DENIED"
    status_code = 403
    severity = "medium"


class CircuitOpenError(AnalyticsError):
    code = "CIRCUIT_OPEN"
    status_code = 503
    severity = "medium"


def handle_database_error(error: BaseException, context: str) -> None:
    """Log a source-data failure and raise it as DatabaseError."""
    logger.error(
        "analytics.database_error",
        extra={"error_code": DatabaseError.code, "operation": context, "event_type": type(error).__name__},
    )
    raise DatabaseError(
        f"Database operation failed in {context}",
        original_error=error,
        metadata={"context": context, "original_error": str(error)},
    ) from error


def handle_privacy_violation(details: str, context: str) -> None:
    logger.critical(
        "analytics.privacy_violation",
        extra={"error_code": PrivacyViolationError.code, "operation": context, "event_type": "requires_audit"},
    )
    raise PrivacyViolationError(
        f"Privacy violation detected: {details}",
        metadata={"context": context, "details": details},
    )


def handle_role_access_denied(user_id: Optional[str], role: str, resource: str) -> None:
    logger.warning(
        "analytics.access_denied",
        extra={"error_code": AccessDeniedError.code, "user_id": user_id, "event_type": "requires_security_review"},
    )
    raise AccessDeniedError(
        f"Access denied for role {role} to resource {resource}",
        metadata={"user_id": user_id, "role": role, "resource": resource},
    )


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    if isinstance(exc, PrivacyViolationError):
        log_level = logging.CRITICAL
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
