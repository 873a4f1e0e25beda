"""Middleware and error envelopes for the verification server.

Provides:
- Request ID tracing
- Security headers
- Error taxonomy with consistent envelopes
- Optional API key check
"""

from __future__ import annotations

import logging
import secrets
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)

MIN_API_KEY_LENGTH = 32


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    ERROR = "error"
    WARNING = "warning"


@dataclass
class ErrorEnvelope:
    """Standard error response envelope."""

    success: bool = False
    error_id: str = ""
    request_id: str = ""
    timestamp: str = ""
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str = ""
    code: str = ""
    details: list[str] | None = None
    traceback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "error_id": self.error_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "error": {
                "category": self.category.value,
                "severity": self.severity.value,
                "message": self.message,
                "code": self.code,
                "details": self.details or [],
            },
            "meta": {
                "traceback": self.traceback,
            },
        }


class SecurityMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every response."""

    def __init__(self, app, strict_transport: bool = True):
        super().__init__(app)
        self.strict_transport = strict_transport

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if self.strict_transport:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Request ID middleware for tracing."""

    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Get or generate request ID
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[self.header_name] = request_id

        return response


class AuthenticationError(Exception):
    """Authentication failure."""

    def __init__(self, message: str = "Authentication failed", code: str = "AUTH_FAILED"):
        super().__init__(message)
        self.code = code


def create_error_response(
    error_id: str,
    request_id: str,
    error: Exception,
    category: ErrorCategory = ErrorCategory.INTERNAL,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    details: list[str] | None = None,
    include_traceback: bool = False,
) -> dict[str, Any]:
    """Create a standardized error response.

    Args:
        error_id: Unique error identifier
        request_id: Request trace ID
        error: The exception that occurred
        category: Error category
        severity: Error severity
        details: Individual problems (e.g. schema violations)
        include_traceback: Whether to include traceback

    Returns:
        Error envelope as dictionary
    """
    envelope = ErrorEnvelope(
        error_id=error_id,
        request_id=request_id,
        timestamp=datetime.now(UTC).isoformat(),
        category=category,
        severity=severity,
        message=str(error),
        code=f"PHOTOATTEST_{type(error).__name__.upper()}",
        details=details,
    )

    if include_traceback:
        envelope.traceback = "".join(traceback.format_exception(error))

    return envelope.to_dict()


def validate_api_key_format(api_key: str) -> bool:
    """Reject short or low-entropy API keys."""
    if len(api_key) < MIN_API_KEY_LENGTH:
        return False
    return len(set(api_key)) >= 8


def generate_error_id() -> str:
    """Generate unique error ID."""
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(8)
    return f"err_{timestamp}_{random_part}"
