"""
CaseCompass Error Handling
Application exception hierarchy and the FastAPI handlers that render it.

All application errors are returned as:
    {"error": "<message>", "code": "<MACHINE_CODE>", "details": {...}}
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CaseCompassError(Exception):
    """Base class for errors that map onto an HTTP response."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class NotFoundError(CaseCompassError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ValidationFailed(CaseCompassError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class UnsupportedMediaType(CaseCompassError):
    code = "UNSUPPORTED_MEDIA_TYPE"
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class RateLimited(CaseCompassError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after: int = 60):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after


class AIServiceError(CaseCompassError):
    """The AI provider failed or returned something unusable."""
    code = "AI_SERVICE_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class AINotConfigured(CaseCompassError):
    code = "AI_NOT_CONFIGURED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class OrchestrationError(CaseCompassError):
    code = "ORCHESTRATION_ERROR"


class AnalysisError(CaseCompassError):
    code = "ANALYSIS_ERROR"


# =============================================================================
# Handlers
# =============================================================================

async def casecompass_error_handler(request: Request, exc: CaseCompassError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)

    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register JSON handlers for application and unexpected errors."""
    app.add_exception_handler(CaseCompassError, casecompass_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
