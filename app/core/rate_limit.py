"""
CaseCompass - Global Rate Limit
App-wide per-IP limit via slowapi. Per-user limits for expensive operations
live in app.core.security.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.core.config import get_settings


def _default_limit() -> str:
    settings = get_settings()
    return f"{settings.rate_limit_max_requests}/{settings.rate_limit_window} seconds"


limiter = Limiter(key_func=get_remote_address, default_limits=[_default_limit])


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the application's error shape."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "code": "RATE_LIMITED",
            "details": {"limit": str(exc.detail)},
        },
        headers={"Retry-After": str(get_settings().rate_limit_window)},
    )
