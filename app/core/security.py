"""
CaseCompass - Security Module
Session-token authentication, per-user and per-IP rate limiting, input sanitization.

Sessions:
- POST /api/auth/session issues an opaque token
- Only the SHA-256 hash of the token is persisted
- Token accepted as Authorization: Bearer <token> or the session cookie
"""

import hashlib
import logging
import re
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.core.errors import RateLimited
from app.core.utc import to_utc, utc_now


logger = logging.getLogger("casecompass.security")

security_bearer = HTTPBearer(auto_error=False)


# =============================================================================
# Tokens
# =============================================================================

def generate_token() -> str:
    """Generate a secure token (hex string)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """SHA-256 hash a token for secure storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def address_name(display_name: Optional[str], email: Optional[str]) -> str:
    """Name used to address the user; email local-part, else "there"."""
    if display_name and display_name.strip():
        return display_name.split()[0]
    if email:
        return email.split("@")[0]
    return "there"


@dataclass
class CurrentUser:
    """The authenticated caller, as seen by route handlers."""
    user_id: str
    session_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def first_name(self) -> str:
        return address_name(self.display_name, self.email)


async def create_session(db: AsyncSession, user_id: str, settings: Settings) -> str:
    """Create a session row and return the raw token (shown once)."""
    from app.models.models import AuthSession

    token = generate_token()
    now = utc_now()
    db.add(AuthSession(
        user_id=user_id,
        token_hash=hash_token(token),
        created_at=now,
        last_activity=now,
        expires_at=now + timedelta(hours=settings.session_ttl_hours),
    ))
    await db.flush()
    return token


# =============================================================================
# Authentication Dependencies
# =============================================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_bearer),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[CurrentUser]:
    """
    Resolve the current user from the session token.

    Sources (priority order):
    1. Authorization: Bearer <token>
    2. Session cookie
    """
    from app.models.models import AuthSession, User

    token = credentials.credentials if credentials else request.cookies.get(settings.session_cookie_name)
    if not token:
        return None

    result = await db.execute(
        select(AuthSession, User)
        .join(User, User.id == AuthSession.user_id)
        .where(AuthSession.token_hash == hash_token(token))
    )
    row = result.first()
    if row is None:
        return None

    session, user = row
    if session.revoked or to_utc(session.expires_at) <= utc_now():
        logger.info("Rejected expired or revoked session for user %s", user.id)
        return None

    session.last_activity = utc_now()
    return CurrentUser(
        user_id=user.id,
        session_id=session.id,
        email=user.email,
        display_name=user.display_name,
    )


async def require_user(
    user: Optional[CurrentUser] = Depends(get_current_user),
) -> CurrentUser:
    """Require an authenticated user."""
    if user:
        return user

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "auth_required",
            "message": "Authentication required. Create a session to continue.",
        },
    )


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self):
        self._requests: dict[str, list[float]] = defaultdict(list)

    def check(
        self,
        key: str,
        window_seconds: int = 60,
        max_requests: int = 100,
    ) -> tuple[bool, Optional[int]]:
        """
        Check if request is allowed.
        Returns: (allowed: bool, retry_after: Optional[int])
        """
        now = time.time()
        window_start = now - window_seconds

        self._requests[key] = [
            ts for ts in self._requests[key] if ts > window_start
        ]

        if len(self._requests[key]) >= max_requests:
            oldest_in_window = min(self._requests[key])
            retry_after = int(oldest_in_window + window_seconds - now) + 1
            return False, retry_after

        self._requests[key].append(now)
        return True, None

    def reset(self) -> None:
        self._requests.clear()


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create rate limiter singleton."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def rate_limit_dependency(
    key_prefix: str = "api",
    window: Optional[int] = None,
    max_requests: Optional[int] = None,
):
    """Create a per-IP rate limiting dependency."""
    async def check_rate_limit(
        request: Request,
        settings: Settings = Depends(get_settings),
    ):
        limiter = get_rate_limiter()
        client_ip = request.client.host if request.client else "unknown"
        key = f"{key_prefix}:{client_ip}:{request.url.path}"

        _window = window or settings.rate_limit_window
        _max = max_requests or settings.rate_limit_max_requests

        allowed, retry_after = limiter.check(key, _window, _max)

        if not allowed:
            logger.warning("Rate limit hit: %s from %s", key_prefix, client_ip)
            raise RateLimited(retry_after=retry_after)

    return check_rate_limit


def user_rate_limit(key_prefix: str, setting_name: str, window: int = 60):
    """
    Create a per-user rate limiting dependency.
    The allowance per window is read from the named setting.
    """
    async def check_user_rate_limit(
        user: CurrentUser = Depends(require_user),
        settings: Settings = Depends(get_settings),
    ) -> CurrentUser:
        max_requests = getattr(settings, setting_name)
        allowed, retry_after = get_rate_limiter().check(
            f"{key_prefix}:{user.user_id}", window, max_requests
        )
        if not allowed:
            logger.warning("Rate limit hit: %s for user %s", key_prefix, user.user_id)
            raise RateLimited(
                f"Too many {key_prefix} requests. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )
        return user

    return check_user_rate_limit


# =============================================================================
# Input Sanitization
# =============================================================================

def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename to prevent path traversal attacks.
    Removes path separators and dangerous characters.
    """
    if not filename:
        return ""

    filename = str(filename).replace("\\", "/")
    filename = filename.split("/")[-1]

    # Null bytes and control characters
    filename = re.sub(r"[\x00-\x1f\x7f]", "", filename)
    filename = re.sub(r'[<>:"|?*]', "", filename)
    filename = filename.strip(". ")

    if len(filename) > 255:
        filename = filename[:255]

    return filename
