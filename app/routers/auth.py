"""
Auth Router
Session-token authentication. A session is created with an optional email
and display name; the token is returned once and also set as a cookie.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.core.security import CurrentUser, create_session, rate_limit_dependency, require_user
from app.core.utc import utc_now
from app.models.models import AuthSession, User

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class SessionCreate(BaseModel):
    """Optional identity for the new user."""
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    display_name: Optional[str] = Field(None, max_length=100)


class SessionResponse(BaseModel):
    token: str
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    expires_in_hours: int


class MeResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    first_name: str


# =============================================================================
# Helpers
# =============================================================================

def _email_registered() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": "email_registered", "message": "This email already has an account."},
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "/session",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dependency("auth", window=60, max_requests=20))],
)
async def create_user_session(
    response: Response,
    body: Optional[SessionCreate] = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Create a user and a session for them.

    There are no passwords, so an email already registered cannot be
    claimed again; that user keeps using their existing session.
    """
    body = body or SessionCreate()
    email = body.email.strip().lower() if body.email else None
    if email:
        existing = (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none()
        if existing:
            raise _email_registered()

    user = User(email=email, display_name=body.display_name, last_login=utc_now())
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent request registered the same email first
        await db.rollback()
        raise _email_registered()
    logger.info("Created user %s", user.id)

    token = await create_session(db, user.id, settings)

    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=not settings.debug,
    )
    return SessionResponse(
        token=token,
        user_id=user.id,
        email=user.email,
        display_name=user.display_name,
        expires_in_hours=settings.session_ttl_hours,
    )


@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_session(
    response: Response,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Sign out: revoke the current session."""
    await db.execute(
        update(AuthSession).where(AuthSession.id == user.session_id).values(revoked=True)
    )
    response.delete_cookie(settings.session_cookie_name)
    logger.info("Revoked session for user %s", user.user_id)


@router.get("/me", response_model=MeResponse)
async def me(user: CurrentUser = Depends(require_user)):
    """The signed-in user."""
    return MeResponse(
        user_id=user.user_id,
        email=user.email,
        display_name=user.display_name,
        first_name=user.first_name,
    )
