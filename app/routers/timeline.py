"""
Timeline Router
Dated events extracted from evidence or entered by hand, and gap analysis.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.errors import NotFoundError
from app.core.security import CurrentUser, require_user, user_rate_limit
from app.models.models import TimelineEvent
from app.services.ai_client import AIClient, get_ai_client
from app.services.evidence import get_file
from app.services.memory import get_case_memory, refresh_timeline_summary
from app.services.timeline import EVENT_CATEGORIES, analyze_gaps, extract_timeline

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class TimelineEventCreate(BaseModel):
    """A manually recorded event."""
    event_date: date
    event_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: str = "other"

    @field_validator("category")
    @classmethod
    def known_category(cls, v: str) -> str:
        return v if v in EVENT_CATEGORIES else "other"


class TimelineEventUpdate(BaseModel):
    event_date: Optional[date] = None
    event_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    verified: Optional[bool] = None


class TimelineEventResponse(BaseModel):
    id: str
    file_id: Optional[str] = None
    chunk_id: Optional[str] = None
    event_date: str
    event_time: Optional[str] = None
    title: str
    description: Optional[str] = None
    context: Optional[str] = None
    category: str
    confidence: float
    verified: bool


class TimelineListResponse(BaseModel):
    events: list[TimelineEventResponse]
    total: int


# =============================================================================
# Helpers
# =============================================================================

def _model_to_response(event: TimelineEvent) -> TimelineEventResponse:
    return TimelineEventResponse(
        id=event.id,
        file_id=event.file_id,
        chunk_id=event.chunk_id,
        event_date=event.event_date.isoformat(),
        event_time=event.event_time,
        title=event.title,
        description=event.description,
        context=event.context,
        category=event.category or "other",
        confidence=event.confidence if event.confidence is not None else 0.5,
        verified=bool(event.verified),
    )


async def _get_event(db: AsyncSession, event_id: str, user_id: str) -> TimelineEvent:
    event = (await db.execute(
        select(TimelineEvent).where(TimelineEvent.id == event_id, TimelineEvent.user_id == user_id)
    )).scalar_one_or_none()
    if event is None:
        raise NotFoundError("Timeline event not found", details={"event_id": event_id})
    return event


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=TimelineListResponse)
async def list_events(
    start_date: Optional[date] = Query(None, description="Earliest event date (inclusive)"),
    end_date: Optional[date] = Query(None, description="Latest event date (inclusive)"),
    category: Optional[str] = None,
    verified: Optional[bool] = None,
    file_id: Optional[str] = None,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Your timeline in date order, optionally filtered."""
    query = select(TimelineEvent).where(TimelineEvent.user_id == user.user_id)
    if start_date:
        query = query.where(TimelineEvent.event_date >= start_date)
    if end_date:
        query = query.where(TimelineEvent.event_date <= end_date)
    if category:
        query = query.where(TimelineEvent.category == category)
    if verified is not None:
        query = query.where(TimelineEvent.verified == verified)
    if file_id:
        query = query.where(TimelineEvent.file_id == file_id)

    events = (await db.execute(
        query.order_by(TimelineEvent.event_date, TimelineEvent.event_time, TimelineEvent.created_at)
    )).scalars().all()
    return TimelineListResponse(events=[_model_to_response(e) for e in events], total=len(events))


@router.post("", response_model=TimelineEventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    body: TimelineEventCreate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Record an event by hand. Manual events count as verified."""
    event = TimelineEvent(
        user_id=user.user_id,
        event_date=body.event_date,
        event_time=body.event_time,
        title=body.title,
        description=body.description,
        category=body.category,
        confidence=1.0,
        verified=True,
    )
    db.add(event)
    await db.flush()
    await refresh_timeline_summary(db, user.user_id)
    return _model_to_response(event)


@router.get("/gaps")
async def timeline_gaps(
    gap_days: Optional[int] = Query(None, ge=1, le=365),
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Stretches of time with no evidence, and categories that need more.

    Suggestions follow your primary goal when one is set.
    """
    events = (await db.execute(
        select(TimelineEvent).where(TimelineEvent.user_id == user.user_id)
    )).scalars().all()
    memory = await get_case_memory(db, user.user_id)
    return analyze_gaps(events, memory.primary_goal if memory else None, gap_days)


@router.post("/extract/{file_id}")
async def extract_events(
    file_id: str,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Extract timeline events from one of your files."""
    await get_file(db, file_id, user.user_id)
    result = await extract_timeline(db, ai, user.user_id, file_id)
    await refresh_timeline_summary(db, user.user_id)
    return result


@router.patch("/{event_id}", response_model=TimelineEventResponse)
async def update_event(
    event_id: str,
    body: TimelineEventUpdate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Correct an event's details."""
    event = await _get_event(db, event_id, user.user_id)
    changes = body.model_dump(exclude_unset=True)
    if "category" in changes and changes["category"] not in EVENT_CATEGORIES:
        changes["category"] = "other"
    for field, value in changes.items():
        if value is not None or field in ("event_time", "description"):
            setattr(event, field, value)
    await db.flush()
    await refresh_timeline_summary(db, user.user_id)
    return _model_to_response(event)


@router.post("/{event_id}/verify", response_model=TimelineEventResponse)
async def verify_event(
    event_id: str,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Confirm an extracted event is accurate."""
    event = await _get_event(db, event_id, user.user_id)
    event.verified = True
    await db.flush()
    return _model_to_response(event)


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(
    event_id: str,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Remove an event."""
    event = await _get_event(db, event_id, user.user_id)
    await db.delete(event)
    await db.flush()
    await refresh_timeline_summary(db, user.user_id)
