"""
Legal Router
The NSW legal knowledge base: add sections, list them and search them.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.core.security import CurrentUser, require_user
from app.models.models import LegalSection
from app.services.legal_search import invalidate_search_cache, search_legal

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class LegalSectionCreate(BaseModel):
    """
    A section of legislation or guidance.

    `global` sections join the shared library used by search, analysis and
    the assistant. `personal` sections are visible to you alone.
    """
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    act_title: Optional[str] = Field(None, max_length=255)
    section_number: Optional[str] = Field(None, max_length=30)
    citation_format: Optional[str] = Field(None, max_length=255)
    legal_concepts: list[str] = Field(default_factory=list)
    jurisdiction: Optional[str] = Field(None, max_length=20)
    scope: Literal["global", "personal"] = "global"


class LegalSectionResponse(BaseModel):
    id: str
    scope: str
    jurisdiction: str
    act_title: Optional[str] = None
    section_number: Optional[str] = None
    title: str
    content: str
    citation_format: Optional[str] = None
    legal_concepts: list[str] = []


class LegalSectionListResponse(BaseModel):
    sections: list[LegalSectionResponse]
    total: int


class LegalSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)
    search_type: Literal["keyword", "semantic", "hybrid"] = "hybrid"
    jurisdiction: Optional[str] = Field(None, max_length=20)


# =============================================================================
# Helpers
# =============================================================================

def _model_to_response(section: LegalSection) -> LegalSectionResponse:
    return LegalSectionResponse(
        id=section.id,
        scope="personal" if section.user_id else "global",
        jurisdiction=section.jurisdiction,
        act_title=section.act_title,
        section_number=section.section_number,
        title=section.title,
        content=section.content,
        citation_format=section.citation_format,
        legal_concepts=section.legal_concepts or [],
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/sections", response_model=LegalSectionResponse, status_code=status.HTTP_201_CREATED)
async def add_section(
    body: LegalSectionCreate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Add a legal section. Adding to the shared library clears cached searches."""
    section = LegalSection(
        user_id=user.user_id if body.scope == "personal" else None,
        jurisdiction=body.jurisdiction or get_settings().default_jurisdiction,
        act_title=body.act_title,
        section_number=body.section_number,
        title=body.title.strip(),
        content=body.content,
        citation_format=body.citation_format,
        legal_concepts=[c.strip().lower() for c in body.legal_concepts if c.strip()],
    )
    db.add(section)
    await db.flush()

    if section.user_id is None:
        await invalidate_search_cache(db)
    logger.info("Added %s legal section %s (%s)", body.scope, section.id, section.title)
    return _model_to_response(section)


@router.get("/sections", response_model=LegalSectionListResponse)
async def list_sections(
    jurisdiction: Optional[str] = None,
    scope: Optional[Literal["global", "personal"]] = None,
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Shared sections plus your personal ones."""
    query = select(LegalSection)
    if scope == "global":
        query = query.where(LegalSection.user_id.is_(None))
    elif scope == "personal":
        query = query.where(LegalSection.user_id == user.user_id)
    else:
        query = query.where(or_(LegalSection.user_id.is_(None), LegalSection.user_id == user.user_id))
    if jurisdiction:
        query = query.where(LegalSection.jurisdiction == jurisdiction)

    sections = (await db.execute(
        query.order_by(LegalSection.act_title, LegalSection.section_number, LegalSection.created_at).limit(limit)
    )).scalars().all()
    return LegalSectionListResponse(sections=[_model_to_response(s) for s in sections], total=len(sections))


@router.post("/search")
async def search(
    body: LegalSearchRequest,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Search the shared library. Results are cached until the library changes."""
    return await search_legal(db, body.query.strip(), body.search_type, body.jurisdiction)
