"""
CaseCompass - Legal Knowledge Search
Keyword, concept ("semantic") and hybrid search over the shared NSW legal library,
with a result cache keyed by query hash.
"""

import hashlib
import logging
import re
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import insert_ignoring_conflict
from app.core.utc import utc_now
from app.models.models import LegalSearchCache, LegalSection

logger = logging.getLogger(__name__)

SEARCH_TYPES = ("keyword", "semantic", "hybrid")
MAX_RESULTS = 8
CANDIDATES_PER_STRATEGY = 10
EXCERPT_CHARS = 500

_WORD = re.compile(r"[a-z0-9]+")


def query_terms(query: str, min_length: int = 3) -> list[str]:
    """Lowercased distinct words of at least min_length characters, in order."""
    seen = []
    for word in _WORD.findall(query.lower()):
        if len(word) >= min_length and word not in seen:
            seen.append(word)
    return seen


def cache_key(query: str, search_type: str, jurisdiction: str) -> str:
    return hashlib.sha256(f"{query}\x1f{search_type}\x1f{jurisdiction}".encode()).hexdigest()


async def keyword_search(db: AsyncSession, query: str, jurisdiction: str, limit: int = CANDIDATES_PER_STRATEGY) -> list[LegalSection]:
    """Sections whose title or content mention any query term, best match first."""
    terms = query_terms(query)
    if not terms:
        return []

    conditions = []
    for term in terms:
        pattern = f"%{term}%"
        conditions.append(LegalSection.title.ilike(pattern))
        conditions.append(LegalSection.content.ilike(pattern))

    result = await db.execute(
        select(LegalSection).where(
            LegalSection.user_id.is_(None),
            LegalSection.jurisdiction == jurisdiction,
            or_(*conditions),
        )
    )
    sections = list(result.scalars().all())

    def hits(section: LegalSection) -> int:
        haystack = f"{section.title} {section.content}".lower()
        return sum(1 for term in terms if term in haystack)

    sections.sort(key=lambda s: (-hits(s), s.created_at))
    return sections[:limit]


async def concept_search(db: AsyncSession, query: str, jurisdiction: str, limit: int = CANDIDATES_PER_STRATEGY) -> list[LegalSection]:
    """Sections whose legal concepts contain a query word longer than two characters."""
    terms = query_terms(query)
    if not terms:
        return []

    result = await db.execute(
        select(LegalSection).where(
            LegalSection.user_id.is_(None),
            LegalSection.jurisdiction == jurisdiction,
        ).order_by(LegalSection.created_at)
    )
    matches = []
    for section in result.scalars().all():
        concepts = " | ".join(str(c).lower() for c in (section.legal_concepts or []))
        if any(term in concepts for term in terms):
            matches.append(section)
            if len(matches) >= limit:
                break
    return matches


def format_result(section: LegalSection, rank: int, search_type: str) -> dict:
    return {
        "id": section.id,
        "section_number": section.section_number,
        "title": section.title,
        "content": section.content[:EXCERPT_CHARS] + "...",
        "full_content": section.content,
        "citation_reference": section.citation_format,
        "act_title": section.act_title,
        "legal_concepts": section.legal_concepts or [],
        "jurisdiction": section.jurisdiction,
        "relevance_score": round(1.0 - rank * 0.1, 2),
        "search_type": search_type,
    }


async def store_results(db: AsyncSession, key: str, query: str, search_type: str, results: list) -> bool:
    """
    Insert a cache row unless one with the same hash exists.
    Returns False when an identical search stored it first.
    """
    values = {"query_hash": key, "query_text": query, "search_type": search_type, "results": results, "hit_count": 0}
    return await insert_ignoring_conflict(db, LegalSearchCache, values, ["query_hash"])


async def search_legal(
    db: AsyncSession,
    query: str,
    search_type: str = "hybrid",
    jurisdiction: Optional[str] = None,
) -> dict:
    """Run a cached legal search. Returns {results, cached, search_type, total_results}."""
    jurisdiction = jurisdiction or get_settings().default_jurisdiction
    if search_type not in SEARCH_TYPES:
        search_type = "hybrid"

    key = cache_key(query, search_type, jurisdiction)
    cached = (await db.execute(
        select(LegalSearchCache).where(LegalSearchCache.query_hash == key)
    )).scalar_one_or_none()
    if cached is not None:
        cached.hit_count = (cached.hit_count or 0) + 1
        cached.last_accessed = utc_now()
        await db.flush()
        logger.debug("Legal search cache hit for %r", query)
        return {
            "results": cached.results,
            "cached": True,
            "search_type": search_type,
            "total_results": len(cached.results),
        }

    found: list[LegalSection] = []
    if search_type in ("keyword", "hybrid"):
        found.extend(await keyword_search(db, query, jurisdiction))
    if search_type in ("semantic", "hybrid"):
        existing = {s.id for s in found}
        found.extend(s for s in await concept_search(db, query, jurisdiction) if s.id not in existing)

    results = [format_result(s, i, search_type) for i, s in enumerate(found[:MAX_RESULTS])]

    if not await store_results(db, key, query, search_type, results):
        logger.debug("Legal search %r was cached by a concurrent request", query)

    logger.info("Legal search %r (%s): %d results", query, search_type, len(results))
    return {"results": results, "cached": False, "search_type": search_type, "total_results": len(results)}


async def invalidate_search_cache(db: AsyncSession) -> None:
    """Drop cached results; called whenever the shared library changes."""
    await db.execute(delete(LegalSearchCache))
