"""
CaseCompass - Timeline Service
Extracts dated events from evidence and finds gaps in the resulting timeline.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.core.utc import parse_event_date
from app.models.models import Chunk, TimelineEvent
from app.services.ai_client import AIClient
from app.services.evidence import get_chunks

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = ["incident", "communication", "legal_action", "medical", "financial", "other"]
CONTEXT_CHARS = 500


# =============================================================================
# Extraction
# =============================================================================

def _build_prompt(full_text: str) -> str:
    return f"""You are a legal document analysis expert. Extract all significant dates, events, and timeline information from this document.

For each event, provide:
1. date (YYYY-MM-DD format, or estimate if unclear)
2. time (HH:MM format if mentioned)
3. title (2-6 words)
4. description (1-2 sentences)
5. category ({", ".join(EVENT_CATEGORIES)})
6. confidence (0.1-1.0 based on how certain the date/event is)

Focus on:
- Specific incidents or events
- Communications (calls, emails, meetings)
- Legal actions (court dates, filings, notices)
- Medical appointments or treatments
- Financial transactions
- Any dated interactions between parties

Return a JSON object {{"events": [...]}}. Only include events with clear temporal information.

Document text:
{full_text}"""


def find_source_chunk(chunks: list[Chunk], title: str, description: str) -> Chunk:
    """First chunk mentioning the event's title or description, else the first chunk."""
    title = (title or "").lower()
    description = (description or "").lower()
    for chunk in chunks:
        text = chunk.text.lower()
        if (title and title in text) or (description and description in text):
            return chunk
    return chunks[0]


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.5
    return max(0.1, min(1.0, confidence))


async def extract_timeline(db: AsyncSession, ai: AIClient, user_id: str, file_id: str) -> dict:
    """
    Extract timeline events from a file's chunks and store them.
    Returns {"extracted", "inserted", "events"}.
    """
    chunks = await get_chunks(db, file_id)
    if not chunks:
        raise NotFoundError("No chunks found for file", details={"file_id": file_id})

    full_text = "\n\n".join(c.text for c in chunks)
    data = await ai.chat_json(
        [{"role": "user", "content": _build_prompt(full_text)}],
        task="timeline_extraction",
        max_tokens=3000,
    )
    events = data.get("events") or []
    if not isinstance(events, list):
        events = []
    logger.info("Extracted %d timeline events from file %s", len(events), file_id)

    inserted = []
    for event in events:
        if not isinstance(event, dict):
            continue
        event_date = parse_event_date(event.get("date"))
        if event_date is None:
            logger.warning("Skipping event with invalid date: %r", event.get("date"))
            continue

        title = str(event.get("title") or "Untitled event")[:255]
        description = str(event.get("description") or "")
        category = event.get("category") if event.get("category") in EVENT_CATEGORIES else "other"
        source = find_source_chunk(chunks, title, description)

        db.add(TimelineEvent(
            user_id=user_id,
            file_id=file_id,
            chunk_id=source.id,
            event_date=event_date,
            event_time=(str(event["time"])[:8] if event.get("time") else None),
            title=title,
            description=description,
            context=source.text[:CONTEXT_CHARS],
            confidence=_clamp_confidence(event.get("confidence")),
            category=category,
            verified=False,
        ))
        inserted.append({
            "date": event_date.isoformat(),
            "time": event.get("time"),
            "title": title,
            "description": description,
            "category": category,
            "confidence": _clamp_confidence(event.get("confidence")),
        })

    await db.flush()
    return {"extracted": len(events), "inserted": len(inserted), "events": inserted}


# =============================================================================
# Gap Analysis
# =============================================================================

RECOMMENDED_CATEGORIES = {
    "custody": ["child_welfare", "communication", "medical", "incident"],
    "avo": ["incident", "threat", "coercive_control", "communication"],
    "divorce": ["financial", "property", "communication", "incident"],
    "default": ["communication", "incident", "document"],
}


def recommended_categories(goal: Optional[str]) -> list[str]:
    """Evidence categories worth collecting for a goal."""
    if not goal:
        return RECOMMENDED_CATEGORIES["default"]
    goal = goal.lower()
    if "custody" in goal:
        return RECOMMENDED_CATEGORIES["custody"]
    if "avo" in goal or "violence" in goal:
        return RECOMMENDED_CATEGORIES["avo"]
    if "divorce" in goal or "separation" in goal:
        return RECOMMENDED_CATEGORIES["divorce"]
    return RECOMMENDED_CATEGORIES["default"]


def gap_severity(days: int) -> str:
    if days > 90:
        return "high"
    if days > 60:
        return "medium"
    return "low"


def category_strength(count: int, total: int) -> str:
    percentage = count / total * 100 if total else 0
    if percentage > 30:
        return "strong"
    if percentage > 15:
        return "moderate"
    return "weak"


@dataclass
class DatedItem:
    event_date: date
    category: str


def analyze_gaps(events: Iterable[Any], goal: Optional[str] = None, gap_days: Optional[int] = None) -> dict:
    """
    Find stretches without evidence and weakly covered categories.

    Events need `event_date` (date) and `category` attributes.
    """
    gap_days = get_settings().timeline_gap_days if gap_days is None else gap_days
    items = sorted(events, key=lambda e: e.event_date)
    if not items:
        return {"gaps": [], "category_density": {}, "missing_categories": [], "total_events": 0}

    suggested = recommended_categories(goal)

    gaps = []
    for current, following in zip(items, items[1:]):
        days = (following.event_date - current.event_date).days
        if days > gap_days:
            gaps.append({
                "start": current.event_date.isoformat(),
                "end": following.event_date.isoformat(),
                "days": days,
                "severity": gap_severity(days),
                "suggested_categories": suggested,
            })

    counts: dict[str, int] = {}
    for item in items:
        counts[item.category] = counts.get(item.category, 0) + 1

    total = len(items)
    density = {
        category: {"count": count, "strength": category_strength(count, total)}
        for category, count in counts.items()
    }
    missing = [c for c in suggested if counts.get(c, 0) < 2]

    return {
        "gaps": gaps,
        "category_density": density,
        "missing_categories": missing,
        "total_events": total,
    }
