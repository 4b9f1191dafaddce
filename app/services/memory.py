"""
CaseCompass - Case Memory
Per-user case memory: evidence index with exhibit codes, chunk embeddings,
hierarchical file summaries, rolling thread summary and proactive context triggers.
"""

import asyncio
import logging
import re
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import insert_ignoring_conflict
from app.core.errors import AIServiceError, ValidationFailed
from app.core.utc import to_utc, utc_now
from app.models.models import CaseMemory, EvidenceFile, TimelineEvent
from app.services.ai_client import AIClient
from app.services.case_strength import analyze_case_strength, strength_reasons
from app.services.evidence import get_chunks, get_file, list_processed_files

logger = logging.getLogger(__name__)

SUMMARY_INPUT_CHARS = 8000
FILE_SUMMARY_CHARS = 100
THREAD_SUMMARY_CHARS = 120
TIMELINE_SUMMARY_EVENTS = 50


# =============================================================================
# Case Memory Row
# =============================================================================

async def get_case_memory(db: AsyncSession, user_id: str) -> Optional[CaseMemory]:
    result = await db.execute(select(CaseMemory).where(CaseMemory.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_case_memory(db: AsyncSession, user_id: str) -> CaseMemory:
    """
    Case memory is one row per user, created on first write. Pipeline steps
    run concurrently, so creation tolerates another step creating it first.
    """
    memory = await get_case_memory(db, user_id)
    if memory is None:
        await insert_ignoring_conflict(db, CaseMemory, {"user_id": user_id}, ["user_id"])
        memory = await get_case_memory(db, user_id)
    return memory


def upsert_evidence_entry(index: list, entry: dict) -> list:
    """
    Return a new evidence index with entry merged in by file_id.
    Fields from an existing entry for the same file are kept unless overwritten.
    """
    previous = next((e for e in index if e.get("file_id") == entry["file_id"]), {})
    others = [e for e in index if e.get("file_id") != entry["file_id"]]
    return [*others, {**previous, **entry}]


async def forget_file(db: AsyncSession, user_id: str, file_id: str) -> None:
    """Drop a deleted file from the evidence index and the compact timeline."""
    memory = await get_case_memory(db, user_id)
    if memory is None:
        return
    memory.evidence_index = [e for e in memory.evidence_index or [] if e.get("file_id") != file_id]
    await refresh_timeline_summary(db, user_id)


# =============================================================================
# Exhibit Codes
# =============================================================================

def exhibit_code(position: int) -> str:
    """
    0-based position to a spreadsheet-style label: 0 -> A, 25 -> Z, 26 -> AA.
    """
    if position < 0:
        raise ValueError("position must be non-negative")
    label = ""
    n = position + 1
    while n:
        n, remainder = divmod(n - 1, 26)
        label = chr(65 + remainder) + label
    return label


def choose_exhibit_code(index: list, file_id: str, position: int) -> str:
    """
    A file keeps the code it already holds in the evidence index. Otherwise
    it takes the code for its upload position, or the lowest free code when
    another file holds that one (after a deletion).
    """
    held = {e["exhibit_code"]: e.get("file_id") for e in index if e.get("exhibit_code")}
    for code, owner in held.items():
        if owner == file_id:
            return code

    code = exhibit_code(position)
    if code not in held:
        return code
    position = 0
    while exhibit_code(position) in held:
        position += 1
    return exhibit_code(position)


async def assign_exhibit_code(db: AsyncSession, file: EvidenceFile, index: list) -> str:
    """Exhibit code for a file from its upload position and the codes already in use."""
    files = await list_processed_files(db, file.user_id)
    ids = [f.id for f in files]
    position = ids.index(file.id) if file.id in ids else len(ids)
    return choose_exhibit_code(index, file.id, position)


# =============================================================================
# Embeddings & Summaries
# =============================================================================

SUMMARY_SYSTEM_PROMPT = """Create hierarchical summaries for this legal evidence file. Generate:
1. A one-line file summary (max 100 chars)
2. Section summaries for logical divisions in the text

Focus on:
- Key dates, events, and people
- Legal significance and evidence value
- Patterns of behavior or communication
- Timeline markers and chronological events

Return JSON format: {"file_summary": "...", "section_summaries": [{"title": "...", "content": "...", "page_range": "1-2"}]}"""


def fallback_summaries(file_name: str, text: str) -> dict:
    return {
        "file_summary": f"Evidence file: {file_name}"[:FILE_SUMMARY_CHARS],
        "section_summaries": [{"title": "Document Content", "content": text[:200], "page_range": "1"}],
    }


async def summarize_file(ai: AIClient, file_name: str, text: str) -> dict:
    """Hierarchical summary of a file; falls back to a stub on unusable model output."""
    try:
        data = await ai.chat_json(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": f"File: {file_name}\n\nContent: {text[:SUMMARY_INPUT_CHARS]}..."},
            ],
            task="evidence_processing",
            max_tokens=1000,
        )
    except AIServiceError as e:
        logger.warning("Summary generation failed for %s: %s", file_name, e.message)
        return fallback_summaries(file_name, text)

    sections = data.get("section_summaries")
    if not isinstance(data.get("file_summary"), str) or not isinstance(sections, list):
        return fallback_summaries(file_name, text)

    return {
        "file_summary": data["file_summary"][:FILE_SUMMARY_CHARS],
        "section_summaries": [
            {
                "title": str(s.get("title") or "Section"),
                "content": str(s.get("content") or ""),
                "page_range": str(s.get("page_range") or "1"),
            }
            for s in sections
            if isinstance(s, dict)
        ],
    }


async def embed_chunks(db: AsyncSession, ai: AIClient, chunks: list) -> int:
    """Embed chunks concurrently; failures are logged and skipped. Returns success count."""

    async def _embed(chunk):
        try:
            return chunk, await ai.embed(chunk.text)
        except AIServiceError as e:
            logger.warning("Embedding failed for chunk %s: %s", chunk.id, e.message)
            return chunk, None

    results = await asyncio.gather(*(_embed(c) for c in chunks))
    embedded = 0
    for chunk, vector in results:
        if vector:
            chunk.embedding = vector
            embedded += 1
    await db.flush()
    return embedded


async def process_file_memory(db: AsyncSession, ai: AIClient, file_id: str) -> dict:
    """
    Embed a file's chunks, summarize it, assign its exhibit code and
    record it in the owner's evidence index.
    """
    file = await get_file(db, file_id)
    chunks = await get_chunks(db, file_id)
    if not chunks:
        raise ValidationFailed("No chunks found", details={"file_id": file_id})

    logger.info("Memory processing %d chunks for file %s", len(chunks), file_id)
    embedded = await embed_chunks(db, ai, chunks)

    full_text = "\n".join(c.text for c in chunks)
    summaries = await summarize_file(ai, file.name, full_text)
    memory = await get_or_create_case_memory(db, file.user_id)
    code = await assign_exhibit_code(db, file, memory.evidence_index or [])

    file.file_summary = summaries["file_summary"]
    file.section_summaries = summaries["section_summaries"]
    file.exhibit_code = code

    memory.evidence_index = upsert_evidence_entry(memory.evidence_index or [], {
        "file_id": file.id,
        "exhibit_code": code,
        "file_name": file.name,
        "summary": summaries["file_summary"],
        "uploaded_date": file.created_at.isoformat() if file.created_at else None,
        "sections_count": len(summaries["section_summaries"]),
    })
    memory.last_updated_at = utc_now()
    await db.flush()

    logger.info("File %s indexed as Exhibit %s", file_id, code)
    return {
        "success": True,
        "embeddings_generated": embedded,
        "exhibit_code": code,
        "file_summary": summaries["file_summary"],
        "sections_count": len(summaries["section_summaries"]),
    }


# =============================================================================
# Thread & Timeline Summaries
# =============================================================================

def roll_thread_summary(current: Optional[str], text: str, today: Optional[date] = None) -> str:
    """Keep the last three sentences, append a dated entry, cap the length."""
    today = today or utc_now().date()
    parts = [p for p in (current or "").split(". ") if p][-3:]
    entry = f"{today.isoformat()}: {text[:50]}..."
    return ". ".join([*parts, entry])[:THREAD_SUMMARY_CHARS]


async def update_thread_summary(db: AsyncSession, user_id: str, text: str) -> str:
    memory = await get_or_create_case_memory(db, user_id)
    memory.thread_summary = roll_thread_summary(memory.thread_summary, text)
    memory.last_updated_at = utc_now()
    await db.flush()
    return memory.thread_summary


async def refresh_timeline_summary(db: AsyncSession, user_id: str) -> list:
    """Rewrite the memory's compact timeline from the latest stored events."""
    result = await db.execute(
        select(TimelineEvent)
        .where(TimelineEvent.user_id == user_id)
        .order_by(TimelineEvent.event_date.desc())
        .limit(TIMELINE_SUMMARY_EVENTS)
    )
    events = sorted(result.scalars().all(), key=lambda e: e.event_date)
    summary = [
        {
            "date": e.event_date.isoformat(),
            "title": e.title,
            "fact": (e.description or "")[:200],
            "category": e.category,
        }
        for e in events
    ]
    memory = await get_or_create_case_memory(db, user_id)
    memory.timeline_summary = summary
    memory.last_updated_at = utc_now()
    await db.flush()
    return summary


# =============================================================================
# Proactive Triggers
# =============================================================================

DATE_PATTERN = re.compile(r"\b(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})\b")
PERSON_PATTERN = re.compile(r"\b([A-Z][a-z]+\s+[A-Z][a-z]+)\b")


def normalize_mentioned_date(raw: str) -> Optional[str]:
    """
    Turn a date typed by the user into YYYY-MM-DD.
    Day-first order for D/M/Y, as written in Australia.
    """
    parts = re.split(r"[/\-.]", raw)
    try:
        if len(parts[0]) == 4:
            year, month, day = (int(p) for p in parts)
        else:
            day, month, year = (int(p) for p in parts)
            if year < 100:
                year += 2000
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def timeline_context(query_text: str, timeline_summary: list) -> str:
    mentioned = DATE_PATTERN.findall(query_text)
    if not mentioned or not timeline_summary:
        return ""

    wanted = {d for d in (normalize_mentioned_date(m) for m in mentioned) if d}
    matches = [
        e for e in timeline_summary
        if e.get("date") in wanted or any(m in (e.get("title") or "").lower() for m in mentioned)
    ]
    if not matches:
        return ""

    lines = [f"TIMELINE CONTEXT for {', '.join(mentioned)}:"]
    lines += [f"{i}. {e.get('date')}: {e.get('title')} - {e.get('fact', '')}" for i, e in enumerate(matches, start=1)]
    return "\n".join(lines) + "\n"


def person_appearances(query_text: str, context_blocks: list[str]) -> str:
    people = list(dict.fromkeys(PERSON_PATTERN.findall(query_text)))
    if not people or not context_blocks:
        return ""

    sections = []
    for person in people:
        appearances = [
            (index, block[:200] + "...")
            for index, block in enumerate(context_blocks, start=1)
            if person.lower() in block.lower()
        ]
        if not appearances:
            continue
        lines = [f"{person.upper()} APPEARANCES:"]
        lines += [f"{i}. Citation {idx}: {excerpt}" for i, (idx, excerpt) in enumerate(appearances[-3:], start=1)]
        sections.append("\n".join(lines))
    return "\n\n".join(sections) + "\n" if sections else ""


async def _strength_change(db: AsyncSession, memory: Optional[CaseMemory], user_id: str) -> str:
    if memory is None:
        return ""
    current = await analyze_case_strength(db, user_id)
    stored = memory.case_strength_score or 0
    diff = current["case_strength_score"] - stored
    if abs(diff) <= 3:
        return ""

    memory.case_strength_score = current["case_strength_score"]
    memory.case_strength_reasons = strength_reasons(current)
    await db.flush()

    sign = "+" if diff > 0 else "-"
    text = f"CASE STRENGTH UPDATE: {current['case_strength_score']}% ({sign}{round(abs(diff))})"
    boosters = current["strategic_next_steps"][:3]
    if boosters:
        text += "\nBoosters: " + ", ".join(f"({i}) {step}" for i, step in enumerate(boosters, start=1))
    return text + "\n"


async def _evidence_announcement(db: AsyncSession, user_id: str) -> str:
    window = timedelta(minutes=get_settings().proactive_window_minutes)
    result = await db.execute(
        select(EvidenceFile)
        .where(EvidenceFile.user_id == user_id, EvidenceFile.status == "processed")
        .order_by(EvidenceFile.created_at.desc())
        .limit(1)
    )
    recent = result.scalar_one_or_none()
    if recent is None or utc_now() - to_utc(recent.created_at) >= window:
        return ""

    events = (await db.execute(
        select(TimelineEvent.id).where(TimelineEvent.file_id == recent.id)
    )).scalars().all()
    description = (recent.meta or {}).get("ai_description") or recent.file_summary or ""
    text = f'NEW EVIDENCE INDEXED: Just processed "{recent.name}"'
    if recent.exhibit_code:
        text += f" (Exhibit {recent.exhibit_code})"
    text += f" and found {len(events)} timeline events."
    if description:
        text += f" {description}"
    return text + "\n"


async def proactive_triggers(
    db: AsyncSession,
    user_id: str,
    query_text: str,
    context_blocks: Optional[list[str]] = None,
) -> dict:
    """Context the assistant should volunteer for this query."""
    memory = await get_case_memory(db, user_id)
    return {
        "timeline_context": timeline_context(query_text, (memory.timeline_summary if memory else None) or []),
        "person_appearances": person_appearances(query_text, context_blocks or []),
        "case_strength_change": await _strength_change(db, memory, user_id),
        "evidence_announcement": await _evidence_announcement(db, user_id),
    }


def memory_to_dict(memory: CaseMemory) -> dict:
    def iso(value: Optional[datetime]) -> Optional[str]:
        return to_utc(value).isoformat() if value else None

    return {
        "user_id": memory.user_id,
        "primary_goal": memory.primary_goal,
        "goal_status": memory.goal_status,
        "goal_established_at": iso(memory.goal_established_at),
        "active_case_plan_id": memory.active_case_plan_id,
        "evidence_index": memory.evidence_index or [],
        "case_strength_score": memory.case_strength_score,
        "case_strength_reasons": memory.case_strength_reasons or {},
        "thread_summary": memory.thread_summary,
        "timeline_summary": memory.timeline_summary or [],
        "parties": memory.parties or [],
        "issues": memory.issues or [],
        "facts": memory.facts,
        "last_activity_type": memory.last_activity_type,
        "last_updated_at": iso(memory.last_updated_at),
    }
