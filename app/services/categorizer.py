"""
CaseCompass - Evidence Categorizer
Assigns a document category, tags and a one-line description to a file.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utc import utc_now_iso
from app.services.ai_client import AIClient
from app.services.evidence import get_chunks, get_file

logger = logging.getLogger(__name__)

CATEGORIES = [
    "police_report",
    "medical_record",
    "financial_document",
    "court_document",
    "correspondence",
    "incident_report",
    "evidence_photo",
    "witness_statement",
    "legal_notice",
    "other",
]

SAMPLE_CHUNKS = 3
SAMPLE_CHARS = 2000


def _build_prompt(name: str, mime_type: str, sample: str) -> str:
    return f"""Analyze this legal document and provide categorization:

File name: {name}
File type: {mime_type}
Sample content: {sample}

Based on the content, provide:
1. Primary category from: {", ".join(CATEGORIES)}
2. Suggested tags (array of 2-5 relevant keywords)
3. Brief description (1 sentence explaining what this document contains)

Return JSON with: category, tags, description"""


def normalize_categorization(data: dict[str, Any]) -> dict:
    """Coerce model output onto the allowed category set and tag bounds."""
    category = str(data.get("category") or "other").strip().lower()
    if category not in CATEGORIES:
        category = "other"

    raw_tags = data.get("tags") or []
    if isinstance(raw_tags, str):
        raw_tags = [t for t in raw_tags.split(",")]
    tags = [str(t).strip().lower() for t in raw_tags if str(t).strip()][:5]

    return {
        "category": category,
        "tags": tags,
        "description": str(data.get("description") or "").strip(),
    }


async def categorize_file(db: AsyncSession, ai: AIClient, file_id: str, user_id: str | None = None) -> dict:
    """Categorize a file from its first chunks and store the result on the file."""
    file = await get_file(db, file_id, user_id)
    chunks = await get_chunks(db, file_id, limit=SAMPLE_CHUNKS)
    sample = "\n\n".join(c.text for c in chunks)[:SAMPLE_CHARS]

    data = await ai.chat_json(
        [{"role": "user", "content": _build_prompt(file.name, file.mime_type or "unknown", sample)}],
        task="categorization",
        max_tokens=1000,
    )
    result = normalize_categorization(data)

    file.auto_category = result["category"]
    file.tags = result["tags"]
    file.meta = {
        **(file.meta or {}),
        "ai_description": result["description"],
        "categorized_at": utc_now_iso(),
    }
    await db.flush()

    logger.info("Categorized file %s as %s", file_id, result["category"])
    return result
