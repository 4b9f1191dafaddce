"""
CaseCompass - Evidence Legal Analyzer
Runs typed legal analyses over an evidence file and links it to NSW legal sections.

Analysis types:
- legal_relevance    what the evidence supports or contradicts
- case_strength      evidentiary weight, admissibility, corroboration
- timeline_extraction  chronology and escalation
- pattern_detection  coercive control and other behavioural patterns
"""

import json
import logging
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import AIServiceError, ValidationFailed
from app.models.models import EvidenceAnalysis, EvidenceLegalConnection, LegalSection
from app.services.ai_client import AIClient
from app.services.evidence import get_chunks, get_file

logger = logging.getLogger(__name__)

ANALYSIS_TEXT_CHARS = 4000
CONNECTION_TEXT_CHARS = 2000
SECTION_EXCERPT_CHARS = 500
CONNECTION_TYPES = {"supports", "contradicts", "explains", "precedent", "requirement"}

ANALYST_SYSTEM_PROMPT = (
    "You are a legal analyst specializing in NSW family law and domestic violence cases. "
    "Provide thorough, accurate analysis in the requested JSON format."
)

CONNECTOR_SYSTEM_PROMPT = (
    "You are a legal analyst specializing in connecting evidence to relevant laws. "
    "Be precise and only identify strong, meaningful connections."
)

_ANALYSIS_FORMAT = """Provide analysis in this JSON format:
{{
  "content": "{content_hint}",
  "legal_concepts": ["concept1", "concept2"],
  "confidence_score": 0.8,
  "relevant_citations": [
    {{"type": "statute", "citation": "s 60CC Family Law Act 1975", "relevance": "why it applies"}}
  ]
}}"""

ANALYSIS_PROMPTS = {
    "legal_relevance": (
        "Analyze this evidence document for legal relevance in NSW family law and domestic violence cases.",
        "Detailed analysis of legal relevance, key facts, and potential implications",
        [
            "What legal issues this evidence supports or contradicts",
            "Key facts that would be relevant in court",
            "How this relates to NSW/Commonwealth family law",
            "Any patterns of behavior that match legal definitions",
        ],
    ),
    "case_strength": (
        "Evaluate how this evidence impacts the strength of a legal case.",
        "Assessment of how this evidence strengthens or weakens potential legal claims",
        [
            "Strength as evidence (strong, moderate, weak)",
            "Admissibility concerns",
            "Corroboration value",
            "Potential weaknesses or challenges",
        ],
    ),
    "timeline_extraction": (
        "Extract key timeline events from this evidence.",
        "Summary of timeline events and their legal significance",
        [
            "Dates and times mentioned",
            "Sequence of events",
            "Patterns of escalation or change",
            "Legal significance of timing",
        ],
    ),
    "pattern_detection": (
        "Identify patterns of behavior that may be legally significant.",
        "Description of behavioral patterns and their legal implications",
        [
            "Patterns of control or manipulation",
            "Escalation over time",
            "Impact on children or family",
            "Behavior matching legal definitions (e.g. s 4AB Family Law Act 1975)",
        ],
    ),
}


def build_analysis_prompt(analysis_type: str, file_name: str, text: str) -> str:
    intro, content_hint, focus = ANALYSIS_PROMPTS.get(analysis_type, ANALYSIS_PROMPTS["legal_relevance"])
    focus_lines = "\n".join(f"{i}. {item}" for i, item in enumerate(focus, start=1))
    return (
        f"{intro}\n\n"
        f"Document: {file_name}\n"
        f"Content: {text[:ANALYSIS_TEXT_CHARS]}\n\n"
        f"{_ANALYSIS_FORMAT.format(content_hint=content_hint)}\n\n"
        f"Focus on:\n{focus_lines}"
    )


def parse_analysis(content: str) -> dict:
    """Parse an analysis reply; non-JSON replies are kept verbatim at neutral confidence."""
    try:
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("not an object")
    except ValueError:
        return {"content": content, "legal_concepts": [], "confidence_score": 0.5, "relevant_citations": []}

    confidence = data.get("confidence_score")
    try:
        confidence = float(confidence) if confidence is not None else 0.5
    except (TypeError, ValueError):
        confidence = 0.5

    return {
        "content": str(data.get("content") or content),
        "legal_concepts": list(data.get("legal_concepts") or []),
        "confidence_score": max(0.0, min(1.0, confidence)),
        "relevant_citations": list(data.get("relevant_citations") or []),
    }


async def run_analysis(ai: AIClient, analysis_type: str, file_name: str, text: str) -> dict:
    content = await ai.chat(
        [
            {"role": "system", "content": ANALYST_SYSTEM_PROMPT},
            {"role": "user", "content": build_analysis_prompt(analysis_type, file_name, text)},
        ],
        task="legal_analysis",
        max_tokens=1500,
        temperature=0.3,
        json_mode=True,
    )
    if not content:
        raise AIServiceError("No analysis content returned")
    return parse_analysis(content)


# =============================================================================
# Legal Connections
# =============================================================================

async def visible_legal_sections(db: AsyncSession, user_id: str, limit: int) -> list[LegalSection]:
    """Shared NSW sections plus the user's own, up to limit."""
    settings = get_settings()
    result = await db.execute(
        select(LegalSection)
        .where(
            LegalSection.jurisdiction == settings.default_jurisdiction,
            or_(LegalSection.user_id.is_(None), LegalSection.user_id == user_id),
        )
        .order_by(LegalSection.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


def _build_connection_prompt(file_name: str, text: str, batch: list[LegalSection]) -> str:
    provisions = "\n".join(
        f"{idx}. [section_id: {s.id}] {s.title}\n"
        f"Citation: {s.citation_format or 'N/A'}\n"
        f"Content: {s.content[:SECTION_EXCERPT_CHARS]}...\n"
        for idx, s in enumerate(batch, start=1)
    )
    return f"""Analyze connections between this evidence and legal provisions.

Evidence Document: {file_name}
Evidence Content (first {CONNECTION_TEXT_CHARS} chars): {text[:CONNECTION_TEXT_CHARS]}

Legal Provisions:
{provisions}
For each legal provision, determine if there's a meaningful connection to the evidence. Respond in JSON format:
{{
  "connections": [
    {{
      "section_id": "{batch[0].id}",
      "connection_type": "supports|contradicts|explains|precedent|requirement",
      "relevance_score": 0.85,
      "explanation": "Specific explanation of how the evidence relates to this legal provision"
    }}
  ]
}}

Only include connections with relevance_score > 0.6. Connection types:
- supports: Evidence supports this legal requirement/principle
- contradicts: Evidence conflicts with this provision
- explains: This law explains the evidence or provides context
- precedent: This case law is similar to the evidence situation
- requirement: This law creates obligations relevant to the evidence"""


def accept_connections(raw: Any, batch_ids: set[str], threshold: float) -> list[dict]:
    """Keep well-formed connections above threshold that point into the batch."""
    accepted = []
    if not isinstance(raw, list):
        return accepted
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            score = float(item.get("relevance_score", 0))
        except (TypeError, ValueError):
            continue
        section_id = item.get("section_id")
        if not isinstance(section_id, str) or section_id not in batch_ids or score <= threshold:
            continue
        connection_type = item.get("connection_type")
        if not isinstance(connection_type, str) or connection_type not in CONNECTION_TYPES:
            connection_type = "explains"
        accepted.append({
            "section_id": section_id,
            "connection_type": connection_type,
            "relevance_score": min(score, 1.0),
            "explanation": str(item.get("explanation") or ""),
        })
    return accepted


async def generate_legal_connections(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    file_id: str,
    file_name: str,
    text: str,
) -> int:
    """Ask the model which legal sections the evidence bears on; store the strong links."""
    settings = get_settings()
    sections = await visible_legal_sections(db, user_id, settings.legal_sections_per_analysis)
    logger.info("Checking %d legal sections for connections to file %s", len(sections), file_id)

    created = 0
    size = settings.legal_connection_batch_size
    for start in range(0, len(sections), size):
        batch = sections[start:start + size]
        try:
            data = await ai.chat_json(
                [
                    {"role": "system", "content": CONNECTOR_SYSTEM_PROMPT},
                    {"role": "user", "content": _build_connection_prompt(file_name, text, batch)},
                ],
                task="legal_analysis",
                max_tokens=2000,
            )
        except AIServiceError as e:
            logger.warning("Connection batch %d failed: %s", start, e.message)
            continue

        for connection in accept_connections(
            data.get("connections"), {s.id for s in batch}, settings.legal_connection_threshold
        ):
            db.add(EvidenceLegalConnection(
                user_id=user_id,
                evidence_file_id=file_id,
                legal_section_id=connection["section_id"],
                connection_type=connection["connection_type"],
                relevance_score=connection["relevance_score"],
                explanation=connection["explanation"],
            ))
            created += 1

    await db.flush()
    return created


# =============================================================================
# Entry Point
# =============================================================================

async def analyze_evidence(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    file_id: str,
    analysis_types: list[str] | None = None,
    generate_connections: bool = True,
) -> dict:
    """
    Analyze a file and optionally link it to legal sections.
    A failing analysis type is reported, not raised.
    """
    file = await get_file(db, file_id, user_id)
    chunks = await get_chunks(db, file_id)
    if not chunks:
        raise ValidationFailed("No text chunks found for analysis", details={"file_id": file_id})

    full_text = "\n\n".join(c.text for c in chunks)
    analysis_types = analysis_types or ["legal_relevance"]
    logger.info("Analyzing file %s (%d chars) for %s", file_id, len(full_text), analysis_types)

    results = []
    for analysis_type in analysis_types:
        try:
            analysis = await run_analysis(ai, analysis_type, file.name, full_text)
        except AIServiceError as e:
            logger.warning("Analysis %s failed for file %s: %s", analysis_type, file_id, e.message)
            results.append({"type": analysis_type, "success": False, "error": e.message})
            continue

        db.add(EvidenceAnalysis(
            user_id=user_id,
            file_id=file_id,
            analysis_type=analysis_type,
            content=analysis["content"],
            legal_concepts=analysis["legal_concepts"],
            confidence_score=analysis["confidence_score"],
            relevant_citations=analysis["relevant_citations"],
        ))
        results.append({"type": analysis_type, "success": True, "content": analysis["content"]})

    connections = 0
    if generate_connections:
        connections = await generate_legal_connections(db, ai, user_id, file_id, file.name, full_text)
        logger.info("Generated %d legal connections for file %s", connections, file_id)

    return {
        "success": True,
        "file_id": file_id,
        "file_name": file.name,
        "analysis_results": results,
        "connections_generated": connections,
        "total_chunks": len(chunks),
    }
