"""
CaseCompass - Case Strength
Heuristic 0-100 score from evidence quantity, timeline coverage,
legal connections and analysis confidence.

Points:
    evidence files      0-20
    timeline events     0-20
    legal connections   0-30
    analysis quality    0-30
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models.models import (
    CaseMemory,
    EvidenceAnalysis,
    EvidenceFile,
    EvidenceLegalConnection,
    TimelineEvent,
)

logger = logging.getLogger(__name__)

RECENT_ANALYSES = 10


@dataclass
class CaseStrength:
    case_strength_score: int
    strengths: list[str] = field(default_factory=list)
    critical_gaps: list[str] = field(default_factory=list)
    legal_elements_met: dict[str, float] = field(default_factory=dict)
    strategic_next_steps: list[str] = field(default_factory=list)
    evidence_summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def strength_reasons(result: dict) -> dict:
    """What gets persisted into case memory alongside the score."""
    return {
        "strengths": result.get("strengths", []),
        "critical_gaps": result.get("critical_gaps", []),
        "legal_elements_met": result.get("legal_elements_met", {}),
        "strategic_next_steps": result.get("strategic_next_steps", []),
    }


def calculate_case_strength(
    file_count: int,
    analysis_confidences: Sequence[Optional[float]],
    timeline_count: int,
    connection_count: int,
    primary_goal: Optional[str] = None,
) -> CaseStrength:
    """Score a case from its counts. Pure; no I/O."""
    score = 0
    strengths: list[str] = []
    gaps: list[str] = []
    elements: dict[str, float] = {}

    # Evidence quantity
    if file_count == 0:
        gaps.append("No evidence uploaded yet")
    elif file_count < 3:
        score += 10
        gaps.append("Limited evidence - need more documentation")
    elif file_count < 5:
        score += 15
        strengths.append(f"{file_count} pieces of evidence collected")
    else:
        score += 20
        strengths.append(f"Strong evidence base with {file_count} documents")

    # Timeline documentation
    if timeline_count == 0:
        gaps.append("No timeline events documented")
    elif timeline_count < 5:
        score += 10
    elif timeline_count < 10:
        score += 15
        strengths.append(f"Clear timeline with {timeline_count} documented events")
    else:
        score += 20
        strengths.append(f"Comprehensive timeline documenting {timeline_count} events")

    # Legal connections
    if connection_count == 0:
        gaps.append("No legal connections identified yet")
    elif connection_count < 3:
        score += 15
    elif connection_count < 6:
        score += 22
        strengths.append(f"Evidence linked to {connection_count} legal provisions")
    else:
        score += 30
        strengths.append(f"Strong legal foundation with {connection_count} evidence-law connections")

    # Analysis quality; a missing or zero confidence counts as neutral
    if analysis_confidences:
        avg_confidence = sum(c or 0.5 for c in analysis_confidences) / len(analysis_confidences)
        score += round(avg_confidence * 30)
        if avg_confidence > 0.7:
            strengths.append("High-quality, credible evidence")
    else:
        gaps.append("Evidence analysis pending")

    goal = (primary_goal or "").lower()
    if "parental responsibility" in goal or "custody" in goal:
        elements["family_violence_s4AB"] = 0.7 if connection_count > 0 else 0.2
        elements["best_interests_children_s60CC"] = 0.6 if timeline_count > 5 else 0.3
        elements["pattern_of_behavior"] = 0.8 if timeline_count > 3 else 0.2
        if connection_count == 0:
            gaps.append("Need documentation of family violence under s4AB")
        if timeline_count < 3:
            gaps.append("Need more evidence of pattern of behavior")

    next_steps = []
    if file_count < 5:
        next_steps.append("Upload more supporting documents (police reports, messages, medical records)")
    if timeline_count < 5:
        next_steps.append("Document specific incidents with dates, times, and details")
    if connection_count < 3:
        next_steps.append("Request legal analysis of uploaded evidence")

    return CaseStrength(
        case_strength_score=min(100, score),
        strengths=strengths,
        critical_gaps=gaps,
        legal_elements_met=elements,
        strategic_next_steps=next_steps,
        evidence_summary={
            "total_files": file_count,
            "timeline_events": timeline_count,
            "legal_connections": connection_count,
            "analyses_completed": len(analysis_confidences),
        },
    )


async def _count(db: AsyncSession, query) -> int:
    return (await db.execute(query)).scalar_one() or 0


async def analyze_case_strength(db: AsyncSession, user_id: str) -> dict:
    """
    Compute the user's current case strength from the database.
    Does not persist; includes strength_change against the stored score.
    """
    threshold = get_settings().legal_connection_threshold

    memory = (await db.execute(
        select(CaseMemory).where(CaseMemory.user_id == user_id)
    )).scalar_one_or_none()
    previous = (memory.case_strength_score if memory else None) or 0
    goal = memory.primary_goal if memory else None

    file_count = await _count(db, select(func.count(EvidenceFile.id)).where(
        EvidenceFile.user_id == user_id, EvidenceFile.status == "processed"
    ))
    confidences = list((await db.execute(
        select(EvidenceAnalysis.confidence_score)
        .where(EvidenceAnalysis.user_id == user_id)
        .order_by(EvidenceAnalysis.created_at.desc())
        .limit(RECENT_ANALYSES)
    )).scalars().all())
    timeline_count = await _count(db, select(func.count(TimelineEvent.id)).where(
        TimelineEvent.user_id == user_id
    ))
    connection_count = await _count(db, select(func.count(EvidenceLegalConnection.id)).where(
        EvidenceLegalConnection.user_id == user_id,
        EvidenceLegalConnection.relevance_score >= threshold,
    ))

    strength = calculate_case_strength(file_count, confidences, timeline_count, connection_count, goal)
    logger.info("Case strength for %s: %d (was %s)", user_id, strength.case_strength_score, previous)

    result = strength.to_dict()
    result["strength_change"] = strength.case_strength_score - previous
    return result
