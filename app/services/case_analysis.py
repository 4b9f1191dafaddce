"""
CaseCompass - Continuous Case Analysis
Re-reads the whole evidence collection when evidence changes and keeps a
running legal strategy: behaviour patterns across files, relationships
between files, strengths, weaknesses, gaps and a 0-1 overall strength that
each pass moves by the model's assessed change.

Flow:
    case context -> AI analysis (fallback when the reply is not JSON)
    -> strategy upsert + history row + patterns + relationships -> feedback
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import insert_ignoring_conflict
from app.core.errors import ValidationFailed
from app.models.models import (
    CaseAnalysisHistory,
    CasePattern,
    Chunk,
    EvidenceFile,
    EvidenceRelationship,
    LegalStrategy,
    TimelineEvent,
)
from app.services.ai_client import AIClient, AIResponseParseError
from app.services.memory import get_case_memory

logger = logging.getLogger(__name__)

ANALYSIS_TYPES = ("new_evidence", "evidence_removed", "periodic_review")
RELATIONSHIP_TYPES = ("supports", "corroborates", "contradicts", "explains", "follows", "related")
RELATIONSHIP_CONFIDENCE = 0.8
CONTEXT_CHARS = 12000
HISTORY_LIMIT = 10


# =============================================================================
# Schemas
# =============================================================================

def _strings(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


class PatternFinding(BaseModel):
    type: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    strength: float = 0.5
    evidence_files: list[str] = []
    legal_significance: Optional[str] = None

    @field_validator("strength")
    @classmethod
    def clamp(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @field_validator("evidence_files", mode="before")
    @classmethod
    def names_only(cls, v):
        return _strings(v)


class RelationshipFinding(BaseModel):
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    type: str = "related"
    description: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def known_type(cls, v):
        v = str(v or "").strip().lower()
        return v if v in RELATIONSHIP_TYPES else "related"


class StrengthAssessment(BaseModel):
    overall_change: float = 0.0
    new_strengths: list[str] = []
    new_weaknesses: list[str] = []
    evidence_gaps: list[str] = []

    @field_validator("overall_change")
    @classmethod
    def clamp(cls, v: float) -> float:
        return max(-1.0, min(1.0, v))

    @field_validator("new_strengths", "new_weaknesses", "evidence_gaps", mode="before")
    @classmethod
    def strings(cls, v):
        return _strings(v)


class CaseAnalysis(BaseModel):
    immediate_insights: list[str] = []
    case_impact: str = ""
    new_patterns: list[PatternFinding] = []
    evidence_relationships: list[RelationshipFinding] = []
    strength_assessment: StrengthAssessment = Field(default_factory=StrengthAssessment)
    opposing_arguments: list[str] = []
    next_steps: list[str] = []
    legal_elements: dict = {}

    @field_validator("immediate_insights", "opposing_arguments", "next_steps", mode="before")
    @classmethod
    def strings(cls, v):
        return _strings(v)

    @field_validator("case_impact", mode="before")
    @classmethod
    def text(cls, v):
        return v.strip() if isinstance(v, str) else ""

    @field_validator("legal_elements", mode="before")
    @classmethod
    def mapping(cls, v):
        return v if isinstance(v, dict) else {}


def fallback_analysis() -> CaseAnalysis:
    """Used when the model's reply cannot be read as an analysis."""
    return CaseAnalysis(
        immediate_insights=["Evidence successfully processed and analyzed"],
        case_impact="This evidence contributes to your case documentation",
        strength_assessment=StrengthAssessment(overall_change=0.1),
        next_steps=["Continue building your evidence collection"],
    )


def _valid_items(model, raw) -> list:
    items = []
    for item in raw if isinstance(raw, list) else []:
        try:
            items.append(model.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed %s: %r", model.__name__, item)
    return items


def parse_case_analysis(data: Any) -> CaseAnalysis:
    """Validate a model reply item by item; malformed patterns or relationships are dropped."""
    if not isinstance(data, dict):
        return fallback_analysis()
    try:
        assessment = StrengthAssessment.model_validate(data.get("strength_assessment") or {})
    except ValidationError:
        assessment = StrengthAssessment()
    return CaseAnalysis.model_validate({
        **data,
        "new_patterns": _valid_items(PatternFinding, data.get("new_patterns")),
        "evidence_relationships": _valid_items(RelationshipFinding, data.get("evidence_relationships")),
        "strength_assessment": assessment,
    })


# =============================================================================
# Context
# =============================================================================

@dataclass
class CaseContext:
    files: list[EvidenceFile] = field(default_factory=list)
    text: str = ""
    narrative: str = ""
    patterns: list[CasePattern] = field(default_factory=list)
    timeline_count: int = 0


async def build_case_context(db: AsyncSession, user_id: str) -> CaseContext:
    """Processed files with their text, the case narrative and patterns found so far."""
    files = list((await db.execute(
        select(EvidenceFile)
        .where(EvidenceFile.user_id == user_id, EvidenceFile.status == "processed")
        .order_by(EvidenceFile.created_at, EvidenceFile.id)
    )).scalars().all())

    rows = (await db.execute(
        select(Chunk.text, EvidenceFile.name)
        .join(EvidenceFile, EvidenceFile.id == Chunk.file_id)
        .where(EvidenceFile.user_id == user_id, EvidenceFile.status == "processed")
        .order_by(EvidenceFile.created_at, EvidenceFile.id, Chunk.seq)
    )).all()
    text = "\n\n".join(f"[{name}] {chunk_text}" for chunk_text, name in rows)

    memory = await get_case_memory(db, user_id)
    patterns = list((await db.execute(
        select(CasePattern).where(CasePattern.user_id == user_id).order_by(CasePattern.created_at)
    )).scalars().all())
    timeline_count = (await db.execute(
        select(func.count(TimelineEvent.id)).where(TimelineEvent.user_id == user_id)
    )).scalar_one()

    return CaseContext(
        files=files,
        text=text[:CONTEXT_CHARS],
        narrative=(memory.facts if memory else None) or "No case narrative established yet.",
        patterns=patterns,
        timeline_count=timeline_count,
    )


def build_analysis_prompt(context: CaseContext, analysis_type: str) -> str:
    existing = "\n".join(
        f"{p.pattern_type}: {p.description} (strength: {p.pattern_strength})" for p in context.patterns
    ) or "None yet"
    return f"""You are an expert legal analyst specializing in NSW family law and domestic violence cases.

CONTEXT:
- Current case narrative: {context.narrative}
- Existing patterns identified: {existing}
- Total evidence pieces: {len(context.files)}
- Timeline events: {context.timeline_count}

ANALYSIS TYPE: {analysis_type}

Examine how the evidence changes the case: new or strengthened patterns,
connections between evidence pieces (refer to files by name), legal
strengths and weaknesses, likely opposing arguments and next steps.

Return JSON:
{{
  "immediate_insights": ["..."],
  "case_impact": "How this evidence strengthens or changes the case",
  "new_patterns": [{{"type": "pattern_type", "description": "...", "strength": 0.8, "evidence_files": ["file name"], "legal_significance": "..."}}],
  "evidence_relationships": [{{"source": "file name", "target": "file name", "type": "supports|corroborates|contradicts|explains|follows", "description": "..."}}],
  "strength_assessment": {{"overall_change": 0.2, "new_strengths": [], "new_weaknesses": [], "evidence_gaps": []}},
  "opposing_arguments": ["..."],
  "next_steps": ["..."],
  "legal_elements": {{"section_54d_elements": {{"relationship": "established"}}}}
}}"""


async def run_case_analysis(ai: AIClient, context: CaseContext, analysis_type: str) -> CaseAnalysis:
    try:
        data = await ai.chat_json(
            [
                {"role": "system", "content": build_analysis_prompt(context, analysis_type)},
                {"role": "user", "content": f"Analyze this evidence collection:\n\n{context.text}"},
            ],
            task="case_analysis",
            max_tokens=2000,
        )
    except AIResponseParseError:
        logger.warning("Case analysis reply was not JSON, using fallback analysis")
        return fallback_analysis()
    return parse_case_analysis(data)


# =============================================================================
# Case State
# =============================================================================

def resolve_file_id(files: list[EvidenceFile], name: str) -> Optional[str]:
    """A file named exactly so, else the only file whose name contains it."""
    needle = name.strip().lower()
    exact = [f for f in files if f.name.lower() == needle]
    if len(exact) == 1:
        return exact[0].id
    partial = [f for f in files if needle in f.name.lower()]
    return partial[0].id if len(partial) == 1 else None


def strategy_to_dict(strategy: LegalStrategy) -> dict:
    return {
        "case_strength_overall": strategy.case_strength_overall or 0.0,
        "strengths": strategy.strengths or [],
        "weaknesses": strategy.weaknesses or [],
        "evidence_gaps": strategy.evidence_gaps or [],
        "opposing_arguments": strategy.opposing_arguments or [],
        "next_steps": strategy.next_steps or [],
        "legal_elements_status": strategy.legal_elements_status or {},
        "updated_at": strategy.updated_at.isoformat() if strategy.updated_at else None,
    }


def feedback_message(analysis: CaseAnalysis) -> str:
    impact = (analysis.case_impact or "This evidence contributes to your case").rstrip(".")
    change = analysis.strength_assessment.overall_change
    patterns = len(analysis.new_patterns)

    message = f"Thank you for providing this evidence. {impact}."
    if change > 0.1:
        message += " This significantly strengthens your case."
    elif change > 0:
        message += " This adds valuable support to your case."
    if patterns:
        message += (
            f" I've identified {patterns} new pattern{'s' if patterns > 1 else ''} "
            "that will help build your legal argument."
        )
    return message


async def get_strategy(db: AsyncSession, user_id: str) -> Optional[LegalStrategy]:
    result = await db.execute(select(LegalStrategy).where(LegalStrategy.user_id == user_id))
    return result.scalar_one_or_none()


async def update_case_state(
    db: AsyncSession,
    user_id: str,
    file_id: Optional[str],
    analysis_type: str,
    analysis: CaseAnalysis,
    files: list[EvidenceFile],
) -> dict:
    """Apply an analysis to the stored strategy and record what changed."""
    strategy = await get_strategy(db, user_id)
    previous = strategy_to_dict(strategy) if strategy else None
    if strategy is None:
        await insert_ignoring_conflict(db, LegalStrategy, {"user_id": user_id}, ["user_id"])
        strategy = await get_strategy(db, user_id)

    assessment = analysis.strength_assessment
    current = strategy.case_strength_overall or 0.0
    new_strength = max(0.0, min(1.0, current + assessment.overall_change))

    strategy.case_strength_overall = new_strength
    strategy.strengths = assessment.new_strengths
    strategy.weaknesses = assessment.new_weaknesses
    strategy.evidence_gaps = assessment.evidence_gaps
    strategy.opposing_arguments = analysis.opposing_arguments
    strategy.next_steps = analysis.next_steps
    strategy.legal_elements_status = analysis.legal_elements
    await db.flush()

    db.add(CaseAnalysisHistory(
        user_id=user_id,
        trigger_file_id=file_id,
        analysis_type=analysis_type,
        previous_state=previous,
        new_state={k: v for k, v in strategy_to_dict(strategy).items() if k != "updated_at"},
        key_insights=analysis.immediate_insights,
        case_strength_change=assessment.overall_change,
    ))

    for pattern in analysis.new_patterns:
        db.add(CasePattern(
            user_id=user_id,
            pattern_type=pattern.type,
            description=pattern.description,
            pattern_strength=pattern.strength,
            evidence_files=pattern.evidence_files,
            legal_significance=pattern.legal_significance,
        ))

    stored_relationships = 0
    for relationship in analysis.evidence_relationships:
        source_id = resolve_file_id(files, relationship.source)
        target_id = resolve_file_id(files, relationship.target)
        if source_id is None or target_id is None or source_id == target_id:
            logger.debug("Unresolved relationship %s -> %s", relationship.source, relationship.target)
            continue
        db.add(EvidenceRelationship(
            user_id=user_id,
            source_file_id=source_id,
            target_file_id=target_id,
            relationship_type=relationship.type,
            description=relationship.description,
            confidence=RELATIONSHIP_CONFIDENCE,
        ))
        stored_relationships += 1
    await db.flush()

    return {
        "success": True,
        "summary": feedback_message(analysis),
        "insights": analysis.immediate_insights,
        "case_impact": analysis.case_impact,
        "strength_change": assessment.overall_change,
        "new_strength": new_strength,
        "patterns_found": len(analysis.new_patterns),
        "relationships_found": stored_relationships,
        "next_steps": analysis.next_steps,
    }


async def analyze_case(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    file_id: Optional[str] = None,
    analysis_type: str = "new_evidence",
) -> dict:
    """Run one continuous analysis pass over the user's processed evidence."""
    if analysis_type not in ANALYSIS_TYPES:
        raise ValidationFailed(f"Unknown analysis type: {analysis_type}", details={"allowed": list(ANALYSIS_TYPES)})

    context = await build_case_context(db, user_id)
    if not context.files:
        raise ValidationFailed("No processed evidence to analyze")

    analysis = await run_case_analysis(ai, context, analysis_type)
    feedback = await update_case_state(db, user_id, file_id, analysis_type, analysis, context.files)
    logger.info(
        "Case analysis for %s: strength %.2f (%+.2f), %d patterns",
        user_id, feedback["new_strength"], feedback["strength_change"], feedback["patterns_found"],
    )
    return feedback


async def case_analysis_state(db: AsyncSession, user_id: str) -> dict:
    """Stored strategy, patterns, relationships and the latest history rows."""
    strategy = await get_strategy(db, user_id)
    patterns = (await db.execute(
        select(CasePattern).where(CasePattern.user_id == user_id).order_by(CasePattern.pattern_strength.desc())
    )).scalars().all()
    relationships = (await db.execute(
        select(EvidenceRelationship)
        .where(EvidenceRelationship.user_id == user_id)
        .order_by(EvidenceRelationship.created_at)
    )).scalars().all()
    history = (await db.execute(
        select(CaseAnalysisHistory)
        .where(CaseAnalysisHistory.user_id == user_id)
        .order_by(CaseAnalysisHistory.created_at.desc())
        .limit(HISTORY_LIMIT)
    )).scalars().all()

    return {
        "strategy": strategy_to_dict(strategy) if strategy else None,
        "patterns": [
            {
                "id": p.id,
                "pattern_type": p.pattern_type,
                "description": p.description,
                "pattern_strength": p.pattern_strength,
                "evidence_files": p.evidence_files or [],
                "legal_significance": p.legal_significance,
            }
            for p in patterns
        ],
        "relationships": [
            {
                "id": r.id,
                "source_file_id": r.source_file_id,
                "target_file_id": r.target_file_id,
                "relationship_type": r.relationship_type,
                "description": r.description,
                "confidence": r.confidence,
            }
            for r in relationships
        ],
        "history": [
            {
                "analysis_type": h.analysis_type,
                "trigger_file_id": h.trigger_file_id,
                "key_insights": h.key_insights or [],
                "case_strength_change": h.case_strength_change,
                "created_at": h.created_at.isoformat() if h.created_at else None,
            }
            for h in history
        ],
    }
