"""
Case Router
Case memory, case strength, the milestone plan and continuous case analysis.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.errors import NotFoundError
from app.core.security import CurrentUser, require_user, user_rate_limit
from app.core.utc import utc_now
from app.services.ai_client import AIClient, get_ai_client
from app.services.case_analysis import analyze_case, case_analysis_state
from app.services.case_plan import (
    generate_case_plan,
    get_active_plan,
    get_plan_progress,
    plan_to_dict,
    update_milestone_progress,
)
from app.services.case_strength import analyze_case_strength, strength_reasons
from app.services.evidence import get_file
from app.services.memory import (
    get_or_create_case_memory,
    memory_to_dict,
    proactive_triggers,
    update_thread_summary,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class GoalUpdate(BaseModel):
    primary_goal: str = Field(..., min_length=1, max_length=2000)
    parties: Optional[list[str]] = None
    issues: Optional[list[str]] = None
    facts: Optional[str] = None


class ThreadSummaryUpdate(BaseModel):
    text: str = Field(..., min_length=1)


class ProactiveRequest(BaseModel):
    query: str = ""
    context_blocks: list[str] = Field(default_factory=list)


class PlanCreate(BaseModel):
    primary_goal: str = Field(..., min_length=1, max_length=2000)
    case_type: Optional[str] = Field(None, max_length=50)
    context: Optional[str] = None


class ProgressUpdate(BaseModel):
    conversation_summary: Optional[str] = None
    new_evidence_ids: list[str] = Field(default_factory=list)


class CaseAnalysisRequest(BaseModel):
    file_id: Optional[str] = None
    analysis_type: str = "new_evidence"


# =============================================================================
# Memory
# =============================================================================

@router.get("/memory")
async def get_memory(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Everything the assistant remembers about your case."""
    memory = await get_or_create_case_memory(db, user.user_id)
    return memory_to_dict(memory)


@router.put("/memory/goal")
async def set_goal(
    body: GoalUpdate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Set your primary legal goal, and optionally the parties, issues and facts."""
    memory = await get_or_create_case_memory(db, user.user_id)
    memory.primary_goal = body.primary_goal.strip()
    memory.goal_status = "active"
    memory.goal_established_at = utc_now()
    if body.parties is not None:
        memory.parties = [p.strip() for p in body.parties if p.strip()]
    if body.issues is not None:
        memory.issues = [i.strip() for i in body.issues if i.strip()]
    if body.facts is not None:
        memory.facts = body.facts
    memory.last_activity_type = "goal_set"
    await db.flush()
    logger.info("Goal set for user %s", user.user_id)
    return memory_to_dict(memory)


@router.post("/memory/thread-summary")
async def add_to_thread_summary(
    body: ThreadSummaryUpdate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    summary = await update_thread_summary(db, user.user_id, body.text)
    return {"thread_summary": summary}


@router.post("/memory/proactive")
async def get_proactive_triggers(
    body: ProactiveRequest,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Context the assistant would volunteer for this query."""
    return await proactive_triggers(db, user.user_id, body.query, body.context_blocks)


# =============================================================================
# Strength
# =============================================================================

@router.get("/strength")
async def get_case_strength(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Current case strength, computed live. Nothing is saved."""
    return await analyze_case_strength(db, user.user_id)


@router.post("/strength/refresh")
async def refresh_case_strength(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Recompute case strength and store it in case memory."""
    result = await analyze_case_strength(db, user.user_id)
    memory = await get_or_create_case_memory(db, user.user_id)
    memory.case_strength_score = result["case_strength_score"]
    memory.case_strength_reasons = strength_reasons(result)
    memory.last_updated_at = utc_now()
    await db.flush()
    return result


# =============================================================================
# Plan
# =============================================================================

@router.post("/plan", status_code=status.HTTP_201_CREATED)
async def create_plan(
    body: PlanCreate,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Generate a milestone plan for your goal. It becomes your active plan."""
    return await generate_case_plan(db, ai, user.user_id, body.primary_goal, body.case_type, body.context)


@router.get("/plan")
async def get_plan(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Your active plan with its per-milestone progress."""
    plan = await get_active_plan(db, user.user_id)
    if plan is None:
        raise NotFoundError("No active case plan")
    return plan_to_dict(plan, await get_plan_progress(db, plan.id))


@router.post("/plan/progress")
async def evaluate_progress(
    body: Optional[ProgressUpdate] = None,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Evaluate the current milestone and advance when it is complete."""
    body = body or ProgressUpdate()
    return await update_milestone_progress(
        db, ai, user.user_id, body.conversation_summary, body.new_evidence_ids
    )


# =============================================================================
# Continuous Analysis
# =============================================================================

@router.post("/analysis")
async def continuous_case_analysis(
    body: Optional[CaseAnalysisRequest] = None,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """
    Re-analyze your whole evidence collection, usually after adding a file.

    Updates the running legal strategy and records new patterns and links
    between files. Types: new_evidence, evidence_removed, periodic_review.
    """
    body = body or CaseAnalysisRequest()
    if body.file_id:
        await get_file(db, body.file_id, user.user_id)
    return await analyze_case(db, ai, user.user_id, body.file_id, body.analysis_type)


@router.get("/analysis")
async def get_case_analysis(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """The running strategy, patterns, file relationships and recent analysis history."""
    return await case_analysis_state(db, user.user_id)
