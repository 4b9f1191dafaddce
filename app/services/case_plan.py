"""
CaseCompass - Case Plans
AI-generated milestone plans toward the user's primary goal, and progress
evaluation against the current milestone.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AIServiceError, NotFoundError
from app.core.utc import utc_now, utc_now_iso
from app.models.models import CasePlan, MilestoneProgress
from app.services.ai_client import AIClient
from app.services.memory import get_case_memory, get_or_create_case_memory

logger = logging.getLogger(__name__)


# =============================================================================
# Schemas
# =============================================================================

class Milestone(BaseModel):
    title: str = Field(..., min_length=1)
    description: str
    success_criteria: list[str] = Field(..., min_length=1)
    estimated_days: int = Field(..., ge=0)
    priority: Literal["urgent", "high", "medium", "low"]
    category: Literal["evidence", "legal", "safety", "documentation", "preparation"]

    @field_validator("success_criteria")
    @classmethod
    def at_most_four(cls, v: list[str]) -> list[str]:
        return v[:4]

    @field_validator("estimated_days", mode="before")
    @classmethod
    def whole_days(cls, v):
        if isinstance(v, float):
            return round(v)
        return v


class ProgressEvaluation(BaseModel):
    completion_percentage: float
    criteria_met: list[str] = []
    is_complete: bool = False
    whats_needed: list[str] = []
    next_action: str = ""

    @field_validator("completion_percentage")
    @classmethod
    def clamp(cls, v: float) -> float:
        return max(0.0, min(100.0, v))


MILESTONE_PLAN_TOOL = {
    "type": "object",
    "properties": {
        "milestones": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "success_criteria": {"type": "array", "items": {"type": "string"}},
                    "estimated_days": {"type": "number"},
                    "priority": {"type": "string", "enum": ["urgent", "high", "medium", "low"]},
                    "category": {
                        "type": "string",
                        "enum": ["evidence", "legal", "safety", "documentation", "preparation"],
                    },
                },
                "required": ["title", "description", "success_criteria", "estimated_days", "priority", "category"],
            },
        }
    },
    "required": ["milestones"],
}

UPDATE_PROGRESS_TOOL = {
    "type": "object",
    "properties": {
        "completion_percentage": {"type": "number", "minimum": 0, "maximum": 100},
        "criteria_met": {"type": "array", "items": {"type": "string"}},
        "is_complete": {"type": "boolean"},
        "whats_needed": {"type": "array", "items": {"type": "string"}},
        "next_action": {"type": "string"},
    },
    "required": ["completion_percentage", "criteria_met", "is_complete", "whats_needed", "next_action"],
}

PLANNER_SYSTEM_PROMPT = """You are a legal case planning expert specializing in NSW, Australia family law and domestic violence cases.

Given a user's primary legal goal, generate 5-7 specific, actionable milestones that will help them achieve that goal.

Each milestone should:
1. Be specific and measurable
2. Have clear success criteria (2-4 items)
3. Build progressively toward the goal
4. Be realistic and achievable
5. Include estimated timeframes

Each milestone has:
- title: Clear, action-oriented title (e.g., "Document pattern of control")
- description: 1-2 sentence explanation of what this milestone involves
- success_criteria: Array of 2-4 specific, measurable criteria
- estimated_days: Realistic timeframe in days
- priority: "urgent", "high", "medium", or "low"
- category: "evidence", "legal", "safety", "documentation", or "preparation"
"""


def parse_milestones(raw) -> list[Milestone]:
    """Validate tool output. Raises AIServiceError on an empty or malformed plan."""
    if not isinstance(raw, list) or not raw:
        raise AIServiceError("AI returned no milestones")
    try:
        return [Milestone.model_validate(item) for item in raw]
    except ValidationError as e:
        raise AIServiceError("AI returned an invalid milestone plan", details={"errors": [err["msg"] for err in e.errors()[:5]]}) from e


def plan_to_dict(plan: CasePlan, progress: Optional[list[MilestoneProgress]] = None) -> dict:
    data = {
        "id": plan.id,
        "user_id": plan.user_id,
        "primary_goal": plan.primary_goal,
        "case_type": plan.case_type,
        "milestones": plan.milestones,
        "current_milestone_index": plan.current_milestone_index,
        "overall_progress_percentage": plan.overall_progress_percentage,
        "urgency_level": plan.urgency_level,
        "created_at": plan.created_at.isoformat() if plan.created_at else None,
    }
    if progress is not None:
        data["progress"] = [
            {
                "milestone_index": p.milestone_index,
                "status": p.status,
                "completion_percentage": p.completion_percentage,
                "evidence_collected": p.evidence_collected or [],
                "notes": p.notes,
                "completed_at": p.completed_at.isoformat() if p.completed_at else None,
            }
            for p in progress
        ]
    return data


# =============================================================================
# Generation
# =============================================================================

async def generate_case_plan(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    primary_goal: str,
    case_type: Optional[str] = None,
    context: Optional[str] = None,
) -> dict:
    """Create a milestone plan for the goal and make it the user's active plan."""
    logger.info("Generating case plan for user %s (%s)", user_id, case_type or "general")

    arguments = await ai.call_tool(
        [
            {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f'Primary Goal: "{primary_goal}"\n'
                    f"Case Type: {case_type or 'General family law'}\n"
                    f"Context: {context or 'No additional context provided'}\n\n"
                    "Generate a strategic milestone plan that will help this person achieve their goal."
                ),
            },
        ],
        tool_name="create_milestone_plan",
        description="Return a structured case milestone plan",
        parameters=MILESTONE_PLAN_TOOL,
    )
    milestones = [m.model_dump() for m in parse_milestones(arguments.get("milestones"))]

    plan = CasePlan(
        user_id=user_id,
        primary_goal=primary_goal,
        case_type=case_type,
        milestones=milestones,
        current_milestone_index=0,
        overall_progress_percentage=0,
        urgency_level="urgent" if any(m["priority"] == "urgent" for m in milestones) else "normal",
    )
    db.add(plan)
    await db.flush()

    progress = [
        MilestoneProgress(
            case_plan_id=plan.id,
            milestone_index=index,
            status="in_progress" if index == 0 else "not_started",
            completion_percentage=0,
            evidence_collected=[],
        )
        for index in range(len(milestones))
    ]
    db.add_all(progress)

    memory = await get_or_create_case_memory(db, user_id)
    memory.active_case_plan_id = plan.id
    memory.primary_goal = primary_goal
    memory.goal_status = "active"
    memory.goal_established_at = utc_now()
    await db.flush()

    logger.info("Created %d-step plan %s for user %s", len(milestones), plan.id, user_id)
    return {
        "case_plan": plan_to_dict(plan, progress),
        "milestones": milestones,
        "message": f"Created {len(milestones)}-step plan for: {primary_goal}",
    }


async def get_active_plan(db: AsyncSession, user_id: str) -> Optional[CasePlan]:
    memory = await get_case_memory(db, user_id)
    if memory is None or not memory.active_case_plan_id:
        return None
    result = await db.execute(
        select(CasePlan).where(CasePlan.id == memory.active_case_plan_id, CasePlan.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_plan_progress(db: AsyncSession, plan_id: str) -> list[MilestoneProgress]:
    result = await db.execute(
        select(MilestoneProgress)
        .where(MilestoneProgress.case_plan_id == plan_id)
        .order_by(MilestoneProgress.milestone_index)
    )
    return list(result.scalars().all())


# =============================================================================
# Progress
# =============================================================================

def _progress_prompt(milestone: dict, progress: MilestoneProgress) -> str:
    criteria = "\n".join(f"{i}. {c}" for i, c in enumerate(milestone.get("success_criteria", []), start=1))
    return f"""You are evaluating progress on a legal case milestone.

Current Milestone: "{milestone.get('title')}"
Description: {milestone.get('description')}
Success Criteria:
{criteria}

Current Progress: {progress.completion_percentage}%
Evidence Already Collected: {progress.evidence_collected or []}

Based on the new conversation/evidence, determine:
1. Updated completion percentage (0-100)
2. Which success criteria are now met
3. Whether milestone is complete
4. What's still needed
5. Next specific action to recommend"""


async def update_milestone_progress(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    conversation_summary: Optional[str] = None,
    new_evidence_ids: Optional[list[str]] = None,
) -> dict:
    """Evaluate the current milestone and advance the plan when it is complete."""
    plan = await get_active_plan(db, user_id)
    if plan is None:
        return {"message": "No active case plan"}

    milestones = plan.milestones or []
    index = plan.current_milestone_index
    if not 0 <= index < len(milestones):
        raise NotFoundError("Current milestone not found", details={"case_plan_id": plan.id})

    progress_rows = await get_plan_progress(db, plan.id)
    by_index = {p.milestone_index: p for p in progress_rows}
    progress = by_index.get(index)
    if progress is None:
        raise NotFoundError("Progress record not found", details={"case_plan_id": plan.id})

    arguments = await ai.call_tool(
        [
            {"role": "system", "content": _progress_prompt(milestones[index], progress)},
            {
                "role": "user",
                "content": (
                    f"New Conversation Summary: {conversation_summary or 'None'}\n"
                    f"New Evidence IDs: {', '.join(new_evidence_ids or []) or 'None'}\n\n"
                    "Evaluate progress on this milestone."
                ),
            },
        ],
        tool_name="update_progress",
        description="Update milestone progress based on analysis",
        parameters=UPDATE_PROGRESS_TOOL,
    )
    try:
        evaluation = ProgressEvaluation.model_validate(arguments)
    except ValidationError as e:
        raise AIServiceError("AI returned an invalid progress evaluation") from e

    percentage = round(evaluation.completion_percentage)
    progress.completion_percentage = percentage
    progress.status = "complete" if evaluation.is_complete else "in_progress"
    progress.completed_at = utc_now() if evaluation.is_complete else None
    progress.evidence_collected = [
        *(progress.evidence_collected or []),
        *({"file_id": file_id, "added_at": utc_now_iso()} for file_id in new_evidence_ids or []),
    ]
    progress.notes = (
        f"Criteria met: {', '.join(evaluation.criteria_met)}. "
        f"Still needed: {', '.join(evaluation.whats_needed)}"
    )

    advanced = False
    if evaluation.is_complete and index < len(milestones) - 1:
        plan.current_milestone_index = index + 1
        plan.overall_progress_percentage = round((index + 1) / len(milestones) * 100)
        following = by_index.get(index + 1)
        if following is not None:
            following.status = "in_progress"
        advanced = True
    elif evaluation.is_complete:
        plan.overall_progress_percentage = 100

    await db.flush()
    logger.info("Milestone %d of plan %s at %d%%", index, plan.id, percentage)

    return {
        "milestone_status": progress.status,
        "progress_percentage": percentage,
        "next_action": evaluation.next_action,
        "criteria_met": evaluation.criteria_met,
        "whats_needed": evaluation.whats_needed,
        "advanced_to_next_milestone": advanced,
        "next_milestone": milestones[index + 1] if advanced else None,
    }
