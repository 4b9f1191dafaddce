"""
CaseCompass - Conversation Summary
Summarizes the user's conversation with the assistant: topics, progress,
next actions, tone and the stage of their legal journey (1-9). The latest
summary is kept per user.
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import insert_ignoring_conflict
from app.core.errors import NotFoundError, ValidationFailed
from app.core.utc import utc_now
from app.models.models import ConversationAnalysis, Message
from app.services.ai_client import AIClient, AIResponseParseError
from app.services.memory import get_case_memory

logger = logging.getLogger(__name__)

RECENT_MESSAGES = 40
TONES = ("supportive", "anxious", "confused", "confident", "frustrated", "neutral")
LIST_FIELDS = ("detected_topics", "achievements", "next_actions", "key_insights", "unresolved")

SYSTEM_PROMPT = (
    "You are an expert conversation analyst specializing in legal consultations. "
    "Provide detailed, actionable analysis in valid JSON format."
)


def build_summary_prompt(conversation_text: str, current_goal: Optional[str]) -> str:
    return f"""Analyze this conversation between a user and a legal AI assistant.

CONVERSATION TO ANALYZE:
{conversation_text}

CURRENT USER GOAL: {current_goal or 'Not specified'}

Return JSON:
{{
  "summary": "2-3 sentences on the key discussion points and progress made",
  "detected_topics": ["..."],
  "achievements": ["specific progress"],
  "next_actions": ["next logical step"],
  "conversation_tone": "supportive|anxious|confused|confident|frustrated",
  "legal_stage": 1,
  "key_insights": ["..."],
  "unresolved": ["..."]
}}

Focus on legal progress, the user's emotional state, concrete next steps and
the stage of their legal journey (1 = first contact, 9 = hearing ready).
Be specific and actionable. Avoid generic summaries."""


def fallback_summary() -> dict:
    return {
        "summary": "Conversation analyzed - detailed summary generation failed",
        "detected_topics": [],
        "achievements": [],
        "next_actions": [],
        "conversation_tone": "neutral",
        "legal_stage": 1,
        "key_insights": [],
        "unresolved": [],
    }


def normalize_summary(data: Any) -> dict:
    """Coerce a model reply onto the summary shape; anything unusable takes the fallback value."""
    result = fallback_summary()
    if not isinstance(data, dict):
        return result

    if isinstance(data.get("summary"), str) and data["summary"].strip():
        result["summary"] = data["summary"].strip()
    for key in LIST_FIELDS:
        value = data.get(key)
        if isinstance(value, list):
            result[key] = [v.strip() for v in value if isinstance(v, str) and v.strip()]

    tone = str(data.get("conversation_tone") or "").strip().lower()
    result["conversation_tone"] = tone if tone in TONES else "neutral"

    try:
        stage = int(data.get("legal_stage"))
    except (TypeError, ValueError):
        stage = 1
    result["legal_stage"] = max(1, min(9, stage))
    return result


async def conversation_transcript(db: AsyncSession, user_id: str, limit: int = RECENT_MESSAGES) -> str:
    """The user's most recent stored messages, oldest first, as 'User: ...' lines."""
    messages = (await db.execute(
        select(Message)
        .where(Message.user_id == user_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )).scalars().all()
    speaker = {"user": "User", "assistant": "Assistant"}
    return "\n".join(f"{speaker.get(m.role, m.role.title())}: {m.content}" for m in reversed(messages))


async def get_conversation_analysis(db: AsyncSession, user_id: str) -> Optional[ConversationAnalysis]:
    result = await db.execute(select(ConversationAnalysis).where(ConversationAnalysis.user_id == user_id))
    return result.scalar_one_or_none()


def analysis_to_dict(row: ConversationAnalysis) -> dict:
    return {
        **(row.analysis_data or {}),
        "conversation_length": row.conversation_length,
        "analyzed_at": row.analyzed_at.isoformat() if row.analyzed_at else None,
    }


async def summarize_conversation(
    db: AsyncSession,
    ai: AIClient,
    user_id: str,
    conversation_text: Optional[str] = None,
    current_goal: Optional[str] = None,
) -> dict:
    """
    Summarize the given conversation text, or the stored conversation when
    none is given, and keep the result as the user's latest summary.
    """
    text = (conversation_text or "").strip() or await conversation_transcript(db, user_id)
    if not text:
        raise ValidationFailed("No conversation to summarize")
    if current_goal is None:
        memory = await get_case_memory(db, user_id)
        current_goal = memory.primary_goal if memory else None

    try:
        data = await ai.chat_json(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_summary_prompt(text, current_goal)},
            ],
            task="conversation_summary",
            max_tokens=800,
        )
    except AIResponseParseError:
        logger.warning("Conversation summary reply was not JSON, using fallback summary")
        data = None
    summary = normalize_summary(data)

    row = await get_conversation_analysis(db, user_id)
    if row is None:
        await insert_ignoring_conflict(db, ConversationAnalysis, {"user_id": user_id}, ["user_id"])
        row = await get_conversation_analysis(db, user_id)
    row.analysis_data = summary
    row.conversation_length = len(text)
    row.analyzed_at = utc_now()
    await db.flush()

    logger.info(
        "Conversation summary for %s: %d topics, %d next actions",
        user_id, len(summary["detected_topics"]), len(summary["next_actions"]),
    )
    return analysis_to_dict(row)


async def latest_conversation_summary(db: AsyncSession, user_id: str) -> dict:
    row = await get_conversation_analysis(db, user_id)
    if row is None:
        raise NotFoundError("No conversation summary yet")
    return analysis_to_dict(row)
