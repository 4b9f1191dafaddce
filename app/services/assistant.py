"""
CaseCompass - Legal Assistant
Answers a user's question against their own evidence and the NSW legal
library, citing excerpts as [CITATION n].
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AIServiceError, ValidationFailed
from app.core.security import CurrentUser
from app.core.utc import utc_now
from app.models.models import CaseMemory, EvidenceFile, Message
from app.services.ai_client import AIClient
from app.services.memory import get_case_memory, proactive_triggers, update_thread_summary
from app.services.retrieval import retrieve_context

logger = logging.getLogger(__name__)

QUERY_CHARS = 500
RECENT_FILES = 5

GOAL_ESTABLISHMENT = """
- If this is our first interaction, IMMEDIATELY ask about their primary legal objective:
  * Seeking an ADVO (Apprehended Domestic Violence Order)?
  * Building evidence for criminal charges under Section 54D?
  * Preparing for family court proceedings?
  * Safety planning and immediate protection?
  * Documenting ongoing abuse patterns?
- Ask about key parties involved, timeline, and current safety situation"""

SYSTEM_PROMPT = """You are a specialized NSW coercive control and domestic violence legal expert and strategic advisor. Your mission is to help users achieve their specific legal objectives through detailed evidence analysis and proactive guidance.

## CORE METHODOLOGY ##

**STEP 1: GOAL ESTABLISHMENT** {goal_section}

**STEP 2: EVIDENCE ANALYSIS FRAMEWORK**
When analyzing uploaded content, structure responses as:

**QUICK SUMMARY** (2-3 sentences)
Brief overview of what was found and its legal significance.

**DETAILED EVIDENCE ANALYSIS**
- Pattern Identification: specific coercive control patterns with direct quotes [CITATION n]
- Escalation Timeline: progression of controlling behaviours over time
- Legal Significance: how evidence relates to Section 54D elements
- Strength Assessment: Strong, Moderate or Developing, with reasons

**LEGAL EDUCATION**
- NSW Law Explanation: relevant sections of the Crimes Act 1900 and how the evidence fits
- Court Perspective: how judges typically view this type of evidence

**STRATEGIC NEXT STEPS**
1. Immediate Actions (this week)
2. Evidence Strengthening (ongoing)
3. Legal Preparation (medium term)
4. Safety Considerations (continuous)

**STEP 3: EVIDENCE CITATION RULES**
- ALWAYS quote specific text from uploaded files using [CITATION n] format
- Compare multiple pieces of evidence to show patterns
- Explain why each piece of evidence matters legally

## NSW LEGAL EXPERTISE ##
- Section 54D Crimes Act 1900 (NSW) - Coercive Control offences
- Crimes (Domestic and Personal Violence) Act 2007 - ADVO provisions
- Family Law Act 1975 - s 4AB family violence, s 60CC best interests of the child

## SAFETY PRIORITY ##
Always assess safety implications based on evidence patterns and provide NSW-specific emergency contacts.

## PERSONAL ENGAGEMENT ##
Address {first_name} personally and acknowledge their courage in documenting abuse.{file_acknowledgment}

**CRITICAL**: Never provide hypothetical examples. Always analyze the actual uploaded evidence with specific quotes and citations."""


def query_text_from(prompt: Optional[str], messages: Optional[list[dict]]) -> str:
    """The prompt, else the last user message, capped for retrieval."""
    last_user = None
    for message in reversed(messages or []):
        if message.get("role") == "user":
            last_user = message.get("content")
            break
    return str(prompt or last_user or "")[:QUERY_CHARS]


def goal_section(memory: Optional[CaseMemory]) -> str:
    if memory is None:
        return GOAL_ESTABLISHMENT
    return (
        f"\n- User's established goal: {memory.primary_goal or memory.facts or 'Not yet documented'}"
        f"\n- Key parties: {memory.parties or []}"
        f"\n- Issues identified: {memory.issues or []}"
    )


def file_acknowledgment(recent_files: list[EvidenceFile]) -> str:
    if not recent_files:
        return ""
    processed = [f.name for f in recent_files if f.status == "processed"]
    if processed:
        return (
            f"\n\nThe user has uploaded {', '.join(processed)}, which have been indexed and analyzed. "
            "Thank them for providing this evidence and reference the specific content from their uploads."
        )
    return (
        f"\n\nThe user has files uploaded ({', '.join(f.name for f in recent_files)}). "
        "Analyze the content that has been indexed to provide specific insights."
    )


def build_system_prompt(user: CurrentUser, memory: Optional[CaseMemory], recent_files: list[EvidenceFile]) -> str:
    return SYSTEM_PROMPT.format(
        goal_section=goal_section(memory),
        first_name=user.first_name,
        file_acknowledgment=file_acknowledgment(recent_files),
    )


async def _recent_files(db: AsyncSession, user_id: str) -> list[EvidenceFile]:
    result = await db.execute(
        select(EvidenceFile)
        .where(EvidenceFile.user_id == user_id)
        .order_by(EvidenceFile.created_at.desc())
        .limit(RECENT_FILES)
    )
    return list(result.scalars().all())


async def _save_exchange(db: AsyncSession, user_id: str, question: str, answer: str, citations: list[dict]) -> None:
    """Persist both sides of the exchange in a savepoint; a failure is logged only."""
    asked_at = utc_now()
    try:
        async with db.begin_nested():
            db.add_all([
                Message(
                    user_id=user_id, role="user", content=question,
                    citations=[], meta={}, created_at=asked_at,
                ),
                # Answer sorts after the question
                Message(
                    user_id=user_id, role="assistant", content=answer,
                    citations=citations, meta={}, created_at=asked_at + timedelta(microseconds=1),
                ),
            ])
    except Exception:
        logger.exception("Failed to save assistant messages for user %s", user_id)


async def chat(
    db: AsyncSession,
    ai: AIClient,
    user: CurrentUser,
    prompt: Optional[str] = None,
    messages: Optional[list[dict]] = None,
) -> dict:
    """
    Answer the user. Returns {"generatedText", "citations"}.
    Client-supplied messages are sent after the system context, unchanged.
    """
    if not prompt and not messages:
        raise ValidationFailed("Provide 'prompt' (string) or 'messages' (array).")

    query_text = query_text_from(prompt, messages)
    memory = await get_case_memory(db, user.user_id)
    recent = await _recent_files(db, user.user_id)
    retrieved = await retrieve_context(db, user.user_id, query_text, ai)

    system_messages = [{"role": "system", "content": build_system_prompt(user, memory, recent)}]
    if retrieved.context_blocks:
        system_messages.append({
            "role": "system",
            "content": "Context excerpts:\n" + "\n\n".join(retrieved.context_blocks),
        })

    triggers = await proactive_triggers(db, user.user_id, query_text, retrieved.context_blocks)
    proactive = "".join(text for text in triggers.values() if text)
    if proactive:
        system_messages.append({
            "role": "system",
            "content": "Volunteer this context where it helps the user:\n" + proactive,
        })

    conversation = messages if messages else [{"role": "user", "content": query_text}]
    generated = await ai.chat([*system_messages, *conversation], temperature=0.3)
    if not generated:
        raise AIServiceError("AI returned an empty response")

    await _save_exchange(db, user.user_id, query_text, generated, retrieved.citations)
    await update_thread_summary(db, user.user_id, query_text)

    logger.info("Assistant answered user %s with %d citations", user.user_id, len(retrieved.citations))
    return {"generatedText": generated, "citations": retrieved.citations}
