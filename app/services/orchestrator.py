"""
CaseCompass - Evidence Orchestrator
Runs the full post-ingest pipeline for one evidence file.

    1. memory processing  (embeddings, summaries, exhibit code)
    2. categorization
    3. timeline | legal analysis | case strength   (concurrently)
    4. case memory update
    5. proactive assistant message

Every step opens its own database session so the concurrent steps never
share one. A failing step is logged and contributes a neutral result.
"""

import asyncio
import logging
from typing import Optional

from app.core.database import get_db_session
from app.core.errors import CaseCompassError, OrchestrationError
from app.core.security import address_name
from app.core.utc import utc_now, utc_now_iso
from app.models.models import Message, User
from app.services.ai_client import AIClient, get_ai_client
from app.services.case_strength import analyze_case_strength, strength_reasons
from app.services.categorizer import categorize_file
from app.services.evidence import get_file
from app.services.legal_analysis import analyze_evidence
from app.services.memory import (
    get_or_create_case_memory,
    process_file_memory,
    refresh_timeline_summary,
    upsert_evidence_entry,
)
from app.services.timeline import extract_timeline

logger = logging.getLogger(__name__)

ORCHESTRATED_ANALYSES = ["legal_relevance", "case_strength"]
DEFAULT_GOAL = "understanding your legal options"


# =============================================================================
# Steps
# =============================================================================

async def _memory_step(ai: AIClient, file_id: str) -> Optional[dict]:
    try:
        async with get_db_session() as db:
            return await process_file_memory(db, ai, file_id)
    except Exception as e:
        logger.warning("Memory processing failed for %s: %s", file_id, e)
        return None


async def _categorize_step(ai: AIClient, user_id: str, file_id: str) -> Optional[dict]:
    try:
        async with get_db_session() as db:
            return await categorize_file(db, ai, file_id, user_id)
    except Exception as e:
        logger.warning("Categorization failed for %s: %s", file_id, e)
        return None


async def _timeline_step(ai: AIClient, user_id: str, file_id: str) -> int:
    try:
        async with get_db_session() as db:
            result = await extract_timeline(db, ai, user_id, file_id)
        return result["inserted"]
    except Exception as e:
        logger.warning("Timeline extraction failed for %s: %s", file_id, e)
        return 0


async def _legal_step(ai: AIClient, user_id: str, file_id: str) -> Optional[dict]:
    try:
        async with get_db_session() as db:
            return await analyze_evidence(
                db, ai, user_id, file_id,
                analysis_types=ORCHESTRATED_ANALYSES,
                generate_connections=True,
            )
    except Exception as e:
        logger.warning("Legal analysis failed for %s: %s", file_id, e)
        return None


async def _strength_step(user_id: str) -> Optional[dict]:
    try:
        async with get_db_session() as db:
            return await analyze_case_strength(db, user_id)
    except Exception as e:
        logger.warning("Case strength analysis failed for %s: %s", user_id, e)
        return None


# =============================================================================
# Proactive Message
# =============================================================================

def build_proactive_prompt(first_name: str, context: dict) -> str:
    change = context["case_strength_change"]
    findings = "\n".join(f"- {s}" for s in context["strengths"]) or "Analysis in progress"
    gaps = ""
    if context["critical_gaps"]:
        gaps = "EVIDENCE GAPS IDENTIFIED:\n" + "\n".join(f"- {g}" for g in context["critical_gaps"])

    return f"""You just analyzed new evidence for {first_name}: "{context['file_name']}"

ANALYSIS RESULTS:
- Timeline Events Extracted: {context['timeline_events']}
- Case Strength Impact: {'+' if change > 0 else ''}{change} points
- New Case Strength: {context['new_case_strength']}%
- Primary Goal: "{context['primary_goal']}"

KEY FINDINGS:
{findings}

{gaps}

YOUR TASK:
1. Acknowledge the evidence they uploaded (mention "{context['file_name']}" by name)
2. Highlight the 1-2 most important findings from this evidence
3. Connect it directly to their goal: "{context['primary_goal']}"
4. If case strength improved, acknowledge their progress briefly
5. Ask ONE focused question about the next most important piece of evidence to gather

TONE: Proactive, strategic, encouraging, trauma-informed
LENGTH: 2-3 short paragraphs, under 200 words, natural conversation rather than lists"""


async def generate_proactive_message(
    ai: AIClient,
    user_id: str,
    file_name: str,
    timeline_events: int,
    strength: Optional[dict],
    primary_goal: Optional[str],
) -> Optional[str]:
    """Write and store an assistant message about the new evidence. None on any failure."""
    strength = strength or {}
    context = {
        "file_name": file_name,
        "timeline_events": timeline_events,
        "case_strength_change": strength.get("strength_change", 0),
        "new_case_strength": strength.get("case_strength_score", 0),
        "strengths": strength.get("strengths", []),
        "critical_gaps": strength.get("critical_gaps", []),
        "primary_goal": primary_goal or DEFAULT_GOAL,
    }

    try:
        async with get_db_session() as db:
            user = await db.get(User, user_id)
            first_name = address_name(user.display_name, user.email) if user else "there"
            content = await ai.chat(
                [
                    {"role": "system", "content": build_proactive_prompt(first_name, context)},
                    {"role": "user", "content": "[Evidence upload notification]"},
                ],
                max_tokens=500,
                temperature=0.7,
            )
            if not content:
                return None
            db.add(Message(
                user_id=user_id,
                role="assistant",
                content=content,
                citations=[],
                meta={
                    "type": "proactive_evidence_analysis",
                    "file_name": file_name,
                    "generated_at": utc_now_iso(),
                },
            ))
        return content
    except Exception:
        logger.exception("Failed to generate proactive analysis for %s", file_name)
        return None


# =============================================================================
# Pipeline
# =============================================================================

async def _update_case_memory(
    user_id: str,
    file_id: str,
    file_name: str,
    timeline_events: int,
    legal: Optional[dict],
    strength: Optional[dict],
) -> Optional[str]:
    """Record the run in case memory; returns the user's primary goal."""
    async with get_db_session() as db:
        memory = await get_or_create_case_memory(db, user_id)
        memory.evidence_index = upsert_evidence_entry(memory.evidence_index or [], {
            "file_id": file_id,
            "file_name": file_name,
            "processed_at": utc_now_iso(),
            "timeline_events": timeline_events,
            "legal_connections": (legal or {}).get("connections_generated", 0),
        })
        if strength:
            memory.case_strength_score = strength["case_strength_score"]
            memory.case_strength_reasons = strength_reasons(strength)
        memory.last_activity_type = "evidence_uploaded"
        memory.last_updated_at = utc_now()
        await refresh_timeline_summary(db, user_id)
        return memory.primary_goal


async def orchestrate_evidence(
    user_id: str,
    file_id: str,
    file_name: Optional[str] = None,
    ai: Optional[AIClient] = None,
) -> dict:
    """
    Run the evidence pipeline for a processed file.
    Raises OrchestrationError only for failures outside the individual steps.
    """
    ai = ai or get_ai_client()

    try:
        if file_name is None:
            async with get_db_session() as db:
                file_name = (await get_file(db, file_id, user_id)).name
        logger.info("Orchestrating evidence %s (%s) for user %s", file_name, file_id, user_id)

        await _memory_step(ai, file_id)
        await _categorize_step(ai, user_id, file_id)

        timeline_events, legal, strength = await asyncio.gather(
            _timeline_step(ai, user_id, file_id),
            _legal_step(ai, user_id, file_id),
            _strength_step(user_id),
        )
        logger.info(
            "Analyses complete for %s: %d timeline events, legal=%s, strength=%s",
            file_id,
            timeline_events,
            legal is not None,
            strength["case_strength_score"] if strength else None,
        )

        primary_goal = await _update_case_memory(user_id, file_id, file_name, timeline_events, legal, strength)
    except CaseCompassError:
        raise
    except Exception as e:
        logger.exception("Orchestration failed for %s", file_id)
        raise OrchestrationError(str(e) or "Orchestration failed", details={"file_id": file_id}) from e

    proactive = await generate_proactive_message(ai, user_id, file_name, timeline_events, strength, primary_goal)

    return {
        "success": True,
        "file_id": file_id,
        "timeline_events": timeline_events,
        "legal_connections": (legal or {}).get("connections_generated", 0),
        "case_strength_score": strength["case_strength_score"] if strength else 0,
        "proactive_message": proactive,
    }


async def orchestrate_in_background(user_id: str, file_id: str, file_name: str, ai: AIClient) -> None:
    """BackgroundTasks entry point; errors are logged, never raised."""
    try:
        await orchestrate_evidence(user_id, file_id, file_name, ai)
    except CaseCompassError as e:
        logger.error("Background orchestration of %s failed: %s", file_id, e.message)
