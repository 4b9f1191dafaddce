"""
Assistant Router
Chat with the legal assistant, manage the conversation history and
summarize it.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import CurrentUser, require_user, user_rate_limit
from app.models.models import ConversationAnalysis, Message
from app.services.ai_client import AIClient, get_ai_client
from app.services.assistant import chat
from app.services.conversation_summary import latest_conversation_summary, summarize_conversation

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    prompt: Optional[str] = Field(None, max_length=10000)
    messages: Optional[list[ChatMessage]] = None


class ChatResponse(BaseModel):
    generatedText: str
    citations: list[dict]


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    citations: list[dict] = []
    meta: dict = {}
    created_at: str


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    total: int
    limit: int
    offset: int


class SummaryRequest(BaseModel):
    conversation_text: Optional[str] = None
    current_goal: Optional[str] = Field(None, max_length=2000)


# =============================================================================
# Helpers
# =============================================================================

def _model_to_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        citations=message.citations or [],
        meta=message.meta or {},
        created_at=message.created_at.isoformat() if message.created_at else "",
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/chat", response_model=ChatResponse)
async def assistant_chat(
    body: ChatRequest,
    user: CurrentUser = Depends(user_rate_limit("assistant", "assistant_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """
    Ask the assistant about your case.

    Send either a single `prompt` or a `messages` conversation. Answers cite
    your evidence and NSW legal resources as [CITATION n].
    """
    messages = [m.model_dump() for m in body.messages] if body.messages else None
    return await chat(db, ai, user, body.prompt, messages)


@router.get("/messages", response_model=MessageListResponse)
async def list_messages(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Conversation history, newest last. `offset` counts back from the newest."""
    total = (await db.execute(
        select(func.count(Message.id)).where(Message.user_id == user.user_id)
    )).scalar_one()
    page = (await db.execute(
        select(Message)
        .where(Message.user_id == user.user_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset(offset)
        .limit(limit)
    )).scalars().all()
    return MessageListResponse(
        messages=[_model_to_response(m) for m in reversed(page)],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.delete("/messages", status_code=status.HTTP_204_NO_CONTENT)
async def clear_messages(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete your conversation history and its summary."""
    await db.execute(delete(Message).where(Message.user_id == user.user_id))
    await db.execute(delete(ConversationAnalysis).where(ConversationAnalysis.user_id == user.user_id))
    logger.info("Cleared conversation history for user %s", user.user_id)


# =============================================================================
# Summary
# =============================================================================

@router.post("/summary")
async def summarize(
    body: Optional[SummaryRequest] = None,
    user: CurrentUser = Depends(user_rate_limit("assistant", "assistant_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """
    Summarize the conversation: topics, progress, next actions, tone and
    legal stage. Uses your stored messages unless text is supplied.
    """
    body = body or SummaryRequest()
    return await summarize_conversation(db, ai, user.user_id, body.conversation_text, body.current_goal)


@router.get("/summary")
async def get_summary(
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Your latest conversation summary."""
    return await latest_conversation_summary(db, user.user_id)
