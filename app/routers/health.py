"""
Health Router
Liveness, readiness and AI provider health.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.services.ai_client import AIClient, get_ai_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(settings: Settings = Depends(get_settings)):
    """Liveness check."""
    return {"status": "ok", "app": settings.app_name, "version": settings.app_version}


@router.get("/health/ready")
async def ready(db: AsyncSession = Depends(get_db)):
    """Readiness check: the database answers."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "error"})
    return {"status": "ready", "database": "ok"}


@router.get("/api/ai/health")
async def ai_health(ai: AIClient = Depends(get_ai_client)):
    """
    Check the AI provider.
    Always 200; the body says whether the provider is usable.
    """
    return await ai.health()
