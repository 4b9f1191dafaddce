"""
Evidence Router
Upload and paste evidence, then categorize, analyze, index and orchestrate it.

Every successful ingest schedules the evidence pipeline in the background
(timeline, legal analysis, case strength, proactive message).
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.core.errors import ValidationFailed
from app.core.security import CurrentUser, require_user, user_rate_limit
from app.models.models import (
    CaseAnalysisHistory,
    Chunk,
    EvidenceAnalysis,
    EvidenceFile,
    EvidenceLegalConnection,
    EvidenceRelationship,
    LegalSection,
    TimelineEvent,
)
from app.services.ai_client import AIClient, get_ai_client
from app.services.categorizer import categorize_file
from app.services.evidence_search import search_evidence
from app.services.evidence import get_file
from app.services.ingestion import acknowledgement, ingest_stored, ingest_text, ingest_upload, read_upload
from app.services.legal_analysis import analyze_evidence
from app.services.memory import forget_file, process_file_memory
from app.services.orchestrator import orchestrate_evidence, orchestrate_in_background
from app.services.storage import EvidenceStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class TextEvidenceCreate(BaseModel):
    """Pasted evidence such as an email body or a diary note."""
    name: str = Field(..., min_length=1, max_length=255)
    text: str = Field(..., min_length=1)
    meta: dict = Field(default_factory=dict)


class IngestResponse(BaseModel):
    file_id: str
    chunks: int
    content_type: str
    analysis: dict


class EvidenceFileResponse(BaseModel):
    id: str
    name: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    status: str
    category: Optional[str] = None
    auto_category: Optional[str] = None
    tags: list[str] = []
    exhibit_code: Optional[str] = None
    file_summary: Optional[str] = None
    meta: dict = {}
    created_at: str


class EvidenceListResponse(BaseModel):
    files: list[EvidenceFileResponse]
    total: int


class EvidenceUpdate(BaseModel):
    category: Optional[str] = Field(None, max_length=50)
    tags: Optional[list[str]] = None


class AnalyzeRequest(BaseModel):
    analysis_types: list[str] = Field(default_factory=lambda: ["legal_relevance"])
    generate_connections: bool = True


class EvidenceSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)
    include_analysis: bool = True
    max_results: int = Field(20, ge=1, le=50)
    min_relevance: float = Field(0.3, ge=0.0, le=1.0)


# =============================================================================
# Helpers
# =============================================================================

def _model_to_response(file: EvidenceFile) -> EvidenceFileResponse:
    return EvidenceFileResponse(
        id=file.id,
        name=file.name,
        mime_type=file.mime_type,
        size=file.size,
        status=file.status,
        category=file.category,
        auto_category=file.auto_category,
        tags=file.tags or [],
        exhibit_code=file.exhibit_code,
        file_summary=file.file_summary,
        meta=file.meta or {},
        created_at=file.created_at.isoformat() if file.created_at else "",
    )


async def _finish_ingest(
    db: AsyncSession,
    background_tasks: BackgroundTasks,
    settings: Settings,
    ai: AIClient,
    user: CurrentUser,
    file: EvidenceFile,
    chunks: int,
) -> IngestResponse:
    # Committed before the pipeline starts so its own sessions can see the file
    await db.commit()

    orchestrating = settings.auto_orchestrate and chunks > 0
    if orchestrating:
        background_tasks.add_task(orchestrate_in_background, user.user_id, file.id, file.name, ai)

    return IngestResponse(
        file_id=file.id,
        chunks=chunks,
        content_type=file.mime_type or "application/octet-stream",
        analysis=acknowledgement(file.name, orchestrating),
    )


# =============================================================================
# Ingest
# =============================================================================

@router.post("/upload", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def upload_evidence(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user: CurrentUser = Depends(user_rate_limit("ingest", "ingest_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
    storage: EvidenceStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """
    Upload an evidence file (PDF, text or image).

    Text is extracted and chunked immediately; images are transcribed.
    Analysis continues in the background.
    """
    content = await read_upload(file, settings.max_upload_size_mb)
    evidence, chunks = await ingest_upload(
        db, ai, storage, user.user_id, file.filename or "evidence", content, file.content_type
    )
    return await _finish_ingest(db, background_tasks, settings, ai, user, evidence, chunks)


@router.post("/text", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def paste_evidence(
    body: TextEvidenceCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(user_rate_limit("ingest", "ingest_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
    storage: EvidenceStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Add pasted text (an email, a message thread, notes) as evidence."""
    evidence, chunks = await ingest_text(db, ai, storage, user.user_id, body.name, body.text, body.meta)
    return await _finish_ingest(db, background_tasks, settings, ai, user, evidence, chunks)


@router.post("/{file_id}/reingest", response_model=IngestResponse)
async def reingest_evidence(
    file_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(user_rate_limit("ingest", "ingest_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
    storage: EvidenceStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Re-extract a stored file, replacing its chunks."""
    existing = await get_file(db, file_id, user.user_id)
    evidence, chunks = await ingest_stored(
        db, ai, storage, user.user_id, existing.name, existing.storage_path, existing.mime_type
    )
    return await _finish_ingest(db, background_tasks, settings, ai, user, evidence, chunks)


# =============================================================================
# Search
# =============================================================================

@router.post("/search")
async def search_evidence_route(
    body: EvidenceSearchRequest,
    user: CurrentUser = Depends(user_rate_limit("search", "search_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """
    Search your evidence in plain language ("he keeps showing up at my work").

    The query is expanded into legal concepts and matched by meaning, by
    wording and against stored analyses. Each result links back to its chunk.
    """
    query = body.query.strip()
    if not query:
        raise ValidationFailed("Query is required")
    return await search_evidence(
        db, ai, user.user_id, query, body.include_analysis, body.max_results, body.min_relevance
    )


# =============================================================================
# Files
# =============================================================================

@router.get("", response_model=EvidenceListResponse)
async def list_evidence(
    status_filter: Optional[str] = None,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """List your evidence files, oldest first."""
    query = select(EvidenceFile).where(EvidenceFile.user_id == user.user_id)
    if status_filter:
        query = query.where(EvidenceFile.status == status_filter)
    files = (await db.execute(query.order_by(EvidenceFile.created_at, EvidenceFile.id))).scalars().all()
    return EvidenceListResponse(files=[_model_to_response(f) for f in files], total=len(files))


@router.get("/{file_id}")
async def get_evidence(
    file_id: str,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """A file with its section summaries, analyses and legal connections."""
    file = await get_file(db, file_id, user.user_id)
    chunk_count = (await db.execute(
        select(func.count(Chunk.id)).where(Chunk.file_id == file_id)
    )).scalar_one()
    analyses = (await db.execute(
        select(EvidenceAnalysis)
        .where(EvidenceAnalysis.file_id == file_id)
        .order_by(EvidenceAnalysis.created_at)
    )).scalars().all()
    connections = (await db.execute(
        select(EvidenceLegalConnection, LegalSection)
        .join(LegalSection, LegalSection.id == EvidenceLegalConnection.legal_section_id)
        .where(EvidenceLegalConnection.evidence_file_id == file_id)
        .order_by(EvidenceLegalConnection.relevance_score.desc())
    )).all()

    return {
        **_model_to_response(file).model_dump(),
        "chunks": chunk_count,
        "section_summaries": file.section_summaries or [],
        "analyses": [
            {
                "analysis_type": a.analysis_type,
                "content": a.content,
                "legal_concepts": a.legal_concepts or [],
                "confidence_score": a.confidence_score,
                "relevant_citations": a.relevant_citations or [],
            }
            for a in analyses
        ],
        "legal_connections": [
            {
                "legal_section_id": section.id,
                "title": section.title,
                "citation": section.citation_format,
                "connection_type": connection.connection_type,
                "relevance_score": connection.relevance_score,
                "explanation": connection.explanation,
            }
            for connection, section in connections
        ],
    }


@router.patch("/{file_id}", response_model=EvidenceFileResponse)
async def update_evidence(
    file_id: str,
    body: EvidenceUpdate,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Set your own category or tags for a file."""
    file = await get_file(db, file_id, user.user_id)
    if body.category is not None:
        file.category = body.category
    if body.tags is not None:
        file.tags = [t.strip().lower() for t in body.tags if t.strip()]
    await db.flush()
    return _model_to_response(file)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_evidence(
    file_id: str,
    user: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    storage: EvidenceStorage = Depends(get_storage),
):
    """Delete a file, its chunks, events, analyses and connections."""
    file = await get_file(db, file_id, user.user_id)
    storage_path = file.storage_path
    for model, column in (
        (EvidenceLegalConnection, EvidenceLegalConnection.evidence_file_id),
        (EvidenceAnalysis, EvidenceAnalysis.file_id),
        (TimelineEvent, TimelineEvent.file_id),
    ):
        await db.execute(delete(model).where(column == file_id))
    await db.execute(delete(EvidenceRelationship).where(or_(
        EvidenceRelationship.source_file_id == file_id,
        EvidenceRelationship.target_file_id == file_id,
    )))
    await db.execute(
        update(CaseAnalysisHistory).where(CaseAnalysisHistory.trigger_file_id == file_id).values(trigger_file_id=None)
    )
    await db.delete(file)
    await db.flush()
    await forget_file(db, user.user_id, file_id)
    await storage.delete(storage_path)
    logger.info("Deleted evidence %s for user %s", file_id, user.user_id)


# =============================================================================
# Processing
# =============================================================================

@router.post("/{file_id}/categorize")
async def categorize_evidence(
    file_id: str,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Assign a document category, tags and a one-line description."""
    return await categorize_file(db, ai, file_id, user.user_id)


@router.post("/{file_id}/analyze")
async def analyze_file(
    file_id: str,
    body: Optional[AnalyzeRequest] = None,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """
    Run legal analyses over a file.

    Types: legal_relevance, case_strength, timeline_extraction, pattern_detection.
    """
    body = body or AnalyzeRequest()
    return await analyze_evidence(db, ai, user.user_id, file_id, body.analysis_types, body.generate_connections)


@router.post("/{file_id}/memory")
async def index_evidence(
    file_id: str,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Embed, summarize and assign the exhibit code for a file."""
    await get_file(db, file_id, user.user_id)
    return await process_file_memory(db, ai, file_id)


@router.post("/{file_id}/orchestrate")
async def orchestrate_file(
    file_id: str,
    user: CurrentUser = Depends(user_rate_limit("analysis", "analysis_rate_limit")),
    db: AsyncSession = Depends(get_db),
    ai: AIClient = Depends(get_ai_client),
):
    """Run the full evidence pipeline now and return its summary."""
    file = await get_file(db, file_id, user.user_id)
    file_name = file.name
    # Release the request session before the pipeline opens its own
    await db.commit()
    return await orchestrate_evidence(user.user_id, file_id, file_name, ai)
