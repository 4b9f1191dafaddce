"""
CaseCompass - Evidence Ingestion
Turns uploaded files and pasted text into evidence files with text chunks.

Flow:
    store bytes -> upsert file row (processing) -> extract pages -> chunk
    -> processed | failed -> background orchestration
"""

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import CaseCompassError, ValidationFailed
from app.core.security import sanitize_filename
from app.core.utc import utc_now_iso
from app.models.models import Chunk, EvidenceFile
from app.services.ai_client import AIClient
from app.services.extraction import build_chunk_rows, extract_pages
from app.services.storage import EvidenceStorage

logger = logging.getLogger(__name__)


def guess_mime_type(filename: str, declared: Optional[str] = None) -> str:
    """Declared content type unless it is missing or generic, else a guess from the name."""
    if declared and declared != "application/octet-stream":
        return declared.split(";")[0].strip().lower()
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    if Path(filename).suffix.lower() in (".md", ".eml", ".csv"):
        return "text/plain"
    return "application/octet-stream"


def validate_upload(filename: str, size: int) -> None:
    """Reject files with a disallowed extension or over the size limit."""
    settings = get_settings()
    extension = Path(filename).suffix.lower().lstrip(".")
    if extension not in settings.allowed_extensions_set:
        raise ValidationFailed(
            f"File type .{extension or '?'} is not allowed",
            details={"allowed": sorted(settings.allowed_extensions_set)},
        )
    if size > settings.max_upload_size_mb * 1024 * 1024:
        raise ValidationFailed(f"File exceeds {settings.max_upload_size_mb} MB limit")
    if size == 0:
        raise ValidationFailed("File is empty")


async def read_upload(upload, max_mb: Optional[int] = None) -> bytes:
    """
    Read an upload, stopping one byte past the size limit so an oversized
    file is rejected without being held in memory.
    """
    if max_mb is None:
        max_mb = get_settings().max_upload_size_mb
    max_bytes = max_mb * 1024 * 1024
    content = await upload.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise ValidationFailed(f"File exceeds {max_mb} MB limit")
    return content


def acknowledgement(file_name: str, orchestrating: bool) -> dict:
    """Immediate summary returned to the uploader while analysis runs."""
    if orchestrating:
        return {
            "success": True,
            "summary": (
                f"Thank you for uploading {file_name}. Enhanced processing has started "
                "to extract timeline events and analyze patterns."
            ),
            "insights": [
                "Evidence successfully processed and stored securely",
                "Timeline extraction and pattern analysis in progress",
            ],
            "case_impact": "This evidence will be automatically analyzed for coercive control patterns and timeline events",
        }
    return {
        "success": True,
        "summary": f"Thank you for uploading {file_name}. Your evidence has been processed and is now part of your case file.",
        "insights": ["Evidence successfully processed and stored securely"],
        "case_impact": "This evidence contributes to your case documentation",
    }


async def _upsert_file(
    db: AsyncSession,
    user_id: str,
    name: str,
    storage_path: str,
    mime_type: str,
    size: int,
    sha256: str,
    meta: Optional[dict] = None,
) -> EvidenceFile:
    """Insert or reset the file row for (user, storage_path); old chunks are dropped."""
    result = await db.execute(
        select(EvidenceFile).where(
            EvidenceFile.user_id == user_id,
            EvidenceFile.storage_path == storage_path,
        )
    )
    file = result.scalar_one_or_none()

    if file is None:
        file = EvidenceFile(
            user_id=user_id,
            name=name,
            storage_path=storage_path,
            mime_type=mime_type,
            size=size,
            sha256=sha256,
            status="processing",
            tags=[],
            meta=meta or {},
            section_summaries=[],
        )
        db.add(file)
        await db.flush()
        return file

    logger.info("Re-ingesting file %s", file.id)
    file.status = "processing"
    file.mime_type = mime_type
    file.size = size
    file.sha256 = sha256
    file.meta = {k: v for k, v in (file.meta or {}).items() if k != "error"}
    await db.execute(delete(Chunk).where(Chunk.file_id == file.id))
    await db.flush()
    return file


async def _chunk_file(db: AsyncSession, ai: AIClient, file: EvidenceFile, content: bytes) -> int:
    """Extract and store chunks. Failures mark the file failed, commit that, and re-raise."""
    try:
        pages = await extract_pages(content, file.mime_type, ai)
        rows = build_chunk_rows(pages)
    except CaseCompassError as e:
        logger.warning("Extraction failed for %s: %s", file.id, e.message)
        file.status = "failed"
        file.meta = {**(file.meta or {}), "error": e.message, "failed_at": utc_now_iso()}
        await db.commit()
        raise

    for row in rows:
        db.add(Chunk(file_id=file.id, seq=row["seq"], text=row["text"], meta=row["meta"]))
    file.status = "processed"
    await db.flush()

    logger.info("Ingested %s: %d chunks", file.name, len(rows))
    return len(rows)


async def ingest_stored(
    db: AsyncSession,
    ai: AIClient,
    storage: EvidenceStorage,
    user_id: str,
    name: str,
    storage_path: str,
    mime_type: Optional[str] = None,
) -> tuple[EvidenceFile, int]:
    """(Re-)ingest bytes already in storage. Returns the file and its chunk count."""
    content = await storage.read(storage_path)
    mime_type = guess_mime_type(name, mime_type)
    file = await _upsert_file(
        db, user_id, name, storage_path, mime_type,
        size=len(content),
        sha256=hashlib.sha256(content).hexdigest(),
    )
    chunks = await _chunk_file(db, ai, file, content)
    return file, chunks


async def ingest_upload(
    db: AsyncSession,
    ai: AIClient,
    storage: EvidenceStorage,
    user_id: str,
    filename: str,
    content: bytes,
    declared_type: Optional[str] = None,
) -> tuple[EvidenceFile, int]:
    """Validate, store and ingest an uploaded file."""
    filename = sanitize_filename(filename) or "evidence"
    validate_upload(filename, len(content))

    stored = await storage.save(user_id, filename, content)
    mime_type = guess_mime_type(stored.name, declared_type)
    file = await _upsert_file(
        db, user_id, stored.name, stored.storage_path, mime_type,
        size=stored.size,
        sha256=stored.sha256,
    )
    chunks = await _chunk_file(db, ai, file, content)
    return file, chunks


async def ingest_text(
    db: AsyncSession,
    ai: AIClient,
    storage: EvidenceStorage,
    user_id: str,
    title: str,
    text: str,
    meta: Optional[dict] = None,
) -> tuple[EvidenceFile, int]:
    """Ingest pasted text (an email, a note) as a text/plain evidence file."""
    if not title or not title.strip() or not text or not text.strip():
        raise ValidationFailed("Missing required fields: name, text")

    content = text.encode("utf-8")
    name = sanitize_filename(title.strip()) or "pasted-text"
    if not Path(name).suffix:
        name = f"{name}.txt"

    stored = await storage.save(user_id, name, content)
    file = await _upsert_file(
        db, user_id, name, stored.storage_path, "text/plain",
        size=stored.size,
        sha256=stored.sha256,
        meta={**(meta or {}), "source": "pasted_text"},
    )
    chunks = await _chunk_file(db, ai, file, content)
    return file, chunks
