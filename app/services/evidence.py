"""
CaseCompass - Evidence Queries
Shared lookups for evidence files and their chunks.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.models.models import Chunk, EvidenceFile


async def get_file(db: AsyncSession, file_id: str, user_id: Optional[str] = None) -> EvidenceFile:
    """Load a file, optionally scoped to its owner. Raises NotFoundError."""
    query = select(EvidenceFile).where(EvidenceFile.id == file_id)
    if user_id is not None:
        query = query.where(EvidenceFile.user_id == user_id)
    file = (await db.execute(query)).scalar_one_or_none()
    if file is None:
        raise NotFoundError("File not found", details={"file_id": file_id})
    return file


async def get_chunks(db: AsyncSession, file_id: str, limit: Optional[int] = None) -> list[Chunk]:
    """Chunks of a file in seq order."""
    query = select(Chunk).where(Chunk.file_id == file_id).order_by(Chunk.seq)
    if limit:
        query = query.limit(limit)
    return list((await db.execute(query)).scalars().all())


async def list_processed_files(db: AsyncSession, user_id: str) -> list[EvidenceFile]:
    """The user's processed files, oldest first."""
    result = await db.execute(
        select(EvidenceFile)
        .where(EvidenceFile.user_id == user_id, EvidenceFile.status == "processed")
        .order_by(EvidenceFile.created_at, EvidenceFile.id)
    )
    return list(result.scalars().all())
