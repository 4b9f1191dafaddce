"""
CaseCompass - Evidence Retrieval
Finds the chunks of a user's evidence (and the NSW legal sections) most
relevant to a question and numbers them as citations.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import AIServiceError
from app.models.models import Chunk, EvidenceFile
from app.services.ai_client import AIClient
from app.services.legal_search import keyword_search, query_terms

logger = logging.getLogger(__name__)

KEYWORD_CANDIDATES = 20
LEGAL_RESOURCES = 8
EXCERPT_CHARS = 500

# Added to every query so pattern evidence surfaces even when the question is vague
COERCIVE_CONTROL_EXPANSIONS = [
    "coercive control domestic violence",
    "emotional abuse financial control",
    "intimidation stalking threats",
    "pattern behaviour isolation monitoring",
]


@dataclass
class RetrievedContext:
    citations: list[dict] = field(default_factory=list)
    context_blocks: list[str] = field(default_factory=list)


def expand_query(query: str) -> list[str]:
    """Distinct search terms of the query plus the coercive-control vocabulary."""
    return query_terms(" ".join([query, *COERCIVE_CONTROL_EXPANSIONS]))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def round_robin(chunks: list[Chunk], limit: int) -> list[Chunk]:
    """Take the best chunk of each file, then the second best, and so on."""
    by_file: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        by_file.setdefault(chunk.file_id, []).append(chunk)

    selected: list[Chunk] = []
    layer = 0
    while len(selected) < limit:
        advanced = False
        for file_chunks in by_file.values():
            if layer < len(file_chunks):
                selected.append(file_chunks[layer])
                advanced = True
                if len(selected) >= limit:
                    break
        if not advanced:
            break
        layer += 1
    return selected


async def keyword_chunks(db: AsyncSession, user_id: str, terms: list[str], limit: int = KEYWORD_CANDIDATES) -> list[Chunk]:
    """User chunks containing any term, most term hits first."""
    if not terms:
        return []
    result = await db.execute(
        select(Chunk)
        .join(EvidenceFile, EvidenceFile.id == Chunk.file_id)
        .where(
            EvidenceFile.user_id == user_id,
            or_(*(Chunk.text.ilike(f"%{term}%") for term in terms)),
        )
        .order_by(EvidenceFile.created_at, Chunk.seq)
    )
    chunks = list(result.scalars().all())

    def hits(chunk: Chunk) -> int:
        text = chunk.text.lower()
        return sum(1 for term in terms if term in text)

    chunks.sort(key=hits, reverse=True)
    return chunks[:limit]


async def scored_vector_chunks(
    db: AsyncSession,
    ai: Optional[AIClient],
    user_id: str,
    query: str,
    threshold: float,
    limit: int,
) -> list[tuple[float, Chunk]]:
    """(similarity, chunk) pairs at or above threshold, best first; empty when embeddings are unavailable."""
    if ai is None or not ai.is_available:
        return []

    result = await db.execute(
        select(Chunk)
        .join(EvidenceFile, EvidenceFile.id == Chunk.file_id)
        .where(EvidenceFile.user_id == user_id, Chunk.embedding.is_not(None))
    )
    candidates = list(result.scalars().all())
    if not candidates:
        return []

    try:
        query_vector = await ai.embed(query)
    except AIServiceError as e:
        logger.warning("Query embedding failed, using keyword retrieval only: %s", e.message)
        return []

    scored = [(cosine_similarity(query_vector, c.embedding), c) for c in candidates]
    scored = [(score, c) for score, c in scored if score >= threshold]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return scored[:limit]


async def vector_chunks(db: AsyncSession, ai: Optional[AIClient], user_id: str, query: str) -> list[Chunk]:
    """User chunks whose embedding is close to the query's; empty when embeddings are unavailable."""
    settings = get_settings()
    scored = await scored_vector_chunks(
        db, ai, user_id, query, settings.retrieval_similarity_threshold, settings.retrieval_max_citations
    )
    return [c for _, c in scored]


async def retrieve_context(
    db: AsyncSession,
    user_id: str,
    query: str,
    ai: Optional[AIClient] = None,
) -> RetrievedContext:
    """Citations and prompt context blocks for a question."""
    context = RetrievedContext()
    if not query:
        return context

    settings = get_settings()
    vector_hits = await vector_chunks(db, ai, user_id, query)
    keyword_hits = await keyword_chunks(db, user_id, expand_query(query))

    seen: set[str] = set()
    merged = []
    for chunk in [*vector_hits, *keyword_hits]:
        if chunk.id not in seen:
            seen.add(chunk.id)
            merged.append(chunk)

    selected = round_robin(merged, settings.retrieval_max_citations)
    if selected:
        names = dict((await db.execute(
            select(EvidenceFile.id, EvidenceFile.name).where(
                EvidenceFile.id.in_(list({c.file_id for c in selected}))
            )
        )).all())
        for index, chunk in enumerate(selected, start=1):
            citation = {
                "index": index,
                "file_id": chunk.file_id,
                "file_name": names.get(chunk.file_id, "File"),
                "seq": chunk.seq,
                "excerpt": chunk.text[:EXCERPT_CHARS],
                "meta": chunk.meta or {},
                "type": "user_file",
            }
            context.citations.append(citation)
            context.context_blocks.append(
                f"[CITATION {index}] {citation['file_name']}#{citation['seq']}: {citation['excerpt']}"
            )

    sections = await keyword_search(
        db, f"{query} coercive control domestic violence", settings.default_jurisdiction, limit=LEGAL_RESOURCES
    )
    for offset, section in enumerate(sections, start=1):
        index = len(selected) + offset
        reference = f" (Reference: {section.citation_format})" if section.citation_format else ""
        citation = {
            "index": index,
            "file_id": section.id,
            "file_name": f"NSW Legal Resource: {section.title}",
            "seq": 1,
            "excerpt": f"{section.content[:EXCERPT_CHARS]}{reference}",
            "meta": {"act_title": section.act_title, "section_number": section.section_number},
            "type": "legal_resource",
        }
        context.citations.append(citation)
        context.context_blocks.append(f"[CITATION {index}] {citation['file_name']}: {citation['excerpt']}")

    logger.info(
        "Retrieved %d evidence and %d legal citations for user %s",
        len(selected), len(sections), user_id,
    )
    return context
