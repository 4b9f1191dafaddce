"""
CaseCompass - Text Extraction & Chunking
Turns uploaded evidence into page texts, then into overlapping chunks.

Supported content types:
- text/*            decoded as UTF-8
- application/pdf   per-page text via pdfplumber
- image/*           OCR through the vision model
"""

import io
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import pdfplumber

from app.core.config import get_settings
from app.core.errors import UnsupportedMediaType, ValidationFailed
from app.services.ai_client import AIClient

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class PageText:
    """Text of one page (or the whole document for non-paged types)."""
    page: int
    text: str
    meta: dict = field(default_factory=dict)


def chunk_text(text: str, target: Optional[int] = None, overlap: Optional[int] = None) -> list[dict]:
    """
    Split text into overlapping windows.

    Every window advances seq, even when its trimmed text is empty and is
    therefore dropped, so seq numbers reflect position in the source.
    Returns [{"seq": int, "text": str}].
    """
    settings = get_settings()
    target = target or settings.chunk_target_chars
    overlap = settings.chunk_overlap_chars if overlap is None else overlap
    if overlap >= target:
        raise ValueError("overlap must be smaller than target")

    chunks = []
    text = text or ""
    i = 0
    seq = 0
    while i < len(text):
        end = min(len(text), i + target)
        piece = text[i:end].strip()
        if piece:
            chunks.append({"seq": seq, "text": piece})
        seq += 1
        if end >= len(text):
            break
        i = end - min(overlap, end - i)
    return chunks


def _extract_pdf_pages(content: bytes) -> list[PageText]:
    pages = []
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                raw = page.extract_text() or ""
                pages.append(PageText(page=number, text=_WHITESPACE.sub(" ", raw).strip(), meta={"page": number}))
    except Exception as e:
        logger.warning("PDF extraction failed: %s", e)
        raise ValidationFailed("Could not read PDF", details={"reason": str(e)}) from e
    return pages


async def extract_pages(content: bytes, mime_type: str, ai: Optional[AIClient] = None) -> list[PageText]:
    """
    Extract text from evidence content by content type.
    Raises UnsupportedMediaType for anything we cannot read.
    """
    mime_type = (mime_type or "application/octet-stream").split(";")[0].strip().lower()

    if mime_type.startswith("text/"):
        return [PageText(page=1, text=content.decode("utf-8", errors="replace"))]

    if mime_type == "application/pdf":
        pages = _extract_pdf_pages(content)
        logger.info("Extracted %d PDF pages", len(pages))
        return pages

    if mime_type.startswith("image/"):
        if ai is None:
            raise UnsupportedMediaType("Image OCR requires the AI service")
        text = await ai.vision_ocr(content, mime_type)
        return [PageText(page=1, text=text, meta={"source": "ocr", "page": 1})]

    raise UnsupportedMediaType(f"Unsupported content-type: {mime_type}")


def build_chunk_rows(pages: list[PageText]) -> list[dict]:
    """
    Chunk every page and renumber seq across the whole file.
    Page metadata is carried onto each chunk.
    """
    rows = []
    seq = 0
    for page in pages:
        for chunk in chunk_text(page.text):
            rows.append({"seq": seq, "text": chunk["text"], "meta": dict(page.meta)})
            seq += 1
    return rows
