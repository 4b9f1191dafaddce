"""
CaseCompass - Extraction & Ingest Validation Tests
Tests for chunking, page renumbering, MIME detection and upload checks.
"""

import pytest

from app.core.errors import UnsupportedMediaType, ValidationFailed
from app.services.extraction import PageText, build_chunk_rows, chunk_text, extract_pages
from app.services.ingestion import acknowledgement, guess_mime_type, read_upload, validate_upload


# =============================================================================
# Chunking
# =============================================================================

class TestChunkText:
    """Overlapping window chunker."""

    def test_short_text_is_one_chunk(self):
        assert chunk_text("Hello there", target=100, overlap=10) == [{"seq": 0, "text": "Hello there"}]

    def test_empty_text_has_no_chunks(self):
        assert chunk_text("", target=100, overlap=10) == []

    def test_windows_overlap(self):
        text = "abcdefghij" * 3  # 30 chars
        chunks = chunk_text(text, target=10, overlap=3)
        assert chunks[0]["text"] == "abcdefghij"
        # Next window starts 3 characters before the previous end
        assert chunks[1]["text"] == text[7:17]
        assert chunks[-1]["text"].endswith("j")

    def test_whitespace_windows_are_dropped_but_seq_advances(self):
        text = "a" * 10 + " " * 20 + "b" * 10
        chunks = chunk_text(text, target=10, overlap=0)
        assert [c["text"] for c in chunks] == ["a" * 10, "b" * 10]
        assert [c["seq"] for c in chunks] == [0, 3]

    def test_overlap_must_be_smaller_than_target(self):
        with pytest.raises(ValueError):
            chunk_text("some text", target=10, overlap=10)

    def test_defaults_come_from_settings(self, settings):
        text = "x" * (settings.chunk_target_chars + 1)
        chunks = chunk_text(text)
        assert len(chunks) == 2
        assert len(chunks[0]["text"]) == settings.chunk_target_chars


class TestBuildChunkRows:
    """Chunks across pages are numbered continuously and keep page metadata."""

    def test_seq_runs_across_pages(self):
        pages = [
            PageText(page=1, text="First page", meta={"page": 1}),
            PageText(page=2, text="Second page", meta={"page": 2}),
        ]
        rows = build_chunk_rows(pages)
        assert [r["seq"] for r in rows] == [0, 1]
        assert rows[1]["meta"] == {"page": 2}

    def test_blank_pages_produce_nothing(self):
        assert build_chunk_rows([PageText(page=1, text="   ")]) == []


# =============================================================================
# Content Types
# =============================================================================

@pytest.mark.anyio
async def test_extract_plain_text():
    pages = await extract_pages("He took my keys".encode(), "text/plain; charset=utf-8")
    assert pages[0].text == "He took my keys"


@pytest.mark.anyio
async def test_extract_unsupported_type():
    with pytest.raises(UnsupportedMediaType):
        await extract_pages(b"\x00\x01", "application/zip")


@pytest.mark.anyio
async def test_extract_image_without_ai():
    with pytest.raises(UnsupportedMediaType):
        await extract_pages(b"\x89PNG", "image/png", ai=None)


class TestGuessMimeType:

    def test_declared_type_wins_when_specific(self):
        assert guess_mime_type("note.bin", "application/pdf") == "application/pdf"

    def test_generic_declared_type_falls_back_to_extension(self):
        assert guess_mime_type("statement.pdf", "application/octet-stream") == "application/pdf"

    def test_text_extensions(self):
        assert guess_mime_type("diary.txt").startswith("text/")


class TestValidateUpload:

    def test_accepts_allowed_extension(self):
        validate_upload("messages.txt", 120)

    def test_rejects_unknown_extension(self):
        with pytest.raises(ValidationFailed):
            validate_upload("payload.exe", 120)

    def test_rejects_empty_file(self):
        with pytest.raises(ValidationFailed):
            validate_upload("empty.txt", 0)

    def test_rejects_oversized_file(self, settings):
        with pytest.raises(ValidationFailed):
            validate_upload("big.pdf", settings.max_upload_size_mb * 1024 * 1024 + 1)


class FakeUpload:
    """Records how many bytes were requested."""

    def __init__(self, content: bytes):
        self.content = content
        self.requested = None

    async def read(self, size: int = -1) -> bytes:
        self.requested = size
        return self.content if size < 0 else self.content[:size]


class TestReadUpload:

    @pytest.mark.anyio
    async def test_reads_at_most_one_byte_past_limit(self):
        upload = FakeUpload(b"x" * (1024 * 1024 + 10))
        with pytest.raises(ValidationFailed) as excinfo:
            await read_upload(upload, max_mb=1)
        assert upload.requested == 1024 * 1024 + 1
        assert excinfo.value.message == "File exceeds 1 MB limit"

    @pytest.mark.anyio
    async def test_file_at_limit_is_read_whole(self):
        upload = FakeUpload(b"x" * (1024 * 1024))
        assert len(await read_upload(upload, max_mb=1)) == 1024 * 1024


def test_acknowledgement_mentions_file():
    ack = acknowledgement("texts.txt", orchestrating=True)
    assert "texts.txt" in ack["summary"]
