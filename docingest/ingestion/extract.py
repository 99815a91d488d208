"""Turn raw source bytes into text with positional units."""

import asyncio
from pathlib import Path

import fitz

from ..clients.embedding_client import EmbeddingService
from ..shared.errors import ExtractionFault, ProcessingFault
from ..shared.observability import get_logger
from .models import ExtractedSource, SourceKind

logger = get_logger(__name__)

PDF_SUFFIXES = {".pdf"}
AUDIO_SUFFIXES = {".mp3", ".m4a", ".wav", ".webm", ".ogg", ".flac", ".mp4", ".mpeg"}


def detect_source_kind(path: str) -> SourceKind:
    suffix = Path(path).suffix.lower()
    if suffix in PDF_SUFFIXES:
        return SourceKind.PDF
    if suffix in AUDIO_SUFFIXES:
        return SourceKind.AUDIO
    return SourceKind.TEXT


def extract_pdf_text(data: bytes) -> ExtractedSource:
    """Extract page-wise text, prefixing each non-empty page with ``[Page N]``.

    The page count comes from the document itself, so scanned pages that
    yield no text still count towards ``unit_count``.
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ExtractionFault(f"Could not open PDF: {exc}") from exc

    with doc:
        page_count = doc.page_count
        parts = []
        for number, page in enumerate(doc, start=1):
            page_text = page.get_text("text").strip()
            if not page_text:
                continue
            separator = "" if not parts else "\n\n"
            parts.append(f"{separator}[Page {number}]\n{page_text}")

    text = "".join(parts)
    if not text.strip():
        raise ExtractionFault("PDF contains no extractable text")
    return ExtractedSource(text=text, unit_count=max(1, page_count))


def extract_plain_text(data: bytes) -> ExtractedSource:
    text = data.decode("utf-8", errors="replace")
    if not text.strip():
        raise ExtractionFault("Text file is empty")
    return ExtractedSource(text=text, unit_count=1)


async def extract_audio(
    data: bytes, filename: str, client: EmbeddingService
) -> ExtractedSource:
    transcription = await client.transcribe(data, filename)
    if not transcription.text.strip():
        raise ExtractionFault("Transcription returned no text")
    return ExtractedSource(
        text=transcription.text,
        unit_count=1,
        segments=list(transcription.segments),
        duration=transcription.duration,
    )


async def extract_source(
    data: bytes,
    kind: str,
    filename: str,
    client: EmbeddingService,
) -> ExtractedSource:
    """Dispatch on source kind. PDF parsing runs in a worker thread.

    Raises:
        ExtractionFault: the source yields no usable text
        ProcessingFault: the transcription service failed (retryable kinds pass through)
    """
    kind = SourceKind(kind)
    try:
        if kind == SourceKind.PDF:
            source = await asyncio.to_thread(extract_pdf_text, data)
        elif kind == SourceKind.AUDIO:
            source = await extract_audio(data, filename, client)
        else:
            source = extract_plain_text(data)
    except ProcessingFault:
        raise
    except Exception as exc:
        raise ExtractionFault(f"Failed to extract {kind.value} source: {exc}") from exc

    logger.info(
        "source_extracted",
        kind=kind.value,
        chars=len(source.text),
        units=source.unit_count,
        segments=len(source.segments),
    )
    return source
