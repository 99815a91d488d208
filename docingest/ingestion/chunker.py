"""Overlapping fixed-size chunking with page and time attribution."""

from typing import List, Optional, Sequence

from ..shared.errors import ValidationFault
from .models import Chunk, TranscriptSegment
from .page_markers import find_markers, locate_segments, time_range_for

CHARS_PER_TOKEN = 4
DEFAULT_CHUNK_SIZE = 500
DEFAULT_OVERLAP = 100


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    total_pages: Optional[int] = 1,
    segments: Optional[Sequence[TranscriptSegment]] = None,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[Chunk]:
    """
    Split text into overlapping windows of ``chunk_size`` tokens.

    A chunk's page is the last ``[Page N]`` marker inside its window, or
    the last marker before it, clamped to ``[1, total_pages]``. When
    ``segments`` are given, chunks get start/end times instead of pages.

    Raises:
        ValidationFault: empty text, bad sizes, or nothing but whitespace
    """
    if not isinstance(text, str) or not text.strip():
        raise ValidationFault("Cannot chunk empty text")
    if chunk_size < 100 or chunk_size > 5000:
        raise ValidationFault(f"chunk_size must be between 100 and 5000, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValidationFault(
            f"overlap must be between 0 and chunk_size ({chunk_size}), got {overlap}"
        )

    window = chunk_size * chars_per_token
    step = window - overlap * chars_per_token
    markers = find_markers(text)
    spans = locate_segments(segments, text) if segments else []
    time_based = bool(segments)
    max_page = total_pages or None

    chunks: List[Chunk] = []
    start = 0
    while start < len(text):
        end = min(start + window, len(text))
        content = text[start:end].strip()
        if content:
            page = None
            if not time_based:
                page = 1
                inside = [m for m in markers if start <= m.offset < end]
                if inside:
                    page = inside[-1].page
                else:
                    before = [m for m in markers if m.offset < start]
                    if before:
                        page = before[-1].page
                page = max(1, page)
                if max_page is not None:
                    page = min(page, max_page)

            start_time = end_time = None
            if spans:
                time_range = time_range_for(spans, start, end)
                if time_range:
                    start_time, end_time = time_range

            chunks.append(
                Chunk(
                    index=len(chunks),
                    content=content,
                    char_start=start,
                    char_end=end,
                    tokens_approx=max(1, len(content) // chars_per_token),
                    page_number=page,
                    page_markers_found=len(markers),
                    start_time=start_time,
                    end_time=end_time,
                )
            )
        start += step

    if not chunks:
        raise ValidationFault("Chunking produced no chunks")
    return chunks
