"""
Positional metadata for chunks.

Paginated sources carry inline ``[Page N]`` markers. When extraction did
not produce enough of them, markers are synthesized at evenly spaced
offsets. Time-based sources instead map character ranges onto
transcription segment timestamps.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..shared.observability import get_logger
from .models import Chunk, ExtractedSource, TranscriptSegment

logger = get_logger(__name__)

MARKER_PATTERN = re.compile(r"\[Page (\d+)\]")
DEFAULT_MIN_COVERAGE = 0.5


@dataclass(frozen=True)
class PageMarker:
    page: int
    offset: int


@dataclass(frozen=True)
class SegmentSpan:
    char_start: int
    char_end: int
    start_time: float
    end_time: float


@dataclass
class PageQualityReport:
    status: str  # ok | warn
    unique_pages: int
    total_chunks: int
    pages: List[int] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def find_markers(text: str) -> List[PageMarker]:
    return [PageMarker(int(m.group(1)), m.start()) for m in MARKER_PATTERN.finditer(text)]


def clean_text(text: str) -> str:
    """Normalize extracted text before markers are synthesized.

    Existing markers are dropped so the synthesized set is the only one.
    """
    cleaned = MARKER_PATTERN.sub("", text)
    lines = (line.strip() for line in cleaned.splitlines())
    return "\n".join(line for line in lines if line)


def marker_offsets(total_chars: int, units: int) -> List[int]:
    """Offsets (in the cleaned text) where each unit's marker goes."""
    if units < 1:
        return []
    per_unit = total_chars // units
    return [k * per_unit for k in range(units)]


def synthesize_markers(text: str, units: int) -> str:
    """Insert ``units`` markers at ``k * (len(text) // units)``.

    ``text`` is expected to be cleaned already.
    """
    offsets = marker_offsets(len(text), units)
    if not offsets:
        return text
    parts = []
    for page, offset in enumerate(offsets, start=1):
        end = offsets[page] if page < len(offsets) else len(text)
        prefix = "[Page %d]\n" % page if page == 1 else "\n\n[Page %d]\n" % page
        parts.append(prefix + text[offset:end])
    return "".join(parts)


def needs_synthesis(
    text: str, units: int, min_coverage: float = DEFAULT_MIN_COVERAGE
) -> bool:
    return len(find_markers(text)) < units * min_coverage


def locate_segments(
    segments: Sequence[TranscriptSegment], text: str
) -> List[SegmentSpan]:
    """Find each segment's text in ``text``, scanning forward.

    Segments whose text cannot be found are skipped.
    """
    spans: List[SegmentSpan] = []
    cursor = 0
    for segment in segments:
        segment_text = segment.text or ""
        if not segment_text.strip():
            continue
        position = text.find(segment_text, cursor)
        if position == -1:
            continue
        end = position + len(segment_text)
        spans.append(SegmentSpan(position, end, segment.start or 0.0, segment.end or 0.0))
        cursor = end
    return spans


def time_range_for(
    spans: Sequence[SegmentSpan], char_start: int, char_end: int
) -> Optional[Tuple[float, float]]:
    """Time range of the segments overlapping ``[char_start, char_end)``.

    Falls back to the nearest segments when nothing overlaps.
    """
    if not spans:
        return None

    overlapping = [s for s in spans if s.char_start < char_end and s.char_end > char_start]
    if overlapping:
        return overlapping[0].start_time, overlapping[-1].end_time

    before = [s for s in spans if s.char_end <= char_start]
    after = [s for s in spans if s.char_start >= char_end]
    if before and after:
        return before[-1].start_time, after[0].end_time
    if before:
        return before[-1].start_time, before[-1].end_time
    if after:
        return after[0].start_time, after[0].end_time
    return None


def map_chars_to_time_range(
    char_start: int,
    char_end: int,
    segments: Sequence[TranscriptSegment],
    full_text: str,
) -> Optional[Tuple[float, float]]:
    return time_range_for(locate_segments(segments, full_text), char_start, char_end)


class PageMarkerDetector:
    def __init__(
        self,
        min_coverage: float = DEFAULT_MIN_COVERAGE,
        min_unique_page_ratio: float = 0.1,
        single_page_warn: bool = True,
    ):
        self.min_coverage = min_coverage
        self.min_unique_page_ratio = min_unique_page_ratio
        self.single_page_warn = single_page_warn

    def ensure_markers(self, source: ExtractedSource) -> ExtractedSource:
        """Return ``source`` with enough page markers for its unit count.

        Time-based and single-unit sources are returned unchanged.
        """
        if source.is_time_based or source.unit_count <= 1:
            return source

        existing = len(find_markers(source.text))
        if not needs_synthesis(source.text, source.unit_count, self.min_coverage):
            logger.debug(
                "page_markers_present",
                markers=existing,
                units=source.unit_count,
            )
            return source

        cleaned = clean_text(source.text)
        marked = synthesize_markers(cleaned, source.unit_count)
        logger.info(
            "page_markers_synthesized",
            existing_markers=existing,
            units=source.unit_count,
            chars_per_unit=len(cleaned) // source.unit_count,
        )
        return ExtractedSource(
            text=marked,
            unit_count=source.unit_count,
            segments=source.segments,
            duration=source.duration,
            markers_synthesized=True,
        )

    def validate_page_distribution(self, chunks: Sequence[Chunk]) -> PageQualityReport:
        """Warn (never block) when page numbers look degenerate."""
        pages = sorted({c.page_number for c in chunks if c.page_number is not None})
        total = len(chunks)
        report = PageQualityReport(
            status="ok", unique_pages=len(pages), total_chunks=total, pages=pages
        )
        if not pages or total <= 1:
            return report

        if len(pages) == 1:
            if self.single_page_warn:
                report.status = "warn"
                report.message = f"All {total} chunks are on page {pages[0]}"
        elif len(pages) < total * self.min_unique_page_ratio:
            report.status = "warn"
            report.message = (
                f"Only {len(pages)} unique pages across {total} chunks"
            )

        if report.status == "warn":
            logger.warning(
                "page_distribution_suspicious",
                unique_pages=report.unique_pages,
                total_chunks=total,
                detail=report.message,
            )
        return report
