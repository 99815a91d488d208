"""Records shared by the ingestion stages."""

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    DOWNLOAD = "download"
    EXTRACT = "extract"
    CHUNK = "chunk"
    EMBED = "embed"
    STORE = "store"


STAGE_ORDER: List[Stage] = [
    Stage.DOWNLOAD,
    Stage.EXTRACT,
    Stage.CHUNK,
    Stage.EMBED,
    Stage.STORE,
]

# Sub-step of the store stage; treated as critical by partial-failure policy
CREATE_DOCUMENT = "create_document"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


TERMINAL_STATUSES = {JobStatus.READY.value, JobStatus.ERROR.value}


class SourceKind(str, Enum):
    PDF = "pdf"
    AUDIO = "audio"
    TEXT = "text"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProcessingJob:
    job_id: str
    source_path: str
    source_kind: str = SourceKind.TEXT.value
    title: Optional[str] = None
    owner_id: Optional[str] = None
    status: str = JobStatus.PENDING.value
    stage: Optional[str] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    document_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: Optional[float] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ProcessingJob":
        known = {k: v for k, v in data.items() if k in ProcessingJob.__dataclass_fields__}
        return ProcessingJob(**known)

    @staticmethod
    def from_json(s: str) -> "ProcessingJob":
        return ProcessingJob.from_dict(json.loads(s))


@dataclass
class Checkpoint:
    """Resume point saved in the job's metadata under ``checkpoint``."""

    stage: str
    completed: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def next_stage(self) -> Optional[Stage]:
        for stage in STAGE_ORDER:
            if stage.value not in self.completed:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Checkpoint":
        return Checkpoint(
            stage=data["stage"],
            completed=list(data.get("completed") or []),
            data=dict(data.get("data") or {}),
            timestamp=data.get("timestamp") or utcnow_iso(),
            errors=list(data.get("errors") or []),
        )


@dataclass(frozen=True)
class Chunk:
    index: int
    content: str
    char_start: int
    char_end: int
    tokens_approx: int
    page_number: Optional[int] = None
    page_markers_found: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            "char_start": self.char_start,
            "char_end": self.char_end,
            "tokens_approx": self.tokens_approx,
            "page_markers_found": self.page_markers_found,
        }
        if self.page_number is not None:
            meta["page_number"] = self.page_number
        if self.start_time is not None:
            meta["start_time"] = self.start_time
            meta["end_time"] = self.end_time
        return meta

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Chunk":
        return Chunk(**data)


@dataclass(frozen=True)
class TranscriptSegment:
    start: float
    end: float
    text: str


@dataclass
class ExtractedSource:
    """Text of a source plus the positional units it was split into.

    ``unit_count`` is the authoritative number of pages for paginated
    sources and 1 for raw text. Time-based media carries ``segments``.
    """

    text: str
    unit_count: int = 1
    segments: List[TranscriptSegment] = field(default_factory=list)
    duration: Optional[float] = None
    markers_synthesized: bool = False

    @property
    def is_time_based(self) -> bool:
        return bool(self.segments)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ExtractedSource":
        segments = [TranscriptSegment(**s) for s in data.get("segments") or []]
        return ExtractedSource(
            text=data["text"],
            unit_count=data.get("unit_count", 1),
            segments=segments,
            duration=data.get("duration"),
            markers_synthesized=data.get("markers_synthesized", False),
        )


@dataclass
class StageOutcome:
    """Successes and failures produced by one stage."""

    successes: List[Any] = field(default_factory=list)
    failures: List[Any] = field(default_factory=list)
    total: Optional[int] = None

    def __post_init__(self) -> None:
        if self.total is None:
            self.total = len(self.successes) + len(self.failures)

    @property
    def success_rate(self) -> float:
        return len(self.successes) / self.total if self.total else 0.0


@dataclass(frozen=True)
class EmbeddedChunk:
    chunk: Chunk
    embedding: List[float]
