# Shared fixtures and in-process fakes for the ingestion test suite

import asyncio
import os
import socket
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENV"] = "development"
os.environ.pop("CONFIG_PATH", None)
os.environ.setdefault("REDIS_TEST_URI", "redis://localhost:6379/15")

from docingest.clients.embedding_client import Transcription  # noqa: E402
from docingest.ingestion.persistence import InMemoryJobStore  # noqa: E402
from docingest.shared.config import (  # noqa: E402
    ChunkingConfig,
    Config,
    EmbeddingConfig,
    ProcessingConfig,
    RetryConfig,
)
from docingest.shared.errors import ValidationFault  # noqa: E402
from docingest.shared.resilience import RetryPolicy, RetryStrategy  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeEmbeddingClient:
    """
    Deterministic embedding/transcription service.

    ``poisoned`` texts make any request containing them fail with a
    ValidationFault. ``failures`` is a list of exceptions raised by the
    next calls, one per call, before normal behaviour resumes.
    """

    def __init__(self, dimensions: int = 4):
        self.dimensions = dimensions
        self.calls: List[List[str]] = []
        self.poisoned = set()
        self.failures: List[Exception] = []
        self.fail_with: Optional[Exception] = None
        self.transcription = Transcription(text="")
        self.transcribe_calls = 0
        self.closed = False

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        if self.fail_with is not None:
            raise self.fail_with
        bad = [t for t in texts if t in self.poisoned]
        if bad:
            raise ValidationFault(f"Invalid input: {len(bad)} poisoned text(s)")
        return [[float(len(t))] + [0.5] * (self.dimensions - 1) for t in texts]

    async def transcribe(self, data: bytes, filename: str) -> Transcription:
        self.transcribe_calls += 1
        return self.transcription

    async def aclose(self) -> None:
        self.closed = True


class MemoryStorage:
    """Source storage backed by a dict of path -> bytes."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files = dict(files or {})
        self.fetches: List[str] = []

    async def fetch(self, path: str) -> bytes:
        self.fetches.append(path)
        if path not in self.files:
            raise ValidationFault(f"Source file not found: {path}")
        return self.files[path]


class BlockingPipeline:
    """Pipeline stand-in whose runs block until released by the test."""

    def __init__(self):
        self.started: List[str] = []
        self._events: Dict[str, asyncio.Event] = {}

    def _event(self, job_id: str) -> asyncio.Event:
        return self._events.setdefault(job_id, asyncio.Event())

    async def run(self, job_id, store, embedding_client, metadata=None):
        self.started.append(job_id)
        await self._event(job_id).wait()
        return job_id

    def finish(self, job_id: str) -> None:
        self._event(job_id).set()


async def settle(iterations: int = 20) -> None:
    """Let queued callbacks and freshly created tasks run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


def make_config(**sections) -> Config:
    """Small, fast configuration for pipeline tests."""
    defaults = {
        "processing": ProcessingConfig(max_concurrent_jobs=2),
        "chunking": ChunkingConfig(chunk_size_tokens=100, overlap_tokens=0),
        "embedding": EmbeddingConfig(batch_size=4, base_batch_delay_ms=0),
        "retry": RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter=False),
    }
    defaults.update(sections)
    return Config(**defaults)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def retry(recording_sleep):
    """Retry strategy with deterministic backoff and no real sleeping."""
    return RetryStrategy(
        RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0, jitter=False),
        sleep=recording_sleep,
        rng=lambda: 0.0,
    )


@pytest.fixture(scope="session")
def redis_available():
    """
    Check if a Redis server is reachable.
    Redis-backed tests are skipped otherwise.
    """
    host, port = "localhost", 6379
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(2)
    result = sock.connect_ex((host, port))
    sock.close()
    if result != 0:
        pytest.skip(f"redis not available at {host}:{port}")
    return os.environ["REDIS_TEST_URI"]
