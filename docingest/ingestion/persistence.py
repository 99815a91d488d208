"""
Persistence collaborators used by the pipeline.

The pipeline only depends on the ``JobStore`` and ``SourceStorage``
protocols. Two job stores ship with the package: an in-process one for
tests and single-shot CLI runs, and a Redis-backed one for the service.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from redis import Redis

from ..shared.errors import StorageFault, ValidationFault
from ..shared.observability import get_logger
from .models import ProcessingJob

logger = get_logger(__name__)

DOCUMENTS = "documents"
DOCUMENT_CHUNKS = "document_chunks"


class JobNotFound(StorageFault):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", retryable=False, context={"job_id": job_id})
        self.job_id = job_id


class JobStore(Protocol):
    async def create_job(self, job: ProcessingJob) -> ProcessingJob: ...

    async def get_job(self, job_id: str) -> Optional[ProcessingJob]: ...

    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob: ...

    async def list_jobs(self, status: Optional[str] = None) -> List[ProcessingJob]: ...

    async def insert_records(
        self, collection: str, owner_id: str, records: List[Dict[str, Any]]
    ) -> int: ...

    async def get_records(self, collection: str, owner_id: str) -> List[Dict[str, Any]]: ...

    async def delete_records(self, collection: str, owner_id: str) -> int: ...


class SourceStorage(Protocol):
    async def fetch(self, path: str) -> bytes: ...


def _apply_fields(job: ProcessingJob, fields: Dict[str, Any]) -> ProcessingJob:
    for key, value in fields.items():
        if key not in ProcessingJob.__dataclass_fields__ or key == "job_id":
            raise ValidationFault(f"Unknown job field: {key}")
        setattr(job, key, value)
    job.updated_at = fields.get("updated_at", time.time())
    return job


def _record_key(record: Dict[str, Any]) -> str:
    if record.get("id") is None:
        raise ValidationFault("Records must carry an 'id'")
    return str(record["id"])


class InMemoryJobStore:
    """Dictionary-backed store. Records are grouped per owner id."""

    def __init__(self) -> None:
        self._jobs: Dict[str, ProcessingJob] = {}
        self._records: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = {}

    async def create_job(self, job: ProcessingJob) -> ProcessingJob:
        self._jobs[job.job_id] = ProcessingJob.from_dict(job.to_dict())
        return job

    async def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        job = self._jobs.get(job_id)
        # Hand out copies so callers cannot mutate stored state
        return ProcessingJob.from_dict(job.to_dict()) if job else None

    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        _apply_fields(job, fields)
        return ProcessingJob.from_dict(job.to_dict())

    async def list_jobs(self, status: Optional[str] = None) -> List[ProcessingJob]:
        return [
            ProcessingJob.from_dict(job.to_dict())
            for job in self._jobs.values()
            if status is None or job.status == status
        ]

    async def insert_records(
        self, collection: str, owner_id: str, records: List[Dict[str, Any]]
    ) -> int:
        bucket = self._records.setdefault(collection, {}).setdefault(owner_id, {})
        for record in records:
            bucket[_record_key(record)] = dict(record)
        return len(records)

    async def get_records(self, collection: str, owner_id: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._records.get(collection, {}).get(owner_id, {}).values()]

    async def delete_records(self, collection: str, owner_id: str) -> int:
        removed = self._records.get(collection, {}).pop(owner_id, {})
        return len(removed)


class RedisJobStore:
    """
    Redis-backed job store.

    Jobs live as JSON in a single hash (``{ns}:jobs``); records are JSON
    strings in one hash per collection and owner
    (``{ns}:{collection}:{owner_id}``), keyed by record id, so a retried
    insert overwrites instead of duplicating. Records come back ordered by
    ``chunk_index``. Blocking client calls run in a worker thread so the
    event loop never stalls on Redis I/O.
    """

    def __init__(self, redis_client: Redis, namespace: str = "docingest"):
        self.redis = redis_client
        self.namespace = namespace
        self.jobs_key = f"{namespace}:jobs"

    @classmethod
    def from_url(cls, url: str, namespace: str = "docingest") -> "RedisJobStore":
        return cls(Redis.from_url(url, decode_responses=True), namespace=namespace)

    def _records_key(self, collection: str, owner_id: str) -> str:
        return f"{self.namespace}:{collection}:{owner_id}"

    async def ping(self) -> bool:
        return bool(await asyncio.to_thread(self.redis.ping))

    async def create_job(self, job: ProcessingJob) -> ProcessingJob:
        await asyncio.to_thread(self.redis.hset, self.jobs_key, job.job_id, job.to_json())
        return job

    async def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        raw = await asyncio.to_thread(self.redis.hget, self.jobs_key, job_id)
        return ProcessingJob.from_json(raw) if raw else None

    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob:
        # Single writer per job (the pipeline run), so read-modify-write is safe
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        _apply_fields(job, fields)
        await asyncio.to_thread(self.redis.hset, self.jobs_key, job_id, job.to_json())
        return job

    async def list_jobs(self, status: Optional[str] = None) -> List[ProcessingJob]:
        raw_jobs = await asyncio.to_thread(self.redis.hvals, self.jobs_key)
        jobs = [ProcessingJob.from_json(raw) for raw in raw_jobs]
        return [j for j in jobs if status is None or j.status == status]

    async def insert_records(
        self, collection: str, owner_id: str, records: List[Dict[str, Any]]
    ) -> int:
        if not records:
            return 0
        mapping = {_record_key(r): json.dumps(r, ensure_ascii=False) for r in records}
        await asyncio.to_thread(
            self.redis.hset, self._records_key(collection, owner_id), mapping=mapping
        )
        return len(records)

    async def get_records(self, collection: str, owner_id: str) -> List[Dict[str, Any]]:
        raw = await asyncio.to_thread(self.redis.hvals, self._records_key(collection, owner_id))
        records = [json.loads(r) for r in raw]
        return sorted(records, key=lambda r: r.get("chunk_index", 0))

    async def delete_records(self, collection: str, owner_id: str) -> int:
        key = self._records_key(collection, owner_id)
        count = await asyncio.to_thread(self.redis.hlen, key)
        await asyncio.to_thread(self.redis.delete, key)
        return int(count)


class LocalFileStorage:
    """Reads uploaded sources from a local directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root).resolve() if root else None

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if self.root is None:
            return candidate
        resolved = (self.root / candidate).resolve()
        if self.root not in resolved.parents and resolved != self.root:
            raise ValidationFault(f"Path escapes storage root: {path}")
        return resolved

    async def fetch(self, path: str) -> bytes:
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise ValidationFault(f"Source file not found: {path}")
        return await asyncio.to_thread(resolved.read_bytes)
