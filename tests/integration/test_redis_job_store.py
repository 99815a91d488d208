"""
RedisJobStore against a live Redis server.

Skipped when nothing listens on localhost:6379. Each test uses its own
namespace and removes its keys afterwards.
"""

import uuid

import pytest
from redis import Redis

from docingest.ingestion.models import ProcessingJob
from docingest.ingestion.persistence import DOCUMENT_CHUNKS, JobNotFound, RedisJobStore
from docingest.ingestion.recovery import ErrorRecovery, create_checkpoint

pytestmark = pytest.mark.integration


@pytest.fixture
def redis_store(redis_available):
    client = Redis.from_url(redis_available, decode_responses=True)
    namespace = f"docingest-test-{uuid.uuid4().hex[:8]}"
    store = RedisJobStore(client, namespace=namespace)
    yield store
    keys = client.keys(f"{namespace}:*")
    if keys:
        client.delete(*keys)
    client.close()


class TestRedisJobStore:
    @pytest.mark.asyncio
    async def test_ping(self, redis_store):
        assert await redis_store.ping() is True

    @pytest.mark.asyncio
    async def test_job_round_trip(self, redis_store):
        await redis_store.create_job(
            ProcessingJob(job_id="job-1", source_path="a.pdf", source_kind="pdf")
        )

        updated = await redis_store.update_job("job-1", status="processing", stage="extract")
        fetched = await redis_store.get_job("job-1")

        assert updated.status == "processing"
        assert fetched.stage == "extract"
        assert fetched.source_kind == "pdf"
        assert [j.job_id for j in await redis_store.list_jobs(status="processing")] == ["job-1"]
        assert await redis_store.list_jobs(status="ready") == []

    @pytest.mark.asyncio
    async def test_update_missing_job(self, redis_store):
        with pytest.raises(JobNotFound):
            await redis_store.update_job("ghost", status="ready")

    @pytest.mark.asyncio
    async def test_records(self, redis_store):
        records = [{"id": f"doc-1:{i}", "chunk_index": i} for i in range(3)]

        assert await redis_store.insert_records(DOCUMENT_CHUNKS, "doc-1", records) == 3
        assert await redis_store.get_records(DOCUMENT_CHUNKS, "doc-1") == records
        await redis_store.insert_records(DOCUMENT_CHUNKS, "doc-1", records[:2])
        assert await redis_store.get_records(DOCUMENT_CHUNKS, "doc-1") == records
        assert await redis_store.delete_records(DOCUMENT_CHUNKS, "doc-1") == 3
        assert await redis_store.get_records(DOCUMENT_CHUNKS, "doc-1") == []

    @pytest.mark.asyncio
    async def test_checkpoint_survives_serialization(self, redis_store):
        await redis_store.create_job(ProcessingJob(job_id="job-1", source_path="a.txt"))
        recovery = ErrorRecovery(redis_store)

        await recovery.save_checkpoint(
            "job-1", create_checkpoint("chunk", ["download", "extract", "chunk"], {"n": 2})
        )
        checkpoint = await recovery.load_checkpoint("job-1")

        assert checkpoint.completed == ["download", "extract", "chunk"]
        assert checkpoint.data == {"n": 2}
