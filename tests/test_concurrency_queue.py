"""
Admission control and FIFO backlog tests.

Jobs run through ``BlockingPipeline`` so the test decides when each one
finishes and can observe exactly how slots are handed out.
"""

import asyncio

import pytest

from conftest import BlockingPipeline, FakeEmbeddingClient, MemoryStorage, settle
from docingest.ingestion.concurrency import (
    Admitted,
    CapacityExceeded,
    ConcurrencyGate,
    LoadInfo,
)
from docingest.ingestion.persistence import InMemoryJobStore, JobNotFound
from docingest.ingestion.queue import estimate_wait_seconds
from docingest.ingestion.service import IngestionService, Queued
from docingest.shared.config import Config, ProcessingConfig
from docingest.shared.errors import ValidationFault


class SuspendingJobStore(InMemoryJobStore):
    """Store whose calls yield to the loop, like a networked store."""

    async def get_job(self, job_id):
        await asyncio.sleep(0)
        return await super().get_job(job_id)

    async def update_job(self, job_id, **fields):
        await asyncio.sleep(0)
        return await super().update_job(job_id, **fields)


def build_service(store, max_jobs=2, queue_enabled=True, pipeline=None):
    config = Config(
        processing=ProcessingConfig(
            max_concurrent_jobs=max_jobs,
            queue_enabled=queue_enabled,
            average_job_seconds=60,
        )
    )
    return IngestionService(
        config,
        store,
        FakeEmbeddingClient(),
        MemoryStorage(),
        pipeline=pipeline or BlockingPipeline(),
    )


async def create_jobs(service, count):
    jobs = []
    for i in range(count):
        jobs.append(await service.create_job(f"/uploads/file-{i}.txt"))
    return [job.job_id for job in jobs]


class TestConcurrencyGate:
    def test_load_info(self):
        gate = ConcurrencyGate(max_concurrent_jobs=5)
        gate.increment()
        gate.increment()

        assert gate.get_load() == LoadInfo(
            active=2, max=5, available=3, utilization_percent=40
        )

    def test_capacity_exceeded_at_max(self):
        gate = ConcurrencyGate(max_concurrent_jobs=1, retry_after_seconds=45)
        assert isinstance(gate.check_capacity(), Admitted)

        gate.increment()
        decision = gate.check_capacity()

        assert isinstance(decision, CapacityExceeded)
        assert decision.status_code == 503
        body = decision.to_response()
        assert body["status"] == 503
        assert body["success"] is False
        assert body["retry_after"] == 45
        assert body["load"]["utilization_percent"] == 100

    def test_decrement_never_goes_negative(self):
        gate = ConcurrencyGate(max_concurrent_jobs=2)

        assert gate.decrement() == 0
        assert gate.active_count == 0

    def test_invalid_max(self):
        with pytest.raises(ValueError):
            ConcurrencyGate(max_concurrent_jobs=0)


class TestWaitEstimate:
    def test_spare_capacity(self):
        load = LoadInfo(active=1, max=5, available=4, utilization_percent=20)

        assert estimate_wait_seconds(1, load, 60) == 30
        assert estimate_wait_seconds(3, load, 60) == 90

    def test_at_capacity(self):
        """Running jobs are assumed half done: (ceil(avg/2) + pos) * avg/max."""
        load = LoadInfo(active=5, max=5, available=0, utilization_percent=100)

        assert estimate_wait_seconds(1, load, 60) == 372
        assert estimate_wait_seconds(3, load, 60) == 396

    def test_capped_at_thirty_minutes(self):
        load = LoadInfo(active=1, max=1, available=0, utilization_percent=100)

        assert estimate_wait_seconds(10, load, 300) == 1800


class TestSubmitJob:
    @pytest.mark.asyncio
    async def test_all_admitted_under_capacity(self, store):
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=3, pipeline=pipeline)
        job_ids = await create_jobs(service, 3)
        try:
            results = [await service.submit_job(job_id) for job_id in job_ids]
            await settle()

            assert all(isinstance(r, Admitted) for r in results)
            assert pipeline.started == job_ids
            assert service.gate.active_count == 3
            for job_id in job_ids:
                assert (await store.get_job(job_id)).status == "processing"
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_overflow_is_queued_in_order(self, store):
        """max + K submissions leave exactly K jobs waiting, FIFO."""
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=2, pipeline=pipeline)
        job_ids = await create_jobs(service, 5)
        try:
            results = [await service.submit_job(job_id) for job_id in job_ids]
            await settle()

            assert [type(r) for r in results] == [Admitted, Admitted, Queued, Queued, Queued]
            assert [r.placement.queue_position for r in results[2:]] == [1, 2, 3]
            assert len(service.queue) == 3
            assert pipeline.started == job_ids[:2]

            queued = await store.get_job(job_ids[2])
            assert queued.status == "pending"
            assert queued.enqueued_at is not None
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_completion_admits_exactly_one(self, store):
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=2, pipeline=pipeline)
        job_ids = await create_jobs(service, 4)
        try:
            for job_id in job_ids:
                await service.submit_job(job_id)
            await settle()

            pipeline.finish(job_ids[0])
            await settle()

            assert pipeline.started == job_ids[:3]
            assert service.gate.active_count == 2
            assert len(service.queue) == 1
            assert service.queue.running_job_ids == [job_ids[1], job_ids[2]]
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_failed_job_releases_its_slot(self, store):
        class ExplodingPipeline(BlockingPipeline):
            async def run(self, job_id, store, embedding_client, metadata=None):
                self.started.append(job_id)
                raise RuntimeError("pipeline crashed")

        pipeline = ExplodingPipeline()
        service = build_service(store, max_jobs=1, pipeline=pipeline)
        job_ids = await create_jobs(service, 3)
        try:
            for job_id in job_ids:
                await service.submit_job(job_id)
            await service.wait_idle(timeout=5)

            assert pipeline.started == job_ids
            assert service.gate.active_count == 0
            assert len(service.queue) == 0
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_rejected_when_queueing_disabled(self, store):
        service = build_service(store, max_jobs=1, queue_enabled=False)
        first, second = await create_jobs(service, 2)
        try:
            assert isinstance(await service.submit_job(first), Admitted)

            result = await service.submit_job(second)

            assert isinstance(result, CapacityExceeded)
            assert result.retry_after == 30
            assert result.load.active == 1
            assert len(service.queue) == 0
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_submission(self, store):
        service = build_service(store, max_jobs=1)
        first, second = await create_jobs(service, 2)
        try:
            await service.submit_job(first)
            await service.submit_job(second)

            with pytest.raises(ValidationFault):
                await service.submit_job(first)
            with pytest.raises(ValidationFault):
                await service.submit_job(second)
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_submission_launches_once(self):
        store = SuspendingJobStore()
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=2, pipeline=pipeline)
        [job_id] = await create_jobs(service, 1)
        try:
            results = await asyncio.gather(
                service.submit_job(job_id),
                service.submit_job(job_id),
                return_exceptions=True,
            )
            await settle()

            assert sum(isinstance(r, Admitted) for r in results) == 1
            assert sum(isinstance(r, ValidationFault) for r in results) == 1
            assert pipeline.started == [job_id]
            assert service.gate.active_count == 1
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_while_queued(self):
        store = SuspendingJobStore()
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=1, pipeline=pipeline)
        running, waiting = await create_jobs(service, 2)
        try:
            await service.submit_job(running)
            results = await asyncio.gather(
                service.submit_job(waiting),
                service.submit_job(waiting),
                return_exceptions=True,
            )

            assert sum(isinstance(r, Queued) for r in results) == 1
            assert sum(isinstance(r, ValidationFault) for r in results) == 1
            assert len(service.queue) == 1
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_job(self, store):
        service = build_service(store)
        try:
            with pytest.raises(JobNotFound):
                await service.submit_job("missing")
        finally:
            await service.shutdown()


class TestQueueManagement:
    @pytest.mark.asyncio
    async def test_status_and_clear(self, store):
        service = build_service(store, max_jobs=1)
        job_ids = await create_jobs(service, 3)
        try:
            for job_id in job_ids:
                await service.submit_job(job_id)
            await settle()

            status = service.get_queue_status()
            assert status["queue_length"] == 2
            assert status["running_jobs"] == [job_ids[0]]
            assert [j["job_id"] for j in status["queued_jobs"]] == job_ids[1:]
            assert status["load"] == service.get_load()

            assert service.queue.clear() == 2
            assert service.get_queue_status()["queued_jobs"] == []
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self, store):
        pipeline = BlockingPipeline()
        service = build_service(store, max_jobs=2, pipeline=pipeline)
        job_ids = await create_jobs(service, 3)
        for job_id in job_ids:
            await service.submit_job(job_id)
        await settle()

        await service.shutdown()

        assert service.gate.active_count == 0
        assert len(service.queue) == 0
        assert service.embedding_client.closed is True
