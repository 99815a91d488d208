"""
HTTP API tests.

The app runs inside ``with TestClient(...)`` so every request shares one
event loop and the background job tasks survive between requests.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import BlockingPipeline, FakeEmbeddingClient, MemoryStorage
from docingest.api import create_app
from docingest.ingestion.persistence import InMemoryJobStore
from docingest.ingestion.service import IngestionService
from docingest.shared.config import Config, ProcessingConfig


def build_app(max_jobs=1, queue_enabled=True):
    config = Config(
        processing=ProcessingConfig(max_concurrent_jobs=max_jobs, queue_enabled=queue_enabled)
    )
    service = IngestionService(
        config,
        InMemoryJobStore(),
        FakeEmbeddingClient(),
        MemoryStorage(),
        pipeline=BlockingPipeline(),
    )
    return create_app(service), service


@pytest.fixture
def client():
    app, _ = build_app()
    with TestClient(app) as c:
        yield c


def create_job(client, path="/uploads/doc.pdf"):
    response = client.post("/documents", json={"source_path": path, "title": "Doc"})
    assert response.status_code == 201
    return response.json()["job_id"]


class TestDocuments:
    def test_create_and_get(self, client):
        job_id = create_job(client)

        response = client.get(f"/documents/{job_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["source_kind"] == "pdf"
        assert body["status"] == "pending"
        assert body["has_checkpoint"] is False

    def test_unknown_job(self, client):
        assert client.get("/documents/nope").status_code == 404
        assert client.post("/documents/nope/process").status_code == 404

    def test_invalid_source_kind(self, client):
        response = client.post(
            "/documents", json={"source_path": "a.bin", "source_kind": "video"}
        )
        assert response.status_code == 422


class TestProcessing:
    def test_admitted_then_queued(self, client):
        first = create_job(client)
        second = create_job(client, "/uploads/other.txt")

        admitted = client.post(f"/documents/{first}/process")
        queued = client.post(f"/documents/{second}/process", json={"metadata": {"k": "v"}})

        assert admitted.status_code == 202
        assert admitted.json()["status"] == "admitted"
        assert admitted.json()["load"]["active"] == 1
        assert queued.status_code == 202
        assert queued.json()["status"] == "queued"
        assert queued.json()["queue_position"] == 1
        assert queued.json()["estimated_wait_seconds"] > 0

    def test_duplicate_is_conflict(self, client):
        job_id = create_job(client)
        client.post(f"/documents/{job_id}/process")

        assert client.post(f"/documents/{job_id}/process").status_code == 409

    def test_load_queue_and_clear(self, client):
        ids = [create_job(client, f"/uploads/{i}.txt") for i in range(3)]
        for job_id in ids:
            client.post(f"/documents/{job_id}/process")

        load = client.get("/processing/load").json()
        assert load == {"active": 1, "max": 1, "available": 0, "utilization_percent": 100}

        queue = client.get("/processing/queue").json()
        assert queue["queue_length"] == 2
        assert [j["job_id"] for j in queue["queued_jobs"]] == ids[1:]

        assert client.post("/processing/queue/clear").json() == {"cleared": 2}
        assert client.get("/processing/queue").json()["queue_length"] == 0

    def test_reset_stuck(self, client):
        response = client.post("/processing/reset-stuck", json={"threshold_seconds": 60})

        assert response.status_code == 200
        assert response.json() == {"reset": [], "count": 0}


class TestCapacityRejection:
    def test_503_with_retry_after(self):
        app, _ = build_app(max_jobs=1, queue_enabled=False)
        with TestClient(app) as client:
            first = create_job(client)
            second = create_job(client)
            client.post(f"/documents/{first}/process")

            response = client.post(f"/documents/{second}/process")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"
        body = response.json()
        assert body["status"] == 503
        assert body["success"] is False
        assert body["retry_after"] == 30
        assert body["load"]["available"] == 0


class TestOperational:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["circuit_breakers"] == {}

    def test_health_degraded_when_breaker_open(self):
        app, service = build_app()
        breaker = service.retry.get_breaker("embed_batch")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        with TestClient(app) as client:
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["circuit_breakers"] == {"embed_batch": "open"}

    def test_metrics(self, client):
        client.get("/processing/load")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "docingest_http_requests_total" in response.text
        assert "docingest_active_jobs" in response.text

    def test_correlation_id_echoed(self, client):
        response = client.get("/processing/load", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"

    def test_reset_circuit_breaker(self):
        app, service = build_app()
        breaker = service.retry.get_breaker("embed_batch")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        with TestClient(app) as client:
            response = client.post("/processing/circuit-breakers/embed_batch/reset")
            missing = client.post("/processing/circuit-breakers/unknown/reset")
            health = client.get("/health").json()

        assert response.status_code == 200
        assert response.json() == {"operation": "embed_batch", "state": "closed"}
        assert missing.status_code == 404
        assert health["status"] == "healthy"
