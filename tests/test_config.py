"""Configuration loading and validation tests."""

import pytest
from pydantic import ValidationError

from docingest.shared.config import (
    ChunkingConfig,
    Config,
    EmbeddingConfig,
    RetryConfig,
    load_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "CONFIG_PATH",
        "MAX_CONCURRENT_PROCESSING_JOBS",
        "EMBEDDING_BATCH_SIZE",
        "BASE_BATCH_DELAY_MS",
        "REDIS_URI",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENV", "development")
    return monkeypatch


class TestValidation:
    def test_defaults(self):
        config = Config()

        assert config.processing.max_concurrent_jobs == 5
        assert config.embedding.batch_size == 200
        assert config.embedding.base_batch_delay_ms == 50
        assert config.retry.max_retries == 3
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.recovery_timeout == 60.0

    @pytest.mark.parametrize("size", [99, 5001])
    def test_chunk_size_range(self, size):
        with pytest.raises(ValidationError):
            ChunkingConfig(chunk_size_tokens=size, overlap_tokens=10)

    def test_overlap_must_be_smaller_than_chunk(self):
        with pytest.raises(ValidationError):
            ChunkingConfig(chunk_size_tokens=200, overlap_tokens=200)

    @pytest.mark.parametrize("size", [0, 1001])
    def test_batch_size_range(self, size):
        with pytest.raises(ValidationError):
            EmbeddingConfig(batch_size=size)

    def test_batch_size_bounded_by_provider(self):
        with pytest.raises(ValidationError):
            EmbeddingConfig(provider_max_batch_size=100, batch_size=200)

    def test_at_least_one_attempt(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_retries=0)


class TestLoadConfig:
    def test_development_yaml(self, clean_env):
        config, settings = load_config()

        assert settings.env == "development"
        assert config.app.name == "docingest"
        assert config.processing.stuck_job_threshold_seconds == 300

    def test_explicit_path(self, clean_env, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("processing:\n  max_concurrent_jobs: 7\nembedding:\n  batch_size: 64\n")
        clean_env.setenv("CONFIG_PATH", str(path))

        config, _ = load_config()

        assert config.processing.max_concurrent_jobs == 7
        assert config.embedding.batch_size == 64
        assert config.retry.max_retries == 3

    def test_missing_explicit_path(self, clean_env, tmp_path):
        clean_env.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))

        with pytest.raises(FileNotFoundError):
            load_config()

    def test_missing_default_file_uses_defaults(self, clean_env):
        clean_env.setenv("ENV", "nonexistent-env")

        config, _ = load_config()

        assert config.model_dump() == Config().model_dump()

    def test_env_overrides(self, clean_env):
        clean_env.setenv("MAX_CONCURRENT_PROCESSING_JOBS", "3")
        clean_env.setenv("EMBEDDING_BATCH_SIZE", "100")
        clean_env.setenv("BASE_BATCH_DELAY_MS", "10")

        config, _ = load_config()

        assert config.processing.max_concurrent_jobs == 3
        assert config.embedding.batch_size == 100
        assert config.embedding.base_batch_delay_ms == 10

    def test_invalid_env_override_rejected(self, clean_env):
        clean_env.setenv("EMBEDDING_BATCH_SIZE", "5000")

        with pytest.raises(ValidationError):
            load_config()
