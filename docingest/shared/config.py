# Configuration loader with environment variable support

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from .models import IngestBaseModel

logger = logging.getLogger(__name__)


class AppConfig(BaseModel):
    name: str = "docingest"
    version: str = "0.1.0"


class ProcessingConfig(BaseModel):
    """Admission control and queue settings."""

    max_concurrent_jobs: int = Field(default=5, gt=0)
    queue_enabled: bool = True
    average_job_seconds: float = Field(default=300.0, gt=0)
    capacity_retry_after_seconds: int = Field(default=30, ge=0)
    stuck_job_threshold_seconds: float = Field(default=300.0, gt=0)
    stage_timeout_seconds: float = Field(default=120.0, gt=0)


class ChunkingConfig(BaseModel):
    chunk_size_tokens: int = 500
    overlap_tokens: int = 100
    chars_per_token: int = Field(default=4, gt=0)

    @validator("chunk_size_tokens")
    def validate_chunk_size(cls, v):
        if v < 100 or v > 5000:
            raise ValueError(f"chunk_size_tokens must be between 100 and 5000, got {v}")
        return v

    @validator("overlap_tokens")
    def validate_overlap(cls, v, values):
        size = values.get("chunk_size_tokens")
        if v < 0 or (size is not None and v >= size):
            raise ValueError("overlap_tokens must be >= 0 and smaller than chunk_size_tokens")
        return v


class EmbeddingConfig(BaseModel):
    """
    Embedding call shaping. ``batch_size`` is bounded both by the
    validation range and by the provider's maximum inputs per request.
    """

    model: str = "text-embedding-3-small"
    provider_max_batch_size: int = Field(default=2048, gt=0)
    batch_size: int = 200
    base_batch_delay_ms: int = Field(default=50, ge=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    min_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)

    @validator("batch_size")
    def validate_batch_size(cls, v, values):
        if v < 1 or v > 1000:
            raise ValueError(f"batch_size must be between 1 and 1000, got {v}")
        provider_max = values.get("provider_max_batch_size")
        if provider_max is not None and v > provider_max:
            raise ValueError(
                f"batch_size {v} exceeds provider maximum of {provider_max}"
            )
        return v


class TranscriptionConfig(BaseModel):
    model: str = "whisper-1"
    timeout_seconds: float = Field(default=300.0, gt=0)


class StorageConfig(BaseModel):
    insert_batch_size: int = Field(default=200, gt=0)
    max_file_size_mb: int = Field(default=100, gt=0)


class RetryConfig(BaseModel):
    """Backoff schedule. Delays are in seconds."""

    max_retries: int = Field(default=3, ge=1)  # total attempts
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, gt=0)
    recovery_timeout: float = Field(default=60.0, gt=0)


class PageMarkerConfig(BaseModel):
    min_marker_coverage: float = Field(default=0.5, ge=0.0, le=1.0)
    single_page_warn: bool = True
    min_unique_page_ratio: float = Field(default=0.1, ge=0.0, le=1.0)


class Config(IngestBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    page_markers: PageMarkerConfig = Field(default_factory=PageMarkerConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Embedding / transcription service (OpenAI-compatible)
    embedding_base_url: str = Field(
        default="https://api.openai.com", alias="EMBEDDING_BASE_URL"
    )
    embedding_api_key: str = Field(default="", alias="EMBEDDING_API_KEY")

    # Redis job store
    redis_uri: Optional[str] = Field(default=None, alias="REDIS_URI")

    # Overrides for the most commonly tuned knobs
    max_concurrent_processing_jobs: Optional[int] = Field(
        default=None, alias="MAX_CONCURRENT_PROCESSING_JOBS"
    )
    embedding_batch_size: Optional[int] = Field(
        default=None, alias="EMBEDDING_BATCH_SIZE"
    )
    base_batch_delay_ms: Optional[int] = Field(default=None, alias="BASE_BATCH_DELAY_MS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def _default_config_path(settings: Settings) -> Path:
    return Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"


def apply_env_overrides(config: Config, settings: Settings) -> Config:
    """Apply environment overrides on top of the YAML config.

    Sections are rebuilt through their models so validators still run.
    """
    processing = config.processing.model_dump()
    embedding = config.embedding.model_dump()

    if settings.max_concurrent_processing_jobs is not None:
        processing["max_concurrent_jobs"] = settings.max_concurrent_processing_jobs
    if settings.embedding_batch_size is not None:
        embedding["batch_size"] = settings.embedding_batch_size
    if settings.base_batch_delay_ms is not None:
        embedding["base_batch_delay_ms"] = settings.base_batch_delay_ms

    return config.model_copy(
        update={
            "processing": ProcessingConfig(**processing),
            "embedding": EmbeddingConfig(**embedding),
        }
    )


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    A missing YAML file is only an error when CONFIG_PATH points at it
    explicitly; otherwise built-in defaults are used.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If an explicit config file is not found
        pydantic.ValidationError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config_path = _default_config_path(settings)

    config_dict = {}
    if config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f) or {}
    else:
        logger.info(f"No configuration file at {config_path}; using defaults")

    config = apply_env_overrides(Config(**config_dict), settings)
    return config, settings


_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get global config instance"""
    global _config
    if _config is None:
        init_config()
    return _config


def get_settings() -> Settings:
    """Get global settings instance"""
    global _settings
    if _settings is None:
        init_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize global config and settings"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Reload configuration (useful for testing)"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings
