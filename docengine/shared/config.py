"""Shared configuration management for the document engine.

Settings are read from APP_* environment variables or .env; see:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_ROUTER_HIGH_TIER=90
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-document-engine",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # OCR provider configuration
    ocr_provider: Literal["tesseract", "paddleocr"] = Field(
        default="paddleocr",
        description="Primary OCR provider: paddleocr (GPU-accelerated), tesseract (CPU)",
    )
    ocr_fallback_provider: Literal["tesseract", "none"] = Field(
        default="tesseract",
        description="Local OCR engine used when the primary provider fails",
    )
    ocr_language: str = Field(
        default="por",
        description="Tesseract language pack used for local OCR",
    )
    ocr_min_text_length: int = Field(
        default=50,
        ge=0,
        description="Minimum OCR text length considered usable",
    )
    ocr_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single OCR call",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Extraction provider: openai (cloud API), ollama (self-hosted LLM)",
    )
    ai_models: list[str] = Field(
        default_factory=list,
        description=(
            "Ordered model names tried by the AI retry policy (primary first). "
            "Empty means the provider's default models."
        ),
    )
    ai_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        description="Timeout for a single AI extraction call",
    )
    ai_attempts_per_model: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Bounded retry count for transient errors on one model",
    )
    retry_backoff_initial: float = Field(
        default=1.0,
        ge=0,
        description="Initial exponential backoff delay in seconds",
    )
    retry_backoff_max: float = Field(
        default=30.0,
        ge=0,
        description="Maximum backoff delay in seconds",
    )
    fallback_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Base delay before switching to the next model in the chain",
    )

    # Ollama configuration (for extraction_provider="ollama")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Ollama model to use for extraction (vision models accept images)",
    )

    # Routing thresholds
    score_high_bucket: float = Field(
        default=90.0,
        ge=0,
        le=100,
        description="Fingerprint score at or above which a match is bucketed 'high'",
    )
    score_medium_bucket: float = Field(
        default=50.0,
        ge=0,
        le=100,
        description="Fingerprint score at or above which a match is bucketed 'medium'",
    )
    router_high_tier: float = Field(
        default=95.0,
        ge=0,
        le=100,
        description="Best template score at or above which the template is trusted outright",
    )
    router_medium_tier: float = Field(
        default=50.0,
        ge=0,
        le=100,
        description="Best template score at or above which AI output refines the template",
    )
    refine_similarity_threshold: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="AI/template similarity at or above which the template is refined",
    )
    variant_similarity_threshold: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="AI/template similarity below which a new template variant is created",
    )

    # Validation
    validation_mode: Literal["strict", "lenient"] = Field(
        default="strict",
        description="lenient only requires at least one extracted line item",
    )

    # Orchestration
    multimodal_enabled: bool = Field(
        default=True,
        description="Try file-native AI extraction before OCR when a source file is given",
    )
    learn_in_background: bool = Field(
        default=True,
        description="Run template learning after multimodal extraction as a background task",
    )

    # Template store
    template_store_path: str | None = Field(
        default=None,
        description="JSON snapshot the worker loads on startup and saves on shutdown",
    )

    # Queue configuration (arq + Redis)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the job queue",
    )
    queue_max_jobs: int = Field(
        default=5,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=600,
        description="Job timeout in seconds",
    )
    metrics_port: int | None = Field(
        default=9100,
        description="Port of the worker's Prometheus exporter; unset to disable",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
