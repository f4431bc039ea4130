"""Enricher configuration settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ONE_YEAR_S = 365 * 24 * 60 * 60


def _env_flag(var_name: str, default: str = "") -> bool:
    return os.getenv(var_name, default).strip().lower() == "true"


class AIConfig(BaseModel):
    """Chat-completion endpoint and AI cache configuration."""

    api_key: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    enabled: bool = Field(default_factory=lambda: _env_flag("AI_ENRICH"))
    model: str = Field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    base_url: str = Field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    cache_key_mode: Literal["raw", "raw_parsed"] = Field(
        default_factory=lambda: os.getenv("AI_CACHE_KEY_MODE", "raw").strip().lower() or "raw",
        validate_default=True,
    )
    cache_path: Path = Field(
        default_factory=lambda: Path(os.getenv("AI_CACHE_PATH", "tmp/ai-enrichment-cache.json"))
    )
    cache_ttl_s: int = ONE_YEAR_S
    timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("AI_TIMEOUT_S", "60")), validate_default=True
    )
    prompt_version: str = "v1"
    max_completion_tokens: int = 1200

    @field_validator("timeout_s")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AI_TIMEOUT_S must be > 0")
        return value

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.api_key.strip())


class RateLimitConfig(BaseModel):
    """Minute-window request and token budget for the AI endpoint."""

    rpm: int = Field(
        default_factory=lambda: int(os.getenv("OPENAI_RPM", "500")), validate_default=True
    )
    tpm: int = Field(
        default_factory=lambda: int(os.getenv("OPENAI_TPM", "200000")), validate_default=True
    )
    min_sleep_ms: int = Field(
        default_factory=lambda: int(os.getenv("OPENAI_MIN_SLEEP_MS", "10")), validate_default=True
    )

    @field_validator("rpm", "tpm", "min_sleep_ms")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("rate limit values must be >= 1")
        return value


class RetryConfig(BaseModel):
    """Retry and backoff configuration."""

    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    jitter: bool = True


class PipelineConfig(BaseModel):
    """Batch enrichment configuration."""

    data_dir: Path = Field(default_factory=lambda: Path(os.getenv("ENRICHER_DATA_DIR", "./data")))
    compose_titles: bool = Field(
        default_factory=lambda: _env_flag("ENRICHER_COMPOSE_TITLES", "true")
    )
    max_workers: int = Field(
        default_factory=lambda: int(os.getenv("ENRICHER_MAX_WORKERS", "4")), validate_default=True
    )

    @field_validator("max_workers")
    @classmethod
    def _validate_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("ENRICHER_MAX_WORKERS must be >= 1")
        return value


class EnricherConfig(BaseModel):
    """Root configuration for an enrichment job."""

    ai: AIConfig = Field(default_factory=AIConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("ENRICHER_LOG_LEVEL", "INFO"))
