"""Application configuration for the imgedge services."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import httpx
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ORIGIN_TIMEOUT_SECONDS = 30.0
CACHE_MAX_ENTRIES = 1024


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class EdgeProxySettings(BaseSettings):
    """Configuration for the edge image proxy.

    Built once at process start and handed to each component; frozen so no
    request can mutate it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
    )

    origin_url: str = env_field(..., "IMGEDGE_ORIGIN_URL")
    origin_timeout_seconds: float = env_field(ORIGIN_TIMEOUT_SECONDS, "IMGEDGE_ORIGIN_TIMEOUT")
    max_upload_bytes: int = env_field(MAX_UPLOAD_BYTES, "IMGEDGE_MAX_UPLOAD_BYTES")

    cache_backend: Literal["memory", "redis", "none"] = env_field("memory", "IMGEDGE_CACHE_BACKEND")
    cache_max_entries: int = env_field(CACHE_MAX_ENTRIES, "IMGEDGE_CACHE_MAX_ENTRIES")
    redis_url: Optional[str] = env_field(None, "IMGEDGE_REDIS_URL")

    storage_path: Path = env_field(Path("./images"), "IMGEDGE_STORAGE_PATH")
    s3_bucket: Optional[str] = env_field(None, "IMGEDGE_S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "IMGEDGE_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "IMGEDGE_S3_REGION")
    s3_max_retries: int = env_field(3, "IMGEDGE_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "IMGEDGE_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "IMGEDGE_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "IMGEDGE_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "IMGEDGE_S3_CIRCUIT_RESET")

    metrics_token: Optional[SecretStr] = env_field(None, "IMGEDGE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "IMGEDGE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "IMGEDGE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "IMGEDGE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "IMGEDGE_OTEL_SAMPLER_RATIO")

    @field_validator("origin_url")
    @classmethod
    def _require_absolute_origin(cls, value: str) -> str:
        value = value.strip()
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError("origin_url is not a valid URL") from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise ValueError("origin_url must be an absolute http(s) URL")
        return value

    @field_validator("cache_max_entries", mode="before")
    @classmethod
    def _blank_means_default(cls, value):
        if isinstance(value, str) and not value.strip():
            return CACHE_MAX_ENTRIES
        return value

    @field_validator("origin_timeout_seconds", "max_upload_bytes", "cache_max_entries")
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_backends(self) -> "EdgeProxySettings":
        if self.cache_backend == "redis" and not self.redis_url:
            raise ValueError("IMGEDGE_REDIS_URL is required when the redis cache backend is selected")
        if self.s3_bucket and not self.s3_endpoint_url:
            raise ValueError("S3 configuration incomplete for object store")
        return self
