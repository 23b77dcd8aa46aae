"""Application configuration for the mirror cache service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class MirrorCacheSettings(BaseSettings):
    """Runtime settings for the pull-through mirror cache."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    storage_path: Path = env_field(Path("./storage"), "ODSYNC_STORAGE_PATH")
    upstream_url: str = env_field("https://mirrors.tuna.tsinghua.edu.cn", "ODSYNC_UPSTREAM_URL")
    # Advisory only; reported by /api/stats, never enforced.
    cache_size_mb: int = env_field(10240, "ODSYNC_CACHE_SIZE_MB")
    bind_host: str = env_field("0.0.0.0", "ODSYNC_BIND_HOST")
    port: int = env_field(8080, "ODSYNC_PORT")
    upstream_timeout_seconds: float = env_field(30.0, "ODSYNC_UPSTREAM_TIMEOUT")
    upstream_connect_timeout_seconds: float = env_field(10.0, "ODSYNC_UPSTREAM_CONNECT_TIMEOUT")
    chunk_size_bytes: int = env_field(1024 * 1024, "ODSYNC_CHUNK_SIZE")
    sidecar_suffix: str = env_field(".sha256", "ODSYNC_SIDECAR_SUFFIX")
    orphan_grace_seconds: float = env_field(3600.0, "ODSYNC_ORPHAN_GRACE_SECONDS")
    metrics_token: Optional[SecretStr] = env_field(None, "ODSYNC_METRICS_TOKEN")
    log_level: str = env_field("INFO", "ODSYNC_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "ODSYNC_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "ODSYNC_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "ODSYNC_OTEL_SAMPLER_RATIO")

    @field_validator("upstream_url", mode="before")
    @classmethod
    def _strip_upstream_slash(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value.startswith(("http://", "https://")):
                raise ValueError("upstream URL must be http(s)")
            return value.rstrip("/")
        return value

    @field_validator("sidecar_suffix")
    @classmethod
    def _validate_suffix(cls, value: str) -> str:
        if not value.startswith(".") or "/" in value or len(value) < 2:
            raise ValueError("sidecar suffix must look like '.ext'")
        return value

    @field_validator("chunk_size_bytes")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chunk size must be positive")
        return value

    @property
    def cache_limit_bytes(self) -> int:
        return max(0, self.cache_size_mb) * 1024 * 1024
