"""Runtime configuration for the analytics job pipeline."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from .models import RetryPolicy

_NUMBER = TypeAdapter(float)


class RedisSettings(BaseModel):
    """Connection target and reconnect policy for the durable broker."""

    url: Optional[str] = None
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    connect_timeout_s: float = Field(default=10.0, gt=0)
    reconnect_unit_s: float = Field(default=0.2, ge=0)
    reconnect_cap_s: float = Field(default=2.0, ge=0)
    # 0 keeps retrying forever with the capped delay
    max_reconnect_attempts: int = Field(default=20, ge=0)
    health_check_interval_s: float = Field(default=5.0, gt=0)


class WorkerSettings(BaseModel):
    queue_name: str = Field(default="analytics-processing", min_length=1)
    concurrency: int = Field(default=5, ge=1, le=256)
    job_timeout_s: Optional[float] = Field(default=60.0, gt=0)
    # a claimed job with no outcome after this long goes back through the retry schedule
    stall_after_s: float = Field(default=120.0, gt=0)
    shutdown_timeout_s: float = Field(default=5.0, gt=0)
    metrics_port: int = Field(default=9000, ge=0, le=65535)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @model_validator(mode="after")
    def _stall_outlasts_timeout(self) -> "WorkerSettings":
        if self.job_timeout_s is not None and self.stall_after_s <= self.job_timeout_s:
            raise ValueError("stall_after_s must be greater than job_timeout_s")
        return self


class Settings(BaseModel):
    """Application settings grouped by concern."""

    redis: RedisSettings = Field(default_factory=RedisSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    snapshot_db_path: str = "analytics.db"
    snapshot_retention_days: int = Field(default=365, ge=1)
    # 0 turns the periodic cleanup off
    snapshot_cleanup_interval_s: float = Field(default=7 * 86400.0, ge=0)
    github_api_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    stale_after_s: float = Field(default=3600.0, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from the environment with local-development defaults.

        Raw strings go to pydantic for coercion, so a malformed value raises
        `pydantic.ValidationError` naming the offending field.
        """

        env = os.environ if environ is None else environ

        def get(key: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(key)
            return value if value not in (None, "") else default

        def ms(key: str, default: str) -> float:
            return _NUMBER.validate_python(get(key, default)) / 1000.0

        job_timeout_s = ms("JOB_TIMEOUT_MS", "60000")
        return cls(
            redis=RedisSettings(
                url=get("REDIS_URL"),
                host=get("REDIS_HOST", "localhost"),
                port=get("REDIS_PORT", "6379"),
                username=get("REDIS_USERNAME"),
                password=get("REDIS_PASSWORD"),
                tls=get("REDIS_TLS", "false"),
                connect_timeout_s=ms("REDIS_CONNECT_TIMEOUT_MS", "10000"),
                reconnect_unit_s=ms("REDIS_RECONNECT_UNIT_MS", "200"),
                reconnect_cap_s=ms("REDIS_RECONNECT_CAP_MS", "2000"),
                max_reconnect_attempts=get("REDIS_MAX_RECONNECT_ATTEMPTS", "20"),
                health_check_interval_s=get("REDIS_HEALTH_CHECK_INTERVAL_S", "5"),
            ),
            worker=WorkerSettings(
                queue_name=get("QUEUE_NAME", "analytics-processing"),
                concurrency=get("WORKER_CONCURRENCY", "5"),
                # JOB_TIMEOUT_MS=0 disables the per-job timeout
                job_timeout_s=job_timeout_s if job_timeout_s > 0 else None,
                stall_after_s=ms("JOB_STALL_AFTER_MS", "120000"),
                shutdown_timeout_s=ms("SHUTDOWN_TIMEOUT_MS", "5000"),
                metrics_port=get("METRICS_PORT", "9000"),
                retry=RetryPolicy(
                    max_attempts=get("JOB_MAX_ATTEMPTS", "5"),
                    backoff_type=get("JOB_BACKOFF_TYPE", "exponential"),
                    backoff_delay_ms=get("JOB_BACKOFF_MS", "2000"),
                    keep_completed_s=get("JOB_KEEP_COMPLETED_S", "3600"),
                    keep_failed_s=get("JOB_KEEP_FAILED_S", "86400"),
                ),
            ),
            snapshot_db_path=get("SNAPSHOT_DB_PATH", "analytics.db"),
            snapshot_retention_days=get("SNAPSHOT_RETENTION_DAYS", "365"),
            snapshot_cleanup_interval_s=get("SNAPSHOT_CLEANUP_INTERVAL_S", str(7 * 86400)),
            github_api_url=get("GITHUB_API_URL", "https://api.github.com"),
            github_token=get("GITHUB_TOKEN"),
            stale_after_s=get("SNAPSHOT_STALE_AFTER_S", "3600"),
        )
