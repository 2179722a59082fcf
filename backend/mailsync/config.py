"""Application configuration. All sensitive config from .env."""
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class ProviderRateLimit(BaseModel):
    """Request budget for one provider: max_requests per window_ms."""

    max_requests: int
    window_ms: int


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsync.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (Celery broker and shared rate-limit buckets)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    log_level: str = "INFO"

    # Rate limiting
    # "memory" keeps buckets in-process; "redis" shares them across workers/hosts.
    rate_limit_backend: str = "memory"
    # Key buckets by provider:account instead of provider only.
    rate_limit_per_account: bool = False
    # Overwrite local buckets from provider rate-limit headers when present.
    rate_limit_adaptive: bool = True
    provider_rate_limits: dict[str, ProviderRateLimit] = {
        "gmail": ProviderRateLimit(max_requests=250, window_ms=1000),
        "microsoft": ProviderRateLimit(max_requests=240, window_ms=60_000),
        "nylas": ProviderRateLimit(max_requests=500, window_ms=1000),
        "default": ProviderRateLimit(max_requests=100, window_ms=60_000),
    }
    # Ids hydrated per provider call when a page only returns message ids.
    provider_batch_size: int = 50

    # Sync jobs
    sync_max_retries: int = 3
    sync_retry_base_delay_s: float = 5.0
    sync_retry_max_delay_s: float = 3600.0
    # Worker threads draining the job queue per Celery task.
    sync_workers: int = 4
    # Upper bound of jobs one queue drain will process (0 = until empty).
    sync_max_jobs_per_run: int = 100
    # Fail the job when more than this share of fetched messages cannot be stored.
    sync_partial_failure_threshold: float = 0.25
    # Accounts syncing without a heartbeat for this long are force-reset.
    sync_stuck_threshold_s: int = 30 * 60
    # Retention for completed/failed job rows (the per-account timeline).
    sync_job_retention_days: int = 7

    # Polling
    poll_interval_s: int = 4 * 60 * 60
    poll_error_backoff_threshold: int = 3
    poll_error_backoff_base_s: int = 5 * 60
    poll_error_backoff_max_s: int = 240 * 60

    # Webhooks
    webhook_secret: str = ""
    webhook_signature_header: str = "X-Webhook-Signature"
    # message.created syncs only fetch the most recent messages.
    webhook_fetch_limit: int = 10
    # Kick the Celery queue drain right after an API call or webhook enqueues a job.
    sync_dispatch_immediately: bool = False

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
