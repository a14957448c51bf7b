"""
Studio Billing Configuration
============================

PURPOSE:
    Pydantic-Settings based configuration for the token ledger API and the
    generation worker. All settings can be overridden via environment
    variables (STUDIO_ prefix), e.g. STUDIO_PLAN_SLOTS='{"pro": 3}'.

    DATABASE_URL (no prefix) always wins over ``database_url`` so that the
    same image runs against SQLite locally and PostgreSQL in production.
"""

import logging
from typing import Dict, List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PLANS = ("free", "starter", "pro", "business_plus")


class Settings(BaseSettings):
    """Service settings shared by the API process and the worker process."""

    app_name: str = "studio-billing"
    debug: bool = False
    log_dir: str = "logs"
    log_level: str = "INFO"

    # Persistence
    data_directory: str = "/data"
    database_url: Optional[str] = None
    db_retry_attempts: int = 5

    # Where data-URL provider outputs are written; served under public_base_url
    generated_directory: str = "/data/generated"
    public_base_url: str = "/generated"

    # Auth: the session gateway in front of this service injects X-User-Id
    user_header: str = "X-User-Id"
    cron_secret: Optional[str] = None

    cors_origins: List[str] = ["http://localhost:3000"]

    # API process
    api_thread_pool_size: int = 32
    serve_generated_files: bool = True
    # Single-node deploys: run the worker pool inside the API process
    run_worker_in_api: bool = False

    # Queue partitioning, per plan
    plan_slots: Dict[str, int] = {"free": 1, "starter": 1, "pro": 2, "business_plus": 4}
    plan_priority: Dict[str, int] = {"free": 0, "starter": 10, "pro": 20, "business_plus": 30}

    # Daily batch caps; a missing plan means unlimited
    daily_batch_limits: Dict[str, int] = {"starter": 100, "pro": 250}

    # Sliding-window cooldowns: plan -> {"max_batches": n, "window_seconds": s}
    rate_limits: Dict[str, Dict[str, int]] = {
        "starter": {"max_batches": 1, "window_seconds": 300},
        "pro": {"max_batches": 2, "window_seconds": 600},
    }
    rate_limit_min_window_seconds: int = 10

    # Queue estimator
    estimate_sample_size: int = 200
    estimate_min_job_seconds: int = 5
    estimate_max_job_seconds: int = 600
    estimate_fallback_seconds: Dict[str, int] = {"basic": 45, "pro": 45, "premium": 45}
    estimate_min_eta_seconds: int = 5

    # Worker
    worker_id: Optional[str] = None
    worker_idle_poll_ms: int = 750
    stale_job_minutes: int = 20
    stale_sweep_interval_seconds: int = 60
    provider_max_in_flight: int = 4

    # Generation provider
    provider_kind: Literal["http", "mock"] = "http"
    provider_url: str = "http://localhost:8081"
    provider_api_key: Optional[str] = None
    provider_timeout_s: float = 180.0
    provider_max_attempts: int = 3
    provider_backoff_base_ms: int = 750
    provider_backoff_max_ms: int = 15000
    provider_backoff_jitter_ms: int = 250
    provider_retry_after_max_s: int = 60

    class Config:
        env_file = ".env"
        env_prefix = "STUDIO_"

    @property
    def min_stale_job_minutes(self) -> int:
        return max(5, self.stale_job_minutes)

    @property
    def min_sweep_interval_seconds(self) -> int:
        return max(15, self.stale_sweep_interval_seconds)

    def slots_for(self, plan: str) -> int:
        return max(1, int(self.plan_slots.get(plan, 1)))

    def priority_for(self, plan: str) -> int:
        return int(self.plan_priority.get(plan, 0))


settings = Settings()
