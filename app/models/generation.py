"""
Generation Job Model
====================

One row per requested output. Rows sharing ``batch_id`` form one
user-facing request that is billed once.

STATE MACHINE:
    queued -> processing (claimed by a worker slot)
    processing -> succeeded | failed
    queued -> canceled (external)
    processing -> queued (stale sweep)

BILLING MODES (stored on every job of the batch):
    per_batch   index 0 carries the whole reservation; settled by batch
    per_output  every job carries cost / N; settled job by job (legacy)
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, Index, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from app.core.database import utcnow
from app.models.account import _uuid

_JSON = JSON().with_variant(JSONB(), "postgresql")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value, JobStatus.CANCELED.value)


class BillingMode(str, Enum):
    PER_BATCH = "per_batch"
    PER_OUTPUT = "per_output"


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"
    __table_args__ = (
        UniqueConstraint("batch_id", "batch_index", name="uq_generation_jobs_batch_index"),
        Index("idx_generation_jobs_claim", "plan", "status", "priority", "created_at"),
        Index("idx_generation_jobs_user_created", "user_id", "kind", "created_at"),
        Index("idx_generation_jobs_status_updated", "status", "updated_at"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True, max_length=36)
    batch_id: str = Field(index=True, max_length=36)
    batch_index: int = Field(default=0)
    user_id: str = Field(foreign_key="users.id", max_length=36)
    kind: str = Field(default="image", max_length=16)
    plan: str = Field(max_length=32)
    mode: str = Field(max_length=16)
    provider: str = Field(default="gemini", max_length=32)
    model: str = Field(max_length=128)
    aspect_ratio: Optional[str] = Field(default=None, nullable=True, max_length=16)
    label: Optional[str] = Field(default=None, nullable=True, max_length=128)
    base_prompt: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    product_images: List[str] = Field(default_factory=list, sa_column=Column(_JSON, nullable=False))
    style_images: List[str] = Field(default_factory=list, sa_column=Column(_JSON, nullable=False))
    status: str = Field(default=JobStatus.QUEUED.value, max_length=16)
    priority: int = Field(default=0)
    result_url: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error_text: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    billing_mode: str = Field(default=BillingMode.PER_BATCH.value, max_length=16)
    service_type: str = Field(max_length=64)
    tokens_reserved: Decimal = Field(
        default=Decimal("0"), sa_column=Column(Numeric(10, 2), nullable=False, server_default="0")
    )
    tokens_refunded: Decimal = Field(
        default=Decimal("0"), sa_column=Column(Numeric(10, 2), nullable=False, server_default="0")
    )
    usage_recorded: bool = Field(default=False)
    debit_receipt: Optional[dict] = Field(default=None, sa_column=Column(_JSON, nullable=True))
    worker_id: Optional[str] = Field(default=None, nullable=True, max_length=64)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
