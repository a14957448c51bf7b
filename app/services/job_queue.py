"""
Generation Job Queue: Exactly-Once Batch Billing
=================================================

PURPOSE:
    Durable queue of generation jobs, partitioned by plan and ordered by
    priority then FIFO. Jobs are grouped in batches; a batch is one
    user-facing request and is billed exactly once.

STATE MACHINE:
    queued -> processing      claim_next_job (FOR UPDATE SKIP LOCKED)
    processing -> succeeded   mark_succeeded (only by the claiming worker)
    processing -> failed      mark_failed (only by the claiming worker)
    queued -> canceled        cancel_batch (external)
    processing -> queued      requeue_stale_jobs (worker presumed dead)

SETTLEMENT (per_batch billing, anchor = batch_index 0):
    not fully terminal                   -> pending, no-op
    usage_recorded or refunded >= reserved -> already settled, no-op
    tokens_reserved == 0                 -> mark settled (admin)
    >= 1 output succeeded                -> one usage row for the full price
    all failed / canceled                -> refund through the ledger receipt

Every public method acquires its own transaction (per-operation isolation).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from app.config import settings
from app.core.database import get_engine, run_in_transaction, utcnow
from app.core.errors import BillingError
from app.models.generation import (
    TERMINAL_STATUSES,
    BillingMode,
    GenerationJob,
    JobStatus,
)
from app.services.ledger import DebitReceipt, ledger
from app.services.plan_policy import TOKEN_QUANTUM, as_tokens

logger = logging.getLogger(__name__)

jobs_table = GenerationJob.__table__

MAX_ERROR_CHARS = 5000


class SettlementOutcome(str, Enum):
    PENDING = "pending"
    ALREADY_SETTLED = "already_settled"
    NO_CHARGE = "no_charge"
    CHARGED = "charged"
    REFUNDED = "refunded"
    MISSING = "missing"


@dataclass(frozen=True)
class JobSpec:
    """One requested output of a batch."""

    prompt: str
    label: Optional[str] = None
    product_images: Sequence[str] = ()
    style_images: Sequence[str] = ()


@dataclass(frozen=True)
class BatchRequest:
    user_id: str
    plan: str
    kind: str
    mode: str
    model: str
    service_type: str
    jobs: Sequence[JobSpec]
    tokens_reserved: Decimal = Decimal("0")
    receipt: Optional[DebitReceipt] = None
    billing_mode: BillingMode = BillingMode.PER_BATCH
    provider: str = "gemini"
    aspect_ratio: Optional[str] = None
    base_prompt: Optional[str] = None


@dataclass(frozen=True)
class EnqueuedBatch:
    batch_id: str
    job_ids: List[str]
    plan: str
    anchor_created_at: datetime


@dataclass(frozen=True)
class QueuedJob:
    """A claimed job as handed to a worker slot."""

    id: str
    batch_id: str
    batch_index: int
    user_id: str
    kind: str
    plan: str
    mode: str
    provider: str
    model: str
    aspect_ratio: Optional[str]
    prompt: str
    product_images: List[str]
    style_images: List[str]
    billing_mode: str
    worker_id: Optional[str]

    @classmethod
    def from_row(cls, row) -> "QueuedJob":
        return cls(
            id=row.id,
            batch_id=row.batch_id,
            batch_index=row.batch_index,
            user_id=row.user_id,
            kind=row.kind,
            plan=row.plan,
            mode=row.mode,
            provider=row.provider,
            model=row.model,
            aspect_ratio=row.aspect_ratio,
            prompt=row.prompt,
            product_images=list(row.product_images or []),
            style_images=list(row.style_images or []),
            billing_mode=row.billing_mode,
            worker_id=row.worker_id,
        )


@dataclass(frozen=True)
class JobView:
    id: str
    index: int
    status: str
    label: Optional[str]
    result_url: Optional[str]
    error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]


@dataclass(frozen=True)
class BatchView:
    batch_id: str
    user_id: str
    plan: str
    kind: str
    mode: str
    status: str
    counts: dict
    tokens_reserved: Decimal
    tokens_refunded: Decimal
    anchor_created_at: datetime
    first_queued_at: Optional[datetime]
    jobs: List[JobView] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def done(self) -> int:
        return sum(self.counts.get(s, 0) for s in TERMINAL_STATUSES)

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.done)

    @property
    def percent(self) -> int:
        return round(self.done * 100 / self.total) if self.total else 0

    @property
    def tokens_charged(self) -> Decimal:
        return max(Decimal("0.00"), as_tokens(self.tokens_reserved - self.tokens_refunded))


def derive_batch_status(counts: dict, total: int) -> str:
    succeeded = counts.get(JobStatus.SUCCEEDED.value, 0)
    canceled = counts.get(JobStatus.CANCELED.value, 0)
    done = succeeded + counts.get(JobStatus.FAILED.value, 0) + canceled
    if total and done >= total:
        if canceled >= total:
            return "canceled"
        if succeeded >= total:
            return "succeeded"
        return "partial" if succeeded > 0 else "failed"
    if counts.get(JobStatus.PROCESSING.value, 0) > 0:
        return "processing"
    return "queued"


def split_evenly(total: Decimal, parts: int) -> List[Decimal]:
    """Split into 0.01 shares summing exactly to ``total``; the last share takes the remainder."""
    share = (total / parts).quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)
    return [share] * (parts - 1) + [as_tokens(total - share * (parts - 1))]


class JobQueue:
    """
    Persistent generation queue backed by SQLAlchemy Core.

    Uses SELECT ... FOR UPDATE SKIP LOCKED for the claim on PostgreSQL;
    on SQLite the BEGIN IMMEDIATE transaction serializes claimers.
    """

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, batch: BatchRequest) -> EnqueuedBatch:
        if not batch.jobs:
            raise BillingError("BAD_REQUEST", "A batch needs at least one job.")
        return run_in_transaction(self._enqueue_in, batch)

    def _enqueue_in(self, conn: Connection, batch: BatchRequest) -> EnqueuedBatch:
        batch_id = str(uuid.uuid4())
        now = utcnow()
        priority = settings.priority_for(batch.plan)
        reserved = as_tokens(batch.tokens_reserved)
        count = len(batch.jobs)

        if batch.billing_mode == BillingMode.PER_OUTPUT and reserved > 0:
            amounts = split_evenly(reserved, count)
            receipts = batch.receipt.split(amounts) if batch.receipt else [None] * count
        else:
            amounts = [reserved] + [Decimal("0.00")] * (count - 1)
            receipts = [batch.receipt] + [None] * (count - 1)

        job_ids: List[str] = []
        rows = []
        for index, spec in enumerate(batch.jobs):
            job_id = str(uuid.uuid4())
            job_ids.append(job_id)
            rows.append(
                {
                    "id": job_id,
                    "batch_id": batch_id,
                    "batch_index": index,
                    "user_id": batch.user_id,
                    "kind": batch.kind,
                    "plan": batch.plan,
                    "mode": batch.mode,
                    "provider": batch.provider,
                    "model": batch.model,
                    "aspect_ratio": batch.aspect_ratio,
                    "label": spec.label,
                    "base_prompt": batch.base_prompt,
                    "prompt": spec.prompt,
                    "product_images": list(spec.product_images),
                    "style_images": list(spec.style_images),
                    "status": JobStatus.QUEUED.value,
                    "priority": priority,
                    "billing_mode": batch.billing_mode.value,
                    "service_type": batch.service_type,
                    "tokens_reserved": amounts[index],
                    "tokens_refunded": Decimal("0.00"),
                    "usage_recorded": False,
                    "debit_receipt": receipts[index].to_dict() if receipts[index] else None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        conn.execute(jobs_table.insert(), rows)
        logger.info(
            "Enqueued batch %s: user=%s plan=%s kind=%s mode=%s jobs=%d reserved=%s billing=%s",
            batch_id, batch.user_id, batch.plan, batch.kind, batch.mode, count, reserved,
            batch.billing_mode.value,
        )
        return EnqueuedBatch(batch_id=batch_id, job_ids=job_ids, plan=batch.plan, anchor_created_at=now)

    # ------------------------------------------------------------------
    # Atomic claim
    # ------------------------------------------------------------------

    def claim_next_job(self, plan: str, worker_id: str) -> Optional[QueuedJob]:
        return run_in_transaction(self._claim_in, plan, worker_id)

    def _claim_in(self, conn: Connection, plan: str, worker_id: str) -> Optional[QueuedJob]:
        t = jobs_table
        job_id = conn.execute(
            sa.select(t.c.id)
            .where(t.c.status == JobStatus.QUEUED.value)
            .where(t.c.plan == plan)
            .order_by(t.c.priority.desc(), t.c.created_at.asc(), t.c.batch_index.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar()
        if job_id is None:
            return None

        now = utcnow()
        claimed = conn.execute(
            t.update()
            .where(t.c.id == job_id)
            .where(t.c.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.PROCESSING.value, worker_id=worker_id, started_at=now, updated_at=now)
        ).rowcount
        if not claimed:
            return None
        row = conn.execute(sa.select(t).where(t.c.id == job_id)).first()
        return QueuedJob.from_row(row)

    # ------------------------------------------------------------------
    # Job completion
    # ------------------------------------------------------------------

    def mark_succeeded(self, job_id: str, worker_id: str, result_url: str) -> bool:
        return run_in_transaction(self.mark_succeeded_in, job_id, worker_id, result_url)

    def mark_succeeded_in(self, conn: Connection, job_id: str, worker_id: str, result_url: str) -> bool:
        return self._finish_in(
            conn, job_id, worker_id, status=JobStatus.SUCCEEDED.value, result_url=result_url, error_text=None
        )

    def mark_failed(self, job_id: str, worker_id: str, error_text: str) -> bool:
        return run_in_transaction(self.mark_failed_in, job_id, worker_id, error_text)

    def mark_failed_in(self, conn: Connection, job_id: str, worker_id: str, error_text: str) -> bool:
        return self._finish_in(
            conn, job_id, worker_id, status=JobStatus.FAILED.value,
            error_text=(error_text or "Unknown error")[:MAX_ERROR_CHARS],
        )

    def _finish_in(self, conn: Connection, job_id: str, worker_id: str, **values) -> bool:
        now = utcnow()
        t = jobs_table
        finished = conn.execute(
            t.update()
            .where(t.c.id == job_id)
            .where(t.c.status == JobStatus.PROCESSING.value)
            .where(t.c.worker_id == worker_id)
            .values(updated_at=now, finished_at=now, **values)
        ).rowcount
        if not finished:
            # Swept back to the queue and possibly re-claimed; the new owner reports
            logger.warning("Job %s no longer owned by worker %s, result dropped", job_id, worker_id)
        return bool(finished)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle_batch(self, batch_id: str) -> SettlementOutcome:
        return run_in_transaction(self.settle_batch_in, batch_id, serializable=True)

    def settle_batch_in(self, conn: Connection, batch_id: str) -> SettlementOutcome:
        t = jobs_table
        anchor = conn.execute(
            sa.select(t)
            .where(t.c.batch_id == batch_id)
            .where(t.c.batch_index == 0)
            .with_for_update()
        ).first()
        if anchor is None:
            return SettlementOutcome.MISSING
        if anchor.billing_mode == BillingMode.PER_OUTPUT.value:
            # Billed job by job through charge_job_in / refund_job_in
            return SettlementOutcome.NO_CHARGE

        counts = self._status_counts(conn, batch_id)
        total = sum(counts.values())
        done = sum(counts.get(s, 0) for s in TERMINAL_STATUSES)
        if total == 0 or done < total:
            return SettlementOutcome.PENDING

        reserved = as_tokens(anchor.tokens_reserved)
        refunded = as_tokens(anchor.tokens_refunded)
        if anchor.usage_recorded or (reserved > 0 and refunded >= reserved):
            return SettlementOutcome.ALREADY_SETTLED

        now = utcnow()
        if reserved <= 0:
            conn.execute(
                t.update().where(t.c.id == anchor.id).values(usage_recorded=True, updated_at=now)
            )
            return SettlementOutcome.NO_CHARGE

        if counts.get(JobStatus.SUCCEEDED.value, 0) > 0:
            ledger.record_usage_in(
                conn, anchor.user_id, reserved, anchor.service_type, anchor.model, anchor.base_prompt
            )
            conn.execute(
                t.update().where(t.c.id == anchor.id).values(usage_recorded=True, updated_at=now)
            )
            logger.info("Batch %s charged %s tokens (user=%s)", batch_id, reserved, anchor.user_id)
            return SettlementOutcome.CHARGED

        self._refund_job_in(conn, anchor)
        logger.info("Batch %s refunded %s tokens (user=%s)", batch_id, reserved - refunded, anchor.user_id)
        return SettlementOutcome.REFUNDED

    def charge_job_in(self, conn: Connection, job_id: str) -> SettlementOutcome:
        """Per-output billing: charge one succeeded job at most once."""
        row = self._lock_job(conn, job_id)
        if row is None:
            return SettlementOutcome.MISSING
        reserved = as_tokens(row.tokens_reserved)
        if row.usage_recorded or as_tokens(row.tokens_refunded) > 0:
            return SettlementOutcome.ALREADY_SETTLED
        if reserved > 0:
            ledger.record_usage_in(conn, row.user_id, reserved, row.service_type, row.model, row.base_prompt)
        conn.execute(
            jobs_table.update().where(jobs_table.c.id == job_id).values(usage_recorded=True, updated_at=utcnow())
        )
        return SettlementOutcome.CHARGED if reserved > 0 else SettlementOutcome.NO_CHARGE

    def refund_job_in(self, conn: Connection, job_id: str) -> SettlementOutcome:
        """Per-output billing: refund one failed or canceled job at most once."""
        row = self._lock_job(conn, job_id)
        if row is None:
            return SettlementOutcome.MISSING
        if row.usage_recorded or as_tokens(row.tokens_refunded) >= as_tokens(row.tokens_reserved):
            return SettlementOutcome.ALREADY_SETTLED
        self._refund_job_in(conn, row)
        return SettlementOutcome.REFUNDED

    def _refund_job_in(self, conn: Connection, row) -> Decimal:
        reserved = as_tokens(row.tokens_reserved)
        refunded = as_tokens(row.tokens_refunded)
        amount = reserved - refunded
        if amount <= 0:
            return Decimal("0.00")
        receipt = DebitReceipt.from_dict(row.debit_receipt) if refunded == 0 else None
        ledger.refund_in(conn, row.user_id, amount, receipt)
        conn.execute(
            jobs_table.update()
            .where(jobs_table.c.id == row.id)
            .values(tokens_refunded=jobs_table.c.tokens_refunded + amount, updated_at=utcnow())
        )
        return amount

    def _lock_job(self, conn: Connection, job_id: str):
        return conn.execute(
            sa.select(jobs_table).where(jobs_table.c.id == job_id).with_for_update()
        ).first()

    def _status_counts(self, conn: Connection, batch_id: str) -> dict:
        t = jobs_table
        rows = conn.execute(
            sa.select(t.c.status, sa.func.count())
            .where(t.c.batch_id == batch_id)
            .group_by(t.c.status)
        ).fetchall()
        return {status: int(count) for status, count in rows}

    # ------------------------------------------------------------------
    # Stale sweep
    # ------------------------------------------------------------------

    def requeue_stale_jobs(self, stale_minutes: Optional[int] = None) -> int:
        """Reset processing jobs with no update for ``stale_minutes`` back to queued."""
        minutes = max(5, stale_minutes) if stale_minutes is not None else settings.min_stale_job_minutes
        return run_in_transaction(self._requeue_stale_in, minutes)

    def _requeue_stale_in(self, conn: Connection, minutes: int) -> int:
        now = utcnow()
        t = jobs_table
        count = conn.execute(
            t.update()
            .where(t.c.status == JobStatus.PROCESSING.value)
            .where(t.c.updated_at < now - timedelta(minutes=minutes))
            .values(status=JobStatus.QUEUED.value, worker_id=None, updated_at=now)
        ).rowcount
        if count:
            logger.warning("Re-queued %d stale jobs (>%dm without update)", count, minutes)
        return count

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel_batch(self, batch_id: str, user_id: str) -> int:
        """Cancel the batch's still-queued jobs and settle. Returns the number canceled."""
        return run_in_transaction(self._cancel_in, batch_id, user_id, serializable=True)

    def _cancel_in(self, conn: Connection, batch_id: str, user_id: str) -> int:
        t = jobs_table
        rows = conn.execute(
            sa.select(t.c.id, t.c.status, t.c.billing_mode)
            .where(t.c.batch_id == batch_id)
            .where(t.c.user_id == user_id)
            .order_by(t.c.batch_index.asc())
            .with_for_update()
        ).fetchall()
        if not rows:
            raise BillingError("NOT_FOUND", "Batch not found.")

        queued_ids = [r.id for r in rows if r.status == JobStatus.QUEUED.value]
        if not queued_ids:
            return 0
        now = utcnow()
        conn.execute(
            t.update()
            .where(t.c.id.in_(queued_ids))
            .where(t.c.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.CANCELED.value, updated_at=now, finished_at=now)
        )
        if rows[0].billing_mode == BillingMode.PER_OUTPUT.value:
            for job_id in queued_ids:
                self.refund_job_in(conn, job_id)
        else:
            self.settle_batch_in(conn, batch_id)
        logger.info("Canceled %d queued jobs of batch %s", len(queued_ids), batch_id)
        return len(queued_ids)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def get_batch(self, batch_id: str, user_id: Optional[str] = None) -> BatchView:
        with_user = [jobs_table.c.user_id == user_id] if user_id else []
        t = jobs_table
        with get_engine().connect() as conn:
            rows = conn.execute(
                sa.select(t).where(t.c.batch_id == batch_id, *with_user).order_by(t.c.batch_index.asc())
            ).fetchall()
        if not rows:
            raise BillingError("NOT_FOUND", "Batch not found.")

        counts: dict = {}
        for row in rows:
            counts[row.status] = counts.get(row.status, 0) + 1
        queued_times = [r.created_at for r in rows if r.status == JobStatus.QUEUED.value]
        anchor = rows[0]
        return BatchView(
            batch_id=batch_id,
            user_id=anchor.user_id,
            plan=anchor.plan,
            kind=anchor.kind,
            mode=anchor.mode,
            status=derive_batch_status(counts, len(rows)),
            counts=counts,
            tokens_reserved=as_tokens(sum((as_tokens(r.tokens_reserved) for r in rows), Decimal(0))),
            tokens_refunded=as_tokens(sum((as_tokens(r.tokens_refunded) for r in rows), Decimal(0))),
            anchor_created_at=anchor.created_at,
            first_queued_at=min(queued_times) if queued_times else None,
            jobs=[
                JobView(
                    id=r.id,
                    index=r.batch_index,
                    status=r.status,
                    label=r.label,
                    result_url=r.result_url,
                    error=r.error_text,
                    created_at=r.created_at,
                    started_at=r.started_at,
                    finished_at=r.finished_at,
                )
                for r in rows
            ],
        )


job_queue = JobQueue()
