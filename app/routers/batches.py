"""
Batch status polling and cancellation.

- GET  /api/batches/{batch_id}          status, progress, per-job results, ETA
- POST /api/batches/{batch_id}/cancel   cancel still-queued jobs (refund when nothing ran)
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth.session_auth import get_current_user
from app.core.async_utils import run_sync
from app.services.job_queue import BatchView, job_queue
from app.services.ledger import AccountSnapshot
from app.services.queue_estimator import queue_estimator

logger = logging.getLogger(__name__)

router = APIRouter()


class JobResult(BaseModel):
    id: str
    index: int
    status: str
    label: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class BatchProgress(BaseModel):
    done: int
    total: int
    percent: int
    counts: Dict[str, int]


class BatchStatusResponse(BaseModel):
    batch_id: str
    kind: str
    mode: str
    plan: str
    status: str
    progress: BatchProgress
    queue_position: Optional[int] = None
    eta_seconds: Optional[int] = None
    tokens_reserved: float
    tokens_refunded: float
    tokens_charged: float
    jobs: List[JobResult]


class CancelResponse(BaseModel):
    batch_id: str
    canceled: int
    status: str


def _iso(value) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def _render(batch: BatchView) -> dict:
    estimate = queue_estimator.estimate_batch(batch)
    return {
        "batch_id": batch.batch_id,
        "kind": batch.kind,
        "mode": batch.mode,
        "plan": batch.plan,
        "status": batch.status,
        "progress": {
            "done": batch.done,
            "total": batch.total,
            "percent": batch.percent,
            "counts": batch.counts,
        },
        "queue_position": estimate.queue_position,
        "eta_seconds": estimate.eta_seconds,
        "tokens_reserved": float(batch.tokens_reserved),
        "tokens_refunded": float(batch.tokens_refunded),
        "tokens_charged": float(batch.tokens_charged),
        "jobs": [
            {
                "id": job.id,
                "index": job.index,
                "status": job.status,
                "label": job.label,
                "result_url": job.result_url,
                "error": job.error,
                "created_at": _iso(job.created_at),
                "started_at": _iso(job.started_at),
                "finished_at": _iso(job.finished_at),
            }
            for job in batch.jobs
        ],
    }


def _load_and_render(batch_id: str, user_id: str) -> dict:
    return _render(job_queue.get_batch(batch_id, user_id))


@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(batch_id: str, user: AccountSnapshot = Depends(get_current_user)):
    return await run_sync(_load_and_render, batch_id, user.id)


@router.post("/{batch_id}/cancel", response_model=CancelResponse)
async def cancel_batch(batch_id: str, user: AccountSnapshot = Depends(get_current_user)):
    canceled = await run_sync(job_queue.cancel_batch, batch_id, user.id)
    batch = await run_sync(job_queue.get_batch, batch_id, user.id)
    logger.info("Cancel requested: batch=%s user=%s canceled=%d", batch_id, user.id, canceled)
    return {"batch_id": batch_id, "canceled": canceled, "status": batch.status}
