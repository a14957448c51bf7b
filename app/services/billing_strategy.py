"""
Billing strategies applied when a worker finishes a job.

Both strategies run inside the worker's finalize transaction, right after
the job row moved to its terminal status, so a crash can never leave a
finished job without its billing step.
"""

import logging
from typing import Dict, Optional

from sqlalchemy.engine import Connection

from app.core.database import run_in_transaction
from app.models.generation import BillingMode
from app.services.job_queue import JobQueue, QueuedJob, SettlementOutcome, job_queue

logger = logging.getLogger(__name__)


class BillingStrategy:
    mode: BillingMode

    def __init__(self, queue: JobQueue = job_queue):
        self.queue = queue

    def finalize_in(self, conn: Connection, job: QueuedJob, succeeded: bool) -> SettlementOutcome:
        raise NotImplementedError


class PerBatchBilling(BillingStrategy):
    """Charge the batch once when its last job is terminal."""

    mode = BillingMode.PER_BATCH

    def finalize_in(self, conn: Connection, job: QueuedJob, succeeded: bool) -> SettlementOutcome:
        return self.queue.settle_batch_in(conn, job.batch_id)


class PerOutputBilling(BillingStrategy):
    """Legacy: every output carries its own share and is charged or refunded alone."""

    mode = BillingMode.PER_OUTPUT

    def finalize_in(self, conn: Connection, job: QueuedJob, succeeded: bool) -> SettlementOutcome:
        if succeeded:
            return self.queue.charge_job_in(conn, job.id)
        return self.queue.refund_job_in(conn, job.id)


_STRATEGIES: Dict[str, BillingStrategy] = {
    BillingMode.PER_BATCH.value: PerBatchBilling(),
    BillingMode.PER_OUTPUT.value: PerOutputBilling(),
}


def strategy_for(billing_mode: str) -> BillingStrategy:
    try:
        return _STRATEGIES[billing_mode]
    except KeyError:
        logger.error("Unknown billing mode %r, falling back to per_batch", billing_mode)
        return _STRATEGIES[BillingMode.PER_BATCH.value]


def finalize_job(
    job: QueuedJob,
    worker_id: str,
    result_url: Optional[str] = None,
    error_text: Optional[str] = None,
    queue: JobQueue = job_queue,
) -> Optional[SettlementOutcome]:
    """
    Record a job's outcome and run its billing step in one transaction.

    Returns None when the worker no longer owns the job (swept and
    re-claimed); nothing is written in that case.
    """
    succeeded = result_url is not None
    strategy = strategy_for(job.billing_mode)

    def _finalize(conn: Connection) -> Optional[SettlementOutcome]:
        if succeeded:
            owned = queue.mark_succeeded_in(conn, job.id, worker_id, result_url)
        else:
            owned = queue.mark_failed_in(conn, job.id, worker_id, error_text or "Unknown error")
        if not owned:
            return None
        return strategy.finalize_in(conn, job, succeeded)

    outcome = run_in_transaction(_finalize, serializable=True)
    if outcome is not None:
        logger.info(
            "Job %s %s (batch=%s billing=%s settlement=%s)",
            job.id, "succeeded" if succeeded else "failed", job.batch_id, job.billing_mode, outcome.value,
        )
    return outcome
