"""
Queue Estimator
===============

Best-effort queue position and ETA for a batch in its plan queue.

    avg(mode)      mean duration of the last N succeeded jobs of
                   (plan, kind, mode), clamped to [min, max] seconds;
                   per-mode fallback when there is no history
    position       plan-queued jobs created before the batch + 1
    eta            max(min_eta, ceil((queued_work + active_work + own_work) / slots))

A batch that is already processing only estimates its own remaining work.
Any failure degrades to ``None`` values; estimation never fails a request.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from app.config import settings
from app.core.database import get_engine
from app.models.generation import GenerationJob, JobStatus
from app.services.job_queue import BatchView

logger = logging.getLogger(__name__)

jobs_table = GenerationJob.__table__


@dataclass(frozen=True)
class QueueEstimate:
    queue_position: Optional[int] = None
    eta_seconds: Optional[int] = None


class QueueEstimator:

    def average_job_seconds(self, conn: Connection, plan: str, kind: str, mode: str) -> float:
        fallback = max(
            settings.estimate_min_job_seconds,
            settings.estimate_fallback_seconds.get(mode, 45),
        )
        t = jobs_table
        rows = conn.execute(
            sa.select(t.c.started_at, t.c.finished_at)
            .where(t.c.plan == plan)
            .where(t.c.kind == kind)
            .where(t.c.mode == mode)
            .where(t.c.status == JobStatus.SUCCEEDED.value)
            .where(t.c.started_at.is_not(None))
            .where(t.c.finished_at.is_not(None))
            .order_by(t.c.finished_at.desc())
            .limit(settings.estimate_sample_size)
        ).fetchall()
        durations = [(r.finished_at - r.started_at).total_seconds() for r in rows]
        durations = [d for d in durations if d >= 0]
        if not durations:
            return float(fallback)
        avg = sum(durations) / len(durations)
        if avg <= 0:
            return float(fallback)
        return min(float(settings.estimate_max_job_seconds), max(float(settings.estimate_min_job_seconds), avg))

    def estimate(
        self,
        plan: str,
        kind: str,
        mode: str,
        queued_since: Optional[datetime],
        remaining: int,
        processing: bool = False,
    ) -> QueueEstimate:
        """
        ``queued_since`` is the creation time of the batch's first queued job;
        None means nothing of the batch is waiting anymore.
        """
        try:
            with get_engine().connect() as conn:
                return self._estimate_in(conn, plan, kind, mode, queued_since, remaining, processing)
        except Exception:
            logger.exception("Queue estimate unavailable for plan=%s", plan)
            return QueueEstimate()

    def estimate_batch(self, batch: BatchView) -> QueueEstimate:
        return self.estimate(
            batch.plan,
            batch.kind,
            batch.mode,
            batch.first_queued_at,
            batch.remaining,
            processing=batch.status == "processing",
        )

    def _estimate_in(
        self,
        conn: Connection,
        plan: str,
        kind: str,
        mode: str,
        queued_since: Optional[datetime],
        remaining: int,
        processing: bool,
    ) -> QueueEstimate:
        slots = settings.slots_for(plan)
        min_eta = settings.estimate_min_eta_seconds
        averages: Dict[tuple, float] = {}

        def avg(job_kind: str, job_mode: str) -> float:
            key = (job_kind, job_mode)
            if key not in averages:
                averages[key] = self.average_job_seconds(conn, plan, job_kind, job_mode)
            return averages[key]

        own_work = max(0, remaining) * avg(kind, mode)

        if queued_since is None:
            if processing and remaining > 0:
                return QueueEstimate(eta_seconds=max(min_eta, math.ceil(own_work / slots)))
            return QueueEstimate()

        t = jobs_table
        ahead_rows = conn.execute(
            sa.select(t.c.kind, t.c.mode, sa.func.count())
            .where(t.c.plan == plan)
            .where(t.c.status == JobStatus.QUEUED.value)
            .where(t.c.created_at < queued_since)
            .group_by(t.c.kind, t.c.mode)
        ).fetchall()
        active_rows = conn.execute(
            sa.select(t.c.kind, t.c.mode, sa.func.count())
            .where(t.c.plan == plan)
            .where(t.c.status == JobStatus.PROCESSING.value)
            .group_by(t.c.kind, t.c.mode)
        ).fetchall()

        ahead = sum(int(count) for _, _, count in ahead_rows)
        queued_work = sum(int(count) * avg(k, m) for k, m, count in ahead_rows)
        active_work = sum(int(count) * avg(k, m) for k, m, count in active_rows)
        eta = max(min_eta, math.ceil((queued_work + active_work + own_work) / slots))
        return QueueEstimate(queue_position=max(1, ahead + 1), eta_seconds=eta)


queue_estimator = QueueEstimator()
