"""
Rate / Quota Guard
==================

Read-only checks executed before any token reservation:

  1. Daily batch cap     distinct non-canceled batches since 00:00 UTC
                         -> DAILY_LIMIT (reset_at, retry_after_seconds)
  2. Cooldown window     distinct non-canceled batches in the last N seconds
                         -> RATE_LIMIT (next_available_at, retry_after_seconds)
  3. Monthly video quota usage rows (+ in-flight batches) of the mode's
                         service type within the billing period
                         -> PLAN_RESTRICTED (recommended next plan)

Limits come from settings (per plan); a plan without an entry is unlimited.
Admins skip every check. Nothing here writes.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

import sqlalchemy as sa

from app.config import settings
from app.core.database import get_engine, utcnow
from app.core.errors import BillingError
from app.models.generation import GenerationJob, JobStatus
from app.models.usage import TokenUsage
from app.services.billing_period import billing_period
from app.services.ledger import AccountSnapshot
from app.services.plan_policy import next_plan, video_monthly_limit, video_service_type

logger = logging.getLogger(__name__)

jobs_table = GenerationJob.__table__
usage_table = TokenUsage.__table__


def _start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


class QuotaGuard:

    def enforce(self, account: AccountSnapshot, kind: str, mode: str, now: Optional[datetime] = None) -> None:
        """Run every check that applies to this request; raise on the first violation."""
        if account.is_admin:
            return
        now = now or utcnow()
        if kind == "image":
            self.check_daily_limit(account.id, account.plan, kind, now)
            self.check_rate_limit(account.id, account.plan, kind, now)
        elif kind == "video":
            self.check_monthly_video_quota(account.id, account.plan, mode, account.expires_at, now)

    # ------------------------------------------------------------------

    def check_daily_limit(self, user_id: str, plan: str, kind: str, now: Optional[datetime] = None) -> None:
        limit = settings.daily_batch_limits.get(plan)
        if not limit:
            return
        now = now or utcnow()
        day_start = _start_of_utc_day(now)
        used = len(self._batch_times(user_id, plan, kind, day_start))
        if used < limit:
            return

        reset_at = day_start + timedelta(days=1)
        raise BillingError(
            "DAILY_LIMIT",
            f"Daily limit of {limit} generations reached.",
            recommended_plan=next_plan(plan),
            context={
                "limit": limit,
                "used": used,
                "reset_at": reset_at.isoformat() + "Z",
                "retry_after_seconds": _seconds_until(reset_at, now),
            },
        )

    def check_rate_limit(self, user_id: str, plan: str, kind: str, now: Optional[datetime] = None) -> None:
        rule = settings.rate_limits.get(plan)
        if not rule or not rule.get("max_batches"):
            return
        max_batches = int(rule["max_batches"])
        window = max(settings.rate_limit_min_window_seconds, int(rule.get("window_seconds", 0)))
        now = now or utcnow()

        times = self._batch_times(user_id, plan, kind, now - timedelta(seconds=window))
        if len(times) < max_batches:
            return

        # The slot frees up when enough of the oldest batches leave the window
        next_available_at = times[len(times) - max_batches] + timedelta(seconds=window)
        raise BillingError(
            "RATE_LIMIT",
            f"Up to {max_batches} generation(s) every {window // 60 or 1} minute(s) on this plan.",
            recommended_plan=next_plan(plan),
            context={
                "max_batches": max_batches,
                "window_seconds": window,
                "next_available_at": next_available_at.isoformat() + "Z",
                "retry_after_seconds": _seconds_until(next_available_at, now),
            },
        )

    def check_monthly_video_quota(
        self,
        user_id: str,
        plan: str,
        mode: str,
        expires_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> None:
        limit = video_monthly_limit(plan, mode)
        period = billing_period(expires_at)
        if not limit or period is None:
            return

        used = self.count_video_usage(user_id, mode, period.start, period.end)
        if used < limit:
            return
        raise BillingError(
            "PLAN_RESTRICTED",
            f"Monthly {mode} video limit reached ({used}/{limit}).",
            recommended_plan=next_plan(plan),
            context={"limit": limit, "used": used, "period_end": period.end.isoformat() + "Z"},
        )

    # ------------------------------------------------------------------

    def count_video_usage(self, user_id: str, mode: str, start: datetime, end: datetime) -> int:
        """Charged videos in [start, end) plus videos still queued or processing."""
        service_type = video_service_type(mode)
        with get_engine().connect() as conn:
            charged = conn.execute(
                sa.select(sa.func.count())
                .select_from(usage_table)
                .where(usage_table.c.user_id == user_id)
                .where(usage_table.c.service_type == service_type)
                .where(usage_table.c.created_at >= start)
                .where(usage_table.c.created_at < end)
            ).scalar_one()
            in_flight = conn.execute(
                sa.select(sa.func.count(sa.distinct(jobs_table.c.batch_id)))
                .where(jobs_table.c.user_id == user_id)
                .where(jobs_table.c.service_type == service_type)
                .where(jobs_table.c.usage_recorded.is_(False))
                .where(jobs_table.c.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]))
                .where(jobs_table.c.created_at >= start)
            ).scalar_one()
        return int(charged) + int(in_flight)

    def _batch_times(self, user_id: str, plan: str, kind: str, since: datetime) -> List[datetime]:
        """Creation time of each non-canceled batch since ``since``, oldest first."""
        created = sa.func.min(jobs_table.c.created_at).label("created_at")
        with get_engine().connect() as conn:
            rows = conn.execute(
                sa.select(jobs_table.c.batch_id, created)
                .where(jobs_table.c.user_id == user_id)
                .where(jobs_table.c.plan == plan)
                .where(jobs_table.c.kind == kind)
                .where(jobs_table.c.status != JobStatus.CANCELED.value)
                .where(jobs_table.c.created_at >= since)
                .group_by(jobs_table.c.batch_id)
                .order_by(created.asc())
            ).fetchall()
        return [row.created_at for row in rows]


quota_guard = QuotaGuard()
