"""
Billing period boundaries.

A subscription activated at T runs until T + 1 calendar month; the current
period is therefore (expires_at - 1 month, expires_at]. Month arithmetic
clamps the day (Mar 31 - 1 month = Feb 28/29).
"""

import calendar
from datetime import datetime
from typing import NamedTuple, Optional


class BillingPeriod(NamedTuple):
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def billing_period(expires_at: Optional[datetime]) -> Optional[BillingPeriod]:
    """Current period for a subscription expiring at ``expires_at``; None without one."""
    if expires_at is None:
        return None
    return BillingPeriod(start=add_months(expires_at, -1), end=expires_at)
