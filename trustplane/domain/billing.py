"""
Billing period arithmetic - Pure functions of (now, last_payment_at).

The billing period is never stored: it is derived from the last
successful payment each time it is needed.

Calendar-month rule
===================

"One month later" keeps the day-of-month and time of day. When the
target month is shorter, the day is clamped to that month's last day:

    2025-01-31 -> 2025-02-28
    2024-01-31 -> 2024-02-29
    2025-03-31 -> 2025-04-30
    2025-01-15 -> 2025-02-15
"""

import calendar
from dataclasses import dataclass
from datetime import datetime


def _shift_months(ts: datetime, months: int) -> datetime:
    month_index = ts.month - 1 + months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


def add_one_month(ts: datetime) -> datetime:
    """Same day-of-month one month later, clamped to the month's last day."""
    return _shift_months(ts, 1)


def subtract_one_month(ts: datetime) -> datetime:
    """Same day-of-month one month earlier, clamped to the month's last day."""
    return _shift_months(ts, -1)


@dataclass(frozen=True)
class BillingPeriod:
    """Closed window [start, end] during which the payment is live."""

    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


def billing_period(last_payment_at: datetime) -> BillingPeriod:
    return BillingPeriod(start=last_payment_at, end=add_one_month(last_payment_at))


def is_expired(now: datetime, last_payment_at: datetime | None) -> bool:
    """
    Whether ``last_payment_at`` is older than one calendar month at ``now``.

    The period is still live at its end instant. A user who never paid
    has no period and is never expired.
    """
    if last_payment_at is None:
        return False
    return now > add_one_month(last_payment_at)
