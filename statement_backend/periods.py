from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from .models import CalculationType, Reservation


# -----------------------------
# Periods
# -----------------------------
@dataclass(frozen=True)
class Period:
    """Inclusive date range [start, end]."""
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Period end {self.end} is before start {self.start}")

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end

    def overlaps(self, start: date, end: date) -> bool:
        return self.start <= end and start <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


# -----------------------------
# Cadence tags
# -----------------------------
WEEKLY = "WEEKLY"
BIWEEKLY_A = "BI-WEEKLY A"
BIWEEKLY_B = "BI-WEEKLY B"
MONTHLY = "MONTHLY"

CADENCES = {
    WEEKLY: "weekly",
    BIWEEKLY_A: "biweekly",
    BIWEEKLY_B: "biweekly",
    MONTHLY: "monthly",
}


def normalize_tag(tag: str) -> str:
    """Upper-case, collapse whitespace and accept BIWEEKLY for BI-WEEKLY."""
    t = " ".join(str(tag).strip().upper().split())
    t = t.replace("BIWEEKLY", "BI-WEEKLY").replace("BI WEEKLY", "BI-WEEKLY")
    return t


def cadence_for_tag(tag: str) -> Optional[str]:
    return CADENCES.get(normalize_tag(tag))


def tag_matches(candidate: str, tag: str) -> bool:
    return normalize_tag(candidate) == normalize_tag(tag)


def _last_day_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def due_period_for(tag: str, as_of: date) -> Optional[Period]:
    """
    Period that should be generated for `tag` when evaluated on `as_of`.

    WEEKLY      Mondays: the 7 days ending the day before.
    BI-WEEKLY A Mondays of odd ISO weeks: the 14 days ending the day before.
    BI-WEEKLY B Mondays of even ISO weeks: same window shape as A.
    MONTHLY     1st of the month: the whole previous month.

    Returns None when `as_of` is not the tag's trigger day.
    """
    t = normalize_tag(tag)
    if t == WEEKLY:
        if as_of.weekday() != 0:
            return None
        return Period(as_of - timedelta(days=7), as_of - timedelta(days=1))

    if t in (BIWEEKLY_A, BIWEEKLY_B):
        if as_of.weekday() != 0:
            return None
        week = as_of.isocalendar()[1]
        parity_ok = (week % 2 == 1) if t == BIWEEKLY_A else (week % 2 == 0)
        if not parity_ok:
            return None
        return Period(as_of - timedelta(days=14), as_of - timedelta(days=1))

    if t == MONTHLY:
        if as_of.day != 1:
            return None
        prev_end = as_of - timedelta(days=1)
        return Period(prev_end.replace(day=1), _last_day_of_month(prev_end.year, prev_end.month))

    return None


def next_due_date(tag: str, after: date, horizon_days: int = 62) -> Optional[date]:
    """First date on or after `after` on which `tag` is due."""
    cur = after
    for _ in range(horizon_days):
        if due_period_for(tag, cur) is not None:
            return cur
        cur = cur + timedelta(days=1)
    return None


# -----------------------------
# Reservation classification
# -----------------------------
def nights_inside(check_in: date, check_out: date, period: Period) -> int:
    """Nights of [check_in, check_out) that fall on dates inside the period."""
    first = max(check_in, period.start)
    stop = min(check_out, period.end + timedelta(days=1))
    return max((stop - first).days, 0)


def classify_reservation(reservation, period: Period, mode: CalculationType) -> Optional[float]:
    """
    Proration factor for a reservation in a period, or None when it does not belong.

    checkout: 1.0 iff the checkout date falls in the period.
    calendar: nights inside / total nights, when any night falls inside.
    A same-day stay has no nights and falls back to the checkout rule.
    """
    mode = CalculationType(mode)
    if mode == CalculationType.CHECKOUT:
        return 1.0 if period.contains(reservation.check_out) else None

    total = (reservation.check_out - reservation.check_in).days
    if total <= 0:
        return 1.0 if period.contains(reservation.check_out) else None
    inside = nights_inside(reservation.check_in, reservation.check_out, period)
    if inside <= 0:
        return None
    return inside / total


def checkout_in_period(reservation, period: Period) -> bool:
    return period.contains(reservation.check_out)


def touches_period(reservation: Reservation, period: Period) -> bool:
    """True when either classification mode could count the reservation."""
    return (
        classify_reservation(reservation, period, CalculationType.CHECKOUT) is not None
        or classify_reservation(reservation, period, CalculationType.CALENDAR) is not None
    )
