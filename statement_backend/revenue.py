from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from .dedup import PriorIndex, PriorMatch
from .models import CalculationType, Reservation, ReservationRef, ReservationStatus
from .periods import Period, classify_reservation


@dataclass
class RevenueAllocation:
    """Counted reservations of one property and the revenue they recognize."""
    reservations: List[ReservationRef] = field(default_factory=list)
    allocated_revenue: float = 0.0   # before cohost exclusion
    total_revenue: float = 0.0       # 0 for cohost listings
    cohost_revenue: float = 0.0
    already_billed: List[Tuple[Reservation, PriorMatch]] = field(default_factory=list)


def reservation_revenue(ref: ReservationRef) -> float:
    """Unrounded revenue one counted reservation contributes."""
    if ref.status == ReservationStatus.CANCELLED:
        # only present when explicitly added; literal amount, no proration
        return ref.gross_amount
    if ref.is_custom:
        return ref.gross_amount
    return ref.gross_amount * ref.proration_factor


def sum_revenue(refs: Iterable[ReservationRef]) -> float:
    """Sum first, round once."""
    return round(sum(reservation_revenue(r) for r in refs), 2)


def _unbilled_factor(r: Reservation, period: Period, matches: List[PriorMatch]) -> float:
    """Calendar factor counting only nights no prior statement billed."""
    total = r.nights
    if total <= 0:
        return 0.0
    remaining = 0
    night = max(r.check_in, period.start)
    last = min(r.check_out - timedelta(days=1), period.end)
    while night <= last:
        if not any(m.period_start <= night <= m.period_end for m in matches):
            remaining += 1
        night += timedelta(days=1)
    return remaining / total


def allocate(
    reservations: Iterable[Reservation],
    period: Period,
    mode: CalculationType,
    is_cohost: bool = False,
    prior: Optional[PriorIndex] = None,
) -> RevenueAllocation:
    """
    Select the reservations that count in the period and total their revenue.

    Cancelled reservations are never selected here; they only enter a statement
    through an explicit edit. Reservations billed on an overlapping finalized
    statement are left out (calendar mode keeps the nights nobody billed yet).
    """
    mode = CalculationType(mode)
    out = RevenueAllocation()
    for r in reservations:
        if r.status == ReservationStatus.CANCELLED:
            continue
        factor = classify_reservation(r, period, mode)
        if factor is None:
            continue
        matches = prior.reservation_matches(r.property_id, r.source_id) if prior is not None else []
        if matches:
            if mode == CalculationType.CHECKOUT or any(m.full for m in matches):
                out.already_billed.append((r, matches[0]))
                continue
            factor = _unbilled_factor(r, period, matches)
            if factor <= 0:
                out.already_billed.append((r, matches[0]))
                continue
        out.reservations.append(ReservationRef.from_reservation(r, factor=factor))

    out.reservations.sort(key=lambda x: (x.check_out, x.check_in, x.source_id))
    out.allocated_revenue = sum_revenue(out.reservations)
    if is_cohost:
        out.cohost_revenue = out.allocated_revenue
    else:
        out.total_revenue = out.allocated_revenue
    return out
