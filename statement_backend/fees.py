"""
Fee calculation and totals for a statement.

Totals are derived only from the statement's own content: counted reservations,
visible line items and the listing settings snapshot taken at build time. Cleaning
and supplies expenses of pass-through listings stay on the statement but are not
billed to the owner. Running `recompute` twice in a row yields identical numbers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from .expenses import is_cleaning_or_supplies, visible_totals
from .models import CalculationType, LineItem, LineItemType, Listing, ReservationRef, Statement
from .revenue import reservation_revenue

DEFAULT_PM_FEE_PERCENTAGE = 15.0


def effective_pm_fee(listing: Listing, created_at: Optional[date], default: float = DEFAULT_PM_FEE_PERCENTAGE) -> float:
    """PM fee for one reservation, honoring a scheduled fee change by booking date."""
    base = listing.pm_fee_percentage if listing.pm_fee_percentage is not None else default
    if not listing.new_pm_fee_enabled or listing.new_pm_fee_start_date is None or listing.new_pm_fee_percentage is None:
        return float(base)
    if created_at is None:
        return float(base)
    return float(listing.new_pm_fee_percentage) if created_at >= listing.new_pm_fee_start_date else float(base)


def waiver_active(listing: Listing, period_end: date) -> bool:
    if not listing.waive_commission:
        return False
    if listing.waive_commission_until is None:
        return True
    return period_end <= listing.waive_commission_until


def counts_cleaning_fee(ref: ReservationRef, statement: Statement) -> bool:
    """In calendar mode only the statement holding the checkout passes the cleaning fee through."""
    if statement.calculation_type == CalculationType.CHECKOUT:
        return True
    return statement.period_start <= ref.check_out <= statement.period_end


@dataclass
class PropertyTotals:
    property_id: str
    is_cohost: bool = False
    revenue: float = 0.0
    cleaning_fee: float = 0.0
    commission: float = 0.0
    expenses: float = 0.0
    upsells: float = 0.0
    tech_fee: float = 0.0
    insurance_fee: float = 0.0
    has_activity: bool = False

    @property
    def payout(self) -> float:
        if self.is_cohost:
            return -self.commission
        return self.revenue + self.upsells - self.expenses - self.commission - self.tech_fee - self.insurance_fee


@dataclass
class StatementTotals:
    total_revenue: float = 0.0
    cohost_revenue: float = 0.0
    total_expenses: float = 0.0
    total_upsells: float = 0.0
    total_cleaning_fee: float = 0.0
    pm_commission: float = 0.0
    tech_fee: float = 0.0
    insurance_fee: float = 0.0
    owner_payout: float = 0.0
    by_property: Dict[str, PropertyTotals] = field(default_factory=dict)


def _listing_for(statement: Statement, property_id: str) -> Listing:
    snap = statement.listing_settings.get(str(property_id))
    return snap if snap is not None else Listing(id=str(property_id), name=str(property_id))


def billed_to_owner(listing: Listing, item: LineItem) -> bool:
    """Pass-through listings recover cleaning and supplies from the guest cleaning fee."""
    if not listing.cleaning_fee_pass_through or item.type != LineItemType.EXPENSE:
        return True
    return not is_cleaning_or_supplies(item)


def property_totals(
    statement: Statement,
    property_id: str,
    refs: List[ReservationRef],
    items: List[LineItem],
    tech_fee: float,
    insurance_fee: float,
    default_pm_fee: float = DEFAULT_PM_FEE_PERCENTAGE,
) -> PropertyTotals:
    listing = _listing_for(statement, property_id)
    pt = PropertyTotals(property_id=str(property_id), is_cohost=listing.is_cohost_on_airbnb)

    waived = waiver_active(listing, statement.period_end)
    commission = 0.0
    for ref in refs:
        revenue = reservation_revenue(ref)
        pt.revenue += revenue
        cleaning = 0.0
        if listing.cleaning_fee_pass_through and counts_cleaning_fee(ref, statement):
            cleaning = ref.cleaning_fee
            pt.cleaning_fee += cleaning
        if not waived:
            base = max(revenue - cleaning, 0.0)
            commission += base * (effective_pm_fee(listing, ref.created_at, default_pm_fee) / 100.0)
    pt.commission = commission

    pt.expenses, pt.upsells = visible_totals(i for i in items if billed_to_owner(listing, i))
    pt.has_activity = bool(refs) or any(not i.hidden for i in items)
    if pt.has_activity and not pt.is_cohost:
        pt.tech_fee = tech_fee
        pt.insurance_fee = insurance_fee
    return pt


def compute_totals(
    statement: Statement,
    tech_fee: float,
    insurance_fee: float,
    default_pm_fee: float = DEFAULT_PM_FEE_PERCENTAGE,
) -> StatementTotals:
    """Derive every total of the statement from its current content."""
    fallback = str(statement.property_ids[0]) if statement.property_ids else ""
    refs_by: Dict[str, List[ReservationRef]] = {str(p): [] for p in statement.property_ids}
    items_by: Dict[str, List[LineItem]] = {str(p): [] for p in statement.property_ids}
    for ref in statement.reservations:
        refs_by.setdefault(str(ref.property_id), []).append(ref)
    for item in statement.items:
        items_by.setdefault(str(item.property_id or fallback), []).append(item)

    totals = StatementTotals()
    revenue = cohost_revenue = cleaning = commission = 0.0
    owner_expenses = owner_upsells = 0.0
    tech = insurance = 0.0
    for pid in refs_by:
        pt = property_totals(statement, pid, refs_by[pid], items_by.get(pid, []), tech_fee, insurance_fee, default_pm_fee)
        totals.by_property[pid] = pt
        if pt.is_cohost:
            cohost_revenue += pt.revenue
        else:
            revenue += pt.revenue
            owner_expenses += pt.expenses
            owner_upsells += pt.upsells
        cleaning += pt.cleaning_fee
        commission += pt.commission
        tech += pt.tech_fee
        insurance += pt.insurance_fee

    totals.total_revenue = round(revenue, 2)
    totals.cohost_revenue = round(cohost_revenue, 2)
    totals.total_expenses, totals.total_upsells = visible_totals(
        i for i in statement.items
        if billed_to_owner(_listing_for(statement, str(i.property_id or fallback)), i)
    )
    totals.total_cleaning_fee = round(cleaning, 2)
    totals.pm_commission = round(commission, 2)
    totals.tech_fee = round(tech, 2)
    totals.insurance_fee = round(insurance, 2)
    # cohost properties only owe commission; their revenue/expenses are display-only
    totals.owner_payout = round(
        totals.total_revenue
        + round(owner_upsells, 2)
        - round(owner_expenses, 2)
        - totals.pm_commission
        - totals.tech_fee
        - totals.insurance_fee,
        2,
    )
    return totals


def apply_totals(statement: Statement, totals: StatementTotals) -> Statement:
    statement.total_revenue = totals.total_revenue
    statement.cohost_revenue = totals.cohost_revenue
    statement.total_expenses = totals.total_expenses
    statement.total_upsells = totals.total_upsells
    statement.total_cleaning_fee = totals.total_cleaning_fee
    statement.pm_commission = totals.pm_commission
    statement.tech_fee = totals.tech_fee
    statement.insurance_fee = totals.insurance_fee
    statement.owner_payout = totals.owner_payout
    return statement


def recompute(statement: Statement, settings) -> Statement:
    totals = compute_totals(
        statement,
        tech_fee=settings.tech_fee,
        insurance_fee=settings.insurance_fee,
        default_pm_fee=settings.default_pm_fee_percentage,
    )
    return apply_totals(statement, totals)

