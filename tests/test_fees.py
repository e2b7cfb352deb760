from datetime import date

from statement_backend.fees import compute_totals, effective_pm_fee, recompute, waiver_active
from statement_backend.models import (
    CalculationType, LineItem, LineItemType, Listing, ReservationRef, Statement,
)


def _statement(listing, reservations, items=(), calc=CalculationType.CHECKOUT, start=date(2024, 3, 1),
               end=date(2024, 3, 31)):
    return Statement(
        id="1",
        owner_ids=["o1"],
        property_ids=[listing.id],
        period_start=start,
        period_end=end,
        calculation_type=calc,
        reservations=list(reservations),
        items=list(items),
        listing_settings={listing.id: listing},
    )


def _ref(amount=1000.0, cleaning=0.0, created_at=None, check_out=date(2024, 3, 8), factor=1.0):
    return ReservationRef("R1", "101", "Ann", date(2024, 3, 3), check_out, amount, cleaning_fee=cleaning,
                          created_at=created_at, proration_factor=factor)


def test_basic_payout():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0)
    st = _statement(listing, [_ref()], [
        LineItem(LineItemType.EXPENSE, date(2024, 3, 9), "Cleaning", -100.0, property_id="101", source_id="E1"),
        LineItem(LineItemType.UPSELL, date(2024, 3, 16), "Early check-in", 50.0, property_id="101", source_id="E3"),
    ])
    t = compute_totals(st, tech_fee=50.0, insurance_fee=25.0)
    assert t.total_revenue == 1000.0
    assert t.pm_commission == 200.0
    assert t.total_expenses == 100.0
    assert t.total_upsells == 50.0
    assert t.owner_payout == 675.0


def test_default_pm_fee_when_listing_has_none():
    listing = Listing("101", "Beach")
    t = compute_totals(_statement(listing, [_ref()]), 0.0, 0.0, default_pm_fee=15.0)
    assert t.pm_commission == 150.0


def test_pm_fee_transition_by_booking_date():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0, new_pm_fee_enabled=True,
                      new_pm_fee_percentage=10.0, new_pm_fee_start_date=date(2024, 2, 1))
    assert effective_pm_fee(listing, date(2024, 1, 15)) == 20.0
    assert effective_pm_fee(listing, date(2024, 2, 1)) == 10.0
    assert effective_pm_fee(listing, None) == 20.0


def test_commission_waiver():
    listing = Listing("101", "Beach", waive_commission=True, waive_commission_until=date(2024, 3, 31))
    assert waiver_active(listing, date(2024, 3, 31))
    assert not waiver_active(listing, date(2024, 4, 30))
    t = compute_totals(_statement(listing, [_ref()]), 50.0, 25.0)
    assert t.pm_commission == 0.0
    assert t.owner_payout == 925.0


def test_cohost_pays_commission_only():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0, is_cohost_on_airbnb=True)
    st = _statement(listing, [_ref()], [
        LineItem(LineItemType.EXPENSE, date(2024, 3, 9), "Cleaning", -100.0, property_id="101", source_id="E1"),
    ])
    t = compute_totals(st, tech_fee=50.0, insurance_fee=25.0)
    assert t.total_revenue == 0.0
    assert t.cohost_revenue == 1000.0
    assert t.tech_fee == 0.0 and t.insurance_fee == 0.0
    assert t.owner_payout == -200.0


def test_pass_through_cleaning_fee_excluded_from_commission():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0, cleaning_fee_pass_through=True)
    t = compute_totals(_statement(listing, [_ref(cleaning=100.0)]), 0.0, 0.0)
    assert t.total_cleaning_fee == 100.0
    assert t.pm_commission == 180.0


def test_pass_through_listing_not_billed_for_cleaning_or_supplies():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0, cleaning_fee_pass_through=True)
    st = _statement(listing, [_ref(cleaning=100.0)], [
        LineItem(LineItemType.EXPENSE, date(2024, 3, 9), "Turnover cleaning", -100.0, property_id="101", source_id="E1"),
        LineItem(LineItemType.EXPENSE, date(2024, 3, 10), "Restock", -30.0, category="Supplies", property_id="101",
                 source_id="E2"),
        LineItem(LineItemType.EXPENSE, date(2024, 3, 12), "Plumber", -40.0, property_id="101", source_id="E3"),
    ])
    t = compute_totals(st, tech_fee=0.0, insurance_fee=0.0)
    assert t.total_expenses == 40.0
    assert t.by_property["101"].expenses == 40.0
    assert t.owner_payout == 1000.0 - 40.0 - 180.0

    listing.cleaning_fee_pass_through = False
    assert compute_totals(st, 0.0, 0.0).total_expenses == 170.0


def test_calendar_cleaning_fee_only_where_checkout_falls():
    listing = Listing("101", "Beach", pm_fee_percentage=20.0, cleaning_fee_pass_through=True)
    ref = _ref(cleaning=100.0, check_out=date(2024, 4, 2), factor=0.5)
    st = _statement(listing, [ref], calc=CalculationType.CALENDAR)
    assert compute_totals(st, 0.0, 0.0).total_cleaning_fee == 0.0


def test_no_activity_no_fixed_fees():
    listing = Listing("101", "Beach")
    t = compute_totals(_statement(listing, []), 50.0, 25.0)
    assert t.tech_fee == 0.0
    assert t.owner_payout == 0.0


def test_recompute_is_idempotent(settings):
    listing = Listing("101", "Beach", pm_fee_percentage=17.5)
    st = _statement(listing, [_ref(amount=333.33), _ref(amount=123.45)])
    first = recompute(st, settings).owner_payout
    assert recompute(st, settings).owner_payout == first
