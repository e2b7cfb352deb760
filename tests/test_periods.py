from datetime import date

import pytest

from statement_backend.models import CalculationType, Reservation
from statement_backend.periods import (
    Period, classify_reservation, due_period_for, next_due_date, nights_inside, normalize_tag, tag_matches,
)


def _res(check_in, check_out, amount=1000.0):
    return Reservation("X", "1", "Guest", check_in, check_out, amount)


def test_period_rejects_end_before_start():
    with pytest.raises(ValueError):
        Period(date(2024, 3, 10), date(2024, 3, 1))


def test_period_contains_and_days():
    p = Period(date(2024, 3, 1), date(2024, 3, 31))
    assert p.contains(date(2024, 3, 31))
    assert not p.contains(date(2024, 4, 1))
    assert p.days == 31
    assert p.label() == "2024-03-01 to 2024-03-31"


def test_normalize_tag_variants():
    assert normalize_tag(" weekly ") == "WEEKLY"
    assert normalize_tag("biweekly a") == "BI-WEEKLY A"
    assert normalize_tag("Bi Weekly  B") == "BI-WEEKLY B"
    assert tag_matches("monthly", "MONTHLY")


def test_weekly_not_due_on_tuesday():
    assert due_period_for("WEEKLY", date(2024, 3, 12)) is None


def test_weekly_due_on_monday_covers_previous_week():
    p = due_period_for("WEEKLY", date(2024, 3, 11))
    assert p == Period(date(2024, 3, 4), date(2024, 3, 10))


def test_biweekly_parity_follows_iso_week():
    monday = date(2024, 3, 11)  # ISO week 11
    assert monday.isocalendar()[1] % 2 == 1
    assert due_period_for("BI-WEEKLY A", monday) == Period(date(2024, 2, 26), date(2024, 3, 10))
    assert due_period_for("BI-WEEKLY B", monday) is None
    assert due_period_for("BI-WEEKLY B", date(2024, 3, 18)) == Period(date(2024, 3, 4), date(2024, 3, 17))


def test_monthly_due_on_first_covers_previous_month():
    assert due_period_for("MONTHLY", date(2024, 3, 1)) == Period(date(2024, 2, 1), date(2024, 2, 29))
    assert due_period_for("MONTHLY", date(2024, 1, 1)) == Period(date(2023, 12, 1), date(2023, 12, 31))
    assert due_period_for("MONTHLY", date(2024, 3, 2)) is None


def test_unknown_tag_never_due():
    assert due_period_for("QUARTERLY", date(2024, 4, 1)) is None
    assert next_due_date("QUARTERLY", date(2024, 4, 1)) is None


def test_next_due_date():
    assert next_due_date("WEEKLY", date(2024, 3, 12)) == date(2024, 3, 18)
    assert next_due_date("MONTHLY", date(2024, 3, 2)) == date(2024, 4, 1)


def test_nights_inside():
    p = Period(date(2024, 3, 1), date(2024, 3, 31))
    assert nights_inside(date(2024, 3, 28), date(2024, 4, 7), p) == 4
    assert nights_inside(date(2024, 2, 25), date(2024, 3, 1), p) == 0


def test_checkout_mode_counts_only_checkout_in_period():
    p = Period(date(2024, 3, 1), date(2024, 3, 31))
    assert classify_reservation(_res(date(2024, 2, 27), date(2024, 3, 2)), p, CalculationType.CHECKOUT) == 1.0
    assert classify_reservation(_res(date(2024, 3, 28), date(2024, 4, 7)), p, CalculationType.CHECKOUT) is None


def test_calendar_mode_prorates_by_nights():
    p = Period(date(2024, 3, 1), date(2024, 3, 31))
    assert classify_reservation(_res(date(2024, 3, 28), date(2024, 4, 7)), p, "calendar") == pytest.approx(0.4)
    assert classify_reservation(_res(date(2024, 3, 3), date(2024, 3, 8)), p, "calendar") == 1.0


def test_calendar_split_factors_sum_to_one():
    r = _res(date(2024, 3, 28), date(2024, 4, 7))
    march = classify_reservation(r, Period(date(2024, 3, 1), date(2024, 3, 31)), CalculationType.CALENDAR)
    april = classify_reservation(r, Period(date(2024, 4, 1), date(2024, 4, 30)), CalculationType.CALENDAR)
    assert march + april == pytest.approx(1.0)


def test_zero_night_stay_falls_back_to_checkout():
    p = Period(date(2024, 3, 1), date(2024, 3, 31))
    assert classify_reservation(_res(date(2024, 3, 5), date(2024, 3, 5)), p, CalculationType.CALENDAR) == 1.0
