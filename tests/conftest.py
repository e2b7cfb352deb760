import os

# pin env before the package reads its settings defaults
os.environ["STATEMENTS_AUTO_ENABLED"] = "0"
os.environ["STATEMENTS_STORE"] = "memory"
os.environ["STATEMENTS_LOG_LEVEL"] = "WARNING"

from datetime import date

import pytest

from statement_backend.adapters import InMemoryDataSource
from statement_backend.models import (
    CalculationType, Expense, LineItemType, Listing, ListingGroup, Owner, Reservation, ReservationStatus,
)
from statement_backend.services import build_services
from statement_backend.settings import DEFAULT_CADENCE_TAGS, StatementSettings

MARCH_START = date(2024, 3, 1)
MARCH_END = date(2024, 3, 31)


@pytest.fixture
def settings():
    return StatementSettings(
        data_dir="unused",
        store_backend="memory",
        auto_enabled=False,
        auto_time="08:00",
        timezone="US/Eastern",
        cadence_tags=list(DEFAULT_CADENCE_TAGS),
        default_pm_fee_percentage=15.0,
        tech_fee=50.0,
        insurance_fee=25.0,
        default_calculation_type="checkout",
        owner_role="owner",
        job_retention_seconds=3600,
        log_level="WARNING",
    )


def make_source() -> InMemoryDataSource:
    """
    Two owners with three active listings each, one admin, one listing group.

    Listing 101 (Alice, 20% PM, WEEKLY) carries most of the activity for March 2024:
    a 5-night $1000 stay, a cancelled stay, a cleaning expense, an LL Cover repair
    of $150 and a $50 upsell. Listing 202 has no activity and 204 fails to fetch.
    """
    owners = [
        Owner("o1", "Alice"),
        Owner("o2", "Bob"),
        Owner("o3", "Carol", role="admin"),
    ]
    listings = [
        Listing("101", "Beach House", owner_id="o1", pm_fee_percentage=20.0, tags=["WEEKLY"],
                internal_notes="Gate code 1234"),
        Listing("102", "Lake Cabin", owner_id="o1", group_id="g1"),
        Listing("103", "City Loft", owner_id="o1", group_id="g1"),
        Listing("201", "Mountain View", owner_id="o2", tags=["MONTHLY"]),
        Listing("202", "Desert Flat", owner_id="o2"),
        Listing("203", "Old Barn", owner_id="o2", is_active=False),
        Listing("204", "River Lodge", owner_id="o2"),
        Listing("301", "Admin Studio", owner_id="o3"),
    ]
    groups = [
        ListingGroup("g1", "Lake Group", tags=["BI-WEEKLY A"], calculation_type=CalculationType.CHECKOUT,
                     listing_ids=["102", "103"]),
    ]
    reservations = [
        Reservation("R1", "101", "Ann", date(2024, 3, 3), date(2024, 3, 8), 1000.0, cleaning_fee=100.0),
        Reservation("R2", "101", "Ben", date(2024, 3, 10), date(2024, 3, 12), 300.0,
                    status=ReservationStatus.CANCELLED),
        Reservation("R3", "102", "Cal", date(2024, 3, 5), date(2024, 3, 7), 400.0),
        Reservation("R4", "103", "Dee", date(2024, 3, 20), date(2024, 3, 25), 600.0),
        Reservation("R5", "201", "Eve", date(2024, 3, 28), date(2024, 4, 7), 1000.0),
        Reservation("R6", "301", "Fay", date(2024, 3, 2), date(2024, 3, 4), 200.0),
    ]
    expenses = [
        Expense("E1", "101", date(2024, 3, 9), "Turnover cleaning", -100.0, category="Cleaning"),
        Expense("E2", "101", date(2024, 3, 15), "Roof repair LL Cover", -150.0, category="Maintenance"),
        Expense("E3", "101", date(2024, 3, 16), "Early check-in", 50.0, type=LineItemType.UPSELL),
        Expense("E4", "201", date(2024, 3, 10), "Supplies", -80.0, category="Supplies"),
        Expense("E5", "102", date(2024, 3, 6), "Restock", -20.0, category="Supplies"),
    ]
    source = InMemoryDataSource(reservations, expenses, listings, groups, owners)
    source.failing_properties = {"204"}
    return source


@pytest.fixture
def source():
    return make_source()


@pytest.fixture
def services(settings, source):
    return build_services(settings, source=source)
