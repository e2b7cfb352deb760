import asyncio
from datetime import date

import pytest

from statement_backend.errors import ConflictError, NotFoundError
from statement_backend.models import (
    LineItem, LineItemType, Listing, ReservationRef, Statement, StatementDeltas, StatementStatus,
)
from statement_backend.store import ActivityLog, InMemoryStatementStore, JsonStatementStore


def _statement():
    return Statement(
        id="",
        owner_ids=["o1"],
        property_ids=["101"],
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
        reservations=[ReservationRef("R1", "101", "Ann", date(2024, 3, 3), date(2024, 3, 8), 1000.0)],
        items=[LineItem(LineItemType.EXPENSE, date(2024, 3, 9), "Cleaning", -100.0, property_id="101",
                        source_id="E1")],
        listing_settings={"101": Listing("101", "Beach", pm_fee_percentage=20.0)},
        deltas=StatementDeltas(visibility={"101:E1": False}),
        owner_payout=675.0,
    )


def test_memory_store_hands_out_copies():
    store = InMemoryStatementStore()

    async def scenario():
        created = await store.create(_statement())
        created.owner_payout = 1.0
        return created, await store.get(created.id)

    created, loaded = asyncio.run(scenario())
    assert created.id == "1" and loaded.version == 1
    assert loaded.owner_payout == 675.0


def test_memory_store_version_check():
    store = InMemoryStatementStore()

    async def scenario():
        st = await store.create(_statement())
        st.status = StatementStatus.FINAL
        updated = await store.update(st, expected_version=1)
        with pytest.raises(ConflictError):
            await store.update(st, expected_version=1)
        return updated

    assert asyncio.run(scenario()).version == 2


def test_missing_statement():
    with pytest.raises(NotFoundError):
        asyncio.run(InMemoryStatementStore().get("42"))


def test_json_store_persists_across_instances(tmp_path):
    path = tmp_path / "statements.json"

    async def write():
        store = JsonStatementStore(path)
        st = await store.create(_statement())
        st.status = StatementStatus.FINAL
        await store.update(st, expected_version=1)

    asyncio.run(write())
    assert path.exists()

    async def read():
        store = JsonStatementStore(path)
        loaded = await store.get("1")
        nxt = await store.create(_statement())
        return loaded, nxt

    loaded, nxt = asyncio.run(read())
    assert loaded.status == StatementStatus.FINAL
    assert loaded.version == 2
    assert loaded.listing_settings["101"].pm_fee_percentage == 20.0
    assert loaded.deltas.visibility == {"101:E1": False}
    assert loaded.reservations[0].check_out == date(2024, 3, 8)
    assert nxt.id == "2"


def test_activity_log_filters_and_caps():
    log = ActivityLog(max_entries=3)
    log.log("GENERATE", "ann", "1")
    log.log("EDIT", "ann", "1")
    log.log_system("AUTO_GENERATE", "2")
    log.log("EDIT", "bob", "2")
    assert len(log.entries()) == 3
    assert [e.statement_id for e in log.entries(action="EDIT")] == ["1", "2"]
    assert log.entries(action="AUTO_GENERATE")[0].username == "System"
