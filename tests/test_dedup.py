import asyncio
from datetime import date

from statement_backend.dedup import DedupKey, DuplicatePreventionGuard, build_prior_index
from statement_backend.models import (
    CalculationType, HiddenReason, LineItem, LineItemType, ReservationRef, Statement, StatementStatus,
)
from statement_backend.store import InMemoryStatementStore


def _statement(sid, start, end, status=StatementStatus.FINAL, calc=CalculationType.CHECKOUT, factor=1.0):
    return Statement(
        id=sid,
        owner_ids=["o1"],
        property_ids=["101"],
        period_start=start,
        period_end=end,
        calculation_type=calc,
        status=status,
        reservations=[ReservationRef("R1", "101", "Ann", date(2024, 3, 3), date(2024, 3, 8), 1000.0,
                                     proration_factor=factor)],
        items=[
            LineItem(LineItemType.EXPENSE, date(2024, 3, 9), "Cleaning", -100.0, property_id="101", source_id="E1"),
            LineItem(LineItemType.EXPENSE, date(2024, 3, 15), "LL Cover", -150.0, property_id="101",
                     source_id="E2", hidden=True, hidden_reason=HiddenReason.LL_COVER),
        ],
    )


def test_only_finalized_overlapping_statements_are_indexed():
    statements = [
        _statement("1", date(2024, 3, 1), date(2024, 3, 31)),
        _statement("2", date(2024, 3, 1), date(2024, 3, 31), status=StatementStatus.DRAFT),
        _statement("3", date(2024, 1, 1), date(2024, 1, 31)),
    ]
    index = build_prior_index(statements, ["101"], date(2024, 3, 15), date(2024, 4, 15))
    assert index.keys() == [DedupKey("101", "E1", "1"), DedupKey("101", "R1", "1")]


def test_hidden_items_were_not_billed():
    index = build_prior_index([_statement("1", date(2024, 3, 1), date(2024, 3, 31))], ["101"],
                              date(2024, 3, 1), date(2024, 3, 31))
    assert index.lookup("101", "E2") is None
    assert index.lookup("101", "E1").statement_id == "1"


def test_excluded_statement_is_ignored():
    index = build_prior_index([_statement("1", date(2024, 3, 1), date(2024, 3, 31))], ["101"],
                              date(2024, 3, 1), date(2024, 3, 31), exclude_statement_id="1")
    assert len(index) == 0


def test_calendar_proration_is_partial_match():
    st = _statement("1", date(2024, 3, 1), date(2024, 3, 5), calc=CalculationType.CALENDAR, factor=0.4)
    index = build_prior_index([st], ["101"], date(2024, 3, 1), date(2024, 3, 31))
    assert index.reservation_matches("101", "R1")[0].full is False


def test_guard_find_existing_matches_exact_target_and_period():
    store = InMemoryStatementStore()

    async def scenario():
        await store.create(_statement("", date(2024, 3, 1), date(2024, 3, 31), status=StatementStatus.DRAFT))
        guard = DuplicatePreventionGuard(store)
        hit = await guard.find_existing(["101"], date(2024, 3, 1), date(2024, 3, 31))
        miss = await guard.find_existing(["101"], date(2024, 3, 1), date(2024, 3, 30))
        grouped = await guard.find_existing(["101"], date(2024, 3, 1), date(2024, 3, 31), group_id="g1")
        return hit, miss, grouped

    hit, miss, grouped = asyncio.run(scenario())
    assert hit is not None and hit.id == "1"
    assert miss is None
    assert grouped is None
