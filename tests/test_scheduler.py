import asyncio
from dataclasses import replace
from datetime import date, datetime

import pytz

from statement_backend.models import CreatedBy, Reservation, StatementStatus
from statement_backend.scheduler import FixedClock
from statement_backend.services import build_services

EASTERN = pytz.timezone("US/Eastern")


def _services(settings, source, moment):
    return build_services(settings, source=source, clock=FixedClock(moment, settings.timezone))


def test_nothing_due_on_tuesday(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 12, 9, 0))
    result = asyncio.run(svc.scheduler.run_for_date(date(2024, 3, 12)))
    assert result == {"date": "2024-03-12", "runs": []}
    assert asyncio.run(svc.store.list()) == []


def test_monday_runs_weekly_and_biweekly(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 11, 8, 0))
    result = asyncio.run(svc.scheduler.run_for_date(date(2024, 3, 11)))
    runs = {r["tag"]: r for r in result["runs"]}
    assert set(runs) == {"WEEKLY", "BI-WEEKLY A"}

    weekly = runs["WEEKLY"]
    assert (weekly["period_start"], weekly["period_end"]) == ("2024-03-04", "2024-03-10")
    assert [g["id"] for g in weekly["generated"]] == ["101"]

    biweekly = runs["BI-WEEKLY A"]
    assert (biweekly["period_start"], biweekly["period_end"]) == ("2024-02-26", "2024-03-10")
    assert [(g["kind"], g["id"]) for g in biweekly["generated"]] == [("group", "g1")]

    statements = asyncio.run(svc.store.list())
    assert len(statements) == 2
    assert all(s.status == StatementStatus.DRAFT for s in statements)
    assert all(s.created_by == CreatedBy.SYSTEM for s in statements)
    group_st = next(s for s in statements if s.group_id == "g1")
    assert group_st.property_ids == ["102", "103"]


def test_rerun_same_period_is_idempotent(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 11, 8, 0))
    asyncio.run(svc.scheduler.run_tag("WEEKLY", date(2024, 3, 11)))
    again = asyncio.run(svc.scheduler.run_tag("WEEKLY", date(2024, 3, 11)))
    assert again["generated"] == []
    assert again["skipped"][0]["reason"] == "Already triggered for this period"

    forced = asyncio.run(svc.scheduler.run_tag("WEEKLY", date(2024, 3, 11), force=True))
    assert forced["generated"] == []
    assert forced["skipped"][0]["reason"] == "Statement already exists"
    assert len(asyncio.run(svc.store.list())) == 1


def test_monthly_skips_targets_without_activity(settings, source):
    source.expenses = [e for e in source.expenses if e.source_id != "E4"]
    svc = _services(settings, source, datetime(2024, 4, 1, 8, 0))
    summary = asyncio.run(svc.scheduler.run_tag("MONTHLY", date(2024, 4, 1)))
    assert summary["generated"] == []
    assert summary["skipped"] == [{"kind": "listing", "id": "201", "name": "Mountain View",
                                   "reason": "No activity in period"}]
    assert svc.scheduler.schedules["MONTHLY"].last_triggered_period_end == date(2024, 3, 31)


def test_errors_do_not_mark_period_triggered(settings, source):
    source.failing_properties = {"101"}
    svc = _services(settings, source, datetime(2024, 3, 11, 8, 0))
    summary = asyncio.run(svc.scheduler.run_tag("WEEKLY", date(2024, 3, 11)))
    assert summary["errors"][0]["id"] == "101"
    assert svc.scheduler.schedules["WEEKLY"].last_triggered_period_end is None
    run_log = svc.activity.entries(action="AUTO_GENERATE_RUN")
    assert run_log[0].username == "System"
    assert run_log[0].details["errors"] == 1


def test_next_due_time_uses_configured_timezone(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 12, 9, 0))
    nxt = svc.scheduler.next_due_time("WEEKLY")
    assert nxt == EASTERN.localize(datetime(2024, 3, 18, 8, 0))


def test_next_due_time_same_day_before_run_time(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 11, 7, 0))
    assert svc.scheduler.next_due_time("WEEKLY") == EASTERN.localize(datetime(2024, 3, 11, 8, 0))


def test_status_lists_every_tag(settings, source):
    svc = _services(settings, source, datetime(2024, 3, 12, 9, 0))
    tags = [s["tag"] for s in svc.scheduler.status()]
    assert tags == ["WEEKLY", "BI-WEEKLY A", "BI-WEEKLY B", "MONTHLY"]


def test_group_members_without_group_id_are_not_billed_twice(settings, source):
    source.listings["103"] = replace(source.listings["103"], group_id=None, tags=["BI-WEEKLY A"])
    svc = _services(settings, source, datetime(2024, 3, 25, 8, 0))
    targets = asyncio.run(svc.scheduler.targets_for("BI-WEEKLY A"))
    assert [(t["kind"], t["id"]) for t in targets] == [("group", "g1")]

    source.reservations.append(Reservation("R7", "103", "Gus", date(2024, 3, 12), date(2024, 3, 15), 300.0))
    summary = asyncio.run(svc.scheduler.run_tag("BI-WEEKLY A", date(2024, 3, 25)))
    assert [(g["kind"], g["id"]) for g in summary["generated"]] == [("group", "g1")]
    billing = [s.id for s in asyncio.run(svc.store.list()) if any(r.source_id == "R7" for r in s.reservations)]
    assert len(billing) == 1
