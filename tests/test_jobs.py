import asyncio
from datetime import datetime, timedelta, timezone

from conftest import MARCH_END, MARCH_START
from statement_backend.jobs import ALREADY_EXISTS, NO_ACTIVITY, BackgroundJobOrchestrator
from statement_backend.models import CalculationType, JobStatus
from statement_backend.store import InMemoryJobStore


def _run_bulk(services):
    async def scenario():
        job_id = services.bulk.submit(MARCH_START, MARCH_END, CalculationType.CHECKOUT, username="tester")
        assert services.jobs.get_job(job_id).status == JobStatus.QUEUED
        return await services.jobs.wait_for(job_id)
    return asyncio.run(scenario())


def test_bulk_generation_isolates_failures(services):
    job = _run_bulk(services)
    assert job.status == JobStatus.COMPLETED
    assert job.total == 6
    assert job.progress == job.total

    summary = job.result["summary"]
    assert summary == {"total": 6, "generated": 4, "skipped": 1, "errors": 1}
    assert job.result["skipped"][0]["property_id"] == "202"
    assert job.result["skipped"][0]["reason"] == NO_ACTIVITY
    assert job.result["errors"][0]["property_id"] == "204"
    assert job.result["errors"][0]["error_type"] == "SourceFetchError"
    generated = sorted(g["property_id"] for g in job.result["generated"])
    assert generated == ["101", "102", "103", "201"]


def test_bulk_skips_existing_statements(services):
    _run_bulk(services)
    second = _run_bulk(services)
    summary = second.result["summary"]
    assert summary["generated"] == 0
    assert summary["skipped"] == 5
    reasons = {s["reason"] for s in second.result["skipped"]}
    assert reasons == {ALREADY_EXISTS, NO_ACTIVITY}


def test_work_items_only_owner_role_and_active_listings(services):
    pairs = asyncio.run(services.bulk.work_items())
    assert [(o.id, l.id) for o, l in pairs] == [
        ("o1", "101"), ("o1", "102"), ("o1", "103"), ("o2", "201"), ("o2", "202"), ("o2", "204"),
    ]


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_job_lifecycle_and_expiry():
    clock = _Clock()
    jobs = BackgroundJobOrchestrator(InMemoryJobStore(), retention_seconds=60, clock=clock)
    job_id = jobs.create_job("test", {"a": 1})
    assert job_id == "job_1"

    jobs.start_job(job_id, total=3)
    jobs.update_progress(job_id, 2)
    jobs.update_progress(job_id, 1)
    assert jobs.get_job(job_id).progress == 2

    jobs.complete_job(job_id, {"ok": True})
    clock.now += timedelta(seconds=30)
    assert jobs.get_job(job_id).status == JobStatus.COMPLETED
    clock.now += timedelta(seconds=31)
    assert jobs.get_job(job_id) is None


def test_failed_work_marks_job_failed():
    jobs = BackgroundJobOrchestrator(InMemoryJobStore())

    async def boom(job_id):
        raise RuntimeError("boom")

    async def scenario():
        job_id = jobs.create_job("test")
        jobs.run_in_background(job_id, boom)
        return await jobs.wait_for(job_id)

    job = asyncio.run(scenario())
    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
