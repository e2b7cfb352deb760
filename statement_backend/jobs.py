"""
Background jobs for long fan-outs (e.g. "generate statements for all owners").

Jobs live in an ephemeral JobStore and are purged one retention window after they
finish. They are progress records only; the statements they create are the
system of record.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .engine import StatementBuilder, Target, id_sort_key
from .errors import NotFoundError
from .models import CalculationType, CreatedBy, Job, JobStatus, Listing, Owner, utc_now
from .settings import DEFAULT_SETTINGS, StatementSettings
from .store import JobStore

logger = logging.getLogger(__name__)

NO_ACTIVITY = "No activity in period"
ALREADY_EXISTS = "Statement already exists for this period"


class BackgroundJobOrchestrator:

    def __init__(
        self,
        store: JobStore,
        retention_seconds: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.retention = timedelta(seconds=retention_seconds)
        self.clock = clock
        self._ids = itertools.count(1)
        self._tasks: Dict[str, asyncio.Task] = {}

    def _require(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def create_job(self, job_type: str, params: Optional[Dict[str, Any]] = None) -> str:
        self.cleanup()
        job = Job(
            id=f"job_{next(self._ids)}",
            type=job_type,
            params=dict(params or {}),
            created_at=self.clock(),
        )
        self.store.create(job)
        logger.info("Created %s %s", job.type, job.id)
        return job.id

    def start_job(self, job_id: str, total: int = 0) -> Job:
        job = self._require(job_id)
        job.status = JobStatus.PROCESSING
        job.started_at = self.clock()
        job.total = total
        return self.store.update(job)

    def update_progress(self, job_id: str, progress: int, total: Optional[int] = None) -> Job:
        job = self._require(job_id)
        if total is not None:
            job.total = total
        job.progress = max(job.progress, progress)
        return self.store.update(job)

    def complete_job(self, job_id: str, result: Dict[str, Any]) -> Job:
        job = self._require(job_id)
        job.status = JobStatus.COMPLETED
        job.result = result
        job.completed_at = self.clock()
        logger.info("Job %s completed", job_id)
        return self.store.update(job)

    def fail_job(self, job_id: str, error: str) -> Job:
        job = self._require(job_id)
        job.status = JobStatus.FAILED
        job.error = error
        job.completed_at = self.clock()
        logger.error("Job %s failed: %s", job_id, error)
        return self.store.update(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        self.cleanup()
        return self.store.get(job_id)

    def cleanup(self) -> List[str]:
        gone = self.store.expire(self.clock() - self.retention)
        if gone:
            logger.info("Expired jobs: %s", ", ".join(gone))
        return gone

    def run_in_background(self, job_id: str, work: Callable[[str], Awaitable[Dict[str, Any]]]) -> asyncio.Task:
        """Schedule `work(job_id)` on the running loop; the caller does not wait."""

        async def _runner():
            if self._require(job_id).status == JobStatus.QUEUED:
                self.start_job(job_id)
            try:
                result = await work(job_id)
            except Exception as e:
                logger.error("Job %s raised", job_id, exc_info=True)
                self.fail_job(job_id, str(e))
                return
            self.complete_job(job_id, result)

        task = asyncio.create_task(_runner())
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    async def wait_for(self, job_id: str) -> Optional[Job]:
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.store.get(job_id)


class BulkStatementGenerator:
    """
    Fan-out over (owner, listing) pairs: one single-property statement per active
    listing of every owner with the required role. One pair's failure never stops
    the batch.
    """

    JOB_TYPE = "bulk_statement_generation"

    def __init__(
        self,
        builder: StatementBuilder,
        directory,
        orchestrator: BackgroundJobOrchestrator,
        settings: StatementSettings = DEFAULT_SETTINGS,
    ):
        self.builder = builder
        self.directory = directory
        self.orchestrator = orchestrator
        self.settings = settings

    async def work_items(self) -> List[Tuple[Owner, Listing]]:
        owners = {
            o.id: o for o in await self.directory.list_owners()
            if o.role.lower() == self.settings.owner_role.lower()
        }
        pairs = [
            (owners[l.owner_id], l) for l in await self.directory.list_listings()
            if l.is_active and l.owner_id in owners
        ]
        pairs.sort(key=lambda p: (id_sort_key(p[0].id), id_sort_key(p[1].id)))
        return pairs

    def submit(
        self,
        start: date,
        end: date,
        calculation_type: CalculationType = CalculationType.CHECKOUT,
        username: str = "user",
    ) -> str:
        calc = CalculationType(calculation_type)
        job_id = self.orchestrator.create_job(self.JOB_TYPE, {
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "calculation_type": calc.value,
        })
        self.orchestrator.run_in_background(job_id, lambda jid: self.run(jid, start, end, calc, username))
        return job_id

    async def run(
        self,
        job_id: str,
        start: date,
        end: date,
        calculation_type: CalculationType,
        username: str = "user",
    ) -> Dict[str, Any]:
        pairs = await self.work_items()
        self.orchestrator.update_progress(job_id, 0, total=len(pairs))
        logger.info("Job %s: generating statements for %d properties", job_id, len(pairs))

        generated: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for n, (owner, listing) in enumerate(pairs, start=1):
            ref = {"owner_id": owner.id, "owner_name": owner.name, "property_id": listing.id, "property_name": listing.name}
            try:
                existing = await self.builder.guard.find_existing([listing.id], start, end)
                if existing is not None:
                    skipped.append({**ref, "reason": ALREADY_EXISTS, "statement_id": existing.id})
                else:
                    st = await self.builder.build(
                        Target([listing.id], owner_id=owner.id),
                        start, end, calculation_type,
                        created_by=CreatedBy.USER,
                        username=username,
                        skip_empty=True,
                    )
                    if st is None:
                        skipped.append({**ref, "reason": NO_ACTIVITY})
                    else:
                        generated.append({**ref, "statement_id": st.id, "owner_payout": st.owner_payout})
            except Exception as e:
                logger.error("Job %s: property %s failed", job_id, listing.id, exc_info=True)
                errors.append({**ref, "error": str(e), "error_type": type(e).__name__})
            self.orchestrator.update_progress(job_id, n)

        return {
            "generated": generated,
            "skipped": skipped,
            "errors": errors,
            "summary": {
                "total": len(pairs),
                "generated": len(generated),
                "skipped": len(skipped),
                "errors": len(errors),
            },
        }
