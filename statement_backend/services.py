from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .adapters import FileDataSource
from .dedup import DuplicatePreventionGuard
from .editing import EditReconciliationEngine
from .engine import StatementBuilder
from .jobs import BackgroundJobOrchestrator, BulkStatementGenerator
from .scheduler import Clock, TagScheduleEngine
from .settings import DEFAULT_SETTINGS, StatementSettings
from .store import ActivityLog, InMemoryJobStore, InMemoryStatementStore, JsonStatementStore, StatementStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API and CLI need, wired against one data source and one store."""
    settings: StatementSettings
    source: object
    store: StatementStore
    activity: ActivityLog
    guard: DuplicatePreventionGuard
    builder: StatementBuilder
    editor: EditReconciliationEngine
    jobs: BackgroundJobOrchestrator
    bulk: BulkStatementGenerator
    scheduler: TagScheduleEngine


def make_store(settings: StatementSettings) -> StatementStore:
    if settings.store_backend == "json":
        path = Path(settings.data_dir) / "statements.json"
        logger.info("Using JSON statement store at %s", path)
        return JsonStatementStore(path)
    return InMemoryStatementStore()


def build_services(
    settings: StatementSettings = DEFAULT_SETTINGS,
    source=None,
    store: Optional[StatementStore] = None,
    clock: Optional[Clock] = None,
) -> Services:
    # one object serves all three data ports (reservations, expenses, listings)
    source = source if source is not None else FileDataSource(settings.data_dir)
    store = store if store is not None else make_store(settings)
    activity = ActivityLog()
    guard = DuplicatePreventionGuard(store)
    builder = StatementBuilder(source, source, store, guard, activity, settings)
    editor = EditReconciliationEngine(store, source, builder, activity, settings)
    jobs = BackgroundJobOrchestrator(InMemoryJobStore(), retention_seconds=settings.job_retention_seconds)
    bulk = BulkStatementGenerator(builder, source, jobs, settings)
    scheduler = TagScheduleEngine(builder, source, activity, settings, clock=clock)
    return Services(
        settings=settings,
        source=source,
        store=store,
        activity=activity,
        guard=guard,
        builder=builder,
        editor=editor,
        jobs=jobs,
        bulk=bulk,
        scheduler=scheduler,
    )
