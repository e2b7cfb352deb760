"""
Persistence ports: statements, background jobs and the activity log.

Stores hand out copies, so a caller mutating a loaded Statement never changes the
stored record until it calls `update` with the version it loaded.
"""
from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .errors import ConflictError, NotFoundError, PersistenceError
from .models import AuditEntry, Job, Statement, utc_now

logger = logging.getLogger(__name__)


def _same_target(st: Statement, property_ids: List[str], group_id: Optional[str]) -> bool:
    if group_id is not None:
        return st.group_id == group_id
    return st.group_id is None and sorted(st.property_ids) == sorted(property_ids)


# ============================================================================
# Statements
# ============================================================================

class StatementStore(ABC):
    """Record store for statements: create / get / update by id, query by period."""

    @abstractmethod
    async def create(self, statement: Statement) -> Statement:
        pass

    @abstractmethod
    async def get(self, statement_id: str) -> Statement:
        pass

    @abstractmethod
    async def update(self, statement: Statement, expected_version: int) -> Statement:
        pass

    @abstractmethod
    async def list(self) -> List[Statement]:
        pass

    async def find_overlapping(self, start: date, end: date, property_ids: Iterable[str]) -> List[Statement]:
        props = {str(p) for p in property_ids}
        return [
            st for st in await self.list()
            if st.overlaps(start, end) and props.intersection(st.property_ids)
        ]

    async def find_exact(
        self,
        property_ids: Iterable[str],
        start: date,
        end: date,
        group_id: Optional[str] = None,
    ) -> Optional[Statement]:
        props = [str(p) for p in property_ids]
        for st in await self.list():
            if st.period_start == start and st.period_end == end and _same_target(st, props, group_id):
                return st
        return None


class InMemoryStatementStore(StatementStore):

    def __init__(self):
        self._records: Dict[str, Statement] = {}
        self._next_id = 1

    def _assign_id(self, statement: Statement) -> None:
        if not statement.id:
            statement.id = str(self._next_id)
        if statement.id.isdigit():
            self._next_id = max(self._next_id, int(statement.id) + 1)

    async def create(self, statement: Statement) -> Statement:
        stored = copy.deepcopy(statement)
        self._assign_id(stored)
        if stored.id in self._records:
            raise PersistenceError(f"Statement {stored.id} already exists")
        now = utc_now()
        stored.created_at = stored.created_at or now
        stored.updated_at = now
        stored.version = 1
        self._records[stored.id] = stored
        return copy.deepcopy(stored)

    async def get(self, statement_id: str) -> Statement:
        st = self._records.get(str(statement_id))
        if st is None:
            raise NotFoundError(f"Statement {statement_id} not found")
        return copy.deepcopy(st)

    async def update(self, statement: Statement, expected_version: int) -> Statement:
        current = self._records.get(statement.id)
        if current is None:
            raise NotFoundError(f"Statement {statement.id} not found")
        if current.version != expected_version:
            raise ConflictError(
                f"Statement {statement.id} changed (version {current.version}, expected {expected_version})"
            )
        stored = copy.deepcopy(statement)
        stored.version = expected_version + 1
        stored.updated_at = utc_now()
        self._records[stored.id] = stored
        return copy.deepcopy(stored)

    async def list(self) -> List[Statement]:
        return [copy.deepcopy(st) for st in sorted(self._records.values(), key=_sort_key)]


def _sort_key(st: Statement):
    return (int(st.id) if st.id.isdigit() else 0, st.id)


class JsonStatementStore(InMemoryStatementStore):
    """Statements kept in one JSON document; every write saves the whole file."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        for st in self._load():
            self._records[st.id] = st
            if st.id.isdigit():
                self._next_id = max(self._next_id, int(st.id) + 1)

    def _load(self) -> List[Statement]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Could not read {self.path}: {e}") from e
        return [Statement.from_dict(item) for item in data]

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            with open(tmp, "w") as f:
                json.dump([st.to_dict() for st in sorted(self._records.values(), key=_sort_key)], f, indent=2)
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

    async def create(self, statement: Statement) -> Statement:
        created = await super().create(statement)
        try:
            self._save()
        except PersistenceError:
            self._records.pop(created.id, None)
            raise
        return created

    async def update(self, statement: Statement, expected_version: int) -> Statement:
        previous = self._records.get(statement.id)
        updated = await super().update(statement, expected_version)
        try:
            self._save()
        except PersistenceError:
            if previous is not None:
                self._records[statement.id] = previous
            raise
        return updated


# ============================================================================
# Jobs
# ============================================================================

class JobStore(ABC):
    """Ephemeral job registry: create / get / update / expire."""

    @abstractmethod
    def create(self, job: Job) -> Job:
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def update(self, job: Job) -> Job:
        pass

    @abstractmethod
    def expire(self, older_than: datetime) -> List[str]:
        pass


class InMemoryJobStore(JobStore):

    def __init__(self):
        self._jobs: Dict[str, Job] = {}

    def create(self, job: Job) -> Job:
        self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def update(self, job: Job) -> Job:
        if job.id not in self._jobs:
            raise NotFoundError(f"Job {job.id} not found")
        self._jobs[job.id] = job
        return job

    def expire(self, older_than: datetime) -> List[str]:
        """Drop finished jobs completed before `older_than`."""
        gone = [
            jid for jid, job in self._jobs.items()
            if job.completed_at is not None and job.completed_at < older_than
        ]
        for jid in gone:
            del self._jobs[jid]
        return gone

    def __len__(self) -> int:
        return len(self._jobs)


# ============================================================================
# Activity log
# ============================================================================

class ActivityLog:
    """In-process audit trail of statement actions."""

    SYSTEM_USER = "System"

    def __init__(self, clock: Callable[[], datetime] = utc_now, max_entries: int = 5000):
        self._entries: List[AuditEntry] = []
        self._clock = clock
        self.max_entries = max_entries

    def log(self, action: str, username: str, statement_id: Optional[str] = None, **details) -> AuditEntry:
        entry = AuditEntry(self._clock(), action, username or "unknown", statement_id, details)
        self._entries.append(entry)
        if len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]
        logger.info("audit %s by %s statement=%s", action, entry.username, statement_id)
        return entry

    def log_system(self, action: str, statement_id: Optional[str] = None, **details) -> AuditEntry:
        return self.log(action, self.SYSTEM_USER, statement_id, **details)

    def entries(self, action: Optional[str] = None, statement_id: Optional[str] = None) -> List[AuditEntry]:
        out = self._entries
        if action:
            out = [e for e in out if e.action == action]
        if statement_id:
            out = [e for e in out if e.statement_id == statement_id]
        return list(out)
