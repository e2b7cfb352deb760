"""
Tag-based scheduled generation.

Once a day, at a fixed wall-clock time in a fixed timezone, every cadence tag is
checked: if the tag is due, one draft statement is generated per listing group
carrying the tag (combined) and per ungrouped active listing carrying the tag.
Scheduled statements are always drafts created by System.

Time comes from a clock port so runs can be simulated for any "now".
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

import pytz

from .engine import StatementBuilder, Target
from .models import CalculationType, CreatedBy, StatementStatus, TagSchedule
from .periods import cadence_for_tag, due_period_for, next_due_date, normalize_tag, tag_matches
from .settings import DEFAULT_SETTINGS, StatementSettings

logger = logging.getLogger(__name__)


# ============================================================================
# Clock port
# ============================================================================

class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware current time."""
        pass


class WallClock(Clock):

    def __init__(self, timezone: str = "US/Eastern"):
        self.tz = pytz.timezone(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock(Clock):
    """Clock pinned to a given moment; `advance` moves it forward."""

    def __init__(self, moment: datetime, timezone: str = "US/Eastern"):
        tz = pytz.timezone(timezone)
        self._now = moment if moment.tzinfo else tz.localize(moment)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def today_in(timezone: str) -> date:
    return datetime.now(pytz.timezone(timezone)).date()


# ============================================================================
# Engine
# ============================================================================

class TagScheduleEngine:

    def __init__(
        self,
        builder: StatementBuilder,
        directory,
        activity,
        settings: StatementSettings = DEFAULT_SETTINGS,
        clock: Optional[Clock] = None,
    ):
        self.builder = builder
        self.directory = directory
        self.activity = activity
        self.settings = settings
        self.clock = clock or WallClock(settings.timezone)
        self.schedules: Dict[str, TagSchedule] = {}
        for tag in settings.cadence_tags:
            t = normalize_tag(tag)
            self.schedules[t] = TagSchedule(tag=t, cadence=cadence_for_tag(t) or "unknown")
        self._last_run_date: Optional[date] = None

    # ---- timing ----
    def _run_time(self, d: date) -> datetime:
        tz = pytz.timezone(self.settings.timezone)
        hh, mm = self.settings.auto_hour_minute
        return tz.localize(datetime.combine(d, time(hh, mm)))

    def next_due_time(self, tag: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next moment the tag will trigger, at or after `now`."""
        now = now or self.clock.now()
        start = now.date()
        if now >= self._run_time(start):
            start = start + timedelta(days=1)
        d = next_due_date(tag, start)
        return self._run_time(d) if d else None

    def status(self) -> List[Dict[str, Any]]:
        now = self.clock.now()
        out = []
        for tag, sched in self.schedules.items():
            nxt = self.next_due_time(tag, now)
            out.append({**sched.to_dict(), "next_due_time": nxt.isoformat() if nxt else None})
        return out

    # ---- targets ----
    async def targets_for(self, tag: str) -> List[Dict[str, Any]]:
        """Groups carrying the tag, then ungrouped active listings carrying it."""
        out: List[Dict[str, Any]] = []
        groups = sorted(await self.directory.list_groups(), key=lambda g: g.id)
        grouped = {lid for g in groups for lid in g.listing_ids}
        for group in groups:
            if any(tag_matches(t, tag) for t in group.tags):
                out.append({"kind": "group", "id": group.id, "name": group.name,
                            "calculation_type": group.calculation_type})
        for listing in sorted(await self.directory.list_listings(), key=lambda l: l.id):
            if listing.group_id or listing.id in grouped or not listing.is_active:
                continue
            if any(tag_matches(t, tag) for t in listing.tags):
                out.append({"kind": "listing", "id": listing.id, "name": listing.name,
                            "owner_id": listing.owner_id,
                            "calculation_type": CalculationType(self.settings.default_calculation_type)})
        return out

    async def _resolve(self, t: Dict[str, Any]) -> Target:
        if t["kind"] == "group":
            return await self.builder.group_target(t["id"])
        return Target([t["id"]], owner_id=t.get("owner_id"))

    # ---- runs ----
    async def run_tag(self, tag: str, as_of: date, force: bool = False) -> Optional[Dict[str, Any]]:
        tag = normalize_tag(tag)
        period = due_period_for(tag, as_of)
        if period is None:
            return None
        sched = self.schedules.setdefault(tag, TagSchedule(tag=tag, cadence=cadence_for_tag(tag) or "unknown"))
        summary: Dict[str, Any] = {
            "tag": tag,
            "period_start": period.start.isoformat(),
            "period_end": period.end.isoformat(),
            "generated": [],
            "skipped": [],
            "errors": [],
        }
        if not force and sched.last_triggered_period_end is not None and sched.last_triggered_period_end >= period.end:
            summary["skipped"].append({"reason": "Already triggered for this period"})
            logger.info("Tag %s already triggered for period ending %s", tag, period.end)
            return summary

        for t in await self.targets_for(tag):
            ref = {"kind": t["kind"], "id": t["id"], "name": t["name"]}
            try:
                target = await self._resolve(t)
                existing = await self.builder.guard.find_existing(
                    target.property_ids, period.start, period.end, group_id=target.group_id
                )
                if existing is not None:
                    summary["skipped"].append({**ref, "reason": "Statement already exists", "statement_id": existing.id})
                    continue
                st = await self.builder.build(
                    target, period.start, period.end, t["calculation_type"],
                    status=StatementStatus.DRAFT,
                    created_by=CreatedBy.SYSTEM,
                    skip_empty=True,
                    action="AUTO_GENERATE",
                )
                if st is None:
                    summary["skipped"].append({**ref, "reason": "No activity in period"})
                else:
                    summary["generated"].append({**ref, "statement_id": st.id, "owner_payout": st.owner_payout})
            except Exception as e:
                logger.error("Scheduled generation failed for %s %s (%s)", t["kind"], t["id"], tag, exc_info=True)
                summary["errors"].append({**ref, "error": str(e), "error_type": type(e).__name__})

        if not summary["errors"]:
            sched.last_triggered_period_end = period.end
        self.activity.log_system(
            "AUTO_GENERATE_RUN",
            tag=tag,
            period=period.label(),
            generated=len(summary["generated"]),
            skipped=len(summary["skipped"]),
            errors=len(summary["errors"]),
        )
        logger.info(
            "Tag %s %s: %d generated, %d skipped, %d errors",
            tag, period.label(), len(summary["generated"]), len(summary["skipped"]), len(summary["errors"]),
        )
        return summary

    async def run_for_date(self, as_of: date, force: bool = False) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        for tag in self.schedules:
            summary = await self.run_tag(tag, as_of, force=force)
            if summary is not None:
                results.append(summary)
        if not results:
            logger.info("No cadence tags due on %s", as_of)
        return {"date": as_of.isoformat(), "runs": results}

    async def run_forever(self):
        """Daily loop: wait for the configured wall-clock time, run once per day."""
        while True:
            try:
                if not self.settings.auto_enabled:
                    await asyncio.sleep(30)
                    continue

                now = self.clock.now()
                target = self._run_time(now.date())
                if now < target:
                    await asyncio.sleep(min((target - now).total_seconds(), 3600))
                    continue

                if self._last_run_date != now.date():
                    await self.run_for_date(now.date())
                    self._last_run_date = now.date()
                await asyncio.sleep(60 * 10)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Scheduler loop error", exc_info=True)
                await asyncio.sleep(60)
