from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple

from .dedup import DuplicatePreventionGuard, PriorIndex
from .errors import NotFoundError, PersistenceError, SourceFetchError, StatementError, ValidationError
from .expenses import classify, is_cleaning_item
from .fees import recompute
from .models import (
    CalculationType, CreatedBy, HiddenReason, LineItem, Listing, ReservationRef, Statement, StatementStatus,
)
from .periods import Period
from .revenue import allocate
from .settings import DEFAULT_SETTINGS, StatementSettings

logger = logging.getLogger(__name__)


# -----------------------------
# Targets
# -----------------------------
@dataclass
class Target:
    """What a statement is generated for: one property, a set of properties, or a listing group."""
    property_ids: List[str]
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    group_tags: List[str] = field(default_factory=list)
    owner_id: Optional[str] = None

    @property
    def label(self) -> str:
        if self.group_id is not None:
            return f"group {self.group_id}"
        if len(self.property_ids) == 1:
            return f"property {self.property_ids[0]}"
        return f"properties {','.join(self.property_ids)}"


def validate_period(start: date, end: date) -> Period:
    if start is None or end is None:
        raise ValidationError("Start and end dates are required")
    if end < start:
        raise ValidationError(f"End date {end} is before start date {start}")
    return Period(start, end)


# -----------------------------
# Helpers
# -----------------------------
def build_internal_notes(listings: List[Listing]) -> Optional[str]:
    notes = []
    for listing in listings:
        if listing.internal_notes:
            name = listing.internal_name or listing.name
            notes.append(f"[{name}]: {listing.internal_notes}")
    return "\n\n".join(notes) if notes else None


def cleaning_mismatch_warning(
    reservations: List[ReservationRef],
    items: List[LineItem],
    listings: Dict[str, Listing],
) -> Optional[Dict]:
    """Pass-through listings should show one cleaning expense per counted reservation."""
    pass_through = {pid for pid, l in listings.items() if l.cleaning_fee_pass_through}
    if not pass_through:
        return None
    res_count = sum(1 for r in reservations if r.property_id in pass_through)
    clean_count = sum(
        1 for i in items
        if i.property_id in pass_through and not i.hidden and is_cleaning_item(i)
    )
    if res_count > 0 and clean_count != res_count:
        return {
            "type": "cleaning_mismatch",
            "message": f"Cleaning expense count ({clean_count}) does not match reservation count ({res_count})",
            "reservation_count": res_count,
            "cleaning_expense_count": clean_count,
            "difference": res_count - clean_count,
        }
    return None


def has_activity(statement: Statement) -> bool:
    if statement.reservations:
        return True
    return any(i.hidden_reason != HiddenReason.PRIOR_STATEMENT for i in statement.items)


# -----------------------------
# Builder
# -----------------------------
class StatementBuilder:
    """
    Fetches source data for a target and period, allocates revenue, classifies
    expenses, computes fees and persists the resulting Statement.
    """

    def __init__(self, source, directory, store, guard: DuplicatePreventionGuard, activity, settings: StatementSettings = DEFAULT_SETTINGS):
        self.source = source
        self.directory = directory
        self.store = store
        self.guard = guard
        self.activity = activity
        self.settings = settings

    # ---- target resolution ----
    async def property_target(self, property_id: str) -> Target:
        listing = await self.directory.get_listing(property_id)
        return Target([listing.id], owner_id=listing.owner_id)

    async def combined_target(self, property_ids: List[str]) -> Target:
        if not property_ids:
            raise ValidationError("At least one property is required")
        ids = []
        for pid in property_ids:
            listing = await self.directory.get_listing(pid)
            if listing.id not in ids:
                ids.append(listing.id)
        return Target(ids)

    async def group_target(self, group_id: str) -> Target:
        group = await self.directory.get_group(group_id)
        listings = {l.id: l for l in await self.directory.list_listings()}
        members = [lid for lid in group.listing_ids if lid in listings and listings[lid].is_active]
        if not members:
            raise ValidationError(f"Group {group_id} has no active listings")
        return Target(members, group_id=group.id, group_name=group.name, group_tags=list(group.tags))

    async def owner_target(self, owner_id: str) -> Target:
        owner = await self.directory.get_owner(owner_id)
        ids = sorted(
            (l.id for l in await self.directory.list_listings() if l.owner_id == owner.id and l.is_active),
            key=id_sort_key,
        )
        if not ids:
            raise ValidationError(f"Owner {owner_id} has no active listings")
        return Target(ids, owner_id=owner.id)

    # ---- fetch ----
    async def _fetch(self, property_id: str, period: Period):
        try:
            reservations = await self.source.fetch_reservations(property_id, period.start, period.end)
            expenses = await self.source.fetch_expenses(property_id, period.start, period.end)
        except StatementError:
            raise
        except Exception as e:
            raise SourceFetchError(f"Failed to fetch data for property {property_id}: {e}", property_id) from e
        return reservations, expenses

    async def _listings_for(self, property_ids: List[str]) -> Dict[str, Listing]:
        listings = {l.id: l for l in await self.directory.list_listings()}
        out: Dict[str, Listing] = {}
        for pid in property_ids:
            if pid not in listings:
                raise NotFoundError(f"Listing {pid} not found")
            out[pid] = listings[pid]
        return out

    # ---- compose ----
    async def compose(
        self,
        target: Target,
        start: date,
        end: date,
        calculation_type: CalculationType,
        exclude_statement_id: Optional[str] = None,
    ) -> Statement:
        """Build an unsaved Statement for the target from source data."""
        period = validate_period(start, end)
        try:
            mode = CalculationType(calculation_type)
        except ValueError:
            raise ValidationError(f"Unknown calculation type: {calculation_type}")

        listings = await self._listings_for(target.property_ids)
        prior: PriorIndex = await self.guard.prior_index(target.property_ids, start, end, exclude_statement_id)

        reservations: List[ReservationRef] = []
        items: List[LineItem] = []
        warnings: List[Dict] = []
        for pid in target.property_ids:
            raw_res, raw_exp = await self._fetch(pid, period)
            listing = listings[pid]
            alloc = allocate(raw_res, period, mode, is_cohost=listing.is_cohost_on_airbnb, prior=prior)
            reservations.extend(alloc.reservations)
            for r, match in alloc.already_billed:
                warnings.append({
                    "type": "prior_statement_reservation",
                    "message": f"Reservation {r.source_id} already billed on statement {match.statement_id} ({match.period_label})",
                    "reservation_id": r.source_id,
                    "property_id": pid,
                    "prior_statement_id": match.statement_id,
                })
            items.extend(classify(raw_exp, prior))

        order = {pid: n for n, pid in enumerate(target.property_ids)}
        items.sort(key=lambda i: (i.date, order.get(i.property_id, 0), i.type.value, i.source_id or "", i.description))

        mismatch = cleaning_mismatch_warning(reservations, items, listings)
        if mismatch:
            warnings.append(mismatch)

        owner_ids = sorted({l.owner_id for l in listings.values() if l.owner_id}, key=id_sort_key)
        if target.owner_id and target.owner_id not in owner_ids:
            owner_ids.insert(0, target.owner_id)

        statement = Statement(
            id="",
            owner_ids=owner_ids,
            property_ids=list(target.property_ids),
            period_start=start,
            period_end=end,
            calculation_type=mode,
            group_id=target.group_id,
            group_name=target.group_name,
            group_tags=list(target.group_tags),
            property_names={pid: (l.internal_name or l.name) for pid, l in listings.items()},
            reservations=reservations,
            items=items,
            cleaning_fee_pass_through=any(l.cleaning_fee_pass_through for l in listings.values()),
            internal_notes=build_internal_notes(list(listings.values())),
            warnings=warnings,
            listing_settings={pid: l for pid, l in listings.items()},
        )
        return recompute(statement, self.settings)

    # ---- build ----
    async def build(
        self,
        target: Target,
        start: date,
        end: date,
        calculation_type: CalculationType = CalculationType.CHECKOUT,
        status: StatementStatus = StatementStatus.DRAFT,
        created_by: CreatedBy = CreatedBy.USER,
        username: Optional[str] = None,
        skip_empty: bool = False,
        action: str = "GENERATE",
    ) -> Optional[Statement]:
        """
        Compose and persist a statement. With `skip_empty`, a target with no
        activity in the period returns None instead of an empty statement.
        """
        statement = await self.compose(target, start, end, calculation_type)
        if skip_empty and not has_activity(statement):
            logger.info("Skipped %s for %s..%s: no activity in period", target.label, start, end)
            return None

        statement.status = StatementStatus(status)
        statement.created_by = CreatedBy(created_by)
        saved = await self.persist(statement)
        logger.info(
            "Generated statement %s for %s (%s..%s, %s): payout %.2f",
            saved.id, target.label, start, end, saved.calculation_type.value, saved.owner_payout,
        )
        user = username or (self.activity.SYSTEM_USER if saved.created_by == CreatedBy.SYSTEM else "user")
        self.activity.log(
            action, user, saved.id,
            property_ids=saved.property_ids,
            group_id=saved.group_id,
            period=saved.period_label,
            calculation_type=saved.calculation_type.value,
        )
        return saved

    async def persist(self, statement: Statement) -> Statement:
        try:
            return await self.store.create(statement)
        except StatementError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to save statement: {e}") from e


def id_sort_key(value: str) -> Tuple[int, int, str]:
    s = str(value)
    return (0, int(s), s) if s.isdigit() else (1, 0, s)
