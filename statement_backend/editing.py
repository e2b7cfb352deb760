"""
Post-hoc edits of persisted statements.

Every edit works on a copy of the stored statement: all requested operations are
validated and applied to the copy, totals are recomputed, and only then is the
copy written back with the version it was loaded at. A rejected edit leaves the
stored statement untouched.

Edits are recorded as deltas on the statement so a reconfigure (new period or
calculation mode) can rebuild from source data and re-apply them.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .engine import StatementBuilder, Target, cleaning_mismatch_warning, validate_period
from .errors import StatementError, SourceFetchError, ValidationError
from .fees import recompute
from .models import (
    CalculationType, HiddenReason, LineItem, LineItemType, PayoutStatus, Reservation, ReservationRef,
    ReservationStatus, Statement, StatementDeltas, StatementStatus,
)
from .periods import Period, classify_reservation
from .settings import DEFAULT_SETTINGS, StatementSettings

logger = logging.getLogger(__name__)

ITEM_FIELDS = ("date", "description", "category", "amount")

STATUS_TRANSITIONS = {
    StatementStatus.DRAFT: {StatementStatus.DRAFT, StatementStatus.FINAL},
    StatementStatus.FINAL: {StatementStatus.FINAL, StatementStatus.DRAFT, StatementStatus.SENT},
    StatementStatus.SENT: {StatementStatus.SENT},
}


@dataclass
class EditRequest:
    item_visibility_updates: List[Dict[str, Any]] = field(default_factory=list)   # {global_index, hidden}
    reservation_ids_to_add: List[str] = field(default_factory=list)
    reservation_ids_to_remove: List[str] = field(default_factory=list)
    custom_reservation: Optional[Dict[str, Any]] = None
    cancelled_reservation_ids_to_add: List[str] = field(default_factory=list)
    cancelled_reservation_amounts: Dict[str, float] = field(default_factory=dict)
    expense_item_updates: List[Dict[str, Any]] = field(default_factory=list)      # {global_index, date?, ...}
    upsell_item_updates: List[Dict[str, Any]] = field(default_factory=list)
    reservation_cleaning_fee_updates: Dict[str, float] = field(default_factory=dict)
    internal_notes: Optional[str] = None

    @property
    def is_structural(self) -> bool:
        return bool(
            self.item_visibility_updates or self.reservation_ids_to_add or self.reservation_ids_to_remove
            or self.custom_reservation or self.cancelled_reservation_ids_to_add
            or self.expense_item_updates or self.upsell_item_updates
            or self.reservation_cleaning_fee_updates
        )

    @property
    def is_empty(self) -> bool:
        return not self.is_structural and self.internal_notes is None


def is_locked(statement: Statement) -> bool:
    return statement.status == StatementStatus.SENT or statement.payout_status == PayoutStatus.PAID


def _as_date(value: Any, name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date for {name}: {value!r}")


def _as_amount(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount for {name}: {value!r}")


def _item_at(statement: Statement, index: Any) -> LineItem:
    try:
        i = int(index)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid item index: {index!r}")
    if i < 0 or i >= len(statement.items):
        raise ValidationError(f"Item index {i} out of range (statement has {len(statement.items)} items)")
    return statement.items[i]


def _set_hidden(item: LineItem, hidden: bool) -> None:
    if hidden:
        if not item.hidden:
            item.hidden = True
            item.hidden_reason = HiddenReason.MANUAL
    else:
        item.hidden = False
        item.hidden_reason = HiddenReason.NONE


def _apply_item_fields(item: LineItem, fields: Dict[str, Any]) -> None:
    if "date" in fields:
        item.date = _as_date(fields["date"], "date")
    if "description" in fields:
        item.description = str(fields["description"])
    if "category" in fields:
        item.category = str(fields["category"])
    if "amount" in fields:
        item.amount = _as_amount(fields["amount"], "amount")


def _refresh_warnings(statement: Statement) -> None:
    kept = [w for w in statement.warnings if w.get("type") != "cleaning_mismatch"]
    mismatch = cleaning_mismatch_warning(statement.reservations, statement.items, statement.listing_settings)
    if mismatch:
        kept.append(mismatch)
    statement.warnings = kept


def _find_ref(statement: Statement, source_id: str) -> Optional[ReservationRef]:
    for ref in statement.reservations:
        if ref.source_id == str(source_id):
            return ref
    return None


class EditReconciliationEngine:
    """Applies edits, status changes and reconfigures to persisted statements."""

    def __init__(self, store, source, builder: StatementBuilder, activity, settings: StatementSettings = DEFAULT_SETTINGS):
        self.store = store
        self.source = source
        self.builder = builder
        self.activity = activity
        self.settings = settings
        # entries vanish once no edit holds or awaits the lock
        self._locks = weakref.WeakValueDictionary()

    def _lock(self, statement_id: str) -> asyncio.Lock:
        lock = self._locks.get(statement_id)
        if lock is None:
            lock = self._locks[statement_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Source lookups
    # ------------------------------------------------------------------
    async def _source_reservation(self, statement: Statement, source_id: str) -> Optional[Reservation]:
        for pid in statement.property_ids:
            try:
                r = await self.source.fetch_reservation(pid, source_id)
            except StatementError:
                raise
            except Exception as e:
                raise SourceFetchError(f"Failed to look up reservation {source_id}: {e}", pid) from e
            if r is not None:
                return r
        return None

    def _ref_for_added(self, statement: Statement, r: Reservation) -> ReservationRef:
        factor = classify_reservation(r, Period(statement.period_start, statement.period_end), statement.calculation_type)
        return ReservationRef.from_reservation(r, factor=factor if factor is not None else 1.0, manually_added=True)

    # ------------------------------------------------------------------
    # Operations on a working copy
    # ------------------------------------------------------------------
    def _apply_visibility(self, st: Statement, updates: List[Dict[str, Any]]) -> None:
        for u in updates:
            item = _item_at(st, u.get("global_index"))
            if "hidden" not in u:
                raise ValidationError("Visibility update requires 'hidden'")
            hidden = bool(u["hidden"])
            key = item.key
            _set_hidden(item, hidden)
            st.deltas.visibility[key] = hidden

    def _apply_item_updates(self, st: Statement, updates: List[Dict[str, Any]], kind: LineItemType) -> None:
        for u in updates:
            item = _item_at(st, u.get("global_index"))
            if item.type != kind:
                raise ValidationError(f"Item {u.get('global_index')} is an {item.type.value}, not an {kind.value}")
            fields = {k: u[k] for k in ITEM_FIELDS if k in u and u[k] is not None}
            if not fields:
                continue
            key = item.key
            _apply_item_fields(item, fields)
            override = st.deltas.item_overrides.setdefault(key, {})
            for k, v in fields.items():
                override[k] = v.isoformat() if isinstance(v, date) else v

    def _remove_reservations(self, st: Statement, ids: List[str]) -> None:
        for rid in ids:
            ref = _find_ref(st, rid)
            if ref is None:
                raise ValidationError(f"Reservation {rid} is not on this statement")
            st.reservations = [r for r in st.reservations if r is not ref]
            d = st.deltas
            d.cleaning_fees.pop(ref.source_id, None)
            if ref.is_custom:
                continue
            if ref.source_id in d.added_reservation_ids:
                d.added_reservation_ids.remove(ref.source_id)
            elif ref.source_id in d.cancelled_reservation_amounts:
                del d.cancelled_reservation_amounts[ref.source_id]
            elif ref.source_id not in d.removed_reservation_ids:
                d.removed_reservation_ids.append(ref.source_id)

    async def _add_reservations(self, st: Statement, ids: List[str]) -> None:
        for rid in ids:
            if _find_ref(st, rid) is not None:
                raise ValidationError(f"Reservation {rid} is already on this statement")
            r = await self._source_reservation(st, rid)
            if r is None:
                raise ValidationError(f"Reservation {rid} not found for this statement's properties")
            if r.status == ReservationStatus.CANCELLED:
                raise ValidationError(f"Reservation {rid} is cancelled; add it as a cancelled reservation")
            st.reservations.append(self._ref_for_added(st, r))
            d = st.deltas
            if rid in d.removed_reservation_ids:
                d.removed_reservation_ids.remove(rid)
            else:
                d.added_reservation_ids.append(str(rid))

    async def _add_cancelled(self, st: Statement, ids: List[str], amounts: Dict[str, float]) -> None:
        for rid in ids:
            if _find_ref(st, rid) is not None:
                raise ValidationError(f"Reservation {rid} is already on this statement")
            r = await self._source_reservation(st, rid)
            if r is None:
                raise ValidationError(f"Reservation {rid} not found for this statement's properties")
            amount = _as_amount(amounts[rid], f"reservation {rid}") if rid in amounts else r.gross_amount
            ref = ReservationRef.from_reservation(r, factor=1.0, manually_added=True)
            ref.status = ReservationStatus.CANCELLED
            ref.gross_amount = amount
            st.reservations.append(ref)
            st.deltas.cancelled_reservation_amounts[str(rid)] = amount

    def _add_custom(self, st: Statement, data: Dict[str, Any]) -> ReservationRef:
        missing = [k for k in ("guest_name", "check_in", "check_out", "amount") if data.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"Custom reservation missing: {', '.join(missing)}")
        check_in = _as_date(data["check_in"], "check_in")
        check_out = _as_date(data["check_out"], "check_out")
        if check_out < check_in:
            raise ValidationError("Custom reservation check-out is before check-in")
        amount = _as_amount(data["amount"], "amount")
        property_id = str(data.get("property_id") or st.property_ids[0])
        if property_id not in st.property_ids:
            raise ValidationError(f"Property {property_id} is not on this statement")
        guest = str(data["guest_name"]).strip()

        for ref in st.reservations:
            if (ref.is_custom and ref.guest_name.lower() == guest.lower() and ref.check_in == check_in
                    and ref.check_out == check_out and abs(ref.gross_amount - amount) < 0.005):
                raise ValidationError("A custom reservation with the same guest, dates and amount already exists")

        ref = ReservationRef(
            source_id=f"custom-{uuid.uuid4().hex[:12]}",
            property_id=property_id,
            guest_name=guest,
            check_in=check_in,
            check_out=check_out,
            gross_amount=amount,
            cleaning_fee=_as_amount(data.get("cleaning_fee") or 0, "cleaning_fee"),
            is_custom=True,
            manually_added=True,
            channel=str(data.get("channel") or "custom"),
        )
        st.reservations.append(ref)
        return ref

    def _update_cleaning_fees(self, st: Statement, updates: Dict[str, float]) -> None:
        for rid, value in updates.items():
            ref = _find_ref(st, rid)
            if ref is None:
                raise ValidationError(f"Reservation {rid} is not on this statement")
            amount = _as_amount(value, f"cleaning fee of {rid}")
            if amount < 0:
                raise ValidationError(f"Cleaning fee of {rid} cannot be negative")
            ref.cleaning_fee = amount
            if not ref.is_custom:
                st.deltas.cleaning_fees[ref.source_id] = amount

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def edit(self, statement_id: str, request: EditRequest, username: str = "user") -> Statement:
        if request.is_empty:
            raise ValidationError("No changes requested")
        async with self._lock(statement_id):
            st = await self.store.get(statement_id)
            version, payout_before = st.version, st.owner_payout
            if request.is_structural and is_locked(st):
                raise ValidationError(
                    f"Statement {statement_id} is {st.status.value}/{st.payout_status.value}; content is locked"
                )

            # index-based operations first, against the item list the client saw
            self._apply_visibility(st, request.item_visibility_updates)
            self._apply_item_updates(st, request.expense_item_updates, LineItemType.EXPENSE)
            self._apply_item_updates(st, request.upsell_item_updates, LineItemType.UPSELL)

            self._remove_reservations(st, request.reservation_ids_to_remove)
            await self._add_reservations(st, request.reservation_ids_to_add)
            await self._add_cancelled(st, request.cancelled_reservation_ids_to_add, request.cancelled_reservation_amounts)
            custom = self._add_custom(st, request.custom_reservation) if request.custom_reservation else None
            self._update_cleaning_fees(st, request.reservation_cleaning_fee_updates)
            if request.internal_notes is not None:
                st.internal_notes = request.internal_notes

            st.reservations.sort(key=lambda r: (r.check_out, r.check_in, r.source_id))
            recompute(st, self.settings)
            _refresh_warnings(st)
            saved = await self.store.update(st, expected_version=version)

        self.activity.log(
            "EDIT", username, saved.id,
            visibility=len(request.item_visibility_updates),
            added=list(request.reservation_ids_to_add),
            removed=list(request.reservation_ids_to_remove),
            cancelled=list(request.cancelled_reservation_ids_to_add),
            custom=custom.source_id if custom else None,
            item_updates=len(request.expense_item_updates) + len(request.upsell_item_updates),
            cleaning_fees=len(request.reservation_cleaning_fee_updates),
            owner_payout=saved.owner_payout,
        )
        logger.info("Edited statement %s: payout %.2f -> %.2f", saved.id, payout_before, saved.owner_payout)
        return saved

    async def reconfigure(
        self,
        statement_id: str,
        start: date,
        end: date,
        calculation_type: CalculationType,
        username: str = "user",
    ) -> Statement:
        """
        Rebuild the statement for a new period and/or calculation mode, then re-apply
        custom reservations, added/removed reservations and item edits.
        """
        validate_period(start, end)
        try:
            mode = CalculationType(calculation_type)
        except ValueError:
            raise ValidationError(f"Unknown calculation type: {calculation_type}")

        async with self._lock(statement_id):
            old = await self.store.get(statement_id)
            if is_locked(old):
                raise ValidationError(f"Statement {statement_id} is locked and cannot be reconfigured")

            target = Target(
                list(old.property_ids),
                group_id=old.group_id,
                group_name=old.group_name,
                group_tags=list(old.group_tags),
            )
            fresh = await self.builder.compose(target, start, end, mode, exclude_statement_id=old.id)
            await self._reapply(fresh, old)

            fresh.id = old.id
            fresh.owner_ids = old.owner_ids or fresh.owner_ids
            fresh.status = old.status
            fresh.payout_status = old.payout_status
            fresh.created_by = old.created_by
            fresh.created_at = old.created_at
            fresh.internal_notes = old.internal_notes
            fresh.version = old.version
            recompute(fresh, self.settings)
            _refresh_warnings(fresh)
            saved = await self.store.update(fresh, expected_version=old.version)

        self.activity.log(
            "RECONFIGURE", username, saved.id,
            previous_period=old.period_label,
            period=saved.period_label,
            previous_calculation_type=old.calculation_type.value,
            calculation_type=saved.calculation_type.value,
        )
        logger.info("Reconfigured statement %s to %s (%s)", saved.id, saved.period_label, saved.calculation_type.value)
        return saved

    async def _reapply(self, fresh: Statement, old: Statement) -> None:
        d: StatementDeltas = old.deltas
        fresh.deltas = StatementDeltas.from_dict(d.to_dict())

        removed = set(d.removed_reservation_ids)
        fresh.reservations = [r for r in fresh.reservations if r.source_id not in removed]

        for rid in d.added_reservation_ids:
            if _find_ref(fresh, rid) is not None:
                continue
            r = await self._source_reservation(fresh, rid)
            if r is None:
                fresh.warnings.append({
                    "type": "missing_added_reservation",
                    "message": f"Previously added reservation {rid} no longer exists in source data",
                    "reservation_id": rid,
                })
                continue
            fresh.reservations.append(self._ref_for_added(fresh, r))

        for rid, amount in d.cancelled_reservation_amounts.items():
            if _find_ref(fresh, rid) is not None:
                continue
            r = await self._source_reservation(fresh, rid)
            if r is None:
                continue
            ref = ReservationRef.from_reservation(r, factor=1.0, manually_added=True)
            ref.status = ReservationStatus.CANCELLED
            ref.gross_amount = amount
            fresh.reservations.append(ref)

        fresh.reservations.extend(r for r in old.reservations if r.is_custom)

        for ref in fresh.reservations:
            if ref.source_id in d.cleaning_fees:
                ref.cleaning_fee = d.cleaning_fees[ref.source_id]
        fresh.reservations.sort(key=lambda r: (r.check_out, r.check_in, r.source_id))

        for item in fresh.items:
            key = item.key
            if key in d.item_overrides:
                _apply_item_fields(item, d.item_overrides[key])
            if key in d.visibility:
                _set_hidden(item, d.visibility[key])

    async def set_status(
        self,
        statement_id: str,
        status: Optional[StatementStatus] = None,
        payout_status: Optional[PayoutStatus] = None,
        username: str = "user",
    ) -> Statement:
        if status is None and payout_status is None:
            raise ValidationError("Nothing to change")
        async with self._lock(statement_id):
            st = await self.store.get(statement_id)
            previous = (st.status, st.payout_status)
            if status is not None:
                new = StatementStatus(status)
                if new not in STATUS_TRANSITIONS[st.status]:
                    raise ValidationError(f"Cannot move statement from {st.status.value} to {new.value}")
                st.status = new
            if payout_status is not None:
                st.payout_status = PayoutStatus(payout_status)
            saved = await self.store.update(st, expected_version=st.version)

        self.activity.log(
            "STATUS", username, saved.id,
            status=f"{previous[0].value} -> {saved.status.value}",
            payout_status=f"{previous[1].value} -> {saved.payout_status.value}",
        )
        return saved

    async def available_reservations(self, statement_id: str) -> List[Dict[str, Any]]:
        """Source reservations touching the period that are not on the statement."""
        st = await self.store.get(statement_id)
        present = {(r.property_id, r.source_id) for r in st.reservations}
        out: List[Dict[str, Any]] = []
        for pid in st.property_ids:
            try:
                rows = await self.source.fetch_reservations(pid, st.period_start, st.period_end)
            except StatementError:
                raise
            except Exception as e:
                raise SourceFetchError(f"Failed to fetch reservations for property {pid}: {e}", pid) from e
            for r in rows:
                if (r.property_id, r.source_id) in present:
                    continue
                out.append({
                    "source_id": r.source_id,
                    "property_id": r.property_id,
                    "guest_name": r.guest_name,
                    "check_in": r.check_in.isoformat(),
                    "check_out": r.check_out.isoformat(),
                    "gross_amount": r.gross_amount,
                    "cleaning_fee": r.cleaning_fee,
                    "status": r.status.value,
                })
        out.sort(key=lambda x: (x["check_out"], x["source_id"]))
        return out
