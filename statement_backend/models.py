"""
Owner Statement Data Models

This module defines the core data structures for owner payout statements:
- Source records: Reservation and Expense as delivered by the data providers
- Configuration: Owner, Listing, ListingGroup, TagSchedule
- The Statement aggregate with its LineItems and ReservationRefs
- Job records for background fan-out

Key concepts:
- Totals on a Statement are always derived from its items, never hand-edited
- Hidden line items carry a closed HiddenReason so the UI can explain them
- Statements snapshot listing settings at build time; recomputes never read live listings
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any


# =============================================================================
# Enums
# =============================================================================

class CalculationType(str, Enum):
    """How reservation revenue is recognized in a period"""
    CHECKOUT = "checkout"   # Full amount when checkout falls in the period
    CALENDAR = "calendar"   # Prorated by nights inside the period


class LineItemType(str, Enum):
    EXPENSE = "expense"
    UPSELL = "upsell"


class HiddenReason(str, Enum):
    """Why a line item is excluded from the totals"""
    NONE = "none"
    MANUAL = "manual"                     # Hidden by a user edit
    LL_COVER = "ll_cover"                 # Company-covered
    PRIOR_STATEMENT = "prior_statement"   # Already billed on a finalized statement


class StatementStatus(str, Enum):
    DRAFT = "draft"
    FINAL = "final"
    SENT = "sent"


class PayoutStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CreatedBy(str, Enum):
    USER = "user"
    SYSTEM = "System"


FINALIZED_STATUSES = (StatementStatus.FINAL, StatementStatus.SENT)


# =============================================================================
# Serialization helpers
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# =============================================================================
# Source records
# =============================================================================

@dataclass
class Reservation:
    """
    Normalized reservation from the reservation/property provider.
    Any status is delivered; the allocator decides what counts.
    """
    source_id: str
    property_id: str
    guest_name: str
    check_in: date
    check_out: date
    gross_amount: float
    cleaning_fee: float = 0.0
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: Optional[date] = None   # Drives the PM fee transition
    channel: str = ""                   # airbnb, vrbo, direct, ...

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days


@dataclass
class Expense:
    """Normalized expense or upsell from the accounting/expense providers"""
    source_id: str
    property_id: str
    date: date
    description: str
    amount: float
    category: str = ""
    vendor: str = ""
    type: Optional[LineItemType] = None   # None -> inferred from sign/category
    ll_cover: bool = False


# =============================================================================
# Configuration records
# =============================================================================

@dataclass
class Owner:
    id: str
    name: str
    role: str = "owner"
    email: str = ""


@dataclass
class Listing:
    id: str
    name: str
    owner_id: Optional[str] = None
    pm_fee_percentage: Optional[float] = None   # None -> settings default (15)
    is_cohost_on_airbnb: bool = False
    group_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_active: bool = True
    internal_name: str = ""
    cleaning_fee_pass_through: bool = False
    waive_commission: bool = False
    waive_commission_until: Optional[date] = None
    new_pm_fee_enabled: bool = False
    new_pm_fee_percentage: Optional[float] = None
    new_pm_fee_start_date: Optional[date] = None
    internal_notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "pm_fee_percentage": self.pm_fee_percentage,
            "is_cohost_on_airbnb": self.is_cohost_on_airbnb,
            "group_id": self.group_id,
            "tags": list(self.tags),
            "is_active": self.is_active,
            "internal_name": self.internal_name,
            "cleaning_fee_pass_through": self.cleaning_fee_pass_through,
            "waive_commission": self.waive_commission,
            "waive_commission_until": _iso(self.waive_commission_until),
            "new_pm_fee_enabled": self.new_pm_fee_enabled,
            "new_pm_fee_percentage": self.new_pm_fee_percentage,
            "new_pm_fee_start_date": _iso(self.new_pm_fee_start_date),
            "internal_notes": self.internal_notes,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Listing":
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            owner_id=d.get("owner_id"),
            pm_fee_percentage=d.get("pm_fee_percentage"),
            is_cohost_on_airbnb=bool(d.get("is_cohost_on_airbnb", False)),
            group_id=d.get("group_id"),
            tags=list(d.get("tags") or []),
            is_active=bool(d.get("is_active", True)),
            internal_name=d.get("internal_name", ""),
            cleaning_fee_pass_through=bool(d.get("cleaning_fee_pass_through", False)),
            waive_commission=bool(d.get("waive_commission", False)),
            waive_commission_until=_to_date(d.get("waive_commission_until")),
            new_pm_fee_enabled=bool(d.get("new_pm_fee_enabled", False)),
            new_pm_fee_percentage=d.get("new_pm_fee_percentage"),
            new_pm_fee_start_date=_to_date(d.get("new_pm_fee_start_date")),
            internal_notes=d.get("internal_notes", ""),
        )


@dataclass
class ListingGroup:
    id: str
    name: str
    tags: List[str] = field(default_factory=list)
    calculation_type: CalculationType = CalculationType.CHECKOUT
    listing_ids: List[str] = field(default_factory=list)


@dataclass
class TagSchedule:
    tag: str
    cadence: str
    last_triggered_period_end: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "cadence": self.cadence,
            "last_triggered_period_end": _iso(self.last_triggered_period_end),
        }


# =============================================================================
# Statement aggregate
# =============================================================================

@dataclass
class LineItem:
    """
    One expense or upsell row on a statement.
    Items are addressed by their position in Statement.items (the global index).
    """
    type: LineItemType
    date: date
    description: str
    amount: float
    category: str = ""
    vendor: str = ""
    property_id: Optional[str] = None
    source_id: Optional[str] = None
    hidden: bool = False
    hidden_reason: HiddenReason = HiddenReason.NONE
    prior_statement_id: Optional[str] = None
    prior_period: Optional[str] = None   # "YYYY-MM-DD to YYYY-MM-DD"

    @property
    def key(self) -> str:
        """Stable identity used to re-apply edits after a rebuild."""
        if self.source_id:
            return f"{self.property_id}:{self.source_id}"
        return f"{self.property_id}:{self.type.value}:{self.date.isoformat()}:{self.description}:{self.amount:.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "date": _iso(self.date),
            "description": self.description,
            "amount": self.amount,
            "category": self.category,
            "vendor": self.vendor,
            "property_id": self.property_id,
            "source_id": self.source_id,
            "hidden": self.hidden,
            "hidden_reason": self.hidden_reason.value,
            "prior_statement_id": self.prior_statement_id,
            "prior_period": self.prior_period,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LineItem":
        return cls(
            type=LineItemType(d["type"]),
            date=_to_date(d["date"]),
            description=d.get("description", ""),
            amount=float(d.get("amount", 0.0)),
            category=d.get("category", ""),
            vendor=d.get("vendor", ""),
            property_id=d.get("property_id"),
            source_id=d.get("source_id"),
            hidden=bool(d.get("hidden", False)),
            hidden_reason=HiddenReason(d.get("hidden_reason", "none")),
            prior_statement_id=d.get("prior_statement_id"),
            prior_period=d.get("prior_period"),
        )


@dataclass
class ReservationRef:
    """A reservation as counted on a statement (owned by the statement)."""
    source_id: str
    property_id: str
    guest_name: str
    check_in: date
    check_out: date
    gross_amount: float
    cleaning_fee: float = 0.0
    status: ReservationStatus = ReservationStatus.ACTIVE
    is_custom: bool = False
    manually_added: bool = False
    proration_factor: float = 1.0
    created_at: Optional[date] = None
    channel: str = ""

    @classmethod
    def from_reservation(cls, r: Reservation, factor: float = 1.0, manually_added: bool = False) -> "ReservationRef":
        return cls(
            source_id=r.source_id,
            property_id=r.property_id,
            guest_name=r.guest_name,
            check_in=r.check_in,
            check_out=r.check_out,
            gross_amount=r.gross_amount,
            cleaning_fee=r.cleaning_fee,
            status=r.status,
            manually_added=manually_added,
            proration_factor=factor,
            created_at=r.created_at,
            channel=r.channel,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "property_id": self.property_id,
            "guest_name": self.guest_name,
            "check_in": _iso(self.check_in),
            "check_out": _iso(self.check_out),
            "gross_amount": self.gross_amount,
            "cleaning_fee": self.cleaning_fee,
            "status": self.status.value,
            "is_custom": self.is_custom,
            "manually_added": self.manually_added,
            "proration_factor": self.proration_factor,
            "created_at": _iso(self.created_at),
            "channel": self.channel,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReservationRef":
        return cls(
            source_id=str(d["source_id"]),
            property_id=str(d["property_id"]),
            guest_name=d.get("guest_name", ""),
            check_in=_to_date(d["check_in"]),
            check_out=_to_date(d["check_out"]),
            gross_amount=float(d.get("gross_amount", 0.0)),
            cleaning_fee=float(d.get("cleaning_fee", 0.0)),
            status=ReservationStatus(d.get("status", "active")),
            is_custom=bool(d.get("is_custom", False)),
            manually_added=bool(d.get("manually_added", False)),
            proration_factor=float(d.get("proration_factor", 1.0)),
            created_at=_to_date(d.get("created_at")),
            channel=d.get("channel", ""),
        )


@dataclass
class StatementDeltas:
    """
    User edits that must survive a reconfigure.
    Custom reservations live on the statement itself (is_custom=True).
    """
    added_reservation_ids: List[str] = field(default_factory=list)
    removed_reservation_ids: List[str] = field(default_factory=list)
    cancelled_reservation_amounts: Dict[str, float] = field(default_factory=dict)
    visibility: Dict[str, bool] = field(default_factory=dict)            # item key -> hidden
    item_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cleaning_fees: Dict[str, float] = field(default_factory=dict)        # reservation id -> fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added_reservation_ids": list(self.added_reservation_ids),
            "removed_reservation_ids": list(self.removed_reservation_ids),
            "cancelled_reservation_amounts": dict(self.cancelled_reservation_amounts),
            "visibility": dict(self.visibility),
            "item_overrides": {k: dict(v) for k, v in self.item_overrides.items()},
            "cleaning_fees": dict(self.cleaning_fees),
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "StatementDeltas":
        d = d or {}
        return cls(
            added_reservation_ids=list(d.get("added_reservation_ids") or []),
            removed_reservation_ids=list(d.get("removed_reservation_ids") or []),
            cancelled_reservation_amounts=dict(d.get("cancelled_reservation_amounts") or {}),
            visibility=dict(d.get("visibility") or {}),
            item_overrides={k: dict(v) for k, v in (d.get("item_overrides") or {}).items()},
            cleaning_fees=dict(d.get("cleaning_fees") or {}),
        )


@dataclass
class Statement:
    """
    Owner statement for one property or a combined/group set of properties.
    This is the system of record produced by generation and mutated by edits.
    """
    id: str
    owner_ids: List[str]
    property_ids: List[str]
    period_start: date
    period_end: date
    calculation_type: CalculationType = CalculationType.CHECKOUT
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    group_tags: List[str] = field(default_factory=list)
    property_names: Dict[str, str] = field(default_factory=dict)

    # Content
    reservations: List[ReservationRef] = field(default_factory=list)
    items: List[LineItem] = field(default_factory=list)

    # Derived totals
    total_revenue: float = 0.0
    cohost_revenue: float = 0.0
    total_expenses: float = 0.0
    total_upsells: float = 0.0
    total_cleaning_fee: float = 0.0
    pm_commission: float = 0.0
    tech_fee: float = 0.0
    insurance_fee: float = 0.0
    owner_payout: float = 0.0

    # Lifecycle
    status: StatementStatus = StatementStatus.DRAFT
    payout_status: PayoutStatus = PayoutStatus.NONE
    cleaning_fee_pass_through: bool = False
    internal_notes: Optional[str] = None
    created_by: CreatedBy = CreatedBy.USER
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    warnings: List[Dict[str, Any]] = field(default_factory=list)
    listing_settings: Dict[str, Listing] = field(default_factory=dict)
    deltas: StatementDeltas = field(default_factory=StatementDeltas)

    @property
    def is_combined(self) -> bool:
        return len(self.property_ids) > 1 or self.group_id is not None

    @property
    def is_finalized(self) -> bool:
        return self.status in FINALIZED_STATUSES

    @property
    def period_label(self) -> str:
        return f"{self.period_start.isoformat()} to {self.period_end.isoformat()}"

    def overlaps(self, start: date, end: date) -> bool:
        return self.period_start <= end and start <= self.period_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_ids": list(self.owner_ids),
            "property_ids": list(self.property_ids),
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "calculation_type": self.calculation_type.value,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "group_tags": list(self.group_tags),
            "property_names": dict(self.property_names),
            "reservations": [r.to_dict() for r in self.reservations],
            "items": [i.to_dict() for i in self.items],
            "total_revenue": self.total_revenue,
            "cohost_revenue": self.cohost_revenue,
            "total_expenses": self.total_expenses,
            "total_upsells": self.total_upsells,
            "total_cleaning_fee": self.total_cleaning_fee,
            "pm_commission": self.pm_commission,
            "tech_fee": self.tech_fee,
            "insurance_fee": self.insurance_fee,
            "owner_payout": self.owner_payout,
            "status": self.status.value,
            "payout_status": self.payout_status.value,
            "cleaning_fee_pass_through": self.cleaning_fee_pass_through,
            "internal_notes": self.internal_notes,
            "created_by": self.created_by.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
            "warnings": list(self.warnings),
            "listing_settings": {k: v.to_dict() for k, v in self.listing_settings.items()},
            "deltas": self.deltas.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Statement":
        return cls(
            id=str(d["id"]),
            owner_ids=[str(x) for x in d.get("owner_ids") or []],
            property_ids=[str(x) for x in d.get("property_ids") or []],
            period_start=_to_date(d["period_start"]),
            period_end=_to_date(d["period_end"]),
            calculation_type=CalculationType(d.get("calculation_type", "checkout")),
            group_id=d.get("group_id"),
            group_name=d.get("group_name"),
            group_tags=list(d.get("group_tags") or []),
            property_names=dict(d.get("property_names") or {}),
            reservations=[ReservationRef.from_dict(r) for r in d.get("reservations") or []],
            items=[LineItem.from_dict(i) for i in d.get("items") or []],
            total_revenue=float(d.get("total_revenue", 0.0)),
            cohost_revenue=float(d.get("cohost_revenue", 0.0)),
            total_expenses=float(d.get("total_expenses", 0.0)),
            total_upsells=float(d.get("total_upsells", 0.0)),
            total_cleaning_fee=float(d.get("total_cleaning_fee", 0.0)),
            pm_commission=float(d.get("pm_commission", 0.0)),
            tech_fee=float(d.get("tech_fee", 0.0)),
            insurance_fee=float(d.get("insurance_fee", 0.0)),
            owner_payout=float(d.get("owner_payout", 0.0)),
            status=StatementStatus(d.get("status", "draft")),
            payout_status=PayoutStatus(d.get("payout_status", "none")),
            cleaning_fee_pass_through=bool(d.get("cleaning_fee_pass_through", False)),
            internal_notes=d.get("internal_notes"),
            created_by=CreatedBy(d.get("created_by", "user")),
            created_at=_to_datetime(d.get("created_at")),
            updated_at=_to_datetime(d.get("updated_at")),
            version=int(d.get("version", 0)),
            warnings=list(d.get("warnings") or []),
            listing_settings={k: Listing.from_dict(v) for k, v in (d.get("listing_settings") or {}).items()},
            deltas=StatementDeltas.from_dict(d.get("deltas")),
        )


# =============================================================================
# Background jobs and audit
# =============================================================================

@dataclass
class Job:
    """
    Pollable record for a background fan-out.
    Not a system of record: the statements it created are.
    """
    id: str
    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    total: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "params": dict(self.params),
            "status": self.status.value,
            "progress": self.progress,
            "total": self.total,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result,
            "error": self.error,
        }


@dataclass
class AuditEntry:
    timestamp: datetime
    action: str
    username: str
    statement_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "action": self.action,
            "username": self.username,
            "statement_id": self.statement_id,
            "details": dict(self.details),
        }
