"""
Data Source Adapters

The statement engine consumes already-normalized reservation, expense and listing
records through three small ports. This module holds the ports, an in-memory
implementation (tests, seeding) and a file-backed implementation that reads
CSV/XLSX exports from the data directory.

Supported files (any of .csv/.xlsx/.xls, tolerant column names):
- reservations  (id, listing id, guest, check-in, check-out, amount, cleaning fee, status)
- expenses      (id, listing id, date, description, amount, category, vendor, type, ll cover)
- listings      (id, name, owner, pm %, cohost, group, tags, active, ...)
- groups        (id, name, tags, calculation type, listing ids)
- owners        (id, name, role, email)

Also: the PM fee CSV import (id,name,internalName,pm%).
"""
from __future__ import annotations

import io
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from .errors import NotFoundError, SourceFetchError
from .models import (
    CalculationType, Expense, LineItemType, Listing, ListingGroup, Owner, Reservation, ReservationStatus,
)
from .periods import Period, touches_period

logger = logging.getLogger(__name__)


# =============================================================================
# Ports
# =============================================================================

class ReservationSource(ABC):

    @abstractmethod
    async def fetch_reservations(self, property_id: str, start: date, end: date) -> List[Reservation]:
        """All reservations (any status) whose stay touches [start, end]."""
        pass

    async def fetch_reservation(self, property_id: str, source_id: str) -> Optional[Reservation]:
        pass


class ExpenseSource(ABC):

    @abstractmethod
    async def fetch_expenses(self, property_id: str, start: date, end: date) -> List[Expense]:
        """Expense and upsell records dated inside [start, end]."""
        pass


class ListingDirectory(ABC):

    @abstractmethod
    async def list_owners(self) -> List[Owner]:
        pass

    @abstractmethod
    async def list_listings(self) -> List[Listing]:
        pass

    @abstractmethod
    async def list_groups(self) -> List[ListingGroup]:
        pass

    @abstractmethod
    async def update_pm_fee(self, listing_id: str, percentage: float) -> Listing:
        pass

    async def get_listing(self, listing_id: str) -> Listing:
        for listing in await self.list_listings():
            if listing.id == str(listing_id):
                return listing
        raise NotFoundError(f"Listing {listing_id} not found")

    async def get_group(self, group_id: str) -> ListingGroup:
        for group in await self.list_groups():
            if group.id == str(group_id):
                return group
        raise NotFoundError(f"Group {group_id} not found")

    async def get_owner(self, owner_id: str) -> Owner:
        for owner in await self.list_owners():
            if owner.id == str(owner_id):
                return owner
        raise NotFoundError(f"Owner {owner_id} not found")


# =============================================================================
# In-memory source
# =============================================================================

class InMemoryDataSource(ReservationSource, ExpenseSource, ListingDirectory):
    """
    All three ports over plain lists.
    `failing_properties` makes fetches for those ids raise SourceFetchError.
    """

    def __init__(
        self,
        reservations: Iterable[Reservation] = (),
        expenses: Iterable[Expense] = (),
        listings: Iterable[Listing] = (),
        groups: Iterable[ListingGroup] = (),
        owners: Iterable[Owner] = (),
    ):
        self.reservations: List[Reservation] = list(reservations)
        self.expenses: List[Expense] = list(expenses)
        self.listings: Dict[str, Listing] = {l.id: l for l in listings}
        self.groups: Dict[str, ListingGroup] = {g.id: g for g in groups}
        self.owners: Dict[str, Owner] = {o.id: o for o in owners}
        self.failing_properties: set = set()

    def _check(self, property_id: str) -> None:
        if str(property_id) in self.failing_properties:
            raise SourceFetchError(f"Source unavailable for property {property_id}", property_id)

    async def fetch_reservations(self, property_id: str, start: date, end: date) -> List[Reservation]:
        self._check(property_id)
        period = Period(start, end)
        return [
            r for r in self.reservations
            if r.property_id == str(property_id) and touches_period(r, period)
        ]

    async def fetch_reservation(self, property_id: str, source_id: str) -> Optional[Reservation]:
        self._check(property_id)
        for r in self.reservations:
            if r.property_id == str(property_id) and r.source_id == str(source_id):
                return r
        return None

    async def fetch_expenses(self, property_id: str, start: date, end: date) -> List[Expense]:
        self._check(property_id)
        return [
            e for e in self.expenses
            if e.property_id == str(property_id) and start <= e.date <= end
        ]

    async def list_owners(self) -> List[Owner]:
        return list(self.owners.values())

    async def list_listings(self) -> List[Listing]:
        return list(self.listings.values())

    async def list_groups(self) -> List[ListingGroup]:
        return list(self.groups.values())

    async def update_pm_fee(self, listing_id: str, percentage: float) -> Listing:
        listing = self.listings.get(str(listing_id))
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        updated = replace(listing, pm_fee_percentage=float(percentage))
        self.listings[updated.id] = updated
        return updated


# =============================================================================
# File parsing
# =============================================================================

class BaseAdapter(ABC):
    """Base class for file adapters: read, normalize columns, parse cells."""

    kind: str = ""

    @abstractmethod
    def parse_frame(self, df: pd.DataFrame) -> List[Any]:
        pass

    def parse(self, file_path: Path) -> List[Any]:
        df = self._read_file(file_path)
        if df.empty:
            return []
        return self.parse_frame(self._normalize_columns(df))

    def _read_file(self, file_path: Path) -> pd.DataFrame:
        """Read file into DataFrame; unreadable files raise SourceFetchError."""
        ext = file_path.suffix.lower()
        try:
            if ext in [".xlsx", ".xls"]:
                return pd.read_excel(file_path)
            if ext == ".csv":
                for encoding in ["utf-8", "latin-1", "cp1252"]:
                    try:
                        return pd.read_csv(file_path, encoding=encoding)
                    except UnicodeDecodeError:
                        continue
                return pd.read_csv(file_path, encoding="utf-8", encoding_errors="ignore")
            raise SourceFetchError(f"Unsupported file type: {ext}")
        except pd.errors.EmptyDataError:
            logger.warning("Empty file: %s", file_path)
            return pd.DataFrame()
        except (OSError, ValueError) as e:
            raise SourceFetchError(f"Could not read {file_path}: {e}") from e

    def _normalize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Normalize column names to lowercase with underscores"""
        df = df.copy()
        df.columns = [
            re.sub(r"[\s\-]+", "_", str(c).strip().lower())
            for c in df.columns
        ]
        return df

    def _find_column(self, df: pd.DataFrame, candidates: List[str]) -> Optional[str]:
        """Find first matching column from candidates (exact first, then partial)"""
        for col in candidates:
            if col in df.columns:
                return col
        for col in candidates:
            for df_col in df.columns:
                if col in df_col:
                    return df_col
        return None

    def _find_exact(self, df: pd.DataFrame, candidates: List[str]) -> Optional[str]:
        """Identifier columns only match by name; "id" would otherwise pick up listing_id"""
        for col in candidates:
            if col in df.columns:
                return col
        return None

    def _cell(self, row: pd.Series, col: Optional[str], default: Any = None) -> Any:
        if not col:
            return default
        value = row.get(col, default)
        if value is None or (not isinstance(value, (list, tuple)) and pd.isna(value)):
            return default
        return value

    def _parse_date(self, value: Any) -> Optional[date]:
        if value is None or (not isinstance(value, (date, datetime)) and pd.isna(value)):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return pd.to_datetime(value).date()
        except (ValueError, TypeError):
            return None

    def _parse_amount(self, value: Any) -> float:
        if value is None:
            return 0.0
        if isinstance(value, (int, float)):
            return 0.0 if pd.isna(value) else float(value)
        s = str(value).strip().replace(",", "").replace("$", "")
        if s.startswith("(") and s.endswith(")"):
            s = "-" + s[1:-1]
        try:
            return float(s)
        except ValueError:
            return 0.0

    def _parse_bool(self, value: Any) -> bool:
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return not pd.isna(value) and value != 0
        return str(value).strip().lower() in ("1", "true", "yes", "y", "x")

    def _parse_id(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, float):
            if pd.isna(value):
                return None
            if value.is_integer():
                return str(int(value))
        s = str(value).strip()
        return s or None

    def _parse_list(self, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (int, float)):
            one = self._parse_id(value)
            return [one] if one else []
        return [t.strip() for t in re.split(r"[,;|]", str(value)) if t.strip()]


class ReservationAdapter(BaseAdapter):
    kind = "reservations"

    ID_COLS = ["reservation_id", "id", "confirmation_code"]
    PROPERTY_COLS = ["listing_id", "property_id", "listing"]
    GUEST_COLS = ["guest_name", "guest"]
    CHECKIN_COLS = ["check_in", "checkin", "arrival"]
    CHECKOUT_COLS = ["check_out", "checkout", "departure"]
    AMOUNT_COLS = ["gross_amount", "revenue", "client_revenue", "amount", "total"]
    CLEANING_COLS = ["cleaning_fee", "cleaning"]
    STATUS_COLS = ["status"]
    CREATED_COLS = ["created_at", "booked_at", "booking_date"]
    CHANNEL_COLS = ["channel", "source"]

    def parse_frame(self, df: pd.DataFrame) -> List[Reservation]:
        id_col = self._find_exact(df, self.ID_COLS)
        prop_col = self._find_column(df, self.PROPERTY_COLS)
        in_col = self._find_column(df, self.CHECKIN_COLS)
        out_col = self._find_column(df, self.CHECKOUT_COLS)
        amt_col = self._find_column(df, self.AMOUNT_COLS)
        if not (id_col and prop_col and in_col and out_col and amt_col):
            raise SourceFetchError("Reservations file missing required columns")
        guest_col = self._find_column(df, self.GUEST_COLS)
        clean_col = self._find_column(df, self.CLEANING_COLS)
        status_col = self._find_column(df, self.STATUS_COLS)
        created_col = self._find_column(df, self.CREATED_COLS)
        channel_col = self._find_column(df, self.CHANNEL_COLS)

        out: List[Reservation] = []
        for _, row in df.iterrows():
            check_in = self._parse_date(self._cell(row, in_col))
            check_out = self._parse_date(self._cell(row, out_col))
            rid = self._parse_id(self._cell(row, id_col))
            pid = self._parse_id(self._cell(row, prop_col))
            if not (check_in and check_out and rid and pid):
                continue
            raw_status = str(self._cell(row, status_col, "active")).strip().lower()
            status = ReservationStatus.CANCELLED if raw_status.startswith("cancel") else ReservationStatus.ACTIVE
            out.append(Reservation(
                source_id=rid,
                property_id=pid,
                guest_name=str(self._cell(row, guest_col, "")).strip(),
                check_in=check_in,
                check_out=check_out,
                gross_amount=self._parse_amount(self._cell(row, amt_col)),
                cleaning_fee=self._parse_amount(self._cell(row, clean_col)),
                status=status,
                created_at=self._parse_date(self._cell(row, created_col)),
                channel=str(self._cell(row, channel_col, "")).strip().lower(),
            ))
        return out


class ExpenseAdapter(BaseAdapter):
    kind = "expenses"

    ID_COLS = ["expense_id", "id", "transaction_id"]
    PROPERTY_COLS = ["listing_id", "property_id", "listing"]
    DATE_COLS = ["date", "expense_date", "posting_date"]
    DESC_COLS = ["description", "memo", "notes"]
    AMOUNT_COLS = ["amount", "total"]
    CATEGORY_COLS = ["category"]
    VENDOR_COLS = ["vendor", "payee"]
    TYPE_COLS = ["type", "item_type"]
    LL_COVER_COLS = ["ll_cover", "llcover"]

    def parse_frame(self, df: pd.DataFrame) -> List[Expense]:
        id_col = self._find_exact(df, self.ID_COLS)
        prop_col = self._find_column(df, self.PROPERTY_COLS)
        date_col = self._find_column(df, self.DATE_COLS)
        amt_col = self._find_column(df, self.AMOUNT_COLS)
        if not (prop_col and date_col and amt_col):
            raise SourceFetchError("Expenses file missing required columns")
        desc_col = self._find_column(df, self.DESC_COLS)
        cat_col = self._find_column(df, self.CATEGORY_COLS)
        vendor_col = self._find_column(df, self.VENDOR_COLS)
        type_col = self._find_column(df, self.TYPE_COLS)
        ll_col = self._find_column(df, self.LL_COVER_COLS)

        out: List[Expense] = []
        for idx, row in df.iterrows():
            d = self._parse_date(self._cell(row, date_col))
            pid = self._parse_id(self._cell(row, prop_col))
            if not (d and pid):
                continue
            raw_type = str(self._cell(row, type_col, "")).strip().lower()
            item_type = LineItemType(raw_type) if raw_type in ("expense", "upsell") else None
            out.append(Expense(
                source_id=self._parse_id(self._cell(row, id_col)) or f"exp_{idx}",
                property_id=pid,
                date=d,
                description=str(self._cell(row, desc_col, "")).strip(),
                amount=self._parse_amount(self._cell(row, amt_col)),
                category=str(self._cell(row, cat_col, "")).strip(),
                vendor=str(self._cell(row, vendor_col, "")).strip(),
                type=item_type,
                ll_cover=self._parse_bool(self._cell(row, ll_col)),
            ))
        return out


class ListingAdapter(BaseAdapter):
    kind = "listings"

    def parse_frame(self, df: pd.DataFrame) -> List[Listing]:
        id_col = self._find_exact(df, ["listing_id", "id"])
        if not id_col:
            raise SourceFetchError("Listings file missing id column")
        col = lambda *names: self._find_column(df, list(names))
        name_col = col("name", "display_name")
        owner_col = col("owner_id", "owner")
        pm_col = col("pm_fee_percentage", "pm_fee", "pm_%", "pm")
        cohost_col = col("is_cohost_on_airbnb", "cohost")
        group_col = col("group_id", "group")
        tags_col = col("tags")
        active_col = col("is_active", "active")
        internal_col = col("internal_name", "nickname")
        pass_col = col("cleaning_fee_pass_through")
        waive_col = col("waive_commission")
        waive_until_col = col("waive_commission_until")
        new_en_col = col("new_pm_fee_enabled")
        new_pct_col = col("new_pm_fee_percentage")
        new_start_col = col("new_pm_fee_start_date")
        notes_col = col("internal_notes")

        out: List[Listing] = []
        for _, row in df.iterrows():
            lid = self._parse_id(self._cell(row, id_col))
            if not lid:
                continue
            pm_raw = self._cell(row, pm_col)
            new_pct_raw = self._cell(row, new_pct_col)
            out.append(Listing(
                id=lid,
                name=str(self._cell(row, name_col, lid)).strip(),
                owner_id=self._parse_id(self._cell(row, owner_col)),
                pm_fee_percentage=parse_percentage(pm_raw) if pm_raw is not None else None,
                is_cohost_on_airbnb=self._parse_bool(self._cell(row, cohost_col)),
                group_id=self._parse_id(self._cell(row, group_col)),
                tags=self._parse_list(self._cell(row, tags_col)),
                is_active=self._parse_bool(self._cell(row, active_col, True)),
                internal_name=str(self._cell(row, internal_col, "")).strip(),
                cleaning_fee_pass_through=self._parse_bool(self._cell(row, pass_col)),
                waive_commission=self._parse_bool(self._cell(row, waive_col)),
                waive_commission_until=self._parse_date(self._cell(row, waive_until_col)),
                new_pm_fee_enabled=self._parse_bool(self._cell(row, new_en_col)),
                new_pm_fee_percentage=parse_percentage(new_pct_raw) if new_pct_raw is not None else None,
                new_pm_fee_start_date=self._parse_date(self._cell(row, new_start_col)),
                internal_notes=str(self._cell(row, notes_col, "")).strip(),
            ))
        return out


class GroupAdapter(BaseAdapter):
    kind = "groups"

    def parse_frame(self, df: pd.DataFrame) -> List[ListingGroup]:
        id_col = self._find_exact(df, ["group_id", "id"])
        if not id_col:
            raise SourceFetchError("Groups file missing id column")
        name_col = self._find_column(df, ["name"])
        tags_col = self._find_column(df, ["tags"])
        calc_col = self._find_column(df, ["calculation_type", "calc"])
        members_col = self._find_column(df, ["listing_ids", "listings", "members"])

        out: List[ListingGroup] = []
        for _, row in df.iterrows():
            gid = self._parse_id(self._cell(row, id_col))
            if not gid:
                continue
            calc = str(self._cell(row, calc_col, "checkout")).strip().lower()
            out.append(ListingGroup(
                id=gid,
                name=str(self._cell(row, name_col, gid)).strip(),
                tags=self._parse_list(self._cell(row, tags_col)),
                calculation_type=CalculationType.CALENDAR if calc == "calendar" else CalculationType.CHECKOUT,
                listing_ids=[self._parse_id(x) for x in self._parse_list(self._cell(row, members_col))],
            ))
        return out


class OwnerAdapter(BaseAdapter):
    kind = "owners"

    def parse_frame(self, df: pd.DataFrame) -> List[Owner]:
        id_col = self._find_exact(df, ["owner_id", "id"])
        if not id_col:
            raise SourceFetchError("Owners file missing id column")
        name_col = self._find_column(df, ["name"])
        role_col = self._find_column(df, ["role"])
        email_col = self._find_column(df, ["email"])
        out: List[Owner] = []
        for _, row in df.iterrows():
            oid = self._parse_id(self._cell(row, id_col))
            if not oid:
                continue
            out.append(Owner(
                id=oid,
                name=str(self._cell(row, name_col, oid)).strip(),
                role=str(self._cell(row, role_col, "owner")).strip().lower(),
                email=str(self._cell(row, email_col, "")).strip(),
            ))
        return out


ADAPTERS: Dict[str, BaseAdapter] = {
    a.kind: a for a in [ReservationAdapter(), ExpenseAdapter(), ListingAdapter(), GroupAdapter(), OwnerAdapter()]
}


def find_source_file(data_dir: Path, kind: str) -> Optional[Path]:
    for ext in (".csv", ".xlsx", ".xls"):
        p = Path(data_dir) / f"{kind}{ext}"
        if p.exists():
            return p
    return None


class FileDataSource(InMemoryDataSource):
    """
    Data source backed by export files in a folder. Files are parsed on first use;
    `reload()` drops the cache. PM fee updates are kept in memory.
    """

    def __init__(self, data_dir: Union[str, Path]):
        super().__init__()
        self.data_dir = Path(data_dir)
        self._loaded = False

    def _load_kind(self, kind: str) -> List[Any]:
        path = find_source_file(self.data_dir, kind)
        if path is None:
            logger.warning("No %s file in %s", kind, self.data_dir)
            return []
        records = ADAPTERS[kind].parse(path)
        logger.info("Loaded %d %s from %s", len(records), kind, path.name)
        return records

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self.reservations = self._load_kind("reservations")
        self.expenses = self._load_kind("expenses")
        self.listings = {l.id: l for l in self._load_kind("listings")}
        self.groups = {g.id: g for g in self._load_kind("groups")}
        self.owners = {o.id: o for o in self._load_kind("owners")}
        self._loaded = True

    def reload(self) -> None:
        self._loaded = False

    async def fetch_reservations(self, property_id: str, start: date, end: date) -> List[Reservation]:
        self._ensure_loaded()
        return await super().fetch_reservations(property_id, start, end)

    async def fetch_reservation(self, property_id: str, source_id: str) -> Optional[Reservation]:
        self._ensure_loaded()
        return await super().fetch_reservation(property_id, source_id)

    async def fetch_expenses(self, property_id: str, start: date, end: date) -> List[Expense]:
        self._ensure_loaded()
        return await super().fetch_expenses(property_id, start, end)

    async def list_owners(self) -> List[Owner]:
        self._ensure_loaded()
        return await super().list_owners()

    async def list_listings(self) -> List[Listing]:
        self._ensure_loaded()
        return await super().list_listings()

    async def list_groups(self) -> List[ListingGroup]:
        self._ensure_loaded()
        return await super().list_groups()

    async def update_pm_fee(self, listing_id: str, percentage: float) -> Listing:
        self._ensure_loaded()
        return await super().update_pm_fee(listing_id, percentage)


# =============================================================================
# PM fee CSV import
# =============================================================================

def parse_percentage(value: Any) -> Optional[float]:
    """'15', '15%', '15.00%' -> 15.0. Returns None when not a number in [0, 100]."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        if pd.isna(value):
            return None
        pct = float(value)
    else:
        s = str(value).strip().replace("%", "").strip()
        if not s:
            return None
        try:
            pct = float(s)
        except ValueError:
            return None
    if pct < 0 or pct > 100:
        return None
    return pct


@dataclass
class PmFeeImportResult:
    updated: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "errors": self.errors,
            "updated_count": len(self.updated),
            "error_count": len(self.errors),
        }


def read_pm_fee_csv(content: Union[bytes, str, Path]) -> pd.DataFrame:
    if isinstance(content, Path):
        df = pd.read_csv(content, dtype=str)
    else:
        text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
        df = pd.read_csv(io.StringIO(text), dtype=str)
    df.columns = [re.sub(r"\s+", "", str(c).strip().lower()) for c in df.columns]
    return df.fillna("")


async def import_pm_fees(directory: ListingDirectory, content: Union[bytes, str, Path]) -> PmFeeImportResult:
    """
    Apply a `id,name,internalName,pm%` CSV to the listing directory.
    Bad rows (unknown id, invalid percentage) are reported and skipped.
    """
    df = read_pm_fee_csv(content)
    result = PmFeeImportResult()
    if "id" not in df.columns:
        result.errors.append({"row": None, "error": "Missing id column"})
        return result
    pct_col = next((c for c in ("pm%", "pm", "pmfee", "pmfeepercentage") if c in df.columns), None)
    if pct_col is None:
        result.errors.append({"row": None, "error": "Missing pm% column"})
        return result

    for idx, row in df.iterrows():
        line = int(idx) + 2  # header is line 1
        listing_id = str(row.get("id") or "").strip()
        pct = parse_percentage(row.get(pct_col))
        if not listing_id:
            result.errors.append({"row": line, "error": "Missing id"})
            continue
        if pct is None:
            result.errors.append({"row": line, "id": listing_id, "error": f"Invalid PM %: {row.get(pct_col)!r}"})
            continue
        try:
            listing = await directory.update_pm_fee(listing_id, pct)
        except NotFoundError:
            result.errors.append({"row": line, "id": listing_id, "error": "Listing not found"})
            continue
        result.updated.append({"id": listing.id, "name": listing.name, "pm_fee_percentage": pct})

    logger.info("PM fee import: %d updated, %d errors", len(result.updated), len(result.errors))
    return result
