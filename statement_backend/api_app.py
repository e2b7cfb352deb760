from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .adapters import import_pm_fees
from .editing import EditRequest
from .errors import (
    ConflictError, NotFoundError, PersistenceError, SourceFetchError, StatementError, ValidationError,
)
from .models import CalculationType, PayoutStatus, StatementStatus
from .outputs import statement_filename, statement_workbook_bytes
from .services import Services, build_services
from .settings import DEFAULT_SETTINGS, StatementSettings, configure_logging

logger = logging.getLogger(__name__)


app = FastAPI(title="Owner Statements API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_settings: StatementSettings = DEFAULT_SETTINGS
_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(_settings)
    return _services


def set_services(services: Optional[Services]) -> None:
    """Swap the wired services (tests install an in-memory data source this way)."""
    global _services, _settings
    _services = services
    if services is not None:
        _settings = services.settings


# ============================================================================
# Error mapping
# ============================================================================

# ConflictError before PersistenceError: it is a subclass
_ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (SourceFetchError, 502),
    (PersistenceError, 500),
]


@app.exception_handler(StatementError)
async def _statement_error_handler(request: Request, exc: StatementError):
    code = 500
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            code = status
            break
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error_type": type(exc).__name__})


# ============================================================================
# Request bodies
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GenerateRequest(_CamelModel):
    owner_id: Optional[str] = Field(None, alias="ownerId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    property_ids: Optional[List[str]] = Field(None, alias="propertyIds")
    group_id: Optional[str] = Field(None, alias="groupId")
    start_date: str = Field(..., alias="startDate")
    end_date: str = Field(..., alias="endDate")
    calculation_type: Optional[str] = Field(None, alias="calculationType")
    username: Optional[str] = None


class ItemVisibilityUpdate(_CamelModel):
    global_index: int = Field(..., alias="globalIndex")
    hidden: bool


class ItemUpdate(_CamelModel):
    global_index: int = Field(..., alias="globalIndex")
    date: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[float] = None


class CustomReservation(_CamelModel):
    guest_name: Optional[str] = Field(None, alias="guestName")
    check_in: Optional[str] = Field(None, alias="checkInDate")
    check_out: Optional[str] = Field(None, alias="checkOutDate")
    amount: Optional[float] = None
    cleaning_fee: Optional[float] = Field(None, alias="cleaningFee")
    property_id: Optional[str] = Field(None, alias="propertyId")
    channel: Optional[str] = None


class EditBody(_CamelModel):
    item_visibility_updates: List[ItemVisibilityUpdate] = Field(default_factory=list, alias="itemVisibilityUpdates")
    reservation_ids_to_add: List[str] = Field(default_factory=list, alias="reservationIdsToAdd")
    reservation_ids_to_remove: List[str] = Field(default_factory=list, alias="reservationIdsToRemove")
    custom_reservation: Optional[CustomReservation] = Field(None, alias="customReservationToAdd")
    cancelled_reservation_ids_to_add: List[str] = Field(default_factory=list, alias="cancelledReservationIdsToAdd")
    cancelled_reservation_amounts: Dict[str, float] = Field(default_factory=dict, alias="cancelledReservationAmounts")
    expense_item_updates: List[ItemUpdate] = Field(default_factory=list, alias="expenseItemUpdates")
    upsell_item_updates: List[ItemUpdate] = Field(default_factory=list, alias="upsellItemUpdates")
    reservation_cleaning_fee_updates: Dict[str, float] = Field(default_factory=dict, alias="reservationCleaningFeeUpdates")
    internal_notes: Optional[str] = Field(None, alias="internalNotes")
    username: Optional[str] = None

    def to_request(self) -> EditRequest:
        return EditRequest(
            item_visibility_updates=[u.model_dump() for u in self.item_visibility_updates],
            reservation_ids_to_add=list(self.reservation_ids_to_add),
            reservation_ids_to_remove=list(self.reservation_ids_to_remove),
            custom_reservation=self.custom_reservation.model_dump(exclude_none=True) if self.custom_reservation else None,
            cancelled_reservation_ids_to_add=list(self.cancelled_reservation_ids_to_add),
            cancelled_reservation_amounts=dict(self.cancelled_reservation_amounts),
            expense_item_updates=[u.model_dump(exclude_none=True) for u in self.expense_item_updates],
            upsell_item_updates=[u.model_dump(exclude_none=True) for u in self.upsell_item_updates],
            reservation_cleaning_fee_updates=dict(self.reservation_cleaning_fee_updates),
            internal_notes=self.internal_notes,
        )


class ReconfigureBody(_CamelModel):
    start_date: str = Field(..., alias="startDate")
    end_date: str = Field(..., alias="endDate")
    calculation_type: Optional[str] = Field(None, alias="calculationType")
    username: Optional[str] = None


class StatusBody(_CamelModel):
    status: Optional[str] = None
    payout_status: Optional[str] = Field(None, alias="payoutStatus")
    username: Optional[str] = None


class SettingsUpdate(BaseModel):
    auto_enabled: Optional[bool] = None
    auto_time: Optional[str] = None
    tech_fee: Optional[float] = None
    insurance_fee: Optional[float] = None
    default_pm_fee_percentage: Optional[float] = None
    default_calculation_type: Optional[str] = None


# ============================================================================
# Helper Functions
# ============================================================================

def _parse_iso_date(s: str) -> date:
    try:
        return datetime.fromisoformat(s).date()
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid date: {s}")


def _calc_type(value: Optional[str]) -> CalculationType:
    try:
        return CalculationType(value or _settings.default_calculation_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid calculation type: {value}")


def _settings_dict(s: StatementSettings) -> Dict[str, Any]:
    return {
        "auto_enabled": s.auto_enabled,
        "auto_time": s.auto_time,
        "timezone": s.timezone,
        "tech_fee": s.tech_fee,
        "insurance_fee": s.insurance_fee,
        "default_pm_fee_percentage": s.default_pm_fee_percentage,
        "default_calculation_type": s.default_calculation_type,
        "cadence_tags": list(s.cadence_tags),
        "store_backend": s.store_backend,
        "data_dir": s.data_dir,
    }


def _apply_settings(new: StatementSettings) -> None:
    global _settings
    _settings = new
    svc = get_services()
    svc.settings = new
    for component in (svc.builder, svc.editor, svc.bulk, svc.scheduler):
        component.settings = new


# ============================================================================
# API Endpoints
# ============================================================================

@app.on_event("startup")
async def _startup():
    configure_logging(_settings)
    svc = get_services()
    if _settings.auto_enabled:
        asyncio.create_task(svc.scheduler.run_forever())
        logger.info("Tag scheduler started (%s %s)", _settings.auto_time, _settings.timezone)


@app.get("/health")
def health():
    """Simple health check endpoint"""
    return {"ok": True, "status": "running"}


@app.get("/status")
def status():
    svc = get_services()
    return {
        "settings": _settings_dict(_settings),
        "schedules": svc.scheduler.status(),
    }


@app.patch("/settings")
def update_settings(updates: SettingsUpdate):
    """Update backend settings"""
    changes = updates.model_dump(exclude_none=True)
    if "auto_time" in changes:
        try:
            hh, mm = changes["auto_time"].split(":")
            if not (0 <= int(hh) < 24 and 0 <= int(mm) < 60):
                raise ValueError
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid auto_time: {changes['auto_time']}")
    if "default_calculation_type" in changes:
        _calc_type(changes["default_calculation_type"])

    _apply_settings(replace(_settings, **changes))
    logger.info("Settings updated: %s", ", ".join(sorted(changes)) or "nothing")
    return {"ok": True, "settings": _settings_dict(_settings)}


# ---- statements ----

@app.post("/statements/generate", status_code=201)
async def generate_statement(body: GenerateRequest):
    """
    Generate a statement for a property, a set of properties, a group or an owner.
    ownerId "all" queues a background job and returns 202 with its id.
    """
    svc = get_services()
    start = _parse_iso_date(body.start_date)
    end = _parse_iso_date(body.end_date)
    calc = _calc_type(body.calculation_type)
    username = body.username or "user"

    if body.owner_id == "all":
        if end < start:
            raise ValidationError(f"End date {end} is before start date {start}")
        job_id = svc.bulk.submit(start, end, calc, username=username)
        return JSONResponse(
            status_code=202,
            content={"jobId": job_id, "statusUrl": f"/statements/jobs/{job_id}"},
        )

    if body.group_id:
        target = await svc.builder.group_target(body.group_id)
    elif body.property_ids:
        target = await svc.builder.combined_target(body.property_ids)
    elif body.property_id:
        target = await svc.builder.property_target(body.property_id)
    elif body.owner_id:
        target = await svc.builder.owner_target(body.owner_id)
    else:
        raise HTTPException(status_code=400, detail="ownerId, propertyId, propertyIds or groupId is required")

    statement = await svc.builder.build(target, start, end, calc, username=username)
    return statement.to_dict()


# IMPORTANT: /jobs route must come BEFORE /{statement_id}
@app.get("/statements/jobs/{job_id}")
def get_job(job_id: str):
    job = get_services().jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found or expired")
    return job.to_dict()


@app.get("/statements")
async def list_statements(
    property_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    status: Optional[str] = None,
):
    statements = await get_services().store.list()
    if property_id:
        statements = [s for s in statements if property_id in s.property_ids]
    if owner_id:
        statements = [s for s in statements if owner_id in s.owner_ids]
    if status:
        statements = [s for s in statements if s.status.value == status]
    return {
        "statements": [
            {
                "id": s.id,
                "property_ids": s.property_ids,
                "owner_ids": s.owner_ids,
                "group_name": s.group_name,
                "period_start": s.period_start.isoformat(),
                "period_end": s.period_end.isoformat(),
                "calculation_type": s.calculation_type.value,
                "status": s.status.value,
                "payout_status": s.payout_status.value,
                "owner_payout": s.owner_payout,
                "created_by": s.created_by.value,
            }
            for s in statements
        ],
        "count": len(statements),
    }


@app.get("/statements/{statement_id}")
async def get_statement(statement_id: str):
    statement = await get_services().store.get(statement_id)
    return statement.to_dict()


@app.put("/statements/{statement_id}/edit")
async def edit_statement(statement_id: str, body: EditBody):
    statement = await get_services().editor.edit(statement_id, body.to_request(), username=body.username or "user")
    return statement.to_dict()


@app.post("/statements/{statement_id}/reconfigure")
async def reconfigure_statement(statement_id: str, body: ReconfigureBody):
    start = _parse_iso_date(body.start_date)
    end = _parse_iso_date(body.end_date)
    statement = await get_services().editor.reconfigure(
        statement_id, start, end, _calc_type(body.calculation_type), username=body.username or "user"
    )
    return statement.to_dict()


@app.put("/statements/{statement_id}/status")
async def update_statement_status(statement_id: str, body: StatusBody):
    try:
        status = StatementStatus(body.status) if body.status else None
        payout = PayoutStatus(body.payout_status) if body.payout_status else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    statement = await get_services().editor.set_status(statement_id, status, payout, username=body.username or "user")
    return statement.to_dict()


@app.get("/statements/{statement_id}/available-reservations")
async def available_reservations(statement_id: str):
    rows = await get_services().editor.available_reservations(statement_id)
    return {"reservations": rows, "count": len(rows)}


@app.get("/statements/{statement_id}/download")
async def download_statement(statement_id: str):
    """Download the statement as an Excel workbook"""
    statement = await get_services().store.get(statement_id)
    data = statement_workbook_bytes(statement, _settings)
    return StreamingResponse(
        io.BytesIO(data),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{statement_filename(statement)}"'},
    )


# ---- listings ----

@app.post("/listings/pm-fees/import")
async def import_pm_fee_csv(file: UploadFile = File(...)):
    """Apply an id,name,internalName,pm% CSV to listing PM fees."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    result = await import_pm_fees(get_services().source, content)
    return result.to_dict()


# ---- schedules / activity ----

@app.get("/schedules")
def get_schedules():
    return {"schedules": get_services().scheduler.status()}


@app.post("/schedules/run")
async def run_schedules(run_date: Optional[str] = Query(None, alias="date"), force: bool = False):
    """
    Run the tag scheduler for a date (default: today in the configured timezone).
    Only tags due on that date generate anything.
    """
    svc = get_services()
    day = _parse_iso_date(run_date) if run_date else svc.scheduler.clock.now().date()
    return await svc.scheduler.run_for_date(day, force=force)


@app.get("/activity")
def get_activity(action: Optional[str] = None, statement_id: Optional[str] = None, limit: int = 200):
    entries = get_services().activity.entries(action=action, statement_id=statement_id)
    entries = entries[-limit:] if limit > 0 else entries
    return {"entries": [e.to_dict() for e in reversed(entries)], "count": len(entries)}
