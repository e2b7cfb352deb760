"""
Statement Workbook Output

Generates the owner statement workbook:
- Summary sheet with period, totals, per-property breakdown and warnings
- Reservations sheet with proration and cleaning fees
- Line Items sheet with expenses/upsells, hidden items shaded with their reason
"""
from __future__ import annotations

import io
import re
from pathlib import Path
from typing import Union

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .fees import StatementTotals, billed_to_owner, compute_totals
from .models import HiddenReason, LineItemType, ReservationStatus, Statement


# =============================================================================
# Style Constants
# =============================================================================

HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")

PAYOUT_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
NEGATIVE_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
HIDDEN_FILL = PatternFill(start_color="D9D9D9", end_color="D9D9D9", fill_type="solid")
WARNING_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")

THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)

CURRENCY_FORMAT = '_("$"* #,##0.00_);_("$"* (#,##0.00);_("$"* "-"??_);_(@_)'
PERCENT_FORMAT = '0.00%'

HIDDEN_LABELS = {
    HiddenReason.MANUAL: "Hidden",
    HiddenReason.LL_COVER: "LL Cover",
    HiddenReason.PRIOR_STATEMENT: "Billed on prior statement",
}


def statement_filename(statement: Statement) -> str:
    if statement.group_name:
        name = statement.group_name
    elif len(statement.property_ids) == 1:
        name = statement.property_names.get(statement.property_ids[0], statement.property_ids[0])
    else:
        name = "combined"
    slug = re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_") or "statement"
    return f"statement_{statement.id}_{slug}_{statement.period_start.isoformat()}_{statement.period_end.isoformat()}.xlsx"


# =============================================================================
# Main Output Function
# =============================================================================

def write_statement_xlsx(
    output: Union[io.BytesIO, Path],
    statement: Statement,
    tech_fee: float,
    insurance_fee: float,
    default_pm_fee: float = 15.0,
) -> None:
    """Write one statement to an Excel workbook (Summary, Reservations, Line Items)."""
    totals = compute_totals(statement, tech_fee, insurance_fee, default_pm_fee)

    wb = Workbook()
    wb.remove(wb.active)
    _create_summary_sheet(wb, statement, totals)
    _create_reservations_sheet(wb, statement)
    _create_items_sheet(wb, statement)

    if isinstance(output, io.BytesIO):
        wb.save(output)
        output.seek(0)
    else:
        wb.save(str(output))


def _header_row(ws, row: int, headers) -> None:
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=header)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER


# =============================================================================
# Summary Sheet
# =============================================================================

def _create_summary_sheet(wb: Workbook, st: Statement, totals: StatementTotals):
    ws = wb.create_sheet("Summary")

    ws["A1"] = f"Owner Statement #{st.id}"
    ws["A1"].font = Font(bold=True, size=14)
    if st.group_name:
        ws["A2"] = f"Group: {st.group_name}"
    else:
        ws["A2"] = "Properties: " + ", ".join(st.property_names.get(p, p) for p in st.property_ids)
    ws["A3"] = f"Period: {st.period_label} ({st.calculation_type.value})"
    ws["A4"] = f"Status: {st.status.value} / payout {st.payout_status.value}"

    rows = [
        ("Revenue", st.total_revenue, False),
        ("Upsells", st.total_upsells, False),
        ("Expenses", -st.total_expenses, False),
        ("PM Commission", -st.pm_commission, False),
        ("Tech Fee", -st.tech_fee, False),
        ("Insurance Fee", -st.insurance_fee, False),
        ("Owner Payout", st.owner_payout, True),
    ]
    if st.cohost_revenue:
        rows.insert(1, ("Co-host Revenue (collected by owner)", st.cohost_revenue, False))
    if st.cleaning_fee_pass_through:
        rows.insert(-1, ("Cleaning Fees (pass-through)", st.total_cleaning_fee, False))

    row = 6
    for label, amount, is_total in rows:
        cell_a = ws.cell(row=row, column=1, value=label)
        cell_b = ws.cell(row=row, column=2, value=amount)
        cell_b.number_format = CURRENCY_FORMAT
        if is_total:
            cell_a.font = Font(bold=True)
            cell_b.font = Font(bold=True)
            cell_b.fill = PAYOUT_FILL if amount >= 0 else NEGATIVE_FILL
        row += 1

    if len(totals.by_property) > 1:
        row += 1
        ws[f"A{row}"] = "By Property"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        _header_row(ws, row, ["Property", "Revenue", "Upsells", "Expenses", "Commission", "Tech", "Insurance", "Payout"])
        row += 1
        for pid, pt in totals.by_property.items():
            label = st.property_names.get(pid, pid) + (" (co-host)" if pt.is_cohost else "")
            values = [label, pt.revenue, pt.upsells, -pt.expenses, -pt.commission, -pt.tech_fee, -pt.insurance_fee, pt.payout]
            for col, value in enumerate(values, 1):
                cell = ws.cell(row=row, column=col, value=round(value, 2) if isinstance(value, float) else value)
                cell.border = THIN_BORDER
                if col > 1:
                    cell.number_format = CURRENCY_FORMAT
            row += 1

    if st.warnings:
        row += 1
        ws[f"A{row}"] = "Warnings"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        for w in st.warnings:
            cell = ws.cell(row=row, column=1, value=w.get("message", w.get("type", "")))
            cell.fill = WARNING_FILL
            row += 1

    if st.internal_notes:
        row += 1
        ws[f"A{row}"] = "Internal Notes"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        cell = ws.cell(row=row, column=1, value=st.internal_notes)
        cell.alignment = Alignment(wrap_text=True, vertical="top")

    _auto_width(ws)


# =============================================================================
# Reservations Sheet
# =============================================================================

def _create_reservations_sheet(wb: Workbook, st: Statement):
    ws = wb.create_sheet("Reservations")
    headers = ["Property", "Reservation", "Guest", "Check-in", "Check-out", "Gross", "Proration", "Cleaning Fee", "Status", "Source"]
    _header_row(ws, 1, headers)

    row = 2
    for r in st.reservations:
        if r.is_custom:
            origin = "Custom"
        elif r.manually_added:
            origin = "Added"
        else:
            origin = "Source"
        values = [
            st.property_names.get(r.property_id, r.property_id),
            r.source_id,
            r.guest_name,
            r.check_in.isoformat(),
            r.check_out.isoformat(),
            r.gross_amount,
            r.proration_factor,
            r.cleaning_fee,
            r.status.value,
            origin,
        ]
        for col, value in enumerate(values, 1):
            cell = ws.cell(row=row, column=col, value=value)
            cell.border = THIN_BORDER
        ws.cell(row=row, column=6).number_format = CURRENCY_FORMAT
        ws.cell(row=row, column=7).number_format = PERCENT_FORMAT
        ws.cell(row=row, column=8).number_format = CURRENCY_FORMAT
        if r.status == ReservationStatus.CANCELLED:
            for col in range(1, len(headers) + 1):
                ws.cell(row=row, column=col).fill = HIDDEN_FILL
        row += 1

    if not st.reservations:
        ws.cell(row=row, column=1, value="No reservations in period")

    _auto_width(ws)


# =============================================================================
# Line Items Sheet
# =============================================================================

def _create_items_sheet(wb: Workbook, st: Statement):
    ws = wb.create_sheet("Line Items")
    headers = ["#", "Property", "Type", "Date", "Description", "Category", "Amount", "Included", "Note"]
    _header_row(ws, 1, headers)

    row = 2
    for idx, item in enumerate(st.items):
        note = HIDDEN_LABELS.get(item.hidden_reason, "") if item.hidden else ""
        if item.hidden and item.hidden_reason == HiddenReason.PRIOR_STATEMENT and item.prior_statement_id:
            note = f"{note} #{item.prior_statement_id} ({item.prior_period})"
        listing = st.listing_settings.get(str(item.property_id))
        covered = not item.hidden and listing is not None and not billed_to_owner(listing, item)
        if covered:
            note = "Covered by cleaning fee"
        values = [
            idx,
            st.property_names.get(item.property_id, item.property_id or ""),
            "Upsell" if item.type == LineItemType.UPSELL else "Expense",
            item.date.isoformat(),
            item.description,
            item.category,
            item.amount,
            "No" if item.hidden or covered else "Yes",
            note,
        ]
        for col, value in enumerate(values, 1):
            cell = ws.cell(row=row, column=col, value=value)
            cell.border = THIN_BORDER
            if item.hidden:
                cell.fill = HIDDEN_FILL
        ws.cell(row=row, column=7).number_format = CURRENCY_FORMAT
        row += 1

    if not st.items:
        ws.cell(row=row, column=1, value="No expenses or upsells in period")

    _auto_width(ws)


# =============================================================================
# Helpers
# =============================================================================

def _auto_width(ws):
    """Auto-adjust column widths"""
    for column in ws.columns:
        max_length = 0
        column_letter = get_column_letter(column[0].column)
        for cell in column:
            if cell.value is not None:
                max_length = max(max_length, len(str(cell.value)))
        ws.column_dimensions[column_letter].width = min(max_length + 2, 60)


def statement_workbook_bytes(statement: Statement, settings) -> bytes:
    bio = io.BytesIO()
    write_statement_xlsx(
        bio, statement,
        tech_fee=settings.tech_fee,
        insurance_fee=settings.insurance_fee,
        default_pm_fee=settings.default_pm_fee_percentage,
    )
    return bio.getvalue()
