from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .dedup import PriorIndex
from .models import Expense, HiddenReason, LineItem, LineItemType

LL_COVER_MARKERS = ("ll cover", "llcover")


def is_ll_cover(exp: Expense) -> bool:
    if exp.ll_cover:
        return True
    text = " ".join([exp.description or "", exp.vendor or "", exp.category or ""]).lower()
    return any(m in text for m in LL_COVER_MARKERS)


def item_type_for(exp: Expense) -> LineItemType:
    if exp.type is not None:
        return LineItemType(exp.type)
    if exp.amount > 0 or (exp.category or "").strip().lower() == "upsell":
        return LineItemType.UPSELL
    return LineItemType.EXPENSE


def is_cleaning_item(item: LineItem) -> bool:
    text = f"{item.category} {item.description}".lower()
    return "cleaning" in text


def is_cleaning_or_supplies(item: LineItem) -> bool:
    text = f"{item.category} {item.description}".lower()
    return "cleaning" in text or "supplies" in text


def classify(expenses: Iterable[Expense], prior: Optional[PriorIndex] = None) -> List[LineItem]:
    """
    Turn source expense/upsell records into statement line items.

    Priority:
      1. already billed on an overlapping finalized statement -> prior_statement
      2. LL Cover (flag or text marker)                       -> ll_cover
      3. otherwise visible
    Manual hiding is never decided here.
    """
    items: List[LineItem] = []
    for exp in expenses:
        item = LineItem(
            type=item_type_for(exp),
            date=exp.date,
            description=exp.description,
            amount=float(exp.amount),
            category=exp.category,
            vendor=exp.vendor,
            property_id=exp.property_id,
            source_id=exp.source_id,
        )
        match = prior.lookup(exp.property_id, exp.source_id) if prior is not None else None
        if match is not None:
            item.hidden = True
            item.hidden_reason = HiddenReason.PRIOR_STATEMENT
            item.prior_statement_id = match.statement_id
            item.prior_period = match.period_label
        elif is_ll_cover(exp):
            item.hidden = True
            item.hidden_reason = HiddenReason.LL_COVER
        items.append(item)

    items.sort(key=lambda i: (i.date, i.type.value, i.source_id or "", i.description))
    return items


def visible_totals(items: Iterable[LineItem]) -> Tuple[float, float]:
    """(total_expenses, total_upsells) over visible items; expenses by magnitude."""
    expenses = 0.0
    upsells = 0.0
    for item in items:
        if item.hidden:
            continue
        if item.type == LineItemType.UPSELL:
            upsells += item.amount
        else:
            expenses += abs(item.amount)
    return round(expenses, 2), round(upsells, 2)
