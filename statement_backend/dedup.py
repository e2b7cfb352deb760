"""
Duplicate prevention across overlapping statements.

A reservation or expense billed on a finalized statement (final or sent) must not
be billed again by another statement whose period overlaps it. Prior billing is
indexed by an explicit key (property id, source id, finalized statement id).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .models import CalculationType, Statement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupKey:
    property_id: str
    source_id: str
    statement_id: str


@dataclass(frozen=True)
class PriorMatch:
    statement_id: str
    period_start: date
    period_end: date
    full: bool = True   # False when billed as a calendar-mode proration

    @property
    def period_label(self) -> str:
        return f"{self.period_start.isoformat()} to {self.period_end.isoformat()}"


@dataclass
class PriorIndex:
    """Lookup of prior billing for one build, keyed by (property id, source id)."""
    expenses: Dict[Tuple[str, str], PriorMatch] = field(default_factory=dict)
    reservations: Dict[Tuple[str, str], List[PriorMatch]] = field(default_factory=dict)

    def lookup(self, property_id: str, source_id: str) -> Optional[PriorMatch]:
        if not source_id:
            return None
        return self.expenses.get((str(property_id), str(source_id)))

    def reservation_matches(self, property_id: str, source_id: str) -> List[PriorMatch]:
        return self.reservations.get((str(property_id), str(source_id)), [])

    def keys(self) -> List[DedupKey]:
        out = [DedupKey(p, s, m.statement_id) for (p, s), m in self.expenses.items()]
        for (p, s), matches in self.reservations.items():
            out.extend(DedupKey(p, s, m.statement_id) for m in matches)
        return sorted(out, key=lambda k: (k.property_id, k.source_id, k.statement_id))

    def __len__(self) -> int:
        return len(self.expenses) + sum(len(v) for v in self.reservations.values())


def build_prior_index(
    statements: Iterable[Statement],
    property_ids: Iterable[str],
    start: date,
    end: date,
    exclude_statement_id: Optional[str] = None,
) -> PriorIndex:
    """
    Index what finalized, overlapping statements already billed.

    Only visible items and counted reservations are indexed: an item hidden on the
    prior statement was not billed there. The earliest finalized statement wins when
    several billed the same expense.
    """
    props = {str(p) for p in property_ids}
    index = PriorIndex()
    ordered = sorted(statements, key=lambda s: (s.period_start, s.period_end, s.id))
    for st in ordered:
        if not st.is_finalized or st.id == exclude_statement_id:
            continue
        if not st.overlaps(start, end):
            continue
        for item in st.items:
            if item.hidden or not item.source_id or str(item.property_id) not in props:
                continue
            index.expenses.setdefault(
                (str(item.property_id), str(item.source_id)),
                PriorMatch(st.id, st.period_start, st.period_end),
            )
        for ref in st.reservations:
            if ref.is_custom or str(ref.property_id) not in props:
                continue
            full = st.calculation_type == CalculationType.CHECKOUT or ref.proration_factor >= 1.0
            index.reservations.setdefault((str(ref.property_id), str(ref.source_id)), []).append(
                PriorMatch(st.id, st.period_start, st.period_end, full=full)
            )
    return index


class DuplicatePreventionGuard:
    """Reads the statement store to answer 'was this already billed / generated?'."""

    def __init__(self, store):
        self.store = store

    async def prior_index(
        self,
        property_ids: Iterable[str],
        start: date,
        end: date,
        exclude_statement_id: Optional[str] = None,
    ) -> PriorIndex:
        property_ids = [str(p) for p in property_ids]
        overlapping = await self.store.find_overlapping(start, end, property_ids)
        index = build_prior_index(overlapping, property_ids, start, end, exclude_statement_id)
        if len(index):
            logger.info("Prior billing found for %s in %s..%s: %d keys", property_ids, start, end, len(index))
        return index

    async def find_existing(
        self,
        property_ids: Iterable[str],
        start: date,
        end: date,
        group_id: Optional[str] = None,
    ) -> Optional[Statement]:
        """Statement already generated for exactly this target and period, if any."""
        return await self.store.find_exact(property_ids, start, end, group_id=group_id)
