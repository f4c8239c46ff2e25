# agenda_agents/agents/revenue_agent.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, tzinfo
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from ..config import REVENUE_WORKERS
from ..datastore import DataStore, Identity
from .revenue_sources import (
    EnrollmentRevenueSource,
    ProcedureRevenueSource,
    RevenueSource,
    SalesRevenueSource,
    SubscriptionRevenueSource,
    ZERO,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevenueBreakdown:
    start: date
    end: date
    by_source: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return sum(self.by_source.values(), ZERO)


class RevenueAggregator:
    """
    Sums every revenue source over the same half-open day range.

    Sources run in parallel; the join waits for all of them and a failed
    source contributes zero instead of failing the whole figure.
    """

    def __init__(self, sources: Sequence[RevenueSource], max_workers: int = REVENUE_WORKERS):
        self.sources: List[RevenueSource] = list(sources)
        self.max_workers = max_workers

    @classmethod
    def default(cls, store: DataStore, identity: Identity, tz: tzinfo, max_workers: Optional[int] = None):
        sources = [
            ProcedureRevenueSource(store, identity, tz),
            SalesRevenueSource(store, identity, tz),
            SubscriptionRevenueSource(store, identity, tz),
            EnrollmentRevenueSource(store, identity, tz),
        ]
        return cls(sources, max_workers=REVENUE_WORKERS if max_workers is None else max_workers)

    def _safe_fetch(self, source: RevenueSource, start: date, end: date) -> Decimal:
        try:
            return source.fetch_revenue(start, end)
        except Exception:
            log.exception("revenue source %s crashed; contributing zero", source.kind)
            return ZERO

    def breakdown(self, start: date, end: date) -> RevenueBreakdown:
        if end <= start or not self.sources:
            return RevenueBreakdown(start, end, {s.kind: ZERO for s in self.sources})

        if self.max_workers <= 1:
            totals = {s.kind: self._safe_fetch(s, start, end) for s in self.sources}
            return RevenueBreakdown(start, end, totals)

        totals: Dict[str, Decimal] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(self.sources))) as pool:
            futures = {s.kind: pool.submit(self._safe_fetch, s, start, end) for s in self.sources}
            for kind, fut in futures.items():
                try:
                    totals[kind] = fut.result()
                except Exception:
                    log.exception("revenue source %s did not finish; contributing zero", kind)
                    totals[kind] = ZERO
        return RevenueBreakdown(start, end, totals)

    def aggregate(self, start: date, end: date) -> Decimal:
        return self.breakdown(start, end).total
