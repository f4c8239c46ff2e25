# agenda_agents/agents/revenue_sources.py
from __future__ import annotations

import json
import logging
from datetime import date, tzinfo
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..datastore import DataStore, Filter, Identity
from ..errors import SourceUnavailable
from ..models import RevenueRecord
from ..utils import pick, to_calendar_date, to_decimal

log = logging.getLogger(__name__)

ZERO = Decimal("0")


class RevenueSource:
    """
    One revenue stream. Subclasses turn their collection into RevenueRecords;
    the base class applies the half-open date filter and absorbs failures.
    """

    kind = "revenue"

    def __init__(self, store: DataStore, identity: Identity, tz: tzinfo):
        self.store = store
        self.identity = identity
        self.tz = tz

    def records(self, user_id: str) -> Iterable[RevenueRecord]:
        raise NotImplementedError

    def _date(self, value: Any) -> Optional[date]:
        return to_calendar_date(value, self.tz)

    def fetch_revenue(self, start: date, end: date) -> Decimal:
        """Sum of records with start <= occurred_on < end. Never raises."""
        user_id = self.identity.current_user_id()
        if not user_id:
            return ZERO
        try:
            total = ZERO
            for rec in self.records(user_id):
                if rec.amount > 0 and start <= rec.occurred_on < end:
                    total += rec.amount
            return total
        except Exception as e:
            err = SourceUnavailable(self.kind, e)
            log.warning("%s; contributing zero", err)
            return ZERO


def _as_list(value: Any) -> List[Dict[str, Any]]:
    # planned_procedures may be a list, a JSON string, or null
    if isinstance(value, str):
        try:
            value = json.loads(value or "[]")
        except ValueError:
            return []
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


class ProcedureRevenueSource(RevenueSource):
    kind = "procedures"

    def records(self, user_id: str) -> Iterable[RevenueRecord]:
        rows = self.store.query(
            "patients",
            [Filter("user_id", "eq", user_id), Filter("is_active", "eq", True)],
        )
        for patient in rows:
            for proc in _as_list(patient.get("planned_procedures")):
                if str(proc.get("status") or "").strip().lower() != "completed":
                    continue
                yield from self._procedure_records(proc)

    def _procedure_records(self, proc: Dict[str, Any]) -> Iterable[RevenueRecord]:
        installments = _as_list(proc.get("pagamentos"))
        if proc.get("permitirParcelado") and installments:
            # one record per installment actually paid, each on its own date
            for pag in installments:
                day = self._date(pag.get("data"))
                if day is not None:
                    yield RevenueRecord(to_decimal(pag.get("valor")), day)
            return

        day = self._date(pick(proc, "performedAt", "completedAt"))
        if day is None:
            return
        splits = _as_list(proc.get("paymentSplits"))
        if splits:
            yield RevenueRecord(sum((to_decimal(s.get("amount")) for s in splits), ZERO), day)
        elif not proc.get("permitirParcelado"):
            yield RevenueRecord(to_decimal(pick(proc, "totalValue", "value")), day)


class SalesRevenueSource(RevenueSource):
    kind = "sales"

    def records(self, user_id: str) -> Iterable[RevenueRecord]:
        rows = self.store.query(
            "sales",
            [Filter("user_id", "eq", user_id), Filter("payment_status", "eq", "paid")],
        )
        for sale in rows:
            day = self._date(pick(sale, "sold_at", "created_at"))
            if day is not None:
                yield RevenueRecord(to_decimal(sale.get("total_amount")), day)


class SubscriptionRevenueSource(RevenueSource):
    kind = "subscriptions"

    def records(self, user_id: str) -> Iterable[RevenueRecord]:
        subs = self.store.query("patient_subscriptions", [Filter("user_id", "eq", user_id)])
        ids = [s["id"] for s in subs if s.get("id") is not None]
        if not ids:
            return
        payments = self.store.query(
            "subscription_payments",
            [Filter("subscription_id", "in", ids), Filter("status", "eq", "paid")],
        )
        for pay in payments:
            day = self._date(pay.get("paid_at"))
            if day is not None:
                yield RevenueRecord(to_decimal(pay.get("amount")), day)


class EnrollmentRevenueSource(RevenueSource):
    kind = "enrollments"

    def records(self, user_id: str) -> Iterable[RevenueRecord]:
        rows = self.store.query(
            "enrollments",
            [Filter("user_id", "eq", user_id), Filter("amount_paid", "gt", 0)],
        )
        for enr in rows:
            day = self._date(enr.get("enrollment_date"))
            if day is not None:
                yield RevenueRecord(to_decimal(enr.get("amount_paid")), day)
