# agenda_agents/agents/appointment_agent.py
from __future__ import annotations

import logging
from datetime import datetime, date, tzinfo
from typing import List

from ..clock import day_bounds
from ..datastore import DataStore, Filter, Identity
from ..errors import SourceUnavailable
from ..models import AppointmentFact, AppointmentStatus

log = logging.getLogger(__name__)


class AttendanceCounter:
    def __init__(self, store: DataStore, identity: Identity, tz: tzinfo):
        self.store = store
        self.identity = identity
        self.tz = tz

    def list_between(self, start_at: datetime, end_at: datetime) -> List[AppointmentFact]:
        """
        Patient-facing appointments starting in [start_at, end_at), sorted by start.

        Raises SourceUnavailable so callers that manage pending deliveries can
        tell "no appointments" apart from "could not read appointments".
        """
        user_id = self.identity.current_user_id()
        if not user_id:
            return []
        try:
            rows = self.store.query(
                "appointments",
                [
                    Filter("user_id", "eq", user_id),
                    Filter("start", "gte", start_at),
                    Filter("start", "lt", end_at),
                    Filter("status", "neq", AppointmentStatus.CANCELLED.value),
                ],
                order_by="start",
            )
        except Exception as e:
            raise SourceUnavailable("appointments", e) from e

        out: List[AppointmentFact] = []
        for row in rows:
            fact = AppointmentFact.from_row(row, self.tz)
            # stores may hold spelling variants the pushdown filter misses
            if fact is None or not fact.counts_as_attended:
                continue
            if start_at <= fact.start < end_at:
                out.append(fact)
        out.sort(key=lambda a: (a.start, a.id))
        return out

    def list_attended(self, start_day: date, end_day: date) -> List[AppointmentFact]:
        start_at, end_at = day_bounds(start_day, end_day, self.tz)
        return self.list_between(start_at, end_at)

    def count_attended(self, start_day: date, end_day: date) -> int:
        try:
            return len(self.list_attended(start_day, end_day))
        except SourceUnavailable as e:
            log.warning("%s; attendance counted as zero", e)
            return 0
