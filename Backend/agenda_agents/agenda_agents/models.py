# agenda_agents/models.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, date, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .utils import parse_instant, pick, to_calendar_date


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    DONE = "done"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> "AppointmentStatus":
        s = str(value or "").strip().lower().replace("-", "_")
        if s == "canceled":
            s = "cancelled"
        try:
            return cls(s)
        except ValueError:
            # unknown statuses are treated as booked, like the app does
            return cls.SCHEDULED


@dataclass(frozen=True)
class AppointmentFact:
    id: str
    start: datetime
    end: Optional[datetime]
    status: AppointmentStatus
    is_personal: bool = False
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    title: Optional[str] = None

    @property
    def counts_as_attended(self) -> bool:
        return not self.is_personal and self.status is not AppointmentStatus.CANCELLED

    @property
    def display_title(self) -> str:
        if self.is_personal:
            return self.title or "Personal block"
        return self.patient_name or self.title or "Patient"

    @classmethod
    def from_row(cls, row: Dict[str, Any], tz: tzinfo) -> Optional["AppointmentFact"]:
        start = parse_instant(row.get("start"), tz)
        if not row.get("id") or start is None:
            return None
        return cls(
            id=str(row["id"]),
            start=start,
            end=parse_instant(row.get("end"), tz),
            status=AppointmentStatus.parse(row.get("status")),
            is_personal=bool(row.get("is_personal") or False),
            patient_id=str(row["patient_id"]) if row.get("patient_id") else None,
            patient_name=row.get("patient_name"),
            title=row.get("title"),
        )


@dataclass(frozen=True)
class PatientFact:
    id: str
    name: str
    birth_date: Optional[date]
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["PatientFact"]:
        if not row.get("id"):
            return None
        return cls(
            id=str(row["id"]),
            name=str(pick(row, "name", "full_name") or "Patient"),
            # birth dates are read as written, never shifted across zones
            birth_date=to_calendar_date(row.get("birth_date"), None),
            is_active=row.get("is_active") not in (False, 0, "0", "false"),
        )


@dataclass(frozen=True)
class RevenueRecord:
    amount: Decimal
    occurred_on: date


class NotificationKind(str, Enum):
    DAILY_SUMMARY = "daily_summary"
    WEEKLY_SUMMARY = "weekly_summary"
    WEEKLY_PREVIEW = "weekly_preview"
    DAILY_AGENDA = "daily_agenda"
    APPOINTMENT_REMINDER = "appointment_reminder"
    BIRTHDAY_REMINDER = "birthday_reminder"

    @property
    def per_entity(self) -> bool:
        return self in (NotificationKind.APPOINTMENT_REMINDER, NotificationKind.BIRTHDAY_REMINDER)

    @property
    def owner_only(self) -> bool:
        # financial figures are only shown to clinic owners
        return self in (NotificationKind.DAILY_SUMMARY, NotificationKind.WEEKLY_SUMMARY)

    @property
    def prefix(self) -> str:
        if self is NotificationKind.APPOINTMENT_REMINDER:
            return "appointment_"
        if self is NotificationKind.BIRTHDAY_REMINDER:
            return "birthday_"
        return self.value

    def identifier(self, subject: Optional[str] = None) -> str:
        if self.per_entity:
            if not subject:
                raise ValueError(f"{self.value} needs a subject id")
            return f"{self.prefix}{subject}"
        return self.value

    def owns(self, identifier: str) -> bool:
        if self.per_entity:
            return identifier.startswith(self.prefix)
        return identifier == self.value

    @classmethod
    def from_identifier(cls, identifier: str) -> Optional["NotificationKind"]:
        for kind in cls:
            if kind.owns(identifier):
                return kind
        return None

    def subject_of(self, identifier: str) -> Optional[str]:
        if not self.per_entity or not self.owns(identifier):
            return None
        return identifier[len(self.prefix):]


@dataclass(frozen=True)
class PendingDelivery:
    identifier: str
    trigger: datetime
    title: str
    body: str

    @property
    def kind(self) -> Optional[NotificationKind]:
        return NotificationKind.from_identifier(self.identifier)


@dataclass(frozen=True)
class SentMarker:
    kind: NotificationKind
    day: date
    subject: Optional[str] = None

    @property
    def key(self) -> str:
        if self.subject:
            return f"sent:{self.kind.value}:{self.subject}:{self.day.isoformat()}"
        return f"sent:{self.kind.value}:{self.day.isoformat()}"
