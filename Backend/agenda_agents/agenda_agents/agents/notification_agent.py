# agenda_agents/agents/notification_agent.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta, tzinfo
from typing import Any, Callable, Dict, List, Optional, Set

from ..clock import Clock, at_local_time, clinic_tz, local_date, next_day, start_of_day, system_clock
from ..config import (
    BIRTHDAY_HORIZON_DAYS,
    GRACE_WINDOW_MIN,
    IMMEDIATE_DELAY_SEC,
    LEDGER_RETENTION_DAYS,
    REMINDER_LOOKAHEAD_DAYS,
    WEEKLY_PREVIEW_HOUR,
    WEEKLY_PREVIEW_WEEKDAY,
    WEEKLY_SUMMARY_HOUR,
    WEEKLY_SUMMARY_WEEKDAY,
)
from ..datastore import DataStore, Filter, Identity
from ..errors import AuthenticationMissing, DeliveryRejected, SourceUnavailable
from ..events import NOTIFICATION_DELIVERED, REFRESH_EVENTS
from ..idempotency import SentLedger
from ..kvstore import KeyValueStore
from ..models import NotificationKind, PatientFact
from ..notifications import NotificationCenter
from ..settings import NotificationSettings, load_settings
from ..triggers import (
    Trigger,
    age_on,
    next_birthday,
    next_daily_trigger,
    next_weekly_trigger,
    preview_window,
    reminder_instant,
    summary_window,
)
from ..utils import parse_instant
from . import messages
from .appointment_agent import AttendanceCounter
from .revenue_agent import RevenueAggregator

log = logging.getLogger(__name__)

MANIFEST_PREFIX = "scheduled:"


@dataclass
class RefreshReport:
    scheduled: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    suppressed: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def summary(self) -> str:
        if self.skipped_reason:
            return f"skipped ({self.skipped_reason})"
        return (
            f"scheduled={len(self.scheduled)} cancelled={len(self.cancelled)} "
            f"suppressed={len(self.suppressed)} rejected={len(self.rejected)} "
            f"delivered={len(self.delivered)} failed={len(self.failed)}"
        )


def _manifest_key(identifier: str) -> str:
    return f"{MANIFEST_PREFIX}{identifier}"


class NotificationScheduler:
    """
    Decides, per notification kind, what should be pending right now.

    Every delivery is a one-shot entry that is cancelled and recreated with
    fresh content on each refresh. The sent ledger is the only record of
    what already fired; the pending list is rebuilt every time.
    """

    def __init__(
        self,
        *,
        store: DataStore,
        identity: Identity,
        center: NotificationCenter,
        kv: KeyValueStore,
        clock: Clock = system_clock,
        tz: Optional[tzinfo] = None,
        aggregator: Optional[RevenueAggregator] = None,
        attendance: Optional[AttendanceCounter] = None,
        grace: timedelta = timedelta(minutes=GRACE_WINDOW_MIN),
        immediate_delay: timedelta = timedelta(seconds=IMMEDIATE_DELAY_SEC),
        retention_days: int = LEDGER_RETENTION_DAYS,
    ):
        self.store = store
        self.identity = identity
        self.center = center
        self.kv = kv
        self.clock = clock
        self.tz = tz or clinic_tz()
        self.aggregator = aggregator or RevenueAggregator.default(store, identity, self.tz)
        self.attendance = attendance or AttendanceCounter(store, identity, self.tz)
        self.grace = grace
        self.immediate_delay = immediate_delay
        self.retention_days = retention_days
        self.ledger = SentLedger(kv)
        self._lock = threading.Lock()

        self._handlers: Dict[NotificationKind, Callable[..., None]] = {
            NotificationKind.DAILY_SUMMARY: self._schedule_daily_summary,
            NotificationKind.WEEKLY_SUMMARY: self._schedule_weekly_summary,
            NotificationKind.WEEKLY_PREVIEW: self._schedule_weekly_preview,
            NotificationKind.DAILY_AGENDA: self._schedule_daily_agenda,
            NotificationKind.APPOINTMENT_REMINDER: self._schedule_appointment_reminders,
            NotificationKind.BIRTHDAY_REMINDER: self._schedule_birthdays,
        }

    # ---------------------------
    # Public surface
    # ---------------------------
    def handle(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[RefreshReport]:
        if event_type in REFRESH_EVENTS:
            return self.refresh_all()
        if event_type == NOTIFICATION_DELIVERED:
            ident = str((payload or {}).get("identifier") or "").strip()
            if ident:
                self.mark_delivered(ident)
            return None
        log.debug("ignoring event %s", event_type)
        return None

    def refresh_all(self) -> RefreshReport:
        """Idempotent; safe on every foreground and every data mutation. Never raises."""
        report = RefreshReport()
        with self._lock:
            try:
                self._refresh(report)
            except AuthenticationMissing as e:
                report.skipped_reason = str(e) or "no current user"
                log.info("refresh skipped: %s", report.skipped_reason)
            except Exception as e:
                report.skipped_reason = f"{type(e).__name__}: {e}"
                log.exception("refresh aborted")
        return report

    def mark_delivered(self, identifier: str) -> bool:
        """Record a delivery reported by the platform. Returns False if it was already recorded."""
        with self._lock:
            now = self.clock()
            entry = self.kv.get(_manifest_key(identifier))
            if entry:
                trigger = parse_instant(entry.get("trigger"), self.tz)
                if trigger is not None and trigger > now:
                    # a refresh already settled this delivery and queued the next one
                    log.info("late delivery report for %s ignored, next one is due %s", identifier, trigger)
                    return False
                self.kv.delete(_manifest_key(identifier))
                return self._mark_entry(entry)

            kind = NotificationKind.from_identifier(identifier)
            if kind is None:
                log.warning("delivered notification %s has no known kind", identifier)
                return False
            today = local_date(now, self.tz)
            log.warning("delivered notification %s has no manifest entry, recording it under %s", identifier, today)
            return self.ledger.mark_sent(kind, today, kind.subject_of(identifier))

    # ---------------------------
    # Refresh cycle
    # ---------------------------
    def _refresh(self, report: RefreshReport) -> None:
        now = self.clock()
        if not self.identity.current_user_id():
            raise AuthenticationMissing("no current user")

        settings = load_settings(self.kv)

        pending_ids: Optional[Set[str]]
        try:
            pending = self.center.list_pending()
            pending_ids = {p.identifier for p in pending}
        except Exception as e:
            # without the pending list a delivery cannot be told from a cancel
            log.warning("could not list pending deliveries: %s", e)
            pending_ids = None
        if pending_ids is not None:
            self._reconcile_delivered(now, pending_ids, report)

        owner = self.identity.is_owner_role()
        for kind in NotificationKind:
            if not settings.is_enabled(kind) or (kind.owner_only and not owner):
                try:
                    self._cancel_kind(kind, pending_ids, report)
                except Exception:
                    log.exception("cancelling %s failed", kind.value)
                    report.failed.append(kind.value)
                continue
            try:
                self._handlers[kind](now, settings, pending_ids, report)
            except Exception:
                log.exception("scheduling %s failed", kind.value)
                report.failed.append(kind.value)

        removed = self.ledger.prune(local_date(now, self.tz), self.retention_days)
        if removed:
            log.info("pruned %s ledger markers", removed)
        log.info("refresh done: %s", report.summary())

    def _reconcile_delivered(self, now: datetime, pending_ids: Set[str], report: RefreshReport) -> None:
        for key in self.kv.keys(MANIFEST_PREFIX):
            ident = key[len(MANIFEST_PREFIX):]
            if ident in pending_ids:
                continue
            entry = self.kv.get(key) or {}
            trigger = parse_instant(entry.get("trigger"), self.tz)
            self.kv.delete(key)
            if trigger is None or trigger > now:
                # removed before it could fire
                continue
            if self._mark_entry(entry):
                report.delivered.append(ident)

    def _mark_entry(self, entry: Dict[str, Any]) -> bool:
        try:
            kind = NotificationKind(entry["kind"])
            day = date.fromisoformat(str(entry["day"]))
        except (KeyError, ValueError) as e:
            log.warning("malformed manifest entry %r: %s", entry, e)
            return False
        return self.ledger.mark_sent(kind, day, entry.get("subject"))

    def _known_ids(self, kind: NotificationKind, pending_ids: Optional[Set[str]]) -> Set[str]:
        ids = {k[len(MANIFEST_PREFIX):] for k in self.kv.keys(MANIFEST_PREFIX)}
        ids |= pending_ids or set()
        return {i for i in ids if kind.owns(i)}

    def _cancel(self, identifiers: Set[str], report: RefreshReport) -> None:
        if not identifiers:
            return
        self.center.cancel(sorted(identifiers))
        for ident in identifiers:
            self.kv.delete(_manifest_key(ident))
        report.cancelled.extend(sorted(identifiers))

    def _cancel_kind(self, kind: NotificationKind, pending_ids: Optional[Set[str]], report: RefreshReport) -> None:
        self._cancel(self._known_ids(kind, pending_ids), report)

    def _replace(
        self,
        kind: NotificationKind,
        subject: Optional[str],
        trigger: Trigger,
        title: str,
        body: str,
        report: RefreshReport,
    ) -> bool:
        ident = kind.identifier(subject)
        # the previous entry may have fired while facts were being read
        self._settle_fired(ident, report)
        if self.ledger.has_sent(kind, trigger.day, subject):
            log.info("%s for %s already delivered, not rescheduling", ident, trigger.day)
            return False

        self.center.cancel([ident])
        self.kv.delete(_manifest_key(ident))
        try:
            self.center.schedule(ident, trigger.instant, title, body)
        except DeliveryRejected as e:
            log.warning("%s", e)
            report.rejected.append(ident)
            return False
        self.kv.set(
            _manifest_key(ident),
            {"kind": kind.value, "subject": subject, "day": trigger.day, "trigger": trigger.instant},
        )
        if trigger.immediate:
            log.info("%s for %s is late, firing at %s", ident, trigger.day, trigger.instant.isoformat())
        report.scheduled.append(ident)
        return True

    def _settle_fired(self, ident: str, report: RefreshReport) -> None:
        entry = self.kv.get(_manifest_key(ident))
        if not entry:
            return
        trigger = parse_instant(entry.get("trigger"), self.tz)
        if trigger is None or trigger > self.clock():
            return
        try:
            still_pending = any(p.identifier == ident for p in self.center.list_pending())
        except Exception as e:
            # a due entry that cannot be found is counted as fired
            log.warning("could not list pending deliveries: %s", e)
            still_pending = False
        if still_pending:
            return
        self.kv.delete(_manifest_key(ident))
        if self._mark_entry(entry):
            report.delivered.append(ident)

    def _sent_check(self, kind: NotificationKind) -> Callable[[date], bool]:
        return lambda day: self.ledger.has_sent(kind, day)

    # ---------------------------
    # Per-kind handlers
    # ---------------------------
    def _schedule_daily_summary(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.DAILY_SUMMARY
        trig = next_daily_trigger(
            now,
            settings.daily_summary_hour,
            settings.daily_summary_minute,
            self.tz,
            grace=self.grace,
            immediate_delay=self.immediate_delay,
            already_sent=self._sent_check(kind),
        )
        if trig is None:
            return
        start, end = trig.day, next_day(trig.day)
        revenue = self.aggregator.aggregate(start, end)
        patients = self.attendance.count_attended(start, end)
        if revenue <= 0 and patients == 0:
            # keep whatever is already pending
            report.suppressed.append(kind.value)
            return
        self._replace(
            kind, None, trig, messages.DAILY_SUMMARY_TITLE,
            messages.daily_summary_message(revenue, patients), report,
        )

    def _schedule_weekly_summary(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.WEEKLY_SUMMARY
        trig = next_weekly_trigger(
            now, WEEKLY_SUMMARY_WEEKDAY, WEEKLY_SUMMARY_HOUR, 0, self.tz,
            grace=self.grace, immediate_delay=self.immediate_delay,
            already_sent=self._sent_check(kind),
        )
        start, end = summary_window(trig.day)
        revenue = self.aggregator.aggregate(start, end)
        patients = self.attendance.count_attended(start, end)
        if revenue <= 0 and patients == 0:
            report.suppressed.append(kind.value)
            return
        self._replace(
            kind, None, trig, messages.WEEKLY_SUMMARY_TITLE,
            messages.weekly_summary_message(revenue, patients), report,
        )

    def _schedule_weekly_preview(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.WEEKLY_PREVIEW
        trig = next_weekly_trigger(
            now, WEEKLY_PREVIEW_WEEKDAY, WEEKLY_PREVIEW_HOUR, 0, self.tz,
            grace=self.grace, immediate_delay=self.immediate_delay,
            already_sent=self._sent_check(kind),
        )
        start, end = preview_window(trig.day)
        try:
            count = len(self.attendance.list_attended(start, end))
        except SourceUnavailable as e:
            log.warning("%s; leaving week preview as is", e)
            return
        self._replace(kind, None, trig, messages.WEEKLY_PREVIEW_TITLE, messages.preview_message(count), report)

    def _schedule_daily_agenda(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.DAILY_AGENDA
        trig = next_daily_trigger(
            now,
            settings.daily_agenda_hour,
            0,
            self.tz,
            grace=self.grace,
            immediate_delay=self.immediate_delay,
            already_sent=self._sent_check(kind),
        )
        if trig is None:
            return
        try:
            appts = self.attendance.list_attended(trig.day, next_day(trig.day))
        except SourceUnavailable as e:
            log.warning("%s; leaving agenda as is", e)
            return
        self._replace(kind, None, trig, messages.DAILY_AGENDA_TITLE, messages.agenda_message(appts, self.tz), report)

    def _schedule_appointment_reminders(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.APPOINTMENT_REMINDER
        horizon = start_of_day(local_date(now, self.tz) + timedelta(days=REMINDER_LOOKAHEAD_DAYS + 1), self.tz)
        try:
            appts = self.attendance.list_between(now, horizon)
        except SourceUnavailable as e:
            log.warning("%s; leaving reminders as is", e)
            return

        offset = settings.appointment_reminder_minutes
        wanted: Set[str] = set()
        for appt in appts:
            at = reminder_instant(appt.start, offset)
            if at <= now:
                # too close to the appointment, never fired late
                continue
            day = local_date(appt.start, self.tz)
            if self.ledger.has_sent(kind, day, appt.id):
                continue
            wanted.add(kind.identifier(appt.id))
            self._replace(
                kind, appt.id, Trigger(at, day), messages.REMINDER_TITLE,
                messages.reminder_message(appt, offset, self.tz), report,
            )

        self._cancel(self._known_ids(kind, pending_ids) - wanted, report)

    def _schedule_birthdays(self, now, settings: NotificationSettings, pending_ids, report) -> None:
        kind = NotificationKind.BIRTHDAY_REMINDER
        user_id = self.identity.current_user_id()
        try:
            rows = self.store.query(
                "patients",
                [
                    Filter("user_id", "eq", user_id),
                    Filter("is_active", "eq", True),
                    Filter("birth_date", "not_null"),
                ],
            )
        except Exception as e:
            log.warning("%s; leaving birthdays as is", SourceUnavailable("patients", e))
            return

        today = local_date(now, self.tz)
        wanted: Set[str] = set()
        for row in rows:
            patient = PatientFact.from_row(row)
            if patient is None or patient.birth_date is None or not patient.is_active:
                continue
            occurrence = next_birthday(patient.birth_date, today)
            if (occurrence - today).days > BIRTHDAY_HORIZON_DAYS:
                continue
            if self.ledger.has_sent(kind, occurrence, patient.id):
                continue

            at = at_local_time(occurrence, settings.birthday_reminder_hour, 0, self.tz)
            if at > now:
                trig = Trigger(at, occurrence)
            elif now - at <= self.grace:
                trig = Trigger(now + self.immediate_delay, occurrence, immediate=True)
            else:
                # missed today; the next occurrence is a year out
                continue

            wanted.add(kind.identifier(patient.id))
            self._replace(
                kind, patient.id, trig, messages.BIRTHDAY_TITLE,
                messages.birthday_message(patient.name, age_on(patient.birth_date, occurrence)), report,
            )

        self._cancel(self._known_ids(kind, pending_ids) - wanted, report)
