from __future__ import annotations

import logging
import threading
from datetime import date, timedelta

import pytest

from agenda_agents.agents.notification_agent import NotificationScheduler
from agenda_agents.agents.revenue_agent import RevenueAggregator
from agenda_agents.datastore import StaticIdentity
from agenda_agents.events import DATA_MUTATED, EXPLICIT_REFRESH, NOTIFICATION_DELIVERED
from agenda_agents.kvstore import JsonFileKV
from agenda_agents.models import NotificationKind

JAN_7 = date(2025, 1, 7)


@pytest.fixture
def clinic(store):
    """Tuesday 2025-01-07: one paid sale, an afternoon visit, one visit tomorrow, a birthday in 10 days."""
    store.add(
        "sales",
        {"id": "s1", "user_id": "u1", "payment_status": "paid", "total_amount": 200, "sold_at": "2025-01-07"},
    )
    store.add(
        "appointments",
        {"id": "a1", "user_id": "u1", "start": "2025-01-07T15:00:00-03:00", "status": "scheduled",
         "is_personal": False, "patient_id": "p1", "patient_name": "Ana"},
        {"id": "a2", "user_id": "u1", "start": "2025-01-08T09:00:00-03:00", "status": "confirmed",
         "is_personal": False, "patient_id": "p2", "patient_name": "Bia"},
    )
    store.add(
        "patients",
        {"id": "p1", "user_id": "u1", "name": "Ana", "is_active": True, "birth_date": "1990-01-17"},
        {"id": "p2", "user_id": "u1", "name": "Bia", "is_active": True, "birth_date": "1985-06-01"},
    )
    return store


def _pending(center):
    return {p.identifier: p for p in center.list_pending()}


def test_refresh_schedules_every_kind(clinic, make_scheduler, center, local):
    report = make_scheduler().refresh_all()
    pending = _pending(center)

    assert set(pending) == {
        "daily_summary",
        "weekly_summary",
        "weekly_preview",
        "daily_agenda",
        "appointment_a1",
        "appointment_a2",
        "birthday_p1",
    }
    assert report.skipped_reason is None
    assert report.rejected == [] and report.failed == []

    assert pending["daily_summary"].trigger == local(2025, 1, 7, 21)
    assert "You saw 1 patient and earned R$ 200,00" in pending["daily_summary"].body
    assert pending["weekly_summary"].trigger == local(2025, 1, 11, 22)
    assert pending["weekly_preview"].trigger == local(2025, 1, 12, 20)
    assert "Your week is free" in pending["weekly_preview"].body
    assert pending["daily_agenda"].trigger == local(2025, 1, 8, 8)
    assert pending["daily_agenda"].body == "You have 1 appointment today. First: Bia at 09:00"
    assert pending["appointment_a1"].trigger == local(2025, 1, 7, 14, 30)
    assert pending["birthday_p1"].trigger == local(2025, 1, 17, 9)
    assert pending["birthday_p1"].body.startswith("Ana turns 35 today!")


def test_refresh_twice_is_idempotent(clinic, make_scheduler, center):
    scheduler = make_scheduler()
    scheduler.refresh_all()
    first = [(p.identifier, p.trigger, p.body) for p in center.list_pending()]
    scheduler.refresh_all()
    second = [(p.identifier, p.trigger, p.body) for p in center.list_pending()]

    assert first == second
    assert len({ident for ident, _, _ in second}) == len(second)


def test_concurrent_refreshes_do_not_duplicate(clinic, make_scheduler, center):
    scheduler = make_scheduler()
    threads = [threading.Thread(target=scheduler.refresh_all) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(center.list_pending()) == 7


def test_idle_day_suppresses_without_cancelling_previous(make_scheduler, center, local):
    center.schedule("daily_summary", local(2025, 1, 7, 21), "📊 Daily summary", "from the last cycle")

    report = make_scheduler().refresh_all()

    assert "daily_summary" in report.suppressed
    assert "weekly_summary" in report.suppressed
    kept = _pending(center)["daily_summary"]
    assert kept.body == "from the last cycle"
    assert kept.trigger == local(2025, 1, 7, 21)
    assert "daily_summary" not in report.cancelled


def test_zero_revenue_with_attendance_still_sends(store, make_scheduler, center):
    store.add(
        "appointments",
        {"id": "a1", "user_id": "u1", "start": "2025-01-07T15:00:00-03:00", "status": "completed", "is_personal": False},
    )
    make_scheduler().refresh_all()
    assert "R$ 0,00" in _pending(center)["daily_summary"].body


def test_late_refresh_inside_grace_fires_soon(clinic, make_scheduler, center, clock, local, caplog):
    caplog.set_level(logging.INFO, logger="agenda_agents")
    clock.set(local(2025, 1, 7, 21, 30))
    make_scheduler().refresh_all()
    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 7, 21, 30, 3)
    assert "daily_summary for 2025-01-07 is late" in caplog.text


def test_delivered_summary_is_never_sent_twice(clinic, make_scheduler, center, clock, local, kv):
    scheduler = make_scheduler()
    scheduler.refresh_all()

    clock.set(local(2025, 1, 7, 21, 0, 1))
    fired = {p.identifier for p in center.fire_due(clock())}
    assert {"daily_summary", "appointment_a1"} <= fired

    report = scheduler.refresh_all()
    assert {"daily_summary", "appointment_a1"} <= set(report.delivered)
    assert scheduler.ledger.has_sent(NotificationKind.DAILY_SUMMARY, JAN_7)
    assert scheduler.ledger.has_sent(NotificationKind.APPOINTMENT_REMINDER, JAN_7, "a1")

    pending = _pending(center)
    # tomorrow's summary, not a second one for today
    assert pending["daily_summary"].trigger == local(2025, 1, 8, 21)
    assert "appointment_a1" not in pending

    # still inside today's grace window, yet nothing new for today
    clock.advance(minutes=30)
    scheduler.refresh_all()
    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 8, 21)


def test_ledger_survives_restart(clinic, store, owner, center, clock, local, tz, tmp_path):
    path = tmp_path / "notification_state.json"

    def build():
        return NotificationScheduler(store=store, identity=owner, center=center, kv=JsonFileKV(path), clock=clock, tz=tz)

    build().refresh_all()
    clock.set(local(2025, 1, 7, 21, 0, 1))
    center.fire_due(clock())

    build().refresh_all()
    clock.advance(minutes=5)
    build().refresh_all()

    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 8, 21)
    assert len(center.delivered) == len({p.identifier for p in center.delivered})


class _DeliversDuringRead:
    """Aggregator that lets the platform deliver whatever is due while revenue is being read."""

    def __init__(self, inner, clock, center):
        self.inner = inner
        self.clock = clock
        self.center = center
        self.armed = False

    def aggregate(self, start, end):
        if self.armed:
            self.armed = False
            self.clock.advance(seconds=5)
            self.center.fire_due(self.clock())
        return self.inner.aggregate(start, end)


def test_summary_delivered_mid_refresh_is_not_sent_again(
    clinic, store, owner, make_scheduler, center, clock, local, tz
):
    aggregator = _DeliversDuringRead(RevenueAggregator.default(store, owner, tz, max_workers=1), clock, center)
    scheduler = make_scheduler(aggregator=aggregator)
    scheduler.refresh_all()

    clock.set(local(2025, 1, 7, 20, 59, 59))
    aggregator.armed = True
    report = scheduler.refresh_all()

    assert "daily_summary" in report.delivered
    assert "daily_summary" not in report.scheduled
    assert scheduler.ledger.has_sent(NotificationKind.DAILY_SUMMARY, JAN_7)

    clock.set(local(2025, 1, 7, 21, 30))
    scheduler.refresh_all()
    center.fire_due(clock())

    summaries = [p.trigger for p in center.delivered if p.identifier == "daily_summary"]
    assert summaries == [local(2025, 1, 7, 21)]
    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 8, 21)


def test_platform_delivery_callback_marks_ledger(clinic, make_scheduler, center, clock, local):
    scheduler = make_scheduler()
    scheduler.refresh_all()
    clock.set(local(2025, 1, 7, 21, 0, 1))
    center.cancel(["daily_summary"])  # the platform consumed it

    scheduler.handle(NOTIFICATION_DELIVERED, {"identifier": "daily_summary"})

    assert scheduler.ledger.has_sent(NotificationKind.DAILY_SUMMARY, JAN_7)
    scheduler.handle(DATA_MUTATED)
    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 8, 21)


def test_late_delivery_report_keeps_next_days_entry(clinic, make_scheduler, center, clock, local):
    scheduler = make_scheduler()
    scheduler.refresh_all()
    clock.set(local(2025, 1, 7, 21, 0, 1))
    center.fire_due(clock())
    scheduler.refresh_all()

    # reported after the refresh already settled it
    assert scheduler.mark_delivered("daily_summary") is False

    assert not scheduler.ledger.has_sent(NotificationKind.DAILY_SUMMARY, date(2025, 1, 8))
    assert _pending(center)["daily_summary"].trigger == local(2025, 1, 8, 21)


def test_delivery_report_without_manifest_uses_today(make_scheduler, caplog):
    scheduler = make_scheduler()
    with caplog.at_level(logging.WARNING):
        assert scheduler.mark_delivered("birthday_p9") is True

    assert scheduler.ledger.has_sent(NotificationKind.BIRTHDAY_REMINDER, JAN_7, "p9")
    assert "no manifest entry" in caplog.text


def test_disabled_kind_cancels_its_pending_entries(clinic, make_scheduler, center, kv):
    scheduler = make_scheduler()
    scheduler.refresh_all()

    kv.set("daily_agenda_enabled", False)
    kv.set("appointment_reminder_enabled", False)
    report = scheduler.refresh_all()

    pending = _pending(center)
    assert "daily_agenda" not in pending
    assert not [i for i in pending if i.startswith("appointment_")]
    assert {"daily_agenda", "appointment_a1", "appointment_a2"} <= set(report.cancelled)
    assert "daily_summary" in pending


def test_financial_kinds_need_owner_role(clinic, make_scheduler, center):
    make_scheduler(identity=StaticIdentity("u1", owner=False)).refresh_all()
    pending = _pending(center)
    assert "daily_summary" not in pending
    assert "weekly_summary" not in pending
    assert "weekly_preview" in pending
    assert "appointment_a1" in pending


def test_no_current_user_schedules_nothing(clinic, make_scheduler, center):
    report = make_scheduler(identity=StaticIdentity(None)).refresh_all()
    assert report.skipped_reason == "no current user"
    assert center.list_pending() == []


def test_rejected_deliveries_are_retried_next_refresh(clinic, make_scheduler, center):
    scheduler = make_scheduler()
    center.deny()
    report = scheduler.refresh_all()
    assert report.scheduled == []
    assert "daily_summary" in report.rejected
    assert center.list_pending() == []

    center.deny(False)
    report = scheduler.refresh_all()
    assert "daily_summary" in report.scheduled
    assert len(center.list_pending()) == 7


def test_imminent_appointment_gets_no_late_reminder(store, make_scheduler, center, clock):
    soon = clock() + timedelta(minutes=20)
    store.add(
        "appointments",
        {"id": "soon", "user_id": "u1", "start": soon.isoformat(), "status": "scheduled", "is_personal": False},
    )
    make_scheduler().refresh_all()
    assert "appointment_soon" not in _pending(center)


def test_reminder_offset_setting(clinic, make_scheduler, center, kv, local):
    kv.set("appointment_reminder_minutes", 60)
    make_scheduler().refresh_all()
    assert _pending(center)["appointment_a1"].trigger == local(2025, 1, 7, 14)


def test_cancelled_appointment_loses_its_reminder(clinic, store, make_scheduler, center):
    scheduler = make_scheduler()
    scheduler.refresh_all()
    store.update("appointments", "a1", status="cancelled")

    report = scheduler.refresh_all()
    assert "appointment_a1" not in _pending(center)
    assert "appointment_a1" in report.cancelled


def test_outage_keeps_existing_reminders(clinic, store, make_scheduler, center):
    scheduler = make_scheduler()
    scheduler.refresh_all()

    store.fail("appointments")
    store.fail("patients")
    report = scheduler.refresh_all()

    pending = _pending(center)
    assert {"appointment_a1", "appointment_a2", "birthday_p1", "daily_agenda", "weekly_preview"} <= set(pending)
    assert report.cancelled == []
    # revenue alone still drives the summary
    assert "daily_summary" in report.scheduled


def test_birthday_horizon_and_inactive_patients(store, make_scheduler, center):
    store.add(
        "patients",
        {"id": "near", "user_id": "u1", "name": "Near", "is_active": True, "birth_date": "2000-02-06"},
        {"id": "far", "user_id": "u1", "name": "Far", "is_active": True, "birth_date": "2000-02-07"},
        {"id": "gone", "user_id": "u1", "name": "Gone", "is_active": False, "birth_date": "2000-01-10"},
        {"id": "none", "user_id": "u1", "name": "None", "is_active": True, "birth_date": None},
    )
    make_scheduler().refresh_all()
    birthdays = {i for i in _pending(center) if i.startswith("birthday_")}
    # 2025-02-06 is exactly 30 days out
    assert birthdays == {"birthday_near"}


def test_birthday_today_within_grace_fires_now(store, make_scheduler, center, clock, local):
    store.add("patients", {"id": "p9", "user_id": "u1", "name": "Caio", "is_active": True, "birth_date": "1995-01-07"})

    clock.set(local(2025, 1, 7, 10, 30))
    make_scheduler().refresh_all()
    entry = _pending(center)["birthday_p9"]
    assert entry.trigger == local(2025, 1, 7, 10, 30, 3)
    assert entry.body.startswith("Caio turns 30 today!")


def test_birthday_missed_past_grace_is_skipped(store, make_scheduler, center, clock, local):
    store.add("patients", {"id": "p9", "user_id": "u1", "name": "Caio", "is_active": True, "birth_date": "1995-01-07"})
    clock.set(local(2025, 1, 7, 12))
    make_scheduler().refresh_all()
    assert "birthday_p9" not in _pending(center)


def test_weekly_summary_inside_grace_on_saturday(clinic, make_scheduler, center, clock, local):
    clock.set(local(2025, 1, 11, 22, 30))
    make_scheduler().refresh_all()
    assert _pending(center)["weekly_summary"].trigger == local(2025, 1, 11, 22, 30, 3)


def test_one_failing_kind_does_not_stop_the_others(clinic, make_scheduler, center, monkeypatch):
    scheduler = make_scheduler()

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setitem(scheduler._handlers, NotificationKind.WEEKLY_PREVIEW, boom)
    report = scheduler.refresh_all()

    assert report.failed == ["weekly_preview"]
    assert "daily_summary" in _pending(center)
    assert "weekly_preview" not in _pending(center)


def test_refresh_prunes_old_markers(clinic, make_scheduler, kv):
    kv.set("sent:daily_summary:2024-01-01", True)
    kv.set("sent:daily_summary:2025-01-06", True)
    make_scheduler().handle(EXPLICIT_REFRESH)
    assert kv.get("sent:daily_summary:2024-01-01") is None
    assert kv.get("sent:daily_summary:2025-01-06") is True
