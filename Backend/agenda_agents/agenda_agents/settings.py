# agenda_agents/settings.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from .config import (
    APPOINTMENT_REMINDER_MIN,
    BIRTHDAY_HOUR,
    DAILY_AGENDA_HOUR,
    DAILY_SUMMARY_HOUR,
    DAILY_SUMMARY_MINUTE,
)
from .kvstore import KeyValueStore
from .models import NotificationKind

log = logging.getLogger(__name__)

SETTINGS_SCHEMA_VERSION = 1
VERSION_KEY = "settings_version"

DEFAULTS: Dict[str, Any] = {
    **{f"{k.value}_enabled": True for k in NotificationKind},
    "daily_summary_hour": DAILY_SUMMARY_HOUR,
    "daily_summary_minute": DAILY_SUMMARY_MINUTE,
    "appointment_reminder_minutes": APPOINTMENT_REMINDER_MIN,
    "daily_agenda_hour": DAILY_AGENDA_HOUR,
    "birthday_reminder_hour": BIRTHDAY_HOUR,
}


def migrate(kv: KeyValueStore) -> bool:
    """Fill missing keys with defaults and stamp the schema version. Never overwrites user choices."""
    try:
        current = int(kv.get(VERSION_KEY) or 0)
    except (TypeError, ValueError):
        current = 0
    if current >= SETTINGS_SCHEMA_VERSION:
        return False

    for key, value in DEFAULTS.items():
        if kv.get(key) is None:
            kv.set(key, value)
    kv.set(VERSION_KEY, SETTINGS_SCHEMA_VERSION)
    log.info("settings migrated from v%s to v%s", current, SETTINGS_SCHEMA_VERSION)
    return True


def _as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


def _bounded_int(kv: KeyValueStore, key: str, lo: int, hi: int) -> int:
    default = int(DEFAULTS[key])
    raw = kv.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        log.warning("setting %s=%r is not a number, using %s", key, raw, default)
        return default
    if value < lo or value > hi:
        log.warning("setting %s=%r out of range [%s, %s], using %s", key, raw, lo, hi, default)
        return default
    return value


@dataclass(frozen=True)
class NotificationSettings:
    enabled: Dict[NotificationKind, bool] = field(default_factory=dict)
    daily_summary_hour: int = DAILY_SUMMARY_HOUR
    daily_summary_minute: int = DAILY_SUMMARY_MINUTE
    appointment_reminder_minutes: int = APPOINTMENT_REMINDER_MIN
    daily_agenda_hour: int = DAILY_AGENDA_HOUR
    birthday_reminder_hour: int = BIRTHDAY_HOUR

    def is_enabled(self, kind: NotificationKind) -> bool:
        return self.enabled.get(kind, True)


def load_settings(kv: KeyValueStore) -> NotificationSettings:
    migrate(kv)
    enabled = {
        kind: _as_bool(kv.get(f"{kind.value}_enabled"), True)
        for kind in NotificationKind
    }
    return NotificationSettings(
        enabled=enabled,
        daily_summary_hour=_bounded_int(kv, "daily_summary_hour", 0, 23),
        daily_summary_minute=_bounded_int(kv, "daily_summary_minute", 0, 59),
        # a day's worth of lead time is the most a reminder makes sense for
        appointment_reminder_minutes=_bounded_int(kv, "appointment_reminder_minutes", 1, 24 * 60),
        daily_agenda_hour=_bounded_int(kv, "daily_agenda_hour", 0, 23),
        birthday_reminder_hour=_bounded_int(kv, "birthday_reminder_hour", 0, 23),
    )
