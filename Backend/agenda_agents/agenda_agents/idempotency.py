# agenda_agents/idempotency.py
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Optional

from .kvstore import KeyValueStore
from .models import NotificationKind, SentMarker

log = logging.getLogger(__name__)

SENT_PREFIX = "sent:"


class SentLedger:
    """
    Per-kind, per-day record of deliveries that actually fired.

    The ledger, not the pending list, answers "was this already delivered".
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def has_sent(self, kind: NotificationKind, day: date, subject: Optional[str] = None) -> bool:
        return bool(self.kv.get(SentMarker(kind, day, subject).key))

    def mark_sent(self, kind: NotificationKind, day: date, subject: Optional[str] = None) -> bool:
        """Returns False when the marker was already present."""
        key = SentMarker(kind, day, subject).key
        if self.kv.get(key):
            return False
        self.kv.set(key, True)
        return True

    def prune(self, today: date, retention_days: int) -> int:
        cutoff = today - timedelta(days=max(0, int(retention_days)))
        removed = 0
        for key in self.kv.keys(SENT_PREFIX):
            # date is always the last segment
            tail = key.rsplit(":", 1)[-1]
            try:
                day = date.fromisoformat(tail)
            except ValueError:
                log.warning("dropping malformed ledger key %s", key)
                self.kv.delete(key)
                removed += 1
                continue
            if day < cutoff:
                self.kv.delete(key)
                removed += 1
        return removed
