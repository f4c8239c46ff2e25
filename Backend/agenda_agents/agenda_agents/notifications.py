# agenda_agents/notifications.py
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .clock import clinic_tz
from .datastore import Identity
from .db import column_exists, get_conn, safe_close, safe_rollback, table_exists, to_db_value
from .errors import DeliveryRejected
from .models import PendingDelivery
from .utils import json_dumps, json_loads, parse_instant

log = logging.getLogger(__name__)


class NotificationCenter(Protocol):
    def schedule(self, identifier: str, trigger: datetime, title: str, body: str) -> None:
        ...

    def cancel(self, identifiers: Iterable[str]) -> None:
        ...

    def list_pending(self) -> List[PendingDelivery]:
        ...


class MemoryNotificationCenter:
    """
    In-process notification center.

    ``deny()`` simulates revoked permission; ``fire_due(now)`` moves every
    pending delivery whose trigger has passed into ``delivered``.
    """

    def __init__(self):
        self._pending: Dict[str, PendingDelivery] = {}
        self.delivered: List[PendingDelivery] = []
        self._denied = False
        self._lock = threading.Lock()

    def deny(self, flag: bool = True) -> None:
        self._denied = flag

    def schedule(self, identifier: str, trigger: datetime, title: str, body: str) -> None:
        if self._denied:
            raise DeliveryRejected(identifier, "notification permission denied")
        if trigger.tzinfo is None:
            raise DeliveryRejected(identifier, "trigger must be timezone-aware")
        with self._lock:
            self._pending[identifier] = PendingDelivery(identifier, trigger, title, body)

    def cancel(self, identifiers: Iterable[str]) -> None:
        with self._lock:
            for ident in identifiers:
                self._pending.pop(ident, None)

    def list_pending(self) -> List[PendingDelivery]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda p: (p.trigger, p.identifier))

    def fire_due(self, now: datetime) -> List[PendingDelivery]:
        with self._lock:
            due = [p for p in self._pending.values() if p.trigger <= now]
            for p in sorted(due, key=lambda p: p.trigger):
                del self._pending[p.identifier]
                self.delivered.append(p)
        return due


_PENDING = "PENDING"


class MySqlNotificationCenter:
    """
    Pending deliveries kept in the ``notifications`` table.

    One PENDING row per identifier (``dedupe_key``); the dispatcher that
    sends rows flips their status, which is how a delivery leaves the
    pending list.
    """

    def __init__(self, identity: Identity, conn_factory: Callable[[], Any] = get_conn, channel: str = "PUSH"):
        self.identity = identity
        self._conn_factory = conn_factory
        self.channel = channel

    def _user_id(self) -> Optional[str]:
        return self.identity.current_user_id()

    def schedule(self, identifier: str, trigger: datetime, title: str, body: str) -> None:
        user_id = self._user_id()
        if not user_id:
            raise DeliveryRejected(identifier, "no current user")

        conn = self._conn_factory()
        try:
            with conn.cursor() as cur:
                if not table_exists(cur, "notifications"):
                    raise DeliveryRejected(identifier, "notifications table missing")

                has_dedupe = column_exists(cur, "notifications", "dedupe_key")
                if has_dedupe:
                    cur.execute(
                        "DELETE FROM notifications WHERE dedupe_key=%s AND user_id=%s AND status=%s",
                        (identifier, user_id, _PENDING),
                    )

                cols: List[str] = []
                vals: List[Any] = []

                def add(col: str, value: Any) -> None:
                    cols.append(col)
                    vals.append(value)

                add("user_id", user_id)
                if column_exists(cur, "notifications", "title"):
                    add("title", (title or "")[:200])
                if column_exists(cur, "notifications", "message"):
                    add("message", (body or "")[:5000])
                if column_exists(cur, "notifications", "type"):
                    add("type", identifier.split("_")[0].upper()[:64])
                if column_exists(cur, "notifications", "channel"):
                    add("channel", self.channel)
                if column_exists(cur, "notifications", "status"):
                    add("status", _PENDING)

                meta = {"identifier": identifier, "trigger": trigger}
                if column_exists(cur, "notifications", "scheduled_at"):
                    add("scheduled_at", to_db_value(trigger))
                if has_dedupe:
                    add("dedupe_key", identifier[:190])
                if column_exists(cur, "notifications", "meta_json"):
                    add("meta_json", json_dumps(meta))

                now_local = datetime.now(tz=clinic_tz()).replace(tzinfo=None, microsecond=0)
                if column_exists(cur, "notifications", "created_at"):
                    add("created_at", now_local)

                placeholders = ", ".join(["%s"] * len(cols))
                col_sql = ", ".join([f"`{c}`" for c in cols])
                cur.execute(f"INSERT INTO notifications ({col_sql}) VALUES ({placeholders})", tuple(vals))
            conn.commit()
        except DeliveryRejected:
            safe_rollback(conn)
            raise
        except Exception as e:
            safe_rollback(conn)
            log.exception("schedule %s failed: %s", identifier, e)
            raise DeliveryRejected(identifier, str(e)) from e
        finally:
            safe_close(conn)

    def cancel(self, identifiers: Iterable[str]) -> None:
        idents = [i for i in identifiers if i]
        user_id = self._user_id()
        if not idents or not user_id:
            return
        conn = self._conn_factory()
        try:
            with conn.cursor() as cur:
                if not table_exists(cur, "notifications"):
                    return
                if not column_exists(cur, "notifications", "dedupe_key"):
                    log.warning("notifications.dedupe_key missing, cannot cancel %s", idents)
                    return
                placeholders = ", ".join(["%s"] * len(idents))
                cur.execute(
                    f"DELETE FROM notifications WHERE user_id=%s AND status=%s AND dedupe_key IN ({placeholders})",
                    (user_id, _PENDING, *idents),
                )
            conn.commit()
        except Exception:
            safe_rollback(conn)
            raise
        finally:
            safe_close(conn)

    def list_pending(self) -> List[PendingDelivery]:
        user_id = self._user_id()
        if not user_id:
            return []
        conn = self._conn_factory()
        try:
            with conn.cursor() as cur:
                if not table_exists(cur, "notifications"):
                    return []
                if not column_exists(cur, "notifications", "dedupe_key"):
                    return []
                optional = [
                    c for c in ("scheduled_at", "title", "message", "meta_json")
                    if column_exists(cur, "notifications", c)
                ]
                order = " ORDER BY scheduled_at ASC" if "scheduled_at" in optional else ""
                cur.execute(
                    f"SELECT {', '.join(['dedupe_key'] + optional)} FROM notifications "
                    f"WHERE user_id=%s AND status=%s AND dedupe_key IS NOT NULL{order}",
                    (user_id, _PENDING),
                )
                rows = list(cur.fetchall() or [])
        finally:
            safe_close(conn)

        tz = clinic_tz()
        out: List[PendingDelivery] = []
        for r in rows:
            meta = json_loads(r.get("meta_json")) if isinstance(r.get("meta_json"), str) else (r.get("meta_json") or {})
            trigger = parse_instant(meta.get("trigger") or r.get("scheduled_at"), tz)
            if trigger is None:
                continue
            out.append(PendingDelivery(str(r["dedupe_key"]), trigger, r.get("title") or "", r.get("message") or ""))
        return out
