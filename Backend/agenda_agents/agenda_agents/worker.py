# agenda_agents/worker.py
from __future__ import annotations

import logging
import os
import time

from . import config as _config  # loads .env for DB settings and schedule defaults

from .agents.notification_agent import NotificationScheduler
from .datastore import EnvIdentity
from .db import MySqlDataStore, get_conn, safe_close
from .events import EXPLICIT_REFRESH
from .kvstore import JsonFileKV
from .notifications import MySqlNotificationCenter

log = logging.getLogger("agenda_agents.worker")


def _env(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v)


def _int_env(name: str, default: int) -> int:
    v = os.environ.get(name)
    try:
        return int(v) if v is not None else default
    except Exception:
        return default


def _log(worker_id: str, msg: str) -> None:
    log.info("[worker:%s] %s", worker_id, msg)


def build_scheduler() -> NotificationScheduler:
    identity = EnvIdentity()
    return NotificationScheduler(
        store=MySqlDataStore(get_conn),
        identity=identity,
        center=MySqlNotificationCenter(identity, get_conn),
        kv=JsonFileKV(_config.LEDGER_PATH),
    )


def main() -> None:
    logging.basicConfig(
        level=_env("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker_id = _env("WORKER_ID", _config.WORKER_ID)
    interval = max(10, _int_env("REFRESH_INTERVAL_SEC", _config.REFRESH_INTERVAL_SEC))

    try:
        conn = get_conn()
    except Exception as e:
        _log(worker_id, f"FATAL: cannot connect to DB: {e}")
        raise

    try:
        with conn.cursor() as cur:
            cur.execute("SELECT DATABASE() AS db, NOW() AS now")
            row = cur.fetchone() or {}
        _log(worker_id, f"Connected. db={row.get('db')} now={row.get('now')} tz={_config.CLINIC_TZ}")
    except Exception:
        _log(worker_id, "Connected.")
    finally:
        safe_close(conn)

    scheduler = build_scheduler()
    last_hb = 0.0
    last_refresh = 0.0

    while True:
        now_t = time.time()
        if now_t - last_hb >= 60.0:
            _log(worker_id, f"heartbeat interval={interval}s ledger={_config.LEDGER_PATH}")
            last_hb = now_t

        if now_t - last_refresh >= interval:
            try:
                report = scheduler.handle(EXPLICIT_REFRESH, {})
                _log(worker_id, f"REFRESH {report.summary() if report else 'n/a'}")
                if report and report.rejected:
                    _log(worker_id, f"rejected={','.join(report.rejected)}")
            except Exception as e:
                _log(worker_id, f"REFRESH ERROR: {e!r}")
            last_refresh = now_t

        time.sleep(1.0)


if __name__ == "__main__":
    main()
