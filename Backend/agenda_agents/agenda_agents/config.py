# agenda_agents/config.py
import os
from dotenv import load_dotenv
from pathlib import Path

_here = Path(__file__).resolve()
# Prefer repo-root .env (shared by the app backend), then allow Backend/.env overrides if present.
load_dotenv(dotenv_path=_here.parents[3] / ".env")
load_dotenv(dotenv_path=_here.parents[2] / ".env")

CLINIC_TZ = os.getenv("CLINIC_TZ", "America/Sao_Paulo")

DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
DB_PORT = int(os.getenv("DB_PORT", "3306"))
DB_USER = os.getenv("DB_USER", "root")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_NAME = os.getenv("DB_NAME", "agenda")

WORKER_ID = os.getenv("WORKER_ID", "notifier-1")
REFRESH_INTERVAL_SEC = int(os.getenv("REFRESH_INTERVAL_SEC", "300"))

# local device state
LEDGER_PATH = os.getenv("LEDGER_PATH", str(_here.parents[2] / "var" / "notification_state.json"))
LEDGER_RETENTION_DAYS = int(os.getenv("LEDGER_RETENTION_DAYS", "60"))

# schedule defaults (clinic-local wall clock)
DAILY_SUMMARY_HOUR = int(os.getenv("DAILY_SUMMARY_HOUR", "21"))
DAILY_SUMMARY_MINUTE = int(os.getenv("DAILY_SUMMARY_MINUTE", "0"))
DAILY_AGENDA_HOUR = int(os.getenv("DAILY_AGENDA_HOUR", "8"))
BIRTHDAY_HOUR = int(os.getenv("BIRTHDAY_HOUR", "9"))

# Saturday 22:00 summary, Sunday 20:00 preview (Monday=0 ... Sunday=6)
WEEKLY_SUMMARY_WEEKDAY = int(os.getenv("WEEKLY_SUMMARY_WEEKDAY", "5"))
WEEKLY_SUMMARY_HOUR = int(os.getenv("WEEKLY_SUMMARY_HOUR", "22"))
WEEKLY_PREVIEW_WEEKDAY = int(os.getenv("WEEKLY_PREVIEW_WEEKDAY", "6"))
WEEKLY_PREVIEW_HOUR = int(os.getenv("WEEKLY_PREVIEW_HOUR", "20"))

# operational knobs
GRACE_WINDOW_MIN = int(os.getenv("GRACE_WINDOW_MIN", "120"))
IMMEDIATE_DELAY_SEC = int(os.getenv("IMMEDIATE_DELAY_SEC", "3"))
APPOINTMENT_REMINDER_MIN = int(os.getenv("APPOINTMENT_REMINDER_MIN", "30"))
REMINDER_LOOKAHEAD_DAYS = int(os.getenv("REMINDER_LOOKAHEAD_DAYS", "7"))
BIRTHDAY_HORIZON_DAYS = int(os.getenv("BIRTHDAY_HORIZON_DAYS", "30"))
REVENUE_WORKERS = int(os.getenv("REVENUE_WORKERS", "4"))

CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "R$")
