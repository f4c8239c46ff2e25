# agenda_agents/db.py
from __future__ import annotations

import json
import os
import re
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import mysql.connector

from .clock import clinic_tz
from .datastore import Filter


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v


def _int_env(name: str, default: int) -> int:
    v = _env(name)
    try:
        return int(v) if v is not None else default
    except Exception:
        return default


def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    return s in ("1", "true", "yes", "y", "on")


@dataclass
class DbConfig:
    host: str
    port: int
    user: str
    password: str
    database: str

    connect_timeout: int = 10
    autocommit: bool = False


def get_db_config() -> DbConfig:
    return DbConfig(
        host=_env("DB_HOST", "127.0.0.1"),
        port=_int_env("DB_PORT", 3306),
        user=_env("DB_USER", "root") or "root",
        password=_env("DB_PASSWORD", "") or "",
        database=_env("DB_NAME", "agenda") or "agenda",
        connect_timeout=_int_env("DB_CONNECT_TIMEOUT", 10),
        autocommit=_bool_env("DB_AUTOCOMMIT", False),
    )


class _ConnWrapper:
    """
    Wrap mysql-connector connection to ensure:
    - conn.cursor() defaults to dictionary=True
    - existing code using "with conn.cursor() as cur" gets dict rows
    """
    def __init__(self, conn):
        self._conn = conn

    def __getattr__(self, item):
        return getattr(self._conn, item)

    def cursor(self, *args, **kwargs):
        if "dictionary" not in kwargs:
            kwargs["dictionary"] = True
        # buffered avoids "Unread result" surprises in some flows
        if "buffered" not in kwargs:
            kwargs["buffered"] = True
        return self._conn.cursor(*args, **kwargs)


def get_conn():
    cfg = get_db_config()
    conn = mysql.connector.connect(
        host=cfg.host,
        port=cfg.port,
        user=cfg.user,
        password=cfg.password,
        database=cfg.database,
        connection_timeout=cfg.connect_timeout,
        autocommit=cfg.autocommit,
    )
    return _ConnWrapper(conn)


def safe_rollback(conn) -> None:
    try:
        if getattr(conn, "in_transaction", False):
            conn.rollback()
    except Exception:
        pass


def safe_close(conn) -> None:
    try:
        conn.close()
    except Exception:
        pass


def table_exists(cur, name: str) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM INFORMATION_SCHEMA.TABLES
        WHERE TABLE_SCHEMA=DATABASE() AND TABLE_NAME=%s
        LIMIT 1
        """,
        (name,),
    )
    return cur.fetchone() is not None


def column_exists(cur, table: str, col: str) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM INFORMATION_SCHEMA.COLUMNS
        WHERE TABLE_SCHEMA=DATABASE() AND TABLE_NAME=%s AND COLUMN_NAME=%s
        LIMIT 1
        """,
        (table, col),
    )
    return cur.fetchone() is not None


def _json_load_maybe(v: Any) -> Any:
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s or s[0] not in "[{":
        return v
    try:
        return json.loads(s)
    except Exception:
        return v


_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

_SQL_OPS = {"eq": "=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _ident(name: str) -> str:
    if not _IDENT.match(name or ""):
        raise ValueError(f"invalid identifier {name!r}")
    return f"`{name}`"


def to_db_value(v: Any) -> Any:
    # DATETIME columns hold clinic wall time
    if isinstance(v, datetime) and v.tzinfo is not None:
        return v.astimezone(clinic_tz()).replace(tzinfo=None)
    return v


def build_where(filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
    parts: List[str] = []
    params: List[Any] = []
    for f in filters:
        col = _ident(f.field)
        if f.op == "is_null":
            parts.append(f"{col} IS NULL")
        elif f.op == "not_null":
            parts.append(f"{col} IS NOT NULL")
        elif f.op == "in":
            vals = list(f.value or [])
            if not vals:
                parts.append("1=0")
                continue
            parts.append(f"{col} IN ({', '.join(['%s'] * len(vals))})")
            params.extend(to_db_value(v) for v in vals)
        elif f.op == "neq":
            # NULL rows are "not equal" too, same as the app filters
            parts.append(f"({col} <> %s OR {col} IS NULL)")
            params.append(to_db_value(f.value))
        else:
            parts.append(f"{col} {_SQL_OPS[f.op]} %s")
            params.append(to_db_value(f.value))
    return (" WHERE " + " AND ".join(parts)) if parts else "", params


class MySqlDataStore:
    """DataStore over the clinic MySQL schema. One connection per query so reads can run in parallel."""

    def __init__(self, conn_factory: Callable[[], Any] = get_conn):
        self._conn_factory = conn_factory

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        table = _ident(collection)
        where, params = build_where(filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            desc = order_by.startswith("-")
            sql += f" ORDER BY {_ident(order_by.lstrip('-'))}{' DESC' if desc else ' ASC'}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        conn = self._conn_factory()
        try:
            with conn.cursor() as cur:
                if not table_exists(cur, collection):
                    return []
                cur.execute(sql, tuple(params))
                rows = list(cur.fetchall() or [])
        finally:
            safe_close(conn)

        return [{k: _json_load_maybe(v) for k, v in dict(r).items()} for r in rows]
