import json
import re
from datetime import datetime, date, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .config import CURRENCY_SYMBOL


def json_dumps(obj) -> str:
    try:
        return json.dumps(json_safe(obj), ensure_ascii=False)
    except Exception:
        return "{}"


def json_loads(s: str):
    try:
        return json.loads(s or "{}")
    except Exception:
        return {}


def json_safe(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, set):
        return [json_safe(v) for v in obj]
    if isinstance(obj, dict):
        return {k: json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    return obj


def pick(row: Any, *keys: str) -> Any:
    """First non-empty value among ``keys`` (rows come from several schema revisions)."""
    if not isinstance(row, dict):
        return None
    for k in keys:
        v = row.get(k)
        if v is not None and v != "":
            return v
    return None


def to_decimal(value: Any) -> Decimal:
    """
    Money values arrive as numbers, numeric strings or pt-BR strings ("1.234,56").
    Anything unreadable is zero.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    s = str(value).strip().replace("R$", "").replace(" ", "")
    if not s:
        return Decimal("0")
    if "," in s and "." in s:
        s = s.replace(".", "").replace(",", ".")
    elif "," in s:
        s = s.replace(",", ".")
    try:
        return Decimal(s)
    except InvalidOperation:
        return Decimal("0")


_FRACTION = re.compile(r"\.(\d+)")
_SLASH_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_SLASH_YMD = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")
_PLAIN_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _fix_fraction(s: str) -> str:
    # fromisoformat wants exactly 3 or 6 fractional digits on older interpreters
    return _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], s, count=1)


def _parse_text(s: str) -> Optional[Any]:
    """Returns a date (no time part) or a datetime (naive or aware)."""
    s = s.strip()
    if not s:
        return None

    m = _SLASH_DMY.match(s)
    if m:
        try:
            return date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
        except ValueError:
            return None
    m = _SLASH_YMD.match(s)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None

    if _PLAIN_DATE.match(s):
        try:
            return date.fromisoformat(s)
        except ValueError:
            return None

    iso = s.replace("Z", "+00:00").replace("z", "+00:00")
    iso = _fix_fraction(iso)
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass

    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def to_calendar_date(value: Any, tz: Optional[tzinfo]) -> Optional[date]:
    """
    Single normalization point for every date-ish value read from the store.

    - plain dates ("2025-01-07", "07/01/2025", "2025/01/07") are taken as written
    - instants with an offset are converted to ``tz`` before the date is read
    - naive timestamps are already clinic wall time

    ``tz=None`` reads the wall date as written even for instants with an offset
    (birth dates are stored as midnight UTC by some clients).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed: Any = value
    elif isinstance(value, date):
        return value
    else:
        parsed = _parse_text(str(value))
        if parsed is None:
            return None

    if isinstance(parsed, datetime):
        if parsed.tzinfo is not None and tz is not None:
            return parsed.astimezone(tz).date()
        return parsed.date()
    return parsed


def parse_instant(value: Any, tz: tzinfo) -> Optional[datetime]:
    """Aware datetime for an appointment boundary; naive values are clinic wall time."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed: Any = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = _parse_text(str(value))
        if parsed is None:
            return None
        if not isinstance(parsed, datetime):
            parsed = datetime(parsed.year, parsed.month, parsed.day)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def format_money(amount: Decimal, symbol: str = CURRENCY_SYMBOL) -> str:
    """pt-BR style: R$ 1.234,56"""
    q = to_decimal(amount).quantize(Decimal("0.01"))
    sign = "-" if q < 0 else ""
    whole, _, cents = f"{abs(q):.2f}".partition(".")
    groups = []
    while len(whole) > 3:
        groups.insert(0, whole[-3:])
        whole = whole[:-3]
    groups.insert(0, whole)
    return f"{sign}{symbol} {'.'.join(groups)},{cents}"
