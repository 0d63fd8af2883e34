from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n"}
_CAMEL_RE = re.compile(r"([A-Z])")


def iso(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_bool(value: Any, default: bool | None = None) -> bool | None:
    """Lenient boolean parsing for query strings and JSON payloads."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return default


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def parse_float(value: Any, default: float | None = None) -> float | None:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return default


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 (date or datetime); tz-aware values are converted to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def clean_str(value: Any) -> str | None:
    s = (str(value) if value is not None else "").strip()
    return s or None


def text_errors(payload: dict[str, Any], *fields: str) -> list[str]:
    """Errors for fields that are present but not strings."""
    return [f"{f} must be a string." for f in fields if payload.get(f) is not None and not isinstance(payload.get(f), str)]


def snake_case(name: str) -> str:
    return _CAMEL_RE.sub(r"_\1", name).lower()


def normalize_keys(payload: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase keys onto snake_case; explicit snake_case keys win."""
    out: dict[str, Any] = {}
    for k, v in payload.items():
        sk = snake_case(k)
        if sk != k and sk in payload:
            continue
        out[sk] = v
    return out


def split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def mask_secret(value: str | None) -> str | None:
    if not value:
        return None
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}…{value[-4:]}"


def parse_remote_datetime(value: Any) -> datetime | None:
    """WorkTool timestamps: epoch seconds/milliseconds (numbers or digit strings) or 'YYYY-MM-DD HH:MM:SS'."""
    if value in (None, ""):
        return None
    numeric = isinstance(value, (int, float)) and not isinstance(value, bool)
    if numeric or (isinstance(value, str) and value.strip().isdigit()):
        try:
            value = int(value.strip()) if isinstance(value, str) else value
            seconds = value / 1000 if value > 10**11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return parse_datetime(str(value).replace(" ", "T", 1))
    except ValueError:
        return None
