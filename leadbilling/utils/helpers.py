from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urljoin

from flask import current_app


def utcnow() -> datetime:
    """Naive UTC; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Any) -> Optional[datetime]:
    """Stripe epoch seconds -> naive UTC datetime (None/0/garbage -> None)."""
    try:
        ts = int(ts)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.replace(tzinfo=timezone.utc).isoformat() if dt else None


def safe_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_dict(obj: Any) -> dict:
    """Stripe objects may need converting to dicts."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and type(obj) is dict:
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def ref_id(value: Any) -> Optional[str]:
    """Expandable Stripe field: either an id string or an object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    if value is None:
        return None
    return getattr(value, "id", None) or (value if isinstance(value, str) else None)


def absolute_url(path: str) -> str:
    """APP_BASE_URL-rooted link for emails and Stripe redirects."""
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))
