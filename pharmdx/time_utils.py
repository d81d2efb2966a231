"""UTC timestamps and patient-age arithmetic.

Stored datetimes may come back naive from SQLite; :func:`ensure_utc` makes
them aware before they reach pydantic models.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive values as UTC and convert aware ones to UTC."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Optional[DateLike]) -> Optional[date]:
    """Interpret a date, datetime or ``YYYY-MM-DD...`` string; ``None`` if unparseable."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def calculate_age(dob: Optional[DateLike], today: Optional[date] = None) -> Optional[int]:
    """Whole years since ``dob``, clamped at zero for future birth dates."""

    born = parse_date(dob)
    if born is None:
        return None
    today = today or utc_now().date()
    years = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    return max(years, 0)


def isoformat_z(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    stamp = ensure_utc(dt).isoformat()
    return stamp[:-6] + "Z" if stamp.endswith("+00:00") else stamp


__all__ = ["calculate_age", "ensure_utc", "isoformat_z", "parse_date", "utc_now"]
