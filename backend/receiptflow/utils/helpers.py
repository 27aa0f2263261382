"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
from typing import Optional


def utcnow() -> dt.datetime:
    """Naive UTC ``datetime`` matching what the tables store."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def month_key(when: dt.datetime | dt.date | None = None) -> str:
    """``YYYY-MM`` bucket used by the feature usage counters."""
    when = when or utcnow()
    return f"{when.year:04d}-{when.month:02d}"


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator. Some data sources provide timestamps that end
    with ``z`` instead of the canonical ``Z``. This function normalises that
    case and returns ``None`` if the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value.endswith("z"):
            value = value[:-1] + "Z"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_calendar_date(value: str | None) -> Optional[dt.date]:
    """Parse ``YYYY-MM-DD`` or a full ISO8601 timestamp into a date."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        pass
    parsed = parse_iso_datetime(value)
    return parsed.date() if parsed else None
