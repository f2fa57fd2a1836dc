# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/utils/durations.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Parsing helpers for untrusted upstream values.

The project-data source reports effort as ISO 8601 durations (``PT8H``,
``P1DT4H``, ``PT1H30M``) and dates as ``YYYY-MM-DD`` strings. These helpers
turn them into hours and :class:`datetime.date` objects, returning ``None``
rather than raising when a value cannot be understood.
"""

# Standard
from datetime import date, datetime
import re
from typing import Any, Optional

HOURS_PER_DAY = 8.0

_ISO_DURATION = re.compile(
    r"^P(?!$)"
    r"(?:(?P<weeks>\d+(?:\.\d+)?)W)?"
    r"(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?=\d)"
    r"(?:(?P<hours>\d+(?:\.\d+)?)H)?"
    r"(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?"
    r")?$"
)


def parse_duration_hours(value: Any, hours_per_day: float = HOURS_PER_DAY) -> Optional[float]:
    """Convert an ISO 8601 duration (or a bare number of hours) into hours.

    Days count as ``hours_per_day`` working hours and weeks as five working days.

    Args:
        value: Duration string, number of hours, or ``None``
        hours_per_day: Working hours in one day

    Returns:
        Optional[float]: Hours, or ``None`` when the value is absent or malformed

    Examples:
        >>> parse_duration_hours("PT8H")
        8.0
        >>> parse_duration_hours("P1DT4H")
        12.0
        >>> parse_duration_hours("PT1H30M")
        1.5
        >>> parse_duration_hours(2.5)
        2.5
        >>> parse_duration_hours(None) is None
        True
        >>> parse_duration_hours("eight hours") is None
        True
        >>> parse_duration_hours("P") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if not isinstance(value, str):
        return None
    match = _ISO_DURATION.match(value.strip().upper())
    if not match:
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v is not None}
    days = parts.get("weeks", 0.0) * 5 + parts.get("days", 0.0)
    return days * hours_per_day + parts.get("hours", 0.0) + parts.get("minutes", 0.0) / 60 + parts.get("seconds", 0.0) / 3600


def parse_date(value: Any) -> Optional[date]:
    """Parse an upstream date value.

    Args:
        value: ``YYYY-MM-DD`` string, ISO timestamp, date, datetime or ``None``

    Returns:
        Optional[date]: The calendar date, or ``None`` when absent or malformed

    Examples:
        >>> parse_date("2025-03-01")
        datetime.date(2025, 3, 1)
        >>> parse_date("2025-03-01T10:00:00Z")
        datetime.date(2025, 3, 1)
        >>> parse_date("not a date") is None
        True
        >>> parse_date("") is None
        True
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def href_id(href: Any) -> Optional[str]:
    """Return the trailing identifier of a HAL link.

    Args:
        href: Link such as ``/api/v3/users/12``

    Returns:
        Optional[str]: The last path segment, or ``None`` for empty links

    Examples:
        >>> href_id("/api/v3/users/12")
        '12'
        >>> href_id(None) is None
        True
        >>> href_id("/api/v3/users/") is None
        True
    """
    if not href or not isinstance(href, str):
        return None
    tail = href.split("?")[0].split("/")[-1]
    return tail or None
