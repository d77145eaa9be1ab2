# -*- coding: utf-8 -*-
"""
Formatting utilities for alerts.
Handles display timezone conversion, price precision and durations.
"""
from datetime import datetime
from typing import Optional

import pytz

from pricewatch.utils.timeutils import normalize_ts, utc_now


def format_price(price: Optional[float]) -> str:
    """
    Format price with precision that depends on its magnitude.

    Examples:
        67420.5   -> "$67,420.50"
        152.3     -> "$152.300"
        1.23456   -> "$1.2346"
        0.000012  -> "$0.00001200"
    """
    if price is None:
        return "unknown"

    value = float(price)
    magnitude = abs(value)
    if magnitude >= 1000:
        decimals = 2
    elif magnitude >= 100:
        decimals = 3
    elif magnitude >= 1:
        decimals = 4
    elif magnitude >= 0.01:
        decimals = 5
    elif magnitude >= 0.0001:
        decimals = 6
    else:
        decimals = 8

    return f"${value:,.{decimals}f}"


def format_percentage(value: float, signed: bool = True) -> str:
    """Format percentage: 5.234 -> "+5.23%", -6.0 -> "-6.00%"."""
    if signed:
        return f"{value:+.2f}%"
    return f"{value:.2f}%"


def get_timezone(tz_name: str):
    """Resolve timezone name, falling back to UTC on unknown names."""
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def format_datetime(dt: Optional[datetime] = None, tz_name: str = "UTC") -> str:
    """
    Format datetime in the display timezone: 2025-11-11 11:30:00 UTC

    Args:
        dt: datetime object (if None, uses current time). Naive values are UTC.
        tz_name: display timezone (e.g. "Asia/Shanghai")
    """
    if dt is None:
        dt = utc_now()
    local = normalize_ts(dt).astimezone(get_timezone(tz_name))
    return local.strftime("%Y-%m-%d %H:%M:%S %Z")


def format_duration(seconds: int) -> str:
    """
    Human readable lookback window.

    Examples:
        3600  -> "1 hour"
        5400  -> "90 minutes"
        86400 -> "1 day"
    """
    seconds = int(seconds)
    for unit_seconds, name in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            count = seconds // unit_seconds
            return f"{count} {name}{'s' if count != 1 else ''}"
    if seconds >= 60:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def format_priority(priority: str) -> str:
    """Priority badge for message headers."""
    badges = {
        "high": "🔴 HIGH",
        "medium": "🟠 MEDIUM",
        "low": "🟢 LOW",
    }
    return badges.get(priority, priority.upper() if priority else "MEDIUM")
