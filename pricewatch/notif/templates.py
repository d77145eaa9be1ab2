# -*- coding: utf-8 -*-
"""
Message templates for price alerts.
Plain text (no parse mode) so symbols and descriptions need no escaping.
"""
from typing import Optional

from pricewatch.notif.formatter import (
    format_datetime,
    format_duration,
    format_percentage,
    format_price,
    format_priority,
)
from pricewatch.rules.rule_defs import TrendPayload, TriggerRecord


def _condition_text(record: TriggerRecord) -> str:
    value = record.trigger_value
    if isinstance(value, TrendPayload):
        window = format_duration(value.lookback_seconds)
        if record.condition == "increase":
            return f"Rose by at least {value.magnitude:g}% within {window}"
        return f"Fell by at least {value.magnitude:g}% within {window}"

    if record.condition == "above":
        return f"Price at or above {format_price(value)}"
    return f"Price at or below {format_price(value)}"


def template_threshold_alert(record: TriggerRecord, subject_description: Optional[str] = None,
                             tz_name: str = "UTC") -> str:
    """
    Template for threshold (fixed price) alerts.

    Example:
        🚨 PRICE ALERT - BTC (bitcoin)
        Priority: 🔴 HIGH
        Current price: $50,120.00
        Condition: Price at or above $50,000.00
        ...
    """
    lines = [
        f"🚨 PRICE ALERT - {record.subject_symbol} ({record.subject_id})",
        f"Priority: {format_priority(record.priority)}",
    ]
    if subject_description:
        lines.append(f"Asset: {subject_description}")
    lines += [
        f"Current price: {format_price(record.current_price)}",
        "Type: Fixed price",
        f"Condition: {_condition_text(record)}",
        f"Triggered at: {format_datetime(record.fired_at, tz_name)}",
    ]
    if record.description:
        lines.append(f"Note: {record.description}")
    return "\n".join(lines)


def template_trend_alert(record: TriggerRecord, subject_description: Optional[str] = None,
                         tz_name: str = "UTC") -> str:
    """Template for trend (percentage change) alerts."""
    payload = record.trigger_value
    arrow = "📈" if record.condition == "increase" else "📉"

    lines = [
        f"{arrow} TREND ALERT - {record.subject_symbol} ({record.subject_id})",
        f"Priority: {format_priority(record.priority)}",
    ]
    if subject_description:
        lines.append(f"Asset: {subject_description}")
    lines += [
        f"Current price: {format_price(record.current_price)}",
        "Type: Percentage change",
        f"Condition: {_condition_text(record)}",
        f"Change: {format_percentage(payload.actual_change)} "
        f"(from {format_price(payload.reference_price)} at {format_datetime(payload.reference_time, tz_name)})",
        f"Triggered at: {format_datetime(record.fired_at, tz_name)}",
    ]
    if record.description:
        lines.append(f"Note: {record.description}")
    return "\n".join(lines)


def render_trigger(record: TriggerRecord, subject_description: Optional[str] = None,
                   tz_name: str = "UTC") -> str:
    """Pick the template for a trigger record."""
    if isinstance(record.trigger_value, TrendPayload):
        return template_trend_alert(record, subject_description, tz_name)
    return template_threshold_alert(record, subject_description, tz_name)
