"""Tests for alert formatting utilities and message templates."""
from datetime import datetime, timedelta, timezone

import pytest

from pricewatch.notif.formatter import (
    format_datetime,
    format_duration,
    format_percentage,
    format_price,
    format_priority,
    get_timezone,
)
from pricewatch.notif.templates import render_trigger, template_threshold_alert, template_trend_alert
from pricewatch.rules.rule_defs import TrendPayload, TriggerRecord

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestPriceFormatting:
    """Precision follows the magnitude of the price."""

    @pytest.mark.parametrize("price,expected", [
        (67420.5, "$67,420.50"),
        (1234567.891, "$1,234,567.89"),
        (152.3, "$152.300"),
        (1.23456, "$1.2346"),
        (0.05, "$0.05000"),
        (0.0012, "$0.001200"),
        (0.000012, "$0.00001200"),
        (0.0, "$0.00000000"),
    ])
    def test_precision_by_magnitude(self, price, expected):
        assert format_price(price) == expected

    def test_none_is_unknown(self):
        assert format_price(None) == "unknown"


class TestPercentageFormatting:

    def test_signed(self):
        assert format_percentage(5.234) == "+5.23%"
        assert format_percentage(-6.0) == "-6.00%"

    def test_unsigned(self):
        assert format_percentage(5.0, signed=False) == "5.00%"


class TestDatetimeFormatting:

    def test_utc(self):
        assert format_datetime(T0) == "2025-01-01 12:00:00 UTC"

    def test_display_timezone(self):
        assert format_datetime(T0, "Asia/Shanghai") == "2025-01-01 20:00:00 CST"

    def test_naive_assumed_utc(self):
        assert format_datetime(datetime(2025, 1, 1, 12, 0, 0)) == "2025-01-01 12:00:00 UTC"

    def test_unknown_timezone_falls_back_to_utc(self):
        assert get_timezone("Mars/Olympus") is get_timezone("UTC")


class TestDurationAndPriority:

    @pytest.mark.parametrize("seconds,expected", [
        (3600, "1 hour"),
        (7200, "2 hours"),
        (5400, "90 minutes"),
        (86400, "1 day"),
        (90, "1 minute"),
        (45, "45 seconds"),
    ])
    def test_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_priority_badges(self):
        assert format_priority("high") == "🔴 HIGH"
        assert format_priority("low") == "🟢 LOW"
        assert format_priority("urgent") == "URGENT"


def _threshold(**overrides):
    values = dict(rule_id="tka-above-100", subject_id="token-A", subject_symbol="TKA", rule_type="threshold",
                  condition="above", trigger_value=100.0, current_price=101.0, fired_at=T0, priority="high")
    values.update(overrides)
    return TriggerRecord(**values)


def _trend(condition="decrease", change=-6.0):
    payload = TrendPayload(magnitude=5, lookback_seconds=3600, actual_change=change, reference_price=100.0,
                           reference_time=T0 - timedelta(hours=1))
    return TriggerRecord(rule_id="tkb-drop", subject_id="token-B", subject_symbol="TKB", rule_type="trend",
                         condition=condition, trigger_value=payload, current_price=94.0, fired_at=T0)


class TestTemplates:

    def test_threshold_alert(self):
        text = template_threshold_alert(_threshold(description="breakout"), subject_description="Token A")

        assert text.splitlines()[0] == "🚨 PRICE ALERT - TKA (token-A)"
        assert "Priority: 🔴 HIGH" in text
        assert "Asset: Token A" in text
        assert "Current price: $101.000" in text
        assert "Condition: Price at or above $100.000" in text
        assert "Triggered at: 2025-01-01 12:00:00 UTC" in text
        assert "Note: breakout" in text

    def test_threshold_below_without_extras(self):
        text = template_threshold_alert(_threshold(condition="below", current_price=99.0))
        assert "Price at or below" in text
        assert "Asset:" not in text
        assert "Note:" not in text

    def test_trend_alert(self):
        text = template_trend_alert(_trend(), tz_name="Asia/Shanghai")

        assert text.splitlines()[0] == "📉 TREND ALERT - TKB (token-B)"
        assert "Fell by at least 5% within 1 hour" in text
        assert "Change: -6.00% (from $100.000 at 2025-01-01 19:00:00 CST)" in text
        assert "Triggered at: 2025-01-01 20:00:00 CST" in text

    def test_trend_increase(self):
        text = template_trend_alert(_trend(condition="increase", change=7.5))
        assert text.startswith("📈 TREND ALERT")
        assert "Rose by at least 5%" in text

    def test_render_picks_template(self):
        assert render_trigger(_threshold()).startswith("🚨 PRICE ALERT")
        assert "TREND ALERT" in render_trigger(_trend())
