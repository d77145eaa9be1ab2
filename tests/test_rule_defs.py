"""Tests for rule parsing and trigger records."""
import json
from datetime import datetime, timezone

import pytest

from pricewatch.errors import MalformedRuleError
from pricewatch.rules.rule_defs import (
    RuleBase,
    StoredRule,
    ThresholdRule,
    TrendPayload,
    TrendRule,
    TriggerRecord,
    parse_rule,
    parse_trigger_value,
    rule_condition_payload,
)

FIRED = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestParseRule:

    def test_threshold_rule(self):
        rule = parse_rule("r1", "threshold", '{"type": "threshold", "condition": "above", "value": 100}',
                          subject_id="token-A", priority="high")
        assert isinstance(rule, ThresholdRule)
        assert rule.target == 100.0
        assert rule.condition == "above"
        assert rule.subject_id == "token-A"
        assert rule.priority == "high"
        assert rule.cooldown_seconds == 86400
        assert not rule.is_global

    def test_trend_rule(self):
        rule = parse_rule("r2", "trend", {"condition": "decrease", "value": "5", "timeframe": 3600})
        assert isinstance(rule, TrendRule)
        assert rule.magnitude == 5.0
        assert rule.lookback_seconds == 3600
        assert rule.is_global

    def test_round_trip_payload(self):
        rule = parse_rule("r2", "trend", {"condition": "increase", "value": 2.5, "timeframe": 600})
        again = parse_rule("r2", "trend", rule_condition_payload(rule))
        assert again == rule

    @pytest.mark.parametrize("rule_type,payload,reason", [
        ("threshold", "{not json", "invalid condition JSON"),
        ("threshold", "[1, 2]", "must be an object"),
        ("threshold", '{"type": "trend", "condition": "above", "value": 1}', "type mismatch"),
        ("threshold", '{"condition": "sideways", "value": 1}', "invalid threshold condition"),
        ("threshold", '{"condition": "above", "value": 0}', "must be positive"),
        ("threshold", '{"condition": "above", "value": -3}', "must be positive"),
        ("threshold", '{"condition": "above", "value": "abc"}', "must be a number"),
        ("threshold", '{"condition": "above", "value": true}', "must be a number"),
        ("threshold", '{"condition": "above"}', "must be a number"),
        ("trend", '{"condition": "up", "value": 5, "timeframe": 60}', "invalid trend condition"),
        ("trend", '{"condition": "increase", "value": 5}', "timeframe"),
        ("trend", '{"condition": "increase", "value": 5, "timeframe": 0}', "timeframe"),
        ("volume", '{"condition": "above", "value": 5}', "unknown rule type"),
    ])
    def test_malformed(self, rule_type, payload, reason):
        with pytest.raises(MalformedRuleError, match=reason) as exc_info:
            parse_rule("bad", rule_type, payload)
        assert exc_info.value.rule_id == "bad"

    def test_invalid_priority_and_cooldown(self):
        payload = {"condition": "above", "value": 1}
        with pytest.raises(MalformedRuleError, match="priority"):
            parse_rule("r", "threshold", payload, priority="urgent")
        with pytest.raises(MalformedRuleError, match="cooldown"):
            parse_rule("r", "threshold", payload, cooldown_seconds=-1)
        with pytest.raises(MalformedRuleError, match="cooldown"):
            parse_rule("r", "threshold", payload, cooldown_seconds="daily")

    def test_stored_rule_to_rule(self):
        stored = StoredRule(id="r1", type="threshold", condition_json='{"condition": "below", "value": 95}',
                            cooldown=60, one_time=True)
        rule = stored.to_rule()
        assert rule.target == 95.0
        assert rule.cooldown_seconds == 60
        assert rule.one_time is True


class TestDedupKey:

    def test_same_condition_same_key(self):
        a = ThresholdRule(id="a", condition="above", target=100)
        b = ThresholdRule(id="b", condition="above", target=100.0, subject_id="token-A")
        assert a.dedup_key("token-A") == b.dedup_key("token-A")

    def test_different_target_or_subject(self):
        a = ThresholdRule(id="a", condition="above", target=100)
        assert a.dedup_key("x") != a.dedup_key("y")
        assert a.dedup_key("x") != ThresholdRule(id="b", condition="above", target=101).dedup_key("x")

    def test_trend_key_includes_lookback(self):
        a = TrendRule(id="a", condition="decrease", magnitude=5, lookback_seconds=3600)
        b = TrendRule(id="b", condition="decrease", magnitude=5, lookback_seconds=7200)
        assert a.dedup_key("x") != b.dedup_key("x")

    def test_key_built_on_base_class(self):
        base = RuleBase(id="base", condition="above")
        threshold = ThresholdRule(id="t", condition="above", target=5)
        trend = TrendRule(id="r", condition="above", magnitude=5, lookback_seconds=60)

        assert base.dedup_key("x") == ("x", "", "above")
        assert threshold.dedup_key("x") == ("x", "threshold", "above", 5.0)
        assert trend.dedup_key("x") == ("x", "trend", "above", 5.0, 60)
        assert len({base.dedup_key("x"), threshold.dedup_key("x"), trend.dedup_key("x")}) == 3


class TestTriggerRecord:

    def test_threshold_value_serialization(self):
        record = TriggerRecord(rule_id="r1", subject_id="s", subject_symbol="S", rule_type="threshold",
                               condition="above", trigger_value=100.0, current_price=101.0, fired_at=FIRED)
        assert parse_trigger_value("threshold", record.trigger_value_json()) == 100.0

    def test_trend_payload_serialization(self):
        payload = TrendPayload(magnitude=5, lookback_seconds=3600, actual_change=-6.123456,
                               reference_price=100.0, reference_time=FIRED)
        record = TriggerRecord(rule_id="r2", subject_id="s", subject_symbol="S", rule_type="trend",
                               condition="decrease", trigger_value=payload, current_price=93.88, fired_at=FIRED)
        raw = json.loads(record.trigger_value_json())
        assert raw == {
            "value": 5,
            "timeframe": 3600,
            "actualChange": -6.1235,
            "referencePrice": 100.0,
            "referenceTime": "2025-01-01T12:00:00Z",
        }
        decoded = parse_trigger_value("trend", record.trigger_value_json())
        assert decoded.reference_time == FIRED
        assert decoded.actual_change == pytest.approx(-6.1235)

    def test_mark_notified_returns_copy(self):
        record = TriggerRecord(rule_id="r1", subject_id="s", subject_symbol="S", rule_type="threshold",
                               condition="above", trigger_value=1.0, current_price=2.0, fired_at=FIRED)
        notified = record.mark_notified(FIRED)
        assert record.notification_sent is False
        assert notified.notification_sent is True
        assert notified.to_dict()["notificationTime"] == "2025-01-01T12:00:00Z"
        assert record.with_id(7).id == 7
