"""
Rule definitions for the alert engine.

Two rule variants share the same common attributes:
- ThresholdRule: fires when price is above/below a target value
- TrendRule: fires when price changed by >= magnitude % over a lookback window

Also holds the immutable TriggerRecord and the collaborator protocols the
evaluator depends on (price store, rule store, trigger sink).
"""
import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from pricewatch.errors import MalformedRuleError
from pricewatch.utils.timeutils import isoformat, normalize_ts

RULE_TYPE_THRESHOLD = "threshold"
RULE_TYPE_TREND = "trend"

THRESHOLD_CONDITIONS = ("above", "below")
TREND_CONDITIONS = ("increase", "decrease")

VALID_PRIORITIES = ("low", "medium", "high")

DEFAULT_COOLDOWN_SECONDS = 86400


@dataclass(frozen=True)
class Subject:
    """Monitored asset (read-only for the engine)."""
    id: str
    symbol: str
    is_active: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class PricePoint:
    """One price sample as returned by the price store."""
    value: float
    timestamp: datetime
    source: str = "unknown"


@dataclass(frozen=True, kw_only=True)
class RuleBase:
    id: str
    condition: str
    subject_id: Optional[str] = None      # None = global rule
    enabled: bool = True
    one_time: bool = False
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    priority: str = "medium"
    description: Optional[str] = None
    last_triggered: Optional[datetime] = None

    rule_type: ClassVar[str] = ""

    @property
    def is_global(self) -> bool:
        return self.subject_id is None

    @property
    def trigger_key(self) -> Tuple:
        """Variant-specific part of the dedup key (the parameters that make it fire)."""
        return ()

    def dedup_key(self, subject_id: str) -> Tuple:
        """Identity of the logical alert this rule expresses for a subject."""
        return (subject_id, self.rule_type, self.condition) + tuple(self.trigger_key)


@dataclass(frozen=True, kw_only=True)
class ThresholdRule(RuleBase):
    target: float

    rule_type: ClassVar[str] = RULE_TYPE_THRESHOLD

    @property
    def trigger_key(self) -> Tuple:
        return (float(self.target),)


@dataclass(frozen=True, kw_only=True)
class TrendRule(RuleBase):
    magnitude: float                       # percent, e.g. 5.0 for 5%
    lookback_seconds: int

    rule_type: ClassVar[str] = RULE_TYPE_TREND

    @property
    def trigger_key(self) -> Tuple:
        return (float(self.magnitude), int(self.lookback_seconds))


Rule = Union[ThresholdRule, TrendRule]


def _positive_number(rule_id: str, value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise MalformedRuleError(rule_id, f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (ValueError, TypeError):
        raise MalformedRuleError(rule_id, f"{name} must be a number, got {value!r}")
    if number != number or number <= 0:  # NaN or non-positive
        raise MalformedRuleError(rule_id, f"{name} must be positive, got {value!r}")
    return number


def parse_rule(
    rule_id: str,
    rule_type: str,
    condition_json: Union[str, Dict[str, Any]],
    *,
    subject_id: Optional[str] = None,
    enabled: bool = True,
    one_time: bool = False,
    cooldown_seconds: Optional[int] = None,
    priority: Optional[str] = None,
    description: Optional[str] = None,
    last_triggered: Optional[datetime] = None,
) -> Rule:
    """
    Build a typed rule from its stored representation.

    condition_json: {"type": "threshold", "condition": "above", "value": 100}
                    {"type": "trend", "condition": "decrease", "value": 5, "timeframe": 3600}

    Raises:
        MalformedRuleError: unparseable payload or invalid values
    """
    if isinstance(condition_json, str):
        try:
            payload = json.loads(condition_json)
        except (ValueError, TypeError) as e:
            raise MalformedRuleError(rule_id, f"invalid condition JSON: {e}")
    else:
        payload = condition_json

    if not isinstance(payload, dict):
        raise MalformedRuleError(rule_id, "condition payload must be an object")

    payload_type = payload.get("type", rule_type)
    if payload_type != rule_type:
        raise MalformedRuleError(rule_id, f"type mismatch: column={rule_type!r} payload={payload_type!r}")

    condition = payload.get("condition")
    if cooldown_seconds is None:
        cooldown_seconds = DEFAULT_COOLDOWN_SECONDS
    try:
        cooldown_seconds = int(cooldown_seconds)
    except (ValueError, TypeError):
        raise MalformedRuleError(rule_id, f"invalid cooldown {cooldown_seconds!r}")
    if cooldown_seconds < 0:
        raise MalformedRuleError(rule_id, f"cooldown must be >= 0, got {cooldown_seconds}")

    priority = priority or "medium"
    if priority not in VALID_PRIORITIES:
        raise MalformedRuleError(rule_id, f"invalid priority {priority!r}")

    common = dict(
        id=rule_id,
        condition=condition,
        subject_id=subject_id,
        enabled=bool(enabled),
        one_time=bool(one_time),
        cooldown_seconds=cooldown_seconds,
        priority=priority,
        description=description,
        last_triggered=normalize_ts(last_triggered) if last_triggered is not None else None,
    )

    if rule_type == RULE_TYPE_THRESHOLD:
        if condition not in THRESHOLD_CONDITIONS:
            raise MalformedRuleError(rule_id, f"invalid threshold condition {condition!r}")
        target = _positive_number(rule_id, payload.get("value"), "value")
        return ThresholdRule(target=target, **common)

    if rule_type == RULE_TYPE_TREND:
        if condition not in TREND_CONDITIONS:
            raise MalformedRuleError(rule_id, f"invalid trend condition {condition!r}")
        magnitude = _positive_number(rule_id, payload.get("value"), "value")
        lookback = _positive_number(rule_id, payload.get("timeframe"), "timeframe")
        return TrendRule(magnitude=magnitude, lookback_seconds=int(lookback), **common)

    raise MalformedRuleError(rule_id, f"unknown rule type {rule_type!r}")


@dataclass(frozen=True)
class StoredRule:
    """
    Rule exactly as the rule store holds it (condition payload still raw).
    Parsing is deferred to the evaluator so one malformed row only skips itself.
    """
    id: str
    type: str
    condition_json: str
    subject_id: Optional[str] = None
    enabled: bool = True
    one_time: bool = False
    cooldown: Optional[int] = DEFAULT_COOLDOWN_SECONDS
    priority: Optional[str] = "medium"
    description: Optional[str] = None
    last_triggered: Optional[datetime] = None

    def to_rule(self) -> Rule:
        return parse_rule(
            self.id,
            self.type,
            self.condition_json,
            subject_id=self.subject_id,
            enabled=self.enabled,
            one_time=self.one_time,
            cooldown_seconds=self.cooldown,
            priority=self.priority,
            description=self.description,
            last_triggered=self.last_triggered,
        )


def rule_condition_payload(rule: Rule) -> Dict[str, Any]:
    """Inverse of parse_rule for the condition part (used when storing rules)."""
    if isinstance(rule, ThresholdRule):
        return {"type": rule.rule_type, "condition": rule.condition, "value": rule.target}
    return {
        "type": rule.rule_type,
        "condition": rule.condition,
        "value": rule.magnitude,
        "timeframe": rule.lookback_seconds,
    }


@dataclass(frozen=True)
class TrendPayload:
    """Trigger payload of a trend firing."""
    magnitude: float
    lookback_seconds: int
    actual_change: float                   # observed % change
    reference_price: float
    reference_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.magnitude,
            "timeframe": self.lookback_seconds,
            "actualChange": round(self.actual_change, 4),
            "referencePrice": self.reference_price,
            "referenceTime": isoformat(self.reference_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrendPayload":
        return cls(
            magnitude=float(data["value"]),
            lookback_seconds=int(data["timeframe"]),
            actual_change=float(data["actualChange"]),
            reference_price=float(data["referencePrice"]),
            reference_time=normalize_ts(data["referenceTime"]),
        )


@dataclass(frozen=True)
class TriggerRecord:
    """Immutable record of an accepted rule firing."""
    rule_id: str
    subject_id: str
    subject_symbol: str
    rule_type: str
    condition: str
    trigger_value: Union[float, TrendPayload]
    current_price: float
    fired_at: datetime
    priority: str = "medium"
    description: Optional[str] = None
    notification_sent: bool = False
    notification_time: Optional[datetime] = None
    id: Optional[int] = None

    def with_id(self, record_id: int) -> "TriggerRecord":
        return replace(self, id=record_id)

    def mark_notified(self, at: datetime) -> "TriggerRecord":
        return replace(self, notification_sent=True, notification_time=normalize_ts(at))

    def trigger_value_json(self) -> str:
        if isinstance(self.trigger_value, TrendPayload):
            return json.dumps(self.trigger_value.to_dict())
        return json.dumps(self.trigger_value)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (fallback files, logs)."""
        trigger_value = self.trigger_value
        if isinstance(trigger_value, TrendPayload):
            trigger_value = trigger_value.to_dict()
        return {
            "id": self.id,
            "ruleId": self.rule_id,
            "subjectId": self.subject_id,
            "subjectSymbol": self.subject_symbol,
            "ruleType": self.rule_type,
            "condition": self.condition,
            "triggerValue": trigger_value,
            "currentPrice": self.current_price,
            "priority": self.priority,
            "description": self.description,
            "firedAt": isoformat(self.fired_at),
            "notificationSent": self.notification_sent,
            "notificationTime": isoformat(self.notification_time) if self.notification_time else None,
        }


def parse_trigger_value(rule_type: str, raw: str) -> Union[float, TrendPayload]:
    """Decode the stored trigger_value column."""
    data = json.loads(raw)
    if rule_type == RULE_TYPE_TREND:
        return TrendPayload.from_dict(data)
    return float(data)


class PriceStore(Protocol):
    def latest(self, subject_id: str) -> Optional[PricePoint]: ...

    def at(self, subject_id: str, timestamp: datetime) -> Optional[PricePoint]: ...


class RuleStore(Protocol):
    def list_active_subjects(self) -> List[Subject]: ...

    def get_subject(self, subject_id: str) -> Optional[Subject]: ...

    def global_rules(self, enabled: bool = True) -> List[StoredRule]: ...

    def subject_rules(self, subject_id: str, enabled: bool = True) -> List[StoredRule]: ...

    def set_enabled(self, rule_id: str, enabled: bool) -> None: ...

    def set_last_fired(self, rule_id: str, timestamp: datetime) -> None: ...


class TriggerSink(Protocol):
    def append(self, record: TriggerRecord) -> int: ...

    def recent_by_rule_subject(
        self, rule_id: str, subject_id: str, conditions: Sequence[str], since: datetime
    ) -> List[TriggerRecord]: ...

    def mark_notified(self, record_id: int, at: datetime) -> None: ...
