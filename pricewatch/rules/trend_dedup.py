# -*- coding: utf-8 -*-
"""
Trend continuation filter.

Best-effort noise reduction, not a correctness guarantee: a trend rule that
already fired for a subject should not fire again every cycle while the same
move is still in progress, even when its cooldown is shorter than the move.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from loguru import logger

from pricewatch.rules.rule_defs import TrendPayload, TrendRule, TriggerRecord, TriggerSink
from pricewatch.utils.timeutils import Clock, normalize_ts, shift, utc_now


@dataclass(frozen=True)
class PriorTrend:
    """A previously reported trend, reconstructed from its trigger record."""
    record_id: Optional[int]
    condition: str
    reference_price: float
    fired_price: float
    fired_at: datetime
    notified: bool

    @property
    def percent_change(self) -> float:
        return (self.fired_price - self.reference_price) / self.reference_price * 100


def priors_from_records(records: Iterable[TriggerRecord]) -> List[PriorTrend]:
    """Keep only trend records with a usable reference price."""
    priors = []
    for record in records:
        payload = record.trigger_value
        if not isinstance(payload, TrendPayload) or payload.reference_price <= 0:
            continue
        priors.append(PriorTrend(
            record_id=record.id,
            condition=record.condition,
            reference_price=payload.reference_price,
            fired_price=record.current_price,
            fired_at=record.fired_at,
            notified=record.notification_sent,
        ))
    return priors


def is_trend_continuation(
    current_change: float,
    priors: Sequence[PriorTrend],
    tolerance_pct: float = 3.0,
) -> Optional[PriorTrend]:
    """
    Return the prior trend the current move continues, or None.

    A prior matches when it moved in the same direction and its magnitude
    differs from the current one by less than tolerance_pct points.
    """
    for prior in priors:
        prior_change = prior.percent_change
        same_direction = (prior_change > 0 and current_change > 0) or (prior_change < 0 and current_change < 0)
        if not same_direction:
            continue
        if abs(abs(prior_change) - abs(current_change)) < tolerance_pct:
            return prior
    return None


class TrendDedupFilter:
    """Loads a bounded window of prior firings and applies is_trend_continuation."""

    def __init__(
        self,
        sink: TriggerSink,
        window_seconds: int = 86400,
        tolerance_pct: float = 3.0,
        include_unnotified: bool = True,
        clock: Clock = utc_now,
    ):
        self.sink = sink
        self.window_seconds = window_seconds
        self.tolerance_pct = tolerance_pct
        self.include_unnotified = include_unnotified
        self.clock = clock

    def should_suppress(
        self,
        rule: TrendRule,
        subject_id: str,
        current_change: float,
        now: Optional[datetime] = None,
    ) -> bool:
        if self.window_seconds <= 0:
            return False

        now = normalize_ts(now) if now is not None else self.clock()
        since = shift(now, -self.window_seconds)
        records = self.sink.recent_by_rule_subject(rule.id, subject_id, [rule.condition], since)

        priors = priors_from_records(records)
        if not self.include_unnotified:
            priors = [p for p in priors if p.notified]

        match = is_trend_continuation(current_change, priors, self.tolerance_pct)
        if match is None:
            return False

        logger.info(
            f"Trend continuation suppressed: rule={rule.id} subject={subject_id} "
            f"current={current_change:.2f}% prior={match.percent_change:.2f}% "
            f"(record {match.record_id} at {match.fired_at.isoformat()})"
        )
        return True
