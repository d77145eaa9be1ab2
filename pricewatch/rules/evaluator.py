"""
Alert Evaluator - runs one evaluation pass over all active subjects.
This is the core of the alerting system.

Rules are evaluated independently and failures are isolated: one broken rule
or one subject without prices never blocks alerting for the rest.
Only StoreUnavailableError aborts a cycle.
"""
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor
from datetime import datetime
from typing import Hashable, List, Optional, Sequence, Set, Union

from loguru import logger

from pricewatch.errors import (
    DataUnavailableError,
    MalformedRuleError,
    StoreUnavailableError,
    SubjectNotFoundError,
)
from pricewatch.rules.cooldown import CooldownTracker
from pricewatch.rules.rule_defs import (
    PricePoint,
    PriceStore,
    Rule,
    RuleStore,
    StoredRule,
    Subject,
    ThresholdRule,
    TrendPayload,
    TrendRule,
    TriggerRecord,
    TriggerSink,
)
from pricewatch.rules.trend_dedup import TrendDedupFilter
from pricewatch.utils.timeutils import Clock, normalize_ts, shift, utc_now


def threshold_fires(condition: str, current: float, target: float) -> bool:
    """above: current >= target, below: current <= target (inclusive both ways)."""
    if condition == "above":
        return current >= target
    if condition == "below":
        return current <= target
    raise ValueError(f"Unknown threshold condition: {condition}")


def percent_change(current: float, reference: float) -> float:
    """(current - reference) / reference * 100"""
    if reference <= 0:
        raise ValueError(f"Reference price must be positive, got {reference}")
    return (current - reference) / reference * 100


def trend_fires(condition: str, change_pct: float, magnitude: float) -> bool:
    """increase: change >= magnitude, decrease: change <= -magnitude."""
    if condition == "increase":
        return change_pct >= magnitude
    if condition == "decrease":
        return change_pct <= -magnitude
    raise ValueError(f"Unknown trend condition: {condition}")


class AlertEvaluator:
    """
    Evaluates threshold and trend rules against current prices.

    Collaborators are injected; nothing here is process-global, so several
    evaluators can run side by side (tests do).
    """

    def __init__(
        self,
        price_store: PriceStore,
        rule_store: RuleStore,
        trigger_sink: TriggerSink,
        cooldown: CooldownTracker,
        trend_filter: Optional[TrendDedupFilter] = None,
        clock: Clock = utc_now,
        max_workers: int = 4,
        within_cycle_dedup: bool = True,
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.price_store = price_store
        self.rule_store = rule_store
        self.trigger_sink = trigger_sink
        self.cooldown = cooldown
        self.trend_filter = trend_filter
        self.clock = clock
        self.max_workers = max(1, int(max_workers))
        self.within_cycle_dedup = within_cycle_dedup
        self.shutdown_event = shutdown_event or threading.Event()

        # One-shot rule ids already fired in the current pass. A global one-shot
        # rule is loaded once per cycle, so it must not fire for a second subject.
        self._spent_one_shots: Set[str] = set()
        self._one_shot_lock = threading.Lock()

    # ---------- public API ----------

    def evaluate_cycle(self) -> List[TriggerRecord]:
        """
        Run one complete evaluation pass.

        Returns:
            Accepted trigger records (already persisted), in subject order.

        Raises:
            StoreUnavailableError: price/rule store unreachable, cycle aborted.
                Its `accepted` holds every record persisted before the abort.
        """
        subjects = self.rule_store.list_active_subjects()
        if not subjects:
            logger.warning("No active subjects found, skipping alert evaluation")
            return []

        global_rules = self.rule_store.global_rules(enabled=True)
        now = self.clock()
        with self._one_shot_lock:
            self._spent_one_shots = set()

        logger.info(f"Evaluating alerts: {len(subjects)} subjects, {len(global_rules)} global rules")

        per_subject: List[List[TriggerRecord]] = []
        error: Optional[StoreUnavailableError] = None

        if self.max_workers == 1 or len(subjects) == 1:
            for subject in subjects:
                try:
                    per_subject.append(self._run_subject(subject, global_rules, now))
                except StoreUnavailableError as e:
                    per_subject.append(e.accepted)
                    error = e
                    break
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="evaluator") as pool:
                futures = [pool.submit(self._run_subject, subject, global_rules, now) for subject in subjects]
                # Subjects already running finish; their records are kept
                for future in futures:
                    try:
                        per_subject.append(future.result())
                    except CancelledError:
                        continue
                    except StoreUnavailableError as e:
                        per_subject.append(e.accepted)
                        if error is None:
                            error = e
                            for pending in futures:
                                pending.cancel()

        triggered = [record for records in per_subject for record in records]
        if error is not None:
            error.accepted = triggered
            logger.error(f"Alert evaluation aborted: {error} ({len(triggered)} records already accepted)")
            raise error

        logger.info(f"Alert evaluation complete: {len(triggered)} triggered")
        return triggered

    def evaluate_subject(self, subject_id: str) -> List[TriggerRecord]:
        """
        Evaluate all applicable rules for a single subject (on-demand check).

        Raises:
            SubjectNotFoundError: unknown subject id
            StoreUnavailableError: store unreachable
        """
        subject = self.rule_store.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFoundError(f"Subject '{subject_id}' does not exist")

        if not subject.is_active:
            logger.warning(f"Subject {subject.symbol} is inactive, skipping alert evaluation")
            return []

        global_rules = self.rule_store.global_rules(enabled=True)
        with self._one_shot_lock:
            self._spent_one_shots = set()
        triggered = self._evaluate_subject(subject, global_rules, self.clock())
        logger.info(f"Alert evaluation for {subject.symbol} complete: {len(triggered)} triggered")
        return triggered

    # ---------- per subject ----------

    def _run_subject(self, subject: Subject, global_rules: Sequence[StoredRule], now: datetime) -> List[TriggerRecord]:
        """Worker entry: honours shutdown before starting, isolates subject failures."""
        if self.shutdown_event.is_set():
            logger.info(f"Shutdown requested, not starting evaluation of {subject.symbol}")
            return []

        try:
            return self._evaluate_subject(subject, global_rules, now)
        except StoreUnavailableError:
            raise
        except DataUnavailableError as e:
            logger.warning(f"Skipping {subject.symbol}: {e}")
        except Exception as e:
            logger.exception(f"Failed to evaluate alerts for {subject.symbol} ({subject.id}): {e}")
        return []

    def _evaluate_subject(
        self,
        subject: Subject,
        global_rules: Sequence[Union[StoredRule, Rule]],
        now: datetime,
    ) -> List[TriggerRecord]:
        latest = self.price_store.latest(subject.id)
        if latest is None or latest.value is None:
            logger.warning(f"Skipping alert check for {subject.symbol}: no price data")
            return []

        subject_rules = self.rule_store.subject_rules(subject.id, enabled=True)

        # Subject-scoped rules first: on identical conditions the specific rule wins
        rules = list(subject_rules) + list(global_rules)
        seen: Set[Hashable] = set()
        triggered: List[TriggerRecord] = []

        for stored in rules:
            rule_id = getattr(stored, "id", "?")
            try:
                record = self._evaluate_rule(subject, stored, latest, now, seen)
            except StoreUnavailableError as e:
                e.accepted = list(triggered)
                raise
            except MalformedRuleError as e:
                logger.error(f"Skipping rule {rule_id} for {subject.symbol}: {e}")
                continue
            except DataUnavailableError as e:
                logger.warning(f"Cannot evaluate rule {rule_id} for {subject.symbol}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Failed to evaluate rule {rule_id} for {subject.symbol}: {e}")
                continue

            if record is not None:
                triggered.append(record)

        return triggered

    # ---------- per rule ----------

    def _evaluate_rule(
        self,
        subject: Subject,
        stored: Union[StoredRule, Rule],
        latest: PricePoint,
        now: datetime,
        seen: Set[Hashable],
    ) -> Optional[TriggerRecord]:
        rule = stored.to_rule() if isinstance(stored, StoredRule) else stored
        current = float(latest.value)

        with self.cooldown.lock(rule.id, subject.id):
            if not self.cooldown.is_eligible(rule.id, subject.id, rule.cooldown_seconds, now):
                return None

            if isinstance(rule, ThresholdRule):
                if not threshold_fires(rule.condition, current, rule.target):
                    return None
                trigger_value = rule.target
                change = None
            elif isinstance(rule, TrendRule):
                change, reference = self._trend_change(subject, rule, current, now)
                if not trend_fires(rule.condition, change, rule.magnitude):
                    logger.debug(
                        f"{subject.symbol} {rule.condition} {rule.magnitude}%: "
                        f"change {change:.2f}% over {rule.lookback_seconds}s, not triggered"
                    )
                    return None
                trigger_value = TrendPayload(
                    magnitude=rule.magnitude,
                    lookback_seconds=rule.lookback_seconds,
                    actual_change=change,
                    reference_price=reference.value,
                    reference_time=reference.timestamp,
                )
            else:
                raise MalformedRuleError(getattr(rule, "id", "?"), f"unsupported rule object {type(rule).__name__}")

            key = rule.dedup_key(subject.id)
            if self.within_cycle_dedup and key in seen:
                logger.info(
                    f"Duplicate condition in cycle, skipping rule {rule.id} for {subject.symbol}: "
                    f"{rule.rule_type} {rule.condition}"
                )
                return None

            if change is not None and self.trend_filter is not None:
                if self.trend_filter.should_suppress(rule, subject.id, change, now):
                    return None

            if rule.one_time:
                with self._one_shot_lock:
                    if rule.id in self._spent_one_shots:
                        logger.debug(f"One-shot rule {rule.id} already fired this cycle")
                        return None
                    self._spent_one_shots.add(rule.id)

            record = TriggerRecord(
                rule_id=rule.id,
                subject_id=subject.id,
                subject_symbol=subject.symbol,
                rule_type=rule.rule_type,
                condition=rule.condition,
                trigger_value=trigger_value,
                current_price=current,
                priority=rule.priority,
                description=rule.description,
                fired_at=now,
            )
            record = record.with_id(self.trigger_sink.append(record))
            seen.add(key)
            # The record is persisted; from here on a store failure must not drop it
            try:
                self.cooldown.record_fired(rule.id, subject.id, now)
            except StoreUnavailableError as e:
                logger.error(f"Cooldown not persisted for rule {rule.id} on {subject.symbol}: {e}")

        try:
            if rule.one_time:
                self.rule_store.set_enabled(rule.id, False)
                logger.info(f"One-shot rule disabled: {rule.id}")
            self.rule_store.set_last_fired(rule.id, now)
        except StoreUnavailableError as e:
            logger.error(f"Rule state not persisted for {rule.id} after record {record.id}: {e}")

        logger.info(
            f"Alert triggered: {subject.symbol} {rule.rule_type} {rule.condition} "
            f"{self._describe_value(rule)} (price {current}, record {record.id})"
        )
        return record

    def _trend_change(self, subject: Subject, rule: TrendRule, current: float, now: datetime):
        reference_time = shift(now, -rule.lookback_seconds)
        reference = self.price_store.at(subject.id, reference_time)
        if reference is None or reference.value is None:
            raise DataUnavailableError(
                f"no price at or before {normalize_ts(reference_time).isoformat()} "
                f"(lookback {rule.lookback_seconds}s)"
            )
        if reference.value <= 0:
            raise DataUnavailableError(f"non-positive reference price {reference.value}")
        return percent_change(current, reference.value), reference

    @staticmethod
    def _describe_value(rule: Rule) -> str:
        if isinstance(rule, ThresholdRule):
            return f"{rule.target}"
        return f"{rule.magnitude}%/{rule.lookback_seconds}s"
