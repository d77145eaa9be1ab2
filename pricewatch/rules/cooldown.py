# -*- coding: utf-8 -*-
"""
Per (rule, subject) cooldown tracking.
A global rule applies to many subjects with independent timing, so the
authoritative re-fire gate lives here rather than on the rule itself.
"""
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional, Protocol, Tuple

from loguru import logger

from pricewatch.utils.timeutils import Clock, normalize_ts, seconds_between, utc_now


class CooldownStore(Protocol):
    def get(self, rule_id: str, subject_id: str) -> Optional[datetime]: ...

    def upsert(self, rule_id: str, subject_id: str, at: datetime) -> None: ...

    def delete(self, rule_id: str, subject_id: str) -> bool: ...


class InMemoryCooldownStore:
    """Process-local CooldownStore (tests, dry runs)."""

    def __init__(self):
        self._data: Dict[Tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def get(self, rule_id: str, subject_id: str) -> Optional[datetime]:
        with self._lock:
            return self._data.get((rule_id, subject_id))

    def upsert(self, rule_id: str, subject_id: str, at: datetime) -> None:
        with self._lock:
            self._data[(rule_id, subject_id)] = normalize_ts(at)

    def delete(self, rule_id: str, subject_id: str) -> bool:
        with self._lock:
            return self._data.pop((rule_id, subject_id), None) is not None


class CooldownTracker:
    """
    Gates re-firing per (rule_id, subject_id).

    Callers hold lock(rule_id, subject_id) around the whole
    is_eligible -> record_fired sequence so two workers can't both see
    "eligible" for the same key.
    """

    def __init__(self, store: CooldownStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, rule_id: str, subject_id: str) -> threading.Lock:
        key = (rule_id, subject_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def lock(self, rule_id: str, subject_id: str) -> Iterator[None]:
        """Serialize check-and-record for one key (single writer per key)."""
        lock = self._lock_for(rule_id, subject_id)
        with lock:
            yield

    def last_fired(self, rule_id: str, subject_id: str) -> Optional[datetime]:
        value = self.store.get(rule_id, subject_id)
        return normalize_ts(value) if value is not None else None

    def is_eligible(
        self,
        rule_id: str,
        subject_id: str,
        cooldown_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Eligible if never fired, or now - last_fired >= cooldown_seconds."""
        last = self.last_fired(rule_id, subject_id)
        if last is None:
            return True

        now = normalize_ts(now) if now is not None else self.clock()
        elapsed = seconds_between(last, now)
        if elapsed >= cooldown_seconds:
            return True

        logger.debug(
            f"Rule {rule_id} on {subject_id} in cooldown "
            f"({int(elapsed)}s elapsed of {cooldown_seconds}s)"
        )
        return False

    def record_fired(self, rule_id: str, subject_id: str, at: Optional[datetime] = None) -> None:
        at = normalize_ts(at) if at is not None else self.clock()
        self.store.upsert(rule_id, subject_id, at)

    def clear(self, rule_id: str, subject_id: str) -> bool:
        """Administrative reset (e.g. rule re-targeted to another subject)."""
        with self.lock(rule_id, subject_id):
            removed = self.store.delete(rule_id, subject_id)
        if removed:
            logger.info(f"Cooldown cleared: rule={rule_id} subject={subject_id}")
        return removed
