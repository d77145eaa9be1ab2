"""Shared test fixtures and configuration."""
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from pricewatch.rules.cooldown import CooldownTracker, InMemoryCooldownStore
from pricewatch.rules.rule_defs import StoredRule, Subject
from pricewatch.storage.db import init_db, make_engine, make_session_factory
from pricewatch.storage.repo import (
    SqlCooldownStore,
    SqlNotificationHistory,
    SqlPriceStore,
    SqlRuleStore,
    SqlTriggerSink,
)

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock: call it for the current time, advance() to move it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeChannel:
    """
    Notification channel double.

    script maps destination -> list of exceptions raised on successive sends
    (None entries mean success). Sends past the end of the script succeed.
    """

    name = "fake"

    def __init__(self, script: Optional[Dict[str, List[Optional[Exception]]]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: List[tuple] = []
        self.delivered: List[tuple] = []

    async def send(self, message: str, destination: str) -> None:
        self.calls.append((destination, message))
        steps = self.script.get(destination)
        if steps:
            error = steps.pop(0)
            if error is not None:
                raise error
        self.delivered.append((destination, message))


class FakeFallbackSink:
    """Records persist() calls; ok=False simulates a broken disk."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.persisted: List[tuple] = []

    def persist(self, message: str, metadata: Dict) -> bool:
        self.persisted.append((message, metadata))
        return self.ok


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def price_store(session_factory) -> SqlPriceStore:
    return SqlPriceStore(session_factory)


@pytest.fixture
def rule_store(session_factory) -> SqlRuleStore:
    return SqlRuleStore(session_factory)


@pytest.fixture
def trigger_sink(session_factory) -> SqlTriggerSink:
    return SqlTriggerSink(session_factory)


@pytest.fixture
def history(session_factory) -> SqlNotificationHistory:
    return SqlNotificationHistory(session_factory)


@pytest.fixture
def cooldown_store(session_factory) -> SqlCooldownStore:
    return SqlCooldownStore(session_factory)


@pytest.fixture
def cooldown(clock) -> CooldownTracker:
    return CooldownTracker(InMemoryCooldownStore(), clock=clock)


@pytest.fixture
def add_subject(rule_store):
    """Factory: add_subject("token-A", "TKA") -> Subject"""
    def _add(subject_id: str, symbol: str = None, active: bool = True, description: str = None) -> Subject:
        subject = Subject(id=subject_id, symbol=symbol or subject_id.upper(), is_active=active,
                          description=description)
        rule_store.upsert_subject(subject)
        return subject
    return _add


@pytest.fixture
def add_rule(rule_store):
    """
    Factory for stored rules.

    add_rule("r1", "threshold", condition="above", value=100, subject_id="token-A")
    add_rule("r2", "trend", condition="decrease", value=5, timeframe=3600)
    add_rule("bad", "threshold", raw="{not json")
    """
    def _add(rule_id: str, rule_type: str, condition: str = None, value=None, timeframe=None,
             subject_id: str = None, raw: str = None, **kwargs) -> StoredRule:
        if raw is None:
            payload = {"type": rule_type, "condition": condition, "value": value}
            if timeframe is not None:
                payload["timeframe"] = timeframe
            raw = json.dumps(payload)
        stored = StoredRule(id=rule_id, type=rule_type, condition_json=raw, subject_id=subject_id, **kwargs)
        rule_store.upsert_rule(stored)
        return stored
    return _add


@pytest.fixture
def test_config_dict() -> Dict:
    return {
        'app': {
            'name': 'PriceWatch Test',
            'version': '9.9.9'
        },
        'engine': {
            'check_interval_seconds': 30,
            'max_workers': 2,
            'default_cooldown_seconds': 3600
        },
        'dedup': {
            'within_cycle': True,
            'trend_window_seconds': 7200,
            'trend_tolerance_pct': 2.5,
            'include_unnotified': False
        },
        'notifications': {
            'channel': 'telegram',
            'max_retries': 2,
            'retry_base_delay_seconds': 1,
            'retry_max_delay_seconds': 5,
            'queue_size': 10,
            'fallback_dir': './data/test-alerts'
        },
        'display': {
            'timezone': 'Asia/Shanghai'
        },
        'healthcheck': {
            'enabled': False,
            'port': 9090
        },
        'cleanup': {
            'enabled': True,
            'hour_utc': 4,
            'price_retention_days': 30
        },
        'subjects': [
            {'id': 'bitcoin', 'symbol': 'btc', 'description': 'Bitcoin'},
            {'id': 'token-A', 'symbol': 'TKA', 'active': False}
        ],
        'rules': {
            'global': [
                {'id': 'g-drop', 'type': 'trend', 'condition': 'decrease', 'value': 10, 'timeframe': 3600}
            ],
            'subjects': {
                'bitcoin': [
                    {'id': 'btc-100k', 'type': 'threshold', 'condition': 'above', 'value': 100000,
                     'one_time': True, 'priority': 'high'}
                ]
            }
        }
    }


@pytest.fixture
def test_config_yaml(tmp_path: Path, test_config_dict: Dict) -> Path:
    """Create a temporary test config YAML file."""
    config_file = tmp_path / 'test_config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(test_config_dict, f)
    return config_file


@pytest.fixture
def fake_channel_cls():
    return FakeChannel


@pytest.fixture
def fake_fallback_cls():
    return FakeFallbackSink


@pytest.fixture
def instant_sleep():
    return no_sleep
