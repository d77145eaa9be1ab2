# -*- coding: utf-8 -*-
"""
Seed subjects and rule definitions declared in the YAML config into the
rule store. Idempotent: existing rows are updated in place, cooldown
state and last-fired timestamps are preserved, and one-shot rules that
already fired stay disabled.
"""
import json
from typing import Any, Dict, Optional

from loguru import logger

from pricewatch.errors import MalformedRuleError
from pricewatch.rules.rule_defs import DEFAULT_COOLDOWN_SECONDS, StoredRule, Subject
from pricewatch.storage.repo import SqlRuleStore


def subject_from_config(entry: Dict[str, Any]) -> Subject:
    """
    Build a Subject from a config entry.

    Example entry:
        {"id": "bitcoin", "symbol": "BTC", "description": "Bitcoin", "active": true}
    """
    if not isinstance(entry, dict) or not entry.get('id'):
        raise ValueError(f"Subject entry needs an id: {entry!r}")
    return Subject(
        id=str(entry['id']),
        symbol=str(entry.get('symbol') or entry['id']).upper(),
        is_active=bool(entry.get('active', True)),
        description=entry.get('description'),
    )


def rule_from_config(entry: Dict[str, Any], subject_id: Optional[str] = None,
                     default_cooldown: int = DEFAULT_COOLDOWN_SECONDS) -> StoredRule:
    """
    Build a StoredRule from a config entry and validate it.

    Example entry:
        {"id": "btc-drop", "type": "trend", "condition": "decrease",
         "value": 5, "timeframe": 3600, "priority": "high"}

    Raises:
        MalformedRuleError: entry does not describe a valid rule
    """
    rule_id = str(entry.get('id') or '')
    if not rule_id:
        raise MalformedRuleError("?", f"rule entry without id: {entry!r}")

    payload = {
        'type': entry.get('type'),
        'condition': entry.get('condition'),
        'value': entry.get('value'),
    }
    if entry.get('timeframe') is not None:
        payload['timeframe'] = entry['timeframe']

    stored = StoredRule(
        id=rule_id,
        type=str(entry.get('type')),
        condition_json=json.dumps(payload),
        subject_id=subject_id,
        enabled=bool(entry.get('enabled', True)),
        one_time=bool(entry.get('one_time', False)),
        cooldown=entry.get('cooldown', default_cooldown),
        priority=entry.get('priority', 'medium'),
        description=entry.get('description'),
    )
    stored.to_rule()
    return stored


def seed_from_config(rule_store: SqlRuleStore, seed_config: Dict[str, Any],
                     default_cooldown: int = DEFAULT_COOLDOWN_SECONDS) -> Dict[str, int]:
    """
    Upsert configured subjects and rules.

    Invalid entries are logged and skipped; the rest is still seeded.

    Returns:
        {"subjects": n, "rules": n, "skipped": n}
    """
    stats = {"subjects": 0, "rules": 0, "skipped": 0}

    for entry in seed_config.get('subjects', []):
        try:
            subject = subject_from_config(entry)
        except ValueError as e:
            logger.error(f"Skipping subject: {e}")
            stats["skipped"] += 1
            continue
        rule_store.upsert_subject(subject)
        stats["subjects"] += 1

    def _seed(entry: Any, subject_id: Optional[str]) -> None:
        try:
            if not isinstance(entry, dict):
                raise MalformedRuleError("?", f"rule entry must be a mapping: {entry!r}")
            stored = rule_from_config(entry, subject_id, default_cooldown)
        except MalformedRuleError as e:
            logger.error(f"Skipping rule: {e}")
            stats["skipped"] += 1
            return
        rule_store.upsert_rule(stored)
        stats["rules"] += 1

    for entry in seed_config.get('global_rules', []):
        _seed(entry, None)

    for subject_id, entries in (seed_config.get('subject_rules') or {}).items():
        if rule_store.get_subject(str(subject_id)) is None:
            logger.error(f"Skipping rules for unknown subject {subject_id}")
            stats["skipped"] += len(entries or [])
            continue
        for entry in entries or []:
            _seed(entry, str(subject_id))

    logger.info(
        f"Seeded {stats['subjects']} subjects and {stats['rules']} rules "
        f"({stats['skipped']} skipped)"
    )
    return stats
