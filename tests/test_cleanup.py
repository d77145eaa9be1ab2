"""Tests for data retention cleanup."""
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from pricewatch.rules.rule_defs import TriggerRecord
from pricewatch.storage.cleanup import cleanup_old_data, next_run_time
from pricewatch.storage.models import NotificationHistory, PriceSample
from pricewatch.utils.timeutils import to_db

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

RETENTION = {
    'enabled': True,
    'hour_utc': 3,
    'price_retention_days': 30,
    'alert_retention_days': 60,
    'notification_retention_days': 60,
    'fallback_retention_days': 7,
}


def _record(fired_at):
    return TriggerRecord(rule_id="r", subject_id="token-A", subject_symbol="TKA", rule_type="threshold",
                         condition="above", trigger_value=100.0, current_price=101.0, fired_at=fired_at)


class FakeFallbackFiles:
    def __init__(self):
        self.calls = []

    def cleanup_old(self, days, now=None):
        self.calls.append((days, now))
        return 3


class TestCleanupOldData:

    def test_deletes_only_expired_rows(self, session_factory, add_subject, price_store, trigger_sink):
        add_subject("token-A", "TKA")
        price_store.append("token-A", 90.0, T0 - timedelta(days=31))
        price_store.append("token-A", 100.0, T0 - timedelta(days=1))
        trigger_sink.append(_record(T0 - timedelta(days=61)))
        kept_id = trigger_sink.append(_record(T0 - timedelta(days=10)))
        with session_factory() as session:
            for days in (61, 1):
                session.add(NotificationHistory(trigger_record_id=kept_id, channel="telegram", content="x",
                                                status="sent", created_at=to_db(T0 - timedelta(days=days))))
            session.commit()

        stats = cleanup_old_data(session_factory, RETENTION, now=T0)

        assert stats == {"prices": 1, "alerts": 1, "notifications": 1, "fallback_files": 0}
        assert price_store.latest("token-A").value == 100.0
        assert trigger_sink.get(kept_id) is not None
        with session_factory() as session:
            assert session.scalar(select(func.count()).select_from(PriceSample)) == 1

    def test_fallback_files_cleaned(self, session_factory):
        files = FakeFallbackFiles()
        stats = cleanup_old_data(session_factory, RETENTION, fallback_sink=files, now=T0)
        assert stats["fallback_files"] == 3
        assert files.calls == [(7, T0)]


class TestNextRunTime:

    def test_later_today(self):
        assert next_run_time(T0.replace(hour=1), 3) == T0.replace(hour=3)

    def test_tomorrow_when_passed(self):
        assert next_run_time(T0, 3) == T0.replace(hour=3) + timedelta(days=1)

    def test_exact_hour_moves_to_tomorrow(self):
        at = T0.replace(hour=3)
        assert next_run_time(at, 3) == at + timedelta(days=1)
