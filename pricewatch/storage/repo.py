"""
SQLAlchemy-backed collaborators used by the evaluator and dispatcher.
Each store takes an explicitly constructed session factory.
Connectivity errors are translated into StoreUnavailableError.
"""
import functools
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import select, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import sessionmaker

from pricewatch.errors import StoreUnavailableError
from pricewatch.rules.rule_defs import (
    PricePoint,
    StoredRule,
    Subject,
    TriggerRecord,
    parse_trigger_value,
)
from pricewatch.storage.models import (
    NotificationHistory,
    PriceSample,
    Rule,
    RuleSubjectCooldown,
    Subject as SubjectRow,
    TriggerRecord as TriggerRecordRow,
)
from pricewatch.utils.timeutils import from_db, to_db, utc_now


def _store_call(func):
    """Translate database connectivity errors into StoreUnavailableError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, DBAPIError) as e:
            logger.error(f"Store call {func.__qualname__} failed: {e}")
            raise StoreUnavailableError(f"{func.__qualname__}: {e}") from e
    return wrapper


def _upsert(session, model, values: Dict, index_elements: List[str], update_fields: List[str]):
    """Atomic INSERT ... ON CONFLICT DO UPDATE for sqlite/postgres, get-and-update otherwise."""
    dialect = session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={name: values[name] for name in update_fields},
        )
        session.execute(stmt)
    else:
        key = {name: values[name] for name in index_elements}
        existing = session.get(model, key if len(key) > 1 else next(iter(key.values())))
        if existing is None:
            session.add(model(**values))
        else:
            for name in update_fields:
                setattr(existing, name, values[name])


class SqlPriceStore:
    """Append-only price time series."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_point(row: PriceSample) -> PricePoint:
        return PricePoint(value=row.price, timestamp=from_db(row.timestamp), source=row.source)

    @_store_call
    def append(self, subject_id: str, price: float, timestamp, source: str = "unknown") -> int:
        with self.session_factory() as session:
            row = PriceSample(subject_id=subject_id, price=float(price), timestamp=to_db(timestamp), source=source)
            session.add(row)
            session.commit()
            return row.id

    @_store_call
    def latest(self, subject_id: str) -> Optional[PricePoint]:
        """Most recent sample for the subject."""
        with self.session_factory() as session:
            row = session.execute(
                select(PriceSample)
                .where(PriceSample.subject_id == subject_id)
                .order_by(PriceSample.timestamp.desc(), PriceSample.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_point(row) if row is not None else None

    @_store_call
    def at(self, subject_id: str, timestamp: datetime) -> Optional[PricePoint]:
        """Most recent sample at or before timestamp (None if the series starts later)."""
        with self.session_factory() as session:
            row = session.execute(
                select(PriceSample)
                .where(PriceSample.subject_id == subject_id, PriceSample.timestamp <= to_db(timestamp))
                .order_by(PriceSample.timestamp.desc(), PriceSample.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_point(row) if row is not None else None


class SqlRuleStore:
    """Subjects and rule definitions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_stored(row: Rule) -> StoredRule:
        return StoredRule(
            id=row.id,
            type=row.type,
            condition_json=row.condition_json,
            subject_id=row.subject_id,
            enabled=bool(row.enabled),
            one_time=bool(row.one_time),
            cooldown=row.cooldown,
            priority=row.priority,
            description=row.description,
            last_triggered=from_db(row.last_triggered),
        )

    @staticmethod
    def _to_subject(row: SubjectRow) -> Subject:
        return Subject(id=row.id, symbol=row.symbol, is_active=bool(row.is_active), description=row.description)

    @_store_call
    def list_active_subjects(self) -> List[Subject]:
        with self.session_factory() as session:
            rows = session.execute(
                select(SubjectRow)
                .where(SubjectRow.is_active == True)  # noqa: E712
                .order_by(SubjectRow.id)
            ).scalars().all()
            return [self._to_subject(row) for row in rows]

    @_store_call
    def get_subject(self, subject_id: str) -> Optional[Subject]:
        with self.session_factory() as session:
            row = session.get(SubjectRow, subject_id)
            return self._to_subject(row) if row is not None else None

    @_store_call
    def global_rules(self, enabled: bool = True) -> List[StoredRule]:
        with self.session_factory() as session:
            rows = session.execute(
                select(Rule)
                .where(Rule.subject_id.is_(None), Rule.enabled == enabled)
                .order_by(Rule.created_at, Rule.id)
            ).scalars().all()
            return [self._to_stored(row) for row in rows]

    @_store_call
    def subject_rules(self, subject_id: str, enabled: bool = True) -> List[StoredRule]:
        with self.session_factory() as session:
            rows = session.execute(
                select(Rule)
                .where(Rule.subject_id == subject_id, Rule.enabled == enabled)
                .order_by(Rule.created_at, Rule.id)
            ).scalars().all()
            return [self._to_stored(row) for row in rows]

    @_store_call
    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        with self.session_factory() as session:
            session.execute(
                update(Rule).where(Rule.id == rule_id).values(enabled=enabled, updated_at=to_db(utc_now()))
            )
            session.commit()

    @_store_call
    def set_last_fired(self, rule_id: str, timestamp: datetime) -> None:
        with self.session_factory() as session:
            session.execute(
                update(Rule)
                .where(Rule.id == rule_id)
                .values(last_triggered=to_db(timestamp), updated_at=to_db(utc_now()))
            )
            session.commit()

    @_store_call
    def upsert_subject(self, subject: Subject) -> None:
        with self.session_factory() as session:
            _upsert(
                session,
                SubjectRow,
                {
                    "id": subject.id,
                    "symbol": subject.symbol,
                    "description": subject.description,
                    "is_active": subject.is_active,
                },
                index_elements=["id"],
                update_fields=["symbol", "description", "is_active"],
            )
            session.commit()

    @_store_call
    def upsert_rule(self, rule: StoredRule) -> None:
        """
        Insert or update a rule definition.

        Keeps last_triggered of existing rows. A one-shot rule that already
        fired (stored disabled) stays disabled while it remains one-shot.
        """
        now = to_db(utc_now())
        with self.session_factory() as session:
            enabled = rule.enabled
            existing = session.get(Rule, rule.id)
            spent = (existing is not None and existing.one_time and not existing.enabled
                     and existing.last_triggered is not None)
            if spent and rule.one_time:
                enabled = False
            _upsert(
                session,
                Rule,
                {
                    "id": rule.id,
                    "subject_id": rule.subject_id,
                    "type": rule.type,
                    "condition_json": rule.condition_json,
                    "enabled": enabled,
                    "one_time": rule.one_time,
                    "cooldown": rule.cooldown if rule.cooldown is not None else 86400,
                    "priority": rule.priority or "medium",
                    "description": rule.description,
                    "created_at": now,
                    "updated_at": now,
                },
                index_elements=["id"],
                update_fields=[
                    "subject_id", "type", "condition_json", "enabled", "one_time",
                    "cooldown", "priority", "description", "updated_at",
                ],
            )
            session.commit()

    @_store_call
    def get_rule(self, rule_id: str) -> Optional[StoredRule]:
        with self.session_factory() as session:
            row = session.get(Rule, rule_id)
            return self._to_stored(row) if row is not None else None


class SqlCooldownStore:
    """Durable (rule_id, subject_id) -> last fired timestamp."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_store_call
    def get(self, rule_id: str, subject_id: str) -> Optional[datetime]:
        with self.session_factory() as session:
            row = session.get(RuleSubjectCooldown, (rule_id, subject_id))
            return from_db(row.last_triggered) if row is not None else None

    @_store_call
    def upsert(self, rule_id: str, subject_id: str, at: datetime) -> None:
        with self.session_factory() as session:
            _upsert(
                session,
                RuleSubjectCooldown,
                {
                    "rule_id": rule_id,
                    "subject_id": subject_id,
                    "last_triggered": to_db(at),
                    "updated_at": to_db(utc_now()),
                },
                index_elements=["rule_id", "subject_id"],
                update_fields=["last_triggered", "updated_at"],
            )
            session.commit()

    @_store_call
    def delete(self, rule_id: str, subject_id: str) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                delete(RuleSubjectCooldown).where(
                    RuleSubjectCooldown.rule_id == rule_id,
                    RuleSubjectCooldown.subject_id == subject_id,
                )
            )
            session.commit()
            return result.rowcount > 0


class SqlTriggerSink:
    """Trigger record log."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: TriggerRecordRow) -> TriggerRecord:
        return TriggerRecord(
            id=row.id,
            rule_id=row.rule_id,
            subject_id=row.subject_id,
            subject_symbol=row.subject_symbol,
            rule_type=row.rule_type,
            condition=row.condition,
            trigger_value=parse_trigger_value(row.rule_type, row.trigger_value),
            current_price=row.current_price,
            priority=row.priority,
            description=row.description,
            fired_at=from_db(row.fired_at),
            notification_sent=bool(row.notification_sent),
            notification_time=from_db(row.notification_time),
        )

    @_store_call
    def append(self, record: TriggerRecord) -> int:
        with self.session_factory() as session:
            row = TriggerRecordRow(
                rule_id=record.rule_id,
                subject_id=record.subject_id,
                subject_symbol=record.subject_symbol,
                rule_type=record.rule_type,
                condition=record.condition,
                trigger_value=record.trigger_value_json(),
                current_price=record.current_price,
                priority=record.priority,
                description=record.description,
                fired_at=to_db(record.fired_at),
                notification_sent=record.notification_sent,
                notification_time=to_db(record.notification_time) if record.notification_time else None,
            )
            session.add(row)
            session.commit()
            return row.id

    @_store_call
    def recent_by_rule_subject(
        self,
        rule_id: str,
        subject_id: str,
        conditions: Sequence[str],
        since: datetime,
    ) -> List[TriggerRecord]:
        """Records for rule+subject with condition in conditions, fired at or after since (newest first)."""
        with self.session_factory() as session:
            rows = session.execute(
                select(TriggerRecordRow)
                .where(
                    TriggerRecordRow.rule_id == rule_id,
                    TriggerRecordRow.subject_id == subject_id,
                    TriggerRecordRow.condition.in_(list(conditions)),
                    TriggerRecordRow.fired_at >= to_db(since),
                )
                .order_by(TriggerRecordRow.fired_at.desc(), TriggerRecordRow.id.desc())
            ).scalars().all()

        records = []
        for row in rows:
            try:
                records.append(self._to_record(row))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable trigger record {row.id}: {e}")
        return records

    @_store_call
    def mark_notified(self, record_id: int, at: datetime) -> None:
        with self.session_factory() as session:
            session.execute(
                update(TriggerRecordRow)
                .where(TriggerRecordRow.id == record_id)
                .values(notification_sent=True, notification_time=to_db(at))
            )
            session.commit()

    @_store_call
    def get(self, record_id: int) -> Optional[TriggerRecord]:
        with self.session_factory() as session:
            row = session.get(TriggerRecordRow, record_id)
            return self._to_record(row) if row is not None else None


class SqlNotificationHistory:
    """Append-only notification outcome log."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_store_call
    def append(
        self,
        trigger_record_id: Optional[int],
        channel: str,
        content: str,
        status: str,
        error_message: Optional[str] = None,
        retry_count: int = 0,
        destination: Optional[str] = None,
    ) -> int:
        with self.session_factory() as session:
            row = NotificationHistory(
                trigger_record_id=trigger_record_id,
                channel=channel,
                destination=destination,
                content=content,
                status=status,
                error_message=error_message,
                retry_count=retry_count,
                created_at=to_db(utc_now()),
            )
            session.add(row)
            session.commit()
            return row.id

    @_store_call
    def for_record(self, trigger_record_id: int) -> List[NotificationHistory]:
        with self.session_factory() as session:
            return list(
                session.execute(
                    select(NotificationHistory)
                    .where(NotificationHistory.trigger_record_id == trigger_record_id)
                    .order_by(NotificationHistory.id)
                ).scalars().all()
            )
