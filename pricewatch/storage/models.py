from datetime import datetime
from typing import Optional

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Boolean, DateTime, Text, ForeignKey, Index


class Base(DeclarativeBase):
    pass


class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)             # ex: bitcoin, token-A
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)           # ex: BTC
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PriceSample(Base):
    __tablename__ = "price_samples"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(ForeignKey("subjects.id"), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)     # naive UTC
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown")

    __table_args__ = (
        Index("ix_price_subject_ts", "subject_id", "timestamp"),
    )


class Rule(Base):
    __tablename__ = "rules"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[Optional[str]] = mapped_column(ForeignKey("subjects.id"), nullable=True)  # NULL = global
    type: Mapped[str] = mapped_column(String(16), nullable=False)             # threshold | trend
    condition_json: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    one_time: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cooldown: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)  # seconds
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_triggered: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_rules_subject_enabled", "subject_id", "enabled"),
    )


class RuleSubjectCooldown(Base):
    __tablename__ = "rule_subject_cooldowns"
    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_triggered: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class TriggerRecord(Base):
    __tablename__ = "trigger_records"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(16), nullable=False)
    condition: Mapped[str] = mapped_column(String(16), nullable=False)
    trigger_value: Mapped[str] = mapped_column(Text, nullable=False)          # JSON payload
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_trigger_rule_subject_fired", "rule_id", "subject_id", "fired_at"),
    )


class NotificationHistory(Base):
    __tablename__ = "notification_history"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    trigger_record_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)          # telegram | dry-run | fallback
    destination: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)           # sent | retried | failed | fallback | fallback_failed
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_notif_record", "trigger_record_id"),
    )
