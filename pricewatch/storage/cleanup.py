# -*- coding: utf-8 -*-
"""
Data retention and maintenance tasks.
Deletes old price samples, trigger records, notification history and
fallback files according to the cleanup config.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from pricewatch.notif.fallback import LocalFallbackSink
from pricewatch.storage.models import NotificationHistory, PriceSample, TriggerRecord
from pricewatch.utils.timeutils import Clock, shift, to_db, utc_now


def cleanup_old_data(
    session_factory: sessionmaker,
    config: Dict[str, Any],
    fallback_sink: Optional[LocalFallbackSink] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Delete rows older than the configured retention windows.

    Returns:
        Dict with cleanup stats: {"prices": 42, "alerts": 3, "notifications": 5, "fallback_files": 0}
    """
    now = now or utc_now()

    def cutoff(days: int) -> datetime:
        return to_db(shift(now, -days * 86400))

    stats = {"prices": 0, "alerts": 0, "notifications": 0, "fallback_files": 0}

    logger.info(
        f"Starting data cleanup: prices={config['price_retention_days']}d, "
        f"alerts={config['alert_retention_days']}d, "
        f"notifications={config['notification_retention_days']}d"
    )

    with session_factory() as session:
        result = session.execute(
            delete(PriceSample).where(PriceSample.timestamp < cutoff(config['price_retention_days']))
        )
        stats["prices"] = result.rowcount or 0

        # History first: it references trigger records
        result = session.execute(
            delete(NotificationHistory).where(
                NotificationHistory.created_at < cutoff(config['notification_retention_days'])
            )
        )
        stats["notifications"] = result.rowcount or 0

        result = session.execute(
            delete(TriggerRecord).where(TriggerRecord.fired_at < cutoff(config['alert_retention_days']))
        )
        stats["alerts"] = result.rowcount or 0

        session.commit()

    if fallback_sink is not None:
        stats["fallback_files"] = fallback_sink.cleanup_old(config['fallback_retention_days'], now=now)

    logger.info(f"Data cleanup complete: {stats}")
    return stats


def next_run_time(now: datetime, hour_utc: int) -> datetime:
    """Next occurrence of hour_utc:00 strictly after now."""
    next_run = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return next_run


async def schedule_cleanup_task(
    session_factory: sessionmaker,
    config: Dict[str, Any],
    fallback_sink: Optional[LocalFallbackSink] = None,
    clock: Clock = utc_now,
):
    """
    Async task that runs cleanup daily at config['hour_utc'].
    Uses simple asyncio loop rather than full scheduler library.
    """
    if not config.get('enabled', False):
        logger.info("Data cleanup scheduler is disabled")
        return

    hour = config.get('hour_utc', 3)
    logger.info(f"Data cleanup scheduled daily at {hour:02d}:00 UTC")

    while True:
        try:
            now = clock()
            next_run = next_run_time(now, hour)
            sleep_seconds = (next_run - now).total_seconds()

            logger.info(f"Next cleanup scheduled for {next_run} (in {sleep_seconds/3600:.1f}h)")
            await asyncio.sleep(sleep_seconds)

            logger.info("Running scheduled data cleanup...")
            await asyncio.to_thread(cleanup_old_data, session_factory, config, fallback_sink)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error in cleanup scheduler: {e}")
            # Sleep 1 hour before retrying
            await asyncio.sleep(3600)
