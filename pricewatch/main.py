import argparse
import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from pricewatch.config import (
    BOT_TOKEN,
    CONFIG_FILE,
    DB_URL,
    LOG_LEVEL,
    ConfigLoader,
    get_app_name,
    get_app_version,
    get_channel_chat_ids,
    get_cleanup_config,
    get_dedup_config,
    get_dispatcher_config,
    get_display_config,
    get_evaluator_config,
    get_healthcheck_config,
    get_seed_config,
    log_env_warnings,
)
from pricewatch.errors import StoreUnavailableError, SubjectNotFoundError
from pricewatch.notif.channels import DryRunChannel, TelegramChannel
from pricewatch.notif.dispatcher import NotificationDispatcher
from pricewatch.notif.fallback import LocalFallbackSink
from pricewatch.notif.retry import RetryPolicy
from pricewatch.notif.templates import render_trigger
from pricewatch.rules.cooldown import CooldownTracker
from pricewatch.rules.engine import AlertEngine
from pricewatch.rules.evaluator import AlertEvaluator
from pricewatch.rules.rule_defs import TriggerRecord
from pricewatch.rules.trend_dedup import TrendDedupFilter
from pricewatch.storage.cleanup import cleanup_old_data, schedule_cleanup_task
from pricewatch.storage.db import init_db, make_engine, make_session_factory
from pricewatch.storage.repo import (
    SqlCooldownStore,
    SqlNotificationHistory,
    SqlPriceStore,
    SqlRuleStore,
    SqlTriggerSink,
)
from pricewatch.storage.seed import seed_from_config
from pricewatch.utils.healthcheck import HealthcheckServer
from pricewatch.utils.logging import setup_logging
from pricewatch.utils.timeutils import utc_now


@dataclass
class App:
    """Everything build_app wires together."""
    config: ConfigLoader
    db_engine: object
    session_factory: object
    price_store: SqlPriceStore
    rule_store: SqlRuleStore
    trigger_sink: SqlTriggerSink
    evaluator: AlertEvaluator
    dispatcher: NotificationDispatcher
    fallback_sink: LocalFallbackSink
    healthcheck: HealthcheckServer
    engine: AlertEngine


def make_renderer(rule_store: SqlRuleStore, tz_name: str) -> Callable[[TriggerRecord], str]:
    """Renderer that adds the subject description when the store has one."""
    def render(record: TriggerRecord) -> str:
        description = None
        try:
            subject = rule_store.get_subject(record.subject_id)
            description = subject.description if subject else None
        except StoreUnavailableError as e:
            logger.warning(f"Rendering record {record.id} without subject description: {e}")
        return render_trigger(record, description, tz_name)
    return render


def build_app(config: ConfigLoader, db_url: str = DB_URL, dry_run: bool = False) -> App:
    """Construct and inject every component (no process-wide singletons)."""
    db_engine = make_engine(db_url)
    session_factory = make_session_factory(db_engine)

    price_store = SqlPriceStore(session_factory)
    rule_store = SqlRuleStore(session_factory)
    trigger_sink = SqlTriggerSink(session_factory)
    history = SqlNotificationHistory(session_factory)

    eval_cfg = get_evaluator_config(config)
    dedup_cfg = get_dedup_config(config)
    notif_cfg = get_dispatcher_config(config)
    display_cfg = get_display_config(config)
    health_cfg = get_healthcheck_config(config)

    cooldown = CooldownTracker(SqlCooldownStore(session_factory))
    trend_filter = TrendDedupFilter(
        trigger_sink,
        window_seconds=dedup_cfg['trend_window_seconds'],
        tolerance_pct=dedup_cfg['trend_tolerance_pct'],
        include_unnotified=dedup_cfg['include_unnotified'],
    )
    evaluator = AlertEvaluator(
        price_store,
        rule_store,
        trigger_sink,
        cooldown,
        trend_filter=trend_filter,
        max_workers=eval_cfg['max_workers'],
        within_cycle_dedup=dedup_cfg['within_cycle'],
    )

    destinations = get_channel_chat_ids()
    if dry_run or not BOT_TOKEN or notif_cfg['channel'] == 'dry-run':
        channel = DryRunChannel()
        destinations = destinations or ["dry-run"]
    else:
        channel = TelegramChannel(BOT_TOKEN, timeout=notif_cfg['send_timeout_seconds'])

    healthcheck = HealthcheckServer(health_cfg['host'], health_cfg['port'], app_name=get_app_name(config))
    fallback_sink = LocalFallbackSink(notif_cfg['fallback_dir'])

    dispatcher = NotificationDispatcher(
        channel,
        destinations,
        retry_policy=RetryPolicy(
            max_retries=notif_cfg['max_retries'],
            base_delay=notif_cfg['retry_base_delay_seconds'],
            max_delay=notif_cfg['retry_max_delay_seconds'],
        ),
        fallback_sink=fallback_sink,
        trigger_sink=trigger_sink,
        history=history,
        queue_size=notif_cfg['queue_size'],
        on_fallback_failure=lambda record, reason: healthcheck.record_fallback_failure(reason),
        renderer=make_renderer(rule_store, display_cfg['timezone']),
        send_timeout=notif_cfg['send_timeout_seconds'],
    )
    healthcheck.dispatch_stats = dispatcher.snapshot

    engine = AlertEngine(
        evaluator,
        dispatcher,
        check_interval=eval_cfg['check_interval_seconds'],
        healthcheck=healthcheck,
    )

    return App(
        config=config,
        db_engine=db_engine,
        session_factory=session_factory,
        price_store=price_store,
        rule_store=rule_store,
        trigger_sink=trigger_sink,
        evaluator=evaluator,
        dispatcher=dispatcher,
        fallback_sink=fallback_sink,
        healthcheck=healthcheck,
        engine=engine,
    )


async def run_service(app: App):
    """
    Main runtime - runs engine, healthcheck and cleanup tasks in parallel
    until SIGINT/SIGTERM.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {get_app_name(app.config)} v{get_app_version(app.config)}")
    logger.info("=" * 60)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(shutdown_event.set))

    engine_task = asyncio.create_task(app.engine.run(), name="AlertEngine")
    side_tasks = [
        asyncio.create_task(
            schedule_cleanup_task(app.session_factory, get_cleanup_config(app.config), app.fallback_sink),
            name="DataCleanup",
        ),
    ]
    if get_healthcheck_config(app.config)['enabled']:
        side_tasks.append(asyncio.create_task(app.healthcheck.run(), name="Healthcheck"))

    watcher = asyncio.create_task(shutdown_event.wait(), name="ShutdownWatcher")

    try:
        await asyncio.wait([engine_task, watcher], return_when=asyncio.FIRST_COMPLETED)
        logger.info("Shutdown signal received, stopping tasks...")
    finally:
        await app.engine.stop()
        await asyncio.gather(engine_task, return_exceptions=True)

        for task in side_tasks + [watcher]:
            task.cancel()
        await asyncio.gather(*side_tasks, watcher, return_exceptions=True)
        logger.info("Shutdown sequence completed")


async def run_single_cycle(app: App) -> int:
    """Evaluate once, deliver everything that fired, then exit."""
    app.dispatcher.start()
    triggered = await app.engine.run_once()
    await app.dispatcher.stop(timeout=max(60.0, app.dispatcher.retry_policy.max_delay * 4))
    logger.info(f"Single cycle finished: {len(triggered)} alerts triggered")
    return len(triggered)


async def check_subject(app: App, subject_id: str) -> int:
    """Evaluate one subject on demand and deliver its alerts directly."""
    try:
        triggered = await asyncio.to_thread(app.evaluator.evaluate_subject, subject_id)
    except StoreUnavailableError as e:
        logger.error(f"Check of {subject_id} aborted, store unavailable: {e}")
        triggered = e.accepted
    for record in triggered:
        result = await app.dispatcher.dispatch(record)
        logger.info(f"Record {record.id}: {result.status}")
    return len(triggered)


async def ping(app: App) -> bool:
    ts = utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")
    msg = f"{get_app_name(app.config)}: online ({ts})"
    ok = False
    for destination in app.dispatcher.destinations:
        try:
            await app.dispatcher.channel.send(msg, destination)
            ok = True
        except Exception as e:
            logger.error(f"Ping to {destination} failed: {e}")
    return ok


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(prog="pricewatch", description="Price alert evaluation and notification engine")
    parser.add_argument("--config", default=CONFIG_FILE, help="Path to YAML config")
    parser.add_argument("--db-url", default=DB_URL, help="SQLAlchemy database URL")
    parser.add_argument("--dry-run", action="store_true", help="Dry-run mode (logs only, no Telegram)")
    parser.add_argument("--ping", action="store_true", help="Send test message to every destination")
    parser.add_argument("--init-db", action="store_true", help="Initialize database tables")
    parser.add_argument("--seed", action="store_true", help="Load subjects and rules from config into the database")
    parser.add_argument("--once", action="store_true", help="Run a single evaluation cycle and exit")
    parser.add_argument("--check", metavar="SUBJECT_ID", help="Evaluate a single subject and exit")
    parser.add_argument("--cleanup", action="store_true", help="Run data retention cleanup and exit")
    args = parser.parse_args(argv)

    setup_logging(LOG_LEVEL, secret=BOT_TOKEN)
    log_env_warnings()

    config = ConfigLoader(args.config)
    app = build_app(config, db_url=args.db_url, dry_run=args.dry_run)

    if args.init_db:
        init_db(app.db_engine)
        logger.info("Database initialized")
        return

    # Every other mode needs the tables
    init_db(app.db_engine)

    if args.seed:
        stats = seed_from_config(
            app.rule_store,
            get_seed_config(config),
            default_cooldown=get_evaluator_config(config)['default_cooldown_seconds'],
        )
        logger.info(f"Seed result: {stats}")
        return

    if args.ping:
        ok = asyncio.run(ping(app))
        logger.info(f"Ping sent? {ok}")
        return

    if args.cleanup:
        cleanup_old_data(app.session_factory, get_cleanup_config(config), app.fallback_sink)
        return

    if args.check:
        try:
            asyncio.run(check_subject(app, args.check))
        except SubjectNotFoundError as e:
            logger.error(str(e))
            sys.exit(1)
        return

    if args.once:
        asyncio.run(run_single_cycle(app))
        return

    logger.info(f"Engine starting in {'dry-run' if args.dry_run else 'live'} mode")

    try:
        asyncio.run(run_service(app))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    except Exception as e:
        logger.exception(f"Unhandled exception in main: {e}")
        sys.exit(1)
    finally:
        logger.info("Engine stopped")


if __name__ == "__main__":
    main()
