"""
Alert Engine - runs evaluation cycles on a fixed interval and hands
triggered alerts to the notification dispatcher.

Ticks never overlap: each cycle is awaited before sleeping until the next one.
Evaluation runs in a worker thread so the event loop (dispatcher, healthcheck)
stays responsive during a cycle.
"""
import asyncio
import threading
from typing import List, Optional

from loguru import logger

from pricewatch.errors import StoreUnavailableError
from pricewatch.notif.dispatcher import NotificationDispatcher
from pricewatch.rules.evaluator import AlertEvaluator
from pricewatch.rules.rule_defs import TriggerRecord
from pricewatch.utils.healthcheck import HealthcheckServer


class AlertEngine:
    """
    Periodic scheduler around AlertEvaluator + NotificationDispatcher.
    """

    def __init__(
        self,
        evaluator: AlertEvaluator,
        dispatcher: NotificationDispatcher,
        check_interval: int = 60,
        healthcheck: Optional[HealthcheckServer] = None,
        drain_timeout: float = 10.0,
    ):
        """
        Args:
            check_interval: Seconds between the start of two evaluation cycles
            drain_timeout: Seconds the dispatcher may keep delivering on shutdown
        """
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.check_interval = check_interval
        self.healthcheck = healthcheck
        self.drain_timeout = drain_timeout
        self.running = False

        # Shared with the evaluator: checked before each subject is started
        self.shutdown_event: threading.Event = evaluator.shutdown_event
        self._wake: Optional[asyncio.Event] = None

    async def run_once(self) -> List[TriggerRecord]:
        """
        Run a single evaluation cycle and enqueue its triggers for delivery.

        A store outage aborts the cycle; it is logged, counted as a failed
        cycle and retried on the next tick. Records persisted before the
        outage are still enqueued.
        """
        try:
            triggered = await asyncio.to_thread(self.evaluator.evaluate_cycle)
        except StoreUnavailableError as e:
            logger.error(f"Evaluation cycle aborted, store unavailable: {e}")
            for record in e.accepted:
                self.dispatcher.submit(record)
            if e.accepted:
                logger.info(f"Enqueued {len(e.accepted)} records accepted before the outage")
            if self.healthcheck:
                self.healthcheck.record_cycle_failure(str(e))
            return list(e.accepted)

        for record in triggered:
            self.dispatcher.submit(record)

        if self.healthcheck:
            self.healthcheck.record_cycle(len(triggered))
        return triggered

    async def run(self):
        """Main loop: evaluate, enqueue, sleep until next tick."""
        self.running = True
        self.shutdown_event.clear()
        self._wake = asyncio.Event()
        loop = asyncio.get_running_loop()

        self.dispatcher.start()
        logger.info(f"Alert Engine started (interval {self.check_interval}s)")

        try:
            while self.running:
                started = loop.time()
                try:
                    await self.run_once()
                except Exception as e:
                    logger.exception(f"Error in alert engine loop: {e}")
                    if self.healthcheck:
                        self.healthcheck.record_cycle_failure(str(e))

                if not self.running:
                    break

                delay = max(0.0, self.check_interval - (loop.time() - started))
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            await self.dispatcher.stop(timeout=self.drain_timeout)
            logger.info("Alert Engine stopped")

    async def stop(self):
        """Stop the alert engine gracefully (current subject evaluations finish)."""
        logger.info("Stopping alert engine...")
        self.running = False
        self.shutdown_event.set()
        if self._wake is not None:
            self._wake.set()
