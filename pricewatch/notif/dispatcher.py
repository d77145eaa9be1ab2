# -*- coding: utf-8 -*-
"""
Notification Dispatcher.

Renders trigger records, delivers them to every destination of the primary
channel through a RetryPolicy and, when delivery is exhausted, persists them
to the local fallback sink exactly once.

Delivery states:
    pending -> delivered
    pending -> retrying(n) -> exhausted -> fallback-recorded

A record is marked notified only after a primary or fallback success.
Runs as an asyncio worker draining a bounded queue, separate from evaluation.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from pricewatch.errors import PriceWatchError, TransientDeliveryError
from pricewatch.notif.channels import NotificationChannel
from pricewatch.notif.fallback import FallbackSink
from pricewatch.notif.retry import RetryOutcome, RetryPolicy
from pricewatch.notif.templates import render_trigger
from pricewatch.rules.rule_defs import TriggerRecord, TriggerSink
from pricewatch.utils.timeutils import Clock, utc_now

STATUS_SENT = "sent"
STATUS_RETRIED = "retried"
STATUS_FAILED = "failed"
STATUS_FALLBACK = "fallback"
STATUS_FALLBACK_FAILED = "fallback_failed"

RESULT_DELIVERED = "delivered"
RESULT_FALLBACK = "fallback"
RESULT_LOST = "lost"


class NotificationHistoryStore(Protocol):
    def append(
        self,
        trigger_record_id: Optional[int],
        channel: str,
        content: str,
        status: str,
        error_message: Optional[str] = None,
        retry_count: int = 0,
        destination: Optional[str] = None,
    ) -> int: ...


@dataclass
class NotificationAttempt:
    """In-memory delivery state of one record to one destination."""
    record: TriggerRecord
    channel: str
    destination: str
    retry_count: int = 0
    last_error: Optional[str] = None
    delivered: bool = False


@dataclass
class DispatchResult:
    record: TriggerRecord
    status: str
    attempts: List[NotificationAttempt] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.status == RESULT_DELIVERED


@dataclass
class DispatchStats:
    enqueued: int = 0
    overflow: int = 0
    delivered: int = 0
    fallback: int = 0
    fallback_failed: int = 0


class NotificationDispatcher:
    """
    Delivers trigger records with retry, fan-out and local fallback.

    Args:
        channel: primary notification channel
        destinations: chat ids / addresses of the primary channel
        retry_policy: bounded retry with exponential backoff
        fallback_sink: durable local sink used on exhaustion and queue overflow
        trigger_sink: used to flip notification_sent on success
        history: notification history log (optional)
        queue_size: bound of the dispatch queue
        on_fallback_failure: called with (record, reason) when an alert could
            not be delivered nor persisted locally
        renderer: TriggerRecord -> message text
        send_timeout: per-send timeout in seconds (None = channel default)
    """

    def __init__(
        self,
        channel: NotificationChannel,
        destinations: Sequence[str],
        retry_policy: Optional[RetryPolicy] = None,
        fallback_sink: Optional[FallbackSink] = None,
        trigger_sink: Optional[TriggerSink] = None,
        history: Optional[NotificationHistoryStore] = None,
        queue_size: int = 1000,
        clock: Clock = utc_now,
        on_fallback_failure: Optional[Callable[[TriggerRecord, str], None]] = None,
        renderer: Optional[Callable[[TriggerRecord], str]] = None,
        send_timeout: Optional[float] = None,
    ):
        self.channel = channel
        self.destinations = list(destinations)
        self.retry_policy = retry_policy or RetryPolicy()
        self.fallback_sink = fallback_sink
        self.trigger_sink = trigger_sink
        self.history = history
        self.clock = clock
        self.on_fallback_failure = on_fallback_failure
        self.renderer = renderer or render_trigger
        self.send_timeout = send_timeout

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.stats = DispatchStats()
        self._worker: Optional[asyncio.Task] = None

    # ---------- delivery ----------

    def render(self, record: TriggerRecord) -> str:
        try:
            return self.renderer(record)
        except Exception as e:
            logger.exception(f"Failed to render alert for record {record.id}: {e}")
            return json.dumps(record.to_dict(), ensure_ascii=False)

    async def _send(self, message: str, destination: str) -> None:
        if self.send_timeout is None:
            await self.channel.send(message, destination)
            return
        try:
            await asyncio.wait_for(self.channel.send(message, destination), timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            raise TransientDeliveryError(f"send to {destination} timed out after {self.send_timeout}s") from e

    async def _deliver_to(self, record: TriggerRecord, message: str, destination: str) -> NotificationAttempt:
        attempt = NotificationAttempt(record=record, channel=self.channel.name, destination=destination)

        outcome: RetryOutcome = await self.retry_policy.run(
            lambda: self._send(message, destination),
            label=f"{self.channel.name} -> {destination} (record {record.id})",
        )
        attempt.retry_count = outcome.retries
        attempt.delivered = outcome.success

        # One row per failed attempt that was retried, then the final outcome
        retried_errors = outcome.errors if outcome.success else outcome.errors[:-1]
        for n, error in enumerate(retried_errors, start=1):
            self._record_history(record, message, STATUS_RETRIED, error=str(error), retry_count=n,
                                 destination=destination)

        if outcome.success:
            logger.info(f"Alert delivered via {self.channel.name} to {destination} (record {record.id})")
            self._record_history(record, message, STATUS_SENT, retry_count=attempt.retry_count,
                                 destination=destination)
        else:
            attempt.last_error = str(outcome.last_error)
            logger.error(
                f"Alert delivery via {self.channel.name} to {destination} failed "
                f"after {outcome.attempts} attempts (record {record.id}): {attempt.last_error}"
            )
            self._record_history(record, message, STATUS_FAILED, error=attempt.last_error,
                                 retry_count=attempt.retry_count, destination=destination)
        return attempt

    async def dispatch(self, record: TriggerRecord) -> DispatchResult:
        """
        Deliver one trigger record.

        Fans out to every destination concurrently; succeeds if at least one
        accepts.
        On exhaustion the record is written to the fallback sink once.
        """
        message = self.render(record)

        if not self.destinations:
            logger.warning(f"No destinations configured for {self.channel.name}, using fallback (record {record.id})")
            return self._fallback(record, message, reason="no destinations configured")

        attempts = list(await asyncio.gather(
            *(self._deliver_to(record, message, destination) for destination in self.destinations)
        ))

        if any(a.delivered for a in attempts):
            self._mark_notified(record)
            self.stats.delivered += 1
            return DispatchResult(record=record, status=RESULT_DELIVERED, attempts=attempts)

        errors = "; ".join(f"{a.destination}: {a.last_error}" for a in attempts)
        result = self._fallback(record, message, reason=f"delivery exhausted ({errors})")
        result.attempts = attempts
        return result

    def _fallback(self, record: TriggerRecord, message: str, reason: str) -> DispatchResult:
        if self.fallback_sink is None:
            return self._fallback_failed(record, message, f"{reason}; no fallback sink configured")

        metadata = record.to_dict()
        metadata["fallbackReason"] = reason
        if self.fallback_sink.persist(message, metadata):
            self._record_history(record, message, STATUS_FALLBACK, error=reason)
            self._mark_notified(record)
            self.stats.fallback += 1
            return DispatchResult(record=record, status=RESULT_FALLBACK)

        return self._fallback_failed(record, message, f"{reason}; fallback sink write failed")

    def _fallback_failed(self, record: TriggerRecord, message: str, reason: str) -> DispatchResult:
        logger.error(f"ALERT LOST: record {record.id} ({record.subject_symbol} {record.rule_type} "
                     f"{record.condition}) could not be delivered or saved: {reason}")
        self._record_history(record, message, STATUS_FALLBACK_FAILED, error=reason)
        self.stats.fallback_failed += 1
        if self.on_fallback_failure is not None:
            try:
                self.on_fallback_failure(record, reason)
            except Exception as e:
                logger.exception(f"Fallback failure callback raised: {e}")
        return DispatchResult(record=record, status=RESULT_LOST)

    def _mark_notified(self, record: TriggerRecord) -> None:
        if self.trigger_sink is None or record.id is None:
            return
        try:
            self.trigger_sink.mark_notified(record.id, self.clock())
        except PriceWatchError as e:
            logger.error(f"Failed to mark record {record.id} as notified: {e}")

    def _record_history(
        self,
        record: TriggerRecord,
        content: str,
        status: str,
        error: Optional[str] = None,
        retry_count: int = 0,
        destination: Optional[str] = None,
    ) -> None:
        if self.history is None:
            return
        try:
            self.history.append(
                trigger_record_id=record.id,
                channel=self.channel.name,
                content=content,
                status=status,
                error_message=error,
                retry_count=retry_count,
                destination=destination,
            )
        except PriceWatchError as e:
            logger.error(f"Failed to record notification history for record {record.id}: {e}")

    # ---------- queue / worker ----------

    def submit(self, record: TriggerRecord) -> bool:
        """
        Non-blocking enqueue. When the queue is full the record goes straight
        to the fallback sink.

        Returns:
            True if queued, False if it overflowed
        """
        try:
            self.queue.put_nowait(record)
            self.stats.enqueued += 1
            return True
        except asyncio.QueueFull:
            self.stats.overflow += 1
            logger.warning(f"Dispatch queue full ({self.queue.maxsize}), sending record {record.id} to fallback")
            self._fallback(record, self.render(record), reason="dispatch queue full")
            return False

    async def run(self) -> None:
        """Worker loop: drain the queue forever (until cancelled)."""
        logger.info(f"Notification dispatcher started (channel={self.channel.name}, "
                    f"destinations={len(self.destinations)})")
        while True:
            record = await self.queue.get()
            try:
                await self.dispatch(record)
            except asyncio.CancelledError:
                self._fallback(record, self.render(record), reason="dispatcher stopped mid-delivery")
                raise
            except Exception as e:
                logger.exception(f"Unexpected error dispatching record {record.id}: {e}")
            finally:
                self.queue.task_done()

    def start(self) -> asyncio.Task:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self.run(), name="notification-dispatcher")
        return self._worker

    async def stop(self, timeout: float = 10.0) -> None:
        """
        Give the worker up to `timeout` seconds to drain, then cancel it and
        move whatever is still queued to the fallback sink.
        """
        if self._worker is not None and not self._worker.done() and timeout > 0:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Dispatch queue not drained within {timeout}s ({self.queue.qsize()} pending)")

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        drained = 0
        while True:
            try:
                record = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._fallback(record, self.render(record), reason="dispatcher stopped")
            self.queue.task_done()
            drained += 1

        if drained:
            logger.info(f"Moved {drained} pending alerts to fallback on shutdown")
        logger.info("Notification dispatcher stopped")

    def snapshot(self) -> Dict[str, int]:
        return {
            "queued": self.queue.qsize(),
            "enqueued": self.stats.enqueued,
            "overflow": self.stats.overflow,
            "delivered": self.stats.delivered,
            "fallback": self.stats.fallback,
            "fallback_failed": self.stats.fallback_failed,
        }
