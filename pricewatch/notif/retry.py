# -*- coding: utf-8 -*-
"""
Generic retry policy with exponential backoff.

Delay before retry n (0-based) is base_delay * 2**n, capped at max_delay.
A classifier decides whether a failure is worth retrying; the default one
trusts the `transient` flag of DeliveryError and treats timeouts and
connection errors as transient.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from loguru import logger

from pricewatch.errors import DeliveryError


def default_classifier(error: BaseException) -> bool:
    """True if the error is transient (retry), False if permanent (stop)."""
    if isinstance(error, DeliveryError):
        return error.transient
    return isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError))


@dataclass
class RetryOutcome:
    """Result of running an operation through a RetryPolicy."""
    success: bool
    attempts: int
    value: Any = None
    errors: List[BaseException] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


class RetryPolicy:
    """
    Bounded retry: one initial attempt plus up to max_retries retries.

    Example:
        policy = RetryPolicy(max_retries=3, base_delay=2.0)
        outcome = await policy.run(lambda: channel.send(text, chat_id))
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        classifier: Callable[[BaseException], bool] = default_classifier,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.classifier = classifier
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based): 2s, 4s, 8s... capped."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def run(self, fn: Callable[[], Awaitable[Any]], label: str = "operation") -> RetryOutcome:
        """
        Run fn until it succeeds, fails permanently, or retries are exhausted.

        Never raises for failures of fn; they are collected in the outcome.
        Cancellation propagates.
        """
        errors: List[BaseException] = []
        attempts = 0

        while True:
            attempts += 1
            try:
                value = await fn()
                if attempts > 1:
                    logger.info(f"{label} succeeded on attempt {attempts}")
                return RetryOutcome(success=True, attempts=attempts, value=value, errors=errors)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                errors.append(e)

                if not self.classifier(e):
                    logger.error(f"{label} failed permanently on attempt {attempts}: {e}")
                    break

                retry_index = attempts - 1
                if retry_index >= self.max_retries:
                    logger.error(f"{label} failed after {attempts} attempts: {e}")
                    break

                delay = self.delay_for(retry_index)
                logger.warning(f"{label} attempt {attempts} failed, retrying in {delay:.1f}s: {e}")
                await self.sleep(delay)

        return RetryOutcome(success=False, attempts=attempts, errors=errors)
