# -*- coding: utf-8 -*-
"""
Error taxonomy for the alert engine.

Evaluation errors are isolated per rule/subject (data unavailable, malformed
rule). Store errors abort the whole cycle. Delivery errors carry a
transient/permanent distinction used by the retry policy.
"""


class PriceWatchError(Exception):
    """Base class for all PriceWatch errors."""


class DataUnavailableError(PriceWatchError):
    """Current or reference price is missing; the rule is skipped this cycle."""


class MalformedRuleError(PriceWatchError):
    """Rule condition payload cannot be parsed into a known rule variant."""

    def __init__(self, rule_id: str, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Malformed rule {rule_id}: {reason}")


class StoreUnavailableError(PriceWatchError):
    """
    Price/Rule store unreachable; the current cycle is aborted.

    `accepted` carries the trigger records already persisted in the aborted
    cycle, so the caller can still deliver them.
    """

    def __init__(self, message: str = "", accepted=None):
        super().__init__(message)
        self.accepted = list(accepted or [])


class SubjectNotFoundError(PriceWatchError):
    """Requested subject does not exist."""


class DeliveryError(PriceWatchError):
    """Notification channel failed to deliver a message."""

    transient = False


class TransientDeliveryError(DeliveryError):
    """Network error, timeout or rate limit. Safe to retry."""

    transient = True


class PermanentDeliveryError(DeliveryError):
    """Rejected by the channel (bad destination, forbidden). Retrying won't help."""


class FallbackSinkError(PriceWatchError):
    """Local fallback sink could not persist an alert. The alert may be lost."""
