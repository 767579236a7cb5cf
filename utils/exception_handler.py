"""
Exception Handler Module
Settlement error taxonomy and the failure-isolation decorator for notification side effects.

Callers distinguish five families:
- ValidationError: bad input, fix and resubmit, never retried automatically
- NotFoundError: the wallet/hold/dispute/transaction/tenant does not exist
- StateConflictError: it exists but is in the wrong state (race or misuse)
- ExternalDependencyError: the payment rail failed or timed out; nothing was committed,
  retry later with the same idempotency key
- NotificationDeliveryError: only ever logged, never propagated to the funds/usage caller
"""

import asyncio
import logging
import functools
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """Base exception for settlement core errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ============ VALIDATION ============


class ValidationError(SettlementError):
    """Custom validation error for input validation failures"""
    pass


class InvalidAmountError(ValidationError):
    """Amount is zero, negative or otherwise unusable"""
    pass


# ============ NOT FOUND ============


class NotFoundError(SettlementError):
    """Referenced record does not exist"""
    pass


class WalletNotFoundError(NotFoundError):
    pass


class HoldNotFoundError(NotFoundError):
    pass


class DisputeNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class TenantNotFoundError(NotFoundError):
    pass


# ============ STATE CONFLICTS ============


class StateConflictError(SettlementError):
    """Record exists but is not in a state that allows the operation"""
    pass


class InvalidStateError(StateConflictError):
    pass


class NotYetEligibleError(StateConflictError):
    pass


class WindowExpiredError(StateConflictError):
    pass


class AlreadyResolvedError(StateConflictError):
    pass


class NotPendingError(StateConflictError):
    pass


class InsufficientFundsError(StateConflictError):
    pass


class IdempotencyConflictError(StateConflictError):
    """Idempotency key was already used for a different operation"""
    pass


# ============ EXTERNAL DEPENDENCIES ============


class ExternalDependencyError(SettlementError):
    """Payment rail call did not confirm success; retry with the same idempotency key"""

    def __init__(self, message: str, idempotency_key: Optional[str] = None):
        self.idempotency_key = idempotency_key
        super().__init__(message)


class TransferFailedError(ExternalDependencyError):
    """Rail confirmed the transfer did not happen"""
    pass


class TransferOutcomeUnknownError(ExternalDependencyError):
    """Timeout or ambiguous response; the transfer may or may not have happened"""
    pass


class NotificationDeliveryError(SettlementError):
    """Notification/email dispatch failed"""
    pass


def isolate_notification_failure(func: Callable) -> Callable:
    """
    Decorator for notification side effects.
    Catches exceptions and logs them so a failed notification can never
    roll back or block the funds/usage mutation that triggered it.
    """

    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.error(f"❌ NOTIFICATION_ISOLATED: {func.__name__} failed: {type(e).__name__}: {e}")
                return None

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_ISOLATED: {func.__name__} failed: {type(e).__name__}: {e}")
            return None

    return wrapper
