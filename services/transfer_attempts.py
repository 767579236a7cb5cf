"""
Transfer attempt bookkeeping shared by hold settlement and wallet payouts.

An attempt row is committed before the payment rail is called and updated with
the rail's answer afterwards, so a crash between the two leaves a pending or
unknown attempt that is retried with the same idempotency key.
"""

import logging
from datetime import datetime
from typing import Any, Dict

from models import TransferAttempt, TransferAttemptStatus
from services.payment_rail import PaymentRail, TransferResult, TransferStatus, to_minor_units
from utils.exception_handler import TransferFailedError, TransferOutcomeUnknownError

logger = logging.getLogger(__name__)

OPEN_ATTEMPT_STATUSES = (
    TransferAttemptStatus.PENDING.value,
    TransferAttemptStatus.UNKNOWN.value,
)


def same_transfer(attempt: TransferAttempt, destination: str, amount) -> bool:
    """Whether a retry targets the same destination and amount (compared in cents)"""
    return attempt.destination == destination and to_minor_units(attempt.amount) == to_minor_units(amount)


async def call_payment_rail(
    payment_rail: PaymentRail,
    attempt: TransferAttempt,
    metadata: Dict[str, Any],
) -> TransferResult:
    """Invoke the rail for an attempt; anything unexpected is an unknown outcome"""
    key = attempt.idempotency_key
    logger.info(f"💰 TRANSFER_ATTEMPT: {key} -> {attempt.destination} amount={attempt.amount}")
    try:
        return await payment_rail.transfer(attempt.destination, attempt.amount, metadata, key)
    except Exception as e:
        logger.error(f"❌ TRANSFER_ATTEMPT_ERROR: {key} raised {type(e).__name__}: {e}", exc_info=True)
        return TransferResult(TransferStatus.UNKNOWN, error=f"{type(e).__name__}: {e}")


def apply_transfer_result(attempt: TransferAttempt, result: TransferResult, now: datetime) -> None:
    """Copy the rail outcome onto the attempt row (caller commits)"""
    if result.status == TransferStatus.SUCCEEDED:
        attempt.status = TransferAttemptStatus.SUCCEEDED.value
        attempt.external_id = result.transfer_id
        attempt.error_message = None
        attempt.completed_at = now
    elif result.status == TransferStatus.FAILED:
        attempt.status = TransferAttemptStatus.FAILED.value
        attempt.external_id = result.transfer_id
        attempt.error_message = result.error
        attempt.completed_at = now
    else:
        attempt.status = TransferAttemptStatus.UNKNOWN.value
        attempt.error_message = result.error
        if result.transfer_id:
            attempt.external_id = result.transfer_id


def raise_for_transfer_result(result: TransferResult, idempotency_key: str) -> None:
    if result.status == TransferStatus.FAILED:
        raise TransferFailedError(
            f"Transfer was rejected by the payment rail: {result.error}", idempotency_key
        )
    if result.status == TransferStatus.UNKNOWN:
        raise TransferOutcomeUnknownError(
            f"Transfer outcome could not be confirmed ({result.error}); retry later with the same reference",
            idempotency_key,
        )
