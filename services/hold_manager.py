"""
Hold Manager - Job-guarantee holds on completed-work payments

A hold keeps funds in the platform pool for a fixed window after a job is
paid. It is released to the payee once the window has elapsed, or diverted
into the dispute workflow while it is still open.

Settlement is two-phase:
1. Claim the hold (conditional update on status and settlement_claim) and
   commit a pending TransferAttempt.
2. Call the payment rail with the attempt's idempotency key, persist the
   outcome, and only on confirmed success move the hold to its final state.
A hold is never marked released or refunded without a confirmed transfer.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Hold,
    HoldStatus,
    TransferAttempt,
    TransferAttemptStatus,
    TransferKind,
)
from services.payment_rail import PaymentRail, PaymentRailClient, TransferStatus
from services.transfer_attempts import (
    OPEN_ATTEMPT_STATUSES,
    apply_transfer_result,
    call_payment_rail,
    raise_for_transfer_result,
    same_transfer,
)
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    HoldNotFoundError,
    InvalidStateError,
    NotYetEligibleError,
    ValidationError,
)
from utils.hold_state_machine import HoldState, HoldStateValidator, hold_state

logger = logging.getLogger(__name__)


@dataclass
class ReleaseReceipt:
    hold_id: int
    payee_id: str
    amount: Decimal
    destination: str
    transfer_id: Optional[str]
    idempotency_key: str
    released_at: datetime


@dataclass
class SettlementOutcome:
    """Result of a confirmed hold settlement transfer"""

    hold_id: int
    kind: str
    amount: Decimal
    destination: str
    transfer_id: Optional[str]
    idempotency_key: str
    settled_at: datetime


class HoldManager:
    """Creates, tracks and settles job-guarantee holds"""

    def __init__(self, session: Session, payment_rail: Optional[PaymentRail] = None):
        self.session = session
        self._payment_rail = payment_rail

    @property
    def payment_rail(self) -> PaymentRail:
        if self._payment_rail is None:
            self._payment_rail = PaymentRailClient()
        return self._payment_rail

    # ============ CREATION AND QUERIES ============

    def create_hold(
        self,
        payee_id: str,
        payer_id: str,
        amount,
        source_id: str,
        now: Optional[datetime] = None,
        hold_window_days: Optional[int] = None,
    ) -> Hold:
        """Hold funds for a completed job until the guarantee window closes"""
        amount = MonetaryDecimal.positive_amount(amount, "hold")
        if not payee_id or not payer_id:
            raise ValidationError("payee_id and payer_id are required")
        if not source_id:
            raise ValidationError("source_id is required")
        now = resolve_now(now)
        window_days = Config.HOLD_WINDOW_DAYS if hold_window_days is None else hold_window_days
        if window_days < 0:
            raise ValidationError("Hold window cannot be negative")

        with atomic_transaction(self.session):
            hold = Hold(
                payee_id=payee_id,
                payer_id=payer_id,
                source_id=source_id,
                amount=amount,
                status=HoldStatus.HELD.value,
                held_at=now,
                release_at=now + timedelta(days=window_days),
                created_at=now,
                updated_at=now,
            )
            self.session.add(hold)
            self.session.flush()
            hold_id = hold.id

        logger.info(
            f"🔒 HOLD_CREATED: Hold {hold_id} of {amount} for payee {payee_id} "
            f"(source {source_id}, release_at {(now + timedelta(days=window_days)).isoformat()})"
        )
        return self.get_hold(hold_id)

    def get_hold(self, hold_id: int) -> Hold:
        hold = self.session.get(Hold, hold_id)
        if hold is None:
            raise HoldNotFoundError(f"Hold {hold_id} not found")
        return hold

    def get_hold_state(self, hold_id: int) -> HoldState:
        return hold_state(self.get_hold(hold_id))

    def count_failed_attempts(self, hold_id: int, kind: TransferKind = TransferKind.RELEASE) -> int:
        """Rejected transfer attempts of one kind for a hold"""
        return self.session.execute(
            select(func.count(TransferAttempt.id)).where(
                TransferAttempt.hold_id == hold_id,
                TransferAttempt.kind == kind.value,
                TransferAttempt.status == TransferAttemptStatus.FAILED.value,
            )
        ).scalar_one()

    def get_holds_eligible_for_release(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Hold]:
        """Held holds whose release date has passed, earliest first"""
        now = resolve_now(now)
        query = (
            select(Hold)
            .where(Hold.status == HoldStatus.HELD.value, Hold.release_at <= now)
            .order_by(Hold.release_at.asc(), Hold.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return self.session.execute(query).scalars().all()

    def list_payee_holds(self, payee_id: str) -> List[Hold]:
        return self.session.execute(
            select(Hold).where(Hold.payee_id == payee_id).order_by(Hold.created_at.desc(), Hold.id.desc())
        ).scalars().all()

    def list_payer_holds(self, payer_id: str) -> List[Hold]:
        return self.session.execute(
            select(Hold).where(Hold.payer_id == payer_id).order_by(Hold.created_at.desc(), Hold.id.desc())
        ).scalars().all()

    # ============ RELEASE ============

    async def release(self, hold_id: int, payout_destination: str, now: Optional[datetime] = None) -> ReleaseReceipt:
        """
        Pay the held amount to the payee once the guarantee window has elapsed.

        Raises:
            HoldNotFoundError: no such hold
            InvalidStateError: hold is not held (already disputed, released or refunded)
            NotYetEligibleError: release date has not been reached
            TransferFailedError / TransferOutcomeUnknownError: hold stays held, retry later
        """
        now = resolve_now(now)
        if not payout_destination:
            raise ValidationError("A payout destination is required to release funds")

        hold = self.get_hold(hold_id)
        if hold.status != HoldStatus.HELD.value:
            raise InvalidStateError(f"Cannot release funds with status: {hold.status}")
        if now < hold.release_at:
            raise NotYetEligibleError(
                f"Release date has not been reached (hold {hold_id} releases at {hold.release_at.isoformat()})"
            )

        payee_id = hold.payee_id
        outcome = await self.settle_hold(
            hold,
            expected_status=HoldStatus.HELD.value,
            final_status=HoldStatus.RELEASED.value,
            kind=TransferKind.RELEASE.value,
            destination=payout_destination,
            amount=Decimal(hold.amount),
            scope=f"hold-{hold_id}",
            metadata={
                "type": "job_guarantee_release",
                "hold_id": hold_id,
                "payee_id": hold.payee_id,
                "source_id": hold.source_id,
            },
            now=now,
        )
        return ReleaseReceipt(
            hold_id=hold_id,
            payee_id=payee_id,
            amount=outcome.amount,
            destination=outcome.destination,
            transfer_id=outcome.transfer_id,
            idempotency_key=outcome.idempotency_key,
            released_at=outcome.settled_at,
        )

    # ============ TWO-PHASE SETTLEMENT ============

    async def settle_hold(
        self,
        hold: Hold,
        expected_status: str,
        final_status: str,
        kind: str,
        destination: str,
        amount: Decimal,
        scope: str,
        metadata: Dict[str, Any],
        now: datetime,
        on_settled: Optional[Callable[[SettlementOutcome], None]] = None,
    ) -> SettlementOutcome:
        """
        Move money for a hold and then transition it, in that order.

        on_settled runs inside the same transaction as the final hold update,
        so dependent records (the dispute resolution) commit atomically with it.
        """
        hold_id = hold.id
        if not HoldStateValidator.validate_transition(hold_id, expected_status, final_status):
            raise InvalidStateError(f"Cannot move hold {hold_id} from {expected_status} to {final_status}")

        attempt = self._prepare_attempt(hold_id, expected_status, kind, destination, amount, scope, now)
        attempt_id = attempt.id
        idempotency_key = attempt.idempotency_key

        if attempt.status != TransferAttemptStatus.SUCCEEDED.value:
            result = await call_payment_rail(self.payment_rail, attempt, metadata)
            self._record_outcome(hold_id, attempt_id, result, now)
            raise_for_transfer_result(result, idempotency_key)
        else:
            logger.info(f"🔄 SETTLEMENT_RESUMED: {idempotency_key} already confirmed, finalizing hold {hold_id}")

        attempt = self.session.get(TransferAttempt, attempt_id)
        outcome = SettlementOutcome(
            hold_id=hold_id,
            kind=kind,
            amount=Decimal(attempt.amount),
            destination=attempt.destination,
            transfer_id=attempt.external_id,
            idempotency_key=idempotency_key,
            settled_at=now,
        )
        self._finalize(hold_id, expected_status, final_status, outcome, on_settled)
        return outcome

    def _prepare_attempt(
        self,
        hold_id: int,
        expected_status: str,
        kind: str,
        destination: str,
        amount: Decimal,
        scope: str,
        now: datetime,
    ) -> TransferAttempt:
        with atomic_transaction(self.session):
            latest = self.session.execute(
                select(TransferAttempt)
                .where(TransferAttempt.hold_id == hold_id, TransferAttempt.kind == kind)
                .order_by(TransferAttempt.sequence.desc())
                .limit(1)
            ).scalar_one_or_none()

            reuse = latest is not None and (
                latest.status in OPEN_ATTEMPT_STATUSES
                or latest.status == TransferAttemptStatus.SUCCEEDED.value
            )
            if reuse:
                if not same_transfer(latest, destination, amount):
                    raise InvalidStateError(
                        f"Transfer {latest.idempotency_key} for hold {hold_id} is unresolved with a "
                        f"different destination or amount"
                    )
                attempt = latest
            else:
                sequence = latest.sequence + 1 if latest is not None else 1
                attempt = TransferAttempt(
                    idempotency_key=f"{scope}:{kind}:{sequence}",
                    hold_id=hold_id,
                    kind=kind,
                    sequence=sequence,
                    destination=destination,
                    amount=amount,
                    status=TransferAttemptStatus.PENDING.value,
                    created_at=now,
                )
                self.session.add(attempt)

            claimed = self.session.execute(
                update(Hold)
                .where(
                    Hold.id == hold_id,
                    Hold.status == expected_status,
                    or_(Hold.settlement_claim.is_(None), Hold.settlement_claim == attempt.idempotency_key),
                )
                .values(settlement_claim=attempt.idempotency_key, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise self._claim_conflict(hold_id, expected_status)
            self.session.flush()

        logger.info(f"🔒 HOLD_CLAIMED: Hold {hold_id} bound to transfer {attempt.idempotency_key}")
        return attempt

    def _claim_conflict(self, hold_id: int, expected_status: str) -> InvalidStateError:
        row = self.session.execute(
            select(Hold.status, Hold.settlement_claim).where(Hold.id == hold_id)
        ).one()
        if row.status != expected_status:
            return InvalidStateError(f"Cannot settle hold {hold_id} with status: {row.status}")
        return InvalidStateError(
            f"Hold {hold_id} already has a transfer in progress ({row.settlement_claim})"
        )

    def _record_outcome(self, hold_id: int, attempt_id: int, result, now: datetime) -> None:
        with atomic_transaction(self.session):
            attempt = self.session.get(TransferAttempt, attempt_id)
            apply_transfer_result(attempt, result, now)

            if result.status == TransferStatus.FAILED:
                # Confirmed rejection: free the hold so it can be retried or disputed
                self.session.execute(
                    update(Hold)
                    .where(Hold.id == hold_id, Hold.settlement_claim == attempt.idempotency_key)
                    .values(settlement_claim=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        self.session.expire_all()

        if result.status == TransferStatus.SUCCEEDED:
            logger.info(f"✅ TRANSFER_CONFIRMED: Hold {hold_id} transfer {result.transfer_id}")
        elif result.status == TransferStatus.FAILED:
            logger.error(f"❌ TRANSFER_REJECTED: Hold {hold_id}: {result.error}")
        else:
            logger.error(f"⚠️ TRANSFER_UNCONFIRMED: Hold {hold_id}: {result.error}")

    def _finalize(
        self,
        hold_id: int,
        expected_status: str,
        final_status: str,
        outcome: SettlementOutcome,
        on_settled: Optional[Callable[[SettlementOutcome], None]],
    ) -> None:
        values: Dict[str, Any] = {
            "status": final_status,
            "transfer_reference": outcome.transfer_id,
            "updated_at": outcome.settled_at,
        }
        if final_status == HoldStatus.RELEASED.value:
            values["released_at"] = outcome.settled_at
        else:
            values["refunded_at"] = outcome.settled_at
            values["refunded_amount"] = outcome.amount

        with atomic_transaction(self.session):
            moved = self.session.execute(
                update(Hold)
                .where(
                    Hold.id == hold_id,
                    Hold.status == expected_status,
                    Hold.settlement_claim == outcome.idempotency_key,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                row = self.session.execute(
                    select(Hold.status, Hold.settlement_claim).where(Hold.id == hold_id)
                ).one()
                if row.status == final_status and row.settlement_claim == outcome.idempotency_key:
                    logger.info(f"🔄 HOLD_ALREADY_SETTLED: Hold {hold_id} finalized by a concurrent retry")
                    return
                raise InvalidStateError(
                    f"Hold {hold_id} changed to {row.status} while transfer {outcome.idempotency_key} was in flight"
                )
            if on_settled is not None:
                on_settled(outcome)

        self.session.expire_all()
        logger.info(
            f"💰 HOLD_SETTLED: Hold {hold_id} {expected_status} -> {final_status} "
            f"({outcome.amount} to {outcome.destination}, transfer {outcome.transfer_id})"
        )
