"""
Wallet Service - Payee wallet ledger for the platform-custodied funds pool

Every credit lands in the pending balance first and becomes spendable once the
payment method's business-day hold schedule has elapsed. Balance changes are
SQL-side increments/decrements so concurrent requests for the same payee
never overwrite each other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    TransferAttempt,
    TransferAttemptStatus,
    TransferKind,
    Wallet,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
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
from utils.business_days import compute_available_at
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidStateError,
    NotPendingError,
    NotYetEligibleError,
    TransactionNotFoundError,
    ValidationError,
    WalletNotFoundError,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class CreditResult:
    transaction_id: int
    payee_id: str
    amount: Decimal
    status: str
    available_at: Optional[datetime]
    duplicate: bool = False


@dataclass
class WalletBalance:
    available: Decimal
    pending: Decimal

    @property
    def total(self) -> Decimal:
        return self.available + self.pending


@dataclass
class PayoutResult:
    transaction_id: int
    payee_id: str
    amount: Decimal
    status: str
    transfer_id: Optional[str]
    idempotency_key: str
    duplicate: bool = False


class WalletService:
    """Service for wallet credits, pending releases and payouts with atomic guarantees"""

    def __init__(self, session: Session, payment_rail: Optional[PaymentRail] = None):
        self.session = session
        self._payment_rail = payment_rail

    @property
    def payment_rail(self) -> PaymentRail:
        if self._payment_rail is None:
            self._payment_rail = PaymentRailClient()
        return self._payment_rail

    # ============ READS ============

    def get_wallet(self, payee_id: str) -> Optional[Wallet]:
        return self.session.execute(
            select(Wallet).where(Wallet.payee_id == payee_id)
        ).scalar_one_or_none()

    def get_balance(self, payee_id: str) -> WalletBalance:
        """Available and pending balance; a payee with no wallet yet has zero of both"""
        row = self.session.execute(
            select(Wallet.available_balance, Wallet.pending_balance).where(Wallet.payee_id == payee_id)
        ).one_or_none()
        if row is None:
            return WalletBalance(available=ZERO, pending=ZERO)
        return WalletBalance(available=Decimal(row.available_balance), pending=Decimal(row.pending_balance))

    def list_pending_transactions(self, payee_id: str) -> List[WalletTransaction]:
        return self.session.execute(
            select(WalletTransaction)
            .join(Wallet, WalletTransaction.wallet_id == Wallet.id)
            .where(
                Wallet.payee_id == payee_id,
                WalletTransaction.transaction_type == WalletTransactionType.CREDIT.value,
                WalletTransaction.status == WalletTransactionStatus.PENDING.value,
            )
            .order_by(WalletTransaction.available_at.asc(), WalletTransaction.id.asc())
        ).scalars().all()

    def get_due_pending_transactions(self, now: Optional[datetime] = None, limit: int = 100) -> List[WalletTransaction]:
        """Pending credits whose available_at has passed, oldest first"""
        now = resolve_now(now)
        return self.session.execute(
            select(WalletTransaction)
            .where(
                WalletTransaction.transaction_type == WalletTransactionType.CREDIT.value,
                WalletTransaction.status == WalletTransactionStatus.PENDING.value,
                WalletTransaction.available_at <= now,
            )
            .order_by(WalletTransaction.available_at.asc(), WalletTransaction.id.asc())
            .limit(limit)
        ).scalars().all()

    def _find_by_reference(self, reference_id: str) -> Optional[WalletTransaction]:
        return self.session.execute(
            select(WalletTransaction).where(WalletTransaction.reference_id == reference_id)
        ).scalar_one_or_none()

    # ============ CREDIT ============

    def credit(
        self,
        payee_id: str,
        amount,
        payment_method: str,
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditResult:
        """
        Record a received payment as a pending credit.

        The reference_id is the idempotency key of the source event: a replayed
        webhook returns the original transaction with duplicate=True and moves no money.

        Raises:
            InvalidAmountError: amount is not positive
            ValidationError: missing payee or reference
            IdempotencyConflictError: reference already used for another payee or a debit
            IntegrityError: a concurrent insert collided while called inside an
                enclosing atomic_transaction; the caller rolls back and retries
        """
        amount = MonetaryDecimal.positive_amount(amount, "credit")
        if not payee_id:
            raise ValidationError("payee_id is required")
        if not reference_id:
            raise ValidationError("reference_id is required for credits")
        now = resolve_now(now)

        existing = self._find_by_reference(reference_id)
        if existing is not None:
            return self._duplicate_credit(existing, payee_id)

        available_at = compute_available_at(now, payment_method)

        for attempt in range(2):
            try:
                with atomic_transaction(self.session):
                    wallet = self._get_or_create_wallet(payee_id, now)
                    transaction = WalletTransaction(
                        wallet_id=wallet.id,
                        amount=amount,
                        transaction_type=WalletTransactionType.CREDIT.value,
                        status=WalletTransactionStatus.PENDING.value,
                        payment_method=payment_method,
                        reference_id=reference_id,
                        available_at=available_at,
                        description=description,
                        transaction_metadata=metadata,
                        created_at=now,
                    )
                    self.session.add(transaction)
                    self.session.flush()

                    self.session.execute(
                        update(Wallet)
                        .where(Wallet.id == wallet.id)
                        .values(pending_balance=Wallet.pending_balance + amount, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    transaction_id = transaction.id
            except IntegrityError:
                if getattr(self.session, "_atomic_transaction_depth", 0) > 0:
                    # Only the outermost unit of work can roll the failed flush back
                    logger.warning(f"⚠️ CREDIT_RACE: Reference {reference_id} collided inside an open transaction")
                    raise
                existing = self._find_by_reference(reference_id)
                if existing is not None:
                    logger.info(f"🔒 CREDIT_RACE: Reference {reference_id} was recorded concurrently")
                    return self._duplicate_credit(existing, payee_id)
                if attempt == 0:
                    logger.warning(f"⚠️ WALLET_CREATE_RACE: Retrying credit for payee {payee_id}")
                    continue
                raise
            break

        logger.info(
            f"💰 WALLET_CREDIT: {amount} pending for payee {payee_id} via {payment_method} "
            f"(ref {reference_id}, available {available_at.isoformat()})"
        )
        return CreditResult(
            transaction_id=transaction_id,
            payee_id=payee_id,
            amount=amount,
            status=WalletTransactionStatus.PENDING.value,
            available_at=available_at,
        )

    def _get_or_create_wallet(self, payee_id: str, now: datetime) -> Wallet:
        wallet = self.get_wallet(payee_id)
        if wallet is None:
            wallet = Wallet(
                payee_id=payee_id,
                available_balance=ZERO,
                pending_balance=ZERO,
                created_at=now,
                updated_at=now,
            )
            self.session.add(wallet)
            self.session.flush()
            logger.info(f"✅ WALLET_CREATED: payee {payee_id}")
        return wallet

    def _duplicate_credit(self, existing: WalletTransaction, payee_id: str) -> CreditResult:
        wallet = self.session.get(Wallet, existing.wallet_id)
        if existing.transaction_type != WalletTransactionType.CREDIT.value or wallet.payee_id != payee_id:
            raise IdempotencyConflictError(
                f"Reference {existing.reference_id} is already used by another wallet transaction"
            )
        logger.info(f"🔒 DUPLICATE_CREDIT_PREVENTED: Reference {existing.reference_id} already credited")
        return CreditResult(
            transaction_id=existing.id,
            payee_id=payee_id,
            amount=Decimal(existing.amount),
            status=existing.status,
            available_at=existing.available_at,
            duplicate=True,
        )

    # ============ PENDING RELEASE ============

    def release_pending(self, transaction_id: int, now: Optional[datetime] = None, force: bool = False) -> WalletTransaction:
        """
        Move a pending credit into the available balance.

        The status flip and the balance move happen in one transaction; the
        flip is conditional on the row still being pending.
        """
        now = resolve_now(now)
        transaction = self.session.get(WalletTransaction, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Wallet transaction {transaction_id} not found")
        if (
            transaction.transaction_type != WalletTransactionType.CREDIT.value
            or transaction.status != WalletTransactionStatus.PENDING.value
        ):
            raise NotPendingError(
                f"Wallet transaction {transaction_id} is not pending (status: {transaction.status})"
            )
        if not force and transaction.available_at > now:
            raise NotYetEligibleError(
                f"Funds for transaction {transaction_id} are not available until {transaction.available_at.isoformat()}"
            )

        amount = Decimal(transaction.amount)
        wallet_id = transaction.wallet_id

        with atomic_transaction(self.session):
            flipped = self.session.execute(
                update(WalletTransaction)
                .where(
                    WalletTransaction.id == transaction_id,
                    WalletTransaction.status == WalletTransactionStatus.PENDING.value,
                )
                .values(status=WalletTransactionStatus.COMPLETED.value, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise NotPendingError(f"Wallet transaction {transaction_id} was already released")

            moved = self.session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id, Wallet.pending_balance >= amount)
                .values(
                    pending_balance=Wallet.pending_balance - amount,
                    available_balance=Wallet.available_balance + amount,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise InvalidStateError(
                    f"Pending balance of wallet {wallet_id} is lower than transaction {transaction_id}"
                )

        self.session.expire_all()
        logger.info(f"✅ PENDING_RELEASED: Transaction {transaction_id} moved {amount} to available")
        return self.session.get(WalletTransaction, transaction_id)

    # ============ PAYOUT ============

    async def payout(
        self,
        payee_id: str,
        amount,
        destination: str,
        reference_id: str,
        now: Optional[datetime] = None,
    ) -> PayoutResult:
        """
        Pay out available balance to the payee's destination.

        The debit is reserved and committed before the rail is called. A
        confirmed rejection reverses it; an unknown outcome leaves it pending
        so a retry with the same reference_id resumes the same transfer.
        """
        amount = MonetaryDecimal.positive_amount(amount, "payout")
        if not destination:
            raise ValidationError("A payout destination is required")
        if not reference_id:
            raise ValidationError("reference_id is required for payouts")
        now = resolve_now(now)

        existing = self._find_by_reference(reference_id)
        if existing is not None:
            transaction, attempt = self._resume_payout(existing, payee_id, amount, destination)
            if transaction.status == WalletTransactionStatus.COMPLETED.value:
                return self._payout_result(transaction, payee_id, attempt, duplicate=True)
        else:
            transaction, attempt = self._reserve_payout(payee_id, amount, destination, reference_id, now)

        if attempt.status != TransferAttemptStatus.SUCCEEDED.value:
            result = await call_payment_rail(
                self.payment_rail,
                attempt,
                {"type": "payout", "payee_id": payee_id, "reference_id": reference_id},
            )
            self._record_payout_outcome(transaction.id, attempt.id, amount, result, now)
            raise_for_transfer_result(result, attempt.idempotency_key)

        with atomic_transaction(self.session):
            self.session.execute(
                update(WalletTransaction)
                .where(
                    WalletTransaction.id == transaction.id,
                    WalletTransaction.status == WalletTransactionStatus.PENDING.value,
                )
                .values(status=WalletTransactionStatus.COMPLETED.value, completed_at=now)
                .execution_options(synchronize_session=False)
            )
        self.session.expire_all()

        logger.info(f"💰 PAYOUT_COMPLETED: {amount} to payee {payee_id} (ref {reference_id})")
        return self._payout_result(self.session.get(WalletTransaction, transaction.id), payee_id, attempt)

    def _reserve_payout(self, payee_id: str, amount: Decimal, destination: str, reference_id: str, now: datetime):
        try:
            with atomic_transaction(self.session):
                wallet = self.get_wallet(payee_id)
                if wallet is None:
                    raise WalletNotFoundError(f"No wallet for payee {payee_id}")

                debited = self.session.execute(
                    update(Wallet)
                    .where(Wallet.id == wallet.id, Wallet.available_balance >= amount)
                    .values(available_balance=Wallet.available_balance - amount, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if debited.rowcount != 1:
                    raise InsufficientFundsError(
                        f"Insufficient available balance for payout of {amount} (payee {payee_id})"
                    )

                transaction = WalletTransaction(
                    wallet_id=wallet.id,
                    amount=amount,
                    transaction_type=WalletTransactionType.DEBIT.value,
                    status=WalletTransactionStatus.PENDING.value,
                    payment_method="payout",
                    reference_id=reference_id,
                    description="Payout",
                    transaction_metadata={"destination": destination},
                    created_at=now,
                )
                self.session.add(transaction)
                self.session.flush()

                attempt = TransferAttempt(
                    idempotency_key=f"payout:{reference_id}",
                    wallet_transaction_id=transaction.id,
                    kind=TransferKind.PAYOUT.value,
                    sequence=1,
                    destination=destination,
                    amount=amount,
                    status=TransferAttemptStatus.PENDING.value,
                    created_at=now,
                )
                self.session.add(attempt)
                self.session.flush()
        except IntegrityError:
            raise IdempotencyConflictError(f"Payout reference {reference_id} is already in use") from None

        logger.info(f"🔒 PAYOUT_RESERVED: {amount} from payee {payee_id} (ref {reference_id})")
        return transaction, attempt

    def _resume_payout(self, existing: WalletTransaction, payee_id: str, amount: Decimal, destination: str):
        wallet = self.session.get(Wallet, existing.wallet_id)
        if existing.transaction_type != WalletTransactionType.DEBIT.value or wallet.payee_id != payee_id:
            raise IdempotencyConflictError(
                f"Reference {existing.reference_id} is already used by another wallet transaction"
            )
        if existing.status == WalletTransactionStatus.FAILED.value:
            raise IdempotencyConflictError(
                f"Payout {existing.reference_id} was rejected by the payment rail; use a new reference"
            )

        attempt = self.session.execute(
            select(TransferAttempt)
            .where(TransferAttempt.wallet_transaction_id == existing.id)
            .order_by(TransferAttempt.sequence.desc())
            .limit(1)
        ).scalar_one()
        if attempt.status in OPEN_ATTEMPT_STATUSES and not same_transfer(attempt, destination, amount):
            raise IdempotencyConflictError(
                f"Payout {existing.reference_id} is in flight with a different amount or destination"
            )
        logger.info(f"🔄 PAYOUT_RESUMED: Reference {existing.reference_id} (attempt status {attempt.status})")
        return existing, attempt

    def _record_payout_outcome(self, transaction_id: int, attempt_id: int, amount: Decimal, result, now: datetime) -> None:
        with atomic_transaction(self.session):
            attempt = self.session.get(TransferAttempt, attempt_id)
            apply_transfer_result(attempt, result, now)

            if result.status == TransferStatus.FAILED:
                reversed_debit = self.session.execute(
                    update(WalletTransaction)
                    .where(
                        WalletTransaction.id == transaction_id,
                        WalletTransaction.status == WalletTransactionStatus.PENDING.value,
                    )
                    .values(status=WalletTransactionStatus.FAILED.value, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if reversed_debit.rowcount == 1:
                    transaction = self.session.get(WalletTransaction, transaction_id)
                    self.session.execute(
                        update(Wallet)
                        .where(Wallet.id == transaction.wallet_id)
                        .values(available_balance=Wallet.available_balance + amount, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    logger.warning(f"⚠️ PAYOUT_REVERSED: {amount} returned to available (transaction {transaction_id})")
        self.session.expire_all()

    def _payout_result(self, transaction: WalletTransaction, payee_id: str, attempt: TransferAttempt, duplicate: bool = False) -> PayoutResult:
        return PayoutResult(
            transaction_id=transaction.id,
            payee_id=payee_id,
            amount=Decimal(transaction.amount),
            status=transaction.status,
            transfer_id=attempt.external_id,
            idempotency_key=attempt.idempotency_key,
            duplicate=duplicate,
        )
