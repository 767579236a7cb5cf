"""
Dispute Resolution Service
Payer disputes against job-guarantee holds: filing, adjudication and complaint history.

Filing diverts a held hold into the dispute workflow with a conditional update,
so a dispute and a release can never both win. Resolution moves money through
HoldManager's two-phase settlement, keyed by the case number, and the dispute is
only marked resolved in the same transaction that finalizes the hold.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Dispute,
    DisputeEvidence,
    DisputeResolution,
    DisputeResolutionType,
    DisputeStatus,
    DisputeTimelineEntry,
    Hold,
    HoldStatus,
    TransferKind,
)
from services.hold_manager import HoldManager, SettlementOutcome
from services.notification_queue import NotificationQueueService
from services.payment_rail import PaymentRail
from services.profile_lookup import DatabaseProfileLookup, ProfileLookup
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    AlreadyResolvedError,
    DisputeNotFoundError,
    InvalidStateError,
    ValidationError,
    WindowExpiredError,
    isolate_notification_failure,
)

logger = logging.getLogger(__name__)

UPHELD_RESOLUTION_TYPES = (
    DisputeResolutionType.REFUND_FULL.value,
    DisputeResolutionType.REFUND_PARTIAL.value,
)


def generate_case_number(now: datetime) -> str:
    """DSP-YYYYMMDD-NNNN with a random suffix; uniqueness is enforced by the table"""
    return f"DSP-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


@dataclass
class DisputeResolutionResult:
    dispute_id: int
    case_number: str
    hold_id: int
    resolution: str
    resolution_type: str
    transfer_kind: str
    transfer_amount: Decimal
    refund_amount: Decimal
    remainder: Decimal  # Part of the hold not refunded on a split/capped refund; caller decides its fate
    destination: str
    transfer_id: Optional[str]
    idempotency_key: str
    resolved_at: datetime


class ComplaintHistory(NamedTuple):
    """Advisory flag for payees with repeated upheld complaints"""

    should_flag: bool
    upheld_count: int
    threshold: int


class DisputeResolutionService:
    """Service for dispute filing and atomic dispute resolution"""

    def __init__(
        self,
        session: Session,
        hold_manager: Optional[HoldManager] = None,
        payment_rail: Optional[PaymentRail] = None,
        notification_queue: Optional[NotificationQueueService] = None,
        profile_lookup: Optional[ProfileLookup] = None,
        case_number_generator: Callable[[datetime], str] = generate_case_number,
    ):
        self.session = session
        self.hold_manager = hold_manager or HoldManager(session, payment_rail=payment_rail)
        self.profile_lookup = profile_lookup or DatabaseProfileLookup(session)
        self.notification_queue = notification_queue or NotificationQueueService(session, self.profile_lookup)
        self.case_number_generator = case_number_generator

    # ============ QUERIES ============

    def get_dispute(self, dispute_id: int) -> Dispute:
        dispute = self.session.get(Dispute, dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    def get_dispute_by_case_number(self, case_number: str) -> Dispute:
        dispute = self.session.execute(
            select(Dispute).where(Dispute.case_number == case_number)
        ).scalar_one_or_none()
        if dispute is None:
            raise DisputeNotFoundError(f"Dispute {case_number} not found")
        return dispute

    # ============ FILING ============

    def file_dispute(
        self,
        hold_id: int,
        filed_by: str,
        reason: str,
        evidence: Optional[Iterable[Union[str, Dict[str, Any]]]] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        desired_resolution: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """
        Open a dispute on a held hold while its guarantee window is still open.

        Evidence items are either file URLs or dicts with file_url, evidence_type
        and description.

        Raises:
            HoldNotFoundError: no such hold
            InvalidStateError: hold is not held, or a release transfer is in flight
            WindowExpiredError: the release date has passed
        """
        now = resolve_now(now)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to file a dispute")
        if not filed_by:
            raise ValidationError("filed_by is required")
        evidence_items = self._normalize_evidence(evidence)

        hold = self.hold_manager.get_hold(hold_id)
        self._check_disputable(hold, now)
        payee_id, payer_id, amount = hold.payee_id, hold.payer_id, Decimal(hold.amount)

        attempts = Config.DISPUTE_CASE_NUMBER_ATTEMPTS
        for attempt in range(1, attempts + 1):
            case_number = self.case_number_generator(now)
            try:
                with atomic_transaction(self.session):
                    diverted = self.session.execute(
                        update(Hold)
                        .where(
                            Hold.id == hold_id,
                            Hold.status == HoldStatus.HELD.value,
                            Hold.settlement_claim.is_(None),
                            Hold.release_at >= now,
                        )
                        .values(status=HoldStatus.DISPUTED.value, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if diverted.rowcount != 1:
                        raise self._filing_conflict(hold_id, now)

                    dispute = Dispute(
                        case_number=case_number,
                        hold_id=hold_id,
                        payee_id=payee_id,
                        payer_id=payer_id,
                        filed_by=filed_by,
                        reason=reason.strip(),
                        description=description,
                        category=category,
                        desired_resolution=desired_resolution,
                        priority="high",
                        status=DisputeStatus.OPEN.value,
                        disputed_amount=amount,
                        escrow_held=amount,
                        response_deadline=now + timedelta(hours=Config.DISPUTE_RESPONSE_HOURS),
                        resolution_deadline=now + timedelta(days=Config.DISPUTE_RESOLUTION_DAYS),
                        created_at=now,
                    )
                    self.session.add(dispute)
                    self.session.flush()

                    for item in evidence_items:
                        self.session.add(DisputeEvidence(dispute_id=dispute.id, uploaded_by=filed_by, created_at=now, **item))
                    self.session.add(
                        DisputeTimelineEntry(
                            dispute_id=dispute.id,
                            event_type="dispute_filed",
                            actor_id=filed_by,
                            message=f"Dispute {case_number} filed: {reason.strip()}",
                            created_at=now,
                        )
                    )
                    self.session.flush()
                    dispute_id = dispute.id
            except IntegrityError:
                self.session.expire_all()
                logger.warning(
                    f"⚠️ CASE_NUMBER_COLLISION: {case_number} already taken (attempt {attempt}/{attempts})"
                )
                continue

            self.session.expire_all()
            logger.info(
                f"🔒 DISPUTE_FILED: {case_number} on hold {hold_id} by {filed_by} "
                f"(amount {amount}, {len(evidence_items)} evidence items)"
            )
            self._notify_dispute_filed(dispute_id, now)
            return self.get_dispute(dispute_id)

        raise InvalidStateError(f"Could not allocate a unique case number after {attempts} attempts")

    def _check_disputable(self, hold: Hold, now: datetime) -> None:
        if hold.status != HoldStatus.HELD.value:
            raise InvalidStateError(f"Cannot dispute funds with status: {hold.status}")
        if now > hold.release_at:
            raise WindowExpiredError("Dispute window has expired")
        if hold.settlement_claim is not None:
            raise InvalidStateError("Funds are being released and can no longer be disputed")

    def _filing_conflict(self, hold_id: int, now: datetime) -> Exception:
        self.session.expire_all()
        hold = self.hold_manager.get_hold(hold_id)
        try:
            self._check_disputable(hold, now)
        except (InvalidStateError, WindowExpiredError) as e:
            return e
        return InvalidStateError(f"Hold {hold_id} changed while the dispute was being filed")

    @staticmethod
    def _normalize_evidence(evidence) -> List[Dict[str, Any]]:
        items = []
        for entry in evidence or []:
            if isinstance(entry, str):
                entry = {"file_url": entry}
            if not entry.get("file_url"):
                raise ValidationError("Evidence must include a file_url")
            items.append(
                {
                    "file_url": entry["file_url"],
                    "evidence_type": entry.get("evidence_type") or "document",
                    "description": entry.get("description"),
                }
            )
        return items

    # ============ RESOLUTION ============

    async def resolve_dispute(
        self,
        dispute_id: int,
        resolution: Union[str, DisputeResolution],
        refund_amount=None,
        payout_destination: Optional[str] = None,
        refund_destination: Optional[str] = None,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DisputeResolutionResult:
        """
        Adjudicate an open dispute and move the held funds accordingly.

        payer: refund min(requested or full amount, coverage cap) back to the payer
        payee: pay the full amount to the payee regardless of the release date
        split: refund min(requested or half, coverage cap), the rest is reported back

        The dispute is resolved only after the transfer is confirmed. Transfer
        errors propagate and leave the dispute open for a retry.
        """
        now = resolve_now(now)
        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown dispute resolution: {resolution}") from None

        dispute = self.get_dispute(dispute_id)
        if dispute.status == DisputeStatus.RESOLVED.value:
            raise AlreadyResolvedError(f"Dispute {dispute.case_number} has already been resolved")

        hold = self.hold_manager.get_hold(dispute.hold_id)
        hold_amount = Decimal(hold.amount)
        case_number = dispute.case_number
        hold_id = hold.id

        if resolution == DisputeResolution.PAYEE:
            destination = payout_destination or self._payee_destination(hold.payee_id)
            kind = TransferKind.RELEASE.value
            final_status = HoldStatus.RELEASED.value
            transfer_amount = hold_amount
            refund = Decimal("0")
            resolution_type = DisputeResolutionType.DISMISSED.value
        else:
            destination = refund_destination or hold.source_id
            kind = TransferKind.REFUND.value
            final_status = HoldStatus.REFUNDED.value
            refund = self._refund_amount(resolution, hold_amount, refund_amount, case_number)
            transfer_amount = refund
            if resolution == DisputeResolution.SPLIT:
                resolution_type = DisputeResolutionType.MEDIATED_AGREEMENT.value
            elif refund == hold_amount:
                resolution_type = DisputeResolutionType.REFUND_FULL.value
            else:
                resolution_type = DisputeResolutionType.REFUND_PARTIAL.value

        def mark_resolved(outcome: SettlementOutcome) -> None:
            resolved = self.session.execute(
                update(Dispute)
                .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN.value)
                .values(
                    status=DisputeStatus.RESOLVED.value,
                    resolution=resolution.value,
                    resolution_type=resolution_type,
                    refund_amount=refund,
                    resolved_by=resolved_by,
                    resolution_notes=notes,
                    resolved_at=outcome.settled_at,
                )
                .execution_options(synchronize_session=False)
            )
            if resolved.rowcount != 1:
                logger.warning(f"⚠️ DISPUTE_ALREADY_RESOLVED: {case_number} resolved concurrently")
                return
            self.session.add(
                DisputeTimelineEntry(
                    dispute_id=dispute_id,
                    event_type="dispute_resolved",
                    actor_id=resolved_by,
                    message=(
                        f"Resolved for {resolution.value} ({resolution_type}): "
                        f"{outcome.amount} to {outcome.destination}"
                    ),
                    created_at=outcome.settled_at,
                )
            )

        outcome = await self.hold_manager.settle_hold(
            hold,
            expected_status=HoldStatus.DISPUTED.value,
            final_status=final_status,
            kind=kind,
            destination=destination,
            amount=transfer_amount,
            scope=case_number,
            metadata={
                "type": "dispute_resolution",
                "case_number": case_number,
                "hold_id": hold_id,
                "resolution": resolution.value,
            },
            now=now,
            on_settled=mark_resolved,
        )

        result = DisputeResolutionResult(
            dispute_id=dispute_id,
            case_number=case_number,
            hold_id=hold_id,
            resolution=resolution.value,
            resolution_type=resolution_type,
            transfer_kind=kind,
            transfer_amount=outcome.amount,
            refund_amount=refund,
            remainder=hold_amount - transfer_amount,
            destination=outcome.destination,
            transfer_id=outcome.transfer_id,
            idempotency_key=outcome.idempotency_key,
            resolved_at=outcome.settled_at,
        )
        logger.info(
            f"✅ DISPUTE_RESOLVED: {case_number} for {resolution.value} ({resolution_type}), "
            f"{kind} {outcome.amount} to {outcome.destination}, remainder {result.remainder}"
        )
        self._notify_dispute_resolved(dispute_id, result)
        return result

    def _refund_amount(self, resolution: DisputeResolution, hold_amount: Decimal, requested, case_number: str) -> Decimal:
        cap = min(hold_amount, Decimal(str(Config.MAX_COVERAGE_PER_CASE)))
        if requested is not None:
            amount = MonetaryDecimal.positive_amount(requested, "refund")
        elif resolution == DisputeResolution.SPLIT:
            amount = (hold_amount / 2).quantize(MonetaryDecimal.USD_PRECISION, rounding=ROUND_HALF_UP)
        else:
            amount = hold_amount

        if amount > cap:
            logger.warning(f"⚠️ REFUND_CAPPED: {case_number} requested {amount}, capped at {cap}")
            amount = cap
        return amount

    def _payee_destination(self, payee_id: str) -> str:
        profile = self.profile_lookup.get_profile(payee_id)
        if profile is None or not profile.payout_destination:
            raise ValidationError(f"No payout destination for payee {payee_id}")
        return profile.payout_destination

    # ============ COMPLAINT HISTORY ============

    def count_upheld_complaints(
        self, payee_id: str, window_days: Optional[int] = None, now: Optional[datetime] = None
    ) -> int:
        """Disputes resolved in the payer's favour (full or partial refund) within the window"""
        now = resolve_now(now)
        window_days = Config.COMPLAINT_WINDOW_DAYS if window_days is None else window_days
        since = now - timedelta(days=window_days)
        return self.session.execute(
            select(func.count(Dispute.id)).where(
                Dispute.payee_id == payee_id,
                Dispute.status == DisputeStatus.RESOLVED.value,
                Dispute.resolution_type.in_(UPHELD_RESOLUTION_TYPES),
                Dispute.resolved_at >= since,
            )
        ).scalar_one()

    def check_payee_complaint_history(self, payee_id: str, now: Optional[datetime] = None) -> ComplaintHistory:
        upheld = self.count_upheld_complaints(payee_id, now=now)
        threshold = Config.COMPLAINT_FLAG_THRESHOLD
        history = ComplaintHistory(should_flag=upheld >= threshold, upheld_count=upheld, threshold=threshold)
        if history.should_flag:
            logger.warning(
                f"⚠️ COMPLAINT_HISTORY: Payee {payee_id} has {upheld} upheld complaints "
                f"in {Config.COMPLAINT_WINDOW_DAYS} days (threshold {threshold})"
            )
        return history

    # ============ NOTIFICATIONS ============

    @isolate_notification_failure
    def _notify_dispute_filed(self, dispute_id: int, now: datetime) -> None:
        dispute = self.get_dispute(dispute_id)
        payload = {
            "case_number": dispute.case_number,
            "hold_id": dispute.hold_id,
            "amount": str(dispute.disputed_amount),
            "reason": dispute.reason,
            "response_deadline": dispute.response_deadline.isoformat(),
        }
        with atomic_transaction(self.session):
            for subject_id in (dispute.payee_id, dispute.payer_id):
                self.notification_queue.enqueue(
                    subject_id,
                    "dispute_filed",
                    payload,
                    idempotency_key=f"dispute_filed:{dispute.case_number}:{subject_id}",
                    now=now,
                )

    @isolate_notification_failure
    def _notify_dispute_resolved(self, dispute_id: int, result: DisputeResolutionResult) -> None:
        dispute = self.get_dispute(dispute_id)
        payload = {
            "case_number": result.case_number,
            "resolution": result.resolution,
            "resolution_type": result.resolution_type,
            "refund_amount": str(result.refund_amount),
            "remainder": str(result.remainder),
        }
        with atomic_transaction(self.session):
            for subject_id in (dispute.payee_id, dispute.payer_id):
                self.notification_queue.enqueue(
                    subject_id,
                    "dispute_resolved",
                    payload,
                    idempotency_key=f"dispute_resolved:{result.case_number}:{subject_id}",
                    now=result.resolved_at,
                )
