"""
Held-Funds Settlement - Database Schema
=======================================

Schema for the platform-custodied funds pool:
- Payee wallets with pending (held) and available balances
- Immutable wallet ledger entries keyed by source-event reference
- Job-guarantee holds, disputes, evidence and timeline
- Durable payment-rail transfer attempts
- Per-tenant usage counters and notification de-duplication records

All timestamps are stored as naive UTC.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class WalletTransactionType(Enum):
    """Ledger entry direction"""
    CREDIT = "credit"
    DEBIT = "debit"


class WalletTransactionStatus(Enum):
    """Ledger entry lifecycle"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"  # Payout debits only, reversed back to available


class HoldStatus(Enum):
    """Job-guarantee hold lifecycle states"""
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class DisputeStatus(Enum):
    """Dispute lifecycle"""
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeResolution(Enum):
    """Who the adjudicator decided for"""
    PAYER = "payer"
    PAYEE = "payee"
    SPLIT = "split"


class DisputeResolutionType(Enum):
    """Recorded outcome of a resolved dispute"""
    REFUND_FULL = "refund_full"
    REFUND_PARTIAL = "refund_partial"
    DISMISSED = "dismissed"
    MEDIATED_AGREEMENT = "mediated_agreement"


class TransferKind(Enum):
    """Direction of an outbound payment-rail transfer"""
    RELEASE = "release"  # Hold amount to payee
    REFUND = "refund"    # Hold amount (or part) back to payer
    PAYOUT = "payout"    # Available wallet balance to payee


class TransferAttemptStatus(Enum):
    """Durable outcome of a payment-rail call"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


class NotificationQueueStatus(Enum):
    """Outbound notification delivery state"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ============================================================================
# LEDGER
# ============================================================================

class Wallet(Base):
    """Payee balances held by the platform"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payee_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # Spendable now vs. still inside the settlement hold schedule
    available_balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    pending_balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    transactions: Mapped[list["WalletTransaction"]] = relationship("WalletTransaction", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('available_balance >= 0', name='ck_wallet_available_positive'),
        CheckConstraint('pending_balance >= 0', name='ck_wallet_pending_positive'),
    )

    def __repr__(self):
        return (
            f"<Wallet(payee_id={self.payee_id}, available={self.available_balance}, "
            f"pending={self.pending_balance})>"
        )


class WalletTransaction(Base):
    """Immutable ledger entry for a wallet"""
    __tablename__ = 'wallet_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey('wallets.id'), nullable=False, index=True)

    amount = Column(Numeric(38, 18), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=WalletTransactionStatus.PENDING.value)
    payment_method = Column(String(50), nullable=True)

    # Idempotency key of the originating payment event
    reference_id = Column(String(255), nullable=False)

    available_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    description = Column(Text, nullable=True)
    transaction_metadata = Column("metadata", JSON, nullable=True)

    wallet = relationship("Wallet", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('reference_id', name='uq_wallet_transaction_reference'),
        CheckConstraint('amount > 0', name='ck_wallet_transaction_amount_positive'),
        CheckConstraint(
            "status != 'pending' OR transaction_type != 'credit' OR available_at IS NOT NULL",
            name='ck_wallet_transaction_pending_available_at',
        ),
        Index('ix_wallet_transactions_status_available', 'status', 'available_at'),
    )

    def __repr__(self):
        return (
            f"<WalletTransaction(id={self.id}, type={self.transaction_type}, "
            f"amount={self.amount}, status={self.status})>"
        )


# ============================================================================
# HOLDS AND DISPUTES
# ============================================================================

class Hold(Base):
    """Job-guarantee hold on funds received for completed work"""
    __tablename__ = 'holds'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payee_id = Column(String(64), nullable=False, index=True)
    payer_id = Column(String(64), nullable=False, index=True)
    source_id = Column(String(255), nullable=False)  # Originating job / payment reference

    amount = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), nullable=False, default=HoldStatus.HELD.value)

    held_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    release_at = Column(DateTime, nullable=False)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refunded_amount = Column(Numeric(38, 18), nullable=True)
    transfer_reference = Column(String(255), nullable=True)  # Rail id of the settling transfer

    # Idempotency key of the transfer currently bound to this hold
    settlement_claim = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    dispute = relationship("Dispute", back_populates="hold", uselist=False)
    transfer_attempts = relationship("TransferAttempt", back_populates="hold", order_by="TransferAttempt.sequence")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_hold_amount_positive'),
        CheckConstraint(
            "status IN ('held', 'released', 'disputed', 'refunded')",
            name='ck_hold_status_valid',
        ),
        Index('ix_holds_status_release_at', 'status', 'release_at'),
    )

    def __repr__(self):
        return f"<Hold(id={self.id}, payee_id={self.payee_id}, amount={self.amount}, status={self.status})>"


class Dispute(Base):
    """Payer dispute against a held job guarantee"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_number = Column(String(32), unique=True, nullable=False, index=True)  # DSP-YYYYMMDD-NNNN
    hold_id = Column(Integer, ForeignKey("holds.id"), unique=True, nullable=False)

    payee_id = Column(String(64), nullable=False, index=True)
    payer_id = Column(String(64), nullable=False, index=True)
    filed_by = Column(String(64), nullable=False)

    reason = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)
    desired_resolution = Column(String(50), nullable=True)
    priority = Column(String(20), default="high", nullable=False)

    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    resolution = Column(String(20), nullable=True)
    resolution_type = Column(String(30), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)

    disputed_amount = Column(Numeric(38, 18), nullable=False)
    escrow_held = Column(Numeric(38, 18), nullable=False)
    refund_amount = Column(Numeric(38, 18), nullable=True)

    response_deadline = Column(DateTime, nullable=False)
    resolution_deadline = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    hold = relationship("Hold", back_populates="dispute")
    evidence = relationship("DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.id")
    timeline = relationship("DisputeTimelineEntry", back_populates="dispute", order_by="DisputeTimelineEntry.id")

    __table_args__ = (
        CheckConstraint("status IN ('open', 'resolved')", name='ck_dispute_status_valid'),
        Index('ix_disputes_payee_resolved', 'payee_id', 'status', 'resolved_at'),
    )

    def __repr__(self):
        return f"<Dispute(case_number={self.case_number}, status={self.status}, hold_id={self.hold_id})>"


class DisputeEvidence(Base):
    """Evidence attached to a dispute (stored elsewhere, referenced here)"""
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=False, index=True)
    uploaded_by = Column(String(64), nullable=False)
    evidence_type = Column(String(50), nullable=False, default="document")
    file_url = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence")


class DisputeTimelineEntry(Base):
    """Audit trail of dispute events"""
    __tablename__ = "dispute_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    actor_id = Column(String(64), nullable=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    dispute = relationship("Dispute", back_populates="timeline")


class TransferAttempt(Base):
    """Durable record of an outbound payment-rail transfer"""
    __tablename__ = "transfer_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    hold_id = Column(Integer, ForeignKey("holds.id"), nullable=True, index=True)
    wallet_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True, index=True)

    kind = Column(String(20), nullable=False)
    sequence = Column(Integer, nullable=False, default=1)
    destination = Column(String(255), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)

    status = Column(String(20), nullable=False, default=TransferAttemptStatus.PENDING.value)
    external_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    hold = relationship("Hold", back_populates="transfer_attempts")

    __table_args__ = (
        UniqueConstraint('hold_id', 'kind', 'sequence', name='uq_transfer_attempt_sequence'),
        Index('ix_transfer_attempts_status', 'status'),
    )

    def __repr__(self):
        return f"<TransferAttempt(key={self.idempotency_key}, status={self.status}, amount={self.amount})>"


# ============================================================================
# USAGE AND NOTIFICATIONS
# ============================================================================

class UsageCounter(Base):
    """Per-tenant feature usage counters"""
    __tablename__ = "usage_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    active_jobs_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    invoices_this_month: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_customers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    team_members_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    inventory_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    equipment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_leads_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_reset_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<UsageCounter(tenant_id={self.tenant_id}, last_reset_date={self.last_reset_date})>"


class NotificationRecord(Base):
    """De-duplication marker for a fired notification"""
    __tablename__ = "notification_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False)
    feature = Column(String(50), nullable=False)
    threshold_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_notification_records_key', 'subject_id', 'feature', 'threshold_type', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<NotificationRecord(subject_id={self.subject_id}, feature={self.feature}, "
            f"threshold_type={self.threshold_type})>"
        )


class NotificationQueue(Base):
    """Outbound notifications awaiting delivery"""
    __tablename__ = 'notification_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)

    subject_id = Column(String(64), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="email")
    recipient = Column(String(255), nullable=True)
    template_kind = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(String(20), default=NotificationQueueStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    # Prevents the same notification from being enqueued twice
    idempotency_key = Column(String(255), unique=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_notification_queue_status_created', 'status', 'created_at'),
    )


class SubscriptionProfile(Base):
    """Tenant/contractor profile used for limits, notifications and payouts"""
    __tablename__ = "subscription_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tier: Mapped[str] = mapped_column(String(30), default="starter", nullable=False)
    billing_period_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payout_destination: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<SubscriptionProfile(subject_id={self.subject_id}, tier={self.tier})>"
