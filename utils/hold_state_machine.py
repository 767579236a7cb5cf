#!/usr/bin/env python3
"""
Hold State Machine
Explicit hold lifecycle and the tagged state view of a hold row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Set, Union

from models import Hold, HoldStatus

logger = logging.getLogger(__name__)


class HoldStateValidator:
    """Validates hold state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {HoldStatus.HELD.value},
        HoldStatus.HELD.value: {
            HoldStatus.RELEASED.value,   # Window elapsed, paid to payee
            HoldStatus.DISPUTED.value,   # Payer filed within the window
        },
        HoldStatus.DISPUTED.value: {
            HoldStatus.REFUNDED.value,   # Resolved for payer, or split
            HoldStatus.RELEASED.value,   # Resolved for payee
        },
        # Terminal states
        HoldStatus.RELEASED.value: set(),
        HoldStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is valid"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def validate_transition(cls, hold_id: int, current_status: Optional[str], new_status: str) -> bool:
        if cls.is_valid_transition(current_status, new_status):
            return True
        logger.error(
            f"❌ HOLD_STATE: Invalid transition for hold {hold_id}: {current_status} -> {new_status}"
        )
        return False


# ============ TAGGED STATE ============


@dataclass(frozen=True)
class HeldHold:
    hold_id: int
    release_at: datetime
    settlement_claim: Optional[str] = None


@dataclass(frozen=True)
class DisputedHold:
    hold_id: int
    dispute_id: int
    case_number: str


@dataclass(frozen=True)
class ReleasedHold:
    hold_id: int
    released_at: Optional[datetime]
    transfer_reference: Optional[str]


@dataclass(frozen=True)
class RefundedHold:
    hold_id: int
    refunded_at: Optional[datetime]
    refunded_amount: Optional[Decimal]
    transfer_reference: Optional[str]


HoldState = Union[HeldHold, DisputedHold, ReleasedHold, RefundedHold]


def hold_state(hold: Hold) -> HoldState:
    """Typed view of a hold; the dispute reference only exists on the disputed variant"""
    if hold.status == HoldStatus.HELD.value:
        return HeldHold(hold.id, hold.release_at, hold.settlement_claim)
    if hold.status == HoldStatus.DISPUTED.value:
        if hold.dispute is None:
            raise ValueError(f"Hold {hold.id} is disputed but has no dispute record")
        return DisputedHold(hold.id, hold.dispute.id, hold.dispute.case_number)
    if hold.status == HoldStatus.RELEASED.value:
        return ReleasedHold(hold.id, hold.released_at, hold.transfer_reference)
    if hold.status == HoldStatus.REFUNDED.value:
        return RefundedHold(hold.id, hold.refunded_at, hold.refunded_amount, hold.transfer_reference)
    raise ValueError(f"Hold {hold.id} has unknown status {hold.status!r}")
