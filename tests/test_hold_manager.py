"""
Job-guarantee hold tests: creation, release gate and two-phase settlement
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from models import Hold, HoldStatus, TransferAttempt, TransferAttemptStatus
from services.hold_manager import HoldManager
from services.payment_rail import PaymentRailClient, TransferResult, TransferStatus
from utils.exception_handler import (
    HoldNotFoundError,
    InvalidAmountError,
    InvalidStateError,
    NotYetEligibleError,
    TransferFailedError,
    TransferOutcomeUnknownError,
    ValidationError,
)
from utils.hold_state_machine import HeldHold, ReleasedHold


class ScriptedResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        return self._body

    async def text(self):
        return str(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class ScriptedRailSession:
    """Plays back one HTTP outcome per POST and records the idempotency keys sent"""

    def __init__(self, steps):
        self.steps = list(steps)
        self.sent_keys = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.sent_keys.append(headers["Idempotency-Key"])
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class TestHoldCreation:
    """Holds start held with a release date at the end of the window"""

    def test_create_hold(self, db_session, now):
        hold = HoldManager(db_session).create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)

        assert hold.status == HoldStatus.HELD.value
        assert hold.release_at == now + timedelta(days=7)
        assert hold.amount == Decimal("500")
        assert hold.settlement_claim is None

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    def test_non_positive_amount_rejected(self, db_session, now, amount):
        with pytest.raises(InvalidAmountError):
            HoldManager(db_session).create_hold("payee-1", "payer-1", amount, "job-42", now=now)

        assert db_session.query(Hold).count() == 0

    def test_missing_source_rejected(self, db_session, now):
        with pytest.raises(ValidationError):
            HoldManager(db_session).create_hold("payee-1", "payer-1", Decimal("5"), "", now=now)

    def test_eligible_holds_ordered_by_release_date(self, db_session, now):
        manager = HoldManager(db_session)
        later = manager.create_hold("payee-1", "payer-1", Decimal("10"), "job-a", now=now + timedelta(days=1))
        earlier = manager.create_hold("payee-2", "payer-1", Decimal("20"), "job-b", now=now)
        manager.create_hold("payee-3", "payer-1", Decimal("30"), "job-c", now=now + timedelta(days=5))

        eligible = manager.get_holds_eligible_for_release(now=now + timedelta(days=8))

        assert [hold.id for hold in eligible] == [earlier.id, later.id]

    def test_listing_by_party(self, db_session, now):
        manager = HoldManager(db_session)
        first = manager.create_hold("payee-1", "payer-1", Decimal("10"), "job-a", now=now)
        second = manager.create_hold("payee-1", "payer-2", Decimal("20"), "job-b", now=now + timedelta(hours=1))

        assert [hold.id for hold in manager.list_payee_holds("payee-1")] == [second.id, first.id]
        assert [hold.id for hold in manager.list_payer_holds("payer-2")] == [second.id]


class TestHoldRelease:
    """Release only after the window, and only on a confirmed transfer"""

    @pytest.mark.asyncio
    async def test_release_before_window_is_rejected(self, db_session, now, payment_rail):
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)

        with pytest.raises(NotYetEligibleError, match="Release date has not been reached"):
            await manager.release(hold.id, "acct_payee", now=now + timedelta(days=3))

        assert manager.get_hold(hold.id).status == HoldStatus.HELD.value
        payment_rail.transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_after_window(self, db_session, now, payment_rail):
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        release_time = now + timedelta(days=8)

        receipt = await manager.release(hold.id, "acct_payee", now=release_time)

        assert receipt.amount == Decimal("500")
        assert receipt.transfer_id == "tr_1"
        assert receipt.idempotency_key == f"hold-{hold.id}:release:1"
        stored = manager.get_hold(hold.id)
        assert stored.status == HoldStatus.RELEASED.value
        assert stored.released_at == release_time
        assert stored.transfer_reference == "tr_1"
        assert isinstance(manager.get_hold_state(hold.id), ReleasedHold)

    @pytest.mark.asyncio
    async def test_release_exactly_at_release_date(self, db_session, now, payment_rail):
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)

        await manager.release(hold.id, "acct_payee", now=hold.release_at)

        assert manager.get_hold(hold.id).status == HoldStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_second_release_is_invalid_state(self, db_session, now, payment_rail):
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        await manager.release(hold.id, "acct_payee", now=now + timedelta(days=8))

        with pytest.raises(InvalidStateError, match="Cannot release funds with status: released"):
            await manager.release(hold.id, "acct_payee", now=now + timedelta(days=9))

        assert payment_rail.transfer.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_hold(self, db_session, now, payment_rail):
        with pytest.raises(HoldNotFoundError):
            await HoldManager(db_session, payment_rail=payment_rail).release(404, "acct", now=now)

    @pytest.mark.asyncio
    async def test_rejected_transfer_leaves_hold_held_and_unclaimed(self, db_session, now, payment_rail):
        payment_rail.transfer.side_effect = None
        payment_rail.transfer.return_value = TransferResult(TransferStatus.FAILED, error="invalid destination")
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)

        with pytest.raises(TransferFailedError):
            await manager.release(hold.id, "acct_bad", now=now + timedelta(days=8))

        stored = manager.get_hold(hold.id)
        assert stored.status == HoldStatus.HELD.value
        assert stored.settlement_claim is None, "Confirmed failure frees the hold"
        attempt = db_session.query(TransferAttempt).one()
        assert attempt.status == TransferAttemptStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_retry_after_rejection_uses_new_attempt(self, db_session, now, payment_rail):
        payment_rail.transfer.side_effect = [
            TransferResult(TransferStatus.FAILED, error="invalid destination"),
            TransferResult(TransferStatus.SUCCEEDED, transfer_id="tr_ok"),
        ]
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        with pytest.raises(TransferFailedError):
            await manager.release(hold.id, "acct_bad", now=now + timedelta(days=8))

        receipt = await manager.release(hold.id, "acct_good", now=now + timedelta(days=8))

        assert receipt.idempotency_key == f"hold-{hold.id}:release:2"
        assert receipt.destination == "acct_good"

    @pytest.mark.asyncio
    async def test_unknown_outcome_keeps_claim_and_retries_same_key(self, db_session, now, payment_rail):
        payment_rail.transfer.side_effect = [
            TransferResult(TransferStatus.UNKNOWN, error="Transfer timed out"),
            TransferResult(TransferStatus.SUCCEEDED, transfer_id="tr_late"),
        ]
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        release_time = now + timedelta(days=8)

        with pytest.raises(TransferOutcomeUnknownError):
            await manager.release(hold.id, "acct_payee", now=release_time)

        stored = manager.get_hold(hold.id)
        assert stored.status == HoldStatus.HELD.value, "Never released without confirmation"
        assert stored.settlement_claim == f"hold-{hold.id}:release:1"
        state = manager.get_hold_state(hold.id)
        assert isinstance(state, HeldHold)
        assert state.settlement_claim == f"hold-{hold.id}:release:1"

        receipt = await manager.release(hold.id, "acct_payee", now=release_time)

        assert receipt.transfer_id == "tr_late"
        keys = [call.args[3] for call in payment_rail.transfer.call_args_list]
        assert keys == [f"hold-{hold.id}:release:1"] * 2
        assert db_session.query(TransferAttempt).count() == 1

    @pytest.mark.asyncio
    async def test_conflict_while_in_progress_keeps_claim_and_key(self, db_session, now):
        session = ScriptedRailSession(
            [
                asyncio.TimeoutError(),
                ScriptedResponse(409, {"error": {"message": "Request with this key is in progress"}}),
                ScriptedResponse(200, {"id": "tr_landed", "status": "paid"}),
            ]
        )
        rail = PaymentRailClient(base_url="https://rail.example.com/v1", api_key="sk_test", session=session)
        manager = HoldManager(db_session, payment_rail=rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        release_time = now + timedelta(days=8)

        with pytest.raises(TransferOutcomeUnknownError):
            await manager.release(hold.id, "acct_payee", now=release_time)
        with pytest.raises(TransferOutcomeUnknownError):
            await manager.release(hold.id, "acct_payee", now=release_time)

        stored = manager.get_hold(hold.id)
        assert stored.status == HoldStatus.HELD.value
        assert stored.settlement_claim == f"hold-{hold.id}:release:1", "A 409 is not a confirmed rejection"

        receipt = await manager.release(hold.id, "acct_payee", now=release_time)

        assert receipt.transfer_id == "tr_landed"
        assert session.sent_keys == [f"hold-{hold.id}:release:1"] * 3
        assert db_session.query(TransferAttempt).count() == 1
        assert manager.get_hold(hold.id).status == HoldStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_in_flight_transfer_blocks_different_destination(self, db_session, now, payment_rail):
        payment_rail.transfer.side_effect = None
        payment_rail.transfer.return_value = TransferResult(TransferStatus.UNKNOWN, error="HTTP 502")
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        with pytest.raises(TransferOutcomeUnknownError):
            await manager.release(hold.id, "acct_one", now=now + timedelta(days=8))

        with pytest.raises(InvalidStateError):
            await manager.release(hold.id, "acct_two", now=now + timedelta(days=8))

        assert payment_rail.transfer.await_count == 1

    @pytest.mark.asyncio
    async def test_recorded_success_finalizes_without_second_call(self, db_session, now, payment_rail):
        manager = HoldManager(db_session, payment_rail=payment_rail)
        hold = manager.create_hold("payee-1", "payer-1", Decimal("500"), "job-42", now=now)
        key = f"hold-{hold.id}:release:1"
        # Crash after the rail confirmed but before the hold was finalized
        db_session.add(
            TransferAttempt(
                idempotency_key=key,
                hold_id=hold.id,
                kind="release",
                sequence=1,
                destination="acct_payee",
                amount=Decimal("500"),
                status=TransferAttemptStatus.SUCCEEDED.value,
                external_id="tr_before_crash",
                created_at=now,
            )
        )
        hold.settlement_claim = key
        db_session.commit()

        receipt = await manager.release(hold.id, "acct_payee", now=now + timedelta(days=8))

        assert receipt.transfer_id == "tr_before_crash"
        payment_rail.transfer.assert_not_awaited()
        assert manager.get_hold(hold.id).status == HoldStatus.RELEASED.value
