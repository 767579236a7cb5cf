"""
Payment rail client tests: every HTTP outcome maps onto succeeded / failed / unknown
"""

import asyncio
from decimal import Decimal

import aiohttp
import pytest

from services.payment_rail import PaymentRailClient, TransferStatus, to_minor_units


class FakeResponse:
    def __init__(self, status, body=None, text="", json_error=None):
        self.status = status
        self._body = body
        self._text = text
        self._json_error = json_error

    async def json(self, content_type=None):
        if self._json_error is not None:
            raise self._json_error
        return self._body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession and records each POST"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session):
    return PaymentRailClient(
        base_url="https://rail.example.com/v1/",
        api_key="sk_test",
        timeout_seconds=5,
        currency="usd",
        session=session,
    )


async def _transfer(session):
    return await _client(session).transfer(
        "acct_123", Decimal("125.505"), {"hold_id": 7}, idempotency_key="hold-7:release:1"
    )


class TestTransfer:
    @pytest.mark.asyncio
    async def test_success(self):
        session = FakeSession(FakeResponse(200, {"id": "tr_abc", "status": "paid"}))

        result = await _transfer(session)

        assert result.status == TransferStatus.SUCCEEDED
        assert result.transfer_id == "tr_abc"
        call = session.calls[0]
        assert call["url"] == "https://rail.example.com/v1/transfers"
        assert call["headers"]["Idempotency-Key"] == "hold-7:release:1"
        assert call["json"]["amount"] == 12551, "Half-up rounding to cents"
        assert call["json"]["metadata"] == {"hold_id": "7"}

    @pytest.mark.asyncio
    async def test_rejected_is_failed(self):
        session = FakeSession(FakeResponse(402, {"error": {"message": "Insufficient platform balance"}}))

        result = await _transfer(session)

        assert result.status == TransferStatus.FAILED
        assert result.error == "Insufficient platform balance"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 409, 423, 425, 429])
    async def test_unconfirmed_client_errors_are_unknown(self, status):
        session = FakeSession(
            FakeResponse(status, {"error": {"message": "Request with this key is in progress"}}, text="in progress")
        )

        result = await _transfer(session)

        assert result.status == TransferStatus.UNKNOWN, f"HTTP {status} does not prove the transfer was rejected"

    @pytest.mark.asyncio
    async def test_server_error_is_unknown(self):
        result = await _transfer(FakeSession(FakeResponse(503, text="upstream unavailable")))

        assert result.status == TransferStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_timeout_is_unknown(self):
        result = await _transfer(FakeSession(error=asyncio.TimeoutError()))

        assert result.status == TransferStatus.UNKNOWN
        assert result.error == "Transfer timed out"

    @pytest.mark.asyncio
    async def test_connection_error_is_unknown(self):
        result = await _transfer(FakeSession(error=aiohttp.ClientConnectionError("reset by peer")))

        assert result.status == TransferStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_unreadable_body_is_unknown(self):
        result = await _transfer(FakeSession(FakeResponse(200, json_error=ValueError("not json"))))

        assert result.status == TransferStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_success_without_id_is_unknown(self):
        result = await _transfer(FakeSession(FakeResponse(200, {"status": "processing"})))

        assert result.status == TransferStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_failed_status_in_body(self):
        result = await _transfer(FakeSession(FakeResponse(200, {"id": "tr_x", "status": "failed"})))

        assert result.status == TransferStatus.FAILED


def test_to_minor_units():
    assert to_minor_units(Decimal("10")) == 1000
    assert to_minor_units(Decimal("0.005")) == 1
