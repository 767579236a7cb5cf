"""
Payment Rail Transfer Client
Outbound transfers for hold releases, dispute refunds and wallet payouts.

Every call carries an idempotency key and an explicit timeout. The result is
always one of three outcomes and never an exception for HTTP-level problems:
- SUCCEEDED: the rail confirmed the transfer
- FAILED: the rail confirmed it rejected the transfer (safe to retry with a new attempt)
- UNKNOWN: timeout, connection loss, 5xx, 408/409/423/425/429 or unreadable body
  (retry with the SAME key)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import aiohttp

from config import Config

logger = logging.getLogger(__name__)

_SUCCESS_STATUSES = {"succeeded", "paid", "pending", "in_transit", "created"}
_FAILED_STATUSES = {"failed", "canceled", "cancelled", "reversed"}

# 4xx responses that do not prove the transfer was rejected
_UNCONFIRMED_CLIENT_STATUSES = {408, 409, 423, 425, 429}


class TransferStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class TransferResult:
    """Standardized payment rail transfer outcome"""

    status: TransferStatus
    transfer_id: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.SUCCEEDED


class PaymentRail(Protocol):
    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> TransferResult:
        ...


def to_minor_units(amount: Decimal) -> int:
    """Dollars to integer cents, rounded half-up"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentRailClient:
    """aiohttp client for the payment rail's transfer endpoint"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        currency: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or Config.PAYMENT_RAIL_BASE_URL).rstrip("/")
        self.api_key = api_key or Config.PAYMENT_RAIL_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PAYMENT_RAIL_TIMEOUT_SECONDS)
        self.currency = currency or Config.PAYMENT_RAIL_CURRENCY
        self._session = session

    def _get_headers(self, idempotency_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
            "Content-Type": "application/json",
        }

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> TransferResult:
        payload = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "destination": destination,
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
        }
        headers = self._get_headers(idempotency_key)

        try:
            if self._session is not None:
                return await self._post_transfer(self._session, payload, headers, idempotency_key)
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                return await self._post_transfer(session, payload, headers, idempotency_key)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ PAYMENT_RAIL_TIMEOUT: Transfer {idempotency_key} timed out, outcome unknown")
            return TransferResult(TransferStatus.UNKNOWN, error="Transfer timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ PAYMENT_RAIL_NETWORK: Transfer {idempotency_key} network error: {e}")
            return TransferResult(TransferStatus.UNKNOWN, error=f"Network error: {e}")

    async def _post_transfer(
        self,
        session: aiohttp.ClientSession,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        async with session.post(
            f"{self.base_url}/transfers",
            json=payload,
            headers=headers,
            timeout=self.timeout,
        ) as response:
            if response.status >= 500:
                error_text = await response.text()
                logger.error(
                    f"❌ PAYMENT_RAIL_5XX: Transfer {idempotency_key} HTTP {response.status}: {error_text}"
                )
                return TransferResult(TransferStatus.UNKNOWN, error=f"HTTP {response.status}: {error_text}")

            if response.status in _UNCONFIRMED_CLIENT_STATUSES:
                # Request in progress, timed out or throttled: the transfer may still land
                error_text = await response.text()
                logger.warning(
                    f"⚠️ PAYMENT_RAIL_UNCONFIRMED: Transfer {idempotency_key} HTTP {response.status}: {error_text}"
                )
                return TransferResult(TransferStatus.UNKNOWN, error=f"HTTP {response.status}: {error_text}")

            try:
                data = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError) as e:
                logger.error(f"❌ PAYMENT_RAIL_BODY: Transfer {idempotency_key} unreadable response: {e}")
                return TransferResult(TransferStatus.UNKNOWN, error="Unreadable response body")

            if not isinstance(data, dict):
                return TransferResult(TransferStatus.UNKNOWN, error="Unexpected response body")

            if response.status >= 400:
                error = data.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                logger.warning(
                    f"⚠️ PAYMENT_RAIL_REJECTED: Transfer {idempotency_key} HTTP {response.status}: {message}"
                )
                return TransferResult(
                    TransferStatus.FAILED,
                    error=message or f"HTTP {response.status}",
                    raw=data,
                )

            transfer_id = data.get("id")
            rail_status = str(data.get("status", "succeeded")).lower()
            if transfer_id and rail_status in _SUCCESS_STATUSES:
                logger.info(f"✅ PAYMENT_RAIL_TRANSFER: {idempotency_key} -> {transfer_id} ({rail_status})")
                return TransferResult(TransferStatus.SUCCEEDED, transfer_id=transfer_id, raw=data)
            if rail_status in _FAILED_STATUSES:
                return TransferResult(
                    TransferStatus.FAILED,
                    transfer_id=transfer_id,
                    error=data.get("failure_message") or f"Transfer {rail_status}",
                    raw=data,
                )

            logger.error(
                f"❌ PAYMENT_RAIL_AMBIGUOUS: Transfer {idempotency_key} returned status={rail_status} id={transfer_id}"
            )
            return TransferResult(TransferStatus.UNKNOWN, transfer_id=transfer_id, error="Ambiguous transfer status", raw=data)
