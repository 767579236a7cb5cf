"""Monetary input parsing and notification failure isolation"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InvalidAmountError, isolate_notification_failure


class TestMonetaryDecimal:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10.50", Decimal("10.50")),
            (3, Decimal("3")),
            (0.1, Decimal("0.1")),
        ],
    )
    def test_to_decimal(self, value, expected):
        assert MonetaryDecimal.to_decimal(value) == expected

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity"])
    def test_garbage_rejected(self, value):
        with pytest.raises(InvalidAmountError):
            MonetaryDecimal.to_decimal(value)

    def test_positive_amount(self):
        with pytest.raises(InvalidAmountError):
            MonetaryDecimal.positive_amount("0")

    def test_quantize_usd(self):
        assert MonetaryDecimal.quantize_usd("2.345") == Decimal("2.35")


class TestIsolateNotificationFailure:
    def test_sync_failure_swallowed(self):
        @isolate_notification_failure
        def send():
            raise RuntimeError("smtp down")

        assert send() is None

    @pytest.mark.asyncio
    async def test_async_failure_swallowed(self):
        @isolate_notification_failure
        async def send():
            raise RuntimeError("smtp down")

        assert await send() is None

    def test_return_value_passes_through(self):
        @isolate_notification_failure
        def send():
            return "queued"

        assert send() == "queued"
