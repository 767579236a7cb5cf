#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from utils.exception_handler import InvalidAmountError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for USD
    MAX_AMOUNT = Decimal("999999999999")

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Convert any numeric value to Decimal, rejecting garbage"""
        if isinstance(value, bool) or value is None:
            raise InvalidAmountError(f"Invalid {context} amount: {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value))
            except (InvalidOperation, ValueError):
                raise InvalidAmountError(f"Invalid {context} amount: {value!r}") from None

        if not decimal_value.is_finite():
            raise InvalidAmountError(f"Invalid {context} amount: {value!r}")
        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")
        return decimal_value

    @classmethod
    def positive_amount(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Decimal amount that must be strictly greater than zero"""
        amount = cls.to_decimal(value, context)
        if amount <= 0:
            raise InvalidAmountError(f"Amount must be greater than zero, got {amount}")
        return amount

    @classmethod
    def quantize_usd(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to USD precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)
