"""
Currency normalization - converts (amount, currency) into the base currency.

Amounts are Decimal end to end. Results are rounded half-up to the target
currency's minor-unit count (2 for USD, 0 for JPY, 3 for KWD), never
truncated.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from models.expense import NormalizedAmount
from services.exchange_rates import ExchangeRateCache

logger = logging.getLogger("ExpenseFlow.CurrencyNormalizer")

# ISO 4217 minor units that differ from the default of 2
MINOR_UNITS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}


def minor_units(currency: str) -> int:
    return MINOR_UNITS.get(currency.upper(), 2)


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor unit (half-up)."""
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Integer amount in the smallest currency unit (cents for USD)."""
    return int(quantize(amount, currency).scaleb(minor_units(currency)))


def as_decimal(amount: Union[Decimal, int, float, str]) -> Decimal:
    # str() first so floats keep their printed value, not their binary one
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))


class CurrencyNormalizer:
    """Converts amounts using the shared exchange-rate cache."""

    def __init__(self, rates: ExchangeRateCache, base_currency: str = "USD"):
        self.rates = rates
        self.base_currency = base_currency.upper()

    async def normalize(
        self,
        amount: Union[Decimal, int, float, str],
        from_currency: str,
        to_currency: Optional[str] = "base",
    ) -> NormalizedAmount:
        """
        Convert ``amount`` from ``from_currency`` to ``to_currency``
        (``"base"`` or None means the organization's base currency).

        Raises RateUnavailableError when no usable rate exists.
        """
        source = from_currency.upper()
        target = self.base_currency if to_currency in (None, "base") else to_currency.upper()
        value = as_decimal(amount)

        quote = await self.rates.get_rate(source, target)
        converted = quantize(value * quote.rate, target)

        logger.debug(f"Normalized {value} {source} -> {converted} {target} @ {quote.rate}")
        return NormalizedAmount(
            amount=converted,
            currency=target,
            original_amount=value,
            original_currency=source,
            rate=quote.rate,
            rate_fetched_at=quote.fetched_at,
        )
