import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Tuple

from coursepay.errors import ValidationError

logger = logging.getLogger(__name__)


class CurrencyNormalizer:
    """Converts listed prices into a gateway's settlement currency.

    Amounts are integer minor units. Rates come from a static table; the
    inverse of every configured pair is derived when it is not configured
    explicitly.
    """

    def __init__(self, rates: Dict[Tuple[str, str], Decimal], strict: bool = False) -> None:
        table = {}
        for (source, target), rate in rates.items():
            table[(source.upper(), target.upper())] = Decimal(rate)
        for (source, target), rate in list(table.items()):
            table.setdefault((target, source), Decimal(1) / rate)
        self._rates = table
        self._strict = strict

    def rate(self, from_currency: str, to_currency: str) -> Decimal:
        source, target = from_currency.upper(), to_currency.upper()
        if source == target:
            return Decimal(1)
        rate = self._rates.get((source, target))
        if rate is not None:
            return rate
        if self._strict:
            raise ValidationError(
                "No exchange rate configured",
                {"from": source, "to": target},
            )
        # Known limitation: settles the listed amount unconverted.
        logger.warning(f"No exchange rate for {source}->{target}; falling back to 1:1")
        return Decimal(1)

    def convert(self, amount: int, from_currency: str, to_currency: str) -> int:
        if from_currency.upper() == to_currency.upper():
            return amount
        converted = Decimal(amount) * self.rate(from_currency, to_currency)
        return int(converted.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_major(amount: int) -> str:
    """Minor units to a two-decimal major-unit string: 500000 -> '5000.00'."""
    return f"{(Decimal(amount) / 100).quantize(Decimal('0.01'))}"


def parse_major(value: str) -> int:
    """Two-decimal major-unit string to minor units: '5000.00' -> 500000."""
    try:
        return int((Decimal(str(value).strip()) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except ArithmeticError as err:
        raise ValidationError("Invalid amount", {"amount": value}) from err
