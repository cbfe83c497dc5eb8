from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

from poscore.core.config import MONEY_PLACES, DISPLAY_PLACES, QTY_PLACES

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their printed value, not their binary expansion
    return Decimal(str(value))


def round_jod(value: Number) -> Decimal:
    """Line-level money precision: 3 dp, half-up."""
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def round_display(value: Number) -> Decimal:
    """Customer-facing totals only: 1 dp, half-up."""
    return to_decimal(value).quantize(DISPLAY_PLACES, rounding=ROUND_HALF_UP)


def round_qty(value: Number) -> Decimal:
    return to_decimal(value).quantize(QTY_PLACES, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Number]) -> Decimal:
    return round_jod(sum((to_decimal(v) for v in values), Decimal("0")))
