# spreadarb/decimals.py
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_FLOOR, getcontext
from typing import Optional, Union

# Plenty of head room for divisions carried at INTERMEDIATE_SCALE
getcontext().prec = 40

SAFE_SCALE = 1
USD_SCALE = 2
BTC_SCALE = 8
INTERMEDIATE_SCALE = 16

ZERO = Decimal("0")
ONE = Decimal("1")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    """Converts config/exchange numbers to Decimal without float artefacts."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantum(scale: int) -> Decimal:
    return Decimal(1).scaleb(-scale)


def set_scale(value: Decimal, scale: int, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    return value.quantize(quantum(scale), rounding=rounding)


def scale_of(value: Decimal) -> int:
    """Number of digits right of the decimal point, like BigDecimal.scale()."""
    return max(0, -value.as_tuple().exponent)


def divide(a: Decimal, b: Decimal, scale: int = INTERMEDIATE_SCALE) -> Decimal:
    return set_scale(a / b, scale)


def floor_scale(value: Decimal, scale: int) -> Decimal:
    return set_scale(value, scale, ROUND_FLOOR)
