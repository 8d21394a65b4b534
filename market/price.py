"""Exact (units, nano) prices and tick quantization."""
from __future__ import annotations

import functools
from dataclasses import dataclass
from decimal import Context, Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP, localcontext
from typing import Any, Dict, Mapping, Union

NANO = 1_000_000_000
NANO_MAX = NANO - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_NANO_EXP = Decimal(1).scaleb(-9)

Number = Union['Price', Decimal, int, float, str]


# wide enough for int64 units plus nine fractional digits, so price math never rounds
_CTX = Context(prec=60)


@functools.total_ordering
@dataclass(frozen=True)
class Price:
    """A decimal with nine fractional digits carried as (units, nano)."""

    units: int = 0
    nano: int = 0

    def __post_init__(self):
        if not -NANO_MAX <= self.nano <= NANO_MAX:
            raise ValueError(f"nano out of range: {self.nano}")
        if not INT64_MIN <= self.units <= INT64_MAX:
            raise ValueError(f"units out of range: {self.units}")
        if self.nano and self.units and (self.units > 0) != (self.nano > 0):
            raise ValueError(f"units and nano signs differ: ({self.units}, {self.nano})")

    # Conversions --------------------------------------------------------
    def to_decimal(self) -> Decimal:
        with localcontext(_CTX):
            return Decimal(self.units) + Decimal(self.nano).scaleb(-9)

    def to_float(self) -> float:
        return float(self.to_decimal())

    @classmethod
    def from_decimal(cls, value: Number, step: Union['Price', None] = None) -> 'Price':
        d = _as_decimal(value)
        if step is not None:
            d = _quantize_decimal(d, step.to_decimal())
        return cls._from_exact(d)

    @classmethod
    def _from_exact(cls, d: Decimal) -> 'Price':
        with localcontext(_CTX):
            d = d.quantize(_NANO_EXP, rounding=ROUND_HALF_EVEN)
            units = int(d)
            nano = int((d - units).scaleb(9))
        return cls(units, nano)

    @classmethod
    def from_quotation(cls, payload: Union[Mapping[str, Any], None]) -> 'Price':
        if not payload:
            return cls()
        return cls(int(payload.get('units') or 0), int(payload.get('nano') or 0))

    def to_quotation(self) -> Dict[str, Any]:
        return {'units': str(self.units), 'nano': self.nano}

    # Tick handling ------------------------------------------------------
    def quantize(self, step: 'Price') -> 'Price':
        return Price._from_exact(_quantize_decimal(self.to_decimal(), step.to_decimal()))

    def ticks(self, step: 'Price') -> int:
        """Number of whole ticks nearest to this price, ties away from zero."""
        return _tick_count(self.to_decimal(), step.to_decimal())

    @classmethod
    def from_ticks(cls, ticks: int, step: 'Price') -> 'Price':
        return step * ticks

    def is_aligned(self, step: 'Price') -> bool:
        return self.quantize(step) == self

    # Arithmetic ---------------------------------------------------------
    def __add__(self, other: 'Price') -> 'Price':
        if not isinstance(other, Price):
            return NotImplemented
        return Price._from_exact(self.to_decimal() + other.to_decimal())

    def __sub__(self, other: 'Price') -> 'Price':
        if not isinstance(other, Price):
            return NotImplemented
        return Price._from_exact(self.to_decimal() - other.to_decimal())

    def __neg__(self) -> 'Price':
        return Price(-self.units, -self.nano)

    def __abs__(self) -> 'Price':
        return -self if self.is_negative() else self

    def __mul__(self, factor: int) -> 'Price':
        if isinstance(factor, bool) or not isinstance(factor, int):
            return NotImplemented
        with localcontext(_CTX):
            return Price._from_exact(self.to_decimal() * factor)

    __rmul__ = __mul__

    def __lt__(self, other: 'Price') -> bool:
        if not isinstance(other, Price):
            return NotImplemented
        return (self.units, self.nano) < (other.units, other.nano)

    def __bool__(self) -> bool:
        return bool(self.units or self.nano)

    def is_negative(self) -> bool:
        return self.units < 0 or self.nano < 0

    def __str__(self) -> str:
        d = self.to_decimal()
        text = format(d.normalize(), 'f')
        return text if text != '-0' else '0'

    def __repr__(self) -> str:
        return f"Price({self})"


ZERO = Price()


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Price):
        return value.to_decimal()
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # binary floats are exact in Decimal; half-even at nine digits from here
        return Decimal(value).quantize(_NANO_EXP, rounding=ROUND_HALF_EVEN)
    return Decimal(value)


def _tick_count(value: Decimal, step: Decimal) -> int:
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    with localcontext(_CTX):
        return int((value / step).to_integral_value(rounding=ROUND_HALF_UP))


def _quantize_decimal(value: Decimal, step: Decimal) -> Decimal:
    ticks = _tick_count(value, step)
    with localcontext(_CTX):
        return step * ticks


def to_decimal(units: int, nano: int) -> Decimal:
    return Price(units, nano).to_decimal()


def from_decimal(value: Number, step: Union[Price, None] = None) -> Price:
    return Price.from_decimal(value, step)


def quantize(price: Number, step: Price) -> Price:
    return Price.from_decimal(price, step)


def parse_price(text: Union[str, None]) -> Price:
    if text is None or text == '':
        return ZERO
    return Price.from_decimal(Decimal(text))
