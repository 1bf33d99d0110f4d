# services/money.py
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Iterable

getcontext().prec = 28  # safe default

_HUNDRED = Decimal(100)
_MINOR_PER_MAJOR = Decimal(100)


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    # never pass float directly; stringify first to avoid binary artifacts
    return Decimal(str(x or 0))


@dataclass(frozen=True, order=True)
class Money:
    """Amount in integer minor units (kopecks/cents). No floats, ever."""

    minor: int = 0

    def __post_init__(self):
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise TypeError(
                f"Money needs integer minor units, got {type(self.minor).__name__}")

    @classmethod
    def of(cls, minor: int | None) -> "Money":
        return cls(int(minor or 0))

    @classmethod
    def total(cls, amounts: Iterable["Money"]) -> "Money":
        acc = 0
        for m in amounts:
            acc += m.minor
        return cls(acc)

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor + other.minor)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor - other.minor)

    def __neg__(self) -> "Money":
        return Money(-self.minor)

    def __bool__(self) -> bool:
        return self.minor != 0

    def percent(self, pct) -> "Money":
        """self × pct / 100, rounded half-up to one minor unit."""
        raw = Decimal(self.minor) * D(pct) / _HUNDRED
        return Money(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    def clamp_zero(self) -> "Money":
        # display only; a negative balance means "overpaid"
        return self if self.minor >= 0 else Money(0)

    @property
    def is_positive(self) -> bool:
        return self.minor > 0

    def to_major(self) -> Decimal:
        return (Decimal(self.minor) / _MINOR_PER_MAJOR).quantize(Decimal("0.01"))

    def __str__(self) -> str:
        return str(self.minor)


ZERO = Money(0)
