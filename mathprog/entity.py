"""
entity.py

Shared "boundable, weightable entity" capability for variables and expressions.

Both `Variable` and `Expression` mix in `BoundedEntity` once; it owns

- optional lower/upper limits and an optional contribution weight (Decimal),
- normalisation of incoming numbers (extreme magnitudes -> no limit / zero),
- the per-entity decimal adjustment exponent and the adjusted <-> unadjusted
  conversions used when talking to floating-point solvers.
"""

from __future__ import annotations

import math
import numbers
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from .config import Precision

# ---------- constants ----------
LARGEST = Decimal("1.7976931E+308")  # largest double, rounded down to 8 digits
SMALLEST = Decimal("4.9E-324")  # smallest double, rounded up
RANGE = 8  # max exponent distance between largest and smallest factor

ZERO = Decimal(0)
ONE = Decimal(1)


# ---------- helpers ----------
def to_decimal(value) -> Optional[Decimal]:
    """
    Convert to Decimal, normalising extreme magnitudes.

    Decimal input is returned unmodified. Anything else with magnitude at or
    above LARGEST becomes None (no limit); anything at or below SMALLEST
    becomes exactly zero. Non-finite floats become None.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a number here")
    if isinstance(value, numbers.Integral):
        candidate = Decimal(int(value))
    elif isinstance(value, str):
        candidate = Decimal(value)
        if not candidate.is_finite():
            return None
    elif isinstance(value, numbers.Real):
        as_float = float(value)
        if not math.isfinite(as_float):
            return None
        candidate = Decimal(repr(as_float))
    else:
        raise TypeError(f"Cannot convert {type(value).__name__} to Decimal")

    magnitude = abs(candidate)
    if magnitude >= LARGEST:
        return None
    if magnitude <= SMALLEST:
        return ZERO
    return candidate


def _log10(value: Optional[Decimal], default: float) -> float:
    if value is None or value == 0:
        return default
    return math.log10(abs(float(value)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def derive_adjustment_exponent(largest: Optional[Decimal], smallest: Optional[Decimal], range_: int = RANGE) -> int:
    """Power-of-ten shift centring [smallest, largest] within `range_` decades."""
    exp_l = _log10(largest, 0.0)
    exp_s = max(_log10(smallest, -range_), exp_l - range_)
    return _round_half_up((exp_l + exp_s) / -2.0)


def largest_and_smallest(values) -> tuple:
    largest = smallest = None
    for v in values:
        mag = abs(v)
        if mag == 0:
            continue
        if largest is None or mag > largest:
            largest = mag
        if smallest is None or mag < smallest:
            smallest = mag
    return largest, smallest


def is_infeasible(lower: Optional[Decimal], upper: Optional[Decimal]) -> bool:
    return lower is not None and upper is not None and lower > upper


@runtime_checkable
class Entity(Protocol):
    """What the presolver and data adapter need from a model entity."""

    @property
    def name(self) -> str: ...

    @property
    def lower_limit(self) -> Optional[Decimal]: ...

    @property
    def upper_limit(self) -> Optional[Decimal]: ...

    @property
    def contribution_weight(self) -> Optional[Decimal]: ...

    def get_adjustment_exponent(self) -> int: ...


# =============================================================================
# Mixin
# =============================================================================
class BoundedEntity:
    """Limits, weight and adjustment exponent shared by variables and expressions."""

    def __init__(self, name: str):
        self._name = name
        self._lower: Optional[Decimal] = None
        self._upper: Optional[Decimal] = None
        self._weight: Optional[Decimal] = None
        self._adjustment_exponent: Optional[int] = None

    # ------------------------------ hooks ------------------------------
    def _limits_changed(self) -> None:
        self._adjustment_exponent = None

    def _derive_adjustment_exponent(self) -> int:
        raise NotImplementedError

    # ------------------------------ limits ------------------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def lower_limit(self) -> Optional[Decimal]:
        return self._lower

    @property
    def upper_limit(self) -> Optional[Decimal]:
        return self._upper

    @property
    def contribution_weight(self) -> Optional[Decimal]:
        return self._weight

    def lower(self, value):
        self._lower = to_decimal(value)
        self._limits_changed()
        return self

    def upper(self, value):
        self._upper = to_decimal(value)
        self._limits_changed()
        return self

    def level(self, value):
        level = to_decimal(value)
        self._lower = level
        self._upper = level
        self._limits_changed()
        return self

    def weight(self, value):
        if isinstance(value, float) and math.isnan(value):
            raise ValueError(f"{self._name}: weight must not be nan")
        weight = to_decimal(value)
        self._weight = None if weight is None or weight == 0 else weight
        return self

    def shift(self, delta: Decimal) -> None:
        """Add `delta` to whichever limits are set."""
        lower = self._lower + delta if self._lower is not None else None
        upper = self._upper + delta if self._upper is not None else None
        self._lower, self._upper = lower, upper
        self._limits_changed()

    def is_lower_limit_set(self) -> bool:
        return self._lower is not None

    def is_upper_limit_set(self) -> bool:
        return self._upper is not None

    def is_constraint(self) -> bool:
        return self._lower is not None or self._upper is not None

    def is_equality_constraint(self) -> bool:
        return self._lower is not None and self._upper is not None and self._lower == self._upper

    def is_objective(self) -> bool:
        return self._weight is not None and self._weight != 0

    def is_infeasible(self) -> bool:
        return is_infeasible(self._lower, self._upper)

    def get_compensated_lower_limit(self, compensation: Decimal) -> Optional[Decimal]:
        return None if self._lower is None else self._lower - compensation

    def get_compensated_upper_limit(self, compensation: Decimal) -> Optional[Decimal]:
        return None if self._upper is None else self._upper - compensation

    # ------------------------------ validation ------------------------------
    def validate(self) -> List[str]:
        """Structural problems with this entity; empty when valid."""
        problems = []
        if self.is_infeasible():
            problems.append(f"{self._name}: lower limit {self._lower} > upper limit {self._upper}")
        return problems

    def validate_value(self, value: Decimal, precision: Precision) -> bool:
        if self._lower is not None and precision.is_less_than(self._lower, value):
            return False
        if self._upper is not None and precision.is_more_than(self._upper, value):
            return False
        return True

    # ------------------------------ scaling ------------------------------
    def get_adjustment_exponent(self) -> int:
        if self._adjustment_exponent is None:
            self._adjustment_exponent = self._derive_adjustment_exponent()
        return self._adjustment_exponent

    def get_adjustment_factor(self) -> float:
        return 10.0 ** self.get_adjustment_exponent()

    def to_adjusted(self, unadjusted: Optional[Decimal]) -> float:
        if unadjusted is None:
            return math.nan
        if unadjusted == 0:
            return 0.0
        exponent = self.get_adjustment_exponent()
        if exponent == 0:
            return float(unadjusted)
        return float(unadjusted.scaleb(exponent))

    def reverse_adjustment(self, adjusted: Decimal) -> Decimal:
        exponent = self.get_adjustment_exponent()
        return adjusted.scaleb(-exponent) if exponent != 0 else adjusted

    def to_unadjusted(self, adjusted: float, precision: Precision) -> Decimal:
        """Inverse of `to_adjusted`, rounded by `precision` and clamped to the limits."""
        value = precision.context.create_decimal_from_float(float(adjusted))
        value = precision.enforce(self.reverse_adjustment(value))
        if self._lower is not None and value < self._lower:
            value = self._lower
        if self._upper is not None and value > self._upper:
            value = self._upper
        return value

    def get_adjusted_lower_limit(self) -> float:
        return self.to_adjusted(self._lower)

    def get_adjusted_upper_limit(self) -> float:
        return self.to_adjusted(self._upper)
