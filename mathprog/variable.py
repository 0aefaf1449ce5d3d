# mathprog/variable.py
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import List, Optional

from .config import Precision
from .entity import ONE, ZERO, BoundedEntity, derive_adjustment_exponent, largest_and_smallest, to_decimal


class Variable(BoundedEntity):
    """
    A decision variable.

    The index is assigned by the owning model on insertion and never changes.
    When lower == upper the variable is fixed and its value is that level.
    """

    def __init__(self, name: str):
        super().__init__(name)
        self._index: Optional[int] = None
        self._integer = False
        self._unbounded = False
        self._value: Optional[Decimal] = None

    def __repr__(self) -> str:
        return f"Variable({self._name!r}, index={self._index}, lower={self._lower}, upper={self._upper}, value={self._value})"

    # ------------------------------ identity ------------------------------
    @property
    def index(self) -> Optional[int]:
        return self._index

    def _assign_index(self, index: int) -> None:
        if self._index is not None and self._index != index:
            raise ValueError(f"Variable '{self._name}' already has index {self._index}")
        self._index = index

    def copy(self) -> "Variable":
        clone = Variable(self._name)
        clone._index = self._index
        clone._lower, clone._upper, clone._weight = self._lower, self._upper, self._weight
        clone._integer, clone._unbounded, clone._value = self._integer, self._unbounded, self._value
        clone._adjustment_exponent = self._adjustment_exponent
        return clone

    # ------------------------------ flags ------------------------------
    def integer(self, flag: bool = True) -> "Variable":
        self._integer = bool(flag)
        self._adjustment_exponent = None
        return self

    def binary(self) -> "Variable":
        return self.integer(True).lower(ZERO).upper(ONE)

    def relax(self) -> "Variable":
        return self.integer(False)

    def is_integer(self) -> bool:
        return self._integer

    def is_binary(self) -> bool:
        return self._integer and self._lower == ZERO and self._upper == ONE

    def is_fixed(self) -> bool:
        return self.is_equality_constraint()

    def is_unbounded(self) -> bool:
        return self._unbounded

    def set_unbounded(self, flag: bool) -> None:
        self._unbounded = bool(flag)

    # ------------------------------ value ------------------------------
    def _limits_changed(self) -> None:
        super()._limits_changed()
        if self._lower is not None and self._lower == self._upper:
            self._value = self._lower

    @property
    def value(self) -> Optional[Decimal]:
        return self._value

    def is_value_set(self) -> bool:
        return self._value is not None

    def set_value(self, value) -> "Variable":
        candidate = to_decimal(value)
        if candidate is not None:
            if self._lower is not None and candidate < self._lower:
                candidate = self._lower
            if self._upper is not None and candidate > self._upper:
                candidate = self._upper
        self._value = candidate
        return self

    def set_fixed(self, value) -> "Variable":
        self.level(value)
        return self.set_value(value)

    def get_lower_slack(self) -> Optional[Decimal]:
        if self._lower is None or self._value is None:
            return None
        return self._value - self._lower

    def get_upper_slack(self) -> Optional[Decimal]:
        if self._upper is None or self._value is None:
            return None
        return self._upper - self._value

    def quantify_contribution(self) -> Decimal:
        if self._weight is None or self._value is None:
            return ZERO
        return self._weight * self._value

    # ------------------------------ presolve support ------------------------------
    def do_integer_rounding(self) -> None:
        if not self._integer:
            return
        if self._lower is not None:
            self._lower = self._lower.to_integral_value(rounding=ROUND_CEILING)
        if self._upper is not None:
            self._upper = self._upper.to_integral_value(rounding=ROUND_FLOOR)
        self._limits_changed()

    def _derive_adjustment_exponent(self) -> int:
        if not self.is_constraint() or self._integer:
            return 0
        limits = [ONE if limit == 0 else limit for limit in (self._lower, self._upper) if limit is not None]
        largest, smallest = largest_and_smallest(limits)
        return derive_adjustment_exponent(largest, smallest)

    # ------------------------------ validation ------------------------------
    def validate(self) -> List[str]:
        problems = super().validate()
        if self._integer and self._value is not None and self._value != self._value.to_integral_value():
            problems.append(f"{self._name}: integer variable has value {self._value}")
        return problems

    def validate_value(self, value: Decimal, precision: Precision, relaxed: bool = False) -> bool:
        if not super().validate_value(value, precision):
            return False
        if self._integer and not relaxed:
            nearest = value.to_integral_value()
            if precision.is_different(float(nearest), float(value)):
                return False
        return True
