"""
expression.py

Linear/quadratic expressions over model variables.

An expression maps variable indices to linear coefficients and ordered index
pairs to quadratic coefficients. Giving it limits makes it a constraint;
giving it a weight makes it contribute to the objective.

Coefficients live in `CoefficientTable`s, copy-on-write handles that let a
shallow expression copy share its source's coefficients until one side is
mutated.
"""

from __future__ import annotations

import math
import numbers
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Dict, Iterable, Iterator, Optional, Set, Tuple

import numpy as np

from .entity import ONE, ZERO, BoundedEntity, derive_adjustment_exponent, is_infeasible, largest_and_smallest, to_decimal
from .variable import Variable

Key = Tuple[int, int]

MAX_INTEGER_ROUNDING_SCALE = 8


# =============================================================================
# Copy-on-write coefficient storage
# =============================================================================
class CoefficientTable:
    """
    Dict-like coefficient storage shared between handles until written.

    `share()` hands out another handle on the same underlying dict; the first
    mutation through any handle whose dict is shared gives that handle a
    private copy.
    """

    __slots__ = ("_data", "_owners")

    def __init__(self, data: Optional[dict] = None):
        self._data = {} if data is None else data
        self._owners = [1]

    def share(self) -> "CoefficientTable":
        other = CoefficientTable.__new__(CoefficientTable)
        other._data = self._data
        other._owners = self._owners
        self._owners[0] += 1
        return other

    def copy(self) -> "CoefficientTable":
        return CoefficientTable(dict(self._data))

    def is_shared(self) -> bool:
        return self._owners[0] > 1

    def _own(self) -> None:
        if self._owners[0] > 1:
            self._owners[0] -= 1
            self._data = dict(self._data)
            self._owners = [1]

    # ---------- writes ----------
    def __setitem__(self, key, value) -> None:
        self._own()
        self._data[key] = value

    def pop(self, key, default=None):
        if key not in self._data:
            return default
        self._own()
        return self._data.pop(key)

    def clear(self) -> None:
        self._own()
        self._data.clear()

    # ---------- reads ----------
    def __getitem__(self, key):
        return self._data[key]

    def get(self, key, default=None):
        return self._data.get(key, default)

    def __contains__(self, key) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def keys(self):
        return self._data.keys()

    def values(self):
        return self._data.values()

    def items(self):
        return self._data.items()


def _positive_fraction(value: Decimal) -> Decimal:
    return value - value.to_integral_value(rounding=ROUND_FLOOR)


def _unscaled(value: Decimal) -> Tuple[int, int]:
    """(unscaled integer, scale) of |value| with trailing zeros stripped."""
    sign, digits, exponent = abs(value).normalize().as_tuple()
    return int("".join(map(str, digits))), -exponent


# =============================================================================
# Expression
# =============================================================================
class Expression(BoundedEntity):
    def __init__(self, name: str, model=None):
        super().__init__(name)
        self._model = model
        self._linear = CoefficientTable()
        self._quadratic = CoefficientTable()
        self._constant: Optional[Decimal] = None
        self._infeasible = False
        self._redundant = False
        self._integer: Optional[bool] = None
        self._shallow = False
        self._aggregate = False  # generated objective, registers no references

    def __repr__(self) -> str:
        return (
            f"Expression({self._name!r}, linear={len(self._linear)}, quadratic={len(self._quadratic)}, "
            f"lower={self._lower}, upper={self._upper}, weight={self._weight})"
        )

    def copy(self, model=None, deep: bool = True) -> "Expression":
        """Copy into `model`; a shallow copy shares the coefficient tables copy-on-write."""
        clone = Expression(self._name, model if model is not None else self._model)
        if deep:
            clone._linear = self._linear.copy()
            clone._quadratic = self._quadratic.copy()
        else:
            clone._linear = self._linear.share()
            clone._quadratic = self._quadratic.share()
            clone._shallow = True
        clone._lower, clone._upper, clone._weight = self._lower, self._upper, self._weight
        clone._constant = self._constant
        clone._infeasible, clone._redundant, clone._integer = self._infeasible, self._redundant, self._integer
        return clone

    def is_shallow(self) -> bool:
        return self._shallow

    # ------------------------------ keys ------------------------------
    @staticmethod
    def _index_of(item) -> int:
        if isinstance(item, Variable):
            if item.index is None:
                raise ValueError(f"Variable '{item.name}' does not belong to a model")
            return item.index
        if isinstance(item, numbers.Integral) and not isinstance(item, bool):
            return int(item)
        raise TypeError(f"Unsupported coefficient key element {item!r}")

    def _key(self, key):
        if isinstance(key, tuple):
            if len(key) != 2:
                raise ValueError(f"Quadratic key must be a pair, got {key!r}")
            return (self._index_of(key[0]), self._index_of(key[1]))
        return self._index_of(key)

    def _table(self, key) -> CoefficientTable:
        return self._quadratic if isinstance(key, tuple) else self._linear

    def _coefficients_changed(self) -> None:
        self._integer = None
        self._adjustment_exponent = None

    def _reference(self, key) -> None:
        if self._model is None or self._aggregate:
            return
        if isinstance(key, tuple):
            self._model._add_reference(key[0])
            self._model._add_reference(key[1])
        else:
            self._model._add_reference(key)

    # ------------------------------ coefficients ------------------------------
    def set(self, key, value) -> "Expression":
        """Set a linear (index / Variable) or quadratic (pair) coefficient; zero removes it."""
        k = self._key(key)
        coefficient = to_decimal(value)
        table = self._table(k)
        if coefficient is None or coefficient == 0:
            table.pop(k)
        else:
            table[k] = coefficient
            self._reference(k)
        self._coefficients_changed()
        return self

    def add(self, key, value) -> "Expression":
        k = self._key(key)
        addition = to_decimal(value)
        if addition is None or addition == 0:
            return self
        return self.set(k, self._table(k).get(k, ZERO) + addition)

    def get(self, key) -> Decimal:
        k = self._key(key)
        return self._table(k).get(k, ZERO)

    def get_adjusted(self, key) -> float:
        return self.to_adjusted(self.get(key))

    def linear_keys(self) -> Set[int]:
        return set(self._linear.keys())

    def quadratic_keys(self) -> Set[Key]:
        return set(self._quadratic.keys())

    def linear_items(self):
        return self._linear.items()

    def quadratic_items(self):
        return self._quadratic.items()

    def count_linear_factors(self) -> int:
        return len(self._linear)

    def count_quadratic_factors(self) -> int:
        return len(self._quadratic)

    def is_any_linear_factor_nonzero(self) -> bool:
        return len(self._linear) > 0

    def is_any_quadratic_factor_nonzero(self) -> bool:
        return len(self._quadratic) > 0

    @property
    def constant(self) -> Decimal:
        return self._constant if self._constant is not None else ZERO

    def set_constant(self, value) -> "Expression":
        self._constant = to_decimal(value)
        return self

    def is_constant_set(self) -> bool:
        return self._constant is not None and self._constant != 0

    def add_to(self, target: "Expression", scale=ONE) -> None:
        """Add `scale` times this expression's coefficients into `target`."""
        factor = to_decimal(scale)
        for key, value in list(self._linear.items()):
            target.add(key, factor * value)
        for key, value in list(self._quadratic.items()):
            target.add(key, factor * value)

    # ------------------------------ shape ------------------------------
    def is_function_constant(self) -> bool:
        return not self._linear and not self._quadratic

    def is_function_linear(self) -> bool:
        return not self._quadratic and bool(self._linear)

    def is_function_pure_quadratic(self) -> bool:
        return bool(self._quadratic) and not self._linear

    def is_function_quadratic(self) -> bool:
        return bool(self._quadratic) and bool(self._linear)

    def _linear_variables(self) -> Iterable[Variable]:
        return (self.resolve(i) for i in self._linear.keys())

    def is_linear_and_all_integer(self) -> bool:
        return not self._quadratic and bool(self._linear) and all(v.is_integer() for v in self._linear_variables())

    def is_linear_and_any_integer(self) -> bool:
        return not self._quadratic and bool(self._linear) and any(v.is_integer() for v in self._linear_variables())

    def is_linear_and_all_binary(self) -> bool:
        return not self._quadratic and bool(self._linear) and all(v.is_binary() for v in self._linear_variables())

    def is_linear_and_any_binary(self) -> bool:
        return not self._quadratic and bool(self._linear) and any(v.is_binary() for v in self._linear_variables())

    def count_integer_factors(self) -> int:
        return sum(1 for v in self._linear_variables() if v.is_integer())

    def includes(self, variable: Variable) -> bool:
        index = variable.index
        if index in self._linear:
            return True
        return any(index in pair for pair in self._quadratic.keys())

    # ------------------------------ status flags ------------------------------
    def is_integer(self) -> bool:
        if self._integer is None:
            self.do_integer_rounding()
        return bool(self._integer)

    def set_integer(self) -> None:
        self._integer = True

    def is_redundant(self) -> bool:
        return self._redundant

    def set_redundant(self) -> None:
        self._redundant = True

    def is_infeasible(self) -> bool:
        return self._infeasible or super().is_infeasible()

    def set_infeasible(self) -> None:
        self._infeasible = True
        if self._model is not None:
            self._model._set_infeasible()

    # ------------------------------ model access ------------------------------
    @property
    def model(self):
        return self._model

    def resolve(self, index: int) -> Variable:
        if self._model is None:
            raise RuntimeError(f"Expression '{self._name}' is not attached to a model")
        return self._model.get_variable(index)

    # ------------------------------ evaluation ------------------------------
    def evaluate(self, point) -> Decimal:
        """Value (constant included) at `point`, a sequence indexed by variable index."""
        total = self.constant
        for index, coefficient in self._linear.items():
            total += coefficient * _as_decimal(point[index])
        for (row, col), coefficient in self._quadratic.items():
            total += coefficient * _as_decimal(point[row]) * _as_decimal(point[col])
        return total

    def calculate_set_value(self, subset: Set[int]) -> Decimal:
        """Contribution of the `subset` variables at their current values."""
        total = ZERO
        if not subset:
            return total
        for index, coefficient in self._linear.items():
            if index in subset:
                total += coefficient * self.resolve(index).value
        for (row, col), coefficient in self._quadratic.items():
            if row in subset and col in subset:
                total += coefficient * self.resolve(row).value * self.resolve(col).value
        return total

    def compensate(self, fixed: Set[int]) -> "Expression":
        """
        Return an expression with the `fixed` variables substituted.

        Bilinear terms with one fixed side become linear terms. The fixed part
        (and the constant) is moved into the limits. Returns `self` when
        nothing needs compensating.
        """
        if not self.is_constant_set() and (
            not fixed or (not self._quadratic and fixed.isdisjoint(self._linear.keys()))
        ):
            return self

        result = Expression(self._name, self._model)
        result._aggregate = self._aggregate
        fixed_value = self.constant

        for index, coefficient in self._linear.items():
            if index in fixed:
                fixed_value += coefficient * self.resolve(index).value
            else:
                result.set(index, coefficient)

        for (row, col), coefficient in self._quadratic.items():
            row_fixed, col_fixed = row in fixed, col in fixed
            if row_fixed and col_fixed:
                fixed_value += coefficient * self.resolve(row).value * self.resolve(col).value
            elif row_fixed:
                result.add(col, coefficient * self.resolve(row).value)
            elif col_fixed:
                result.add(row, coefficient * self.resolve(col).value)
            else:
                result.set((row, col), coefficient)

        if self._lower is not None:
            result.lower(self._lower - fixed_value)
        if self._upper is not None:
            result.upper(self._upper - fixed_value)
        result._weight = self._weight
        if self._integer:
            result.set_integer()
        return result

    def is_negative_on(self, subset: Set[int]) -> bool:
        """True if no variable in `subset` can contribute positively."""
        if self._quadratic:
            return True
        for index in subset:
            variable = self.resolve(index)
            coefficient = self._linear[index]
            if coefficient < 0 and variable.lower_limit is not None and variable.lower_limit >= 0:
                continue
            if coefficient > 0 and variable.upper_limit is not None and variable.upper_limit <= 0:
                continue
            return False
        return True

    def is_positive_on(self, subset: Set[int]) -> bool:
        """True if no variable in `subset` can contribute negatively."""
        if self._quadratic:
            return True
        for index in subset:
            variable = self.resolve(index)
            coefficient = self._linear[index]
            if coefficient > 0 and variable.lower_limit is not None and variable.lower_limit >= 0:
                continue
            if coefficient < 0 and variable.upper_limit is not None and variable.upper_limit <= 0:
                continue
            return False
        return True

    # ------------------------------ integer handling ------------------------------
    def do_integer_rounding(self, remaining: Optional[Set[int]] = None, lower=None, upper=None) -> None:
        """
        Tighten the limits to multiples of the coefficients' common divisor.

        Applies only when every remaining variable is integer and the decimal
        scale of the coefficients stays within MAX_INTEGER_ROUNDING_SCALE.
        """
        if self._integer is not None:
            return
        if remaining is None:
            remaining = self.linear_keys()
            lower = self.get_compensated_lower_limit(self.constant)
            upper = self.get_compensated_upper_limit(self.constant)

        if not remaining or self._quadratic or not all(self.resolve(i).is_integer() for i in remaining):
            self._integer = False
            return

        gcd = None
        max_scale = -(10**9)
        for index in remaining:
            unscaled, scale = _unscaled(self._linear[index])
            max_scale = max(max_scale, scale)
            gcd = unscaled if gcd is None else math.gcd(gcd, unscaled)
            if max_scale > MAX_INTEGER_ROUNDING_SCALE or (gcd == 1 and max_scale > 0):
                self._integer = False
                return

        divisor = Decimal(gcd).scaleb(-max_scale)
        full = len(self._linear) == len(remaining)

        new_lower = new_upper = None
        if lower is not None:
            new_lower = (lower / divisor).to_integral_value(rounding=ROUND_CEILING) * divisor
            if full:
                self.lower(new_lower + (self._lower - lower))
        if upper is not None:
            new_upper = (upper / divisor).to_integral_value(rounding=ROUND_FLOOR) * divisor
            if full:
                self.upper(new_upper + (self._upper - upper))

        if is_infeasible(new_lower, new_upper):
            self.set_infeasible()

        self._integer = True

    def do_mixed_integer_rounding(self) -> Optional["Expression"]:
        """Mixed-integer rounding cut for an equality row, or None when not applicable."""
        if not self.is_equality_constraint() or self._model is None:
            return None

        frac_level = _positive_fraction(self._lower)
        if frac_level <= 0:
            return None
        cmp_level = ONE - frac_level

        factors: Dict[int, Decimal] = {}
        for index, coefficient in self._linear.items():
            variable = self.resolve(index)
            if variable.lower_limit is None or variable.lower_limit < 0:
                return None
            if variable.is_integer():
                frac_coeff = _positive_fraction(coefficient)
                if frac_coeff <= frac_level:
                    factors[index] = frac_coeff / frac_level
                else:
                    factors[index] = (ONE - frac_coeff) / cmp_level
            elif coefficient > 0:
                factors[index] = coefficient / frac_level
            elif coefficient < 0:
                factors[index] = -coefficient / cmp_level

        cut = self._model.add_expression(f"{self._name}(MIR)")
        for index, factor in factors.items():
            cut.set(index, factor)
        return cut.lower(ONE)

    # ------------------------------ scaling ------------------------------
    def _derive_adjustment_exponent(self) -> int:
        if self.is_integer():
            return 0
        if self._quadratic:
            return derive_adjustment_exponent(*largest_and_smallest(self._quadratic.values()))
        if self._linear:
            return derive_adjustment_exponent(*largest_and_smallest(self._linear.values()))
        return 0

    def get_adjusted_gradient(self, point) -> np.ndarray:
        """Gradient of the adjusted function at `point` (floats, model index space)."""
        n = self._model.count_variables()
        grad = np.zeros(n)
        x = np.asarray(point, dtype=float)
        for (row, col), coefficient in self._quadratic.items():
            factor = self.to_adjusted(coefficient)
            grad[row] += factor * x[col]
            grad[col] += factor * x[row]
        for index, coefficient in self._linear.items():
            grad[index] += self.to_adjusted(coefficient)
        return grad

    def get_adjusted_hessian(self) -> np.ndarray:
        n = self._model.count_variables()
        hess = np.zeros((n, n))
        for (row, col), coefficient in self._quadratic.items():
            factor = self.to_adjusted(coefficient)
            hess[row, col] += factor
            hess[col, row] += factor
        return hess

    # ------------------------------ validation ------------------------------
    def validate(self):
        problems = super().validate()
        if self._infeasible:
            problems.append(f"{self._name}: marked infeasible")
        return problems


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    converted = to_decimal(value)
    return converted if converted is not None else ZERO
