"""
presolve.py

Rule-based structural simplification applied before a model reaches a
numerical solver.

Expression rules (`Presolver`) see a constraint expression together with the
set of its *remaining* (non-fixed) linear variables and its limits
compensated for the fixed part. Variable rules (`VariableAnalyser`) see a
variable and its model. Every rule returns True when it changed something
that requires another sweep of the fixed-point driver (`Model.presolve`).

Rules never raise on infeasibility; they flag the expression (and, through
it, the model) as infeasible.
"""

from __future__ import annotations

import logging
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_DOWN, Context, Decimal
from typing import TYPE_CHECKING, Iterable, Optional, Set

from .entity import ZERO

if TYPE_CHECKING:
    from .config import Precision
    from .expression import Expression
    from .model import Model
    from .variable import Variable

logger = logging.getLogger(__name__)

# ---------- decimal contexts ----------
LEVEL = Context(prec=12, rounding=ROUND_HALF_DOWN)
SIMILARITY = Context(prec=12)
LOWER = Context(prec=34, rounding=ROUND_FLOOR)
UPPER = Context(prec=34, rounding=ROUND_CEILING)
DIVIDE = Context(prec=34)

TWO = Decimal(2)


# =============================================================================
# Helpers
# =============================================================================
def find_common_level(a: Decimal, b: Decimal) -> Optional[Decimal]:
    """`a` if a == b, the midpoint if they agree at 12 significant digits, else None."""
    if a == b:
        return a
    if LEVEL.plus(a) == LEVEL.plus(b):
        return DIVIDE.divide(a + b, TWO)
    return None


def _div(context: Context, value: Optional[Decimal], factor: Decimal) -> Optional[Decimal]:
    return None if value is None else context.divide(value, factor)


def _max(current: Optional[Decimal], candidate: Optional[Decimal]) -> Optional[Decimal]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


def _min(current: Optional[Decimal], candidate: Optional[Decimal]) -> Optional[Decimal]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return min(current, candidate)


def _round_integer_limits(variable: "Variable", lower: Optional[Decimal], upper: Optional[Decimal]):
    if variable.is_integer():
        if lower is not None:
            lower = lower.to_integral_value(rounding=ROUND_CEILING)
        if upper is not None:
            upper = upper.to_integral_value(rounding=ROUND_FLOOR)
    return lower, upper


def _tightened(variable: "Variable", lower_before: Optional[Decimal], upper_before: Optional[Decimal], precision) -> bool:
    """True when the variable's limits moved inward by more than `precision` tolerates."""
    lower, upper = variable.lower_limit, variable.upper_limit
    if lower is not None and (lower_before is None or precision.is_more_than(lower_before, lower)):
        return True
    return upper is not None and (upper_before is None or precision.is_less_than(upper_before, upper))


def _contribution_range(factor: Decimal, variable: "Variable"):
    lo, up = variable.lower_limit, variable.upper_limit
    if factor < 0:
        lo, up = up, lo
    return (factor * lo if lo is not None else None), (factor * up if up is not None else None)


# =============================================================================
# Rule base classes
# =============================================================================
class Presolver:
    """A rule applied to constraint expressions, ordered by `order`."""

    name = "presolver"

    def __init__(self, order: int):
        self.order = order

    def __repr__(self) -> str:
        return f"{type(self).__name__}(order={self.order})"

    def simplify(
        self,
        expression: "Expression",
        remaining: Set[int],
        lower: Optional[Decimal],
        upper: Optional[Decimal],
        precision: "Precision",
    ) -> bool:
        raise NotImplementedError


class VariableAnalyser:
    """A rule applied to single variables."""

    name = "analyser"

    def __init__(self, order: int):
        self.order = order

    def __repr__(self) -> str:
        return f"{type(self).__name__}(order={self.order})"

    def simplify(self, variable: "Variable", model: "Model") -> bool:
        raise NotImplementedError


# =============================================================================
# Case analysis by number of remaining variables
# =============================================================================
def do_case0(expression, remaining, lower, upper, precision) -> bool:
    """Fully determined by fixed variables: redundant, infeasible if the residual breaks a limit."""
    expression.set_redundant()
    if lower is not None and precision.is_more_than(ZERO, lower):
        expression.set_infeasible()
    if upper is not None and precision.is_less_than(ZERO, upper):
        expression.set_infeasible()
    return False


def do_case1(expression, remaining, lower, upper, precision) -> bool:
    """Move the expression's limits onto its single remaining variable."""
    expression.set_redundant()

    index = next(iter(remaining))
    variable = expression.resolve(index)
    factor = expression.get(index)

    if expression.is_equality_constraint():
        solution = DIVIDE.divide(upper, factor)
        if not variable.validate_value(solution, precision):
            expression.set_infeasible()
            return False
        if not variable.is_fixed():
            variable.set_fixed(solution)
            return True
        if find_common_level(solution, variable.value) is None:
            expression.set_infeasible()
        return False

    lower_before, upper_before = variable.lower_limit, variable.upper_limit
    if factor < 0:
        lower_cand, upper_cand = _div(LOWER, upper, factor), _div(UPPER, lower, factor)
    else:
        lower_cand, upper_cand = _div(LOWER, lower, factor), _div(UPPER, upper, factor)

    lower_new = _max(variable.lower_limit, lower_cand)
    upper_new = _min(variable.upper_limit, upper_cand)

    if lower_new is not None and upper_new is not None:
        level = find_common_level(lower_new, upper_new)
        if level is not None:
            lower_new = upper_new = level
            variable.set_fixed(level)

    lower_new, upper_new = _round_integer_limits(variable, lower_new, upper_new)

    if lower_new is not None and upper_new is not None:
        if lower_new > upper_new:
            expression.set_infeasible()
            return False
        level = find_common_level(lower_new, upper_new)
        if level is not None:
            variable.set_fixed(level)
            return True

    variable.lower(lower_new).upper(upper_new)
    return _tightened(variable, lower_before, upper_before, precision)


def do_case2(expression, remaining, lower, upper, precision) -> bool:
    """Cross-tighten the limits of two remaining variables from their contribution ranges."""
    index_a, index_b = list(remaining)[:2]
    variable_a, variable_b = expression.resolve(index_a), expression.resolve(index_b)
    factor_a, factor_b = expression.get(index_a), expression.get(index_b)

    before_a = variable_a.lower_limit, variable_a.upper_limit
    before_b = variable_b.lower_limit, variable_b.upper_limit
    min_a, max_a = _contribution_range(factor_a, variable_a)
    min_b, max_b = _contribution_range(factor_b, variable_b)

    if lower is not None and max_a is not None and max_b is not None and precision.is_less_than(lower, max_a + max_b):
        expression.set_infeasible()
        return False
    if upper is not None and min_a is not None and min_b is not None and precision.is_more_than(upper, min_a + min_b):
        expression.set_infeasible()
        return False

    allowed_min_a, allowed_max_a = min_a, max_a
    allowed_min_b, allowed_max_b = min_b, max_b

    if lower is not None:
        if max_b is not None:
            allowed_min_a = _max(min_a, lower - max_b)
        if max_a is not None:
            allowed_min_b = _max(min_b, lower - max_a)
    if upper is not None:
        if min_b is not None:
            allowed_max_a = _min(max_a, upper - min_b)
        if min_a is not None:
            allowed_max_b = _min(max_b, upper - min_a)

    def _limits(variable, factor, allowed_min, allowed_max):
        lo, up = variable.lower_limit, variable.upper_limit
        if allowed_min is not None:
            if factor < 0:
                up = UPPER.divide(allowed_min, factor)
            else:
                lo = LOWER.divide(allowed_min, factor)
        if allowed_max is not None:
            if factor < 0:
                lo = LOWER.divide(allowed_max, factor)
            else:
                up = UPPER.divide(allowed_max, factor)
        if lo is not None and up is not None:
            level = find_common_level(lo, up)
            if level is not None:
                lo = up = level
                variable.set_fixed(level)
        return _round_integer_limits(variable, lo, up)

    lower_a, upper_a = _limits(variable_a, factor_a, allowed_min_a, allowed_max_a)
    lower_b, upper_b = _limits(variable_b, factor_b, allowed_min_b, allowed_max_b)

    variable_a.lower(lower_a).upper(upper_a)
    variable_b.lower(lower_b).upper(upper_b)

    return (
        variable_a.is_fixed()
        or variable_b.is_fixed()
        or _tightened(variable_a, *before_a, precision)
        or _tightened(variable_b, *before_b, precision)
    )


def do_case_n(expression, remaining, lower, upper, precision) -> bool:
    """Sign-pattern analysis for three or more remaining variables."""
    fixed_any = False

    if lower is not None and expression.is_negative_on(remaining):
        if lower > 0:
            expression.set_infeasible()
            return False
        for index in remaining:
            variable = expression.resolve(index)
            if lower == 0:
                if not variable.validate_value(ZERO, precision):
                    expression.set_infeasible()
                    return False
                variable.set_fixed(ZERO)
                fixed_any = True
            elif variable.is_binary() and expression.get(index) < lower:
                variable.set_fixed(ZERO)
                fixed_any = True

    if upper is not None and expression.is_positive_on(remaining):
        if upper < 0:
            expression.set_infeasible()
            return False
        for index in remaining:
            variable = expression.resolve(index)
            if upper == 0:
                if not variable.validate_value(ZERO, precision):
                    expression.set_infeasible()
                    return False
                variable.set_fixed(ZERO)
                fixed_any = True
            elif variable.is_binary() and expression.get(index) > upper:
                variable.set_fixed(ZERO)
                fixed_any = True

    return fixed_any


# =============================================================================
# Expression rules
# =============================================================================
class ZeroOneTwo(Presolver):
    name = "zero_one_two"

    def simplify(self, expression, remaining, lower, upper, precision) -> bool:
        count = len(remaining)
        if count == 0:
            return do_case0(expression, remaining, lower, upper, precision)
        if count == 1:
            return do_case1(expression, remaining, lower, upper, precision)
        if count == 2:
            return do_case2(expression, remaining, lower, upper, precision)
        return do_case_n(expression, remaining, lower, upper, precision)


class IntegerRounding(Presolver):
    name = "integer_rounding"

    def simplify(self, expression, remaining, lower, upper, precision) -> bool:
        expression.do_integer_rounding(remaining, lower, upper)
        return False


class RedundantConstraint(Presolver):
    """Mark an expression redundant when its limits are implied by the variable limits."""

    name = "redundant_constraint"

    def simplify(self, expression, remaining, lower, upper, precision) -> bool:
        if not remaining:
            expression.set_redundant()
            return False
        if not expression.is_function_linear():
            return False

        lowest: Optional[Decimal] = ZERO
        highest: Optional[Decimal] = ZERO
        for index in remaining:
            variable = expression.resolve(index)
            contr_min, contr_max = _contribution_range(expression.get(index), variable)
            lowest = lowest + contr_min if lowest is not None and contr_min is not None else None
            highest = highest + contr_max if highest is not None and contr_max is not None else None

        upper_redundant = upper is None
        if upper is not None:
            if lowest is not None and lowest > upper and find_common_level(upper, lowest) is None:
                expression.set_infeasible()
            elif highest is not None and highest <= upper:
                upper_redundant = True

        lower_redundant = lower is None
        if lower is not None:
            if highest is not None and highest < lower and find_common_level(lower, highest) is None:
                expression.set_infeasible()
            elif lowest is not None and lowest >= lower:
                lower_redundant = True

        if lower_redundant and upper_redundant:
            expression.set_redundant()
        return False


class LinearObjective(Presolver):
    """Fold a linear objective expression's weight into its variables' weights."""

    name = "linear_objective"

    def simplify(self, expression, remaining, lower, upper, precision) -> bool:
        if expression.is_function_linear():
            weight = expression.contribution_weight
            for index, coefficient in list(expression.linear_items()):
                variable = expression.resolve(index)
                contribution = weight * coefficient
                current = variable.contribution_weight
                variable.weight(current + contribution if current is not None else contribution)
            expression.weight(None)
        return False


# =============================================================================
# Variable rules
# =============================================================================
class Unreferenced(VariableAnalyser):
    """
    Pin variables that appear in no expression.

    An objective variable goes to its favourable limit, or is flagged unbounded
    when that limit is missing. Anything else without a value is fixed at zero.
    """

    name = "unreferenced"

    def simplify(self, variable, model) -> bool:
        if model.is_referenced(variable):
            return False
        if variable.is_objective():
            sign = 1 if variable.contribution_weight > 0 else -1
            if model.is_maximisation():
                sign = -sign
            limit = variable.lower_limit if sign > 0 else variable.upper_limit
            if limit is not None:
                variable.set_fixed(limit)
            else:
                variable.set_unbounded(True)
        elif not variable.is_value_set():
            variable.set_value(ZERO)
            variable.level(variable.value)
        return False


class IntegerVariableRounding(VariableAnalyser):
    name = "integer_variable_rounding"

    def simplify(self, variable, model) -> bool:
        if variable.is_integer() and variable.is_constraint():
            variable.do_integer_rounding()
        return False


ZERO_ONE_TWO = ZeroOneTwo(10)
INTEGER_ROUNDING = IntegerRounding(20)
REDUNDANT_CONSTRAINT = RedundantConstraint(30)
LINEAR_OBJECTIVE = LinearObjective(10)
UNREFERENCED = Unreferenced(4)
INTEGER_VARIABLE_ROUNDING = IntegerVariableRounding(20)

DEFAULT_PRESOLVERS = (ZERO_ONE_TWO, INTEGER_ROUNDING, REDUNDANT_CONSTRAINT)
DEFAULT_ANALYSERS = (UNREFERENCED, INTEGER_VARIABLE_ROUNDING)


# =============================================================================
# Feasibility re-check and similarity reduction
# =============================================================================
def check_feasibility(expression, remaining, lower, upper, precision) -> None:
    """Re-run the case analysis on an expression already marked redundant."""
    ZERO_ONE_TWO.simplify(expression, remaining, lower, upper, precision)


def check_similarity(current: Iterable["Expression"], potential: "Expression") -> bool:
    """
    If `potential` is a scalar multiple of another live constraint, merge its
    limits into that constraint and mark `potential` redundant.
    """
    if not potential.is_constraint() or potential.is_redundant():
        return False
    keys = potential.linear_keys()
    for expression in current:
        if expression is potential or not expression.is_constraint() or expression.is_redundant():
            continue
        if expression.name == potential.name or expression.linear_keys() != keys or not keys:
            continue

        ratio = None
        for index in keys:
            candidate = SIMILARITY.divide(expression.get(index), potential.get(index))
            if ratio is None:
                ratio = candidate
            elif candidate != ratio:
                ratio = None
                break
        if ratio is None:
            continue

        positive = ratio > 0
        sub_lower = potential.lower_limit if positive else potential.upper_limit
        sub_upper = potential.upper_limit if positive else potential.lower_limit
        if ratio != 1:
            sub_lower = sub_lower * ratio if sub_lower is not None else None
            sub_upper = sub_upper * ratio if sub_upper is not None else None

        if sub_lower is not None:
            expression.lower(_max(expression.lower_limit, sub_lower))
        if sub_upper is not None:
            expression.upper(_min(expression.upper_limit, sub_upper))

        logger.debug("Similar constraints: %s folded into %s (ratio %s)", potential.name, expression.name, ratio)
        potential.set_redundant()
        return True
    return False


def reduce(expressions) -> bool:
    expressions = list(expressions)
    changed = False
    for expression in expressions:
        changed |= check_similarity(expressions, expression)
    return changed
