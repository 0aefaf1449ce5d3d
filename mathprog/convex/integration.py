# mathprog/convex/integration.py
# Model <-> solver bridges for the convex QP family and for pure LPs.
from __future__ import annotations

import logging
from dataclasses import replace

import scipy.sparse as sp

from ..model import Integration
from ..result import Result
from .base import BaseSolver, LinearSolver, new_solver
from .data import ConvexData

logger = logging.getLogger(__name__)


def update_bound_rows(solver, model, variable) -> bool:
    """
    Rewrite a free variable's bound rows in the solver data, in place.

    Only possible when the variable's set of limits still matches its set of
    dense inequality rows; anything else needs a rebuild.
    """
    data = getattr(solver, "data", None)
    if data is None or sp.issparse(data.AI):
        return False

    index = variable.index
    j = model.index_of_free_variable(index)
    if j < 0:
        return False

    upper_row = data.inequality_row(("variable", index, "upper"))
    lower_row = data.inequality_row(("variable", index, "lower"))
    if variable.is_upper_limit_set() != (upper_row is not None):
        return False
    if variable.is_lower_limit_set() != (lower_row is not None):
        return False

    factor = variable.get_adjustment_factor()
    m_eq = data.count_equality_constraints()
    for row, sign, limit in (
        (upper_row, 1.0, variable.get_adjusted_upper_limit),
        (lower_row, -1.0, variable.get_adjusted_lower_limit),
    ):
        if row is None:
            continue
        data.AI[row, j] = sign * factor
        data.BI[row] = sign * limit()
        if data.row_scale:
            data.row_scale[m_eq + row] = factor

    logger.debug("In-place bound update for %s (rows %s/%s)", variable.name, upper_row, lower_row)
    return True


def model_duals(data: ConvexData, multipliers, model):
    """Unscaled multipliers in row order, and the same keyed by `(entity, side)`."""
    unscaled = data.unscale_multipliers(multipliers)
    duals = {}
    for (kind, key, side), value in zip(data.row_map, unscaled):
        entity = model.get_expression(key) if kind == "expression" else model.get_variable(key)
        duals[(entity, side)] = float(value)
    return unscaled, duals


class DataIntegration(Integration):
    """Integrations whose solvers run over `ConvexData.from_model`."""

    def update(self, solver, model, variable) -> bool:
        return update_bound_rows(solver, model, variable)

    def to_model_state(self, solver_state: Result, model, solver=None) -> Result:
        result = super().to_model_state(solver_state, model, solver)
        data = getattr(solver, "data", None)
        multipliers = solver_state.multipliers
        if data is None or multipliers is None or len(multipliers) != len(data.row_map):
            return result
        unscaled, duals = model_duals(data, multipliers, model)
        return replace(result, multipliers=unscaled, duals=duals)


class ConvexIntegration(DataIntegration):
    """Continuous models with a quadratic objective and linear constraints."""

    name = "convex"

    def is_capable(self, model) -> bool:
        return (
            not model.is_any_variable_integer()
            and not model.is_any_constraint_quadratic()
            and model.is_any_objective_quadratic()
        )

    def build(self, model) -> BaseSolver:
        return new_solver(ConvexData.from_model(model), model.config.convex)


class LinearIntegration(DataIntegration):
    """Continuous models with nothing quadratic, solved by HiGHS."""

    name = "linear"

    def is_capable(self, model) -> bool:
        return (
            not model.is_any_variable_integer()
            and not model.is_any_objective_quadratic()
            and not model.is_any_constraint_quadratic()
        )

    def build(self, model) -> BaseSolver:
        return LinearSolver(ConvexData.from_model(model), model.config.convex)
