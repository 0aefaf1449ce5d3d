"""
model.py

Expressions-based optimisation model.

`Model` owns an ordered list of variables (index = position) and a
name-keyed set of expressions. The objective is not stored; it is aggregated
on demand from every weighted variable and expression. Before solving, the
model is presolved with the rule lists held by its `ModelConfig`, then handed
to the first capable solver `Integration` from the same config.

Typical use
-----------
    m = Model()
    x = m.add_variable("x").weight(1)
    y = m.add_variable("y").weight(1)
    m.add_expression("sum").set(x, 1).set(y, 1).lower(1)
    ...
    result = m.minimise()
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Set

import numpy as np

from . import presolve as presolvers
from .config import ModelConfig, Precision
from .entity import ZERO, to_decimal
from .expression import Expression
from .result import Result, State
from .variable import Variable

logger = logging.getLogger(__name__)

OBJECTIVE = "OBJECTIVE"
OBJECTIVE_AS_CONSTRAINT = "OBJECTIVE_AS_CONSTRAINT"


# =============================================================================
# Variable categorisation
# =============================================================================
class VariablesCategorisation:
    """
    Partitions of the free (non-fixed) variables used by the solver adapters.

    Index maps hold, for every model index, the position in the partition or -1.
    """

    def __init__(self):
        self.free: List[int] = []
        self.positive: List[int] = []
        self.negative: List[int] = []
        self.integer: List[int] = []
        self.free_index = np.zeros(0, dtype=int)
        self.positive_index = np.zeros(0, dtype=int)
        self.negative_index = np.zeros(0, dtype=int)
        self.integer_index = np.zeros(0, dtype=int)
        self.valid = False

    def reset(self) -> None:
        self.__init__()

    def update(self, variables: List[Variable]) -> None:
        n = len(variables)
        self.free, self.positive, self.negative, self.integer = [], [], [], []
        for i, variable in enumerate(variables):
            if variable.is_fixed():
                continue
            self.free.append(i)
            upper, lower = variable.upper_limit, variable.lower_limit
            if upper is None or upper > 0:
                self.positive.append(i)
            if lower is None or lower < 0:
                self.negative.append(i)
            if variable.is_integer():
                self.integer.append(i)

        def _index_map(members: List[int]) -> np.ndarray:
            mapping = np.full(n, -1, dtype=int)
            mapping[members] = np.arange(len(members))
            return mapping

        self.free_index = _index_map(self.free)
        self.positive_index = _index_map(self.positive)
        self.negative_index = _index_map(self.negative)
        self.integer_index = _index_map(self.integer)
        self.valid = True


# =============================================================================
# Solver integration protocol
# =============================================================================
class Integration:
    """
    Bridge between a model and one solver family.

    Solvers work over the model's free variables only; the default state
    mappings translate between model index space and that subset.
    """

    name = "integration"

    def is_capable(self, model: "Model") -> bool:
        raise NotImplementedError

    def build(self, model: "Model"):
        raise NotImplementedError

    def update(self, solver, model: "Model", variable: Variable) -> bool:
        """Apply a single variable's changed limits in place; False if unsupported."""
        return False

    def to_solver_state(self, model_state: Optional[Result], model: "Model") -> Optional[Result]:
        if model_state is None or len(model_state) != model.count_variables():
            return None
        free = model.get_free_variables()
        values = np.array([float(model_state[i]) for i in free], dtype=float)
        return Result(model_state.state, model_state.value, values)

    def to_model_state(self, solver_state: Result, model: "Model", solver=None) -> Result:
        """Solver result in model index space; `solver` is the instance that produced it."""
        n = model.count_variables()
        values = np.zeros(n)
        free_index = model.categorisation.free_index
        has_solution = len(solver_state) == len(model.get_free_variables())
        for i, variable in enumerate(model.variables):
            j = free_index[i]
            if j >= 0:
                values[i] = float(solver_state[j]) if has_solution else np.nan
            else:
                values[i] = float(variable.value) if variable.value is not None else 0.0
        return Result(solver_state.state, solver_state.value, values, solver_state.multipliers)


# =============================================================================
# Model
# =============================================================================
class Model:
    """
    Parameters
    ----------
    name : str
    config : ModelConfig, optional
        Precisions, presolve rule lists, solver integrations and convex solver
        settings. A fresh default config is created when omitted.
    """

    def __init__(self, name: str = "model", config: Optional[ModelConfig] = None):
        self.name = name
        self.config = config if config is not None else ModelConfig()
        self._variables: List[Variable] = []
        self._expressions: Dict[str, Expression] = {}
        self._references: Set[int] = set()
        self._infeasible = False
        self._objective_constant = ZERO
        self._maximisation = False
        self._relaxed = False
        self._shallow_copy = False
        self.categorisation = VariablesCategorisation()

    def __repr__(self) -> str:
        return f"Model({self.name!r}, variables={len(self._variables)}, expressions={len(self._expressions)})"

    # ------------------------------ factories ------------------------------
    def add_variable(self, variable=None) -> Variable:
        """Add a new variable (by name) or an existing unattached `Variable`."""
        if variable is None or isinstance(variable, str):
            variable = Variable(variable if variable is not None else f"X{len(self._variables)}")
        elif not isinstance(variable, Variable):
            raise TypeError(f"Expected a Variable or a name, got {type(variable).__name__}")
        variable._assign_index(len(self._variables))
        self._variables.append(variable)
        self.categorisation.valid = False
        return variable

    def add_variables(self, count: int, prefix: str = "X") -> List[Variable]:
        start = len(self._variables)
        return [self.add_variable(f"{prefix}{start + i}") for i in range(count)]

    def add_expression(self, name: Optional[str] = None) -> Expression:
        if name is None:
            name = f"EXPR{len(self._expressions)}"
        if name in self._expressions:
            raise ValueError(f"Duplicate expression name '{name}'")
        expression = Expression(name, self)
        self._expressions[name] = expression
        return expression

    # ------------------------------ access ------------------------------
    @property
    def variables(self) -> List[Variable]:
        return list(self._variables)

    @property
    def expressions(self) -> List[Expression]:
        return list(self._expressions.values())

    def get_variable(self, index: int) -> Variable:
        return self._variables[index]

    def get_expression(self, name: str) -> Expression:
        if name not in self._expressions:
            raise KeyError(f"Unknown expression '{name}'")
        return self._expressions[name]

    def count_variables(self) -> int:
        return len(self._variables)

    def count_expressions(self) -> int:
        return len(self._expressions)

    def bounds(self) -> Iterator[Variable]:
        """Constraint variables that are not fixed."""
        return (v for v in self._variables if v.is_constraint() and not v.is_fixed())

    def constraints(self) -> Iterator[Expression]:
        """Constraint expressions that are not redundant."""
        return (e for e in self._expressions.values() if e.is_constraint() and not e.is_redundant())

    # ------------------------------ references ------------------------------
    def _add_reference(self, index: int) -> None:
        self._references.add(index)

    def is_referenced(self, variable: Variable) -> bool:
        return variable.index in self._references

    @property
    def references(self) -> Set[int]:
        return set(self._references)

    # ------------------------------ status ------------------------------
    def _set_infeasible(self) -> None:
        self._infeasible = True

    def is_infeasible(self) -> bool:
        """Sticky: once any entity is seen infeasible, the model stays infeasible."""
        if self._infeasible:
            return True
        if any(e.is_infeasible() for e in self._expressions.values()) or any(
            v.is_infeasible() for v in self._variables
        ):
            self._infeasible = True
        return self._infeasible

    def is_unbounded(self) -> bool:
        return any(v.is_unbounded() for v in self._variables)

    def is_fixed(self) -> bool:
        return all(v.is_fixed() for v in self._variables)

    def is_relaxed(self) -> bool:
        return self._relaxed

    def is_shallow_copy(self) -> bool:
        return self._shallow_copy

    def is_any_variable_integer(self) -> bool:
        if self._relaxed:
            return False
        return any(v.is_integer() for v in self._variables)

    def is_integer(self, indices) -> bool:
        return all(self._variables[i].is_integer() for i in indices)

    def is_any_objective_quadratic(self) -> bool:
        return any(e.is_objective() and e.is_any_quadratic_factor_nonzero() for e in self._expressions.values())

    def is_any_constraint_quadratic(self) -> bool:
        return any(
            e.is_constraint() and not e.is_redundant() and e.is_any_quadratic_factor_nonzero()
            for e in self._expressions.values()
        )

    def relax(self, soft: bool = False) -> None:
        """Soft relaxation keeps integer flags but stops treating the model as integer."""
        if soft:
            self._relaxed = True
        else:
            for variable in self._variables:
                variable.relax()

    # ------------------------------ sense & objective ------------------------------
    def set_minimisation(self) -> None:
        self._maximisation = False

    def set_maximisation(self) -> None:
        self._maximisation = True

    def is_maximisation(self) -> bool:
        return self._maximisation

    def is_minimisation(self) -> bool:
        return not self._maximisation

    @property
    def objective_constant(self) -> Decimal:
        return self._objective_constant

    def add_objective_constant(self, addition) -> None:
        addition = to_decimal(addition)
        if addition is not None and addition != 0:
            self._objective_constant += addition

    def objective(self) -> Expression:
        """
        Aggregate objective, generated on every call.

        Changing the returned expression does not change the model; set weights
        on variables and expressions instead.
        """
        aggregate = Expression(OBJECTIVE, self)
        aggregate._aggregate = True

        for i, variable in enumerate(self._variables):
            if variable.is_objective():
                aggregate.set(i, variable.contribution_weight)

        aggregate.set_constant(self._objective_constant)

        for expression in self._expressions.values():
            if not expression.is_objective():
                continue
            weight = expression.contribution_weight
            for key, value in list(expression.linear_items()):
                aggregate.add(key, value if weight == 1 else weight * value)
            for key, value in list(expression.quadratic_items()):
                aggregate.add(key, value if weight == 1 else weight * value)

        return aggregate

    def limit_objective(self, lower=None, upper=None) -> Expression:
        """Constrain a linear objective's value; returns the objective-as-constraint expression."""
        constraint = self._expressions.get(OBJECTIVE_AS_CONSTRAINT)
        if constraint is None:
            aggregate = self.objective()
            if aggregate.is_any_quadratic_factor_nonzero():
                return aggregate
            constraint = aggregate.copy(self, deep=True)
            constraint._name = OBJECTIVE_AS_CONSTRAINT
            constraint._aggregate = False
            self._expressions[OBJECTIVE_AS_CONSTRAINT] = constraint

        constraint.lower(lower).upper(upper)
        if constraint.is_linear_and_all_integer():
            constraint._integer = None
            constraint.do_integer_rounding()
        return constraint

    # ------------------------------ free / fixed ------------------------------
    def get_fixed_variables(self) -> Set[int]:
        return {i for i, v in enumerate(self._variables) if v.is_fixed()}

    def _categorised(self) -> VariablesCategorisation:
        if not self.categorisation.valid or len(self.categorisation.free_index) != len(self._variables):
            self.categorisation.update(self._variables)
        return self.categorisation

    def get_free_variables(self) -> List[int]:
        return list(self._categorised().free)

    def get_positive_variables(self) -> List[int]:
        return list(self._categorised().positive)

    def get_negative_variables(self) -> List[int]:
        return list(self._categorised().negative)

    def get_integer_variables(self) -> List[int]:
        return list(self._categorised().integer)

    def index_of_free_variable(self, index: int) -> int:
        return int(self._categorised().free_index[index])

    # ------------------------------ copies ------------------------------
    def copy(self, shallow: bool = False, prune: bool = False) -> "Model":
        """
        Copy this model.

        shallow : expressions share coefficient tables copy-on-write.
        prune   : keep only objective and non-redundant constraint expressions;
                  a deep pruned copy also compensates them for fixed variables.
        """
        clone = Model(self.name, self.config)
        clone._maximisation = self._maximisation
        clone._objective_constant = self._objective_constant
        for variable in self._variables:
            clone._variables.append(variable.copy())

        fixed = self.get_fixed_variables()
        for name, expression in self._expressions.items():
            keep = not prune or expression.is_objective() or (expression.is_constraint() and not expression.is_redundant())
            if not keep:
                continue
            if shallow:
                clone._expressions[name] = expression.copy(clone, deep=False)
            elif prune:
                clone._expressions[name] = expression.copy(clone, deep=True).compensate(fixed)
            else:
                clone._expressions[name] = expression.copy(clone, deep=True)

        clone._references = set(self._references)
        clone._shallow_copy = shallow or self._shallow_copy
        clone._relaxed = self._relaxed
        return clone

    def simplify(self) -> "Model":
        """Presolve, then return a pruned shallow copy without redundant constraints."""
        self.scan_entities()
        self.presolve()
        return self.copy(shallow=True, prune=True)

    def snapshot(self) -> "Model":
        """Shallow copy flagged as relaxed."""
        clone = self.copy(shallow=True, prune=False)
        clone.relax(soft=True)
        return clone

    def dispose(self) -> None:
        self._expressions.clear()
        self._variables.clear()
        self._references.clear()
        self.categorisation.reset()

    # ------------------------------ validation ------------------------------
    def validate(self) -> bool:
        """Structural validation of all entities; problems are logged at DEBUG."""
        problems = []
        for variable in self._variables:
            problems.extend(variable.validate())
        for expression in self._expressions.values():
            problems.extend(expression.validate())
        for problem in problems:
            logger.debug("Invalid: %s", problem)
        return not problems

    def validate_solution(self, solution, precision: Optional[Precision] = None) -> bool:
        """Check a point (model index space) against variable and expression limits."""
        precision = precision if precision is not None else self.config.feasibility
        if len(solution) != len(self._variables):
            return False
        values = [v if isinstance(v, Decimal) else to_decimal(v) for v in solution]
        if any(v is None for v in values):
            return False
        for variable, value in zip(self._variables, values):
            if not variable.validate_value(value, precision, self._relaxed):
                return False
        for expression in self._expressions.values():
            if not expression.validate_value(expression.evaluate(values), precision):
                return False
        return True

    def get_variable_values(self, precision: Optional[Precision] = None) -> Result:
        """
        Current variable values as a model-level `Result`.

        Unset values count as zero and make the state APPROXIMATE; otherwise the
        state is FEASIBLE or INFEASIBLE according to `validate_solution`.
        """
        values = []
        all_set = True
        for variable in self._variables:
            if variable.value is not None:
                values.append(variable.value)
            else:
                values.append(ZERO)
                all_set = False

        solution = np.array(values, dtype=object)
        if all_set:
            state = State.FEASIBLE if self.validate_solution(values, precision) else State.INFEASIBLE
        else:
            state = State.APPROXIMATE
        value = float(self.objective().evaluate(values)) if values else float(self._objective_constant)
        return Result(state, value, solution)

    # ------------------------------ presolve ------------------------------
    def scan_entities(self) -> None:
        """One-off pass: fold linear objectives, run the case analysis and variable rules."""
        any_integer = self.is_any_variable_integer()
        precision = self.config.feasibility

        for expression in list(self._expressions.values()):
            keys = expression.linear_keys()
            lower, upper = expression.lower_limit, expression.upper_limit
            if expression.is_objective():
                presolvers.LINEAR_OBJECTIVE.simplify(expression, keys, lower, upper, precision)
            if expression.is_constraint() and expression.count_quadratic_factors() == 0:
                remaining, lower, upper = self._compensated(expression, self.get_fixed_variables())
                presolvers.ZERO_ONE_TWO.simplify(expression, remaining, lower, upper, precision)
                if any_integer:
                    presolvers.INTEGER_ROUNDING.simplify(expression, remaining, lower, upper, precision)

        analysers = sorted(self.config.analysers, key=lambda rule: rule.order)
        for variable in self._variables:
            for analyser in analysers:
                analyser.simplify(variable, self)

        self.categorisation.valid = False

    def _compensated(self, expression: Expression, fixed: Set[int]):
        fixed_part = expression.calculate_set_value(fixed) + expression.constant
        remaining = expression.linear_keys() - fixed
        return (
            remaining,
            expression.get_compensated_lower_limit(fixed_part),
            expression.get_compensated_upper_limit(fixed_part),
        )

    def presolve(self) -> None:
        """
        Apply the configured rules until a full sweep requests no repeat, then
        re-check redundant constraints for latent infeasibility and refresh the
        variable categorisation. Idempotent on an unchanged model.
        """
        rules = sorted(self.config.presolvers, key=lambda rule: rule.order)
        precision = self.config.feasibility
        sweeps = 0

        need_to_repeat = True
        while need_to_repeat:
            if sweeps >= self.config.presolve_max_sweeps:
                logger.debug("Presolve stopped after %d sweeps", sweeps)
                break
            need_to_repeat = False
            sweeps += 1
            fixed = self.get_fixed_variables()
            for expression in list(self._expressions.values()):
                if need_to_repeat:
                    break
                if (
                    not expression.is_constraint()
                    or expression.is_infeasible()
                    or expression.is_redundant()
                    or expression.count_quadratic_factors() > 0
                ):
                    continue
                remaining, lower, upper = self._compensated(expression, fixed)
                for rule in rules:
                    if rule.simplify(expression, remaining, lower, upper, precision):
                        need_to_repeat = True
                        break

        if not self.is_infeasible():
            fixed = self.get_fixed_variables()
            for expression in list(self._expressions.values()):
                if expression.is_constraint() and expression.is_redundant() and expression.count_quadratic_factors() == 0:
                    remaining, lower, upper = self._compensated(expression, fixed)
                    presolvers.check_feasibility(expression, remaining, lower, upper, precision)

        self.categorisation.update(self._variables)
        logger.info(
            "Presolve: %d sweep(s), %d fixed, %d redundant, infeasible=%s",
            sweeps,
            len(self.get_fixed_variables()),
            sum(1 for e in self._expressions.values() if e.is_redundant()),
            self._infeasible,
        )

    def reduce_similar(self) -> bool:
        """Opt-in: merge constraints that are scalar multiples of each other."""
        return presolvers.reduce(self._expressions.values())

    # ------------------------------ solving ------------------------------
    def get_integration(self) -> Integration:
        for integration in self.config.integrations:
            if integration.is_capable(self):
                return integration
        raise RuntimeError("No solver integration available that can handle this model")

    def prepare(self) -> "Intermediate":
        return Intermediate(self)

    def optimise(self) -> Result:
        if not self._shallow_copy and self.config.presolve:
            self.scan_entities()

        prepared = self.prepare()
        result = prepared.solve()

        solution_precision = self.config.solution
        if len(result) == len(self._variables):
            for variable, value in zip(self._variables, result.solution):
                if variable.is_fixed() or value is None:
                    continue
                if isinstance(value, Decimal):
                    variable.set_value(value)
                elif np.isfinite(value):
                    variable.set_value(solution_precision.enforce(solution_precision.context.create_decimal_from_float(float(value))))

        values = self.get_variable_values()
        prepared.dispose()
        return Result(result.state, values.value, values.solution, result.multipliers, result.duals)

    def minimise(self) -> Result:
        self.set_minimisation()
        return self.optimise()

    def maximise(self) -> Result:
        self.set_maximisation()
        return self.optimise()


# =============================================================================
# Intermediate (prepared model)
# =============================================================================
class Intermediate:
    """
    A model prepared for (repeated) solving.

    Caches the chosen integration and built solver so callers such as an
    integer driver can tighten single variables via `update` and solve again.
    The solution is not written back to the model.
    """

    def __init__(self, model: Model):
        self.model = model
        self._integration: Optional[Integration] = None
        self._solver = None

    @property
    def integration(self) -> Integration:
        if self._integration is None:
            self._integration = self.model.get_integration()
        return self._integration

    @property
    def solver(self):
        if self._solver is None:
            self._solver = self.integration.build(self.model)
        return self._solver

    def solve(self, kick_starter: Optional[Result] = None) -> Result:
        model = self.model
        n = model.count_variables()

        if self._solver is None and model.config.presolve:
            model.presolve()

        if model.is_infeasible():
            return Result(State.INFEASIBLE, float("nan"), self._current_values())
        if model.is_unbounded():
            return Result(State.UNBOUNDED, float("nan"), self._current_values())
        if model.is_fixed():
            values = model.get_variable_values()
            state = State.DISTINCT if values.state.is_feasible() else State.INVALID
            return Result(state, values.value, np.array([float(v) for v in values.solution]))

        integration = self.integration
        solver = self.solver
        solver_result = solver.solve(integration.to_solver_state(kick_starter, model))
        result = integration.to_model_state(solver_result, model, solver)
        logger.debug("Solved %r with %s: %s", model, integration.name, result.state.name)
        if len(result) != n:
            return Result(result.state, result.value, self._current_values(), result.multipliers, result.duals)
        return result

    def _current_values(self) -> np.ndarray:
        return np.array(
            [float(v.value) if v.value is not None else 0.0 for v in self.model.variables], dtype=float
        )

    def update(self, variable: Variable) -> None:
        """
        Re-derive after `variable`'s limits changed.

        Applied in place when the built solver supports it, otherwise the
        solver is discarded and rebuilt (after a fresh presolve) on next solve.
        """
        if self._solver is not None and not variable.is_fixed():
            if self.integration.update(self._solver, self.model, variable):
                return
        self.reset()

    def validate(self, result: Result) -> bool:
        return self.model.validate_solution(result.solution)

    def dispose(self) -> None:
        if self._solver is not None:
            self._solver.dispose()
        self._solver = None

    def reset(self) -> None:
        self.dispose()
        self._integration = None
