"""Tests for the presolve rules and the fixed-point driver."""

import itertools
from decimal import Decimal

import numpy as np
import pytest

from mathprog import presolve
from mathprog.config import ModelConfig
from mathprog.model import Model
from mathprog.presolve import find_common_level


def _limits(model):
    return [(v.lower_limit, v.upper_limit, v.value) for v in model.variables] + [
        (e.lower_limit, e.upper_limit, e.is_redundant(), e.is_infeasible()) for e in model.expressions
    ]


class TestCommonLevel:
    def test_equal_values(self):
        assert find_common_level(Decimal("1.5"), Decimal("1.5")) == Decimal("1.5")

    def test_values_equal_at_twelve_digits(self):
        level = find_common_level(Decimal("1.0000000000001"), Decimal("1.0000000000002"))
        assert level == Decimal("1.00000000000015")

    def test_different_values(self):
        assert find_common_level(Decimal(1), Decimal(2)) is None


class TestCases:
    def test_case0_infeasible_residual(self):
        model = Model()
        x = model.add_variable("x").level(2)
        row = model.add_expression("row").set(x, 1).upper(1)
        model.presolve()
        assert row.is_redundant()
        assert row.is_infeasible()
        assert model.is_infeasible()

    def test_case1_equality_fixes_variable(self):
        model = Model()
        x = model.add_variable("x")
        row = model.add_expression("row").set(x, 2).level(6)
        model.presolve()
        assert x.is_fixed()
        assert x.value == 3
        assert row.is_redundant()
        assert not model.is_infeasible()

    def test_case1_equality_outside_limits(self):
        model = Model()
        x = model.add_variable("x").upper(1)
        model.add_expression("row").set(x, 2).level(6)
        model.presolve()
        assert model.is_infeasible()

    def test_case1_inequality_moves_limits(self):
        model = Model()
        x = model.add_variable("x")
        model.add_expression("row").set(x, -2).lower(-6).upper(4)
        model.presolve()
        assert x.lower_limit == -2
        assert x.upper_limit == 3

    def test_case1_crossing_limits(self):
        model = Model()
        x = model.add_variable("x")
        model.add_expression("a").set(x, 1).lower(5)
        model.add_expression("b").set(x, 1).upper(3)
        model.presolve()
        assert model.is_infeasible()

    def test_case2_cross_tightening(self):
        model = Model()
        x = model.add_variable("x").lower(1)
        y = model.add_variable("y").lower(1)
        model.add_expression("row").set(x, 1).set(y, 1).upper(4)
        model.presolve()
        assert x.upper_limit == 3
        assert y.upper_limit == 3

    def test_case2_fixes_at_common_level(self):
        model = Model()
        x = model.add_variable("x").lower(0).upper(1)
        y = model.add_variable("y").lower(0).upper(1)
        model.add_expression("row").set(x, 1).set(y, 1).lower(2)
        model.presolve()
        assert x.is_fixed() and x.value == 1
        assert y.is_fixed() and y.value == 1
        assert not model.is_infeasible()

    def test_case2_infeasible(self):
        model = Model()
        x = model.add_variable("x").upper(2)
        y = model.add_variable("y").upper(2)
        model.add_expression("row").set(x, 1).set(y, 1).lower(5)
        model.presolve()
        assert model.is_infeasible()

    def test_case_n_zero_bound_fixes_all(self):
        model = Model()
        xs = [model.add_variable().lower(0) for _ in range(3)]
        row = model.add_expression("row")
        for v in xs:
            row.set(v, 1)
        row.upper(0)
        model.presolve()
        assert all(v.is_fixed() and v.value == 0 for v in xs)

    def test_case_n_sign_infeasible(self):
        model = Model()
        xs = [model.add_variable().lower(0) for _ in range(3)]
        row = model.add_expression("row")
        for v in xs:
            row.set(v, -1)
        row.lower(1)
        model.presolve()
        assert model.is_infeasible()

    def test_case_n_binary_too_large(self):
        model = Model()
        a, b, c = (model.add_variable().binary() for _ in range(3))
        row = model.add_expression("row").set(a, 5).set(b, 1).set(c, 1).upper(2)
        model.presolve()
        assert a.is_fixed() and a.value == 0
        assert not b.is_fixed()
        assert not row.is_infeasible()


class TestRules:
    def test_redundant_constraint(self):
        model = Model()
        x = model.add_variable("x").lower(0).upper(2)
        y = model.add_variable("y").lower(0).upper(2)
        row = model.add_expression("row").set(x, 1).set(y, 1).upper(10)
        model.presolve()
        assert row.is_redundant()
        assert row not in list(model.constraints())

    def test_linear_objective_folds_into_variables(self):
        model = Model()
        x, y = model.add_variable("x"), model.add_variable("y")
        objective = model.add_expression("objective").set(x, 2).set(y, 3).weight(2)
        model.scan_entities()
        assert x.contribution_weight == 4
        assert y.contribution_weight == 6
        assert not objective.is_objective()

    def test_unreferenced_variables(self):
        model = Model()
        pinned = model.add_variable("pinned").lower(2).weight(1)
        runaway = model.add_variable("runaway").weight(-1)
        idle = model.add_variable("idle")
        model.scan_entities()
        assert pinned.is_fixed() and pinned.value == 2
        assert runaway.is_unbounded()
        assert idle.is_fixed() and idle.value == 0
        assert model.is_unbounded()

    def test_unreferenced_respects_maximisation(self):
        model = Model()
        v = model.add_variable("v").upper(7).weight(1)
        model.set_maximisation()
        model.scan_entities()
        assert v.is_fixed() and v.value == 7

    def test_integer_variable_rounding(self):
        model = Model()
        v = model.add_variable("v").integer().lower("0.5").upper("2.5")
        model.add_expression("use").set(v, 1).upper(10)
        model.scan_entities()
        assert v.lower_limit == 1 and v.upper_limit == 2

    def test_integer_rounding_keeps_the_constant(self):
        model = Model()
        x = model.add_variable("x").integer().lower(0).upper(5)
        y = model.add_variable("y").integer().lower(0).upper(5)
        row = model.add_expression("row").set(x, 1).set(y, 1).set_constant("0.5").upper(3)
        model.presolve()
        # x + y may reach 2, so the row limit only tightens to 2.5
        assert row.upper_limit == Decimal("2.5")
        assert model.validate_solution([1, 1])
        assert model.validate_solution([2, 0])
        assert not model.validate_solution([2, 1])


class TestDriver:
    def test_presolve_is_idempotent(self):
        model = Model()
        x = model.add_variable("x").lower(0)
        y = model.add_variable("y").lower(0)
        z = model.add_variable("z")
        model.add_expression("a").set(x, 1).set(y, 1).upper(4)
        model.add_expression("b").set(z, 3).level(9)
        model.add_expression("c").set(x, 1).set(y, -1).set(z, 1).lower(1)
        model.presolve()
        first = _limits(model)
        model.presolve()
        assert _limits(model) == first

    def test_tightened_limits_propagate_back(self):
        model = Model()
        x, y, z = (model.add_variable(name).lower(0) for name in "xyz")
        model.add_expression("demand").set(x, 1).set(y, 1).lower(10)
        model.add_expression("capacity").set(y, 1).set(z, 1).upper(4)
        model.presolve()
        first = _limits(model)
        assert x.lower_limit == 6
        assert y.upper_limit == 4 and z.upper_limit == 4
        model.presolve()
        assert _limits(model) == first

    def test_diverging_chain_stops(self):
        model = Model(config=ModelConfig(presolve_max_sweeps=25))
        x, y = model.add_variable("x").lower(0), model.add_variable("y").lower(0)
        model.add_expression("a").set(x, 1).set(y, -1).lower(1)
        model.add_expression("b").set(x, -1).set(y, 1).lower(1)
        model.presolve()
        assert x.lower_limit > 0

    def test_fixing_cascades(self):
        model = Model()
        x, y = model.add_variable("x"), model.add_variable("y")
        model.add_expression("a").set(x, 1).level(2)
        model.add_expression("b").set(x, 1).set(y, 1).level(5)
        model.presolve()
        assert x.value == 2
        assert y.is_fixed() and y.value == 3

    def test_rules_come_from_config(self):
        config = ModelConfig(presolvers=[presolve.REDUNDANT_CONSTRAINT])
        model = Model(config=config)
        x = model.add_variable("x")
        model.add_expression("row").set(x, 2).level(6)
        model.presolve()
        assert not x.is_fixed()

    def test_default_lists_are_not_shared(self):
        a, b = ModelConfig(), ModelConfig()
        a.presolvers.clear()
        assert len(b.presolvers) == 3


class TestSimilarity:
    def test_scalar_multiple_is_folded(self):
        model = Model()
        x, y = model.add_variable("x"), model.add_variable("y")
        first = model.add_expression("first").set(x, 1).set(y, 1).upper(4)
        second = model.add_expression("second").set(x, 2).set(y, 2).upper(6)
        assert model.reduce_similar()
        assert first.is_redundant()
        assert not second.is_redundant()
        assert second.upper_limit == 6

    def test_negative_ratio_swaps_limits(self):
        model = Model()
        x, y = model.add_variable("x"), model.add_variable("y")
        first = model.add_expression("first").set(x, -1).set(y, -1).upper(-1)
        second = model.add_expression("second").set(x, 1).set(y, 1).upper(3)
        assert presolve.reduce([first, second])
        assert first.is_redundant()
        assert second.lower_limit == 1
        assert second.upper_limit == 3

    def test_unrelated_rows_untouched(self):
        model = Model()
        x, y = model.add_variable("x"), model.add_variable("y")
        first = model.add_expression("first").set(x, 1).set(y, 2).upper(4)
        second = model.add_expression("second").set(x, 2).set(y, 1).upper(6)
        assert not model.reduce_similar()
        assert not first.is_redundant() and not second.is_redundant()


@pytest.mark.parametrize("rule", [presolve.ZERO_ONE_TWO, presolve.INTEGER_ROUNDING, presolve.REDUNDANT_CONSTRAINT])
def test_rule_orders_are_ascending(rule):
    orders = [r.order for r in presolve.DEFAULT_PRESOLVERS]
    assert orders == sorted(orders)
    assert rule in presolve.DEFAULT_PRESOLVERS


def _box_points(model, rng, samples=50):
    limits = [(v.lower_limit, v.upper_limit) for v in model.variables]
    yield from itertools.product(*limits)
    for _ in range(samples):
        yield [lo + (up - lo) * Decimal(int(rng.integers(0, 1001))) / 1000 for lo, up in limits]


@pytest.mark.parametrize("seed", range(8))
def test_redundant_rows_hold_on_the_whole_box(seed):
    rng = np.random.default_rng(seed)
    model = Model()
    variables = [model.add_variable().lower(-5).upper(5) for _ in range(4)]
    x0 = [int(v) for v in rng.integers(-5, 6, len(variables))]

    for r in range(6):
        row = model.add_expression(f"row{r}")
        picked = rng.choice(len(variables), size=int(rng.integers(1, 5)), replace=False)
        for i in picked:
            row.set(variables[i], int(rng.integers(1, 6)) * int(rng.choice([-1, 1])))
        level = sum(row.get(variables[i]) * x0[i] for i in picked)
        row.upper(level + int(rng.integers(0, 40)))
        if rng.random() < 0.5:
            row.lower(level - int(rng.integers(0, 40)))
    loose = model.add_expression("loose").set(variables[0], 1).set(variables[1], 1).upper(1000)

    model.presolve()
    assert not model.is_infeasible()
    assert loose.is_redundant()

    tolerance = Decimal("1e-9")
    redundant = [e for e in model.expressions if e.is_redundant()]
    for point in _box_points(model, rng):
        for expression in redundant:
            value = expression.evaluate(point)
            if expression.upper_limit is not None:
                assert value <= expression.upper_limit + tolerance
            if expression.lower_limit is not None:
                assert value >= expression.lower_limit - tolerance
