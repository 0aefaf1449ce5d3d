"""Tests for Expression and its copy-on-write coefficient storage."""

from decimal import Decimal

import numpy as np
import pytest

from mathprog.expression import CoefficientTable, Expression
from mathprog.model import Model


@pytest.fixture
def model_xyz():
    model = Model()
    x, y, z = model.add_variable("x"), model.add_variable("y"), model.add_variable("z")
    return model, x, y, z


class TestCoefficientTable:
    def test_share_then_write_detaches(self):
        table = CoefficientTable()
        table[0] = Decimal(1)
        other = table.share()
        assert table.is_shared() and other.is_shared()

        other[1] = Decimal(2)
        assert 1 not in table
        assert other[1] == 2
        assert not other.is_shared()

    def test_copy_is_private(self):
        table = CoefficientTable({0: Decimal(1)})
        clone = table.copy()
        clone.pop(0)
        assert 0 in table and 0 not in clone


class TestCoefficients:
    def test_set_get_and_zero_removes(self, model_xyz):
        model, x, y, _ = model_xyz
        e = model.add_expression("e").set(x, 2).set(1, "0.5")
        assert e.get(x) == 2
        assert e.get(y) == Decimal("0.5")
        e.set(x, 0)
        assert e.count_linear_factors() == 1
        assert e.get(x) == 0

    def test_quadratic_pairs_are_ordered(self, model_xyz):
        model, x, y, _ = model_xyz
        e = model.add_expression().set((x, y), 3)
        assert e.get((0, 1)) == 3
        assert e.get((1, 0)) == 0

    def test_add_accumulates(self, model_xyz):
        model, x, _, _ = model_xyz
        e = model.add_expression().add(x, 1).add(x, "1.5")
        assert e.get(x) == Decimal("2.5")

    def test_bad_keys(self, model_xyz):
        model, *_ = model_xyz
        e = model.add_expression()
        with pytest.raises(TypeError):
            e.set("x", 1)
        with pytest.raises(ValueError):
            e.set((0, 1, 2), 1)

    def test_references_are_registered(self, model_xyz):
        model, x, y, z = model_xyz
        model.add_expression().set(x, 1).set((y, y), 1)
        assert model.is_referenced(x)
        assert model.is_referenced(y)
        assert not model.is_referenced(z)

    def test_shallow_copy_isolation(self, model_xyz):
        model, x, y, _ = model_xyz
        original = model.add_expression("e").set(x, 1).set(y, 2)
        clone = original.copy(model, deep=False)
        assert clone.is_shallow()

        clone.set(x, 5)
        original.set(y, 7)
        assert original.get(x) == 1 and clone.get(x) == 5
        assert original.get(y) == 7 and clone.get(y) == 2


class TestEvaluation:
    def test_evaluate_includes_constant(self, model_xyz):
        model, x, y, _ = model_xyz
        e = model.add_expression().set(x, 2).set((x, y), 3).set_constant(1)
        point = [Decimal(2), Decimal(5), Decimal(0)]
        assert e.evaluate(point) == 1 + 4 + 30

    def test_calculate_set_value_uses_current_values(self, model_xyz):
        model, x, y, _ = model_xyz
        x.set_fixed(3)
        e = model.add_expression().set(x, 2).set(y, 1)
        assert e.calculate_set_value({x.index}) == 6

    def test_compensate_moves_fixed_part_into_limits(self, model_xyz):
        model, x, y, _ = model_xyz
        y.set_fixed(1)
        e = model.add_expression("e").set(x, 2).set(y, 3).lower(5).upper(9)
        compensated = e.compensate({y.index})
        assert compensated.linear_keys() == {x.index}
        assert compensated.lower_limit == 2
        assert compensated.upper_limit == 6

    def test_compensate_turns_bilinear_into_linear(self, model_xyz):
        model, x, y, _ = model_xyz
        y.set_fixed(2)
        e = model.add_expression().set((x, y), 1).upper(4)
        compensated = e.compensate({y.index})
        assert compensated.quadratic_keys() == set()
        assert compensated.get(x) == 2
        assert compensated.upper_limit == 4

    def test_compensate_without_fixed_returns_self(self, model_xyz):
        model, x, _, _ = model_xyz
        e = model.add_expression().set(x, 1).upper(1)
        assert e.compensate(set()) is e

    def test_sign_analysis(self, model_xyz):
        model, x, y, _ = model_xyz
        x.lower(0)
        y.lower(0)
        e = model.add_expression().set(x, 1).set(y, 2)
        assert e.is_positive_on({x.index, y.index})
        assert not e.is_negative_on({x.index, y.index})

    def test_adjusted_gradient_and_hessian(self, model_xyz):
        model, x, y, _ = model_xyz
        e = model.add_expression().set((x, x), 1).set(y, 3)
        grad = e.get_adjusted_gradient([2.0, 1.0, 0.0])
        np.testing.assert_allclose(grad, [4.0, 3.0, 0.0])
        hess = e.get_adjusted_hessian()
        np.testing.assert_allclose(hess, np.diag([2.0, 0.0, 0.0]))


class TestShape:
    def test_function_shapes(self, model_xyz):
        model, x, y, _ = model_xyz
        assert model.add_expression().is_function_constant()
        assert model.add_expression().set(x, 1).is_function_linear()
        assert model.add_expression().set((x, x), 1).is_function_pure_quadratic()
        assert model.add_expression().set((x, x), 1).set(y, 1).is_function_quadratic()

    def test_integer_predicates(self, model_xyz):
        model, x, y, _ = model_xyz
        x.integer()
        e = model.add_expression().set(x, 1).set(y, 1)
        assert e.is_linear_and_any_integer()
        assert not e.is_linear_and_all_integer()
        assert e.count_integer_factors() == 1
        assert e.includes(x)


class TestIntegerRounding:
    def test_limits_rounded_to_gcd_multiples(self, model_xyz):
        model, x, y, _ = model_xyz
        x.integer()
        y.integer()
        e = model.add_expression().set(x, 2).set(y, 4).lower(1).upper(7)
        e.do_integer_rounding()
        assert e.is_integer()
        assert e.lower_limit == 2
        assert e.upper_limit == 6

    def test_fractional_coefficients_with_unit_gcd_abort(self, model_xyz):
        model, x, y, _ = model_xyz
        x.integer()
        y.integer()
        e = model.add_expression().set(x, "0.3").set(y, "0.7").upper(1)
        e.do_integer_rounding()
        assert not e.is_integer()
        assert e.upper_limit == 1

    def test_rounding_can_prove_infeasibility(self, model_xyz):
        model, x, y, _ = model_xyz
        x.integer()
        y.integer()
        e = model.add_expression().set(x, 2).set(y, 2).lower(3).upper(3)
        e.do_integer_rounding()
        assert e.is_infeasible()
        assert model.is_infeasible()

    def test_mixed_integer_rounding_cut(self, model_xyz):
        model, x, y, _ = model_xyz
        x.integer().lower(0)
        y.integer().lower(0)
        e = model.add_expression("row").set(x, "0.5").set(y, 1).level("2.5")
        cut = e.do_mixed_integer_rounding()
        assert cut is not None
        assert cut.name == "row(MIR)"
        assert cut.get(x) == 1
        assert cut.get(y) == 0
        assert cut.lower_limit == 1

    def test_mixed_integer_rounding_needs_fractional_level(self, model_xyz):
        model, x, _, _ = model_xyz
        x.integer().lower(0)
        e = model.add_expression().set(x, 1).level(2)
        assert e.do_mixed_integer_rounding() is None
