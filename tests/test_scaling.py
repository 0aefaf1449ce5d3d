"""Power-of-ten adjustment of entities and its round trip back to Decimal."""

import math
from decimal import Decimal

import pytest

from mathprog.config import SOLUTION
from mathprog.entity import derive_adjustment_exponent
from mathprog.model import Model

VALUES = ["1E-12", "2.5E-9", "3.14159E-7", "0.001", "1", "42.5", "123456.789", "7.25E+9", "1E+12"]


def test_derive_exponent_centres_the_range():
    assert derive_adjustment_exponent(Decimal("1E+6"), Decimal(1)) == -3
    assert derive_adjustment_exponent(None, None) == 4


def test_derive_exponent_caps_the_spread():
    # smallest is pulled up to largest / 1E+8
    assert derive_adjustment_exponent(Decimal("1E+10"), Decimal("1E-10")) == -6


@pytest.mark.parametrize("text", VALUES)
def test_expression_coefficient_round_trip(text):
    model = Model()
    x = model.add_variable("x")
    e = model.add_expression("e").set(x, text)
    value = Decimal(text)
    adjusted = e.to_adjusted(e.get(x))
    assert 0.1 <= abs(adjusted) < 10.0
    assert e.to_unadjusted(adjusted, SOLUTION) == value


@pytest.mark.parametrize("text", VALUES)
def test_variable_limit_round_trip(text):
    v = Model().add_variable("v").upper(text)
    adjusted = v.get_adjusted_upper_limit()
    assert v.to_unadjusted(adjusted, SOLUTION) == Decimal(text)


def test_integer_variables_are_never_scaled():
    v = Model().add_variable("i").integer().lower(1000).upper(5000)
    assert v.get_adjustment_exponent() == 0
    assert v.get_adjusted_upper_limit() == 5000.0


def test_exponent_cache_follows_changes():
    model = Model()
    x, y = model.add_variable("x"), model.add_variable("y")
    v = model.add_variable("v").upper("1E+6")
    assert v.get_adjustment_exponent() == -6
    v.upper(1)
    assert v.get_adjustment_exponent() == 0

    e = model.add_expression("e").set(x, "1E+6")
    assert e.get_adjustment_exponent() == -6
    e.set(y, 1)
    assert e.get_adjustment_exponent() == -3


def test_adjusting_none_and_zero():
    e = Model().add_expression("e")
    assert math.isnan(e.to_adjusted(None))
    assert e.to_adjusted(Decimal(0)) == 0.0


def test_unadjusted_values_are_clamped_to_limits():
    v = Model().add_variable("v").lower(0).upper(1)
    assert v.to_unadjusted(1.0000001, SOLUTION) == 1
    assert v.to_unadjusted(-0.5, SOLUTION) == 0
