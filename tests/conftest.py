"""Shared fixtures for the mathprog test-suite."""

import os

import numpy as np
import pytest

from mathprog.model import Model


@pytest.fixture(scope="function")
def rng() -> np.random.Generator:
    """Deterministic numpy RNG (seed from TEST_RNG_SEED, default 0)."""
    seed = int(os.environ.get("TEST_RNG_SEED", "0"))
    return np.random.default_rng(seed)


@pytest.fixture
def circle_model():
    """min x² + y²  s.t.  x + y ≥ 1  (optimum (0.5, 0.5), value 0.5)."""
    model = Model("circle")
    x = model.add_variable("x")
    y = model.add_variable("y")
    model.add_expression("objective").set((x, x), 1).set((y, y), 1).weight(1)
    model.add_expression("sum").set(x, 1).set(y, 1).lower(1)
    return model, x, y
