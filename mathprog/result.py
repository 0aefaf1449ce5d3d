# mathprog/result.py
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np


class State(Enum):
    """Solution-quality states, ordered from worst to best."""

    INVALID = -4
    INFEASIBLE = -3
    UNBOUNDED = -2
    FAILED = -1
    UNEXPLORED = 0
    VALID = 1
    APPROXIMATE = 2
    FEASIBLE = 3
    OPTIMAL = 4
    DISTINCT = 5

    def is_failure(self) -> bool:
        return self.value < 0

    def is_success(self) -> bool:
        return self.value > 0

    def is_approximate(self) -> bool:
        return self.value >= State.APPROXIMATE.value

    def is_feasible(self) -> bool:
        return self.value >= State.FEASIBLE.value

    def is_optimal(self) -> bool:
        return self.value >= State.OPTIMAL.value


@dataclass
class Result:
    """
    Outcome of a solve.

    Attributes
    ----------
    state : State
    value : float
        Objective value (nan when unknown).
    solution : np.ndarray
        Primal point; float for solver results, Decimal (object dtype) for model results.
    multipliers : np.ndarray | None
        Dual values, equality rows first, then inequality rows.
    duals : dict | None
        Model results only: the unscaled multipliers keyed by `(entity, side)`,
        side being "level", "upper" or "lower".
    """

    state: State
    value: float = float("nan")
    solution: np.ndarray = None
    multipliers: Optional[np.ndarray] = None
    duals: Optional[Dict[Tuple[object, str], float]] = None

    def __post_init__(self):
        if self.solution is None:
            self.solution = np.zeros(0)
        elif not isinstance(self.solution, np.ndarray):
            self.solution = np.asarray(self.solution)

    @classmethod
    def of(cls, state: State, size: int = 0) -> "Result":
        return cls(state, float("nan"), np.zeros(size))

    def __len__(self) -> int:
        return len(self.solution)

    def __getitem__(self, index):
        return self.solution[index]

    def with_state(self, state: State) -> "Result":
        return replace(self, state=state)

    def with_multipliers(self, multipliers) -> "Result":
        return replace(self, multipliers=None if multipliers is None else np.asarray(multipliers, dtype=float))
