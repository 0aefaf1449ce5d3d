"""
data.py

Numeric data of a convex QP in solver form

    minimise    ½ xᵀ Q x − Cᵀ x
    subject to  AE x = BE
                AI x ≤ BI

and the adapter that builds it from a presolved `Model`.

Rows are built from *adjusted* (power-of-ten scaled) coefficients, each row
scaled by its own entity's exponent; the variables themselves are never
scaled, so a solver point maps straight back onto the model's free variables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)

# (kind, key, side); kind in {"expression", "variable"}, side in {"level", "upper", "lower"}
RowKey = Tuple[str, object, str]


def row_of(A, i: int) -> np.ndarray:
    """Dense copy of row i of a dense or CSR matrix."""
    if sp.issparse(A):
        return A.getrow(i).toarray().ravel()
    return np.array(A[i], dtype=float)


def rows_of(A, indices) -> np.ndarray:
    """Dense sub-matrix with the selected rows."""
    indices = list(indices)
    if sp.issparse(A):
        if not indices:
            return np.zeros((0, A.shape[1]))
        return A[indices].toarray()
    return np.asarray(A, dtype=float)[indices]


def as_dense(A) -> np.ndarray:
    return A.toarray() if sp.issparse(A) else np.asarray(A, dtype=float)


@dataclass
class ConvexData:
    Q: np.ndarray
    C: np.ndarray
    AE: object = None
    BE: np.ndarray = None
    AI: object = None
    BI: np.ndarray = None
    row_map: List[RowKey] = field(default_factory=list)
    free: List[int] = field(default_factory=list)
    row_scale: List[float] = field(default_factory=list)  # adjustment factor per row_map entry
    objective_scale: float = 1.0  # factor applied to Q and C, negative when maximising

    def __post_init__(self):
        n = self.count_variables()
        if self.AE is None:
            self.AE = np.zeros((0, n))
        if self.BE is None:
            self.BE = np.zeros(0)
        if self.AI is None:
            self.AI = np.zeros((0, n))
        if self.BI is None:
            self.BI = np.zeros(0)
        self._row_index: Dict[RowKey, int] = {key: i for i, key in enumerate(self.row_map)}

    # ------------------------------ shape ------------------------------
    def count_variables(self) -> int:
        return int(self.Q.shape[0]) if self.Q is not None else len(self.C)

    def count_equality_constraints(self) -> int:
        return int(self.AE.shape[0])

    def count_inequality_constraints(self) -> int:
        return int(self.AI.shape[0])

    def has_equality_constraints(self) -> bool:
        return self.count_equality_constraints() > 0

    def has_inequality_constraints(self) -> bool:
        return self.count_inequality_constraints() > 0

    def is_sparse(self) -> bool:
        return sp.issparse(self.AE) or sp.issparse(self.AI)

    def objective_value(self, x: np.ndarray) -> float:
        return float(0.5 * x @ (self.Q @ x) - self.C @ x)

    def inequality_row(self, key: RowKey) -> Optional[int]:
        """Position of `key` within AI (equality rows come first in `row_map`)."""
        i = self._row_index.get(key)
        if i is None:
            return None
        i -= self.count_equality_constraints()
        return i if i >= 0 else None

    def unscale_multipliers(self, multipliers) -> np.ndarray:
        """
        Map solver multipliers back to the unscaled rows of the model.

        Row i was multiplied by `row_scale[i]` and the objective by
        `objective_scale`, so the model multiplier is
        `multipliers[i] * row_scale[i] / objective_scale`.
        """
        multipliers = np.asarray(multipliers, dtype=float)
        if len(self.row_scale) != multipliers.size:
            raise ValueError(f"Expected {len(self.row_scale)} multipliers, got {multipliers.size}")
        return multipliers * np.asarray(self.row_scale, dtype=float) / self.objective_scale

    def dispose(self) -> None:
        self.Q = self.C = self.AE = self.BE = self.AI = self.BI = None
        self.row_map = []
        self.row_scale = []
        self._row_index = {}

    # ------------------------------ construction ------------------------------
    @staticmethod
    def builder() -> "ConvexData.Builder":
        return ConvexData.Builder()

    class Builder:
        """Fluent construction with dimension checks."""

        def __init__(self):
            self._Q = self._C = None
            self._AE = self._BE = None
            self._AI = self._BI = None

        def objective(self, Q=None, C=None) -> "ConvexData.Builder":
            self._Q = None if Q is None else np.atleast_2d(np.asarray(as_dense(Q), dtype=float))
            self._C = None if C is None else np.asarray(C, dtype=float).ravel()
            return self

        def equalities(self, AE, BE) -> "ConvexData.Builder":
            self._AE = AE if sp.issparse(AE) else np.atleast_2d(np.asarray(AE, dtype=float))
            self._BE = np.asarray(BE, dtype=float).ravel()
            return self

        def inequalities(self, AI, BI) -> "ConvexData.Builder":
            self._AI = AI if sp.issparse(AI) else np.atleast_2d(np.asarray(AI, dtype=float))
            self._BI = np.asarray(BI, dtype=float).ravel()
            return self

        def build(self) -> "ConvexData":
            if self._Q is None and self._C is None:
                raise ValueError("Objective (Q and/or C) is required")
            n = self._Q.shape[0] if self._Q is not None else self._C.size
            Q = self._Q if self._Q is not None else np.zeros((n, n))
            C = self._C if self._C is not None else np.zeros(n)
            if Q.shape != (n, n):
                raise ValueError(f"Q must be square {n}x{n}, got {Q.shape}")
            if C.shape != (n,):
                raise ValueError(f"C must have length {n}, got {C.shape}")
            for label, A, b in (("equality", self._AE, self._BE), ("inequality", self._AI, self._BI)):
                if A is None:
                    continue
                if A.shape[1] != n:
                    raise ValueError(f"{label} body must have {n} columns, got {A.shape[1]}")
                if b.shape != (A.shape[0],):
                    raise ValueError(f"{label} rhs must have length {A.shape[0]}, got {b.shape}")
            return ConvexData(Q, C, self._AE, self._BE, self._AI, self._BI)

    @classmethod
    def from_model(cls, model) -> "ConvexData":
        """
        Solver data over `model`'s free variables.

        Equality rows first; inequality rows ordered as upper-bounded
        expressions, upper-bounded free variables, then the lower-bounded
        expressions and variables negated.
        """
        free = model.get_free_variables()
        n = len(free)
        free_index = model.categorisation.free_index
        fixed = model.get_fixed_variables()
        maximise = model.is_maximisation()

        def _row(expression) -> Dict[int, float]:
            return {
                int(free_index[key]): expression.to_adjusted(coefficient)
                for key, coefficient in expression.linear_items()
                if free_index[key] >= 0
            }

        eq_rows, eq_rhs, eq_keys, eq_scale = [], [], [], []
        up_rows, up_rhs, up_keys, up_scale = [], [], [], []
        lo_rows, lo_rhs, lo_keys, lo_scale = [], [], [], []

        for expression in model.constraints():
            compensated = expression.compensate(fixed)
            row = _row(compensated)
            scale = compensated.get_adjustment_factor()
            if compensated.is_equality_constraint():
                eq_rows.append(row)
                eq_rhs.append(compensated.get_adjusted_upper_limit())
                eq_keys.append(("expression", expression.name, "level"))
                eq_scale.append(scale)
                continue
            if compensated.is_upper_limit_set():
                up_rows.append(row)
                up_rhs.append(compensated.get_adjusted_upper_limit())
                up_keys.append(("expression", expression.name, "upper"))
                up_scale.append(scale)
            if compensated.is_lower_limit_set():
                lo_rows.append({j: -v for j, v in row.items()})
                lo_rhs.append(-compensated.get_adjusted_lower_limit())
                lo_keys.append(("expression", expression.name, "lower"))
                lo_scale.append(scale)

        var_up_rows, var_up_rhs, var_up_keys, var_up_scale = [], [], [], []
        var_lo_rows, var_lo_rhs, var_lo_keys, var_lo_scale = [], [], [], []
        for index in free:
            variable = model.get_variable(index)
            j = int(free_index[index])
            factor = variable.get_adjustment_factor()
            if variable.is_upper_limit_set():
                var_up_rows.append({j: factor})
                var_up_rhs.append(variable.get_adjusted_upper_limit())
                var_up_keys.append(("variable", index, "upper"))
                var_up_scale.append(factor)
            if variable.is_lower_limit_set():
                var_lo_rows.append({j: -factor})
                var_lo_rhs.append(-variable.get_adjusted_lower_limit())
                var_lo_keys.append(("variable", index, "lower"))
                var_lo_scale.append(factor)

        # objective
        objective = model.objective().compensate(fixed)
        Q = np.zeros((n, n))
        C = np.zeros(n)
        sign = -1.0 if maximise else 1.0
        objective_scale = sign * objective.get_adjustment_factor()
        for (row, col), coefficient in objective.quadratic_items():
            r, c = free_index[row], free_index[col]
            if r < 0 or c < 0:
                continue
            q = sign * objective.to_adjusted(coefficient)
            Q[r, c] += q
            Q[c, r] += q
        for key, coefficient in objective.linear_items():
            j = free_index[key]
            if j >= 0:
                C[j] = -sign * objective.to_adjusted(coefficient)
        if not objective.is_any_quadratic_factor_nonzero() and not objective.is_any_linear_factor_nonzero():
            Q = np.eye(n)
            objective_scale = 1.0

        inequality_rows = up_rows + var_up_rows + lo_rows + var_lo_rows
        inequality_rhs = up_rhs + var_up_rhs + lo_rhs + var_lo_rhs
        row_map = eq_keys + up_keys + var_up_keys + lo_keys + var_lo_keys
        row_scale = eq_scale + up_scale + var_up_scale + lo_scale + var_lo_scale

        config = model.config.convex
        sparse = config.sparse if config.sparse is not None else n >= config.sparse_threshold

        data = cls(
            Q,
            C,
            _assemble(eq_rows, n, sparse),
            np.asarray(eq_rhs, dtype=float),
            _assemble(inequality_rows, n, sparse),
            np.asarray(inequality_rhs, dtype=float),
            row_map,
            list(free),
            row_scale,
            objective_scale,
        )
        logger.debug(
            "ConvexData: n=%d, equalities=%d, inequalities=%d, sparse=%s",
            n,
            data.count_equality_constraints(),
            data.count_inequality_constraints(),
            sparse,
        )
        return data


def _assemble(rows: List[Dict[int, float]], n: int, sparse: bool):
    if sparse:
        data, indices, indptr = [], [], [0]
        for row in rows:
            for j in sorted(row):
                indices.append(j)
                data.append(row[j])
            indptr.append(len(indices))
        return sp.csr_matrix(
            (np.asarray(data, dtype=float), np.asarray(indices, dtype=np.int64), np.asarray(indptr, dtype=np.int64)),
            shape=(len(rows), n),
        )
    A = np.zeros((len(rows), n))
    for i, row in enumerate(rows):
        for j, value in row.items():
            A[i, j] = value
    return A
