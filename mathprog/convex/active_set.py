"""
active_set.py

Primal active-set method for convex QPs with inequality constraints.

Every iteration solves the equality-constrained subproblem over AE plus the
currently *included* inequality rows, steps towards its solution as far as
the excluded rows allow, and then either includes the blocking row, excludes
an included row with a negative multiplier, or stops at the optimum.

Two variants differ only in how the subproblem's Schur system
S λ = A Q⁻¹C − b (S = A Q⁻¹Aᵀ) is solved:

- `DirectASS`     dense S, Jacobi scaled, Cholesky then LU;
- `IterativeASS`  S assembled from per-row columns Q⁻¹aᵢᵀ kept across
                  iterations, solved by Jacobi-preconditioned CG.

Both fall back to the full KKT system when Q is not solvable or the Schur
solution fails its residual check.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import ConvexConfig
from ..result import Result, State
from .base import BaseSolver, solve_lp
from .data import ConvexData, as_dense, row_of, rows_of
from .decomp import CholeskySolver, LUSolver
from .schur import apply_scaling, jacobi_scale, solve_cg

logger = logging.getLogger(__name__)


class IndexSelector:
    """Included / excluded partition of the inequality rows, in inclusion order."""

    def __init__(self, count: int):
        self.count = count
        self._mask = np.zeros(count, dtype=bool)
        self._order: List[int] = []
        self.last_included = -1
        self.last_excluded = -1

    def include(self, index: int) -> None:
        if not self._mask[index]:
            self._mask[index] = True
            self._order.append(index)
        self.last_included = index

    def exclude(self, index: int) -> None:
        if self._mask[index]:
            self._mask[index] = False
            self._order.remove(index)
        self.last_excluded = index

    def is_included(self, index: int) -> bool:
        return bool(self._mask[index])

    @property
    def included(self) -> List[int]:
        return list(self._order)

    @property
    def excluded(self) -> np.ndarray:
        return np.flatnonzero(~self._mask)

    def count_included(self) -> int:
        return len(self._order)

    def count_excluded(self) -> int:
        return self.count - len(self._order)

    def reset(self) -> None:
        self._mask[:] = False
        self._order = []
        self.last_included = self.last_excluded = -1


class ActiveSetSolver(BaseSolver):
    def __init__(self, data: ConvexData, config: Optional[ConvexConfig] = None):
        super().__init__(data, config)
        self.selector = IndexSelector(data.count_inequality_constraints())
        self._marked = -1
        self._shrink_count = 0
        self._shrunk = False
        self._stop = False

    # ------------------------------ initialisation ------------------------------
    def initialise(self, kick_starter: Optional[Result] = None) -> bool:
        if not super().initialise(kick_starter):
            return False

        data = self.data
        n = data.count_variables()
        m_eq = data.count_equality_constraints()
        self.selector.reset()
        self._marked = -1
        self._shrink_count = 0
        self._shrunk = False
        self._stop = False

        if self.q_zero:
            lp = solve_lp(-data.C, data.AE, data.BE, data.AI, data.BI)
            self.state = lp.state
            self.x = lp.solution if lp.state.is_feasible() else np.zeros(n)
            if lp.multipliers is not None:
                self.multipliers = lp.multipliers
            return False

        if (
            kick_starter is not None
            and kick_starter.state.is_approximate()
            and len(kick_starter) == n
            and np.all(np.isfinite(kick_starter.solution))
            and self.check_feasibility(np.asarray(kick_starter.solution, dtype=float))
        ):
            self.x = np.asarray(kick_starter.solution, dtype=float).copy()
            self.state = State.FEASIBLE
        else:
            lp = solve_lp(np.zeros(n), data.AE, data.BE, data.AI, data.BI)
            if not lp.state.is_feasible():
                self.state = State.INFEASIBLE if lp.state == State.INFEASIBLE else State.FAILED
                self.x = np.zeros(n)
                return False
            self.x = lp.solution
            self.state = State.FEASIBLE

        slack = data.BI - data.AI @ self.x
        tol = self.config.feasibility_tol * np.maximum(1.0, np.abs(data.BI))
        limit = max(n - m_eq, 0)
        for i in np.flatnonzero(np.abs(slack) <= tol):
            if self.selector.count_included() >= limit:
                break
            self.selector.include(int(i))
        logger.debug("Active set seeded with %d row(s): %s", self.selector.count_included(), self.selector.included)
        return True

    # ------------------------------ subproblem ------------------------------
    def solve_subproblem(self, included: List[int]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        raise NotImplementedError

    def _subproblem_system(self, included: List[int]):
        data = self.data
        AE = as_dense(data.AE)
        AI = rows_of(data.AI, included)
        A = np.vstack([AE, AI]) if AE.shape[0] else AI
        b = np.concatenate([data.BE, data.BI[included]])
        return A, b

    def _residual_ok(self, A: np.ndarray, b: np.ndarray, x: np.ndarray) -> bool:
        if not np.all(np.isfinite(x)):
            return False
        if A.shape[0] == 0:
            return True
        r = A @ x - b
        return bool(np.all(np.abs(r) <= self.config.feasibility_tol * np.maximum(1.0, np.abs(b))))

    def _kkt_fallback(self, included: List[int]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        A, b = self._subproblem_system(included)
        logger.debug("Falling back to full KKT (%d rows)", A.shape[0])
        solution = self.solve_full_kkt(A, b)
        if solution is None or not self._residual_ok(A, b, solution[0]):
            return None
        return solution

    # ------------------------------ iteration ------------------------------
    def perform_iteration(self) -> None:
        data = self.data
        m_eq = data.count_equality_constraints()
        included = self.selector.included

        solution = self.solve_subproblem(included)
        if solution is None:
            self._shrink()
            return

        x_star, lam = solution
        multipliers = np.zeros(m_eq + data.count_inequality_constraints())
        multipliers[:m_eq] = lam[:m_eq]
        if included:
            multipliers[m_eq + np.asarray(included)] = lam[m_eq:]
        self.multipliers = multipliers
        self._shrink_count = 0

        step = x_star - self.x
        step_norm = float(np.linalg.norm(step))
        if not np.isfinite(step_norm):
            self._shrink()
            return
        if step_norm <= self.config.zero_tol * max(1.0, float(np.linalg.norm(self.x))):
            self.state = State.FEASIBLE
            return

        fraction, blocking = self._ratio_test(step, step_norm)
        self.x = self.x + fraction * step
        self._marked = blocking
        logger.debug(
            "it=%d |step|=%.3e fraction=%.3e blocking=%d included=%d",
            self.iterations,
            step_norm,
            fraction,
            blocking,
            self.selector.count_included(),
        )

    def _ratio_test(self, step: np.ndarray, step_norm: float) -> Tuple[float, int]:
        data = self.data
        fraction, blocking = 1.0, -1
        for i in self.selector.excluded:
            a = row_of(data.AI, int(i))
            change = float(a @ step)
            if change <= 0.0 or change <= self.config.zero_tol * float(np.linalg.norm(a)) * step_norm:
                continue
            slack = max(float(data.BI[i] - a @ self.x), 0.0)
            candidate = slack / change
            if candidate >= fraction:
                continue
            if candidate <= self.config.zero_tol and i == self.selector.last_excluded:
                continue
            fraction, blocking = candidate, int(i)
        return fraction, blocking

    def needs_another_iteration(self) -> bool:
        if self._stop:
            return False
        if self._shrunk:
            self._shrunk = False
            return True

        if self._marked >= 0:
            self.selector.include(self._marked)
            self._marked = -1
            return True

        candidate = self._most_negative_multiplier()
        if candidate >= 0:
            self.selector.exclude(candidate)
            return True

        self.state = State.OPTIMAL
        return False

    def _most_negative_multiplier(self) -> int:
        """Included row with the most negative non-negligible multiplier; the last included only as a last resort."""
        m_eq = self.data.count_equality_constraints()
        included = self.selector.included
        if not included:
            return -1
        lam = self.multipliers[m_eq + np.asarray(included)]
        threshold = -self.config.zero_tol * max(1.0, float(np.max(np.abs(self.multipliers), initial=0.0)))

        best, best_value = -1, threshold
        for row, value in zip(included, lam):
            if row == self.selector.last_included:
                continue
            if value < best_value:
                best, best_value = row, value
        if best < 0:
            last = self.selector.last_included
            if last >= 0 and self.selector.is_included(last):
                value = self.multipliers[m_eq + last]
                if value < threshold:
                    best = last
        return best

    def _shrink(self) -> None:
        """Drop one included row after an unsolvable subproblem."""
        included = self.selector.included
        if not included:
            self.state = State.FEASIBLE if self.check_feasibility() else State.FAILED
            self._stop = True
            return

        m_eq = self.data.count_equality_constraints()
        lam = self.multipliers[m_eq + np.asarray(included)]

        choice = -1
        if np.any(lam < 0.0):
            choice = included[int(np.argmin(lam))]
        elif self._shrink_count % 2 == 0:
            weights = np.abs(lam) * np.maximum(-lam, 1.0)
            choice = included[int(np.argmax(weights))]
        else:
            choice = self._most_parallel(included)

        self._shrink_count += 1
        self._shrunk = True
        logger.debug("Subproblem unsolvable; excluding row %d (%d included)", choice, len(included))
        self.selector.exclude(choice)

    def _most_parallel(self, included: List[int]) -> int:
        last = self.selector.last_included
        candidates = [i for i in included if i != last]
        if last < 0 or not candidates:
            return included[-1]
        reference = row_of(self.data.AI, last)
        ref_norm = float(np.linalg.norm(reference)) or 1.0
        best, best_cos = candidates[0], -1.0
        for i in candidates:
            a = row_of(self.data.AI, i)
            norm = float(np.linalg.norm(a)) or 1.0
            cos = abs(float(a @ reference)) / (norm * ref_norm)
            if cos > best_cos:
                best, best_cos = i, cos
        return best

    def on_budget_exhausted(self) -> None:
        self.state = State.FEASIBLE if self.check_feasibility() else State.FAILED


# =============================================================================
# Variants
# =============================================================================
class DirectASS(ActiveSetSolver):
    """Dense Schur complement per iteration."""

    def __init__(self, data: ConvexData, config: Optional[ConvexConfig] = None):
        super().__init__(data, config)
        self._schur_cholesky = CholeskySolver()
        self._schur_lu = LUSolver()

    def solve_subproblem(self, included: List[int]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if not self.is_q_solvable():
            return self._kkt_fallback(included)

        A, b = self._subproblem_system(included)
        QinvC = self.solve_q(self.data.C)
        if A.shape[0] == 0:
            return QinvC, np.zeros(0)

        QinvAt = self.solve_q(A.T)
        S = A @ QinvAt
        rhs = A @ QinvC - b

        s = None
        if self.config.schur_scaling:
            s = jacobi_scale(
                S, self.config.schur_scaling_lower, self.config.schur_scaling_upper, self.config.schur_diagonal_floor
            )
        if s is not None:
            S, rhs = apply_scaling(S, rhs, s)

        if self._schur_cholesky.compute(S):
            lam = self._schur_cholesky.solve(rhs)
        elif self._schur_lu.compute(S):
            lam = self._schur_lu.solve(rhs)
        else:
            return self._kkt_fallback(included)

        if s is not None:
            lam = lam * s
        x = QinvC - QinvAt @ lam
        if not self._residual_ok(A, b, x):
            return self._kkt_fallback(included)
        return x, lam


class IterativeASS(ActiveSetSolver):
    """
    Schur system by CG with per-row columns maintained incrementally.

    Columns Q⁻¹aᵢᵀ of included rows are cached and their buffers go back to a
    pool on exclusion.
    """

    def __init__(self, data: ConvexData, config: Optional[ConvexConfig] = None):
        super().__init__(data, config)
        self._columns: Dict[int, np.ndarray] = {}
        self._rows: Dict[int, np.ndarray] = {}
        self._pool: List[np.ndarray] = []
        self._equality_columns: Optional[np.ndarray] = None
        self._QinvC: Optional[np.ndarray] = None
        self._previous: Dict[int, float] = {}

    def initialise(self, kick_starter: Optional[Result] = None) -> bool:
        for key in list(self._columns):
            self._release(key)
        self._equality_columns = None
        self._QinvC = None
        self._previous = {}
        return super().initialise(kick_starter)

    def _column(self, i: int) -> np.ndarray:
        column = self._columns.get(i)
        if column is None:
            a = row_of(self.data.AI, i)
            buffer = self._pool.pop() if self._pool else np.empty(self.data.count_variables())
            buffer[:] = self.solve_q(a)
            self._columns[i] = column = buffer
            self._rows[i] = a
        return column

    def _release(self, i: int) -> None:
        column = self._columns.pop(i, None)
        self._rows.pop(i, None)
        if column is not None:
            self._pool.append(column)

    def solve_subproblem(self, included: List[int]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if not self.is_q_solvable():
            return self._kkt_fallback(included)

        data = self.data
        for key in [k for k in self._columns if not self.selector.is_included(k)]:
            self._release(key)

        if self._QinvC is None:
            self._QinvC = self.solve_q(data.C)
        AE = as_dense(data.AE)
        if self._equality_columns is None:
            self._equality_columns = self.solve_q(AE.T) if AE.shape[0] else np.zeros((data.count_variables(), 0))

        m = AE.shape[0] + len(included)
        if m == 0:
            return self._QinvC.copy(), np.zeros(0)

        rows = [AE[k] for k in range(AE.shape[0])] + [None] * len(included)
        columns = [self._equality_columns[:, k] for k in range(AE.shape[0])]
        for i in included:
            columns.append(self._column(i))
        for j, i in enumerate(included):
            rows[AE.shape[0] + j] = self._rows[i]

        A = np.vstack(rows)
        QinvAt = np.column_stack(columns)
        b = np.concatenate([data.BE, data.BI[included]])
        S = A @ QinvAt
        S = 0.5 * (S + S.T)
        rhs = A @ self._QinvC - b

        s = None
        if self.config.schur_scaling:
            s = jacobi_scale(
                S, self.config.schur_scaling_lower, self.config.schur_scaling_upper, self.config.schur_diagonal_floor
            )
        if s is not None:
            S, rhs = apply_scaling(S, rhs, s)

        keys = [("E", k) for k in range(AE.shape[0])] + [("I", i) for i in included]
        x0 = np.array([self._previous.get(k, 0.0) for k in keys])
        if s is not None:
            x0 = x0 / s

        lam, converged = solve_cg(S, rhs, x0, self.config.cg_tol, self.config.cg_maxiter)
        if not converged:
            return self._kkt_fallback(included)

        if s is not None:
            lam = lam * s
        x = self._QinvC - QinvAt @ lam
        if not self._residual_ok(A, b, x):
            return self._kkt_fallback(included)

        self._previous = dict(zip(keys, lam))
        return x, lam

    def dispose(self) -> None:
        self._columns.clear()
        self._rows.clear()
        self._pool.clear()
        super().dispose()
