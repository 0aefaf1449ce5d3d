"""
base.py

Convex QP solver skeleton and the two closed-form members of the family.

All solvers work on `ConvexData` and share one convention:

    minimise ½ xᵀQx − Cᵀx   s.t.  AE x = BE,  AI x ≤ BI
    KKT:     Qx + AEᵀλE + AIᵀλI = C,  λI ≥ 0

`BaseSolver.solve` drives `initialise` → (`perform_iteration`,
`needs_another_iteration`)* under an iteration budget, a wall-clock budget
and an external interrupt, and always returns a `Result`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import linprog

from ..config import ConvexConfig
from ..result import Result, State
from .data import ConvexData, as_dense
from .decomp import CholeskySolver, LUSolver, is_positive_semidefinite, is_symmetric, largest
from .schur import dual_regularisation

logger = logging.getLogger(__name__)


# =============================================================================
# LP phase (HiGHS)
# =============================================================================
def solve_lp(c: np.ndarray, AE=None, BE=None, AI=None, BI=None) -> Result:
    """
    minimise cᵀx over free x subject to AE x = BE, AI x ≤ BI.

    Multipliers follow the solver convention above (λI ≥ 0).
    """
    n = c.size
    has_eq = AE is not None and AE.shape[0] > 0
    has_in = AI is not None and AI.shape[0] > 0
    if n == 0:
        return Result(State.OPTIMAL, 0.0, np.zeros(0))

    res = linprog(
        c,
        A_ub=AI if has_in else None,
        b_ub=BI if has_in else None,
        A_eq=AE if has_eq else None,
        b_eq=BE if has_eq else None,
        bounds=[(None, None)] * n,
        method="highs",
    )

    if res.status == 0:
        eq = -np.asarray(res.eqlin.marginals) if has_eq else np.zeros(0)
        ineq = -np.asarray(res.ineqlin.marginals) if has_in else np.zeros(0)
        return Result(State.OPTIMAL, float(res.fun), np.asarray(res.x, dtype=float), np.concatenate([eq, ineq]))
    if res.status == 2:
        return Result(State.INFEASIBLE, float("nan"), np.zeros(n))
    if res.status == 3:
        return Result(State.UNBOUNDED, float("nan"), np.zeros(n))

    logger.warning("linprog failed: status=%d, %s", res.status, res.message)
    return Result(State.FAILED, float("nan"), np.zeros(n))


# =============================================================================
# Base solver
# =============================================================================
class BaseSolver:
    """
    Parameters
    ----------
    data : ConvexData
    config : ConvexConfig, optional
    """

    def __init__(self, data: ConvexData, config: Optional[ConvexConfig] = None):
        self.data = data
        self.config = config if config is not None else ConvexConfig()
        self.state = State.UNEXPLORED
        self.iterations = 0
        self.x = np.zeros(data.count_variables())
        self.multipliers = np.zeros(data.count_equality_constraints() + data.count_inequality_constraints())

        self._interrupt = threading.Event()
        self._started = 0.0
        self._disposed = False

        self._cholesky = CholeskySolver()
        self._lu = LUSolver()
        self.q_zero = False
        self.q_patched = False
        self.q_largest = 0.0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n={self.data.count_variables() if self.data is not None else 0}, state={self.state.name})"

    # ------------------------------ control ------------------------------
    def interrupt(self) -> None:
        """May be called from another thread; honoured at the next iteration."""
        self._interrupt.set()

    def is_interrupted(self) -> bool:
        return self._interrupt.is_set()

    def iteration_limit(self) -> int:
        return self.config.iteration_limit(self.data.count_inequality_constraints(), self.data.count_variables())

    def _budget_exhausted(self, limit: int) -> bool:
        if self._interrupt.is_set():
            logger.debug("%r interrupted after %d iterations", self, self.iterations)
            return True
        if self.iterations >= limit:
            logger.debug("%r reached the iteration limit %d", self, limit)
            return True
        if time.perf_counter() - self._started > self.config.time_abort:
            logger.debug("%r reached the time limit %.3gs", self, self.config.time_abort)
            return True
        return False

    # ------------------------------ Q handling ------------------------------
    def initialise(self, kick_starter: Optional[Result] = None) -> bool:
        """
        Factorise Q. Returns False when the solve is already decided (state set).
        """
        self.state = State.VALID
        Q = self.data.Q
        if self.config.validate and not is_symmetric(Q):
            self._invalid("Q is not symmetric")
            return False

        self.q_largest = largest(Q)
        n = self.data.count_variables()
        if n == 0:
            self.state = State.OPTIMAL
            return False

        if self._cholesky.compute(Q):
            return True

        if self.config.validate and not is_positive_semidefinite(Q):
            self._invalid("Q is not positive semidefinite")
            return False

        if self.q_largest > self.config.small_diagonal:
            shift = self.config.small_diagonal * self.q_largest
            self.q_patched = self._cholesky.compute(Q + shift * np.eye(n))
            logger.warning("Q not positive definite; diagonal patched by %.3e (ok=%s)", shift, self.q_patched)
        else:
            self.q_zero = True
            logger.debug("Q treated as zero; LP path")
        return True

    def _invalid(self, reason: str) -> None:
        self.state = State.INVALID
        if self.config.debug:
            logger.warning("%r: %s", self, reason)
        else:
            logger.debug("%r: %s", self, reason)

    def is_q_solvable(self) -> bool:
        return not self.q_zero and self._cholesky.is_solvable()

    def solve_q(self, rhs: np.ndarray) -> np.ndarray:
        return self._cholesky.solve(rhs)

    def solve_full_kkt(self, A, b: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        [Q Aᵀ; A −δI] [x; λ] = [C; b] by LU, with δ from dual regularisation
        when enabled. Returns None when singular.
        """
        n = self.data.count_variables()
        A = as_dense(A) if A is not None else np.zeros((0, n))
        m = A.shape[0]

        delta = 0.0
        if self.config.dual_regularisation and not self.q_zero and m > 0:
            delta = dual_regularisation(A, self.config.dual_regularisation_threshold)

        K = np.zeros((n + m, n + m))
        K[:n, :n] = self.data.Q
        K[:n, n:] = A.T
        K[n:, :n] = A
        if delta > 0.0:
            K[n:, n:] = -delta * np.eye(m)
        rhs = np.concatenate([self.data.C, b])

        if not self._lu.compute(K):
            logger.debug("Full KKT singular (n=%d, m=%d)", n, m)
            return None
        sol = self._lu.solve(rhs)
        if not np.all(np.isfinite(sol)):
            return None
        return sol[:n], sol[n:]

    # ------------------------------ iteration ------------------------------
    def perform_iteration(self) -> None:
        raise NotImplementedError

    def needs_another_iteration(self) -> bool:
        return False

    def on_budget_exhausted(self) -> None:
        if not self.state.is_feasible():
            self.state = State.FAILED

    def check_feasibility(self, x: Optional[np.ndarray] = None) -> bool:
        x = self.x if x is None else x
        tol = self.config.feasibility_tol
        data = self.data
        if data.has_equality_constraints():
            r = data.AE @ x - data.BE
            if np.any(np.abs(r) > tol * np.maximum(1.0, np.abs(data.BE))):
                return False
        if data.has_inequality_constraints():
            r = data.AI @ x - data.BI
            if np.any(r > tol * np.maximum(1.0, np.abs(data.BI))):
                return False
        return True

    def solve(self, kick_starter: Optional[Result] = None) -> Result:
        if self._disposed:
            raise RuntimeError(f"{type(self).__name__} used after dispose()")

        self._interrupt.clear()
        self._started = time.perf_counter()
        self.iterations = 0
        self.state = State.UNEXPLORED

        if self.initialise(kick_starter):
            limit = self.iteration_limit()
            while True:
                if self._budget_exhausted(limit):
                    self.on_budget_exhausted()
                    break
                self.iterations += 1
                self.perform_iteration()
                if not self.needs_another_iteration():
                    break

        return self.build_result()

    def build_result(self) -> Result:
        x = np.asarray(self.x, dtype=float)
        value = self.data.objective_value(x) if np.all(np.isfinite(x)) else float("nan")
        return Result(self.state, value, x.copy(), np.asarray(self.multipliers, dtype=float).copy())

    def dispose(self) -> None:
        self._cholesky.reset()
        self._lu.reset()
        if self.data is not None:
            self.data.dispose()
        self.data = None
        self._disposed = True


# =============================================================================
# Closed-form solvers
# =============================================================================
class UnconstrainedSolver(BaseSolver):
    """x = Q⁻¹C; a zero Q is optimal at 0 for C = 0 and unbounded otherwise."""

    def perform_iteration(self) -> None:
        C = self.data.C
        if self.q_zero or not self._cholesky.is_solvable():
            self.x = np.zeros_like(C)
            self.state = State.OPTIMAL if np.allclose(C, 0.0) else State.UNBOUNDED
            return

        self.x = self.solve_q(C)
        residual = np.linalg.norm(self.data.Q @ self.x - C)
        if residual <= np.sqrt(np.finfo(float).eps) * max(1.0, float(np.linalg.norm(C))):
            self.state = State.OPTIMAL
        else:
            # patched singular Q with C outside its range
            self.state = State.UNBOUNDED


class QPESolver(BaseSolver):
    """Equality-constrained QP via the Schur complement, full KKT as fallback."""

    def perform_iteration(self) -> None:
        data = self.data
        AE = as_dense(data.AE)

        if self.q_zero:
            lp = solve_lp(-data.C, AE, data.BE)
            self.state = lp.state
            self.x = lp.solution
            if lp.multipliers is not None:
                self.multipliers = lp.multipliers
            return

        solution = None
        if self.is_q_solvable():
            QinvC = self.solve_q(data.C)
            QinvAt = self.solve_q(AE.T)
            S = AE @ QinvAt
            rhs = AE @ QinvC - data.BE
            if self._lu.compute(S):
                lam = self._lu.solve(rhs)
                x = QinvC - QinvAt @ lam
                if np.all(np.isfinite(x)):
                    solution = (x, lam)
        if solution is None:
            logger.debug("QPE: Schur solve failed, using full KKT")
            solution = self.solve_full_kkt(AE, data.BE)

        if solution is None:
            self.state = State.FAILED
            return

        self.x, self.multipliers = solution
        self.state = State.OPTIMAL if self.check_feasibility() else State.INFEASIBLE


# =============================================================================
# Factory
# =============================================================================
def new_solver(data: ConvexData, config: Optional[ConvexConfig] = None) -> BaseSolver:
    """
    Pick the solver for `data`:

    inequalities → active set (iterative unless `config.sparse is False`),
    equalities only → QPESolver, otherwise → UnconstrainedSolver.
    Extended precision wraps the choice in iterative refinement.
    """
    config = config if config is not None else ConvexConfig()

    if config.extended_precision:
        from .refine import RefinedSolver

        return RefinedSolver(data, config)

    if data.has_inequality_constraints():
        from .active_set import DirectASS, IterativeASS

        if config.sparse is False:
            return DirectASS(data, config)
        return IterativeASS(data, config)
    if data.has_equality_constraints():
        return QPESolver(data, config)
    return UnconstrainedSolver(data, config)


class LinearSolver(BaseSolver):
    """LP over the same data with Q ignored: minimise −Cᵀx."""

    def initialise(self, kick_starter: Optional[Result] = None) -> bool:
        self.state = State.VALID
        if self.data.count_variables() == 0:
            self.state = State.OPTIMAL
            return False
        return True

    def perform_iteration(self) -> None:
        data = self.data
        lp = solve_lp(-data.C, data.AE, data.BE, data.AI, data.BI)
        self.state = lp.state
        self.x = lp.solution
        if lp.multipliers is not None:
            self.multipliers = lp.multipliers

    def build_result(self) -> Result:
        x = np.asarray(self.x, dtype=float)
        value = float(-self.data.C @ x) if self.state.is_feasible() else float("nan")
        return Result(self.state, value, x.copy(), np.asarray(self.multipliers, dtype=float).copy())
