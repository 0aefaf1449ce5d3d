"""
refine.py

Iterative refinement of a convex QP solution in extended precision.

The first solve runs in float64. Residuals and the accumulated (x, y) are then
kept in `numpy.longdouble`; each round solves a *correction* QP whose data is
zoomed by the primal scale `scaleP` and the dual scale `scaleD`

    minimise ½ x1ᵀ (Q·scaleD/scaleP) x1 − (scaleD·c1)ᵀ x1
    s.t.     AE x1 = scaleP·be1,   AI x1 ≤ scaleP·bi1

with be1 = BE − AE x, bi1 = BI − AI x and c1 = C − Qx − [AE; AI]ᵀy, and
accumulates x += x1/scaleP, y += y1/scaleD.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Optional, Tuple

import numpy as np

from ..config import ConvexConfig
from ..result import Result, State
from .data import ConvexData, as_dense

logger = logging.getLogger(__name__)

LONG = np.longdouble
TINY = float(np.finfo(float).tiny)


def _clone(data: ConvexData) -> ConvexData:
    # solvers dispose their data; keep the caller's instance intact
    return ConvexData(data.Q, data.C, data.AE, data.BE, data.AI, data.BI, list(data.row_map), list(data.free))


def _residuals(Q, C, AE, BE, AI, BI, x, y) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float, float, float]:
    m_eq = AE.shape[0]
    be1 = BE - AE @ x
    bi1 = BI - AI @ x
    c1 = C - Q @ x - AE.T @ y[:m_eq] - AI.T @ y[m_eq:]

    primal = max(float(np.max(np.abs(be1), initial=0.0)), float(np.max(-bi1, initial=0.0)))
    dual = float(np.max(np.abs(c1), initial=0.0))
    slackness = float(np.max(np.abs(y[m_eq:] * bi1), initial=0.0))
    return be1, bi1, c1, primal, dual, slackness


def _next_scale(residual: float, previous: float, max_zoom: float) -> float:
    scale = 1.0 / max(residual, TINY)
    return max(min(scale, max_zoom * previous), 1.0)


def refine_solve(
    data: ConvexData,
    config: ConvexConfig,
    kick_starter: Optional[Result] = None,
    interrupted: Optional[Callable[[], bool]] = None,
) -> Result:
    """
    Solve `data`, then refine the solution.

    Returns OPTIMAL once every residual is below `config.solution_epsilon`;
    when iterations or correction attempts run out, APPROXIMATE if the
    residuals are below its square root, FEASIBLE otherwise.
    """
    from .base import new_solver

    inner = replace(config, extended_precision=False, dual_regularisation=False)

    def _solve(problem: ConvexData, kick: Optional[Result] = None) -> Result:
        solver = new_solver(_clone(problem), inner)
        try:
            return solver.solve(kick)
        finally:
            solver.dispose()

    result = _solve(data, kick_starter)
    if result.state == State.INFEASIBLE:
        return result
    if not result.state.is_optimal():
        logger.debug("Refinement: first solve %s, retrying once", result.state.name)
        result = _solve(data, result if result.state.is_approximate() else kick_starter)
    if not result.state.is_feasible():
        return result

    Q = np.asarray(data.Q, dtype=LONG)
    C = np.asarray(data.C, dtype=LONG)
    AE = as_dense(data.AE).astype(LONG)
    BE = np.asarray(data.BE, dtype=LONG)
    AI = as_dense(data.AI).astype(LONG)
    BI = np.asarray(data.BI, dtype=LONG)

    x = np.asarray(result.solution, dtype=LONG)
    y = np.zeros(AE.shape[0] + AI.shape[0], dtype=LONG)
    if result.multipliers is not None and len(result.multipliers) == y.size:
        y = np.asarray(result.multipliers, dtype=LONG)

    eps = config.solution_epsilon
    q_size = float(np.max(np.abs(data.Q), initial=0.0))
    combined = config.refinement_combined_scale or q_size < config.refinement_smallest_hessian

    scale_p = scale_d = 1.0
    state = result.state
    error = float("inf")

    for iteration in range(config.refinement_max_iterations + 1):
        be1, bi1, c1, primal, dual, slackness = _residuals(Q, C, AE, BE, AI, BI, x, y)
        error = max(primal, dual, slackness)
        logger.debug(
            "Refinement %d: primal=%.3e dual=%.3e slackness=%.3e (scaleP=%.3e scaleD=%.3e)",
            iteration,
            primal,
            dual,
            slackness,
            scale_p,
            scale_d,
        )
        if error <= eps:
            state = State.OPTIMAL
            break
        if iteration == config.refinement_max_iterations or (interrupted is not None and interrupted()):
            break

        target_p = _next_scale(primal, scale_p, config.refinement_max_zoom)
        target_d = _next_scale(dual, scale_d, config.refinement_max_zoom)
        if combined:
            target_p = target_d = min(target_p, target_d)
        elif q_size * target_d / target_p < config.refinement_smallest_hessian:
            target_p = target_d = min(target_p, target_d)

        correction = None
        for attempt in range(config.refinement_max_tries):
            problem = ConvexData(
                np.asarray(Q * (target_d / target_p), dtype=float),
                np.asarray(c1 * target_d, dtype=float),
                data.AE,
                np.asarray(be1 * target_p, dtype=float),
                data.AI,
                np.asarray(bi1 * target_p, dtype=float),
            )
            candidate = _solve(problem)
            if candidate.state.is_feasible() and np.all(np.isfinite(candidate.solution)):
                correction = candidate
                break
            logger.warning("Refinement correction failed (%s), reducing zoom", candidate.state.name)
            target_p = scale_p * np.sqrt(target_p / scale_p)
            target_d = scale_d * np.sqrt(target_d / scale_d)

        if correction is None:
            break

        scale_p, scale_d = target_p, target_d
        x = x + np.asarray(correction.solution, dtype=LONG) / LONG(scale_p)
        if correction.multipliers is not None and len(correction.multipliers) == y.size:
            y = y + np.asarray(correction.multipliers, dtype=LONG) / LONG(scale_d)

    if state != State.OPTIMAL:
        state = State.APPROXIMATE if error < np.sqrt(eps) else State.FEASIBLE

    x_out = np.asarray(x, dtype=float)
    return Result(state, data.objective_value(x_out), x_out, np.asarray(y, dtype=float))


class RefinedSolver:
    """Solver facade applying `refine_solve` around the regular solver choice."""

    def __init__(self, data: ConvexData, config: Optional[ConvexConfig] = None):
        self.data = data
        self.config = config if config is not None else ConvexConfig()
        self.state = State.UNEXPLORED
        self._interrupt = threading.Event()
        self._disposed = False

    def solve(self, kick_starter: Optional[Result] = None) -> Result:
        if self._disposed:
            raise RuntimeError("RefinedSolver used after dispose()")
        self._interrupt.clear()
        result = refine_solve(self.data, self.config, kick_starter, self._interrupt.is_set)
        self.state = result.state
        return result

    def interrupt(self) -> None:
        """Stops refinement after the current correction round."""
        self._interrupt.set()

    def dispose(self) -> None:
        if self.data is not None:
            self.data.dispose()
        self.data = None
        self._disposed = True
