# mathprog/convex/decomp.py
# Thin decomposition service over scipy.linalg used by the convex solvers.
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.linalg as la

logger = logging.getLogger(__name__)


def _dense(A) -> np.ndarray:
    return A.toarray() if hasattr(A, "toarray") else np.asarray(A, dtype=float)


def is_symmetric(A, tol: float = 1e-10) -> bool:
    Ad = _dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        return False
    scale = max(1.0, float(np.max(np.abs(Ad)))) if Ad.size else 1.0
    return bool(np.all(np.abs(Ad - Ad.T) <= tol * scale))


def is_positive_semidefinite(A, tol: float = 1e-10) -> bool:
    """Eigenvalue check on the symmetric part of A."""
    Ad = _dense(A)
    if Ad.size == 0:
        return True
    try:
        w = la.eigvalsh(0.5 * (Ad + Ad.T))
    except (la.LinAlgError, ValueError) as exc:
        logger.debug("eigvalsh failed: %s", exc)
        return False
    return bool(w[0] >= -tol * max(1.0, abs(w[-1])))


def rank(A, tol: Optional[float] = None) -> int:
    Ad = _dense(A)
    if Ad.size == 0:
        return 0
    return int(np.linalg.matrix_rank(Ad, tol=tol))


def largest(A) -> float:
    Ad = _dense(A)
    return float(np.max(np.abs(Ad))) if Ad.size else 0.0


class CholeskySolver:
    """
    Cholesky factorisation of an SPD matrix.

    `compute` returns False (never raises) when the matrix is not positive
    definite or contains non-finite values.
    """

    def __init__(self):
        self._factor: Optional[Tuple[np.ndarray, bool]] = None
        self.n = 0

    def compute(self, A) -> bool:
        Ad = _dense(A)
        self.n = Ad.shape[0] if Ad.ndim == 2 else 0
        if self.n == 0:
            self._factor = None
            return False
        try:
            self._factor = la.cho_factor(Ad, lower=True, check_finite=True)
        except (la.LinAlgError, ValueError) as exc:
            logger.debug("Cholesky failed (n=%d): %s", self.n, exc)
            self._factor = None
            return False
        return True

    def is_solvable(self) -> bool:
        return self._factor is not None

    def solve(self, b: np.ndarray) -> np.ndarray:
        if self._factor is None:
            raise RuntimeError("Cholesky factorisation not available")
        return la.cho_solve(self._factor, b, check_finite=False)

    def reset(self) -> None:
        self._factor = None
        self.n = 0


class LUSolver:
    """LU factorisation with partial pivoting; singular matrices report unsolvable."""

    def __init__(self, rcond: float = 1e-14):
        self._factor = None
        self.rcond = rcond
        self.n = 0

    def compute(self, A) -> bool:
        Ad = _dense(A)
        self.n = Ad.shape[0] if Ad.ndim == 2 else 0
        if self.n == 0:
            self._factor = None
            return False
        try:
            lu, piv = la.lu_factor(Ad, check_finite=True)
        except (la.LinAlgError, ValueError) as exc:
            logger.debug("LU failed (n=%d): %s", self.n, exc)
            self._factor = None
            return False
        d = np.abs(np.diag(lu))
        if d.size == 0 or d.min() <= self.rcond * max(1.0, d.max()):
            logger.debug("LU singular (n=%d, min pivot %.3e)", self.n, d.min() if d.size else 0.0)
            self._factor = None
            return False
        self._factor = (lu, piv)
        return True

    def is_solvable(self) -> bool:
        return self._factor is not None

    def solve(self, b: np.ndarray) -> np.ndarray:
        if self._factor is None:
            raise RuntimeError("LU factorisation not available")
        return la.lu_solve(self._factor, b, check_finite=False)

    def reset(self) -> None:
        self._factor = None
        self.n = 0
