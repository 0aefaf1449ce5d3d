# mathprog/convex/schur.py
# Schur-complement helpers: Jacobi scaling, dual regularisation and a
# Jacobi-preconditioned CG kernel on CSR data.
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
from numba import njit

logger = logging.getLogger(__name__)

TINY = np.finfo(float).tiny
MACHINE_EPSILON = np.finfo(float).eps


# ---------- Jacobi scaling ----------
def jacobi_scale(S: np.ndarray, lower: float = 1e2, upper: float = 1e14, floor: float = 1e-14) -> Optional[np.ndarray]:
    """
    Symmetric diagonal scaling vector for S, or None when not worthwhile.

    d = diag(S) clamped below at max(floor * max(d), tiny); the scaling
    s = 1/sqrt(d) is returned only when lower < max(d)/min(d) < upper.
    Use as S' = D S D, rhs' = D rhs, λ = D λ'.
    """
    d = np.abs(np.diag(S)) if S.size else np.zeros(0)
    if d.size == 0:
        return None
    d_max = float(d.max())
    if not np.isfinite(d_max) or d_max <= 0.0:
        return None
    d = np.maximum(d, max(floor * d_max, TINY))
    spread = d_max / float(d.min())
    if not (lower < spread < upper):
        return None
    return 1.0 / np.sqrt(d)


def apply_scaling(S: np.ndarray, rhs: np.ndarray, s: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return S * np.outer(s, s), rhs * s


# ---------- Dual regularisation ----------
def row_norm_spread(A) -> float:
    if sp.issparse(A):
        norms = np.sqrt(np.asarray(A.multiply(A).sum(axis=1)).ravel())
    else:
        norms = np.linalg.norm(np.asarray(A, dtype=float), axis=1) if A.size else np.zeros(0)
    nonzero = norms[norms > 0.0]
    if nonzero.size == 0:
        return 1.0
    return float(nonzero.max() / nonzero.min())


def dual_regularisation(A, threshold: float = 1e6) -> float:
    """δ for the −δI dual block, 0.0 when the row-norm spread is acceptable."""
    spread = row_norm_spread(A)
    if spread > threshold:
        delta = MACHINE_EPSILON * spread
        logger.debug("Dual regularisation: spread=%.3e, delta=%.3e", spread, delta)
        return delta
    return 0.0


# ---------- CG kernel ----------
@njit(cache=True, fastmath=True)
def _csr_matvec(indptr, indices, data, x, out):
    n = len(indptr) - 1
    for i in range(n):
        s = 0.0
        for k in range(indptr[i], indptr[i + 1]):
            s += data[k] * x[indices[k]]
        out[i] = s


@njit(cache=True, fastmath=True)
def _dot(x, y):
    s = 0.0
    for i in range(x.size):
        s += x[i] * y[i]
    return s


@njit(cache=True, fastmath=True)
def _axpy(a, x, y):  # y += a*x
    for i in range(y.size):
        y[i] += a * x[i]


@njit(cache=True)
def pcg_csr(indptr, indices, data, b, x0, diag_precond, tol, maxit):
    """
    Solve S x = b (S SPD, CSR) by Jacobi-preconditioned CG.

    Returns (x, iterations, residual norm).
    """
    n = b.size
    x = x0.copy()
    r = np.empty(n, dtype=np.float64)
    Ap = np.empty(n, dtype=np.float64)
    z = np.empty(n, dtype=np.float64)
    p = np.empty(n, dtype=np.float64)
    Minv = np.empty(n, dtype=np.float64)

    _csr_matvec(indptr, indices, data, x, Ap)
    for i in range(n):
        r[i] = b[i] - Ap[i]
        Minv[i] = 1.0 / diag_precond[i] if diag_precond[i] != 0.0 else 1.0
        z[i] = Minv[i] * r[i]
        p[i] = z[i]

    rz_old = _dot(r, z)
    norm_b = np.sqrt(_dot(b, b))
    nr = np.sqrt(_dot(r, r))
    stop = tol * max(norm_b, 1.0)
    if nr <= stop:
        return x, 0, nr

    for it in range(1, maxit + 1):
        _csr_matvec(indptr, indices, data, p, Ap)
        pAp = _dot(p, Ap)
        if pAp <= 0.0:
            return x, it, nr
        alpha = rz_old / pAp
        _axpy(alpha, p, x)
        _axpy(-alpha, Ap, r)

        nr = np.sqrt(_dot(r, r))
        if nr <= stop:
            return x, it, nr

        for i in range(n):
            z[i] = Minv[i] * r[i]
        rz_new = _dot(r, z)
        beta = rz_new / rz_old
        rz_old = rz_new
        for i in range(n):
            p[i] = z[i] + beta * p[i]

    return x, maxit, nr


def solve_cg(S, rhs: np.ndarray, x0: Optional[np.ndarray] = None, tol: float = 1e-12, maxiter: int = 0):
    """
    Python-side driver for `pcg_csr`.

    Returns (x, converged). `maxiter=0` means 2 * size of the system.
    """
    m = rhs.size
    if m == 0:
        return np.zeros(0), True
    S_csr = sp.csr_matrix(S)
    diag = np.ascontiguousarray(S_csr.diagonal(), dtype=np.float64)
    x0 = np.zeros(m) if x0 is None or x0.size != m else np.ascontiguousarray(x0, dtype=np.float64)
    maxit = maxiter if maxiter > 0 else max(2 * m, 10)
    x, it, res = pcg_csr(
        S_csr.indptr.astype(np.int64),
        S_csr.indices.astype(np.int64),
        S_csr.data.astype(np.float64),
        np.ascontiguousarray(rhs, dtype=np.float64),
        x0,
        diag,
        tol,
        maxit,
    )
    converged = bool(np.isfinite(res) and res <= tol * max(float(np.linalg.norm(rhs)), 1.0))
    if not converged:
        logger.warning("Schur CG did not converge: it=%d, residual=%.3e", it, res)
    return x, converged
