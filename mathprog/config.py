# mathprog/config.py
# Configuration objects for the model, presolve and convex solver layers.

from __future__ import annotations

# =========================
# Standard library
# =========================
import decimal
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional


# ======================================
# Numeric precision
# ======================================
@dataclass(frozen=True)
class Precision:
    """
    Decimal precision used for rounding and tolerant comparisons.

    Parameters
    ----------
    digits : int
        Significant digits kept when rounding (also sets the relative epsilon).
    scale : int
        Decimal places kept when rounding (also sets the absolute zero error).
    """

    digits: int = 12
    scale: int = 8
    rounding: str = decimal.ROUND_HALF_EVEN

    @property
    def epsilon(self) -> float:
        return 10.0 ** -self.digits

    @property
    def zero_error(self) -> float:
        return 0.5 * 10.0 ** -self.scale

    @property
    def context(self) -> decimal.Context:
        return decimal.Context(prec=self.digits, rounding=self.rounding)

    def enforce(self, value: Decimal) -> Decimal:
        rounded = self.context.plus(value)
        if rounded.is_finite() and rounded.as_tuple().exponent < -self.scale:
            rounded = rounded.quantize(Decimal(1).scaleb(-self.scale), rounding=self.rounding)
        return rounded

    def is_zero(self, value: float) -> bool:
        return abs(value) <= self.zero_error

    def is_small(self, compared_to: float, value: float) -> bool:
        norm = abs(compared_to)
        if self.is_zero(norm):
            return self.is_zero(value)
        return abs(value) <= self.epsilon * norm

    def is_different(self, reference: float, value: float) -> bool:
        return not self.is_small(max(abs(reference), abs(value)), value - reference)

    def is_less_than(self, reference: Decimal, value: Decimal) -> bool:
        """True if `value` is meaningfully below `reference`."""
        return value < reference and self.is_different(float(reference), float(value))

    def is_more_than(self, reference: Decimal, value: Decimal) -> bool:
        """True if `value` is meaningfully above `reference`."""
        return value > reference and self.is_different(float(reference), float(value))


FEASIBILITY = Precision(12, 8)
SOLUTION = Precision(12, 14)


# ======================================
# Convex solver configuration
# ======================================
@dataclass
class ConvexConfig:
    """
    Settings for the convex (QP) solver family.

    Notes
    -----
    • `sparse=None` lets the data adapter decide from the problem size and makes
      the active-set solver use the iterative (CG) Schur variant.
    • Stability switches default to the conservative setting.
    """

    # ---------------- Core toggles ----------------
    validate: bool = False  # symmetry / PSD checks on Q
    debug: bool = False  # validation failures logged at WARNING instead of DEBUG
    sparse: Optional[bool] = None  # {None: auto, True: iterative ASS, False: direct ASS}
    sparse_threshold: int = 500  # free variables before AE/AI go CSR

    # ---------------- Tolerances ----------------
    solution_epsilon: float = 1e-12
    zero_tol: float = 1e-12  # negligible step / multiplier / slack change
    feasibility_tol: float = 1e-8  # slack accepted as active or feasible
    small_diagonal: float = 1e-12 + 2.220446049250313e-16  # relative diagonal patch for Q
    cg_tol: float = 1e-12
    cg_maxiter: int = 0  # 0 -> 2 * rows of the Schur system

    # ---------------- Limits ----------------
    iterations_abort: Optional[int] = None  # None -> (9 + sqrt(max(m, n)))^2
    time_abort: float = float("inf")  # seconds

    # ---------------- Schur scaling ----------------
    schur_scaling: bool = True
    schur_scaling_lower: float = 1e2  # diagonal spread below which scaling is skipped
    schur_scaling_upper: float = 1e14  # diagonal spread above which scaling is skipped
    schur_diagonal_floor: float = 1e-14

    # ---------------- Dual regularisation ----------------
    dual_regularisation: bool = False
    dual_regularisation_threshold: float = 1e6  # row-norm spread

    # ---------------- Iterative refinement ----------------
    extended_precision: bool = False
    refinement_combined_scale: bool = False
    refinement_max_zoom: float = 1e12
    refinement_max_iterations: int = 5
    refinement_max_tries: int = 3
    refinement_smallest_hessian: float = 1e-10

    def iteration_limit(self, rows: int, cols: int) -> int:
        if self.iterations_abort is not None:
            return int(self.iterations_abort)
        root = int(9.0 + max(rows, cols) ** 0.5)
        return root * root


# ======================================
# Model configuration
# ======================================
def _default_presolvers() -> list:
    from .presolve import DEFAULT_PRESOLVERS

    return list(DEFAULT_PRESOLVERS)


def _default_analysers() -> list:
    from .presolve import DEFAULT_ANALYSERS

    return list(DEFAULT_ANALYSERS)


def _default_integrations() -> list:
    from .convex.integration import ConvexIntegration, LinearIntegration

    return [ConvexIntegration(), LinearIntegration()]


@dataclass
class ModelConfig:
    """
    Per-model configuration.

    Owns the presolve rule lists and the ordered solver integration list, so
    models built with different configs never share registry state.
    """

    feasibility: Precision = FEASIBILITY
    solution: Precision = SOLUTION
    convex: ConvexConfig = field(default_factory=ConvexConfig)

    # ---------------- Presolve ----------------
    presolve: bool = True
    presolve_max_sweeps: int = 1000  # bound-tightening chains may only converge asymptotically
    presolvers: List = field(default_factory=_default_presolvers)
    analysers: List = field(default_factory=_default_analysers)

    # ---------------- Integrations (first capable wins) ----------------
    integrations: List = field(default_factory=_default_integrations)
