"""Numerical-stability helpers: Schur scaling, dual regularisation, CG and refinement."""

import numpy as np
import pytest
import scipy.sparse as sp

from mathprog.config import ConvexConfig
from mathprog.convex.active_set import DirectASS, IterativeASS
from mathprog.convex.base import QPESolver, new_solver
from mathprog.convex.data import ConvexData
from mathprog.convex.refine import RefinedSolver, _next_scale, refine_solve
from mathprog.convex.schur import dual_regularisation, jacobi_scale, row_norm_spread, solve_cg
from mathprog.result import State


def _circle():
    return ConvexData.builder().objective(2.0 * np.eye(2), [0.0, 0.0]).inequalities([[-1.0, -1.0]], [-1.0]).build()


class TestJacobiScale:
    def test_scaling_inside_window(self):
        s = jacobi_scale(np.diag([1.0, 1e4]))
        np.testing.assert_allclose(s, [1.0, 1e-2])

    @pytest.mark.parametrize("diagonal", [[1.0, 10.0], [1.0, 1e16], [0.0, 0.0]])
    def test_no_scaling_outside_window(self, diagonal):
        assert jacobi_scale(np.diag(diagonal)) is None

    def test_empty(self):
        assert jacobi_scale(np.zeros((0, 0))) is None

    @pytest.mark.parametrize("variant", [DirectASS, IterativeASS])
    def test_scaling_does_not_change_the_answer(self, variant):
        # rows 1e3 x1 <= 500 and 0.1 x2 <= 0.1 give a Schur diagonal spread of 1e8
        AI = [[1e3, 0.0, 0.0], [0.0, 1e-1, 0.0]]
        data = ConvexData.builder().objective(np.eye(3), [1.0, 2.0, 3.0]).inequalities(AI, [500.0, 0.1]).build()
        for enabled in (True, False):
            result = variant(data, ConvexConfig(schur_scaling=enabled)).solve()
            assert result.state == State.OPTIMAL
            np.testing.assert_allclose(result.solution, [0.5, 1.0, 3.0], atol=1e-9)
            np.testing.assert_allclose(result.multipliers, [5e-4, 10.0], rtol=1e-7)


class TestDualRegularisation:
    def test_row_norm_spread(self):
        assert row_norm_spread(np.array([[3.0, 4.0], [0.0, 0.5]])) == pytest.approx(10.0)
        assert row_norm_spread(np.zeros((2, 2))) == 1.0
        assert row_norm_spread(sp.csr_matrix([[2.0, 0.0], [0.0, 1.0]])) == pytest.approx(2.0)

    def test_delta_only_above_threshold(self):
        A = np.array([[1.0, 0.0], [0.0, 1e-7]])
        assert dual_regularisation(A) == pytest.approx(np.finfo(float).eps * 1e7)
        assert dual_regularisation(np.eye(2)) == 0.0
        assert dual_regularisation(A, threshold=1e8) == 0.0

    def test_regularised_kkt_is_neutral_for_inactive_duals(self):
        # the unconstrained optimum already satisfies the rows, so every multiplier is zero
        AE = np.array([[1e4, 0.0], [0.0, 1e-3]])
        BE = AE @ np.array([0.5, 0.25])
        data = ConvexData.builder().objective(np.eye(2), [0.5, 0.25]).equalities(AE, BE).build()
        solver = QPESolver(data, ConvexConfig(dual_regularisation=True))
        assert solver.initialise()
        x, lam = solver.solve_full_kkt(AE, BE)
        np.testing.assert_allclose(x, [0.5, 0.25], atol=1e-9)
        np.testing.assert_allclose(lam, [0.0, 0.0], atol=1e-6)

    def test_regularised_solver_still_solves(self):
        data = ConvexData.builder().objective(np.eye(2), np.zeros(2)).equalities([[1.0, 1.0]], [1.0]).build()
        result = new_solver(data, ConvexConfig(dual_regularisation=True)).solve()
        assert result.state == State.OPTIMAL
        np.testing.assert_allclose(result.solution, [0.5, 0.5])


class TestConjugateGradient:
    def test_matches_direct_solve(self, rng):
        M = rng.standard_normal((30, 30))
        S = M @ M.T + 30.0 * np.eye(30)
        rhs = rng.standard_normal(30)
        x, converged = solve_cg(S, rhs)
        assert converged
        np.testing.assert_allclose(x, np.linalg.solve(S, rhs), atol=1e-9)

    def test_warm_start_at_solution(self, rng):
        S = np.diag(rng.uniform(1.0, 2.0, 5))
        rhs = rng.standard_normal(5)
        exact = rhs / np.diag(S)
        x, converged = solve_cg(S, rhs, x0=exact)
        assert converged
        np.testing.assert_allclose(x, exact)

    def test_reports_non_convergence(self, rng):
        M = rng.standard_normal((20, 20))
        S = M @ M.T + np.eye(20)
        _, converged = solve_cg(S, rng.standard_normal(20), maxiter=1)
        assert not converged

    def test_empty_system(self):
        x, converged = solve_cg(np.zeros((0, 0)), np.zeros(0))
        assert converged and x.size == 0


class TestRefinement:
    def test_next_scale(self):
        assert _next_scale(1e-6, 1.0, 1e12) == pytest.approx(1e6)
        assert _next_scale(1e-30, 1.0, 1e12) == pytest.approx(1e12)
        assert _next_scale(10.0, 1.0, 1e12) == 1.0

    @pytest.mark.parametrize("combined", [False, True])
    def test_refined_solution(self, combined):
        config = ConvexConfig(extended_precision=True, refinement_combined_scale=combined)
        solver = new_solver(_circle(), config)
        assert isinstance(solver, RefinedSolver)
        result = solver.solve()
        assert result.state == State.OPTIMAL
        np.testing.assert_allclose(result.solution, [0.5, 0.5], atol=1e-12)
        np.testing.assert_allclose(result.multipliers, [1.0], atol=1e-10)

    def test_tiny_hessian(self):
        AI = [[1.0, 1.0], [-1.0, 0.0], [0.0, -1.0]]
        data = ConvexData.builder().objective(1e-11 * np.eye(2), [1.0, 1.0]).inequalities(AI, [1.0, 0.0, 0.0]).build()
        result = refine_solve(data, ConvexConfig(extended_precision=True))
        assert result.state.is_approximate()
        assert result.solution.sum() == pytest.approx(1.0, abs=1e-7)

    def test_equality_only_problem(self):
        data = ConvexData.builder().objective(np.eye(2), np.zeros(2)).equalities([[1.0, 1.0]], [1.0]).build()
        result = refine_solve(data, ConvexConfig())
        assert result.state == State.OPTIMAL
        np.testing.assert_allclose(result.solution, [0.5, 0.5], atol=1e-12)

    def test_infeasible_passes_through(self):
        data = ConvexData.builder().objective(np.eye(1), [0.0]).inequalities([[1.0], [-1.0]], [-1.0, -1.0]).build()
        assert refine_solve(data, ConvexConfig(extended_precision=True)).state == State.INFEASIBLE

    def test_caller_data_is_kept(self):
        data = _circle()
        refine_solve(data, ConvexConfig(extended_precision=True))
        assert data.Q is not None and data.count_inequality_constraints() == 1

    def test_dispose(self):
        solver = RefinedSolver(_circle())
        solver.dispose()
        with pytest.raises(RuntimeError):
            solver.solve()
