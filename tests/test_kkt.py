"""Tests for KKT assembly, the active-set modification and the residual."""

import jax
import jax.numpy as jnp
import numpy as np

from asqp_jax.kkt import apply_active_set, assemble, kkt_rhs, make_workspace
from asqp_jax.problem import QPProblem
from asqp_jax.solver import ActiveSetQP
from asqp_jax.types import ActiveStatus

jax.config.update("jax_enable_x64", True)


def _problem():
    """Two variables, two range constraints.

    H = [[2, 1], [1, 3]], A = [[1, 1], [1, 0]]
    """
    return QPProblem(
        H=jnp.array([[2.0, 1.0], [1.0, 3.0]]),
        g=jnp.array([1.0, -1.0]),
        A=jnp.array([[1.0, 1.0], [1.0, 0.0]]),
        lbx=jnp.array([0.0, -1.0]),
        ubx=jnp.array([2.0, 1.0]),
        lba=jnp.array([0.0, -5.0]),
        uba=jnp.array([1.0, 5.0]),
    )


class TestAssemble:
    """Tests for the numeric KKT matrix."""

    def test_block_values(self):
        problem = _problem()
        structure = ActiveSetQP.from_problem(problem).structure

        kkt = assemble(structure, problem.H, problem.A, problem.A.T)

        expected = np.array(
            [
                [2.0, 1.0, 1.0, 1.0],
                [1.0, 3.0, 1.0, 0.0],
                [1.0, 1.0, 0.0, 0.0],
                [1.0, 0.0, 0.0, 0.0],
            ]
        )
        np.testing.assert_allclose(kkt, expected)

    def test_workspace_is_symmetric(self):
        problem = _problem()
        structure = ActiveSetQP.from_problem(problem).structure

        workspace = make_workspace(structure, problem)

        np.testing.assert_allclose(workspace.kkt, workspace.kkt.T)
        np.testing.assert_allclose(workspace.AT, problem.A.T)


class TestApplyActiveSet:
    """Tests for the column modification of the KKT matrix."""

    def test_all_free_keeps_variable_columns(self):
        """With nothing active, constraint columns become -e_{n+j}."""
        problem = _problem()
        structure = ActiveSetQP.from_problem(problem).structure
        workspace = make_workspace(structure, problem)
        status_x = jnp.zeros(2, dtype=jnp.int32)
        status_a = jnp.zeros(2, dtype=jnp.int32)

        kktd = apply_active_set(structure, workspace.kkt, status_x, status_a)

        np.testing.assert_allclose(kktd[:, :2], workspace.kkt[:, :2])
        np.testing.assert_allclose(kktd[:, 2], [0.0, 0.0, -1.0, 0.0])
        np.testing.assert_allclose(kktd[:, 3], [0.0, 0.0, 0.0, -1.0])

    def test_active_bound_becomes_unit_column(self):
        problem = _problem()
        structure = ActiveSetQP.from_problem(problem).structure
        workspace = make_workspace(structure, problem)
        status_x = jnp.array([ActiveStatus.LOWER, ActiveStatus.INACTIVE], dtype=jnp.int32)
        status_a = jnp.array([ActiveStatus.UPPER, ActiveStatus.INACTIVE], dtype=jnp.int32)

        kktd = apply_active_set(structure, workspace.kkt, status_x, status_a)

        np.testing.assert_allclose(kktd[:, 0], [1.0, 0.0, 0.0, 0.0])
        np.testing.assert_allclose(kktd[:, 1], workspace.kkt[:, 1])
        # Active constraint column is untouched
        np.testing.assert_allclose(kktd[:, 2], workspace.kkt[:, 2])
        np.testing.assert_allclose(kktd[:, 3], [0.0, 0.0, 0.0, -1.0])

    def test_always_square(self):
        """Every combination of statuses gives an (n + m) x (n + m) matrix."""
        problem = _problem()
        structure = ActiveSetQP.from_problem(problem).structure
        workspace = make_workspace(structure, problem)
        sides = [ActiveStatus.LOWER, ActiveStatus.INACTIVE, ActiveStatus.UPPER]

        for sx0 in sides:
            for sa0 in sides:
                status_x = jnp.array([sx0, 0], dtype=jnp.int32)
                status_a = jnp.array([sa0, 0], dtype=jnp.int32)
                kktd = apply_active_set(structure, workspace.kkt, status_x, status_a)
                assert kktd.shape == (4, 4)


class TestKKTRhs:
    """Tests for the negated residual of the Newton system."""

    def test_free_rows_hold_gradient(self):
        problem = _problem()
        x = jnp.array([0.5, 0.25])
        lam_a = jnp.zeros(2)
        status = jnp.zeros(2, dtype=jnp.int32)

        rhs = kkt_rhs(problem, problem.A.T, x, problem.A @ x, lam_a, status, status)

        grad = problem.H @ x + problem.g
        np.testing.assert_allclose(rhs[:2], -grad)
        np.testing.assert_allclose(rhs[2:], 0.0)

    def test_active_rows_hold_bound_distance(self):
        problem = _problem()
        x = jnp.array([0.5, 0.25])
        g_eval = problem.A @ x
        lam_a = jnp.array([0.3, 0.0])
        status_x = jnp.array([ActiveStatus.UPPER, ActiveStatus.LOWER], dtype=jnp.int32)
        status_a = jnp.array([ActiveStatus.UPPER, ActiveStatus.INACTIVE], dtype=jnp.int32)

        rhs = kkt_rhs(problem, problem.A.T, x, g_eval, lam_a, status_x, status_a)

        np.testing.assert_allclose(rhs[:2], [-(0.5 - 2.0), -(0.25 + 1.0)])
        np.testing.assert_allclose(rhs[2], -(0.75 - 1.0))
        np.testing.assert_allclose(rhs[3], 0.0)
