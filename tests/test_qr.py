"""Tests for the numeric QR factorization and the triangular solves."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from asqp_jax.qr import apply_q, apply_qt, factorize, solve
from asqp_jax.sparsity import analyze_kkt

jax.config.update("jax_enable_x64", True)


def _structure_and_matrix(seed: int, ordering: str = "min_degree"):
    """A random KKT-shaped matrix with a sparse H and A."""
    rng = np.random.default_rng(seed)
    n, m = 4, 2
    h_pattern = (rng.random((n, n)) < 0.4) | np.eye(n, dtype=bool)
    h_pattern = h_pattern | h_pattern.T
    a_pattern = rng.random((m, n)) < 0.6
    a_pattern[:, 0] = True
    structure = analyze_kkt(h_pattern, a_pattern, ordering=ordering)

    values = rng.standard_normal((n + m, n + m)) + 4.0 * np.eye(n + m)
    kktd = np.where(np.asarray(structure.kktd_pattern), values, 0.0)
    return structure, jnp.asarray(kktd)


class TestFactorize:
    """Tests for factorize()."""

    @pytest.mark.parametrize("ordering", ["min_degree", "natural"])
    def test_reconstructs_permuted_matrix(self, ordering):
        structure, kktd = _structure_and_matrix(0, ordering)

        fac = factorize(structure, kktd)

        # Q R reproduces the permuted matrix column by column
        qr = jnp.stack([apply_q(fac, fac.r[:, k]) for k in range(kktd.shape[0])], axis=1)
        np.testing.assert_allclose(qr, kktd[:, fac.col_perm], atol=1e-10)
        assert not fac.singular

    def test_q_is_orthogonal(self):
        structure, kktd = _structure_and_matrix(1)
        fac = factorize(structure, kktd)
        b = jnp.arange(1.0, kktd.shape[0] + 1.0)

        np.testing.assert_allclose(apply_qt(fac, apply_q(fac, b)), b, atol=1e-12)
        np.testing.assert_allclose(jnp.linalg.norm(apply_q(fac, b)), jnp.linalg.norm(b))

    def test_singular_matrix_is_flagged(self):
        structure, kktd = _structure_and_matrix(2)
        kktd = kktd.at[:, 3].set(0.0)

        fac = factorize(structure, kktd)

        assert fac.singular
        assert int(fac.pivot) == 3

    def test_singularity_is_relative_to_scale(self):
        """A uniformly tiny matrix is as regular as the unscaled one."""
        structure, kktd = _structure_and_matrix(0)
        rhs = jnp.ones(6)

        fac = factorize(structure, 1e-16 * kktd)

        assert not fac.singular
        expected = np.linalg.solve(1e-16 * np.asarray(kktd).T, np.ones(6))
        np.testing.assert_allclose(solve(fac, rhs), expected, rtol=1e-9)

    def test_zero_matrix_is_singular(self):
        structure, kktd = _structure_and_matrix(0)

        assert factorize(structure, jnp.zeros_like(kktd)).singular


class TestSolve:
    """Tests for solve() against numpy.linalg.solve."""

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_transposed_solve(self, seed):
        structure, kktd = _structure_and_matrix(seed)
        rhs = jnp.asarray(np.random.default_rng(seed + 10).standard_normal(6))

        z = solve(factorize(structure, kktd), rhs)

        expected = np.linalg.solve(np.asarray(kktd).T, np.asarray(rhs))
        np.testing.assert_allclose(z, expected, rtol=1e-9, atol=1e-10)

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_direct_solve(self, seed):
        structure, kktd = _structure_and_matrix(seed)
        rhs = jnp.asarray(np.random.default_rng(seed + 20).standard_normal(6))

        z = solve(factorize(structure, kktd), rhs, transpose=False)

        expected = np.linalg.solve(np.asarray(kktd), np.asarray(rhs))
        np.testing.assert_allclose(z, expected, rtol=1e-9, atol=1e-10)

    def test_orderings_agree(self):
        structure_md, kktd = _structure_and_matrix(5)
        structure_nat, _ = _structure_and_matrix(5, "natural")
        rhs = jnp.ones(6)

        z_md = solve(factorize(structure_md, kktd), rhs)
        z_nat = solve(factorize(structure_nat, kktd), rhs)

        np.testing.assert_allclose(z_md, z_nat, rtol=1e-10)

    def test_jit(self):
        structure, kktd = _structure_and_matrix(4)
        rhs = jnp.ones(6)

        @jax.jit
        def run(kktd, rhs):
            return solve(factorize(structure, kktd), rhs)

        np.testing.assert_allclose(
            run(kktd, rhs), np.linalg.solve(np.asarray(kktd).T, np.ones(6)), rtol=1e-9
        )
