"""Tests for active-set seeding and status updates."""

import jax
import jax.numpy as jnp
import numpy as np

from asqp_jax.active_set import (
    apply_blocking,
    bound_values,
    equality_status,
    initial_status,
)
from asqp_jax.types import ActiveStatus, BlockingKind

jax.config.update("jax_enable_x64", True)

L, O, U = ActiveStatus.LOWER, ActiveStatus.INACTIVE, ActiveStatus.UPPER


class TestInitialStatus:
    """Seeding the active set from an initial guess."""

    def test_zero_multipliers_leave_inequalities_inactive(self):
        status, lam = initial_status(
            jnp.array([0.0, -1.0]),
            jnp.array([1.0, 1.0]),
            jnp.array([0.0, 1.0]),
            jnp.zeros(2),
        )

        np.testing.assert_array_equal(status, [O, O])
        np.testing.assert_allclose(lam, 0.0)

    def test_multiplier_sign_selects_side(self):
        status, lam = initial_status(
            jnp.array([0.0, 0.0]),
            jnp.array([1.0, 1.0]),
            jnp.array([0.0, 1.0]),
            jnp.array([-2.0, 3.0]),
        )

        np.testing.assert_array_equal(status, [L, U])
        np.testing.assert_allclose(lam, [-2.0, 3.0])
        assert status.dtype == jnp.int32

    def test_equalities_always_active(self):
        """With a zero multiplier the side follows the current value."""
        status, _ = initial_status(
            jnp.array([1.0, 1.0, 1.0]),
            jnp.array([1.0, 1.0, 1.0]),
            jnp.array([0.0, 2.0, 0.0]),
            jnp.array([0.0, 0.0, 0.5]),
        )

        np.testing.assert_array_equal(status, [L, U, U])

    def test_infinite_side_cannot_be_active(self):
        status, lam = initial_status(
            jnp.array([-jnp.inf, 0.0]),
            jnp.array([1.0, jnp.inf]),
            jnp.zeros(2),
            jnp.array([-1.0, 1.0]),
        )

        np.testing.assert_array_equal(status, [O, O])
        np.testing.assert_allclose(lam, 0.0)


class TestStatusUpdates:
    """Status flips after the ratio test."""

    def test_bound_values(self):
        values = bound_values(
            jnp.array([-1.0, -2.0, -3.0]),
            jnp.array([1.0, 2.0, 3.0]),
            jnp.array([L, O, U], dtype=jnp.int32),
        )

        np.testing.assert_allclose(values, [-1.0, 0.0, 3.0])

    def test_primal_blocking_activates_with_zero_magnitude(self):
        status, lam = apply_blocking(
            jnp.array([O, O], dtype=jnp.int32),
            jnp.array([0.0, 0.0]),
            jnp.array([False, True]),
            jnp.asarray(BlockingKind.PRIMAL_UPPER),
        )

        np.testing.assert_array_equal(status, [O, U])
        np.testing.assert_allclose(lam, 0.0)

    def test_primal_lower_blocking(self):
        status, _ = apply_blocking(
            jnp.array([O], dtype=jnp.int32),
            jnp.array([0.0]),
            jnp.array([True]),
            jnp.asarray(BlockingKind.PRIMAL_LOWER),
        )

        np.testing.assert_array_equal(status, [L])

    def test_sign_change_deactivates(self):
        status, lam = apply_blocking(
            jnp.array([L, U], dtype=jnp.int32),
            jnp.array([1e-17, 2.0]),
            jnp.array([True, False]),
            jnp.asarray(BlockingKind.DUAL_SIGN_CHANGE),
        )

        np.testing.assert_array_equal(status, [O, U])
        np.testing.assert_allclose(lam, [0.0, 2.0])

    def test_no_blocking_entry_changes_nothing(self):
        status, lam = apply_blocking(
            jnp.array([L, U], dtype=jnp.int32),
            jnp.array([-1.0, 2.0]),
            jnp.array([False, False]),
            jnp.asarray(BlockingKind.NONE),
        )

        np.testing.assert_array_equal(status, [L, U])
        np.testing.assert_allclose(lam, [-1.0, 2.0])

    def test_equality_follows_multiplier_sign(self):
        status = equality_status(
            jnp.array([True, True, True, False]),
            jnp.array([L, U, L, L], dtype=jnp.int32),
            jnp.array([2.0, -1.0, 0.0, 3.0]),
        )

        np.testing.assert_array_equal(status, [U, L, L, L])
