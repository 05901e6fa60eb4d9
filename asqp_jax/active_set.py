"""Active-set status handling.

Every variable and constraint carries an explicit status
(:class:`~asqp_jax.types.ActiveStatus`) next to its multiplier. The status
says which bound, if any, the entry is held at; the multiplier only
carries the magnitude. An active entry whose multiplier is exactly zero is
"active with unknown magnitude", so no tiny sign marker is ever needed.

Sign convention of the multipliers: at a solution

    H x + g + A^T lam_a + lam_x = 0

with ``lam <= 0`` on lower-active entries and ``lam >= 0`` on upper-active
ones. Equality entries (lb == ub) are always active and their multiplier
may take either sign.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from asqp_jax.types import ActiveStatus, BlockingKind


def bound_values(
    lb: Float[Array, " k"],
    ub: Float[Array, " k"],
    status: Int[Array, " k"],
) -> Float[Array, " k"]:
    """Bound each active entry is held at (zero for inactive entries)."""
    return jnp.where(
        status == ActiveStatus.LOWER,
        lb,
        jnp.where(status == ActiveStatus.UPPER, ub, 0.0),
    )


@jaxtyped(typechecker=beartype)
def initial_status(
    lb: Float[Array, " k"],
    ub: Float[Array, " k"],
    current: Float[Array, " k"],
    lam0: Float[Array, " k"],
) -> tuple[Int[Array, " k"], Float[Array, " k"]]:
    """Seed the active set from an initial guess.

    - Equalities (lb == ub) are always active. The side follows the sign of
      the initial multiplier, or the position of the current value when the
      multiplier is zero.
    - Other entries are active only when their initial multiplier is
      nonzero, on the side given by its sign.
    - An entry cannot be active on a side whose bound is infinite.

    Args:
        lb: Lower bounds.
        ub: Upper bounds.
        current: Current values (x for variables, A x for constraints).
        lam0: Initial multipliers.

    Returns:
        Tuple (status, lam) where inactive multipliers are zeroed.
    """
    sign_side = jnp.where(
        lam0 < 0.0,
        ActiveStatus.LOWER,
        jnp.where(lam0 > 0.0, ActiveStatus.UPPER, ActiveStatus.INACTIVE),
    )
    position_side = jnp.where(current <= ub, ActiveStatus.LOWER, ActiveStatus.UPPER)
    is_equality = lb == ub
    status = jnp.where(
        is_equality,
        jnp.where(sign_side != ActiveStatus.INACTIVE, sign_side, position_side),
        sign_side,
    )
    bound = jnp.where(status == ActiveStatus.UPPER, ub, lb)
    status = jnp.where(jnp.isfinite(bound), status, ActiveStatus.INACTIVE)
    status = status.astype(jnp.int32)
    lam = jnp.where(status == ActiveStatus.INACTIVE, 0.0, lam0)
    return status, lam


def equality_status(
    is_equality: Bool[Array, " k"],
    status: Int[Array, " k"],
    lam: Float[Array, " k"],
) -> Int[Array, " k"]:
    """Let equality entries follow the sign of their multiplier.

    The entry stays active; a zero multiplier keeps the current side.
    """
    side = jnp.where(
        lam < 0.0,
        ActiveStatus.LOWER,
        jnp.where(lam > 0.0, ActiveStatus.UPPER, status),
    )
    return jnp.where(is_equality, side, status).astype(jnp.int32)


def apply_blocking(
    status: Int[Array, " k"],
    lam: Float[Array, " k"],
    blocking: Bool[Array, " k"],
    kind: Int[Array, ""],
) -> tuple[Int[Array, " k"], Float[Array, " k"]]:
    """Flip the status of the entry that limited the step.

    A primal crossing activates the entry on the side that was hit, with a
    zero multiplier magnitude. A multiplier sign change deactivates the
    entry and zeroes its multiplier.

    Args:
        status: Status of the entries of one kind (variables or constraints).
        lam: Multipliers of those entries, after the step.
        blocking: One-hot mask of the blocking entry (all False if none).
        kind: The :class:`BlockingKind` of the event.

    Returns:
        Tuple (status, lam) after the flip.
    """
    new_side = jnp.where(
        kind == BlockingKind.PRIMAL_UPPER,
        ActiveStatus.UPPER,
        jnp.where(
            kind == BlockingKind.PRIMAL_LOWER,
            ActiveStatus.LOWER,
            ActiveStatus.INACTIVE,
        ),
    )
    status = jnp.where(blocking, new_side, status).astype(jnp.int32)
    lam = jnp.where(blocking, 0.0, lam)
    return status, lam
