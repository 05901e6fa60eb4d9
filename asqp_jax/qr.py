"""Numeric QR factorization of the modified KKT matrix.

The matrix is factorized as

    kktd[:, p] = Q R,    Q = H_0 H_1 ... H_{N-1},    H_k = I - beta_k v_k v_k^T

with the column permutation ``p`` taken from the symbolic factorization
computed at setup (:class:`asqp_jax.sparsity.SymbolicQR`). Householder
vectors are stored LAPACK style: ``v_k`` has an implicit unit entry at
position k and its remaining entries in the strictly lower part of column k
of ``v``.

The factorization itself is dense. The V and R fill patterns are a
structural superset of the numeric factors, so masking with them only clears
entries that are already zero up to round-off; it does not reduce the cost
of the factorization.
"""

from typing import NamedTuple

import jax
import jax.numpy as jnp
from beartype import beartype
from jax.scipy.linalg import solve_triangular
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from asqp_jax.sparsity import KKTStructure


class QRFactorization(NamedTuple):
    """Numeric QR factorization of a column-permuted matrix.

    Attributes:
        v: Householder vectors in the strictly lower triangle.
        r: Upper triangular factor.
        beta: Householder coefficients.
        col_perm: Column permutation applied before factorizing.
        singular: Whether R has a zero (or non-finite) pivot.
        pivot: Original column index of the smallest pivot.
    """

    v: Float[Array, "N N"]
    r: Float[Array, "N N"]
    beta: Float[Array, " N"]
    col_perm: Int[Array, " N"]
    singular: Bool[Array, ""]
    pivot: Int[Array, ""]


@jaxtyped(typechecker=beartype)
def factorize(
    structure: KKTStructure,
    kktd: Float[Array, "N N"],
) -> QRFactorization:
    """Householder QR of the modified KKT matrix.

    The columns are permuted with the setup ordering and the dense factors
    are restricted to the precomputed fill patterns.

    Singularity is flagged, not repaired: a pivot is considered zero when
    ``|R_kk| <= N * eps * max_k |R_kk|``. The test is relative to the largest
    pivot, so uniformly scaled matrices are classified alike; an all-zero R
    is singular.

    Args:
        structure: Setup-phase KKT structure.
        kktd: Modified KKT matrix.

    Returns:
        QRFactorization of ``kktd[:, col_perm]``.
    """
    sym = structure.qr
    N = structure.size
    # raw mode returns the packed LAPACK factors transposed
    h, beta = jnp.linalg.qr(kktd[:, sym.col_perm], mode="raw")
    packed = h.T

    v = jnp.where(sym.v_pattern, packed, 0.0)
    r = jnp.where(sym.r_pattern, packed, 0.0)

    pivots = jnp.abs(jnp.diagonal(r))
    scale = jnp.max(jnp.where(jnp.isfinite(pivots), pivots, 0.0))
    tol = N * jnp.finfo(r.dtype).eps * scale
    singular = jnp.any(~jnp.isfinite(pivots)) | jnp.any(pivots <= tol)
    smallest = jnp.argmin(jnp.where(jnp.isfinite(pivots), pivots, -1.0))

    return QRFactorization(
        v=v,
        r=r,
        beta=beta,
        col_perm=sym.col_perm,
        singular=singular,
        pivot=sym.col_perm[smallest].astype(jnp.int32),
    )


def _reflect(
    factorization: QRFactorization, k: Int[Array, ""], b: Float[Array, " N"]
) -> Float[Array, " N"]:
    """Apply the Householder reflector H_k to ``b``."""
    idx = jnp.arange(b.shape[0])
    v_k = jnp.where(
        idx == k, 1.0, jnp.where(idx > k, factorization.v[:, k], 0.0)
    )
    return b - factorization.beta[k] * v_k * jnp.dot(v_k, b)


def apply_qt(
    factorization: QRFactorization, b: Float[Array, " N"]
) -> Float[Array, " N"]:
    """Compute Q^T b = H_{N-1} ... H_0 b."""
    N = b.shape[0]
    return jax.lax.fori_loop(
        0, N, lambda k, acc: _reflect(factorization, k, acc), b
    )


def apply_q(
    factorization: QRFactorization, b: Float[Array, " N"]
) -> Float[Array, " N"]:
    """Compute Q b = H_0 ... H_{N-1} b."""
    N = b.shape[0]
    return jax.lax.fori_loop(
        0, N, lambda i, acc: _reflect(factorization, N - 1 - i, acc), b
    )


@jaxtyped(typechecker=beartype)
def solve(
    factorization: QRFactorization,
    rhs: Float[Array, " N"],
    transpose: bool = True,
) -> Float[Array, " N"]:
    """Solve with the factorized matrix M, where ``M[:, p] = Q R``.

    With ``transpose=True`` (the Newton step) this solves ``M^T z = rhs``:

        R^T (Q^T z) = rhs[p]   =>   z = Q R^{-T} rhs[p]

    With ``transpose=False`` it solves ``M z = rhs``:

        R z[p] = Q^T rhs

    Args:
        factorization: Output of :func:`factorize`.
        rhs: Right-hand side.
        transpose: Whether to solve with the transposed matrix.

    Returns:
        Solution vector z.
    """
    perm = factorization.col_perm
    if transpose:
        y = solve_triangular(factorization.r, rhs[perm], trans="T", lower=False)
        return apply_q(factorization, y)
    w = solve_triangular(factorization.r, apply_qt(factorization, rhs), lower=False)
    return jnp.zeros_like(rhs).at[perm].set(w)
