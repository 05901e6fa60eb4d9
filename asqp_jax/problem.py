"""Problem data for the active-set QP solver.

A problem has the form:

    minimize    (1/2) x^T H x + g^T x
    subject to  lbx <= x <= ubx
                lba <= A x <= uba

Entries with equal lower and upper bounds are equalities. The data is
stored densely; the zero entries of ``H`` and ``A`` at construction time
define the sparsity pattern analysed by :func:`asqp_jax.sparsity.analyze_kkt`.
"""

from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from asqp_jax.errors import DimensionMismatch
from asqp_jax.types import Scalar, Vector
from asqp_jax.utils import densify


def _bound_vector(value: Any, size: int, default: float, name: str) -> np.ndarray:
    if value is None:
        return np.full(size, default)
    vec = densify(value).reshape(-1)
    if vec.shape[0] != size:
        raise DimensionMismatch(f"{name} has length {vec.shape[0]}, expected {size}")
    return vec


def check_bounds(lb: Any, ub: Any, name: str) -> None:
    """Raise :class:`DimensionMismatch` if ``lb > ub`` for any entry."""
    lb = np.asarray(lb)
    ub = np.asarray(ub)
    bad = np.flatnonzero(lb > ub)
    if bad.size > 0:
        raise DimensionMismatch(
            f"Infeasible bounds on {name}: lower bound exceeds upper bound "
            f"at indices {bad.tolist()}"
        )


class QPProblem(eqx.Module):
    """A convex QP with box bounds and linear range constraints.

    Inputs may be array-likes or scipy sparse matrices. Omitted bounds are
    unbounded (-inf / +inf) and an omitted ``A`` means no linear
    constraints. Construction validates every shape and rejects lower
    bounds exceeding upper bounds, so it must happen outside of ``jax.jit``.

    Attributes:
        H: Symmetric positive semidefinite Hessian, shape (n, n).
        g: Linear term, shape (n,).
        A: Constraint matrix, shape (m, n).
        lbx: Lower bounds on x.
        ubx: Upper bounds on x.
        lba: Lower bounds on A x.
        uba: Upper bounds on A x.
    """

    H: Float[Array, "n n"]
    g: Float[Array, " n"]
    A: Float[Array, "m n"]
    lbx: Float[Array, " n"]
    ubx: Float[Array, " n"]
    lba: Float[Array, " m"]
    uba: Float[Array, " m"]

    def __init__(
        self,
        H: Any,
        g: Any,
        A: Optional[Any] = None,
        lbx: Optional[Any] = None,
        ubx: Optional[Any] = None,
        lba: Optional[Any] = None,
        uba: Optional[Any] = None,
    ):
        g_np = densify(g).reshape(-1)
        n = g_np.shape[0]
        if n == 0:
            raise DimensionMismatch("Problem has no decision variables")

        H_np = densify(H)
        if H_np.shape != (n, n):
            raise DimensionMismatch(f"H has shape {H_np.shape}, expected {(n, n)}")

        A_np = np.zeros((0, n)) if A is None else densify(A)
        if A_np.ndim == 1 and A_np.shape[0] == n:
            A_np = A_np.reshape(1, n)
        if A_np.ndim != 2 or A_np.shape[1] != n:
            raise DimensionMismatch(
                f"A has shape {A_np.shape}, expected (m, {n})"
            )
        m = A_np.shape[0]

        lbx_np = _bound_vector(lbx, n, -np.inf, "lbx")
        ubx_np = _bound_vector(ubx, n, np.inf, "ubx")
        lba_np = _bound_vector(lba, m, -np.inf, "lba")
        uba_np = _bound_vector(uba, m, np.inf, "uba")
        check_bounds(lbx_np, ubx_np, "x")
        check_bounds(lba_np, uba_np, "A x")

        self.H = jnp.asarray(H_np)
        self.g = jnp.asarray(g_np)
        self.A = jnp.asarray(A_np)
        self.lbx = jnp.asarray(lbx_np)
        self.ubx = jnp.asarray(ubx_np)
        self.lba = jnp.asarray(lba_np)
        self.uba = jnp.asarray(uba_np)

    @property
    def n(self) -> int:
        """Number of decision variables."""
        return self.g.shape[0]

    @property
    def m(self) -> int:
        """Number of linear constraints."""
        return self.A.shape[0]

    def objective(self, x: Vector) -> Scalar:
        """Evaluate (1/2) x^T H x + g^T x."""
        return 0.5 * jnp.dot(x, self.H @ x) + jnp.dot(self.g, x)


def qp_objective(x: Vector, problem: QPProblem) -> tuple[Scalar, None]:
    """Objective in the optimistix ``fn(y, args) -> (f, aux)`` convention."""
    return problem.objective(x), None
