"""KKT assembly and active-set modification.

The Newton system of the primal-dual active-set method is built from the
KKT matrix

    K = [[H, A^T],
         [A,   0]]

whose columns are modified according to the current active set:

- For an active bound on variable i, column i is replaced by +e_i.
- For an inactive constraint j, column n+j is replaced by -e_{n+j}.
- Columns of free variables and of active constraints are kept.

Because K is symmetric, column i of the modified matrix holds the
coefficients of equation i of the Newton system. The step therefore solves
the transposed system ``kktd^T z = rhs``:

- Free variable i:   (H dx + A^T dlam_a)_i = -(H x + g + A^T lam_a)_i
- Active bound i:    dx_i = -(x_i - bound_i)
- Active constraint: (A dx)_j = -((A x)_j - bound_j)
- Inactive constraint: -dlam_a_j = 0

Fixed directions are pinned to "move onto the bound" while the multipliers
of active constraints stay free unknowns.
"""

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Int, jaxtyped

from asqp_jax.active_set import bound_values
from asqp_jax.problem import QPProblem
from asqp_jax.sparsity import KKTStructure
from asqp_jax.types import ActiveStatus, Vector


class Workspace(eqx.Module):
    """Per-solve numeric buffers derived from the problem data.

    H, A and A^T do not change during a solve, so the numeric KKT matrix is
    assembled once and every iteration only applies the active-set
    modification to it.

    Attributes:
        kkt: Numeric KKT matrix restricted to the KKT pattern.
        AT: Transpose of the constraint matrix.
    """

    kkt: Float[Array, "N N"]
    AT: Float[Array, "n m"]


@jaxtyped(typechecker=beartype)
def assemble(
    structure: KKTStructure,
    H: Float[Array, "n n"],
    A: Float[Array, "m n"],
    AT: Float[Array, "n m"],
) -> Float[Array, "N N"]:
    """Place H, A and A^T into the KKT pattern.

    Args:
        structure: Setup-phase KKT structure.
        H: Hessian values.
        A: Constraint matrix values.
        AT: Transposed constraint matrix values.

    Returns:
        Dense KKT matrix with entries outside the pattern set to zero.
    """
    n = structure.n
    N = structure.size
    kkt = jnp.zeros((N, N), dtype=H.dtype)
    kkt = kkt.at[:n, :n].set(H)
    kkt = kkt.at[n:, :n].set(A)
    kkt = kkt.at[:n, n:].set(AT)
    return jnp.where(structure.kkt_pattern, kkt, 0.0)


def make_workspace(structure: KKTStructure, problem: QPProblem) -> Workspace:
    """Assemble the numeric KKT matrix for one solve."""
    AT = problem.A.T
    return Workspace(kkt=assemble(structure, problem.H, problem.A, AT), AT=AT)


@jaxtyped(typechecker=beartype)
def apply_active_set(
    structure: KKTStructure,
    kkt: Float[Array, "N N"],
    status_x: Int[Array, " n"],
    status_a: Int[Array, " m"],
) -> Float[Array, "N N"]:
    """Modify the KKT columns of fixed entries.

    The matrix is first projected onto the padded pattern, so every
    diagonal slot exists. Columns of variables with an active bound become
    +e_i; columns of inactive constraints become -e_{n+j}. The result is
    always square of size (n + m).

    Args:
        structure: Setup-phase KKT structure.
        kkt: Numeric KKT matrix.
        status_x: Active-set status of the variables.
        status_a: Active-set status of the constraints.

    Returns:
        The modified KKT matrix ``kktd``.
    """
    N = structure.size
    kktd = jnp.where(structure.kktd_pattern, kkt, 0.0)

    # +1 for active bounds, -1 for inactive constraints, 0 for kept columns
    replace_with = jnp.concatenate(
        [
            jnp.where(status_x != ActiveStatus.INACTIVE, 1.0, 0.0),
            jnp.where(status_a == ActiveStatus.INACTIVE, -1.0, 0.0),
        ]
    ).astype(kkt.dtype)
    replaced = replace_with != 0.0

    identity = jnp.eye(N, dtype=kkt.dtype)
    return jnp.where(replaced[None, :], identity * replace_with[None, :], kktd)


@jaxtyped(typechecker=beartype)
def kkt_rhs(
    problem: QPProblem,
    AT: Float[Array, "n m"],
    x: Vector,
    g_eval: Float[Array, " m"],
    lam_a: Float[Array, " m"],
    status_x: Int[Array, " n"],
    status_a: Int[Array, " m"],
) -> Float[Array, " N"]:
    """Negated residual of the modified Newton system.

    Args:
        problem: QP data.
        AT: Transposed constraint matrix.
        x: Current primal iterate.
        g_eval: Current constraint values A x.
        lam_a: Current constraint multipliers.
        status_x: Active-set status of the variables.
        status_a: Active-set status of the constraints.

    Returns:
        Right-hand side of length n + m.
    """
    # Gradient of the Lagrangian without the bound multipliers
    grad = problem.H @ x + problem.g + AT @ lam_a
    x_bound = bound_values(problem.lbx, problem.ubx, status_x)
    residual_x = jnp.where(status_x != ActiveStatus.INACTIVE, x - x_bound, grad)

    a_bound = bound_values(problem.lba, problem.uba, status_a)
    residual_a = jnp.where(
        status_a != ActiveStatus.INACTIVE, g_eval - a_bound, 0.0
    )
    return -jnp.concatenate([residual_x, residual_a])
