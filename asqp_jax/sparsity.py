"""Sparsity analysis of the KKT system.

The KKT matrix of the QP has the block form:

    K = [[H, A^T],
         [A,   0]]

Its pattern is fixed for a given problem shape. Every active-set iteration
overwrites whole columns of K and writes to their diagonal entries, so the
factorization is computed on a padded pattern ``K + I`` that owns every
diagonal slot.

The symbolic part of the QR factorization is computed here, once, in NumPy:

1. A fill-reducing column ordering, by greedy minimum degree on the column
   intersection graph (the pattern of K^T K), whose Cholesky factor has
   the pattern of R.
2. A structural Householder elimination on the permuted pattern that
   yields the fill patterns of the Householder vectors V and of R.

The numeric factorization in :mod:`asqp_jax.qr` reuses this metadata
unchanged for every iteration and every solve of the same problem shape.
"""

import logging

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Bool, Int

logger = logging.getLogger(__name__)


class SymbolicQR(eqx.Module):
    """Structural metadata of the QR factorization ``K[:, col_perm] = Q R``.

    Attributes:
        col_perm: Column permutation applied before factorizing.
        v_pattern: Pattern of the Householder vectors (strictly lower part).
        r_pattern: Pattern of the triangular factor R.
    """

    col_perm: Int[Array, " N"]
    v_pattern: Bool[Array, "N N"]
    r_pattern: Bool[Array, "N N"]


class KKTStructure(eqx.Module):
    """Setup-phase artifacts shared by every solve of one problem shape.

    Attributes:
        n: Number of decision variables (static).
        m: Number of linear constraints (static).
        h_pattern: Symmetrized pattern of H.
        a_pattern: Pattern of A.
        kkt_pattern: Pattern of the KKT matrix.
        kktd_pattern: KKT pattern padded with the full diagonal.
        qr: Symbolic QR factorization of the padded pattern.
    """

    n: int = eqx.field(static=True)
    m: int = eqx.field(static=True)
    h_pattern: Bool[Array, "n n"]
    a_pattern: Bool[Array, "m n"]
    kkt_pattern: Bool[Array, "N N"]
    kktd_pattern: Bool[Array, "N N"]
    qr: SymbolicQR

    @property
    def size(self) -> int:
        """Dimension n + m of the KKT system."""
        return self.n + self.m


def kkt_pattern(h_pattern: np.ndarray, a_pattern: np.ndarray) -> np.ndarray:
    """Compose the pattern of [[H, A^T], [A, 0]].

    Args:
        h_pattern: Boolean pattern of H, shape (n, n). Symmetrized here.
        a_pattern: Boolean pattern of A, shape (m, n).

    Returns:
        Boolean pattern of shape (n + m, n + m).
    """
    h_pattern = np.asarray(h_pattern, dtype=bool)
    a_pattern = np.asarray(a_pattern, dtype=bool)
    n = h_pattern.shape[0]
    m = a_pattern.shape[0]
    pattern = np.zeros((n + m, n + m), dtype=bool)
    pattern[:n, :n] = h_pattern | h_pattern.T
    pattern[n:, :n] = a_pattern
    pattern[:n, n:] = a_pattern.T
    return pattern


def add_diagonal(pattern: np.ndarray) -> np.ndarray:
    """Return the pattern with every diagonal entry added."""
    return np.asarray(pattern, dtype=bool) | np.eye(pattern.shape[0], dtype=bool)


def minimum_degree_ordering(pattern: np.ndarray) -> np.ndarray:
    """Greedy minimum-degree column ordering for a QR factorization.

    Works on the column intersection graph, where columns i and j are
    adjacent when some row has entries in both. At every step the column
    of smallest degree among the remaining ones is eliminated (lowest index
    on ties) and its neighbours are joined into a clique.

    Args:
        pattern: Boolean matrix pattern, shape (rows, N).

    Returns:
        Column permutation as an int array of length N.
    """
    pattern = np.asarray(pattern, dtype=bool)
    ncol = pattern.shape[1]
    counts = pattern.T.astype(np.int64) @ pattern.astype(np.int64)
    adjacency = counts > 0
    np.fill_diagonal(adjacency, False)

    remaining = np.ones(ncol, dtype=bool)
    order = []
    for _ in range(ncol):
        degrees = (adjacency & remaining[None, :]).sum(axis=1)
        degrees = np.where(remaining, degrees, ncol + 1)
        pivot = int(np.argmin(degrees))
        order.append(pivot)
        remaining[pivot] = False
        neighbours = np.flatnonzero(adjacency[pivot] & remaining)
        adjacency[np.ix_(neighbours, neighbours)] = True
        adjacency[neighbours, neighbours] = False
    return np.asarray(order, dtype=np.int32)


def symbolic_qr(
    pattern: np.ndarray, col_perm: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Structural Householder QR of ``pattern[:, col_perm]``.

    Householder step k reflects the rows holding entries of column k at or
    below the diagonal; every later column with an entry in those rows
    fills in over all of them. After the last step the upper triangle is
    the pattern of R and the strictly lower triangle that of V.

    Args:
        pattern: Square boolean pattern with a full diagonal.
        col_perm: Column permutation.

    Returns:
        Tuple (v_pattern, r_pattern) of boolean arrays.
    """
    work = np.asarray(pattern, dtype=bool)[:, col_perm].copy()
    size = work.shape[0]
    for k in range(size):
        # Row k always receives the pivot, even when the permuted diagonal is empty
        rows = np.union1d(np.flatnonzero(work[k:, k]) + k, [k])
        work[rows, k] = True
        later = work[np.ix_(rows, np.arange(k + 1, size))].any(axis=0)
        cols = np.flatnonzero(later) + k + 1
        work[np.ix_(rows, cols)] = True
    v_pattern = np.tril(work, k=-1)
    r_pattern = np.triu(work)
    return v_pattern, r_pattern


def analyze_kkt(
    h_pattern: np.ndarray,
    a_pattern: np.ndarray,
    ordering: str = "min_degree",
) -> KKTStructure:
    """Build the KKT patterns and symbolic QR for one problem shape.

    Args:
        h_pattern: Boolean pattern of H, shape (n, n).
        a_pattern: Boolean pattern of A, shape (m, n).
        ordering: Column ordering, ``"min_degree"`` or ``"natural"``.

    Returns:
        The immutable KKTStructure used by every solve.
    """
    h_pattern = np.asarray(h_pattern, dtype=bool)
    a_pattern = np.asarray(a_pattern, dtype=bool)
    n = h_pattern.shape[0]
    m = a_pattern.shape[0]

    kkt = kkt_pattern(h_pattern, a_pattern)
    kktd = add_diagonal(kkt)

    if ordering == "min_degree":
        col_perm = minimum_degree_ordering(kktd)
    elif ordering == "natural":
        col_perm = np.arange(n + m, dtype=np.int32)
    else:
        raise ValueError(f"Unknown column ordering {ordering!r}")

    v_pattern, r_pattern = symbolic_qr(kktd, col_perm)

    logger.info(
        "KKT structure: %d variables, %d constraints, nnz(kkt)=%d, "
        "nnz(V)=%d, nnz(R)=%d",
        n,
        m,
        int(kkt.sum()),
        int(v_pattern.sum()),
        int(r_pattern.sum()),
    )

    return KKTStructure(
        n=n,
        m=m,
        h_pattern=jnp.asarray(h_pattern | h_pattern.T),
        a_pattern=jnp.asarray(a_pattern),
        kkt_pattern=jnp.asarray(kkt),
        kktd_pattern=jnp.asarray(kktd),
        qr=SymbolicQR(
            col_perm=jnp.asarray(col_perm),
            v_pattern=jnp.asarray(v_pattern),
            r_pattern=jnp.asarray(r_pattern),
        ),
    )
