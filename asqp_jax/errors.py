"""Exceptions raised by the active-set QP solver.

Shape and bound problems are detected eagerly, before anything is traced.
Failures that happen inside the jitted iteration loop are carried out of the
loop as :class:`~asqp_jax.types.SolverResult` codes and converted to
exceptions by :meth:`asqp_jax.solver.ActiveSetQP.solve`.
"""

from typing import Optional


class QPSolverError(Exception):
    """Base class for all errors raised by the solver."""


class DimensionMismatch(QPSolverError, ValueError):
    """Problem data shapes disagree, or a lower bound exceeds its upper bound."""


class StructuralSingularity(QPSolverError):
    """The modified KKT matrix is singular for the current active set.

    Attributes:
        iteration: Iteration at which the factorization failed.
        index: Column of the KKT matrix holding the smallest pivot.
    """

    def __init__(self, iteration: int, index: int, message: Optional[str] = None):
        self.iteration = iteration
        self.index = index
        if message is None:
            message = (
                f"KKT matrix is singular at iteration {iteration} "
                f"(smallest pivot in column {index})"
            )
        super().__init__(message)


class InvariantViolation(QPSolverError):
    """A ratio-test step length fell outside ``[0, 1]``.

    Attributes:
        iteration: Iteration at which the ratio test failed.
        index: Entry (variables first, then constraints) that produced it.
        tau: The offending step length.
    """

    def __init__(self, iteration: int, index: int, tau: float):
        self.iteration = iteration
        self.index = index
        self.tau = tau
        super().__init__(
            f"Step length tau={tau} outside [0, 1] at entry {index} "
            f"(iteration {iteration})"
        )
