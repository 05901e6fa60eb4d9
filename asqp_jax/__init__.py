"""ASQP-JAX: a primal-dual active-set QP solver in pure JAX.

This package solves convex quadratic programs with box bounds on the
variables and range constraints on linear combinations of them. The KKT
structure and a symbolic QR factorization are analysed once per problem
shape; each active-set iteration then modifies, refactorizes and solves the
KKT system inside a jitted loop. The solver can be called directly or
driven by ``optimistix.minimise``.
"""

from asqp_jax.diagnostics import is_kkt_optimal, kkt_residuals
from asqp_jax.errors import (
    DimensionMismatch,
    InvariantViolation,
    QPSolverError,
    StructuralSingularity,
)
from asqp_jax.problem import QPProblem, qp_objective
from asqp_jax.qp_solver import ActiveSetState, QPResult, solve_qp
from asqp_jax.solver import AbstractQPSolver, ActiveSetQP, InitialGuess, QPSolution
from asqp_jax.sparsity import KKTStructure, analyze_kkt
from asqp_jax.types import ActiveStatus, BlockingKind, SolverResult

__all__ = [
    # Main solver
    "ActiveSetQP",
    "AbstractQPSolver",
    "InitialGuess",
    "QPSolution",
    # Problem data
    "QPProblem",
    "qp_objective",
    # Setup
    "KKTStructure",
    "analyze_kkt",
    # Iteration loop
    "ActiveSetState",
    "QPResult",
    "solve_qp",
    # Status codes
    "ActiveStatus",
    "BlockingKind",
    "SolverResult",
    # Errors
    "QPSolverError",
    "DimensionMismatch",
    "StructuralSingularity",
    "InvariantViolation",
    # Diagnostics
    "kkt_residuals",
    "is_kkt_optimal",
]
