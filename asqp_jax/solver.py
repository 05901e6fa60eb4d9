"""Active-set QP solver objects.

This module contains the public solver class. It plays two roles:

1. A capability object with a single :meth:`ActiveSetQP.solve` entry point
   (declared by :class:`AbstractQPSolver`) that validates the problem,
   runs the jitted active-set loop and converts failure codes into
   exceptions.
2. An ``optimistix.AbstractMinimiser``, so the same solver can be driven
   by ``optimistix.minimise``: every optimistix step is one active-set
   iteration, with the problem passed as ``args``.

The setup phase (KKT patterns and symbolic QR) is done once when the solver
is built with :meth:`ActiveSetQP.from_problem`, and is reused by every solve
of problems with the same shape and sparsity.
"""

import abc
import logging
from collections.abc import Callable
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
import optimistix._misc as optx_misc
from jaxtyping import Array, Bool, Float

from asqp_jax.errors import DimensionMismatch, InvariantViolation, StructuralSingularity
from asqp_jax.kkt import Workspace, make_workspace
from asqp_jax.problem import QPProblem, check_bounds
from asqp_jax.qp_solver import (
    ActiveSetState,
    QPResult,
    active_set_iteration,
    init_state,
    solve_qp,
)
from asqp_jax.sparsity import KKTStructure, analyze_kkt
from asqp_jax.types import SolverResult
from asqp_jax.utils import densify

logger = logging.getLogger(__name__)

_solve_qp_jit = eqx.filter_jit(solve_qp)


class MinimiserState(eqx.Module):
    """State carried by ``optimistix.minimise``.

    Attributes:
        workspace: Numeric KKT matrix, assembled once in ``init``.
        qp: Active-set state.
    """

    workspace: Workspace
    qp: ActiveSetState


class InitialGuess(NamedTuple):
    """Initial guess; omitted entries are zeros."""

    x0: Optional[Any] = None
    lam_x0: Optional[Any] = None
    lam_a0: Optional[Any] = None


class QPSolution(NamedTuple):
    """Solution returned by :meth:`ActiveSetQP.solve`.

    Attributes:
        x: Primal solution.
        f: Objective value (1/2) x^T H x + g^T x.
        lam_x: Bound multipliers (negative at lower, positive at upper bounds).
        lam_a: Constraint multipliers, same sign convention.
        status_x: Final active-set status of the variables.
        status_a: Final active-set status of the constraints.
        iterations: Number of active-set iterations performed.
        result: SolverResult code (SUCCESS or MAX_ITERATIONS).
        converged: Whether a full unblocked step was reached.
    """

    x: Float[Array, " n"]
    f: Float[Array, ""]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " m"]
    status_x: Array
    status_a: Array
    iterations: int
    result: int
    converged: bool


class AbstractQPSolver(eqx.Module):
    """Interface of a QP solver: a single ``solve`` entry point."""

    @abc.abstractmethod
    def solve(
        self,
        problem: QPProblem,
        guess: Optional[InitialGuess] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> QPSolution:
        """Solve ``problem`` from ``guess`` and return the solution."""


class ActiveSetQP(optx.AbstractMinimiser, AbstractQPSolver):
    """Primal-dual active-set solver for box- and range-constrained QPs.

    Attributes:
        structure: KKT patterns and symbolic QR from the setup phase.
        rtol: Relative tolerance (required by optimistix, unused: the
            active-set method terminates on a full unblocked step).
        atol: Absolute tolerance (required by optimistix, unused).
        norm: Norm used by optimistix.
        max_iter: Maximum number of active-set iterations.
        verbose: Whether ``solve`` prints a per-iteration trace.

    Example:
        >>> import jax.numpy as jnp
        >>> from asqp_jax import ActiveSetQP, QPProblem
        >>>
        >>> problem = QPProblem(
        ...     H=jnp.eye(2), g=jnp.array([1.0, 0.0]), lbx=jnp.array([0.0, -jnp.inf])
        ... )
        >>> solver = ActiveSetQP.from_problem(problem)
        >>> solution = solver.solve(problem)
    """

    structure: KKTStructure

    rtol: float = 1e-8
    atol: float = 1e-8

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    # Must be static: it bounds the jitted while loop
    max_iter: int = eqx.field(static=True, default=1000)
    verbose: bool = eqx.field(static=True, default=False)

    def __check_init__(self):
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be a positive integer, got {self.max_iter}")

    @classmethod
    def from_problem(
        cls,
        problem: QPProblem,
        ordering: str = "min_degree",
        **kwargs: Any,
    ) -> "ActiveSetQP":
        """Run the setup phase for the shape and sparsity of ``problem``.

        Args:
            problem: Problem whose nonzero pattern defines the structure.
            ordering: Column ordering for the QR factorization,
                ``"min_degree"`` or ``"natural"``.
            **kwargs: Solver options (``max_iter``, ``verbose``, ...).

        Returns:
            A solver reusable for every problem with a compatible pattern.
        """
        structure = analyze_kkt(
            np.asarray(problem.H) != 0.0,
            np.asarray(problem.A) != 0.0,
            ordering=ordering,
        )
        return cls(structure=structure, **kwargs)

    def _check_problem(self, problem: QPProblem) -> None:
        """Validate a problem against the analysed structure."""
        n, m = self.structure.n, self.structure.m
        if (problem.n, problem.m) != (n, m):
            raise DimensionMismatch(
                f"Problem has {problem.n} variables and {problem.m} constraints, "
                f"solver was set up for {n} and {m}"
            )
        check_bounds(problem.lbx, problem.ubx, "x")
        check_bounds(problem.lba, problem.uba, "A x")
        outside_h = (np.asarray(problem.H) != 0.0) & ~np.asarray(self.structure.h_pattern)
        outside_a = (np.asarray(problem.A) != 0.0) & ~np.asarray(self.structure.a_pattern)
        if outside_h.any() or outside_a.any():
            raise DimensionMismatch(
                "Problem has nonzero entries outside the analysed sparsity pattern"
            )

    def _initial_guess(
        self, problem: QPProblem, guess: Optional[InitialGuess]
    ) -> tuple[Array, Array, Array]:
        guess = InitialGuess() if guess is None else guess
        dtype = problem.g.dtype
        values = []
        for name, value, size in (
            ("x0", guess.x0, problem.n),
            ("lam_x0", guess.lam_x0, problem.n),
            ("lam_a0", guess.lam_a0, problem.m),
        ):
            if value is None:
                values.append(jnp.zeros(size, dtype=dtype))
                continue
            vec = densify(value).reshape(-1)
            if vec.shape[0] != size:
                raise DimensionMismatch(
                    f"{name} has length {vec.shape[0]}, expected {size}"
                )
            values.append(jnp.asarray(vec, dtype=dtype))
        return values[0], values[1], values[2]

    def _options(self, options: Optional[dict[str, Any]]) -> tuple[int, bool]:
        max_iter, verbose = self.max_iter, self.verbose
        for key, value in (options or {}).items():
            if key == "max_iter":
                max_iter = int(value)
                if max_iter < 1:
                    raise ValueError(
                        f"max_iter must be a positive integer, got {max_iter}"
                    )
            elif key == "verbose":
                verbose = bool(value)
            else:
                raise ValueError(f"Unknown option {key!r}")
        return max_iter, verbose

    def solve(
        self,
        problem: QPProblem,
        guess: Optional[InitialGuess] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> QPSolution:
        """Solve a QP with the active-set method.

        Args:
            problem: QP data with the shape and pattern of the setup problem.
            guess: Initial primal point and multipliers. Nonzero multipliers
                mark entries as initially active.
            options: Per-call overrides of ``max_iter`` and ``verbose``.

        Returns:
            QPSolution. Running out of iterations is not an error: the last
            iterate is returned with ``converged=False``.

        Raises:
            DimensionMismatch: Inconsistent shapes, lb > ub, or entries
                outside the analysed pattern.
            StructuralSingularity: The modified KKT matrix became singular.
            InvariantViolation: The ratio test produced a step length
                outside [0, 1].
        """
        max_iter, verbose = self._options(options)
        self._check_problem(problem)
        x0, lam_x0, lam_a0 = self._initial_guess(problem, guess)

        res: QPResult = _solve_qp_jit(
            self.structure, problem, x0, lam_x0, lam_a0, max_iter, verbose
        )
        if verbose:
            jax.effects_barrier()

        result = int(res.result)
        iterations = int(res.iterations)
        if result == SolverResult.SINGULAR_KKT:
            raise StructuralSingularity(iterations, int(res.index))
        if result == SolverResult.INVALID_STEP:
            raise InvariantViolation(iterations, int(res.index), float(res.tau))
        if result == SolverResult.MAX_ITERATIONS:
            logger.warning(
                "Active-set solver stopped after %d iterations without a full step",
                iterations,
            )

        return QPSolution(
            x=res.x,
            f=res.f,
            lam_x=res.lam_x,
            lam_a=res.lam_a,
            status_x=res.status_x,
            status_a=res.status_a,
            iterations=iterations,
            result=result,
            converged=bool(res.converged),
        )

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> MinimiserState:
        """Initialize the active-set state and assemble the KKT matrix.

        Args:
            fn: Objective function with signature fn(y, args) -> (f_val, aux).
            y: Initial primal point.
            args: The :class:`QPProblem`.
            options: May hold initial multipliers ``lam_x0`` and ``lam_a0``.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial MinimiserState with the seeded active set.
        """
        problem: QPProblem = args
        options = {} if options is None else options
        lam_x0 = options.get("lam_x0", jnp.zeros(problem.n, dtype=y.dtype))
        lam_a0 = options.get("lam_a0", jnp.zeros(problem.m, dtype=y.dtype))
        return MinimiserState(
            workspace=make_workspace(self.structure, problem),
            qp=init_state(problem, y, jnp.asarray(lam_x0), jnp.asarray(lam_a0)),
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: MinimiserState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], MinimiserState, Any]:
        """Perform one active-set iteration.

        Fatal conditions are raised at runtime with ``equinox.error_if``.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        problem: QPProblem = args
        new_state = active_set_iteration(
            self.structure, problem, state.workspace, state.qp
        )

        y_new = eqx.error_if(
            new_state.x,
            new_state.result == SolverResult.SINGULAR_KKT,
            "KKT matrix is singular for the current active set",
        )
        y_new = eqx.error_if(
            y_new,
            new_state.result == SolverResult.INVALID_STEP,
            "Ratio test produced a step length outside [0, 1]",
        )
        _, aux = fn(y_new, args)
        return y_new, eqx.tree_at(lambda s: s.qp, state, new_state), aux

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: MinimiserState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Stop after a full unblocked step or when the budget is exhausted.

        Returns:
            Tuple of (done, result).
        """
        qp = state.qp
        converged = qp.result == SolverResult.SUCCESS
        max_iters_reached = qp.iteration >= self.max_iter
        done = qp.done | max_iters_reached

        result = jax.lax.cond(
            converged,
            lambda: optx.RESULTS.successful,
            lambda: jax.lax.cond(
                max_iters_reached,
                lambda: optx.RESULTS.max_steps_reached,
                lambda: optx.RESULTS.successful,  # Still running
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: MinimiserState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Expose the multipliers and the active set as statistics.

        Returns:
            Tuple of (y, aux, stats).
        """
        qp = state.qp
        stats = {
            "num_steps": qp.iteration,
            "final_objective": qp.f_val,
            "lam_x": qp.lam_x,
            "lam_a": qp.lam_a,
            "status_x": qp.status_x,
            "status_a": qp.status_a,
        }

        return y, aux, stats
