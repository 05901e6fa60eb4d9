"""Primal-dual active-set iteration for box- and range-constrained QPs.

Solves:
    minimize    (1/2) x^T H x + g^T x
    subject to  lbx <= x <= ubx
                lba <= A x <= uba

Each iteration:

1. Modifies the KKT matrix for the current active set
   (:func:`asqp_jax.kkt.apply_active_set`).
2. Refactorizes it numerically, reusing the symbolic QR from setup
   (:func:`asqp_jax.qr.factorize`).
3. Solves for the Newton step in the primal variables and the constraint
   multipliers, and derives the step in the bound multipliers and in A x.
4. Runs the ratio test for the largest step length ``tau`` in [0, 1]
   (:func:`asqp_jax.ratio_test.ratio_test`).
5. Takes the step and flips the status of the blocking entry, if any.

A full step with no blocking entry lands on a point satisfying the KKT
conditions for the current active set, with every inactive entry feasible
and every multiplier on its side, so the loop stops there. Otherwise it
stops when the iteration budget is exhausted or a fatal condition
(singular KKT matrix, step length outside [0, 1]) occurs. On a fatal
condition the step is not applied.

The whole loop runs inside ``jax.lax.while_loop`` with fixed-shape state,
so nothing is reallocated between iterations.
"""

from typing import NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from asqp_jax.active_set import apply_blocking, equality_status, initial_status
from asqp_jax.kkt import Workspace, apply_active_set, kkt_rhs, make_workspace
from asqp_jax.problem import QPProblem
from asqp_jax.qr import factorize, solve
from asqp_jax.ratio_test import RatioTestResult, ratio_test
from asqp_jax.sparsity import KKTStructure
from asqp_jax.types import BlockingKind, SolverResult
from asqp_jax.utils import format_status


class ActiveSetState(eqx.Module):
    """State of one in-flight active-set solve.

    Attributes:
        x: Primal iterate.
        g_eval: Constraint values A x.
        lam_x: Bound multipliers.
        lam_a: Constraint multipliers.
        status_x: Active-set status of the variables.
        status_a: Active-set status of the constraints.
        f_val: Objective value at x.
        tau: Step length of the last iteration.
        index: Blocking entry of the last iteration (-1 for a full step),
            or the offending entry after a fatal condition.
        kind: BlockingKind of the last blocking entry.
        iteration: Number of iterations performed.
        done: Whether the loop has terminated before the iteration limit.
        result: SolverResult code.
    """

    x: Float[Array, " n"]
    g_eval: Float[Array, " m"]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " m"]
    status_x: Int[Array, " n"]
    status_a: Int[Array, " m"]
    f_val: Float[Array, ""]
    tau: Float[Array, ""]
    index: Int[Array, ""]
    kind: Int[Array, ""]
    iteration: Int[Array, ""]
    done: Bool[Array, ""]
    result: Int[Array, ""]


class Step(NamedTuple):
    """Primal-dual Newton step.

    Attributes:
        dx: Step in the primal variables.
        dlam_a: Step in the constraint multipliers.
        dlam_x: Step in the bound multipliers.
        dg: Step in the constraint values, A dx.
    """

    dx: Float[Array, " n"]
    dlam_a: Float[Array, " m"]
    dlam_x: Float[Array, " n"]
    dg: Float[Array, " m"]


class QPResult(NamedTuple):
    """Result from the active-set QP solver."""

    x: Float[Array, " n"]
    f: Float[Array, ""]
    lam_x: Float[Array, " n"]
    lam_a: Float[Array, " m"]
    status_x: Int[Array, " n"]
    status_a: Int[Array, " m"]
    iterations: Int[Array, ""]
    result: Int[Array, ""]
    converged: Bool[Array, ""]
    index: Int[Array, ""]
    tau: Float[Array, ""]


def init_state(
    problem: QPProblem,
    x0: Float[Array, " n"],
    lam_x0: Float[Array, " n"],
    lam_a0: Float[Array, " m"],
) -> ActiveSetState:
    """Seed the iterate and the active set from an initial guess."""
    dtype = problem.g.dtype
    x = x0.astype(dtype)
    g_eval = problem.A @ x
    status_x, lam_x = initial_status(problem.lbx, problem.ubx, x, lam_x0.astype(dtype))
    status_a, lam_a = initial_status(
        problem.lba, problem.uba, g_eval, lam_a0.astype(dtype)
    )
    return ActiveSetState(
        x=x,
        g_eval=g_eval,
        lam_x=lam_x,
        lam_a=lam_a,
        status_x=status_x,
        status_a=status_a,
        f_val=problem.objective(x),
        tau=jnp.asarray(0.0, dtype=dtype),
        index=jnp.asarray(-1, dtype=jnp.int32),
        kind=jnp.asarray(BlockingKind.NONE, dtype=jnp.int32),
        iteration=jnp.asarray(0, dtype=jnp.int32),
        done=jnp.asarray(False),
        result=jnp.asarray(SolverResult.MAX_ITERATIONS, dtype=jnp.int32),
    )


def compute_step(
    problem: QPProblem,
    workspace: Workspace,
    state: ActiveSetState,
    z: Float[Array, " N"],
) -> Step:
    """Split the KKT solution and derive the multiplier and constraint steps.

    The bound multipliers of active variables move towards the value that
    restores stationarity after a full step,

        lam_x + dlam_x = -(H (x + dx) + g + A^T (lam_a + dlam_a)),

    so a warm-started magnitude is corrected along the step. Free variables
    keep a zero multiplier.
    """
    n = problem.n
    dx = z[:n]
    dlam_a = jnp.where(state.status_a != 0, z[n:], 0.0)
    grad_full = (
        problem.H @ (state.x + dx)
        + problem.g
        + workspace.AT @ (state.lam_a + dlam_a)
    )
    dlam_x = jnp.where(state.status_x != 0, -grad_full - state.lam_x, 0.0)
    dg = problem.A @ dx
    return Step(dx=dx, dlam_a=dlam_a, dlam_x=dlam_x, dg=dg)


def _print_bounds(problem: QPProblem) -> None:
    jax.debug.print("lbx: {}", problem.lbx, ordered=True)
    jax.debug.print("ubx: {}", problem.ubx, ordered=True)
    jax.debug.print("lba: {}", problem.lba, ordered=True)
    jax.debug.print("uba: {}", problem.uba, ordered=True)


def _print_iterate(state: ActiveSetState) -> None:
    def print_active_sets(status_x, status_a):
        print(f"Current active set (x): {format_status(status_x)}")
        print(f"Current active set (g): {format_status(status_a)}")

    jax.debug.print("Iteration: {}", state.iteration, ordered=True)
    jax.debug.print("Current x: {}", state.x, ordered=True)
    jax.debug.print("Current g: {}", state.g_eval, ordered=True)
    jax.debug.print("Current lam_x: {}", state.lam_x, ordered=True)
    jax.debug.print("Current lam_a: {}", state.lam_a, ordered=True)
    jax.debug.callback(
        print_active_sets, state.status_x, state.status_a, ordered=True
    )


def _print_decision(
    n: int,
    rhs: Float[Array, " N"],
    step: Step,
    rt: RatioTestResult,
    was_active: Bool[Array, " N"],
    f_val: Float[Array, ""],
    iteration: Int[Array, ""],
) -> None:
    def describe(tau, index, kind, candidates, was_active, f_val, iteration):
        index = int(index)
        affected = np.flatnonzero(candidates == tau).tolist() if index >= 0 else []
        print(f"Affected bounds: {affected}")
        print(f"tau: {float(tau):g}")
        if index < 0:
            print("Full step")
        else:
            name = f"x[{index}]" if index < n else f"g[{index - n}]"
            if was_active[index]:
                print(f"Bound removed for {name}")
            elif int(kind) == BlockingKind.PRIMAL_UPPER:
                print(f"Upper bound added for {name}")
            else:
                print(f"Lower bound added for {name}")
        print(f"Iteration {int(iteration)}: f={float(f_val):g}, tau={float(tau):g}")

    jax.debug.print("Residual: {}", -rhs, ordered=True)
    jax.debug.print("dx: {}", step.dx, ordered=True)
    jax.debug.print("dg: {}", step.dg, ordered=True)
    jax.debug.print("dlam_x: {}", step.dlam_x, ordered=True)
    jax.debug.print("dlam_a: {}", step.dlam_a, ordered=True)
    jax.debug.callback(
        describe,
        rt.tau,
        rt.index,
        rt.kind,
        rt.candidates,
        was_active,
        f_val,
        iteration,
        ordered=True,
    )


def active_set_iteration(
    structure: KKTStructure,
    problem: QPProblem,
    workspace: Workspace,
    state: ActiveSetState,
    verbose: bool = False,
) -> ActiveSetState:
    """Perform one primal-dual active-set iteration.

    Args:
        structure: Setup-phase KKT structure.
        problem: QP data.
        workspace: Numeric KKT matrix for this solve.
        state: Current state.
        verbose: Whether to print a trace of the iteration.

    Returns:
        The updated state. After a fatal condition the iterate is left
        unchanged, ``done`` is set and ``index`` holds the offending entry.
    """
    n = structure.n
    if verbose:
        _print_iterate(state)

    # Steps 1-2: modify and refactorize the KKT matrix
    kktd = apply_active_set(structure, workspace.kkt, state.status_x, state.status_a)
    factorization = factorize(structure, kktd)

    # Step 3: Newton step
    rhs = kkt_rhs(
        problem,
        workspace.AT,
        state.x,
        state.g_eval,
        state.lam_a,
        state.status_x,
        state.status_a,
    )
    z = solve(factorization, rhs)
    singular = factorization.singular | ~jnp.all(jnp.isfinite(z))
    step = compute_step(problem, workspace, state, z)

    # Step 4: ratio test
    rt = ratio_test(
        state.x,
        step.dx,
        problem.lbx,
        problem.ubx,
        state.status_x,
        state.lam_x,
        step.dlam_x,
        state.g_eval,
        step.dg,
        problem.lba,
        problem.uba,
        state.status_a,
        state.lam_a,
        step.dlam_a,
    )
    invalid = rt.invalid_index >= 0
    tau = rt.tau

    # Step 5: take the step and update the active set
    x = state.x + tau * step.dx
    lam_a = state.lam_a + tau * step.dlam_a
    lam_x = state.lam_x + tau * step.dlam_x

    N = structure.size
    blocking = jnp.arange(N) == rt.index
    blocking_x = blocking[:n]
    status_x, lam_x = apply_blocking(state.status_x, lam_x, blocking_x, rt.kind)
    status_a, lam_a = apply_blocking(state.status_a, lam_a, blocking[n:], rt.kind)

    # Snap the variable that hit its bound exactly onto it
    x = jnp.where(
        blocking_x & (rt.kind == BlockingKind.PRIMAL_UPPER),
        problem.ubx,
        jnp.where(blocking_x & (rt.kind == BlockingKind.PRIMAL_LOWER), problem.lbx, x),
    )
    status_x = equality_status(problem.lbx == problem.ubx, status_x, lam_x)
    status_a = equality_status(problem.lba == problem.uba, status_a, lam_a)

    g_eval = problem.A @ x
    f_val = problem.objective(x)
    converged = rt.index < 0

    if verbose:
        was_active = jnp.concatenate([state.status_x != 0, state.status_a != 0])
        _print_decision(n, rhs, step, rt, was_active, f_val, state.iteration)

    iteration = state.iteration + 1
    updated = ActiveSetState(
        x=x,
        g_eval=g_eval,
        lam_x=lam_x,
        lam_a=lam_a,
        status_x=status_x,
        status_a=status_a,
        f_val=f_val,
        tau=tau,
        index=rt.index,
        kind=rt.kind,
        iteration=iteration,
        done=converged,
        result=jnp.where(converged, SolverResult.SUCCESS, state.result).astype(
            jnp.int32
        ),
    )

    failed = singular | invalid
    failed_state = eqx.tree_at(
        lambda s: (s.tau, s.index, s.iteration, s.done, s.result),
        state,
        (
            jnp.where(
                singular, tau, rt.candidates[jnp.maximum(rt.invalid_index, 0)]
            ),
            jnp.where(singular, factorization.pivot, rt.invalid_index).astype(
                jnp.int32
            ),
            iteration,
            jnp.asarray(True),
            jnp.where(
                singular, SolverResult.SINGULAR_KKT, SolverResult.INVALID_STEP
            ).astype(jnp.int32),
        ),
    )
    return jax.tree_util.tree_map(
        lambda bad, good: jnp.where(failed, bad, good), failed_state, updated
    )


@jaxtyped(typechecker=beartype)
def solve_qp(
    structure: KKTStructure,
    problem: QPProblem,
    x0: Float[Array, " n"],
    lam_x0: Float[Array, " n"],
    lam_a0: Float[Array, " m"],
    max_iter: int = 1000,
    verbose: bool = False,
) -> QPResult:
    """Solve a box- and range-constrained QP with the active-set method.

    Args:
        structure: KKT structure from :func:`asqp_jax.sparsity.analyze_kkt`.
        problem: QP data.
        x0: Initial primal guess.
        lam_x0: Initial bound multipliers; their signs seed the active set.
        lam_a0: Initial constraint multipliers; their signs seed the active set.
        max_iter: Maximum active-set iterations.
        verbose: Whether to print a per-iteration trace.

    Returns:
        QPResult containing the solution, multipliers, final active set and
        termination info.
    """
    workspace = make_workspace(structure, problem)
    state = init_state(problem, x0, lam_x0, lam_a0)

    if verbose:
        _print_bounds(problem)

    def cond_fn(state: ActiveSetState) -> Bool[Array, ""]:
        return ~state.done & (state.iteration < max_iter)

    def body_fn(state: ActiveSetState) -> ActiveSetState:
        return active_set_iteration(structure, problem, workspace, state, verbose)

    final_state = jax.lax.while_loop(cond_fn, body_fn, state)

    return QPResult(
        x=final_state.x,
        f=final_state.f_val,
        lam_x=final_state.lam_x,
        lam_a=final_state.lam_a,
        status_x=final_state.status_x,
        status_a=final_state.status_a,
        iterations=final_state.iteration,
        result=final_state.result,
        converged=final_state.result == SolverResult.SUCCESS,
        index=final_state.index,
        tau=final_state.tau,
    )
