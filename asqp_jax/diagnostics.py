"""Karush-Kuhn-Tucker diagnostics for solutions of the QP.

With the multiplier convention of the solver, a point is optimal when

    H x + g + A^T lam_a + lam_x = 0
    lbx <= x <= ubx,  lba <= A x <= uba
    lam <= 0 where only the lower bound can be active, lam >= 0 for upper
    lam = 0 away from the bounds
"""

from typing import Any

import numpy as np

from asqp_jax.problem import QPProblem


def _bound_complementarity(
    value: np.ndarray, lb: np.ndarray, ub: np.ndarray, lam: np.ndarray
) -> tuple[float, float]:
    # Negative multipliers pair with the lower bound, positive ones with the upper
    lower_gap = np.where(np.isfinite(lb), value - lb, 0.0)
    upper_gap = np.where(np.isfinite(ub), ub - value, 0.0)
    lam_lower = np.minimum(lam, 0.0)
    lam_upper = np.maximum(lam, 0.0)

    # A multiplier pushing against a missing bound is a sign violation
    dual_sign = np.concatenate(
        [
            np.abs(np.where(np.isfinite(lb), 0.0, lam_lower)),
            np.abs(np.where(np.isfinite(ub), 0.0, lam_upper)),
        ]
    )
    complementary = np.concatenate(
        [
            np.abs(lower_gap * lam_lower),
            np.abs(upper_gap * lam_upper),
        ]
    )
    dual = float(dual_sign.max(initial=0.0))
    comp = float(complementary.max(initial=0.0))
    return dual, comp


def kkt_residuals(
    problem: QPProblem,
    x: Any,
    lam_x: Any,
    lam_a: Any,
) -> dict[str, float]:
    """Compute infinity norms of the KKT residuals of a primal-dual point.

    Args:
        problem: The QP.
        x: Primal point.
        lam_x: Bound multipliers.
        lam_a: Constraint multipliers.

    Returns:
        Dictionary with ``stationarity``, ``primal``, ``dual_sign`` and
        ``complementarity`` residuals.
    """
    H = np.asarray(problem.H, dtype=float)
    A = np.asarray(problem.A, dtype=float)
    g = np.asarray(problem.g, dtype=float)
    x = np.asarray(x, dtype=float).reshape(-1)
    lam_x = np.asarray(lam_x, dtype=float).reshape(-1)
    lam_a = np.asarray(lam_a, dtype=float).reshape(-1)
    lbx, ubx = np.asarray(problem.lbx), np.asarray(problem.ubx)
    lba, uba = np.asarray(problem.lba), np.asarray(problem.uba)

    g_eval = A @ x
    stationarity = H @ x + g + A.T @ lam_a + lam_x

    violation = np.concatenate(
        [
            np.maximum(lbx - x, 0.0),
            np.maximum(x - ubx, 0.0),
            np.maximum(lba - g_eval, 0.0),
            np.maximum(g_eval - uba, 0.0),
        ]
    )

    dual_x, comp_x = _bound_complementarity(x, lbx, ubx, lam_x)
    dual_a, comp_a = _bound_complementarity(g_eval, lba, uba, lam_a)

    return {
        "stationarity": float(np.linalg.norm(stationarity, ord=np.inf)),
        "primal": float(violation.max(initial=0.0)),
        "dual_sign": max(dual_x, dual_a),
        "complementarity": max(comp_x, comp_a),
    }


def is_kkt_optimal(
    problem: QPProblem,
    x: Any,
    lam_x: Any,
    lam_a: Any,
    tol: float = 1e-6,
) -> bool:
    """Return True when every KKT residual is below ``tol``."""
    residuals = kkt_residuals(problem, x, lam_x, lam_a)
    return all(value <= tol for value in residuals.values())
