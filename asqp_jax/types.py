"""Type definitions for ASQP-JAX.

This module contains type aliases and the integer constants used to encode
active-set status, blocking events and solver termination inside traced code.
All array types use jaxtyping for runtime type checking with beartype.
"""

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]


class ActiveStatus:
    """Active-set status of a bound or constraint.

    The side of an active entry determines which bound it is held at and
    the sign its multiplier must keep: lower-active entries have
    non-positive multipliers, upper-active entries non-negative ones.
    """

    INACTIVE = 0
    LOWER = -1
    UPPER = 1


class BlockingKind:
    """Kind of event that limits the step length in the ratio test."""

    NONE = 0
    PRIMAL_UPPER = 1
    PRIMAL_LOWER = 2
    DUAL_SIGN_CHANGE = 3


# Result codes for solver termination
class SolverResult:
    """Constants for solver termination status."""

    SUCCESS = 0
    MAX_ITERATIONS = 1
    SINGULAR_KKT = 2
    INVALID_STEP = 3
