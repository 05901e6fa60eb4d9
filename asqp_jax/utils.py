from typing import Any, Optional

import numpy as np


def densify(value: Any, dtype: Optional[type] = float) -> np.ndarray:
    """Convert array-likes and scipy sparse matrices to a dense NumPy array."""
    if hasattr(value, "toarray"):
        value = value.toarray()
    return np.asarray(value, dtype=dtype)


def format_status(status: np.ndarray) -> str:
    """Render an active-set status vector as ``-``, ``0`` and ``+`` marks."""
    marks = {-1: "-", 0: "0", 1: "+"}
    return ", ".join(marks[int(s)] for s in np.asarray(status))
