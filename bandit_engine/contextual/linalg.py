"""Dense linear solve by Gaussian elimination with partial pivoting."""
from __future__ import annotations

import numpy as np

PIVOT_EPS = 1e-12


def solve(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve ``a @ x = b``. Inputs are copied and never modified.

    Raises ``numpy.linalg.LinAlgError`` when a pivot collapses below ``PIVOT_EPS``.
    """
    m = np.array(a, dtype=float, copy=True)
    y = np.array(b, dtype=float, copy=True)
    n = m.shape[0]
    if m.shape != (n, n) or y.shape != (n,):
        raise ValueError(f"shape mismatch: A{m.shape} b{y.shape}")

    for col in range(n):
        pivot = col + int(np.argmax(np.abs(m[col:, col])))
        if abs(m[pivot, col]) < PIVOT_EPS:
            raise np.linalg.LinAlgError(f"singular matrix at column {col}")
        if pivot != col:
            m[[col, pivot]] = m[[pivot, col]]
            y[[col, pivot]] = y[[pivot, col]]
        factors = m[col + 1 :, col] / m[col, col]
        m[col + 1 :, col:] -= np.outer(factors, m[col, col:])
        y[col + 1 :] -= factors * y[col]

    x = np.zeros(n, dtype=float)
    for row in range(n - 1, -1, -1):
        x[row] = (y[row] - m[row, row + 1 :] @ x[row + 1 :]) / m[row, row]
    return x
