"""Block-diagonal Lagrange multipliers of the low-rank relaxation."""

from __future__ import annotations

from typing import Any

import numpy as np

from .problem import DimensionMismatch, ProblemData, check_operand


def symmetrize_blocks(blocks: np.ndarray) -> np.ndarray:
    return 0.5 * (blocks + blocks.transpose(0, 2, 1))


def as_lambda_blocks(Lambda: Any, n: int, d: int) -> np.ndarray:
    """Return Lambda as a symmetric ``(n, d, d)`` block array.

    Accepts either ``(n, d, d)`` blocks or the horizontal ``(d, n*d)`` layout
    ``[Lambda_1, ..., Lambda_n]``.
    """
    arr = np.asarray(Lambda, dtype=float)
    if arr.shape == (n, d, d):
        return symmetrize_blocks(arr)
    if arr.shape == (d, n * d):
        return symmetrize_blocks(arr.reshape(d, n, d).transpose(1, 0, 2))
    raise DimensionMismatch(f"Lambda must have shape ({n}, {d}, {d}) or ({d}, {n * d}), got {arr.shape}.")


def lambda_product(blocks: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Evaluate Lambda @ X for X of shape ``(n*d,)`` or ``(n*d, k)``."""
    n, d, _ = blocks.shape
    X = check_operand(X, n * d)
    if X.ndim == 1:
        return np.einsum("nij,nj->ni", blocks, X.reshape(n, d)).reshape(-1)
    k = X.shape[1]
    return np.einsum("nij,njk->nik", blocks, X.reshape(n, d, k)).reshape(n * d, k)


def compute_lambda_blocks(Y: Any, problem_data: ProblemData, use_factorization: bool = True) -> np.ndarray:
    """Lagrange multiplier of a critical point ``Y`` (shape ``(r, n*d)``).

    Block i is ``sym((Y Q)_i' Y_i)`` where ``_i`` selects the i-th group of
    ``d`` columns.
    """
    Y = np.asarray(Y, dtype=float)
    if Y.ndim == 1:
        Y = Y.reshape(1, -1)
    n, d = problem_data.n, problem_data.d
    if Y.ndim != 2 or Y.shape[1] != n * d:
        raise DimensionMismatch(f"Y must have {n * d} columns, got shape {Y.shape}.")
    factor = problem_data.factorize() if use_factorization else None
    YQ = problem_data.apply_Q(Y.T, factor=factor).T
    r = Y.shape[0]
    YQ_blocks = YQ.reshape(r, n, d).transpose(1, 0, 2)
    Y_blocks = Y.reshape(r, n, d).transpose(1, 0, 2)
    B = np.einsum("nri,nrj->nij", YQ_blocks, Y_blocks)
    return symmetrize_blocks(B)


__all__ = [
    "as_lambda_blocks",
    "compute_lambda_blocks",
    "lambda_product",
    "symmetrize_blocks",
]
