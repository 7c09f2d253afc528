"""Extremal-eigenpair solvers for operators available only through products.

Every backend has the signature ``solver(op, dim, which, config) -> EigenPair``
and only computes the largest-magnitude eigenpair.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Dict, Optional

import numpy as np
from scipy.sparse.linalg import ArpackNoConvergence, LinearOperator, eigsh
import torch

logger = logging.getLogger(__name__)

Operator = Callable[[np.ndarray], np.ndarray]

EPS = float(np.finfo(float).eps)
POWER_DEFAULT_MAX_ITERS = 1000
ARPACK_FALLBACK_STEPS = 20


@dataclass
class SolverConfig:
    """Options forwarded to an extremal eigensolver.

    ``max_iters=None`` leaves the iteration cap to the backend.
    """

    tol: float = EPS
    max_iters: Optional[int] = None
    v0: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.tol = float(self.tol)
        if not (self.tol > 0.0 and np.isfinite(self.tol)):
            raise ValueError("tol must be a positive finite number.")
        if self.max_iters is not None:
            self.max_iters = int(self.max_iters)
            if self.max_iters < 1:
                raise ValueError("max_iters must be a positive integer or None.")
        if self.v0 is not None:
            self.v0 = np.asarray(self.v0, dtype=float).reshape(-1)


@dataclass
class EigenPair:
    value: float
    vector: np.ndarray
    converged: bool
    matvecs: int = 0


ExtremalEigSolver = Callable[[Operator, int, str, SolverConfig], EigenPair]


def _check_which(which: str) -> None:
    if str(which).strip().upper() not in {"LM", "LARGEST_MAGNITUDE"}:
        raise ValueError("Only the largest-magnitude eigenpair ('LM') is supported.")


def _check_start(v0: np.ndarray, dim: int) -> np.ndarray:
    if v0.shape != (dim,):
        raise ValueError(f"v0 must have shape ({dim},), got {v0.shape}.")
    norm = float(np.linalg.norm(v0))
    if norm == 0.0 or not np.isfinite(norm):
        raise ValueError("v0 must be a nonzero finite vector.")
    return v0 / norm


def lanczos_ritz_pair(op: Operator, dim: int, start: np.ndarray, steps: int) -> tuple[float, np.ndarray]:
    """Largest-magnitude Ritz pair of ``op`` on a Krylov space grown from ``start``.

    Runs at most ``steps`` Lanczos steps with full reorthogonalization and
    stops early on breakdown, when the space is invariant.
    """
    steps = max(1, min(int(steps), dim))
    V = np.zeros((dim, steps))
    AV = np.zeros((dim, steps))
    V[:, 0] = start / np.linalg.norm(start)
    k = 0
    for k in range(steps):
        AV[:, k] = op(V[:, k])
        if k + 1 == steps:
            break
        w = AV[:, k].copy()
        # Two Gram-Schmidt passes keep the basis orthonormal in floating point.
        for _ in range(2):
            w -= V[:, : k + 1] @ (V[:, : k + 1].T @ w)
        beta = float(np.linalg.norm(w))
        if beta <= EPS * max(float(np.linalg.norm(AV[:, k])), 1.0) * np.sqrt(dim):
            break
        V[:, k + 1] = w / beta
    V, AV = V[:, : k + 1], AV[:, : k + 1]
    H = V.T @ AV
    theta, S = np.linalg.eigh(0.5 * (H + H.T))
    idx = int(np.argmax(np.abs(theta)))
    x = V @ S[:, idx]
    return float(theta[idx]), x / np.linalg.norm(x)


def arpack_extremal_eig(
    op: Operator, dim: int, which: str = "LM", config: SolverConfig | None = None
) -> EigenPair:
    """Implicitly restarted Lanczos via ARPACK (``scipy.sparse.linalg.eigsh``).

    ``eigsh`` needs ``k < dim - 1``, so operators with fewer than three rows
    go to :func:`dense_extremal_eig`.
    """
    _check_which(which)
    config = config or SolverConfig()
    v0 = None if config.v0 is None else _check_start(config.v0, dim)
    if dim < 3:
        return dense_extremal_eig(op, dim, which, config)

    count = 0

    def matvec(x: np.ndarray) -> np.ndarray:
        nonlocal count
        count += 1
        return op(np.asarray(x, dtype=float).reshape(-1))

    linop = LinearOperator((dim, dim), matvec=matvec, dtype=float)
    try:
        vals, vecs = eigsh(linop, k=1, which="LM", tol=config.tol, maxiter=config.max_iters, v0=v0)
    except ArpackNoConvergence as exc:
        logger.debug("ARPACK stopped after %d products with %d converged Ritz pairs.", count, exc.eigenvalues.size)
        if exc.eigenvalues.size > 0:
            idx = int(np.argmax(np.abs(exc.eigenvalues)))
            return EigenPair(float(exc.eigenvalues[idx]), np.array(exc.eigenvectors[:, idx]), False, count)
        # eigsh does not hand back its Krylov basis, so rebuild one of ARPACK's default size.
        start = v0 if v0 is not None else np.random.default_rng(0).standard_normal(dim)
        value, vector = lanczos_ritz_pair(matvec, dim, start, ARPACK_FALLBACK_STEPS)
        return EigenPair(value, vector, False, count)
    return EigenPair(float(vals[0]), np.array(vecs[:, 0]), True, count)


def power_extremal_eig(
    op: Operator,
    dim: int,
    which: str = "LM",
    config: SolverConfig | None = None,
    *,
    seed: int | None = 0,
) -> EigenPair:
    """Power iteration in float64 torch tensors.

    Stops once ``||A v - lam v|| <= tol * |lam|``. Without ``config.v0`` the
    start vector is drawn from a generator seeded with ``seed``.
    """
    _check_which(which)
    config = config or SolverConfig()
    max_iters = config.max_iters if config.max_iters is not None else POWER_DEFAULT_MAX_ITERS

    if config.v0 is not None:
        v = torch.as_tensor(_check_start(config.v0, dim).copy(), dtype=torch.float64)
    else:
        g = torch.Generator()
        if seed is not None:
            g.manual_seed(int(seed))
        v = torch.randn(dim, generator=g, dtype=torch.float64)
        v = v / v.norm()

    def matvec(t: torch.Tensor) -> torch.Tensor:
        return torch.as_tensor(np.asarray(op(t.numpy()), dtype=float), dtype=torch.float64)

    count = 0
    for _ in range(max_iters):
        w = matvec(v)
        count += 1
        value = float(torch.dot(v, w))
        residual = float(torch.linalg.norm(w - value * v))
        if residual <= config.tol * abs(value):
            return EigenPair(value, v.numpy().copy(), True, count)
        v = w / w.norm()

    w = matvec(v)
    count += 1
    return EigenPair(float(torch.dot(v, w)), v.numpy().copy(), False, count)


def dense_extremal_eig(
    op: Operator, dim: int, which: str = "LM", config: SolverConfig | None = None
) -> EigenPair:
    """Materialize the operator and diagonalize it (small problems only)."""
    _check_which(which)
    M = np.column_stack([op(e) for e in np.eye(dim)])
    vals, vecs = np.linalg.eigh(0.5 * (M + M.T))
    idx = int(np.argmax(np.abs(vals)))
    return EigenPair(float(vals[idx]), vecs[:, idx], True, dim)


EIGENSOLVERS: Dict[str, ExtremalEigSolver] = {
    "arpack": arpack_extremal_eig,
    "power": power_extremal_eig,
    "dense": dense_extremal_eig,
}


def normalize_eigensolver(name: str) -> str:
    return str(name).strip().lower()


def get_eigensolver(solver: str | ExtremalEigSolver) -> ExtremalEigSolver:
    """Resolve a backend name (or pass a callable through unchanged)."""
    if callable(solver):
        return solver
    key = normalize_eigensolver(solver)
    if key not in EIGENSOLVERS:
        raise ValueError(f"eigensolver must be one of {sorted(EIGENSOLVERS)} or a callable, got {solver!r}.")
    return EIGENSOLVERS[key]


__all__ = [
    "EIGENSOLVERS",
    "EPS",
    "EigenPair",
    "ExtremalEigSolver",
    "SolverConfig",
    "arpack_extremal_eig",
    "dense_extremal_eig",
    "get_eigensolver",
    "lanczos_ritz_pair",
    "normalize_eigensolver",
    "power_extremal_eig",
]
