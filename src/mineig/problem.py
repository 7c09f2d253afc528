"""Problem data for the certification operator Q - Lambda."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional

import numpy as np
from scipy import sparse as sp_sparse
from scipy.sparse.csgraph import connected_components
from scipy.sparse.linalg import SuperLU, spsolve, splu

logger = logging.getLogger(__name__)

ArrayLike = np.ndarray


class DimensionMismatch(ValueError):
    """Raised when a vector does not match the operator dimension n*d."""


def _scale_rows(weights: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Multiply row i of ``X`` (vector or block of columns) by ``weights[i]``."""
    if X.ndim == 1:
        return weights * X
    return weights[:, None] * X


def check_operand(X: ArrayLike, dim: int, name: str = "x") -> np.ndarray:
    """Return ``X`` as a float array of shape ``(dim,)`` or ``(dim, k)``."""
    arr = np.asarray(X, dtype=float)
    if arr.ndim not in (1, 2) or arr.shape[0] != dim:
        raise DimensionMismatch(f"{name} must have shape ({dim},) or ({dim}, k), got {arr.shape}.")
    return arr


class ProblemData:
    """Exposes ``n``, ``d`` and products with the data matrix Q.

    Subclasses implement :meth:`apply_Q`. :meth:`factorize` returns an opaque
    factor that ``apply_Q`` may reuse; ``None`` means there is nothing to
    precompute.
    """

    n: int
    d: int

    @property
    def dim(self) -> int:
        """Operator dimension n*d."""
        return int(self.n * self.d)

    def factorize(self) -> Any | None:
        return None

    def apply_Q(self, X: ArrayLike, factor: Any | None = None) -> np.ndarray:
        raise NotImplementedError


class MatrixProblemData(ProblemData):
    """Problem data backed by an explicit symmetric matrix Q (dense or sparse)."""

    def __init__(self, Q: Any, d: int) -> None:
        if int(d) <= 0:
            raise ValueError("d must be positive.")
        if sp_sparse.issparse(Q):
            Q = sp_sparse.csr_matrix(Q, dtype=float)
        else:
            Q = np.asarray(Q, dtype=float)
            if Q.ndim != 2:
                raise ValueError(f"Q must be a square matrix, got shape {Q.shape}")
        if Q.shape[0] != Q.shape[1]:
            raise ValueError(f"Q must be a square matrix, got shape {Q.shape}")
        if Q.shape[0] % int(d) != 0:
            raise ValueError(f"Dimension of Q ({Q.shape[0]}) is not a multiple of d={d}.")
        self.Q = Q
        self.d = int(d)
        self.n = int(Q.shape[0] // self.d)

    def apply_Q(self, X: ArrayLike, factor: Any | None = None) -> np.ndarray:
        X = check_operand(X, self.dim)
        return np.asarray(self.Q @ X)


@dataclass(frozen=True)
class RelativeMeasurements:
    """Relative pose measurements ``x_j = x_i * (R_ij, t_ij)`` on a graph.

    ``edges`` holds zero-based ``(i, j)`` pairs. ``t`` and ``tau`` may be
    omitted together for rotation-only synchronization.
    """

    edges: ArrayLike
    R: ArrayLike
    kappa: ArrayLike
    t: Optional[ArrayLike] = None
    tau: Optional[ArrayLike] = None

    def __post_init__(self) -> None:
        edges = np.asarray(self.edges, dtype=int)
        if edges.ndim != 2 or edges.shape[1] != 2:
            raise ValueError(f"edges must have shape (m, 2), got {edges.shape}")
        m = edges.shape[0]
        if m == 0:
            raise ValueError("At least one measurement is required.")
        if np.any(edges < 0):
            raise ValueError("edges must use zero-based, nonnegative pose indices.")
        if np.any(edges[:, 0] == edges[:, 1]):
            raise ValueError("Self-loop measurements are not supported.")

        R = np.asarray(self.R, dtype=float)
        if R.ndim != 3 or R.shape[0] != m or R.shape[1] != R.shape[2]:
            raise ValueError(f"R must have shape (m, d, d) with m={m}, got {R.shape}")
        kappa = np.asarray(self.kappa, dtype=float).reshape(-1)
        if kappa.shape[0] != m:
            raise ValueError("Length of kappa must equal the number of measurements.")
        if np.any(kappa <= 0):
            raise ValueError("kappa must be positive.")

        if (self.t is None) != (self.tau is None):
            raise ValueError("t and tau must be given together.")
        t = tau = None
        if self.t is not None:
            t = np.asarray(self.t, dtype=float)
            if t.shape != (m, R.shape[1]):
                raise ValueError(f"t must have shape ({m}, {R.shape[1]}), got {t.shape}")
            tau = np.asarray(self.tau, dtype=float).reshape(-1)
            if tau.shape[0] != m:
                raise ValueError("Length of tau must equal the number of measurements.")
            if np.any(tau <= 0):
                raise ValueError("tau must be positive.")

        object.__setattr__(self, "edges", edges)
        object.__setattr__(self, "R", R)
        object.__setattr__(self, "kappa", kappa)
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "tau", tau)

    @property
    def d(self) -> int:
        return int(self.R.shape[1])

    @property
    def num_measurements(self) -> int:
        return int(self.edges.shape[0])

    @property
    def num_poses(self) -> int:
        return int(self.edges.max()) + 1

    @property
    def has_translations(self) -> bool:
        return self.t is not None


class SyncProblemData(ProblemData):
    """Data matrix Q = L(G^rho) + Q^tau of the SE(d) synchronization relaxation.

    The translational term is Q^tau = T' W^(1/2) Pi W^(1/2) T, where
    ``W = diag(tau)`` and ``Pi`` projects onto the kernel of
    ``A W^(1/2)`` for the reduced incidence matrix ``A``. Products with Pi
    need solves with the reduced Laplacian ``A W A'``: either a sparse solve
    per product or a sparse LU factor reused across products.
    """

    def __init__(self, measurements: RelativeMeasurements, num_poses: int | None = None) -> None:
        if not isinstance(measurements, RelativeMeasurements):
            raise TypeError("measurements must be a RelativeMeasurements instance.")
        n = measurements.num_poses if num_poses is None else int(num_poses)
        if n < measurements.num_poses:
            raise ValueError(f"num_poses={n} is smaller than the largest pose index in edges.")
        self.measurements = measurements
        self.n = int(n)
        self.d = measurements.d

        adjacency = sp_sparse.coo_matrix(
            (np.ones(measurements.num_measurements), (measurements.edges[:, 0], measurements.edges[:, 1])),
            shape=(self.n, self.n),
        )
        n_components, _ = connected_components(adjacency, directed=False)
        if n_components != 1:
            raise ValueError(f"Measurement graph must be connected, found {n_components} components.")

        self.L_rho = self._connection_laplacian()
        self.T: sp_sparse.csr_matrix | None = None
        self.A_red: sp_sparse.csr_matrix | None = None
        self.L_tau: sp_sparse.csc_matrix | None = None
        self._sqrt_tau: np.ndarray | None = None
        if measurements.has_translations:
            self._build_translational_terms()

    def _connection_laplacian(self) -> sp_sparse.csr_matrix:
        meas = self.measurements
        d = self.d
        src = meas.edges[:, 0]
        dst = meas.edges[:, 1]
        kappa = meas.kappa

        a_idx, b_idx = np.meshgrid(np.arange(d), np.arange(d), indexing="ij")
        off_rows = (src[:, None, None] * d + a_idx[None]).ravel()
        off_cols = (dst[:, None, None] * d + b_idx[None]).ravel()
        off_vals = (-kappa[:, None, None] * meas.R).ravel()

        diag = np.arange(d)
        diag_rows = np.concatenate([(src[:, None] * d + diag).ravel(), (dst[:, None] * d + diag).ravel()])
        diag_vals = np.concatenate([np.repeat(kappa, d), np.repeat(kappa, d)])

        rows = np.concatenate([off_rows, off_cols, diag_rows])
        cols = np.concatenate([off_cols, off_rows, diag_rows])
        vals = np.concatenate([off_vals, off_vals, diag_vals])
        return sp_sparse.coo_matrix((vals, (rows, cols)), shape=(self.dim, self.dim)).tocsr()

    def _build_translational_terms(self) -> None:
        meas = self.measurements
        d = self.d
        m = meas.num_measurements
        src = meas.edges[:, 0]
        dst = meas.edges[:, 1]

        t_rows = np.repeat(np.arange(m), d)
        t_cols = (src[:, None] * d + np.arange(d)).ravel()
        self.T = sp_sparse.coo_matrix((-meas.t.ravel(), (t_rows, t_cols)), shape=(m, self.dim)).tocsr()

        inc_rows = np.concatenate([src, dst])
        inc_cols = np.concatenate([np.arange(m), np.arange(m)])
        inc_vals = np.concatenate([-np.ones(m), np.ones(m)])
        incidence = sp_sparse.coo_matrix((inc_vals, (inc_rows, inc_cols)), shape=(self.n, m)).tocsr()
        # Dropping one row removes the translational gauge freedom.
        self.A_red = incidence[: self.n - 1, :]
        self.L_tau = (self.A_red @ sp_sparse.diags(meas.tau) @ self.A_red.T).tocsc()
        self._sqrt_tau = np.sqrt(meas.tau)

    def factorize(self) -> SuperLU | None:
        """Sparse LU factor of the reduced translational Laplacian ``A W A'``.

        The matrix is symmetric positive definite; SciPy has no sparse
        Cholesky, so a symmetric-ordering ``splu`` stands in for it.
        """
        if self.L_tau is None:
            return None
        logger.debug("Factoring reduced Laplacian of size %d (nnz=%d).", self.L_tau.shape[0], self.L_tau.nnz)
        return splu(self.L_tau, permc_spec="MMD_AT_PLUS_A")

    def _project(self, W: np.ndarray, factor: SuperLU | None) -> np.ndarray:
        rhs = self.A_red @ _scale_rows(self._sqrt_tau, W)
        if factor is not None:
            z = factor.solve(rhs)
        else:
            z = np.reshape(spsolve(self.L_tau, rhs), rhs.shape)
        return W - _scale_rows(self._sqrt_tau, self.A_red.T @ z)

    def apply_Q(self, X: ArrayLike, factor: Any | None = None) -> np.ndarray:
        """Evaluate Q @ X for X of shape ``(n*d,)`` or ``(n*d, k)``."""
        X = check_operand(X, self.dim)
        QX = np.asarray(self.L_rho @ X)
        if self.T is None:
            return QX
        W = _scale_rows(self._sqrt_tau, np.asarray(self.T @ X))
        PW = self._project(W, factor)
        return QX + np.asarray(self.T.T @ _scale_rows(self._sqrt_tau, PW))

    def to_dense(self) -> np.ndarray:
        """Materialize Q (small problems only)."""
        return self.apply_Q(np.eye(self.dim), factor=self.factorize())


__all__ = [
    "DimensionMismatch",
    "MatrixProblemData",
    "ProblemData",
    "RelativeMeasurements",
    "SyncProblemData",
    "check_operand",
]
