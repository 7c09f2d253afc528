"""Synthetic pose-graph synchronization instances."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.linalg import expm

from .problem import RelativeMeasurements, SyncProblemData


def random_rotation(d: int, rng: np.random.Generator) -> np.ndarray:
    """Haar-distributed rotation in SO(d)."""
    Q, R = np.linalg.qr(rng.standard_normal((d, d)))
    Q = Q * np.sign(np.diag(R))
    if np.linalg.det(Q) < 0:
        Q[:, 0] = -Q[:, 0]
    return Q


def _rotation_noise(d: int, sigma: float, rng: np.random.Generator) -> np.ndarray:
    if sigma <= 0.0:
        return np.eye(d)
    S = rng.normal(scale=sigma, size=(d, d))
    return expm(0.5 * (S - S.T))


@dataclass
class SyncInstance:
    measurements: RelativeMeasurements
    rotations: np.ndarray
    translations: np.ndarray

    @property
    def n(self) -> int:
        return int(self.rotations.shape[0])

    @property
    def d(self) -> int:
        return int(self.rotations.shape[1])

    @property
    def problem(self) -> SyncProblemData:
        return SyncProblemData(self.measurements, num_poses=self.n)

    def rotation_matrix(self) -> np.ndarray:
        """Ground-truth rotations as the ``(d, n*d)`` matrix ``[R_1, ..., R_n]``."""
        return self.rotations.transpose(1, 0, 2).reshape(self.d, self.n * self.d)


def generate_sync_problem(
    n: int = 10,
    d: int = 3,
    loop_closure_prob: float = 0.2,
    rotation_noise: float = 0.0,
    translation_noise: float = 0.0,
    kappa: float = 1.0,
    tau: float = 1.0,
    with_translations: bool = True,
    seed: int = 0,
) -> SyncInstance:
    """Odometry chain plus random loop closures with noisy relative poses.

    Measurements follow ``R_j = R_i R_ij`` and ``t_j = t_i + R_i t_ij``; with
    zero noise the ground truth is an exact minimizer.
    """
    if n < 2:
        raise ValueError("n must be at least 2.")
    if d < 1:
        raise ValueError("d must be positive.")
    if not (0.0 <= loop_closure_prob <= 1.0):
        raise ValueError("loop_closure_prob must be in [0, 1].")
    if rotation_noise < 0.0 or translation_noise < 0.0:
        raise ValueError("noise levels must be nonnegative.")

    rng = np.random.default_rng(seed)
    rotations = np.stack([random_rotation(d, rng) for _ in range(n)], axis=0)
    translations = 3.0 * rng.standard_normal((n, d))

    edges = [(i, i + 1) for i in range(n - 1)]
    for i in range(n):
        for j in range(i + 2, n):
            if rng.uniform() < loop_closure_prob:
                edges.append((i, j))
    edge_arr = np.asarray(edges, dtype=int)

    R_meas = []
    t_meas = []
    for i, j in edges:
        Ri = rotations[i]
        R_meas.append(Ri.T @ rotations[j] @ _rotation_noise(d, rotation_noise, rng))
        t_meas.append(Ri.T @ (translations[j] - translations[i]) + translation_noise * rng.standard_normal(d))

    m = len(edges)
    measurements = RelativeMeasurements(
        edges=edge_arr,
        R=np.stack(R_meas, axis=0),
        kappa=np.full(m, float(kappa)),
        t=np.stack(t_meas, axis=0) if with_translations else None,
        tau=np.full(m, float(tau)) if with_translations else None,
    )
    return SyncInstance(measurements=measurements, rotations=rotations, translations=translations)


__all__ = [
    "SyncInstance",
    "generate_sync_problem",
    "random_rotation",
]
