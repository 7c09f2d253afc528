"""Minimum-eigenpair certification of Q - Lambda.

Krylov solvers converge most reliably to largest-magnitude eigenvalues, so
the algebraically smallest eigenpair is recovered in two phases:

1. Compute the largest-magnitude eigenpair (lam_lm, v_lm) of A = Q - Lambda.
   If lam_lm < 0 it is also the minimum eigenvalue and is returned directly.
2. Otherwise lam_lm is the maximum eigenvalue, and the spectrum of
   A - 2 * lam_lm * I lies in [lam_min - 2 * lam_lm, -lam_lm]. Its
   largest-magnitude eigenpair is (lam_min - 2 * lam_lm, v_min), and the
   condition number of that mode is at most 2.

When lam_lm is close to zero the shift is tiny and phase 2 behaves like phase
1; this is a precision limit of the method and is not special-cased.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Iterator, Optional
import warnings

import numpy as np

from .eigensolvers import EPS, EigenPair, ExtremalEigSolver, SolverConfig, get_eigensolver
from .operator import OperatorEvaluator
from .problem import DimensionMismatch, ProblemData

logger = logging.getLogger(__name__)

RELATIVE_PERTURBATION = 0.03
NONCONVERGENCE_MESSAGE = "Minimum eigenvalue computation did not converge within the desired tolerance!"


@dataclass
class MinEigResult:
    """Minimum eigenpair of Q - Lambda plus diagnostics of how it was found."""

    lambda_min: float
    v_min: np.ndarray
    converged: bool
    lambda_lm: float
    shifted: bool
    solver_calls: int
    matvecs: int = 0

    def __iter__(self) -> Iterator[Any]:
        return iter((self.lambda_min, self.v_min, self.converged))

    def is_certified(self, tol: float = 0.0) -> bool:
        """``True`` when the solve converged and lambda_min >= -tol.

        An unconverged estimate never certifies Q - Lambda as PSD.
        """
        if tol < 0.0:
            raise ValueError("tol must be nonnegative.")
        return bool(self.converged and self.lambda_min >= -float(tol))


def _candidate_row(Yopt: Any, dim: int) -> np.ndarray:
    Y = np.asarray(Yopt, dtype=float)
    if Y.ndim == 1:
        Y = Y.reshape(1, -1)
    if Y.ndim != 2 or Y.shape[1] != dim:
        raise DimensionMismatch(f"Yopt must have {dim} columns, got shape {Y.shape}.")
    return Y[0].copy()


def _report(pair: EigenPair, phase: str) -> None:
    if pair.converged:
        return
    logger.warning("%s phase stopped after %d products (estimate %.6e).", phase, pair.matvecs, pair.value)
    warnings.warn(NONCONVERGENCE_MESSAGE, RuntimeWarning, stacklevel=3)


class MinEigCertifier:
    """Computes the algebraically smallest eigenpair of Q - Lambda.

    Args:
        eigensolver: backend name (``"arpack"``, ``"power"``, ``"dense"``) or
            a callable ``(op, dim, which, config) -> EigenPair``.
        relative_perturbation: size of the random perturbation added to the
            warm start, before scaling by ``1 / sqrt(d)``.
        rng: seed or ``numpy.random.Generator`` for that perturbation.
    """

    def __init__(
        self,
        eigensolver: str | ExtremalEigSolver = "arpack",
        relative_perturbation: float = RELATIVE_PERTURBATION,
        rng: Any = None,
    ) -> None:
        if relative_perturbation < 0.0:
            raise ValueError("relative_perturbation must be nonnegative.")
        self.eigensolver = get_eigensolver(eigensolver)
        self.relative_perturbation = float(relative_perturbation)
        self.rng = np.random.default_rng(rng)

    def warm_start(self, row: np.ndarray, d: int) -> np.ndarray:
        """Perturb a candidate row so the solver does not start on an exact null vector."""
        scale = self.relative_perturbation / np.sqrt(d)
        return row + scale * self.rng.standard_normal(row.shape[0])

    def certify(
        self,
        Lambda: Any,
        problem_data: ProblemData,
        Yopt: Any = None,
        tol: Optional[float] = None,
        max_iters: Optional[int] = None,
        use_factorization: bool = True,
    ) -> MinEigResult:
        dim = problem_data.dim
        config = SolverConfig(tol=EPS if tol is None else tol, max_iters=max_iters)
        row = None if Yopt is None else _candidate_row(Yopt, dim)

        with OperatorEvaluator(Lambda, problem_data, use_factorization=use_factorization) as evaluator:
            dominant = self.eigensolver(evaluator, dim, "LM", config)
            _report(dominant, "Largest-magnitude")
            logger.debug("Largest-magnitude eigenvalue of Q - Lambda: %.6e", dominant.value)

            if dominant.value < 0.0:
                return MinEigResult(
                    lambda_min=dominant.value,
                    v_min=dominant.vector,
                    converged=dominant.converged,
                    lambda_lm=dominant.value,
                    shifted=False,
                    solver_calls=1,
                    matvecs=evaluator.matvecs,
                )

            shift = 2.0 * dominant.value
            if row is not None:
                config = replace(config, v0=self.warm_start(row, problem_data.d))
            pair = self.eigensolver(evaluator.shifted(shift), dim, "LM", config)
            _report(pair, "Shifted")
            logger.debug("Shifted eigenvalue %.6e with shift %.6e", pair.value, shift)

            return MinEigResult(
                lambda_min=pair.value + shift,
                v_min=pair.vector,
                converged=pair.converged,
                lambda_lm=dominant.value,
                shifted=True,
                solver_calls=2,
                matvecs=evaluator.matvecs,
            )


def certify(
    Lambda: Any,
    problem_data: ProblemData,
    Yopt: Any = None,
    tol: Optional[float] = None,
    max_iters: Optional[int] = None,
    use_factorization: bool = True,
    eigensolver: str | ExtremalEigSolver = "arpack",
    rng: Any = None,
) -> MinEigResult:
    """Functional form of :meth:`MinEigCertifier.certify`."""
    certifier = MinEigCertifier(eigensolver=eigensolver, rng=rng)
    return certifier.certify(
        Lambda,
        problem_data,
        Yopt=Yopt,
        tol=tol,
        max_iters=max_iters,
        use_factorization=use_factorization,
    )


__all__ = [
    "MinEigCertifier",
    "MinEigResult",
    "NONCONVERGENCE_MESSAGE",
    "RELATIVE_PERTURBATION",
    "certify",
]
