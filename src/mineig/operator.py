"""Matrix-free evaluation of the certificate operator Q - Lambda."""

from __future__ import annotations

from functools import partial
import logging
from typing import Any, Callable

import numpy as np

from .multipliers import as_lambda_blocks, lambda_product
from .problem import ProblemData, check_operand

logger = logging.getLogger(__name__)

Operator = Callable[[np.ndarray], np.ndarray]


class OperatorEvaluator:
    """Evaluates ``(Q - Lambda) @ x`` without materializing either matrix.

    With ``use_factorization`` the problem-data factorization is acquired when
    the evaluator is entered as a context manager and released on exit, so it
    is reused across all products of one certification call and never cached
    beyond it. Products taken outside the context use the direct multiply.
    """

    def __init__(self, Lambda: Any, problem_data: ProblemData, use_factorization: bool = True) -> None:
        if not isinstance(problem_data, ProblemData):
            raise TypeError("problem_data must be a ProblemData instance.")
        self.problem_data = problem_data
        self.Lambda = as_lambda_blocks(Lambda, problem_data.n, problem_data.d)
        self.use_factorization = bool(use_factorization)
        self.matvecs = 0
        self._factor: Any | None = None

    @property
    def dim(self) -> int:
        return self.problem_data.dim

    def __enter__(self) -> "OperatorEvaluator":
        if self.use_factorization:
            self._factor = self.problem_data.factorize()
            if self._factor is None:
                logger.debug("%s has nothing to factor; using direct products.", type(self.problem_data).__name__)
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._factor = None

    def apply(self, x: np.ndarray) -> np.ndarray:
        x = check_operand(x, self.dim)
        self.matvecs += 1 if x.ndim == 1 else x.shape[1]
        return self.problem_data.apply_Q(x, factor=self._factor) - lambda_product(self.Lambda, x)

    __call__ = apply

    def apply_shifted(self, x: np.ndarray, shift: float) -> np.ndarray:
        x = check_operand(x, self.dim)
        return self.apply(x) - float(shift) * x

    def shifted(self, shift: float) -> Operator:
        """Return ``x -> (Q - Lambda - shift * I) @ x``."""
        return partial(self.apply_shifted, shift=float(shift))

    def to_dense(self) -> np.ndarray:
        """Materialize the operator as a dense symmetric matrix (small problems only)."""
        M = self.apply(np.eye(self.dim))
        return 0.5 * (M + M.T)


__all__ = ["Operator", "OperatorEvaluator"]
