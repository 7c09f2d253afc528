"""Matrix-free minimum-eigenvalue certification for low-rank relaxations.

The stable top-level API is the certifier plus the problem-data and operator
helpers it consumes. Solver backends and synthetic data generators remain
available from their submodules (``mineig.eigensolvers``, ``mineig.data``).
"""

from .certify import MinEigCertifier, MinEigResult, certify
from .eigensolvers import EigenPair, SolverConfig, get_eigensolver
from .multipliers import as_lambda_blocks, compute_lambda_blocks, lambda_product
from .operator import OperatorEvaluator
from .problem import DimensionMismatch, MatrixProblemData, ProblemData, RelativeMeasurements, SyncProblemData

__all__ = [
    "DimensionMismatch",
    "EigenPair",
    "MatrixProblemData",
    "MinEigCertifier",
    "MinEigResult",
    "OperatorEvaluator",
    "ProblemData",
    "RelativeMeasurements",
    "SolverConfig",
    "SyncProblemData",
    "as_lambda_blocks",
    "certify",
    "compute_lambda_blocks",
    "get_eigensolver",
    "lambda_product",
]
