import numpy as np
import pytest

from mineig.certify import MinEigCertifier, MinEigResult, certify
from mineig.data import generate_sync_problem
from mineig.eigensolvers import get_eigensolver
from mineig.multipliers import compute_lambda_blocks
from mineig.operator import OperatorEvaluator
from mineig.problem import DimensionMismatch, MatrixProblemData


class RecordingSolver:
    """Wraps a backend and records every (config, result) it produced."""

    def __init__(self, backend: str = "dense") -> None:
        self.backend = get_eigensolver(backend)
        self.calls = []

    def __call__(self, op, dim, which, config):
        pair = self.backend(op, dim, which, config)
        self.calls.append((config, pair))
        return pair


def diagonal_problem(q):
    return MatrixProblemData(np.diag(np.asarray(q, dtype=float)), d=1)


def diagonal_lambda(values):
    return np.asarray(values, dtype=float).reshape(-1, 1, 1)


def zero_lambda(problem):
    return np.zeros((problem.n, problem.d, problem.d))


def symmetric_with_spectrum(eigs, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    V, _ = np.linalg.qr(rng.standard_normal((len(eigs), len(eigs))))
    return (V * np.asarray(eigs, dtype=float)) @ V.T


@pytest.mark.parametrize("eigensolver", ["arpack", "dense"])
def test_shift_path_recovers_known_minimum(eigensolver):
    # Q - Lambda = diag(-3, -1, 0, 2, 5): the dominant mode is positive.
    problem = diagonal_problem([1.0, 2.0, 3.0, 4.0, 5.0])
    Lambda = diagonal_lambda([4.0, 3.0, 3.0, 2.0, 0.0])
    result = certify(Lambda, problem, eigensolver=eigensolver, rng=0)

    assert isinstance(result, MinEigResult)
    assert result.shifted
    assert result.solver_calls == 2
    assert result.converged
    assert result.lambda_lm == pytest.approx(5.0, abs=1e-8)
    assert result.lambda_min == pytest.approx(-3.0, abs=1e-8)
    assert abs(result.v_min[0]) == pytest.approx(1.0, abs=1e-8)
    assert not result.is_certified(1e-6)


@pytest.mark.parametrize("eigensolver", ["arpack", "dense"])
def test_negative_dominant_mode_is_returned_directly(eigensolver):
    problem = diagonal_problem([-3.0, -1.0, 0.0, 1.0, 2.0])
    result = certify(zero_lambda(problem), problem, eigensolver=eigensolver)

    assert not result.shifted
    assert result.solver_calls == 1
    assert result.lambda_min == pytest.approx(-3.0, abs=1e-8)
    assert result.lambda_lm == result.lambda_min
    assert abs(result.v_min[0]) == pytest.approx(1.0, abs=1e-8)


def test_fast_path_uses_exactly_one_solve_on_nsd_operator():
    solver = RecordingSolver("dense")
    problem = MatrixProblemData(symmetric_with_spectrum([-4.0, -2.5, -1.0, -0.5, 0.0, 0.0]), d=2)
    Yopt = np.ones((2, problem.dim))
    result = MinEigCertifier(eigensolver=solver, rng=0).certify(zero_lambda(problem), problem, Yopt=Yopt)

    assert len(solver.calls) == 1
    config, pair = solver.calls[0]
    assert config.v0 is None
    assert result.lambda_min == pair.value
    assert np.array_equal(result.v_min, pair.vector)


def test_shift_identity_holds():
    solver = RecordingSolver("dense")
    problem = MatrixProblemData(symmetric_with_spectrum(np.linspace(-2.0, 6.0, 12), seed=3), d=3)
    result = MinEigCertifier(eigensolver=solver).certify(zero_lambda(problem), problem)

    assert len(solver.calls) == 2
    lambda_lm = solver.calls[0][1].value
    shifted_value = solver.calls[1][1].value
    assert lambda_lm >= 0.0
    assert shifted_value + 2.0 * lambda_lm == pytest.approx(result.lambda_min)
    assert result.lambda_min == pytest.approx(-2.0, abs=1e-9)


def test_block_lambda_matches_dense_minimum():
    rng = np.random.default_rng(8)
    Q = symmetric_with_spectrum(np.linspace(0.0, 5.0, 12), seed=4)
    blocks = rng.standard_normal((4, 3, 3))
    blocks = 0.5 * (blocks + blocks.transpose(0, 2, 1))
    problem = MatrixProblemData(Q, d=3)
    expected = np.linalg.eigvalsh(OperatorEvaluator(blocks, problem).to_dense())[0]

    result = certify(blocks, problem, Yopt=rng.standard_normal((3, 12)), rng=1)
    assert result.converged
    assert result.lambda_min == pytest.approx(expected, abs=1e-8)


def test_warm_start_is_perturbed_candidate_row():
    solver = RecordingSolver("dense")
    problem = MatrixProblemData(symmetric_with_spectrum(np.linspace(-1.0, 3.0, 8), seed=5), d=2)
    Yopt = np.arange(16, dtype=float).reshape(2, 8)
    MinEigCertifier(eigensolver=solver, rng=np.random.default_rng(7)).certify(zero_lambda(problem), problem, Yopt=Yopt)

    noise = np.random.default_rng(7).standard_normal(8)
    config, _ = solver.calls[1]
    assert np.allclose(config.v0, Yopt[0] + (0.03 / np.sqrt(2)) * noise)
    assert np.array_equal(Yopt, np.arange(16, dtype=float).reshape(2, 8))


def test_perturbation_escapes_non_minimal_null_vector():
    # The candidate row is an exact eigenvector of Q - Lambda for eigenvalue 0,
    # while the true minimum is -2.
    problem = diagonal_problem([-2.0, 0.0, 0.5, 1.0, 4.0])
    Yopt = np.array([[0.0, 1.0, 0.0, 0.0, 0.0]])

    stuck = MinEigCertifier(eigensolver="power", relative_perturbation=0.0).certify(
        zero_lambda(problem), problem, Yopt=Yopt, tol=1e-10
    )
    assert stuck.converged
    assert stuck.lambda_min == pytest.approx(0.0, abs=1e-6)

    escaped = MinEigCertifier(eigensolver="power", rng=0).certify(zero_lambda(problem), problem, Yopt=Yopt, tol=1e-10)
    assert escaped.converged
    assert escaped.lambda_min == pytest.approx(-2.0, abs=1e-6)
    assert abs(escaped.v_min[0]) == pytest.approx(1.0, abs=1e-4)


@pytest.mark.parametrize("eigensolver", ["arpack", "power"])
def test_repeated_calls_are_reproducible(eigensolver):
    problem = MatrixProblemData(symmetric_with_spectrum(np.linspace(-1.5, 4.0, 10), seed=6), d=2)
    Yopt = np.random.default_rng(2).standard_normal((2, 10))
    results = [
        MinEigCertifier(eigensolver=eigensolver, rng=np.random.default_rng(11)).certify(
            zero_lambda(problem), problem, Yopt=Yopt, tol=1e-10
        )
        for _ in range(2)
    ]
    assert results[0].lambda_min == pytest.approx(results[1].lambda_min, abs=1e-8)
    assert results[0].lambda_min == pytest.approx(-1.5, abs=1e-6)


def test_nonconvergence_is_reported_not_raised():
    problem = diagonal_problem(np.linspace(-1.0, 3.0, 40))
    with pytest.warns(RuntimeWarning, match="did not converge"):
        result = certify(zero_lambda(problem), problem, max_iters=1, eigensolver="power")
    assert not result.converged
    assert np.isfinite(result.lambda_min)
    assert result.v_min.shape == (40,)
    assert np.all(np.isfinite(result.v_min))


def test_arpack_nonconvergence_is_reported_not_raised():
    problem = MatrixProblemData(np.diag(np.linspace(-1.0, 2.0, 400)), d=4)
    with pytest.warns(RuntimeWarning):
        lam, v, converged = certify(zero_lambda(problem), problem, Yopt=np.ones((4, 400)), max_iters=1, rng=0)
    assert not converged
    assert np.isfinite(lam)
    assert v.shape == (400,)


def test_unconverged_first_phase_keeps_negative_estimate_and_refuses_certification():
    # |-1| barely exceeds 0.99, so one ARPACK restart leaves the dominant mode unresolved.
    problem = diagonal_problem(np.concatenate([[-1.0], np.linspace(-0.9, 0.99, 399)]))
    with pytest.warns(RuntimeWarning, match="did not converge"):
        result = certify(zero_lambda(problem), problem, max_iters=1, rng=0)
    assert not result.converged
    assert not result.shifted
    assert result.lambda_min < 0.0
    assert result.lambda_min == pytest.approx(-1.0, abs=1e-2)
    assert not result.is_certified(1e-6)


def test_unconverged_result_is_never_certified():
    result = MinEigResult(lambda_min=0.5, v_min=np.ones(3), converged=False, lambda_lm=0.5, shifted=False, solver_calls=1)
    assert result.is_certified(1e-6) is False
    converged = MinEigResult(lambda_min=-1e-9, v_min=np.ones(3), converged=True, lambda_lm=2.0, shifted=True, solver_calls=2)
    assert converged.is_certified(1e-6)
    assert not converged.is_certified()


@pytest.mark.parametrize("value", [-2.0, 3.0])
def test_one_dimensional_operator(value):
    problem = MatrixProblemData(np.array([[value]]), d=1)
    result = certify(zero_lambda(problem), problem, Yopt=np.ones((1, 1)), rng=0)
    assert result.converged
    assert result.lambda_min == pytest.approx(value)
    assert result.shifted == (value >= 0.0)


def test_candidate_with_wrong_width_raises():
    problem = diagonal_problem([1.0, 2.0, 3.0])
    with pytest.raises(DimensionMismatch):
        certify(zero_lambda(problem), problem, Yopt=np.ones((1, 4)))


def test_certifier_argument_validation():
    with pytest.raises(ValueError):
        MinEigCertifier(relative_perturbation=-0.1)
    with pytest.raises(ValueError):
        MinEigCertifier(eigensolver="nope")
    problem = diagonal_problem([1.0, 2.0])
    with pytest.raises(ValueError):
        certify(zero_lambda(problem), problem, tol=-1.0)
    with pytest.raises(ValueError):
        certify(zero_lambda(problem), problem, max_iters=0)


def test_noiseless_synchronization_is_certified():
    instance = generate_sync_problem(n=8, d=3, loop_closure_prob=0.3, seed=21)
    problem = instance.problem
    Y = instance.rotation_matrix()
    Lambda = compute_lambda_blocks(Y, problem)

    result = certify(Lambda, problem, Yopt=Y, rng=0)
    assert result.converged
    assert result.shifted
    assert abs(result.lambda_min) < 1e-8
    assert result.is_certified(1e-6)


@pytest.mark.parametrize("use_factorization", [True, False])
def test_noisy_synchronization_matches_dense_spectrum(use_factorization):
    instance = generate_sync_problem(n=8, d=3, rotation_noise=0.3, translation_noise=0.5, seed=22)
    problem = instance.problem
    Y = instance.rotation_matrix()
    Lambda = compute_lambda_blocks(Y, problem)
    dense = OperatorEvaluator(Lambda, problem).to_dense()
    expected = np.linalg.eigvalsh(dense)[0]

    result = certify(Lambda, problem, Yopt=Y, use_factorization=use_factorization, rng=0)
    assert result.converged
    assert result.lambda_min == pytest.approx(expected, abs=1e-7)
    residual = dense @ result.v_min - result.lambda_min * result.v_min
    assert np.linalg.norm(residual) < 1e-5
