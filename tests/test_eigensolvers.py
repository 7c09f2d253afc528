import numpy as np
import pytest

from mineig.eigensolvers import (
    EPS,
    SolverConfig,
    arpack_extremal_eig,
    dense_extremal_eig,
    get_eigensolver,
    lanczos_ritz_pair,
    power_extremal_eig,
)


def symmetric_with_spectrum(eigs, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    V, _ = np.linalg.qr(rng.standard_normal((len(eigs), len(eigs))))
    return (V * np.asarray(eigs, dtype=float)) @ V.T


def matrix_op(M: np.ndarray):
    return lambda x: M @ x


def test_config_validation():
    assert SolverConfig().tol == EPS
    with pytest.raises(ValueError):
        SolverConfig(tol=0.0)
    with pytest.raises(ValueError):
        SolverConfig(tol=float("nan"))
    with pytest.raises(ValueError):
        SolverConfig(max_iters=0)
    assert SolverConfig(v0=[[1.0], [2.0]]).v0.shape == (2,)


@pytest.mark.parametrize("dominant", [7.0, -7.0])
def test_backends_find_largest_magnitude(dominant):
    eigs = np.linspace(-3.0, 3.0, 12)
    eigs[4] = dominant
    M = symmetric_with_spectrum(eigs, seed=1)
    config = SolverConfig(tol=1e-10)

    for solver in (arpack_extremal_eig, power_extremal_eig, dense_extremal_eig):
        pair = solver(matrix_op(M), 12, "LM", config)
        assert pair.converged
        assert abs(pair.value - dominant) < 1e-6
        assert np.linalg.norm(M @ pair.vector - pair.value * pair.vector) < 1e-4
        assert pair.matvecs > 0


def test_only_largest_magnitude_supported():
    M = np.diag([1.0, 2.0, 3.0])
    for solver in (arpack_extremal_eig, power_extremal_eig, dense_extremal_eig):
        with pytest.raises(ValueError):
            solver(matrix_op(M), 3, "SA", SolverConfig())
    pair = dense_extremal_eig(matrix_op(M), 3, "largest_magnitude", SolverConfig())
    assert pair.value == pytest.approx(3.0)


def test_power_iteration_is_deterministic_for_fixed_seed():
    M = symmetric_with_spectrum(np.linspace(-1.0, 4.0, 10), seed=2)
    a = power_extremal_eig(matrix_op(M), 10, "LM", SolverConfig(tol=1e-9), seed=3)
    b = power_extremal_eig(matrix_op(M), 10, "LM", SolverConfig(tol=1e-9), seed=3)
    assert a.value == b.value
    assert np.array_equal(a.vector, b.vector)


def test_power_iteration_reports_nonconvergence():
    M = symmetric_with_spectrum(np.linspace(-1.0, 4.0, 10), seed=2)
    pair = power_extremal_eig(matrix_op(M), 10, "LM", SolverConfig(max_iters=1))
    assert not pair.converged
    assert np.isfinite(pair.value)
    assert pair.vector.shape == (10,)
    assert pair.matvecs == 2


def test_arpack_reports_nonconvergence_without_raising():
    eigs = np.linspace(-1.0, 2.0, 400)
    pair = arpack_extremal_eig(lambda x: eigs * x, 400, "LM", SolverConfig(max_iters=1))
    assert not pair.converged
    assert np.isfinite(pair.value)
    assert pair.vector.shape == (400,)
    assert np.all(np.isfinite(pair.vector))


def nearly_split_spectrum() -> np.ndarray:
    # |-1| barely beats 0.99, so one ARPACK restart cannot resolve the dominant mode.
    return np.concatenate([[-1.0], np.linspace(-0.9, 0.99, 399)])


def test_arpack_unconverged_estimate_keeps_dominant_sign():
    eigs = nearly_split_spectrum()
    pair = arpack_extremal_eig(lambda x: eigs * x, eigs.size, "LM", SolverConfig(max_iters=1))
    assert not pair.converged
    assert pair.value == pytest.approx(-1.0, abs=1e-2)
    assert abs(pair.vector[0]) > 0.9
    assert np.linalg.norm(pair.vector) == pytest.approx(1.0)


def test_lanczos_ritz_pair_stops_on_invariant_subspace():
    eigs = np.array([5.0, 1.0, 1.0, 1.0, -2.0])
    start = np.array([1.0, 0.0, 0.0, 0.0, 1.0])
    value, vector = lanczos_ritz_pair(lambda x: eigs * x, 5, start, steps=5)
    assert value == pytest.approx(5.0)
    assert abs(vector[0]) == pytest.approx(1.0)


@pytest.mark.parametrize("dim", [1, 2])
def test_arpack_handles_tiny_operators(dim):
    M = np.diag([-2.0, 1.0][:dim])
    pair = arpack_extremal_eig(matrix_op(M), dim, "LM", SolverConfig())
    assert pair.converged
    assert pair.value == pytest.approx(-2.0)
    assert pair.vector.shape == (dim,)


def test_start_vector_is_validated():
    M = np.diag([1.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        arpack_extremal_eig(matrix_op(M), 3, "LM", SolverConfig(v0=np.zeros(3)))
    with pytest.raises(ValueError):
        power_extremal_eig(matrix_op(M), 3, "LM", SolverConfig(v0=np.ones(4)))


def test_get_eigensolver():
    assert get_eigensolver("ARPACK") is arpack_extremal_eig
    assert get_eigensolver(" power ") is power_extremal_eig
    custom = lambda op, dim, which, config: None  # noqa: E731
    assert get_eigensolver(custom) is custom
    with pytest.raises(ValueError):
        get_eigensolver("lobpcg")
