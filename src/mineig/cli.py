"""Command line entry point for minimum-eigenvalue certification."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Sequence

import numpy as np
from scipy.io import loadmat

from .certify import MinEigCertifier, MinEigResult
from .data import generate_sync_problem
from .eigensolvers import EIGENSOLVERS
from .multipliers import compute_lambda_blocks
from .problem import RelativeMeasurements, SyncProblemData


def _load_mat(path: str | Path) -> Dict[str, Any]:
    # simplify_cells turns MATLAB structs into nested dicts.
    raw = loadmat(str(path), simplify_cells=True)
    return {k: v for k, v in raw.items() if not str(k).startswith("__")}


def _lookup(data: Dict[str, Any], key: str) -> Any:
    """Resolve a dotted path such as ``meas.R`` through nested struct dicts."""
    cur: Any = data
    for part in str(key).split("."):
        if not isinstance(cur, dict) or part not in cur:
            raise KeyError(f"Missing key '{key}' in MAT data.")
        cur = cur[part]
    return cur


def _lookup_optional(data: Dict[str, Any], key: str | None) -> tuple[Any | None, bool]:
    if key is None:
        return None, False
    try:
        return _lookup(data, key), True
    except KeyError:
        return None, False


def _orient_edges(value: Any, layout: str, label: str) -> np.ndarray:
    """Return edges as ``(m, 2)`` from ``rows`` (m x 2) or ``columns`` (2 x m) storage."""
    arr = np.asarray(value)
    if arr.ndim == 1 and arr.size == 2:
        return arr.reshape(1, 2)
    if arr.ndim != 2 or 2 not in arr.shape:
        raise ValueError(f"{label} must have shape (m, 2) or (2, m). Got {arr.shape}.")
    if layout == "auto":
        if arr.shape == (2, 2):
            raise ValueError(f"{label} has shape (2, 2); pass an explicit edge layout ('rows' or 'columns').")
        layout = "rows" if arr.shape[1] == 2 else "columns"
    if layout == "rows" and arr.shape[1] == 2:
        return arr
    if layout == "columns" and arr.shape[0] == 2:
        return arr.T
    raise ValueError(f"{label} with shape {arr.shape} does not match edge layout '{layout}'.")


def _orient_rows(value: Any, count: int, width: int, label: str) -> np.ndarray:
    """Return a ``(count, width)`` array, transposing MATLAB column layouts."""
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 1 and width == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim == 1 and count == 1:
        arr = arr.reshape(1, -1)
    if arr.shape == (count, width):
        return arr
    if arr.shape == (width, count):
        return arr.T
    raise ValueError(f"{label} must have shape ({count}, {width}) or ({width}, {count}). Got {arr.shape}.")


def _as_rotation_stack(value: Any, count: int, label: str) -> np.ndarray:
    """Return rotations as ``(m, d, d)``, accepting MATLAB's ``d x d x m`` layout."""
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 2 and count == 1:
        arr = arr[None]
    if arr.ndim != 3:
        raise ValueError(f"{label} must be a 3D array of rotations. Got shape {arr.shape}.")
    if arr.shape[0] == count and arr.shape[1] == arr.shape[2]:
        return arr
    if arr.shape[2] == count and arr.shape[0] == arr.shape[1]:
        return arr.transpose(2, 0, 1)
    raise ValueError(f"{label} must hold {count} square rotations. Got shape {arr.shape}.")


def load_problem_from_mat(
    mat_path: str | Path,
    key_edges: str = "edges",
    key_R: str = "R",
    key_kappa: str = "kappa",
    key_t: str | None = "t",
    key_tau: str | None = "tau",
    index_base: int = 1,
    edge_layout: str = "auto",
) -> tuple[SyncProblemData, Dict[str, Any]]:
    """Load relative measurements from a MAT file into ``SyncProblemData``.

    ``edge_layout`` is ``"rows"`` (m x 2), ``"columns"`` (2 x m) or
    ``"auto"``, which infers it from the shape and rejects the ambiguous
    2 x 2 case. Returns the problem together with the raw MAT dictionary so
    callers can pull further keys (candidate ``Y``, ``Lambda``) from it.
    """
    if edge_layout not in {"auto", "rows", "columns"}:
        raise ValueError("edge_layout must be one of {'auto', 'rows', 'columns'}.")
    data = _load_mat(mat_path)
    edges = _orient_edges(_lookup(data, key_edges), edge_layout, key_edges).astype(int) - int(index_base)
    m = edges.shape[0]
    R = _as_rotation_stack(_lookup(data, key_R), m, key_R)
    kappa = np.asarray(_lookup(data, key_kappa), dtype=float).reshape(-1)

    t_raw, found_t = _lookup_optional(data, key_t)
    tau_raw, found_tau = _lookup_optional(data, key_tau)
    if found_t != found_tau:
        raise KeyError("Translations and their precisions must be provided together.")
    t = _orient_rows(t_raw, m, R.shape[1], key_t or "t") if found_t else None
    tau = np.asarray(tau_raw, dtype=float).reshape(-1) if found_tau else None

    measurements = RelativeMeasurements(edges=edges, R=R, kappa=kappa, t=t, tau=tau)
    return SyncProblemData(measurements), data


def _print_result(result: MinEigResult, cert_tol: float) -> None:
    print(f"lambda_min: {result.lambda_min:.6e}")
    print(f"lambda_lm: {result.lambda_lm:.6e}")
    print(f"converged: {result.converged}")
    print(f"solver_calls: {result.solver_calls}")
    print(f"matvecs: {result.matvecs}")
    print(f"certified (tol={cert_tol:g}): {result.is_certified(cert_tol)}")
    if not result.converged:
        print("[info] eigensolver did not converge; lambda_min is an estimate and is not certified.")


def _add_solver_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--eigensolver", choices=sorted(EIGENSOLVERS), default="arpack")
    p.add_argument("--tol", type=float, default=None, help="Relative eigensolver tolerance (default: machine eps).")
    p.add_argument("--max-iters", type=int, default=None, help="Eigensolver iteration cap (default: backend's own).")
    p.add_argument("--no-factorization", action="store_true", default=False, help="Use direct products with Q.")
    p.add_argument("--cert-tol", type=float, default=1e-6, help="Certify when lambda_min >= -cert_tol.")
    p.add_argument("--seed", type=int, default=0)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m mineig.cli", description="Minimum-eigenvalue certification CLI.")
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_demo = sub.add_parser("demo", help="Certify the ground truth of a synthetic synchronization problem.")
    p_demo.add_argument("--n", type=int, default=20)
    p_demo.add_argument("--d", type=int, default=3)
    p_demo.add_argument("--loop-closure-prob", type=float, default=0.2)
    p_demo.add_argument("--rotation-noise", type=float, default=0.0)
    p_demo.add_argument("--translation-noise", type=float, default=0.0)
    _add_solver_args(p_demo)
    p_demo.set_defaults(func=_cmd_demo)

    p_cert = sub.add_parser("certify", help="Certify a candidate stored in a MAT file.")
    p_cert.add_argument("--mat", required=True, type=str, help="Path to MAT file with measurements and candidate.")
    p_cert.add_argument("--key-edges", default="edges", type=str)
    p_cert.add_argument("--key-R", default="R", type=str)
    p_cert.add_argument("--key-kappa", default="kappa", type=str)
    p_cert.add_argument("--key-t", default="t", type=str)
    p_cert.add_argument("--key-tau", default="tau", type=str)
    p_cert.add_argument("--key-Y", default="Y", type=str, help="MAT key/path for the candidate (r x n*d).")
    p_cert.add_argument("--key-Lambda", default="Lambda", type=str, help="Optional MAT key/path for Lambda.")
    p_cert.add_argument("--index-base", type=int, choices=[0, 1], default=1, help="Index base of edges.")
    p_cert.add_argument(
        "--edge-layout",
        choices=["auto", "rows", "columns"],
        default="auto",
        help="Storage of edges: rows (m x 2) or columns (2 x m); auto infers it from the shape.",
    )
    _add_solver_args(p_cert)
    p_cert.set_defaults(func=_cmd_certify)
    return parser


def _run_certifier(args: argparse.Namespace, Lambda: Any, problem: SyncProblemData, Y: np.ndarray) -> int:
    certifier = MinEigCertifier(eigensolver=args.eigensolver, rng=int(args.seed))
    result = certifier.certify(
        Lambda,
        problem,
        Yopt=Y,
        tol=args.tol,
        max_iters=args.max_iters,
        use_factorization=not args.no_factorization,
    )
    _print_result(result, float(args.cert_tol))
    return 0


def _cmd_demo(args: argparse.Namespace) -> int:
    instance = generate_sync_problem(
        n=int(args.n),
        d=int(args.d),
        loop_closure_prob=float(args.loop_closure_prob),
        rotation_noise=float(args.rotation_noise),
        translation_noise=float(args.translation_noise),
        seed=int(args.seed),
    )
    problem = instance.problem
    Y = instance.rotation_matrix()
    print(f"[info] n={problem.n} d={problem.d} measurements={instance.measurements.num_measurements}")
    Lambda = compute_lambda_blocks(Y, problem, use_factorization=not args.no_factorization)
    return _run_certifier(args, Lambda, problem, Y)


def _cmd_certify(args: argparse.Namespace) -> int:
    problem, data = load_problem_from_mat(
        args.mat,
        key_edges=args.key_edges,
        key_R=args.key_R,
        key_kappa=args.key_kappa,
        key_t=args.key_t,
        key_tau=args.key_tau,
        index_base=int(args.index_base),
        edge_layout=str(args.edge_layout),
    )
    Y = np.asarray(_lookup(data, args.key_Y), dtype=float)
    Lambda, found = _lookup_optional(data, args.key_Lambda)
    if not found:
        print(f"[info] '{args.key_Lambda}' not found in MAT file; computing Lambda from the candidate.")
        Lambda = compute_lambda_blocks(Y, problem, use_factorization=not args.no_factorization)
    return _run_certifier(args, Lambda, problem, Y)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
