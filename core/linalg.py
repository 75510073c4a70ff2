"""Linear algebra routines for regression analysis.

This module provides the least-squares solver (column-pivoted QR with R or
Stata rank policies), leverage and bread computations, group sums, and the
opt-in thread pool used for parallel reductions. Explicit inversion of X'X
is avoided: the bread is obtained from the triangular factor.
"""

from __future__ import annotations

# Standard library
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, TypeVar

# NumPy / SciPy
import numpy as np
import scipy.linalg as sla

from .errors import DataError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

_LOGGER = logging.getLogger(__name__)

# Matrix type alias
Matrix = Any

T = TypeVar("T")
R = TypeVar("R")

N_JOBS_ENV = "REGKIT_N_JOBS"

__all__ = [
    "LSResult",
    "Matrix",
    "block_sum",
    "column_blocks",
    "crossprod",
    "group_sum",
    "hat_diag",
    "lstsq_qr",
    "min_eigval",
    "parallel_map",
    "qr",
    "rank_from_diag",
    "resolve_n_jobs",
    "tdot",
    "to_dense",
    "xtx_inv_via_qr",
]


def _assert_all_finite(*arrays: NDArray[np.float64] | None) -> None:
    """Raise ValueError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        if not np.all(np.isfinite(np.asarray(a))):
            raise ValueError(
                "Input contains NA/NaN/Inf; drop incomplete rows before solving.",
            )


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object to a dense float64 numpy array."""
    if hasattr(A, "toarray"):
        return np.asarray(A.toarray(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def qr(A: Matrix, *, pivoting: bool = False, mode: str = "economic"):
    """Compute a QR decomposition via SciPy (pivoted when requested)."""
    Ad = to_dense(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, Rm, P = sla.qr(Ad, mode=mode, pivoting=True)
        return Q[:, :rcols], Rm[:rcols, :], P
    Q, Rm = sla.qr(Ad, mode=mode, pivoting=False)
    return Q[:, :rcols], Rm[:rcols, :]


def _rank_from_diag(diagR: NDArray[np.float64], ncols: int, mode: str = "stata") -> int:
    """Determine numerical rank from R diagonal entries using method-specific tolerance."""
    d = np.abs(np.asarray(diagR, dtype=float).reshape(-1))
    if d.size == 0:
        return 0
    mode_lower = str(mode).lower()
    if mode_lower == "stata":
        # Stata (Mata qrsolve): eta = 1e-13 * trace(|R|)/rows(R)
        tol = 1e-13 * (float(np.sum(d)) / float(d.size))
    elif mode_lower in ("r", "r_strict"):
        # R lm.fit: tol = 1e-7 * max(|diag(R)|)
        tol = 1e-7 * float(np.max(d))
    else:  # numpy-like rcond style
        tol = np.finfo(float).eps * max(1, int(ncols)) * float(np.max(d))
    return int(np.sum(d > tol))


def rank_from_diag(
    diagR: NDArray[np.float64], ncols: int, *, mode: str = "stata",
) -> int:
    """Public wrapper for :func:`_rank_from_diag` (preserves Stata/R conventions)."""
    return _rank_from_diag(diagR, ncols, mode=mode)


def crossprod(X: Matrix, y: Matrix) -> NDArray[np.float64]:
    """Compute X'y with column-vector output for 1-D ``y``."""
    Xd = to_dense(X)
    yd = to_dense(y)
    if yd.ndim == 1:
        yd = yd.reshape(-1, 1)
    return (Xd.T @ yd).astype(np.float64)


def tdot(X: Matrix) -> NDArray[np.float64]:
    """Compute X'X."""
    Xd = to_dense(X)
    return (Xd.T @ Xd).astype(np.float64)


def group_sum(X: Matrix, codes: Matrix) -> NDArray[np.float64]:
    """Sum rows of X within groups defined by integer-like ``codes``.

    Returns a (G x p) array whose rows follow the sorted unique labels.
    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    codes_arr = np.asarray(codes).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    _uniq, inv = np.unique(codes_arr, return_inverse=True)
    inv = inv.reshape(-1)
    out = np.zeros((int(inv.max()) + 1 if inv.size else 0, Xd.shape[1]), dtype=np.float64)
    np.add.at(out, inv, Xd)
    return out


def min_eigval(A: Matrix) -> float:
    """Smallest eigenvalue of the symmetric part of A."""
    Ad = to_dense(A)
    if Ad.size == 0:
        return 0.0
    return float(np.min(np.linalg.eigvalsh(0.5 * (Ad + Ad.T))))


# ---------------------------------------------------------------------
# Least squares
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class LSResult:
    """Output of :func:`lstsq_qr`.

    Attributes
    ----------
    coef : ndarray, shape (p,)
        Coefficients in the original column order; NaN for dropped columns.
    keep : ndarray of bool, shape (p,)
        Columns retained by the rank screen.
    rank : int
        Numerical rank of X.
    residuals, fitted, leverage : ndarray, shape (n,)
        ``y - X b``, ``X b`` and the diagonal of the hat matrix.
    bread : ndarray, shape (rank, rank)
        ``(X_k' X_k)^{-1}`` for the retained columns ``X_k`` (original order).
    """

    coef: NDArray[np.float64]
    keep: NDArray[np.bool_]
    rank: int
    residuals: NDArray[np.float64]
    fitted: NDArray[np.float64]
    leverage: NDArray[np.float64]
    bread: NDArray[np.float64]

    @property
    def n_obs(self) -> int:
        return int(self.residuals.shape[0])

    @property
    def df_resid(self) -> int:
        return self.n_obs - self.rank

    @property
    def coef_kept(self) -> NDArray[np.float64]:
        return self.coef[self.keep]

    @property
    def dropped(self) -> list[int]:
        return [int(j) for j in np.flatnonzero(~self.keep)]


def lstsq_qr(
    X: Matrix, y: Matrix, *, rank_policy: str = "stata",
) -> LSResult:
    """Least squares via column-pivoted Householder QR.

    Linearly dependent columns (as judged by ``rank_policy``) are excluded;
    their coefficients are NaN rather than zero. Coefficients of retained
    columns satisfy the normal equations of the reduced design.
    """
    Xd = to_dense(X)
    yd = to_dense(y).reshape(-1)
    if Xd.ndim != 2 or Xd.shape[0] != yd.shape[0]:
        raise ValueError("X must be 2-D with as many rows as y.")
    _assert_all_finite(Xd, yd)
    n, p = Xd.shape
    if p == 0:
        raise DataError("Design matrix has no columns.")

    Q, Rm, P = qr(Xd, pivoting=True)
    r = _rank_from_diag(np.diag(Rm), p, mode=rank_policy)
    if r == 0:
        raise DataError(
            "All regressors dropped by the collinearity screen (rank=0).",
        )
    Qr = Q[:, :r]
    R11 = Rm[:r, :r]
    qty = Qr.T @ yd
    beta_piv = sla.solve_triangular(R11, qty, lower=False)

    coef = np.full(p, np.nan, dtype=np.float64)
    coef[P[:r]] = beta_piv
    keep = np.zeros(p, dtype=bool)
    keep[P[:r]] = True

    fitted = Qr @ qty
    residuals = yd - fitted
    leverage = np.einsum("ij,ij->i", Qr, Qr)

    # (X_k'X_k)^{-1} = R11^{-1} R11^{-T}, permuted back to original order
    R11_inv = sla.solve_triangular(R11, np.eye(r), lower=False)
    bread_piv = R11_inv @ R11_inv.T
    order = np.argsort(P[:r])
    bread = bread_piv[np.ix_(order, order)]

    if r < p:
        _LOGGER.debug("lstsq_qr: rank %d < %d columns; dropped %s", r, p, list(np.flatnonzero(~keep)))
    return LSResult(
        coef=coef,
        keep=keep,
        rank=int(r),
        residuals=residuals,
        fitted=fitted,
        leverage=leverage,
        bread=0.5 * (bread + bread.T),
    )


def hat_diag(X: Matrix, *, rank_policy: str = "stata") -> NDArray[np.float64]:
    """Leverage values (diagonal of the hat matrix) from a rank-revealing QR."""
    Xd = to_dense(X)
    Q, Rm, _P = qr(Xd, pivoting=True)
    r = _rank_from_diag(np.diag(Rm), Xd.shape[1], mode=rank_policy)
    if r == 0:
        return np.zeros(Xd.shape[0], dtype=np.float64)
    return np.einsum("ij,ij->i", Q[:, :r], Q[:, :r])


def xtx_inv_via_qr(X: Matrix) -> NDArray[np.float64]:
    """Return (X'X)^{-1} for a full-column-rank X without forming X'X."""
    Xd = to_dense(X)
    _Q, Rm = qr(Xd, pivoting=False)
    Rinv = sla.solve_triangular(Rm, np.eye(Rm.shape[1]), lower=False)
    out = Rinv @ Rinv.T
    return 0.5 * (out + out.T)


# ---------------------------------------------------------------------
# Opt-in parallel reductions
# ---------------------------------------------------------------------


def resolve_n_jobs(n_jobs: int | None = None) -> int:
    """Return the worker count: explicit value, else ``REGKIT_N_JOBS``, else 1.

    ``-1`` maps to the number of CPUs.
    """
    if n_jobs is None:
        raw = os.environ.get(N_JOBS_ENV, "").strip()
        if not raw:
            return 1
        try:
            n_jobs = int(raw)
        except ValueError as exc:
            raise ValueError(f"{N_JOBS_ENV} must be an integer, got {raw!r}") from exc
    n_jobs = int(n_jobs)
    if n_jobs == -1:
        return max(1, os.cpu_count() or 1)
    if n_jobs < 1:
        raise ValueError("n_jobs must be a positive integer or -1")
    return n_jobs


def parallel_map(
    fn: Callable[[T], R], items: Iterable[T], *, n_jobs: int | None = None,
) -> list[R]:
    """Apply ``fn`` to each item, on a thread pool when ``n_jobs > 1``.

    Results are returned in input order.
    """
    seq = list(items)
    workers = min(resolve_n_jobs(n_jobs), len(seq))
    if workers <= 1:
        return [fn(x) for x in seq]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(fn, seq))


def column_blocks(p: int, n_blocks: int) -> list[NDArray[np.int64]]:
    """Split column indices 0..p-1 into at most ``n_blocks`` contiguous blocks."""
    if p == 0:
        return []
    k = max(1, min(int(n_blocks), p))
    return [blk for blk in np.array_split(np.arange(p), k) if blk.size]


def block_sum(parts: Sequence[NDArray[np.float64]]) -> NDArray[np.float64]:
    """Sum a sequence of equally shaped arrays."""
    out = np.zeros_like(parts[0])
    for part in parts:
        out += part
    return out
