"""Fixed-effects absorption.

This module provides multi-way fixed effects absorption using alternating
projections (Frisch-Waugh-Lovell), along with nested-group pruning,
singleton pruning, and the degrees-of-freedom count of the absorbed
parameters.
"""

# regkit/core/fe.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from .errors import ConvergenceError, DataError, FitWarning, emit
from .linalg import column_blocks, parallel_map, resolve_n_jobs

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

_LOGGER = logging.getLogger(__name__)

ArrayLike = Union[NDArray[Any], Sequence[Any], pd.Series]

__all__ = [
    "AbsorbConfig",
    "FETransformResult",
    "absorb",
    "compute_fe_dof",
    "demean",
    "fe_leverage",
    "is_nested",
]

_ACCELS = {"none", "irons_tuck"}


@dataclass(frozen=True)
class AbsorbConfig:
    """Alternating-projection settings shared by estimators.

    Attributes
    ----------
    tol : float
        Stop when the largest relative change of any column between two
        sweeps falls below ``tol`` (change measured against the column's
        scale on entry).
    max_iter : int
        Iteration cap. When hit, the current iterate is returned with
        ``converged=False`` and a :class:`ConvergenceError` warning.
    accel : {"none", "irons_tuck"}
        Optional Irons-Tuck extrapolation over two sweeps.
    drop_singletons : bool
        Recursively drop observations alone in their group. Off by default,
        which keeps absorption exactly equivalent to dummy-variable OLS.
    n_jobs : int | None
        Threads for per-column-block demeaning; ``None`` defers to
        ``REGKIT_N_JOBS`` (default 1).
    """

    tol: float = 1e-8
    max_iter: int = 16_000
    accel: str = "none"
    drop_singletons: bool = False
    n_jobs: int | None = None

    def __post_init__(self) -> None:
        if not (float(self.tol) > 0.0):
            raise ValueError("tol must be positive.")
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be at least 1.")
        if self.accel not in _ACCELS:
            raise ValueError(f"accel must be one of {sorted(_ACCELS)}")


@dataclass(slots=True)
class FETransformResult:
    """Container for within-transformation results.

    Attributes
    ----------
    X, y, Z : np.ndarray | None
        Demeaned regressors, outcome (column vector) and extra block.
    mask : np.ndarray
        Boolean array of input rows retained (missing FE ids, singletons).
    dropped : dict[str, int]
        Counts of dropped observations by reason.
    fe_codes : list[np.ndarray]
        Integer codes of each (non-nested) group on the retained rows.
    fe_dof : int
        Number of independent absorbed parameters.
    converged : bool
        False when the iteration cap was hit.
    n_iter : int
        Number of sweeps performed.
    max_change : float
        Relative change at the final sweep.
    warnings : list[FitWarning]
        Recoverable conditions raised during absorption.
    """

    X: NDArray[np.float64]
    y: NDArray[np.float64] | None
    Z: NDArray[np.float64] | None
    mask: NDArray[np.bool_]
    dropped: dict[str, int] = field(default_factory=dict)
    fe_codes: list[NDArray[np.int64]] = field(default_factory=list)
    fe_dof: int = 0
    converged: bool = True
    n_iter: int = 0
    max_change: float = 0.0
    warnings: list[FitWarning] = field(default_factory=list)

    @property
    def n_effective(self) -> int:
        """Number of observations retained after preprocessing."""
        return int(np.sum(self.mask))


# Helpers
# ---------------------------------------------------------------------


def _to_codes(z: ArrayLike) -> NDArray[np.int64]:
    """Map arbitrary labels to consecutive 0..G-1 codes (sorted); missing -> -1."""
    arr = np.asarray(z, dtype=object).reshape(-1) if not isinstance(z, pd.Series) else z.to_numpy()
    codes, _uniques = pd.factorize(pd.Series(arr), sort=True)
    return codes.astype(np.int64, copy=False)


def _split_fe_ids(fe_ids: ArrayLike | Sequence[ArrayLike] | pd.DataFrame) -> list[Any]:
    """Normalize FE input into a list of 1-D label arrays."""
    if isinstance(fe_ids, pd.DataFrame):
        return [fe_ids[col].to_numpy() for col in fe_ids.columns]
    if isinstance(fe_ids, np.ndarray) and fe_ids.ndim == 2:
        return [fe_ids[:, j] for j in range(fe_ids.shape[1])]
    if isinstance(fe_ids, (list, tuple)):
        return list(fe_ids)
    return [fe_ids]


def _recode(codes: NDArray[np.int64]) -> NDArray[np.int64]:
    """Compact codes to 0..G-1 after row subsetting."""
    _, inv = np.unique(codes, return_inverse=True)
    return inv.reshape(-1).astype(np.int64, copy=False)


def _is_nested(target: NDArray[np.int64], others: list[NDArray[np.int64]]) -> bool:
    """Check if ``target`` is perfectly determined by the concatenation of ``others``."""
    if len(others) == 0:
        return False
    keys = np.column_stack(others)
    _, key_inv = np.unique(keys, axis=0, return_inverse=True)
    key_inv = key_inv.reshape(-1)
    kt = np.column_stack([key_inv, target])
    _, inv = np.unique(kt, axis=0, return_inverse=True)
    return int(inv.max()) + 1 == int(key_inv.max()) + 1


def is_nested(target: NDArray[np.int64], others: list[NDArray[np.int64]]) -> bool:
    """Public wrapper for nested fixed-effect detection."""
    return _is_nested(target, others)


def _prune_nested(codes_list: list[NDArray[np.int64]]) -> list[NDArray[np.int64]]:
    """Drop groups fully nested in the remaining ones (earlier groups win ties)."""
    pruned: list[NDArray[np.int64]] = []
    for j, z in enumerate(codes_list):
        others = pruned + codes_list[j + 1 :]
        if not _is_nested(z, others):
            pruned.append(z)
    return pruned


def _drop_singletons_iteratively(codes_list: list[NDArray[np.int64]]) -> NDArray[np.bool_]:
    """Iteratively drop observations that are alone in any group."""
    if not codes_list:
        return np.array([], dtype=bool)
    n = codes_list[0].shape[0]
    keep = np.ones(n, dtype=bool)

    def pass_once() -> bool:
        hit = np.zeros(n, dtype=bool)
        for codes in codes_list:
            cnt = np.bincount(codes[keep], minlength=int(codes.max()) + 1)
            hit[keep] |= cnt[codes[keep]] == 1
        if np.any(hit):
            keep[hit] = False
            return True
        return False

    while pass_once():
        continue
    return keep


def _bipartite_components(ca: NDArray[np.int64], cb: NDArray[np.int64]) -> int:
    """Connected components of the bipartite graph of co-occurring levels."""
    La = int(ca.max()) + 1 if ca.size else 0
    Lb = int(cb.max()) + 1 if cb.size else 0
    if La == 0 and Lb == 0:
        return 0
    parent = list(range(La + Lb))
    rank = [0] * (La + Lb)

    def find(a: int) -> int:
        while parent[a] != a:
            parent[a] = parent[parent[a]]
            a = parent[a]
        return a

    def union(a: int, b: int) -> None:
        ra, rb = find(a), find(b)
        if ra == rb:
            return
        if rank[ra] < rank[rb]:
            parent[ra] = rb
        elif rank[ra] > rank[rb]:
            parent[rb] = ra
        else:
            parent[rb] = ra
            rank[ra] += 1

    # one union per distinct (a, b) pair
    pairs = np.unique(np.column_stack([ca, cb]), axis=0)
    for ai, bi in pairs:
        union(int(ai), La + int(bi))
    roots = {find(int(a)) for a in np.unique(ca)}
    roots |= {find(La + int(b)) for b in np.unique(cb)}
    return len(roots)


def compute_fe_dof(
    fe_ids: ArrayLike | Sequence[ArrayLike],
    *,
    include_intercept: bool = False,
) -> dict[str, Any]:
    """Compute the number of independent fixed-effect parameters.

    ``fe_dof = sum(L_k - M_k)`` where ``L_k`` is the number of levels of
    group ``k`` and ``M_k`` its redundant levels: ``M_0`` is 1 when the
    model also carries an explicit intercept (0 otherwise), ``M_1`` is the
    number of connected components of the bipartite graph between groups 0
    and 1 (exact), and for ``k >= 2`` the maximum component count against
    any earlier group.

    Returns a dict with ``total_levels``, ``fe_dof``, ``levels_per_fe`` and ``Mk``.
    """
    codes_list = [_to_codes(z) for z in _split_fe_ids(fe_ids)]
    J = len(codes_list)
    if J == 0:
        return {"total_levels": 0, "fe_dof": 0, "levels_per_fe": [], "Mk": []}
    if any(np.any(c < 0) for c in codes_list):
        raise DataError("fixed-effect identifiers contain missing values.")

    levels = [int(c.max()) + 1 if c.size else 0 for c in codes_list]
    Mk = [0] * J
    Mk[0] = 1 if include_intercept else 0
    if J >= 2:
        Mk[1] = _bipartite_components(codes_list[0], codes_list[1])
        for k in range(2, J):
            Mk[k] = max(_bipartite_components(codes_list[i], codes_list[k]) for i in range(k))
    fe_dof = int(sum(L - M for L, M in zip(levels, Mk)))
    return {
        "total_levels": int(sum(levels)),
        "fe_dof": fe_dof,
        "levels_per_fe": levels,
        "Mk": Mk,
    }


def fe_leverage(codes_list: Sequence[NDArray[np.int64]]) -> NDArray[np.float64] | None:
    """Leverage contributed by the absorbed dummies when it is available in closed form.

    For a single group the dummy projection is orthogonal to the within
    projection, so the full-model leverage is ``h_within + 1/n_g``. Returns
    ``None`` for two or more groups.
    """
    if len(codes_list) != 1:
        return None
    codes = np.asarray(codes_list[0])
    counts = np.bincount(codes)
    return 1.0 / counts[codes].astype(np.float64)


# ---------------------------------------------------------------------
# Core within-transformation (alternating projections)
# ---------------------------------------------------------------------


def _subtract_means(
    A: NDArray[np.float64], codes: NDArray[np.int64], counts: NDArray[np.float64],
) -> NDArray[np.float64]:
    G = counts.shape[0]
    means = np.empty((G, A.shape[1]), dtype=np.float64)
    for j in range(A.shape[1]):
        means[:, j] = np.bincount(codes, weights=A[:, j], minlength=G) / counts
    return A - means[codes]


def _irons_tuck(
    A_k: NDArray[np.float64], A_km1: NDArray[np.float64], A_km2: NDArray[np.float64],
) -> NDArray[np.float64]:
    d1 = A_km1 - A_km2
    d2 = A_k - A_km1
    delta = d2 - d1
    denom = float(np.sum(delta * delta))
    if not np.isfinite(denom) or denom <= 0.0:
        return A_k
    alpha = -float(np.sum(d2 * delta)) / denom
    return A_k + alpha * d2


def _demean_given_codes(
    A: NDArray[np.float64],
    codes_list: list[NDArray[np.int64]],
    *,
    tol: float,
    max_iter: int,
    accel: str = "none",
) -> tuple[NDArray[np.float64], dict[str, Any]]:
    """Run symmetric Kaczmarz sweeps of group-mean subtraction until stable."""
    diag: dict[str, Any] = {"n_iter": 0, "converged": True, "max_change": 0.0}
    if not codes_list or A.shape[1] == 0:
        return A.copy(), diag

    counts_list = [np.bincount(c).astype(np.float64) for c in codes_list]
    if len(codes_list) == 1:
        diag["n_iter"] = 1
        return _subtract_means(A, codes_list[0], counts_list[0]), diag

    order = list(range(len(codes_list)))
    sweep_order = order + order[::-1]

    def sweep(M: NDArray[np.float64]) -> NDArray[np.float64]:
        for j in sweep_order:
            M = _subtract_means(M, codes_list[j], counts_list[j])
        return M

    scale = np.max(np.abs(A), axis=0)
    scale = np.where(scale > 0.0, scale, 1.0)

    cur = A.copy()
    change = np.inf
    it = 0
    while it < max_iter:
        it += 1
        prev = cur
        if accel == "irons_tuck":
            y1 = sweep(prev)
            y2 = sweep(y1)
            cur = _irons_tuck(y2, y1, prev)
        else:
            cur = sweep(prev)
        change = float(np.max(np.max(np.abs(cur - prev), axis=0) / scale))
        if change < tol:
            break

    diag["n_iter"] = it
    diag["max_change"] = change
    diag["converged"] = bool(change < tol)
    return cur, diag


def _demean_blocks(
    A: NDArray[np.float64],
    codes_list: list[NDArray[np.int64]],
    config: AbsorbConfig,
) -> tuple[NDArray[np.float64], dict[str, Any]]:
    """Demean column blocks independently, on threads when ``n_jobs > 1``."""
    jobs = resolve_n_jobs(config.n_jobs)
    blocks = column_blocks(A.shape[1], jobs)
    if len(blocks) <= 1:
        return _demean_given_codes(
            A, codes_list, tol=config.tol, max_iter=config.max_iter, accel=config.accel,
        )

    def run(idx: NDArray[np.int64]) -> tuple[NDArray[np.float64], dict[str, Any]]:
        return _demean_given_codes(
            A[:, idx], codes_list, tol=config.tol, max_iter=config.max_iter, accel=config.accel,
        )

    parts = parallel_map(run, blocks, n_jobs=jobs)
    out = np.empty_like(A)
    for idx, (blk, _d) in zip(blocks, parts):
        out[:, idx] = blk
    diag = {
        "n_iter": max(d["n_iter"] for _b, d in parts),
        "converged": all(d["converged"] for _b, d in parts),
        "max_change": max(d["max_change"] for _b, d in parts),
    }
    return out, diag


# ---------------------------------------------------------------------
# Public APIs
# ---------------------------------------------------------------------


def absorb(
    X: ArrayLike,
    y: ArrayLike,
    fe_ids: ArrayLike | Sequence[ArrayLike] | pd.DataFrame,
    *,
    Z: ArrayLike | None = None,
    config: AbsorbConfig | None = None,
) -> FETransformResult:
    """Jointly demean (X, Z, y) by one or more fixed-effect groups.

    Rows with missing group ids or non-finite numeric values are dropped
    first; groups fully nested in the others are pruned; singletons are
    dropped recursively only when ``config.drop_singletons`` is set.
    """
    cfg = config or AbsorbConfig()
    X_arr = np.asarray(X, dtype=np.float64)
    if X_arr.ndim == 1:
        X_arr = X_arr.reshape(-1, 1)
    y_arr = np.asarray(y, dtype=np.float64).reshape(-1, 1)
    n = X_arr.shape[0]
    if y_arr.shape[0] != n:
        raise ValueError("X and y must have the same number of rows.")
    Z_arr = (
        np.zeros((n, 0), dtype=np.float64)
        if Z is None
        else np.asarray(Z, dtype=np.float64).reshape(n, -1)
    )

    raw_fe_list = _split_fe_ids(fe_ids)
    if not raw_fe_list:
        raise ValueError("absorb requires at least one fixed-effect group.")
    codes_all = [_to_codes(z) for z in raw_fe_list]
    for codes in codes_all:
        if codes.shape[0] != n:
            raise ValueError("fixed-effect ids must have the same length as X.")

    mask = np.ones(n, dtype=bool)
    n_fe_na = 0
    for codes in codes_all:
        ok = codes >= 0
        n_fe_na += int(np.sum(~ok & mask))
        mask &= ok
    finite = (
        np.isfinite(y_arr).all(axis=1)
        & np.isfinite(X_arr).all(axis=1)
        & np.isfinite(Z_arr).all(axis=1)
    )
    n_na = int(np.sum(~finite & mask))
    mask &= finite

    codes_kept = [_recode(c[mask]) for c in codes_all]
    n_singleton = 0
    if cfg.drop_singletons:
        keep = _drop_singletons_iteratively(codes_kept)
        n_singleton = int(np.sum(~keep))
        idx = np.flatnonzero(mask)
        mask = np.zeros(n, dtype=bool)
        mask[idx[keep]] = True
        codes_kept = [_recode(c[keep]) for c in codes_kept]
    if not np.any(mask):
        raise DataError("No observations left after fixed-effect preprocessing.")

    codes_final = _prune_nested(codes_kept)
    if len(codes_final) < len(codes_kept):
        _LOGGER.debug(
            "absorb: pruned %d nested fixed-effect group(s)", len(codes_kept) - len(codes_final),
        )

    p, q = X_arr.shape[1], Z_arr.shape[1]
    stacked = np.hstack([X_arr[mask], Z_arr[mask], y_arr[mask]])
    demeaned, diag = _demean_blocks(stacked, codes_final, cfg)
    _LOGGER.debug(
        "absorb: %d group(s), %d sweep(s), max relative change %.3e",
        len(codes_final), diag["n_iter"], diag["max_change"],
    )

    warns: list[FitWarning] = []
    if not diag["converged"]:
        warns.append(
            emit(
                ConvergenceError,
                f"Fixed-effect absorption did not converge in {cfg.max_iter} iterations "
                f"(max relative change {diag['max_change']:.3e} >= tol {cfg.tol:.1e}); "
                "returning the last iterate.",
                n_iter=int(diag["n_iter"]),
                max_change=float(diag["max_change"]),
            ),
        )

    dof = compute_fe_dof(codes_final, include_intercept=False)
    return FETransformResult(
        X=demeaned[:, :p],
        Z=demeaned[:, p : p + q],
        y=demeaned[:, p + q :].reshape(-1, 1),
        mask=mask,
        dropped={"fe_id_na": n_fe_na, "na": n_na, "singleton": n_singleton},
        fe_codes=codes_final,
        fe_dof=int(dof["fe_dof"]),
        converged=bool(diag["converged"]),
        n_iter=int(diag["n_iter"]),
        max_change=float(diag["max_change"]),
        warnings=warns,
    )


def demean(
    X: ArrayLike,
    fe_ids: ArrayLike | Sequence[ArrayLike] | pd.DataFrame,
    *,
    config: AbsorbConfig | None = None,
) -> NDArray[np.float64]:
    """Canonical helper: returns X with fixed effects absorbed.

    Thin wrapper over :func:`absorb` that returns only the transformed X.
    """
    X_arr = np.asarray(X, dtype=np.float64)
    if X_arr.ndim == 1:
        X_arr = X_arr.reshape(-1, 1)
    zero_y = np.zeros((X_arr.shape[0], 1), dtype=np.float64)
    return absorb(X_arr, zero_y, fe_ids, config=config).X
