"""Covariance-matrix estimators.

One :class:`CovarianceEstimator` serves every estimator kind. Each kind is a
sandwich ``B M B`` built from the same inputs: the design ``X`` used in the
final least-squares step, residuals ``e``, leverages ``h`` and the bread
``B = (X'X)^{-1}``. Kinds differ only in the meat ``M`` and the scalar
small-sample factor.

============  =====================================================  =========================
kind          meat                                                   factor
============  =====================================================  =========================
classical     (uses B directly)                                      RSS / df_resid
HC0           sum e_i^2 x_i x_i'                                     1
HC1           sum e_i^2 x_i x_i'                                     n / (n - p)
HC2           sum e_i^2 / (1 - h_i) x_i x_i'                         1
HC3           sum e_i^2 / (1 - h_i)^2 x_i x_i'                       1
stata         sum e_i^2 x_i x_i'                                     n / df_resid
cluster       sum_g (X_g'e_g)(X_g'e_g)'                              G/(G-1) (n-1)/(n-p)
multiway      inclusion-exclusion of cluster meats over subsets      per subset, as cluster
HAC           Gamma_0 + sum_l w(l) (Gamma_l + Gamma_l')              1 (n / (n - p) opt-in)
============  =====================================================  =========================

``p`` is the rank of the solved design. ``df_resid`` additionally subtracts
absorbed fixed-effect parameters, which is what separates ``stata`` from
``HC1`` when fixed effects are absorbed.
"""

# regkit/core/covariance.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from math import pi
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from .errors import ClusterError, DataError, FitWarning, emit
from .linalg import block_sum, column_blocks, min_eigval, parallel_map, resolve_n_jobs

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "COVARIANCE_KINDS",
    "CovarianceEstimator",
    "CovarianceResult",
    "CovarianceSpec",
    "bandwidth_nw94",
    "hac_kernel",
]

COVARIANCE_KINDS = (
    "classical", "HC0", "HC1", "HC2", "HC3", "stata", "cluster", "multiway", "HAC",
)
_KIND_LOOKUP = {k.lower(): k for k in COVARIANCE_KINDS}
_KIND_LOOKUP.update({"iid": "classical", "nonrobust": "classical", "newey-west": "HAC"})
_KERNELS = {
    "bartlett": "bartlett",
    "nw": "bartlett",
    "newey-west": "bartlett",
    "parzen": "parzen",
    "qs": "qs",
    "quadratic-spectral": "qs",
}


# ---------------------------------------------------------------------
# HAC kernels and NW94 bandwidth
# ---------------------------------------------------------------------


def _qs_kernel(z: NDArray[np.float64]) -> NDArray[np.float64]:
    """Quadratic-Spectral kernel (Andrews 1991); 1 at zero."""
    z = np.asarray(z, dtype=np.float64)
    out = np.ones_like(z)
    nz = z != 0.0
    t = (6.0 * pi / 5.0) * z[nz]
    out[nz] = 25.0 / (12.0 * pi * pi * z[nz] ** 2) * (np.sin(t) / t - np.cos(t))
    return out


def hac_kernel(x: NDArray[np.float64], kernel: str) -> NDArray[np.float64]:
    """Compute HAC kernel weights (Andrews 1991 family)."""
    k = _KERNELS.get(kernel.lower())
    z = np.asarray(x, dtype=np.float64)
    az = np.abs(z)
    if k == "bartlett":
        return np.maximum(0.0, 1.0 - az)
    if k == "parzen":
        return np.where(
            az <= 0.5,
            1.0 - 6.0 * z * z + 6.0 * (az**3),
            np.where(az <= 1.0, 2.0 * np.power(1.0 - az, 3.0), 0.0),
        )
    if k == "qs":
        return _qs_kernel(z)
    msg = f"unknown kernel: {kernel}"
    raise ValueError(msg)


def bandwidth_nw94(n_obs: int) -> int:
    """Newey-West (1994) rule-of-thumb lag ``floor(4 (n/100)^(2/9))``."""
    return int(np.floor(4.0 * (int(n_obs) / 100.0) ** (2.0 / 9.0)))


# ---------------------------------------------------------------------
# Specification
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CovarianceSpec:
    """Requested covariance estimator.

    Parameters
    ----------
    kind : str
        One of ``classical``, ``HC0``-``HC3``, ``stata``, ``cluster``,
        ``multiway``, ``HAC`` (case-insensitive).
    clusters : array-like, column name, or a sequence of those
        Partitions for ``cluster`` (one) and ``multiway`` (one or more).
        Column names are resolved against the model's data.
    lags : int, optional
        HAC truncation lag; defaults to :func:`bandwidth_nw94`.
    kernel : {"bartlett", "parzen", "qs"}
        HAC kernel, evaluated at ``l / (lags + 1)``.
    time : array-like or column name
        Temporal ordering for HAC; values must be unique.
    small_sample : bool, default=False
        Scale the HAC sandwich by ``n / (n - p)``.
    n_jobs : int, optional
        Threads for the cluster meat accumulation (``REGKIT_N_JOBS`` default).
    """

    kind: str = "classical"
    clusters: Any = field(default=None, compare=False)
    lags: int | None = None
    kernel: str = "bartlett"
    time: Any = field(default=None, compare=False)
    small_sample: bool = False
    n_jobs: int | None = None

    def __post_init__(self) -> None:
        canon = _KIND_LOOKUP.get(str(self.kind).lower())
        if canon is None:
            msg = f"Unknown covariance kind {self.kind!r}; expected one of {COVARIANCE_KINDS}."
            raise ValueError(msg)
        object.__setattr__(self, "kind", canon)
        kern = _KERNELS.get(str(self.kernel).lower())
        if kern is None:
            raise ValueError(f"Unknown HAC kernel {self.kernel!r}.")
        object.__setattr__(self, "kernel", kern)
        if self.lags is not None and int(self.lags) < 0:
            raise ValueError("lags must be non-negative.")

    @classmethod
    def coerce(cls, spec: CovarianceSpec | str | None, **kwargs: Any) -> CovarianceSpec:
        """Accept a spec, a kind name, or ``None`` (classical)."""
        if isinstance(spec, CovarianceSpec):
            return spec
        if spec is None:
            return cls(**kwargs)
        return cls(kind=str(spec), **kwargs)

    def cluster_list(self, n_obs: int | Iterable[int] | None = None) -> list[Any]:
        """Cluster partitions as a list (possibly empty).

        A flat list of non-string scalars is one partition of labels. A flat
        list of strings is read as column names, unless its length is one of
        ``n_obs``, in which case it is one partition of string labels.
        """
        c = self.clusters
        if c is None:
            return []
        if isinstance(c, pd.DataFrame):
            return [c[col] for col in c.columns]
        if isinstance(c, np.ndarray):
            return [c] if c.ndim == 1 else [c[:, j] for j in range(c.shape[1])]
        if isinstance(c, (str, pd.Series)):
            return [c]
        items = list(c)
        if not items or not all(np.isscalar(i) for i in items):
            return items
        if not any(isinstance(i, str) for i in items):
            return [np.asarray(items)]
        lengths = () if n_obs is None else (n_obs,) if isinstance(n_obs, int) else tuple(n_obs)
        if len(items) in lengths:
            return [np.asarray(items, dtype=object)]
        return items


@dataclass(frozen=True)
class CovarianceResult:
    """Covariance matrix plus the degrees of freedom for t-based inference."""

    vcov: NDArray[np.float64]
    kind: str
    df: int
    n_clusters: tuple[int, ...] = ()
    lags: int | None = None
    warnings: tuple[FitWarning, ...] = ()


# ---------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------


def _codes(labels: Any, n: int, name: str) -> NDArray[np.int64]:
    arr = labels.to_numpy() if isinstance(labels, pd.Series) else np.asarray(labels)
    arr = arr.reshape(-1)
    if arr.shape[0] != n:
        raise ValueError(f"{name} has length {arr.shape[0]}, expected {n}.")
    codes, _ = pd.factorize(arr)
    if np.any(codes < 0):
        raise DataError(f"{name} contains missing values.")
    return codes.astype(np.int64, copy=False)


def _intersect(codes_list: Sequence[NDArray[np.int64]]) -> NDArray[np.int64]:
    if len(codes_list) == 1:
        return codes_list[0]
    _, inv = np.unique(np.column_stack(codes_list), axis=0, return_inverse=True)
    return inv.reshape(-1).astype(np.int64, copy=False)


class CovarianceEstimator:
    """Sandwich covariance estimators on a solved least-squares problem.

    Parameters
    ----------
    X : ndarray, shape (n, p)
        Design of the final least-squares step (retained columns only).
    residuals : ndarray, shape (n,)
    bread : ndarray, shape (p, p)
        ``(X'X)^{-1}``.
    leverage : ndarray, shape (n,), optional
        Required for HC2/HC3.
    df_resid : int, optional
        Residual degrees of freedom; defaults to ``n - p``.
    """

    def __init__(  # noqa: PLR0913
        self,
        X: NDArray[np.float64],
        residuals: NDArray[np.float64],
        *,
        bread: NDArray[np.float64],
        leverage: NDArray[np.float64] | None = None,
        df_resid: int | None = None,
    ) -> None:
        self.X = np.asarray(X, dtype=np.float64)
        self.e = np.asarray(residuals, dtype=np.float64).reshape(-1)
        self.bread = np.asarray(bread, dtype=np.float64)
        self.leverage = None if leverage is None else np.asarray(leverage, dtype=np.float64)
        self.n, self.p = self.X.shape
        if self.e.shape[0] != self.n:
            raise ValueError("residuals must have one entry per row of X.")
        if self.bread.shape != (self.p, self.p):
            raise ValueError("bread must be a (p, p) matrix matching X.")
        self.df_resid = int(df_resid) if df_resid is not None else self.n - self.p

    # -- building blocks -------------------------------------------------

    def _sandwich(self, meat: NDArray[np.float64]) -> NDArray[np.float64]:
        V = self.bread @ meat @ self.bread
        return 0.5 * (V + V.T)

    def _weighted_meat(self, w: NDArray[np.float64]) -> NDArray[np.float64]:
        return (self.X * w[:, None]).T @ self.X

    def _hc_weights(self, kind: str) -> NDArray[np.float64]:
        e2 = self.e**2
        if kind in ("HC2", "HC3"):
            if self.leverage is None:
                raise ValueError(f"{kind} requires leverages.")
            one_minus_h = np.clip(1.0 - self.leverage, np.finfo(float).eps, None)
            return e2 / one_minus_h if kind == "HC2" else e2 / one_minus_h**2
        return e2

    def _cluster_meat(self, codes: NDArray[np.int64], n_jobs: int | None) -> NDArray[np.float64]:
        G = int(codes.max()) + 1
        scores = np.zeros((G, self.p), dtype=np.float64)
        np.add.at(scores, codes, self.X * self.e[:, None])
        blocks = column_blocks(G, resolve_n_jobs(n_jobs))
        parts = parallel_map(lambda idx: scores[idx].T @ scores[idx], blocks, n_jobs=n_jobs)
        return block_sum(parts)

    def _cluster_factor(self, G: int) -> float:
        return (G / (G - 1.0)) * ((self.n - 1.0) / (self.n - self.p))

    # -- kinds ------------------------------------------------------------

    def _classical(self) -> NDArray[np.float64]:
        sigma2 = float(self.e @ self.e) / float(self.df_resid)
        return sigma2 * self.bread

    def _cluster(
        self, codes: NDArray[np.int64], n_jobs: int | None,
    ) -> tuple[NDArray[np.float64], int, list[FitWarning]]:
        G = int(codes.max()) + 1
        if G < 2:
            raise DataError("Cluster-robust covariance needs at least two clusters.")
        warns: list[FitWarning] = []
        if self.p >= G:
            warns.append(
                emit(
                    ClusterError,
                    f"Only {G} clusters for {self.p} parameters; "
                    "the cluster-robust covariance is unreliable.",
                    stacklevel=4,
                    n_clusters=G,
                    n_params=self.p,
                ),
            )
        V = self._cluster_factor(G) * self._sandwich(self._cluster_meat(codes, n_jobs))
        return V, G, warns

    def _multiway(
        self, codes_list: list[NDArray[np.int64]], n_jobs: int | None,
    ) -> tuple[NDArray[np.float64], tuple[int, ...], list[FitWarning]]:
        dims = len(codes_list)
        Gs = tuple(int(c.max()) + 1 for c in codes_list)
        if min(Gs) < 2:
            raise DataError("Cluster-robust covariance needs at least two clusters per dimension.")
        warns: list[FitWarning] = []
        if self.p >= min(Gs):
            warns.append(
                emit(
                    ClusterError,
                    f"Smallest cluster dimension has {min(Gs)} clusters for {self.p} parameters; "
                    "the cluster-robust covariance is unreliable.",
                    stacklevel=4,
                    n_clusters=Gs,
                    n_params=self.p,
                ),
            )
        V = np.zeros((self.p, self.p), dtype=np.float64)
        for size in range(1, dims + 1):
            sign = 1.0 if size % 2 == 1 else -1.0
            for subset in combinations(range(dims), size):
                codes = _intersect([codes_list[j] for j in subset])
                G = int(codes.max()) + 1
                if G < 2:
                    continue
                meat = self._cluster_meat(codes, n_jobs)
                V += sign * self._cluster_factor(G) * self._sandwich(meat)
        V = 0.5 * (V + V.T)
        scale = float(np.max(np.abs(np.diag(V)))) if V.size else 0.0
        lam = min_eigval(V)
        if lam < -1e-12 * max(scale, 1.0):
            warns.append(
                emit(
                    ClusterError,
                    f"Multiway cluster covariance is not positive semi-definite "
                    f"(smallest eigenvalue {lam:.3e}).",
                    stacklevel=4,
                    min_eigenvalue=lam,
                ),
            )
        return V, Gs, warns

    def _hac(
        self, time: Any, lags: int | None, kernel: str, small_sample: bool = False,
    ) -> tuple[NDArray[np.float64], int]:
        if time is None:
            raise ValueError("HAC covariance requires a temporal ordering (time=...).")
        t = time.to_numpy() if isinstance(time, pd.Series) else np.asarray(time)
        t = t.reshape(-1)
        if t.shape[0] != self.n:
            raise ValueError(f"time has length {t.shape[0]}, expected {self.n}.")
        if pd.Series(t).duplicated().any():
            raise DataError("HAC time ordering must not contain duplicate values.")
        order = np.argsort(t, kind="stable")
        u = (self.X * self.e[:, None])[order]
        L = bandwidth_nw94(self.n) if lags is None else int(lags)
        meat = u.T @ u
        max_lag = self.n - 1 if kernel == "qs" else min(L, self.n - 1)
        if max_lag > 0:
            w = hac_kernel(np.arange(1, max_lag + 1) / (L + 1.0), kernel)
            for lag in range(1, max_lag + 1):
                if w[lag - 1] == 0.0:
                    continue
                gamma = u[lag:].T @ u[:-lag]
                meat += w[lag - 1] * (gamma + gamma.T)
        V = self._sandwich(meat)
        if small_sample:
            V = V * (self.n / (self.n - self.p))
        return V, L

    def compute(
        self,
        spec: CovarianceSpec | str | None = None,
        *,
        clusters: Sequence[Any] | None = None,
        time: Any = None,
    ) -> CovarianceResult:
        """Compute the covariance described by ``spec``.

        ``clusters`` and ``time`` override the arrays carried by ``spec``;
        they must already be aligned with the rows of ``X``.
        """
        spec = CovarianceSpec.coerce(spec)
        kind = spec.kind
        if self.n <= self.p:
            raise DataError(f"Need more observations ({self.n}) than parameters ({self.p}).")
        if self.df_resid <= 0:
            raise DataError(f"Non-positive residual degrees of freedom ({self.df_resid}).")
        warns: list[FitWarning] = []
        df = self.df_resid
        n_clusters: tuple[int, ...] = ()
        lags: int | None = None

        if kind == "classical":
            V = self._classical()
        elif kind in ("HC0", "HC1", "HC2", "HC3", "stata"):
            V = self._sandwich(self._weighted_meat(self._hc_weights(kind)))
            if kind == "HC1":
                V = V * (self.n / (self.n - self.p))
            elif kind == "stata":
                V = V * (self.n / float(self.df_resid))
        elif kind in ("cluster", "multiway"):
            raw = list(clusters) if clusters is not None else spec.cluster_list(self.n)
            if not raw:
                raise ValueError(f"Covariance kind '{kind}' requires cluster partitions.")
            if kind == "cluster" and len(raw) != 1:
                raise ValueError("kind='cluster' takes one partition; use 'multiway' for several.")
            codes_list = [_codes(c, self.n, f"clusters[{j}]") for j, c in enumerate(raw)]
            if kind == "cluster":
                V, G, warns = self._cluster(codes_list[0], spec.n_jobs)
                n_clusters = (G,)
            else:
                V, n_clusters, warns = self._multiway(codes_list, spec.n_jobs)
            df = min(n_clusters) - 1
        else:
            V, lags = self._hac(
                time if time is not None else spec.time, spec.lags, spec.kernel, spec.small_sample,
            )

        _LOGGER.debug("covariance %s: n=%d p=%d df=%d", kind, self.n, self.p, df)
        return CovarianceResult(
            vcov=V, kind=kind, df=int(df), n_clusters=n_clusters, lags=lags, warnings=tuple(warns),
        )
