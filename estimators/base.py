"""Base estimator, fit results and coefficient tables.

This module defines the abstract base estimator shared by OLS and IV, the
immutable :class:`FitResult` produced by a fit, and the
:class:`CoefficientTable` computed from a result under a chosen covariance
estimator.
"""

# regkit/estimators/base.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from regkit.core import fe as fe_core
from regkit.core import linalg as la
from regkit.core.covariance import CovarianceEstimator, CovarianceResult, CovarianceSpec
from regkit.core.errors import DataError, FitWarning, RankDeficiencyError, emit

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

    from regkit.core.design import DesignMatrix

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "BaseEstimator",
    "CoefficientTable",
    "FitResult",
    "ci_level_to_alpha",
    "fit_many",
    "normalize_ci_level",
]


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    if not (0.0 < float(default) < 1.0):
        raise ValueError("default confidence level must lie in (0, 1)")
    if level is None:
        coerced = float(default)
    else:
        coerced = float(level)
        # Accept percentage-style inputs (e.g., 90 for 90%)
        if coerced > 1.0:
            coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        raise ValueError("ci_level must be in (0, 1); supply e.g. 0.95 or 95")
    return coerced


def ci_level_to_alpha(level: float | None, *, default: float = 0.95) -> float:
    """Return the corresponding tail probability ``alpha`` for a confidence level."""
    ci_level = normalize_ci_level(level, default=default)
    return 1.0 - ci_level


def _frozen(a: Any) -> NDArray[Any]:
    out = np.array(a, copy=True)
    out.setflags(write=False)
    return out


def _to_numpy_1d(values: Any) -> NDArray[Any]:
    """Convert 1-D like input to a numpy array."""
    arr = values.to_numpy() if hasattr(values, "to_numpy") else np.asarray(values)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    elif arr.ndim > 1:
        arr = arr.reshape(-1)
    return arr


def _align_with_mask(
    arr: NDArray[Any], mask: NDArray[np.bool_], label: str,
) -> NDArray[Any]:
    """Align identifier arrays with the working sample defined by ``mask``.

    Accepts identifiers defined either on the estimator's input rows
    (length == mask.size) or pre-filtered to the working sample
    (length == mask.sum()).
    """
    n_final = int(mask.sum())
    if arr.shape[0] == n_final:
        return arr
    if arr.shape[0] == mask.shape[0]:
        return arr[mask]
    msg = (
        f"{label} has length {arr.shape[0]}; expected {n_final} (fitted rows) "
        f"or {mask.shape[0]} (input rows)."
    )
    raise ValueError(msg)


def _ensure_no_missing(arr: NDArray[Any], label: str) -> None:
    """Raise when identifier arrays contain missing entries."""
    if bool(np.any(pd.isna(arr))):
        raise DataError(f"{label} contains missing values; clean identifiers before estimation.")


# ---------------------------------------------------------------------
# Results containers
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CoefficientTable:
    """Per-regressor inference under one covariance estimator.

    ``df`` is the t-distribution degrees of freedom used for p-values and
    intervals: the residual df, or ``G - 1`` (smallest dimension) for
    cluster-robust kinds.
    """

    names: tuple[str, ...]
    estimate: NDArray[np.float64]
    std_error: NDArray[np.float64]
    statistic: NDArray[np.float64]
    p_value: NDArray[np.float64]
    ci_lower: NDArray[np.float64]
    ci_upper: NDArray[np.float64]
    vcov: NDArray[np.float64]
    cov_kind: str
    ci_level: float
    df: int
    model_info: Mapping[str, Any] = field(default_factory=dict)
    warnings: tuple[FitWarning, ...] = ()

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "estimate": self.estimate,
                "std_error": self.std_error,
                "t": self.statistic,
                "p_value": self.p_value,
                "ci_lower": self.ci_lower,
                "ci_upper": self.ci_upper,
            },
            index=pd.Index(self.names, name="term"),
        )

    def summary(self, **kwargs: Any) -> str:
        from regkit.output.summary import coef_summary

        return coef_summary(self, **kwargs)

    def __str__(self) -> str:
        return self.summary()


@dataclass(frozen=True)
class FitResult:
    """Immutable outcome of one least-squares fit.

    Attributes
    ----------
    names : tuple[str, ...]
        Names of the retained (non-collinear) columns, aligned with ``coef``.
    coef : ndarray
        Coefficients of the retained columns.
    dropped_columns : tuple[str, ...]
        Columns excluded by the rank screen.
    residuals, fitted : ndarray
        ``e = y - X b`` on the fitted rows (within-transformed when fixed
        effects were absorbed; structural residuals for IV).
    X : ndarray
        Design used for covariance: retained columns, within-transformed
        when fixed effects were absorbed, with fitted endogenous values for IV.
    leverage : ndarray
        Diagonal of the hat matrix of ``X`` (plus ``1/n_g`` for a single
        absorbed group).
    bread : ndarray
        ``(X'X)^{-1}``.
    sample_mask : ndarray of bool
        Estimator input rows that were fitted.
    fe_dof : int
        Absorbed fixed-effect parameters counted in ``df_resid``.
    converged : bool
        Absorption convergence flag (True without fixed effects).
    """

    names: tuple[str, ...]
    coef: NDArray[np.float64]
    dropped_columns: tuple[str, ...]
    residuals: NDArray[np.float64]
    fitted: NDArray[np.float64]
    X: NDArray[np.float64]
    leverage: NDArray[np.float64]
    bread: NDArray[np.float64]
    rss: float
    tss: float
    n_obs: int
    rank: int
    df_resid: int
    fe_dof: int
    r_squared: float
    adj_r_squared: float
    within_r_squared: float | None
    sample_mask: NDArray[np.bool_]
    converged: bool = True
    warnings: tuple[FitWarning, ...] = ()
    model_info: Mapping[str, Any] = field(default_factory=dict)
    default_cov: CovarianceSpec = field(default_factory=CovarianceSpec)
    design: DesignMatrix | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        for name in ("coef", "residuals", "fitted", "X", "leverage", "bread", "sample_mask"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        object.__setattr__(self, "model_info", MappingProxyType(dict(self.model_info)))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        est = self.model_info.get("Estimator", "fit")
        return f"FitResult({est}, k={len(self.names)}, n={self.n_obs}, R2={self.r_squared:.4f})"

    @property
    def params(self) -> pd.Series:
        return pd.Series(np.array(self.coef), index=list(self.names), name="coef")

    @property
    def sigma2(self) -> float:
        return self.rss / float(self.df_resid)

    # -- covariance -------------------------------------------------------

    def _resolve_ids(self, ids: Any, label: str) -> NDArray[Any]:
        if isinstance(ids, str):
            if self.design is None:
                raise DataError(
                    f"{label} '{ids}' is a column name but the model was not built from data.",
                    column=ids,
                )
            arr = self.design.values(ids)
        else:
            arr = _to_numpy_1d(ids)
            if self.design is not None and arr.shape[0] == self.design.mask.shape[0]:
                # defined on the caller's full frame, before listwise deletion
                arr = arr[self.design.mask]
        arr = _align_with_mask(arr, self.sample_mask, label)
        _ensure_no_missing(arr, label)
        return arr

    def covariance(self, spec: CovarianceSpec | str | None = None) -> CovarianceResult:
        """Covariance of the retained coefficients under ``spec``.

        ``None`` uses the model's default (cluster-robust when the formula
        named cluster variables, classical otherwise).
        """
        spec = self.default_cov if spec is None else CovarianceSpec.coerce(spec)
        if spec.kind in ("cluster", "multiway") and not spec.cluster_list():
            spec = CovarianceSpec(
                kind=spec.kind,
                clusters=self.default_cov.clusters,
                n_jobs=spec.n_jobs,
            )
        lengths = {self.n_obs, int(self.sample_mask.shape[0])}
        if self.design is not None:
            lengths.add(int(self.design.mask.shape[0]))
        clusters = [
            self._resolve_ids(c, f"clusters[{j}]")
            for j, c in enumerate(spec.cluster_list(lengths))
        ]
        time = None
        if spec.kind == "HAC":
            t_src = spec.time if spec.time is not None else self.default_cov.time
            time = None if t_src is None else self._resolve_ids(t_src, "time")
        est = CovarianceEstimator(
            self.X, self.residuals, bread=self.bread, leverage=self.leverage,
            df_resid=self.df_resid,
        )
        return est.compute(spec, clusters=clusters or None, time=time)

    def vcov(self, spec: CovarianceSpec | str | None = None) -> pd.DataFrame:
        V = self.covariance(spec).vcov
        return pd.DataFrame(V, index=list(self.names), columns=list(self.names))

    def coef_table(
        self, spec: CovarianceSpec | str | None = None, *, ci_level: float | None = None,
    ) -> CoefficientTable:
        """Estimates, standard errors, t statistics, p-values and intervals."""
        level = normalize_ci_level(ci_level)
        cov = self.covariance(spec)
        se = np.sqrt(np.clip(np.diag(cov.vcov), 0.0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            tstat = self.coef / se
        df = max(int(cov.df), 1)
        pval = 2.0 * stats.t.sf(np.abs(tstat), df)
        crit = float(stats.t.ppf(1.0 - (1.0 - level) / 2.0, df))
        info = dict(self.model_info)
        info.update(
            {
                "cov_kind": cov.kind,
                "df": df,
                "r_squared": self.r_squared,
                "adj_r_squared": self.adj_r_squared,
            },
        )
        if self.within_r_squared is not None:
            info["within_r_squared"] = self.within_r_squared
        if cov.n_clusters:
            info["n_clusters"] = cov.n_clusters
        if cov.lags is not None:
            info["hac_lags"] = cov.lags
        return CoefficientTable(
            names=self.names,
            estimate=_frozen(self.coef),
            std_error=_frozen(se),
            statistic=_frozen(tstat),
            p_value=_frozen(pval),
            ci_lower=_frozen(self.coef - crit * se),
            ci_upper=_frozen(self.coef + crit * se),
            vcov=_frozen(cov.vcov),
            cov_kind=cov.kind,
            ci_level=level,
            df=df,
            model_info=MappingProxyType(info),
            warnings=self.warnings + cov.warnings,
        )

    def summary(
        self, spec: CovarianceSpec | str | None = None, *, ci_level: float | None = None,
    ) -> str:
        return self.coef_table(spec, ci_level=ci_level).summary()


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------


class BaseEstimator(ABC):
    """Abstract base class for all regkit estimators.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) FE absorption goes through `core.fe`; it happens before solving and
       the solver never sees the dummies.
    3) Covariance goes through `core.covariance`; results can be re-examined
       under any covariance kind without refitting.
    """

    _estimator_name = "base"

    def __init__(self) -> None:
        self._results: FitResult | None = None
        self._design: DesignMatrix | None = None
        self._fe_names: tuple[str, ...] = ()
        self._cluster_names: tuple[str, ...] = ()

    @property
    def design(self) -> DesignMatrix | None:
        """Design matrix captured by ``from_formula`` (if any)."""
        return self._design

    # -- helpers for subclasses -----------------------------------------

    @abstractmethod
    def _n_input(self) -> int:  # pragma: no cover - abstract
        """Number of rows handed to the estimator."""

    def _column(self, ids: Any, label: str) -> NDArray[Any]:
        """Resolve a column name or array to the estimator's input rows."""
        if isinstance(ids, str):
            if self._design is None:
                raise DataError(
                    f"{label} '{ids}' is a column name but the model was not built from data.",
                    column=ids,
                )
            return self._design.values(ids)
        arr = _to_numpy_1d(ids)
        n = self._n_input()
        if arr.shape[0] == n:
            return arr
        if self._design is not None and arr.shape[0] == self._design.mask.shape[0]:
            return arr[self._design.mask]
        raise ValueError(f"{label} has length {arr.shape[0]}, expected {n}.")

    def _fe_arrays(self, fe: Any) -> list[NDArray[Any]]:
        if fe is None:
            fe = self._fe_names
        if isinstance(fe, pd.DataFrame):
            return [fe[c].to_numpy() for c in fe.columns]
        if isinstance(fe, (str, pd.Series)) or (isinstance(fe, np.ndarray) and fe.ndim == 1):
            fe = [fe]
        elif isinstance(fe, np.ndarray):
            fe = [fe[:, j] for j in range(fe.shape[1])]
        return [self._column(g, f"fe[{j}]") for j, g in enumerate(fe)]

    def _default_cov(self, cov: CovarianceSpec | str | None) -> CovarianceSpec:
        if cov is not None:
            return CovarianceSpec.coerce(cov)
        if len(self._cluster_names) == 1:
            return CovarianceSpec("cluster", clusters=list(self._cluster_names))
        if len(self._cluster_names) > 1:
            return CovarianceSpec("multiway", clusters=list(self._cluster_names))
        return CovarianceSpec()

    @staticmethod
    def _rank_warning(dropped: Sequence[str]) -> FitWarning:
        _LOGGER.debug("rank screen dropped %s", list(dropped))
        return emit(
            RankDeficiencyError,
            f"Design is rank deficient; dropped collinear column(s): {', '.join(dropped)}.",
            stacklevel=5,
            dropped=list(dropped),
        )

    def _absorb(
        self,
        X: NDArray[np.float64],
        y: NDArray[np.float64],
        fe_list: list[NDArray[Any]],
        config: fe_core.AbsorbConfig | None,
        Z: NDArray[np.float64] | None = None,
    ) -> fe_core.FETransformResult:
        res = fe_core.absorb(X, y, fe_list, Z=Z, config=config)
        for w in res.warnings:
            _LOGGER.debug("absorption warning: %s", w.message)
        return res

    def _finalize(  # noqa: PLR0913
        self,
        *,
        names: Sequence[str],
        ls: la.LSResult,
        X_cov: NDArray[np.float64],
        residuals: NDArray[np.float64],
        y_raw: NDArray[np.float64],
        y_within: NDArray[np.float64] | None,
        has_const: bool,
        mask: NDArray[np.bool_],
        absorbed: fe_core.FETransformResult | None,
        default_cov: CovarianceSpec,
        warnings: list[FitWarning],
        model_info: dict[str, Any],
    ) -> FitResult:
        """Assemble a FitResult from solver output (shared by OLS and IV)."""
        kept = [nm for nm, k in zip(names, ls.keep) if k]
        dropped = [nm for nm, k in zip(names, ls.keep) if not k]
        if dropped:
            warnings = [*warnings, self._rank_warning(dropped)]

        n = int(residuals.shape[0])
        fe_dof = absorbed.fe_dof if absorbed is not None else 0
        df_resid = n - ls.rank - fe_dof
        if df_resid <= 0:
            raise DataError(
                f"No residual degrees of freedom (n={n}, rank={ls.rank}, absorbed={fe_dof}).",
            )
        rss = float(residuals @ residuals)
        centered = has_const or absorbed is not None
        tss = float(np.sum((y_raw - y_raw.mean()) ** 2)) if centered else float(y_raw @ y_raw)
        r2 = 1.0 - rss / tss if tss > 0 else float("nan")
        adj = 1.0 - (1.0 - r2) * (n - (1 if centered else 0)) / df_resid
        within = None
        if absorbed is not None and y_within is not None:
            tss_w = float(y_within @ y_within)
            within = 1.0 - rss / tss_w if tss_w > 0 else float("nan")

        leverage = ls.leverage
        if absorbed is not None:
            extra = fe_core.fe_leverage(absorbed.fe_codes)
            if extra is not None:
                leverage = leverage + extra

        info = {
            "Estimator": self._estimator_name,
            "n_obs": n,
            "rank": ls.rank,
            "df_resid": df_resid,
            "fe_dof": fe_dof,
            "n_dropped_rows": int(mask.shape[0] - mask.sum()),
            "n_dropped_columns": len(dropped),
            "converged": absorbed.converged if absorbed is not None else True,
        }
        if self._design is not None:
            info["n_dropped_rows"] += self._design.n_dropped
        if absorbed is not None:
            info["fe_iterations"] = absorbed.n_iter
            info["dropped_singletons"] = absorbed.dropped.get("singleton", 0)
        info.update(model_info)

        _LOGGER.debug(
            "%s fit: n=%d rank=%d df_resid=%d rss=%.6g", self._estimator_name, n, ls.rank,
            df_resid, rss,
        )
        result = FitResult(
            names=tuple(kept),
            coef=ls.coef[ls.keep],
            dropped_columns=tuple(dropped),
            residuals=residuals,
            fitted=(y_raw if y_within is None else y_within) - residuals,
            X=X_cov,
            leverage=leverage,
            bread=ls.bread,
            rss=rss,
            tss=tss,
            n_obs=n,
            rank=ls.rank,
            df_resid=df_resid,
            fe_dof=fe_dof,
            r_squared=r2,
            adj_r_squared=adj,
            within_r_squared=within,
            sample_mask=mask,
            converged=bool(info["converged"]),
            warnings=tuple(warnings),
            model_info=info,
            default_cov=default_cov,
            design=self._design,
        )
        self._results = result
        return result

    # -- mandatory API -------------------------------------------------

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> FitResult:  # pragma: no cover - abstract
        """Fit the estimator and return a FitResult (abstract)."""
        ...

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> FitResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def n_obs(self) -> int:
        return self.results.n_obs


def fit_many(
    estimators: Sequence[BaseEstimator],
    *,
    n_jobs: int | None = None,
    **fit_kwargs: Any,
) -> list[FitResult]:
    """Fit independent models, on threads when ``n_jobs > 1``; results keep input order."""
    return la.parallel_map(lambda est: est.fit(**fit_kwargs), estimators, n_jobs=n_jobs)
