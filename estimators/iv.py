"""Two-Stage Least Squares (2SLS) estimator.

This module implements 2SLS with optional fixed effects absorption and a
first-stage partial F statistic per endogenous regressor.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from regkit.core import linalg as la
from regkit.core.design import build_design
from regkit.core.errors import InstrumentError
from regkit.utils.formula import parse_formula

from .base import BaseEstimator, FitResult
from .ols import INTERCEPT, _with_constant

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from regkit.core.covariance import CovarianceSpec
    from regkit.core.fe import AbsorbConfig

ArrayLike = Union[pd.Series, np.ndarray]
MatrixLike = Union[pd.DataFrame, np.ndarray]


def _as_matrix(A: MatrixLike | None, n: int) -> NDArray[np.float64]:
    if A is None:
        return np.zeros((n, 0), dtype=np.float64)
    arr = np.asarray(A, dtype=np.float64)
    return arr.reshape(-1, 1) if arr.ndim == 1 else arr


def _names_for(A: MatrixLike | None, names: Sequence[str] | None, prefix: str, k: int) -> list[str]:
    if names is not None:
        out = list(names)
    elif isinstance(A, pd.DataFrame):
        out = [str(c) for c in A.columns]
    elif isinstance(A, pd.Series) and A.name is not None:
        out = [str(A.name)]
    else:
        out = [f"{prefix}{i}" for i in range(k)]
    if len(out) != k:
        raise ValueError(f"Expected {k} names for the {prefix!r} block, got {len(out)}.")
    return out


def _column_space(A: NDArray[np.float64], rank_policy: str) -> tuple[NDArray[np.float64], int]:
    """Orthonormal basis of the column space of ``A`` and its numerical rank."""
    if A.shape[1] == 0:
        return np.zeros((A.shape[0], 0), dtype=np.float64), 0
    Q, Rm, _P = la.qr(A, pivoting=True)
    r = la.rank_from_diag(np.diag(Rm), A.shape[1], mode=rank_policy)
    return Q[:, :r], r


def _project(Qr: NDArray[np.float64], B: NDArray[np.float64]) -> NDArray[np.float64]:
    return Qr @ (Qr.T @ B)


def _first_stage_f(  # noqa: PLR0913
    W: NDArray[np.float64],
    F: NDArray[np.float64],
    X_endog: NDArray[np.float64],
    *,
    endog_names: Sequence[str],
    fe_dof: int,
    rank_policy: str,
) -> dict[str, dict[str, float]]:
    """Partial F of the excluded instruments in each first-stage regression."""
    Qw, rw = _column_space(W, rank_policy)
    Qf, rf = _column_space(F, rank_policy)
    n = F.shape[0]
    q = rf - rw
    df_u = n - rf - fe_dof
    out: dict[str, dict[str, float]] = {}
    for j, nm in enumerate(endog_names):
        x = X_endog[:, j]
        resid_r = x - _project(Qw, x) if rw else x
        resid_u = x - _project(Qf, x)
        rss_r = float(resid_r @ resid_r)
        rss_u = float(resid_u @ resid_u)
        if q <= 0 or df_u <= 0 or rss_u <= 0.0:
            stat = float("nan")
        else:
            stat = ((rss_r - rss_u) / q) / (rss_u / df_u)
        out[nm] = {"F": stat, "df_num": q, "df_denom": df_u}
    return out


class IV2SLS(BaseEstimator):
    """Two-Stage Least Squares (2SLS) estimator.

    Estimates y = W a + X b + u, with endogenous X instrumented by the full
    instrument set ``[W, Z]``.

    Parameters
    ----------
    y : array-like, shape (n,)
        Dependent variable.
    exog : array-like, shape (n, k_w), optional
        Exogenous regressors (included instruments).
    endog : array-like, shape (n, k_x)
        Endogenous regressors.
    instruments : array-like, shape (n, k_z)
        Excluded instruments. ``k_z >= k_x`` is required.
    add_const : bool, default=True
        Prepend ``Intercept`` to the exogenous block.

    Notes
    -----
    - Stage 1 projects each endogenous column on ``[W, Z]``; stage 2 solves
      the least-squares problem on ``[W, X_hat]`` with the same QR solver
      as OLS.
    - Residuals use the observed endogenous values: ``e = y - [W, X] b``.
      Covariance estimators combine them with the stage-2 design ``[W, X_hat]``.
    - Fixed effects are absorbed jointly from ``y``, ``W``, ``X`` and ``Z``
      before either stage.
    - Under-identification (fewer excluded instruments than endogenous
      regressors, also after the rank screen) raises ``InstrumentError``.
    """

    _estimator_name = "IV2SLS"

    def __init__(  # noqa: PLR0913
        self,
        y: ArrayLike,
        exog: MatrixLike | None,
        endog: MatrixLike,
        instruments: MatrixLike,
        *,
        add_const: bool = True,
        exog_names: Sequence[str] | None = None,
        endog_names: Sequence[str] | None = None,
        instrument_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        self.y_orig: NDArray[np.float64] = np.asarray(y, dtype=np.float64).reshape(-1)
        n = self.y_orig.shape[0]
        W = _as_matrix(exog, n)
        X = _as_matrix(endog, n)
        Z = _as_matrix(instruments, n)
        w_names = _names_for(exog, exog_names, "w", W.shape[1])
        self._endog_names = _names_for(endog, endog_names, "x", X.shape[1])
        self._instrument_names = _names_for(instruments, instrument_names, "z", Z.shape[1])
        if add_const:
            W, w_names = _with_constant(W, w_names)
        for label, A in (("exog", W), ("endog", X), ("instruments", Z)):
            if A.shape[0] != n:
                raise ValueError(f"{label} must have {n} rows.")
        if X.shape[1] == 0:
            raise ValueError("IV2SLS requires at least one endogenous regressor.")
        if Z.shape[1] < X.shape[1]:
            raise InstrumentError(
                f"Under-identified: {X.shape[1]} endogenous regressor(s) but only "
                f"{Z.shape[1]} excluded instrument(s).",
                n_endog=X.shape[1],
                n_instruments=Z.shape[1],
            )
        self.W_orig = W
        self.X_endog_orig = X
        self.Z_orig = Z
        self._exog_names = w_names

    @property
    def var_names(self) -> list[str]:
        return [*self._exog_names, *self._endog_names]

    def _n_input(self) -> int:
        return int(self.y_orig.shape[0])

    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        *,
        baseline: str = "sorted",
    ) -> IV2SLS:
        """Create a 2SLS model from ``y ~ exog | fe | endog ~ instruments | clusters``."""
        parsed = parse_formula(formula, data, baseline=baseline)
        if not parsed.is_iv:
            raise ValueError("Formula has no 'endog ~ instruments' part.")
        design = build_design(data, parsed.terms, extra_columns=parsed.extra_columns())
        X_endog, endog_cols = design.encode(parsed.endog)
        Z, z_cols = design.encode(parsed.instruments)
        model = cls(
            design.y,
            design.X,
            X_endog,
            Z,
            add_const=False,
            exog_names=design.column_names,
            endog_names=[c.name for c in endog_cols],
            instrument_names=[c.name for c in z_cols],
        )
        model._design = design
        model._fe_names = parsed.fe
        model._cluster_names = parsed.clusters
        return model

    def fit(
        self,
        *,
        cov: CovarianceSpec | str | None = None,
        fe: Any = None,
        absorb: AbsorbConfig | None = None,
        rank_policy: str = "stata",
    ) -> FitResult:
        """Fit by two-stage least squares; arguments as in :meth:`OLS.fit`."""
        fe_list = self._fe_arrays(fe)
        W, w_names = self.W_orig, list(self._exog_names)
        X, Z, y = self.X_endog_orig, self.Z_orig, self.y_orig
        n = y.shape[0]
        has_const = INTERCEPT in w_names

        absorbed = None
        fit_warnings = []
        mask = np.ones(n, dtype=bool)
        y_within = None
        if fe_list:
            if has_const:
                keep_cols = [j for j, nm in enumerate(w_names) if nm != INTERCEPT]
                W = W[:, keep_cols]
                w_names = [w_names[j] for j in keep_cols]
            k_w = W.shape[1]
            absorbed = self._absorb(np.hstack([W, X]), y, fe_list, absorb, Z=Z)
            fit_warnings.extend(absorbed.warnings)
            mask = absorbed.mask
            W, X = absorbed.X[:, :k_w], absorbed.X[:, k_w:]
            Z = absorbed.Z
            y_within = absorbed.y.reshape(-1)
            y_fit = y_within
        else:
            y_fit = y

        # Stage 1: project endogenous regressors on the full instrument set
        F = np.hstack([W, Z])
        Qf, rf = _column_space(F, rank_policy)
        _Qw, rw = _column_space(W, rank_policy)
        fe_dof = absorbed.fe_dof if absorbed is not None else 0
        if rf - rw < X.shape[1]:
            raise InstrumentError(
                f"Under-identified after the rank screen: {X.shape[1]} endogenous regressor(s) "
                f"but {rf - rw} linearly independent excluded instrument(s).",
                n_endog=X.shape[1],
                n_instruments=rf - rw,
            )
        X_hat = _project(Qf, X)
        first_stage = _first_stage_f(
            W, F, X, endog_names=self._endog_names, fe_dof=fe_dof, rank_policy=rank_policy,
        )

        # Stage 2: least squares on [W, X_hat]; residuals from observed X
        X2 = np.hstack([W, X_hat])
        ls = la.lstsq_qr(X2, y_fit, rank_policy=rank_policy)
        X_struct = np.hstack([W, X])[:, ls.keep]
        residuals = y_fit - X_struct @ ls.coef[ls.keep]

        return self._finalize(
            names=[*w_names, *self._endog_names],
            ls=ls,
            X_cov=X2[:, ls.keep],
            residuals=residuals,
            y_raw=self.y_orig[mask],
            y_within=y_within,
            has_const=has_const,
            mask=mask,
            absorbed=absorbed,
            default_cov=self._default_cov(cov),
            warnings=fit_warnings,
            model_info={
                "rank_policy": rank_policy,
                "n_fe_groups": len(fe_list),
                "intercept_absorbed": bool(fe_list and has_const),
                "endogenous": list(self._endog_names),
                "instruments": list(self._instrument_names),
                "first_stage": first_stage,
            },
        )
