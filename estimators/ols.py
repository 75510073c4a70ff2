"""Ordinary Least Squares (OLS) estimator.

This module implements OLS with optional high-dimensional fixed effects
absorption and analytic covariance estimators.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from regkit.core import linalg as la
from regkit.core.design import build_design
from regkit.utils.formula import parse_formula

from .base import BaseEstimator, FitResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from regkit.core.covariance import CovarianceSpec
    from regkit.core.design import DesignMatrix, TermSpec
    from regkit.core.fe import AbsorbConfig


ArrayLike = Union[pd.Series, np.ndarray]
MatrixLike = Union[pd.DataFrame, np.ndarray]

INTERCEPT = "Intercept"


def _with_constant(
    X: NDArray[np.float64], names: list[str],
) -> tuple[NDArray[np.float64], list[str]]:
    """Prepend a column of ones named ``Intercept`` unless one is already present."""
    if INTERCEPT in names:
        return X, names
    ones = np.ones((X.shape[0], 1), dtype=np.float64)
    return np.hstack([ones, X]), [INTERCEPT, *names]


class OLS(BaseEstimator):
    """Ordinary Least Squares regression.

    Estimates y = Xb + u, optionally absorbing one or more fixed-effect
    groups first (Frisch-Waugh-Lovell). Inference is analytic: any
    covariance kind of :class:`~regkit.core.covariance.CovarianceSpec` can
    be requested from the returned :class:`~regkit.estimators.base.FitResult`
    without refitting.

    Parameters
    ----------
    y : array-like, shape (n,)
        Dependent variable.
    X : array-like, shape (n, p)
        Regressors. Can be numpy array or pandas DataFrame.
    add_const : bool, default=True
        If True, prepends a constant column named ``Intercept``.
    var_names : Sequence[str], optional
        Column names; defaults to ``X.columns`` or ``x0, x1, ...``.

    Examples
    --------
    >>> import numpy as np
    >>> import pandas as pd
    >>> from regkit import OLS
    >>> rng = np.random.default_rng(0)
    >>> df = pd.DataFrame({"x": rng.normal(size=200), "firm": rng.integers(0, 20, 200)})
    >>> df["y"] = 1.0 + 2.0 * df["x"] + rng.normal(size=200)
    >>> res = OLS.from_formula("y ~ x | firm | 0 | firm", df).fit()
    >>> table = res.coef_table()            # cluster-robust by firm
    >>> table_hc = res.coef_table("HC1")    # same fit, other covariance

    Notes
    -----
    - All linear algebra uses pivoted QR (no explicit inversion of X'X).
    - With absorbed fixed effects the intercept is part of the absorbed
      groups and is removed from X.
    - Collinear columns are dropped with a ``RankDeficiencyError`` warning.
    """

    _estimator_name = "OLS"

    def __init__(
        self,
        y: ArrayLike,
        X: MatrixLike,
        *,
        add_const: bool = True,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = [str(c) for c in X.columns]
        X_arr = np.asarray(X, dtype=np.float64)
        if X_arr.ndim == 1:
            X_arr = X_arr.reshape(-1, 1)
        names = list(var_names) if var_names is not None else [
            f"x{i}" for i in range(X_arr.shape[1])
        ]
        if len(names) != X_arr.shape[1]:
            raise ValueError("var_names must have one entry per column of X.")
        if add_const:
            X_arr, names = _with_constant(X_arr, names)
        self.y_orig: NDArray[np.float64] = np.asarray(y, dtype=np.float64).reshape(-1)
        self.X_orig: NDArray[np.float64] = X_arr
        if self.y_orig.shape[0] != self.X_orig.shape[0]:
            raise ValueError("y and X must have the same number of rows.")
        self._var_names = names

    @property
    def var_names(self) -> list[str]:
        return list(self._var_names)

    def _n_input(self) -> int:
        return int(self.X_orig.shape[0])

    # -- constructors ---------------------------------------------------

    @classmethod
    def from_design(
        cls,
        design: DesignMatrix,
        *,
        fe: Sequence[str] = (),
        clusters: Sequence[str] = (),
    ) -> OLS:
        """Wrap a prebuilt design; ``fe`` and ``clusters`` name design columns."""
        model = cls(design.y, design.X, add_const=False, var_names=design.column_names)
        model._design = design
        model._fe_names = tuple(fe)
        model._cluster_names = tuple(clusters)
        return model

    @classmethod
    def from_terms(
        cls,
        data: pd.DataFrame,
        spec: TermSpec,
        *,
        fe: Sequence[str] = (),
        clusters: Sequence[str] = (),
    ) -> OLS:
        """Build the design for ``spec`` on ``data`` and wrap it."""
        design = build_design(data, spec, extra_columns=[*fe, *clusters])
        return cls.from_design(design, fe=fe, clusters=clusters)

    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        *,
        baseline: str = "sorted",
    ) -> OLS:
        """Create an OLS model from ``y ~ x | fe | 0 | clusters``.

        An IV part (``endog ~ instruments``) is rejected; use
        :class:`~regkit.estimators.iv.IV2SLS`.
        """
        parsed = parse_formula(formula, data, baseline=baseline)
        if parsed.is_iv:
            raise ValueError("Formula has an IV part; use IV2SLS.from_formula instead.")
        design = build_design(data, parsed.terms, extra_columns=parsed.extra_columns())
        return cls.from_design(design, fe=parsed.fe, clusters=parsed.clusters)

    # -- fitting --------------------------------------------------------

    def fit(
        self,
        *,
        cov: CovarianceSpec | str | None = None,
        fe: Any = None,
        absorb: AbsorbConfig | None = None,
        rank_policy: str = "stata",
    ) -> FitResult:
        """Fit the model.

        Parameters
        ----------
        cov : CovarianceSpec or str, optional
            Default covariance of the result. ``None`` means cluster-robust
            on the formula's cluster variables when present, else classical.
        fe : column name(s) or array(s), optional
            Fixed-effect groups to absorb; defaults to the formula's groups.
        absorb : AbsorbConfig, optional
            Alternating-projection settings.
        rank_policy : {"stata", "r"}
            Tolerance rule of the collinearity screen.
        """
        fe_list = self._fe_arrays(fe)
        names = list(self._var_names)
        X = self.X_orig
        y = self.y_orig
        n = X.shape[0]
        has_const = INTERCEPT in names

        absorbed = None
        fit_warnings = []
        mask = np.ones(n, dtype=bool)
        y_within = None
        if fe_list:
            if has_const:
                keep_cols = [j for j, nm in enumerate(names) if nm != INTERCEPT]
                X = X[:, keep_cols]
                names = [names[j] for j in keep_cols]
            absorbed = self._absorb(X, y, fe_list, absorb)
            fit_warnings.extend(absorbed.warnings)
            mask = absorbed.mask
            X_fit = absorbed.X
            y_within = absorbed.y.reshape(-1)
            y_fit = y_within
        else:
            X_fit, y_fit = X, y

        ls = la.lstsq_qr(X_fit, y_fit, rank_policy=rank_policy)
        return self._finalize(
            names=names,
            ls=ls,
            X_cov=X_fit[:, ls.keep],
            residuals=ls.residuals,
            y_raw=y[mask],
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
            },
        )
