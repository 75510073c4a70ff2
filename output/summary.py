"""Plain-text rendering of a coefficient table.

Renders one :class:`~regkit.estimators.base.CoefficientTable` for the
console: estimates, standard errors, t statistics, p-values and interval
bounds, followed by a short footer of model statistics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import numpy as np
from tabulate import tabulate

if TYPE_CHECKING:
    from regkit.estimators.base import CoefficientTable

__all__ = ["coef_summary"]

_FOOTER_KEYS = (
    ("Estimator", "Estimator"),
    ("cov_kind", "Covariance"),
    ("n_obs", "Observations"),
    ("df", "t df"),
    ("r_squared", "R-squared"),
    ("adj_r_squared", "Adj. R-squared"),
    ("within_r_squared", "Within R-squared"),
    ("fe_dof", "Absorbed FE dof"),
    ("n_clusters", "Clusters"),
    ("hac_lags", "HAC lags"),
    ("n_dropped_rows", "Dropped rows"),
    ("n_dropped_columns", "Dropped columns"),
    ("converged", "FE converged"),
)


def _truncate_text(s: str, width: int) -> str:
    return s if len(s) <= width else s[: max(1, width - 1)] + "…"


def _fmt(v: Any, spec: str) -> str:
    if isinstance(v, (bool, np.bool_)):
        return "yes" if v else "no"
    if isinstance(v, (int, np.integer)):
        return str(int(v))
    if isinstance(v, (float, np.floating)):
        return "" if not np.isfinite(v) else format(float(v), spec)
    if isinstance(v, tuple):
        return " x ".join(_fmt(x, spec) for x in v)
    return str(v)


def coef_summary(
    table: CoefficientTable,
    *,
    coef_format: str = ".6g",
    pvalue_format: str = ".4f",
    col_width: int = 24,
    footer: bool = True,
) -> str:
    """Format ``table`` as aligned plain text (no significance stars)."""
    lo = 100.0 * (1.0 - table.ci_level) / 2.0
    headers = [
        "",
        "Estimate",
        "Std. Error",
        "t value",
        "Pr(>|t|)",
        f"{lo:g}%",
        f"{100.0 - lo:g}%",
    ]
    rows = [
        [
            _truncate_text(name, col_width),
            _fmt(table.estimate[j], coef_format),
            _fmt(table.std_error[j], coef_format),
            _fmt(table.statistic[j], ".3f"),
            _fmt(table.p_value[j], pvalue_format),
            _fmt(table.ci_lower[j], coef_format),
            _fmt(table.ci_upper[j], coef_format),
        ]
        for j, name in enumerate(table.names)
    ]
    body = cast("str", tabulate(rows, headers=headers, stralign="right", disable_numparse=True))
    if not footer:
        return body

    info = dict(table.model_info)
    footer_rows = [
        [label, _fmt(info[key], ".4f")]
        for key, label in _FOOTER_KEYS
        if key in info and info[key] is not None
    ]
    if table.warnings:
        footer_rows.extend(["Warning", w.message] for w in table.warnings)
    foot = cast("str", tabulate(footer_rows, tablefmt="plain", disable_numparse=True))
    return f"{body}\n\n{foot}"
