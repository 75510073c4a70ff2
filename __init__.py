"""regkit: regression computation engine.

Linear models with heteroskedasticity-, cluster- and autocorrelation-robust
covariance estimators, two-stage least squares, and absorption of
high-dimensional categorical fixed effects.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "IV2SLS",
    "OLS",
    "AbsorbConfig",
    "BaseEstimator",
    "ClusterError",
    "CoefficientTable",
    "Continuous",
    "ConvergenceError",
    "CovarianceEstimator",
    "CovarianceSpec",
    "DataError",
    "DesignMatrix",
    "Factor",
    "FitResult",
    "FitWarning",
    "InstrumentError",
    "Interaction",
    "RankDeficiencyError",
    "RegkitError",
    "RegkitWarning",
    "TermSpec",
    "absorb",
    "build_design",
    "coef_summary",
    "fit_many",
    "parse_formula",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("regkit.estimators.base", "BaseEstimator"),
    "CoefficientTable": ("regkit.estimators.base", "CoefficientTable"),
    "FitResult": ("regkit.estimators.base", "FitResult"),
    "fit_many": ("regkit.estimators.base", "fit_many"),
    "OLS": ("regkit.estimators.ols", "OLS"),
    "IV2SLS": ("regkit.estimators.iv", "IV2SLS"),
    "AbsorbConfig": ("regkit.core.fe", "AbsorbConfig"),
    "absorb": ("regkit.core.fe", "absorb"),
    "CovarianceEstimator": ("regkit.core.covariance", "CovarianceEstimator"),
    "CovarianceSpec": ("regkit.core.covariance", "CovarianceSpec"),
    "Continuous": ("regkit.core.design", "Continuous"),
    "Factor": ("regkit.core.design", "Factor"),
    "Interaction": ("regkit.core.design", "Interaction"),
    "TermSpec": ("regkit.core.design", "TermSpec"),
    "DesignMatrix": ("regkit.core.design", "DesignMatrix"),
    "build_design": ("regkit.core.design", "build_design"),
    "parse_formula": ("regkit.utils.formula", "parse_formula"),
    "coef_summary": ("regkit.output.summary", "coef_summary"),
    "RegkitError": ("regkit.core.errors", "RegkitError"),
    "RegkitWarning": ("regkit.core.errors", "RegkitWarning"),
    "DataError": ("regkit.core.errors", "DataError"),
    "InstrumentError": ("regkit.core.errors", "InstrumentError"),
    "RankDeficiencyError": ("regkit.core.errors", "RankDeficiencyError"),
    "ConvergenceError": ("regkit.core.errors", "ConvergenceError"),
    "ClusterError": ("regkit.core.errors", "ClusterError"),
    "FitWarning": ("regkit.core.errors", "FitWarning"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'regkit' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
