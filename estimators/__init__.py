"""Estimator exports with lazy loading.

Public estimator classes and result containers. Uses lazy imports to avoid
circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "IV2SLS",
    "OLS",
    "BaseEstimator",
    "CoefficientTable",
    "FitResult",
    "fit_many",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("regkit.estimators.base", "BaseEstimator"),
    "CoefficientTable": ("regkit.estimators.base", "CoefficientTable"),
    "FitResult": ("regkit.estimators.base", "FitResult"),
    "fit_many": ("regkit.estimators.base", "fit_many"),
    "OLS": ("regkit.estimators.ols", "OLS"),
    "IV2SLS": ("regkit.estimators.iv", "IV2SLS"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'regkit.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
