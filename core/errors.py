"""Error taxonomy and structured fit warnings.

Fatal conditions raise subclasses of :class:`RegkitError`. Recoverable
conditions are warning categories: they are emitted through :mod:`warnings`
and also recorded as :class:`FitWarning` entries on fit results so batch
pipelines can inspect them without installing warning filters.
"""

# regkit/core/errors.py
from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "ClusterError",
    "ConvergenceError",
    "DataError",
    "FitWarning",
    "InstrumentError",
    "RankDeficiencyError",
    "RegkitError",
    "RegkitWarning",
    "emit",
]


class RegkitError(Exception):
    """Base class for fatal regkit errors."""


class DataError(RegkitError, ValueError):
    """Missing/unknown columns or degenerate terms; raised before fitting."""

    def __init__(self, message: str, *, column: str | None = None) -> None:
        super().__init__(message)
        self.column = column


class InstrumentError(RegkitError, ValueError):
    """The structural equation is under-identified."""

    def __init__(self, message: str, *, n_endog: int = 0, n_instruments: int = 0) -> None:
        super().__init__(message)
        self.n_endog = n_endog
        self.n_instruments = n_instruments


class RegkitWarning(RuntimeWarning):
    """Base category for recoverable conditions."""


class RankDeficiencyError(RegkitWarning):
    """Linearly dependent regressors were dropped from the fit."""


class ConvergenceError(RegkitWarning):
    """Fixed-effect absorption hit its iteration cap before converging."""


class ClusterError(RegkitWarning):
    """Cluster-robust covariance is statistically unreliable."""


_KINDS: dict[type[RegkitWarning], str] = {
    RankDeficiencyError: "rank_deficiency",
    ConvergenceError: "convergence",
    ClusterError: "cluster",
}


@dataclass(frozen=True)
class FitWarning:
    """Structured record of a recoverable condition.

    Attributes
    ----------
    kind : str
        One of ``"rank_deficiency"``, ``"convergence"``, ``"cluster"``.
    message : str
        Human-readable description.
    detail : dict
        Kind-specific payload (dropped column names, iteration counts, ...).
    """

    kind: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> type[RegkitWarning]:
        for cls, name in _KINDS.items():
            if name == self.kind:
                return cls
        return RegkitWarning


def emit(
    category: type[RegkitWarning],
    message: str,
    *,
    stacklevel: int = 3,
    **detail: Any,
) -> FitWarning:
    """Issue ``message`` as a warning of ``category`` and return its record."""
    warnings.warn(message, category, stacklevel=stacklevel)
    return FitWarning(kind=_KINDS.get(category, "other"), message=message, detail=dict(detail))
