"""Term specification and design-matrix construction.

A model is described by an immutable term tree (:class:`Continuous`,
:class:`Factor`, :class:`Interaction`) bundled in a :class:`TermSpec`. The
tree is validated and encoded against a DataFrame once by
:func:`build_design`; estimators reuse the resulting :class:`DesignMatrix`
across fits.

Factor coding
-------------
Every factor contributes ``levels - 1`` indicator columns. Levels are those
present on the rows that survive listwise deletion. The omitted (baseline)
level is chosen by an explicit rule:

- ``baseline="sorted"`` (default): the first level in sorted order. For a
  pandas ``Categorical`` column the declared category order is used instead.
- ``baseline="first_seen"``: the first level in row order.
- ``reference=<level>``: the given level, which must be present.

Column names follow the patsy convention: ``Intercept``, ``x``,
``g[T.b]`` and ``x:g[T.b]``. An interaction brings its operands in as
parent terms unless built with ``include_parents=False``.
"""

# regkit/core/design.py
from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from .errors import DataError

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ColumnInfo",
    "Continuous",
    "DesignMatrix",
    "Factor",
    "Interaction",
    "Term",
    "TermSpec",
    "build_design",
    "infer_term",
]

_BASELINES = ("sorted", "first_seen")


# ---------------------------------------------------------------------
# Term tree
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Continuous:
    """A numeric column entered verbatim."""

    name: str

    @property
    def label(self) -> str:
        return self.name

    def variables(self) -> tuple[str, ...]:
        return (self.name,)


@dataclass(frozen=True)
class Factor:
    """A categorical column expanded into ``levels - 1`` indicators."""

    name: str
    baseline: str = "sorted"
    reference: Hashable | None = None

    def __post_init__(self) -> None:
        if self.baseline not in _BASELINES:
            msg = f"baseline must be one of {_BASELINES}, got {self.baseline!r}"
            raise ValueError(msg)

    @property
    def label(self) -> str:
        return self.name

    def variables(self) -> tuple[str, ...]:
        return (self.name,)


@dataclass(frozen=True)
class Interaction:
    """Product of two terms (cross-indicator product for factors).

    With ``include_parents`` (the default) the operands enter the design as
    terms of their own, ahead of the product, unless the ``TermSpec``
    already lists them. ``a:b`` in a formula is a pure interaction and
    sets it to False.
    """

    left: Term
    right: Term
    include_parents: bool = True

    @property
    def label(self) -> str:
        return f"{self.left.label}:{self.right.label}"

    def variables(self) -> tuple[str, ...]:
        return self.left.variables() + self.right.variables()

    def leaves(self) -> tuple[Continuous | Factor, ...]:
        out: list[Continuous | Factor] = []
        for side in (self.left, self.right):
            if isinstance(side, Interaction):
                out.extend(side.leaves())
            else:
                out.append(side)
        return tuple(out)

    def parents(self) -> tuple[Term, ...]:
        """Operands, lower-order parents of nested operands first."""
        out: list[Term] = []
        for side in (self.left, self.right):
            if isinstance(side, Interaction) and side.include_parents:
                out.extend(side.parents())
            out.append(side)
        return tuple(out)


Term = Union[Continuous, Factor, Interaction]


@dataclass(frozen=True)
class TermSpec:
    """Response plus an ordered tuple of regressor terms.

    ``intercept`` adds a leading column of ones named ``Intercept``.
    """

    response: str
    terms: tuple[Term, ...] = ()
    intercept: bool = True

    def __post_init__(self) -> None:
        # accept any iterable of terms but store a tuple
        object.__setattr__(self, "terms", tuple(self.terms))
        for t in self.terms:
            if not isinstance(t, (Continuous, Factor, Interaction)):
                msg = f"Unsupported term {t!r}; use Continuous, Factor or Interaction."
                raise TypeError(msg)

    def variables(self) -> tuple[str, ...]:
        """Every column referenced by the response and the terms, in first-use order."""
        seen: dict[str, None] = {self.response: None}
        for t in self.terms:
            for v in t.variables():
                seen.setdefault(v, None)
        return tuple(seen)


def infer_term(data: pd.DataFrame, name: str) -> Continuous | Factor:
    """Tag a column by its dtype: numeric -> Continuous, anything else -> Factor.

    Boolean columns are factors.
    """
    if name not in data.columns:
        raise DataError(f"Column '{name}' not found in data.", column=name)
    s = data[name]
    if pd.api.types.is_bool_dtype(s) or not pd.api.types.is_numeric_dtype(s):
        return Factor(name)
    return Continuous(name)


# ---------------------------------------------------------------------
# Design matrix
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnInfo:
    """Provenance of one design column."""

    name: str
    term: str
    kind: str  # "intercept" | "continuous" | "dummy" | "interaction"
    level: Any = None


@dataclass(frozen=True)
class DesignMatrix:
    """Encoded design on the rows surviving listwise deletion.

    Attributes
    ----------
    X : ndarray, shape (n, p)
    y : ndarray, shape (n,)
    columns : tuple[ColumnInfo, ...]
    mask : ndarray of bool
        True for rows of the input frame that were kept.
    dropped_index : pandas.Index
        Labels of the rows removed by listwise deletion.
    baselines : Mapping[str, Any]
        Omitted level of every factor, keyed by factor name.
    spec : TermSpec
    """

    X: NDArray[np.float64]
    y: NDArray[np.float64]
    columns: tuple[ColumnInfo, ...]
    mask: NDArray[np.bool_]
    dropped_index: pd.Index
    baselines: Mapping[str, Any]
    spec: TermSpec
    frame: pd.DataFrame = field(repr=False, compare=False)
    _levels: Mapping[Factor, tuple[Any, ...]] = field(repr=False, compare=False, default_factory=dict)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_dropped(self) -> int:
        return int(len(self.dropped_index))

    @property
    def has_intercept(self) -> bool:
        return any(c.kind == "intercept" for c in self.columns)

    def values(self, name: str) -> NDArray[Any]:
        """Values of a referenced column on the surviving rows."""
        if name not in self.frame.columns:
            raise DataError(
                f"Column '{name}' was not referenced when the design was built.", column=name,
            )
        return self.frame[name].to_numpy()

    def encode(self, terms: Iterable[Term]) -> tuple[NDArray[np.float64], list[ColumnInfo]]:
        """Encode additional terms on the surviving rows (no intercept).

        Used for endogenous regressors and instruments, whose columns must
        already have been listed as extra columns at build time.
        """
        levels = dict(self._levels)
        baselines = dict(self.baselines)
        blocks: list[NDArray[np.float64]] = []
        infos: list[ColumnInfo] = []
        for t in _with_parents(terms):
            for v in t.variables():
                if v not in self.frame.columns:
                    raise DataError(
                        f"Column '{v}' was not referenced when the design was built.", column=v,
                    )
            mat, cols = _encode_term(self.frame, t, levels, baselines)
            blocks.append(mat)
            infos.extend(cols)
        n = self.n_obs
        X = np.hstack(blocks) if blocks else np.zeros((n, 0), dtype=np.float64)
        return X, infos


def _is_numeric(s: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(s) and not isinstance(s.dtype, pd.CategoricalDtype)


def _factor_levels(s: pd.Series, term: Factor) -> tuple[Any, ...]:
    """Ordered levels present in ``s``; the first one is the baseline."""
    present = pd.unique(s.to_numpy())
    if isinstance(s.dtype, pd.CategoricalDtype):
        seen = set(present)
        ordered = [lvl for lvl in s.cat.categories if lvl in seen]
    elif term.baseline == "first_seen":
        ordered = list(present)
    else:
        try:
            ordered = sorted(present)
        except TypeError as exc:
            raise DataError(
                f"Levels of factor '{term.name}' cannot be sorted; use baseline='first_seen' "
                "or an explicit reference level.",
                column=term.name,
            ) from exc
    if len(ordered) < 2:
        raise DataError(
            f"Factor '{term.name}' has {len(ordered)} level(s) after dropping incomplete rows; "
            "at least two are required.",
            column=term.name,
        )
    if term.reference is not None:
        if term.reference not in ordered:
            raise DataError(
                f"Reference level {term.reference!r} not present in factor '{term.name}'.",
                column=term.name,
            )
        ordered.remove(term.reference)
        ordered.insert(0, term.reference)
    return tuple(ordered)


def _encode_leaf(
    frame: pd.DataFrame,
    term: Continuous | Factor,
    levels: dict[Factor, tuple[Any, ...]],
    baselines: dict[str, Any],
) -> tuple[NDArray[np.float64], list[tuple[str, str, Any]]]:
    s = frame[term.name]
    if isinstance(term, Continuous):
        if not _is_numeric(s):
            raise DataError(
                f"Column '{term.name}' is not numeric and cannot enter as a continuous term; "
                f"use C({term.name}) for a factor.",
                column=term.name,
            )
        return s.to_numpy(dtype=np.float64).reshape(-1, 1), [(term.name, "continuous", None)]

    if term not in levels:
        levels[term] = _factor_levels(s, term)
        baselines[term.name] = levels[term][0]
    lv = levels[term]
    values = s.to_numpy()
    cols = [(values == level).astype(np.float64) for level in lv[1:]]
    names = [(f"{term.name}[T.{level}]", "dummy", level) for level in lv[1:]]
    return np.column_stack(cols), names


def _encode_term(
    frame: pd.DataFrame,
    term: Term,
    levels: dict[Factor, tuple[Any, ...]],
    baselines: dict[str, Any],
) -> tuple[NDArray[np.float64], list[ColumnInfo]]:
    if not isinstance(term, Interaction):
        mat, names = _encode_leaf(frame, term, levels, baselines)
        return mat, [ColumnInfo(name, term.label, kind, level) for name, kind, level in names]

    mat = np.ones((frame.shape[0], 1), dtype=np.float64)
    names: list[tuple[str, Any]] = [("", None)]
    for leaf in term.leaves():
        leaf_mat, leaf_names = _encode_leaf(frame, leaf, levels, baselines)
        # cross product, left operand varying slowest
        mat = np.einsum("ni,nj->nij", mat, leaf_mat).reshape(mat.shape[0], -1)
        names = [
            (f"{a}:{b}" if a else b, lb if lb is not None else la)
            for a, la in names
            for b, _kind, lb in leaf_names
        ]
    return mat, [ColumnInfo(name, term.label, "interaction", level) for name, level in names]


def _term_key(term: Term) -> tuple[str, str]:
    return (type(term).__name__, term.label)


def _with_parents(terms: Iterable[Term]) -> list[Term]:
    """Encoding order: each interaction preceded by parents not listed elsewhere."""
    terms = list(terms)
    seen = {_term_key(t) for t in terms}
    out: list[Term] = []
    for t in terms:
        if isinstance(t, Interaction) and t.include_parents:
            for parent in t.parents():
                key = _term_key(parent)
                if key not in seen:
                    seen.add(key)
                    out.append(parent)
        out.append(t)
    return out


def _missing_rows(frame: pd.DataFrame) -> NDArray[np.bool_]:
    """True for rows with a missing value (or +/-inf in a numeric column)."""
    bad = frame.isna().to_numpy().any(axis=1) if frame.shape[1] else np.zeros(frame.shape[0], bool)
    for col in frame.columns:
        s = frame[col]
        if _is_numeric(s) and not pd.api.types.is_bool_dtype(s):
            bad |= ~np.isfinite(s.to_numpy(dtype=np.float64, na_value=np.nan))
    return bad


def build_design(
    data: pd.DataFrame,
    spec: TermSpec,
    *,
    extra_columns: Sequence[str] = (),
) -> DesignMatrix:
    """Validate ``spec`` against ``data`` and encode it.

    Rows with a missing value in the response, any regressor, or any of
    ``extra_columns`` (fixed-effect groups, clusters, instruments, time
    ordering) are removed before factor levels are computed.

    Raises
    ------
    DataError
        Unknown column, non-numeric response or continuous term, factor
        with fewer than two surviving levels, or an empty sample.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError("data must be a pandas DataFrame.")
    if data.index.has_duplicates:
        raise DataError("Input DataFrame index must be unique for deterministic row mapping.")

    referenced: dict[str, None] = dict.fromkeys(spec.variables())
    for col in extra_columns:
        referenced.setdefault(col, None)
    for col in referenced:
        if col not in data.columns:
            raise DataError(f"Column '{col}' not found in data.", column=col)
    if not _is_numeric(data[spec.response]):
        raise DataError(
            f"Response '{spec.response}' must be numeric.", column=spec.response,
        )

    sub = data.loc[:, list(referenced)]
    bad = _missing_rows(sub)
    mask = ~bad
    dropped_index = data.index[bad]
    if not np.any(mask):
        raise DataError("No observations left after dropping rows with missing values.")
    frame = sub.loc[mask]
    if bad.any():
        _LOGGER.debug("build_design: dropped %d incomplete row(s)", int(bad.sum()))

    levels: dict[Factor, tuple[Any, ...]] = {}
    baselines: dict[str, Any] = {}
    blocks: list[NDArray[np.float64]] = []
    infos: list[ColumnInfo] = []
    n = frame.shape[0]
    if spec.intercept:
        blocks.append(np.ones((n, 1), dtype=np.float64))
        infos.append(ColumnInfo("Intercept", "Intercept", "intercept"))
    for t in _with_parents(spec.terms):
        mat, cols = _encode_term(frame, t, levels, baselines)
        blocks.append(mat)
        infos.extend(cols)

    names = [c.name for c in infos]
    if len(set(names)) != len(names):
        dup = sorted({nm for nm in names if names.count(nm) > 1})
        raise DataError(f"Duplicate design columns: {dup}", column=dup[0])

    X = np.hstack(blocks) if blocks else np.zeros((n, 0), dtype=np.float64)
    y = frame[spec.response].to_numpy(dtype=np.float64)
    X.setflags(write=False)
    y.setflags(write=False)
    return DesignMatrix(
        X=X,
        y=y,
        columns=tuple(infos),
        mask=mask,
        dropped_index=dropped_index,
        baselines=MappingProxyType(baselines),
        spec=spec,
        frame=frame,
        _levels=MappingProxyType(levels),
    )
