"""Formula parser for regkit.

Compact term-algebra strings are parsed once, with Patsy's grammar, into
the explicit term tree of :mod:`regkit.core.design`:

    response ~ terms | fe_groups | endog ~ instruments | cluster_vars

Only the first part is required. ``+`` adds terms, ``:`` builds a pure
interaction, ``*`` adds both parents and their interaction, ``0`` or ``-1``
removes the intercept and ``C(x)`` forces ``x`` to be a factor. A part
written as ``0`` is empty. Bare column names are tagged by dtype (numeric
columns are continuous, everything else is a factor).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import patsy

from regkit.core.design import Continuous, Factor, Interaction, Term, TermSpec, infer_term
from regkit.core.errors import DataError
from regkit.utils.instruments import parse_iv_clause

if TYPE_CHECKING:  # pragma: no cover - typing only
    import pandas as pd

__all__ = ["FormulaSpec", "parse_formula"]

_NAME_PAT = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_C_PAT = re.compile(r"^C\(\s*(?P<var>[A-Za-z_][A-Za-z0-9_.]*)\s*\)$")
_Q_PAT = re.compile(r"""^Q\(\s*(?P<q>["'])(?P<var>.+?)(?P=q)\s*\)$""")


@dataclass(frozen=True)
class FormulaSpec:
    """Parsed formula: regressor terms plus the auxiliary column lists."""

    terms: TermSpec
    fe: tuple[str, ...] = ()
    endog: tuple[Term, ...] = ()
    instruments: tuple[Term, ...] = ()
    clusters: tuple[str, ...] = ()

    @property
    def is_iv(self) -> bool:
        return bool(self.endog)

    def extra_columns(self) -> tuple[str, ...]:
        """Columns outside the regressor terms that take part in listwise deletion."""
        seen: dict[str, None] = {}
        for name in self.fe:
            seen.setdefault(name, None)
        for t in self.endog + self.instruments:
            for v in t.variables():
                seen.setdefault(v, None)
        for name in self.clusters:
            seen.setdefault(name, None)
        return tuple(seen)


def _split_pipes(formula: str) -> list[str]:
    """Split on top-level '|' (outside parentheses)."""
    parts: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(formula):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "|" and depth == 0:
            parts.append(formula[start:i].strip())
            start = i + 1
    parts.append(formula[start:].strip())
    return parts


def _is_empty(part: str) -> bool:
    return part.strip() in ("", "0", "-1")


def _leaf(code: str, data: pd.DataFrame | None, baseline: str) -> Continuous | Factor:
    code = code.strip()
    m = _C_PAT.match(code)
    if m:
        return Factor(m.group("var"), baseline=baseline)
    m = _Q_PAT.match(code)
    name = m.group("var") if m else code
    if not m and not _NAME_PAT.match(code):
        raise DataError(
            f"Unsupported term '{code}': only column names, C(name) and Q('name') are allowed.",
            column=code,
        )
    if data is None:
        return Continuous(name)
    term = infer_term(data, name)
    if isinstance(term, Factor) and baseline != "sorted":
        return Factor(name, baseline=baseline)
    return term


def _to_term(term: patsy.desc.Term, data: pd.DataFrame | None, baseline: str) -> Term:
    leaves = [_leaf(f.code, data, baseline) for f in term.factors]
    out: Term = leaves[0]
    for nxt in leaves[1:]:
        # patsy has already expanded ``*`` into explicit parent terms
        out = Interaction(out, nxt, include_parents=False)
    return out


def _names(part: str, what: str) -> tuple[str, ...]:
    if _is_empty(part):
        return ()
    names = [v.strip() for v in re.split(r"\s*\+\s*", part) if v.strip()]
    for v in names:
        if not _NAME_PAT.match(v):
            raise ValueError(f"{what} must be plain column names joined by '+', got '{v}'.")
    return tuple(dict.fromkeys(names))


def parse_formula(
    formula: str,
    data: pd.DataFrame | None = None,
    *,
    baseline: str = "sorted",
) -> FormulaSpec:
    """Parse a formula string into a :class:`FormulaSpec`.

    When ``data`` is given, bare names are tagged by dtype and checked for
    existence; otherwise every bare name is taken to be continuous.
    """
    if "~" not in formula:
        raise ValueError("Formula must contain '~'.")
    parts = _split_pipes(formula)
    if len(parts) > 4:
        raise ValueError(
            "Formula has too many '|' parts; expected 'y ~ x | fe | endog ~ instr | clusters'.",
        )
    parts += [""] * (4 - len(parts))
    main, fe_part, iv_part, cl_part = parts
    if "~" in fe_part:
        raise ValueError("The second formula part lists fixed effects; put 'endog ~ instr' third.")

    desc = patsy.ModelDesc.from_formula(main)
    if len(desc.lhs_termlist) != 1 or len(desc.lhs_termlist[0].factors) != 1:
        raise ValueError("Formula must have exactly one response variable on the left of '~'.")
    response = _leaf(desc.lhs_termlist[0].factors[0].code, None, baseline).name
    if data is not None and response not in data.columns:
        raise DataError(f"Response '{response}' not found in data.", column=response)

    intercept = False
    terms: list[Term] = []
    for term in desc.rhs_termlist:
        if len(term.factors) == 0:
            intercept = True
            continue
        terms.append(_to_term(term, data, baseline))
    spec = TermSpec(response=response, terms=tuple(terms), intercept=intercept)

    endog: tuple[Term, ...] = ()
    instruments: tuple[Term, ...] = ()
    if not _is_empty(iv_part):
        clause = parse_iv_clause(iv_part)
        endog = tuple(_to_term(t, data, baseline) for t in clause.endog)
        instruments = tuple(_to_term(t, data, baseline) for t in clause.instruments)

    fe = _names(fe_part, "Fixed effects")
    clusters = _names(cl_part, "Cluster variables")
    if data is not None:
        for name in fe + clusters:
            if name not in data.columns:
                raise DataError(f"Column '{name}' not found in data.", column=name)
    return FormulaSpec(
        terms=spec, fe=fe, endog=endog, instruments=instruments, clusters=clusters,
    )
