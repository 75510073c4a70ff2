"""IV clause parsing utilities.

Parse ``endog ~ instruments`` clauses from formula text with Patsy. Several
clauses may be combined as ``(x1 ~ z1 + z2) + (x2 ~ z3)``; their endogenous
regressors and excluded instruments are pooled. No inference or diagnostics;
estimators consume the parsed structures.
"""

from __future__ import annotations

import re

import patsy

__all__ = ["IVClause", "parse_iv_clause"]


def _canonical_factor_text(s: str) -> str:
    """Canonicalize textual form of a factor/term for strict de-duplication:
    - strip leading/trailing spaces
    - collapse internal whitespace
    - remove spaces around ':' and commas
    - trim spaces next to parentheses
    (No algebraic rewriting; purely lexical normalization.)
    """
    s = re.sub(r"\s+", " ", s.strip())
    s = re.sub(r"\s*:\s*", ":", s)
    s = re.sub(r"\s*,\s*", ",", s)
    s = re.sub(r"\(\s*", "(", s)
    return re.sub(r"\s*\)", ")", s)


def _encloses(s: str) -> bool:
    """True when the first '(' of ``s`` is closed by its last character."""
    depth = 0
    for i, ch in enumerate(s):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0 and i < len(s) - 1:
                return False
    return depth == 0


def _split_iv_clauses(txt: str) -> list[str]:
    """Split a string possibly containing multiple IV clauses:
    "(x1 ~ z1 + z2) + (x2 ~ z3)" -> ["x1 ~ z1 + z2", "x2 ~ z3"].
    A single unparenthesized clause "x ~ z1 + z2" is returned as is.
    """
    s = txt.strip()
    if not s:
        return []
    if not s.startswith("("):
        if s.count("~") != 1:
            raise ValueError("An unparenthesized IV clause must contain exactly one '~'.")
        return [s]
    if _encloses(s):
        s = s[1:-1].strip()
        if not s.startswith("("):
            return _split_iv_clauses(s)

    out: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(s):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError("Unbalanced parentheses in IV clause.")
        elif ch == "+" and depth == 0:
            seg = s[start:i].strip()
            if seg:
                out.append(seg)
            start = i + 1
    if depth != 0:
        raise ValueError("Unbalanced parentheses in IV clause.")
    tail = s[start:].strip()
    if tail:
        out.append(tail)

    clauses: list[str] = []
    for seg in out:
        if not (seg.startswith("(") and _encloses(seg)) or "~" not in seg:
            raise ValueError("Each IV segment must be of the form '(endog ~ instr)'.")
        clauses.append(seg[1:-1].strip())
    return clauses


class IVClause:
    """Pooled endogenous and instrument terms of one IV specification.

    ``endog`` and ``instruments`` hold Patsy ``Term`` objects (intercept
    removed) in first-seen order, de-duplicated by canonical text.
    """

    __slots__ = ("endog", "instruments")

    def __init__(self, endog: list[patsy.desc.Term], instruments: list[patsy.desc.Term]) -> None:
        self.endog = endog
        self.instruments = instruments

    def __repr__(self) -> str:
        def names(terms: list[patsy.desc.Term]) -> str:
            return " + ".join(t.name() for t in terms)

        return f"IVClause({names(self.endog)} ~ {names(self.instruments)})"


def _rhs_terms(expr: str) -> list[patsy.desc.Term]:
    desc = patsy.ModelDesc.from_formula(f"~ {expr}")
    return [t for t in desc.rhs_termlist if len(t.factors) > 0]


def parse_iv_clause(iv_part: str) -> IVClause:
    """Parse ``"x1 + x2 ~ z1 + z2 + z3"`` (or parenthesized clauses).

    Raises
    ------
    ValueError
        Malformed clause text.
    """
    endog: list[patsy.desc.Term] = []
    instr: list[patsy.desc.Term] = []
    seen_endog: set[str] = set()
    seen_instr: set[str] = set()
    for clause in _split_iv_clauses(iv_part):
        lhs, rhs = (part.strip() for part in clause.split("~", 1))
        if not lhs or not rhs:
            raise ValueError(f"IV clause '{clause}' must have terms on both sides of '~'.")
        for term in _rhs_terms(lhs):
            key = _canonical_factor_text(term.name())
            if key not in seen_endog:
                seen_endog.add(key)
                endog.append(term)
        for term in _rhs_terms(rhs):
            key = _canonical_factor_text(term.name())
            if key not in seen_instr:
                seen_instr.add(key)
                instr.append(term)
    return IVClause(endog, instr)
