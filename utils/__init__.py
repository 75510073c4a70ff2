# regkit/utils/__init__.py
"""Formula parsing utilities."""
from .formula import FormulaSpec, parse_formula
from .instruments import IVClause, parse_iv_clause

__all__ = [
    "FormulaSpec",
    "IVClause",
    "parse_formula",
    "parse_iv_clause",
]
