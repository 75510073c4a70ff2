# regkit/output/__init__.py
"""Console rendering of estimation results."""
from .summary import coef_summary

__all__ = ["coef_summary"]
