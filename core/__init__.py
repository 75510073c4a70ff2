# regkit/core/__init__.py
"""Core computational modules for regkit."""
from . import covariance, design, errors, fe, linalg

__all__ = ["covariance", "design", "errors", "fe", "linalg"]
