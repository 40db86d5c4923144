"""
Shared utilities for the sandboxed skills examples.

- visualize: Rich terminal visualization for self-healing outcomes
"""

from .visualize import show_outcome, visualize, visualize_outcome

__all__ = [
    "visualize",
    "visualize_outcome",
    "show_outcome",
]
