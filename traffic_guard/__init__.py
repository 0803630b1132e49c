"""
Traffic Guard.

Grid-based traffic caching with budget-aware fetch admission for
multi-stop route planning.
"""

__version__ = "0.1.0"
