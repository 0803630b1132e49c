"""
Core modules for Traffic Guard.

This package contains grid geometry, budget admission, traffic
multipliers and the cache-aware traffic coordinator.
"""
