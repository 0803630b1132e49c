"""
Traffic provider clients for Traffic Guard.

Provides the HTTP client that fetches traffic flow and incidents per cell.
"""

from .tomtom_client import TomTomTrafficClient

__all__ = ["TomTomTrafficClient"]
