"""
Error taxonomy for Traffic Guard.

Only InvalidInput is meant to reach callers. The remaining errors are
raised at component seams and absorbed into degraded results.
"""


class TrafficGuardError(Exception):
    """Base class for all Traffic Guard errors."""


class InvalidInput(TrafficGuardError, ValueError):
    """Raised for empty coordinate lists, malformed bounds or ids, unknown categories."""


class ProviderError(TrafficGuardError):
    """Raised when the traffic provider fails to return data for a cell."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(TrafficGuardError):
    """Raised when the persistence layer cannot be used at all."""


class LedgerCheckFailed(TrafficGuardError):
    """Raised when usage totals cannot be read for an admission check."""
