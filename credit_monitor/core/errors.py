"""
Error taxonomy for Credit Monitor.

Extraction, authentication, storage and configuration failures are
distinct types so callers can react to each one differently.
"""


class MonitorError(Exception):
    """Base class for every error raised by Credit Monitor."""


class ExtractionError(MonitorError):
    """Raised when the balance could not be obtained.

    Covers network failures, unparseable responses and exhaustion of
    every extraction strategy.
    """


class AuthError(ExtractionError):
    """Raised when the backend rejects the credential.

    Kept separate from generic extraction failures so the caller can
    ask for a fresh credential instead of waiting for the next cycle.
    """


class StorageError(MonitorError):
    """Raised when the balance store cannot read or write."""


class ConfigurationError(MonitorError, ValueError):
    """Raised when configuration values are invalid."""
