"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class MdownError(Exception):
    """Base exception for all application-specific errors."""


class NetworkTransientError(MdownError):
    """Raised for network failures worth retrying (timeouts, 429, 5xx)."""


class NetworkPermanentError(MdownError):
    """Raised when the catalog rejects a request in a way retries cannot fix."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class PageMissingError(NetworkPermanentError):
    """Raised when a page image no longer exists on the image server."""


class CatalogError(MdownError):
    """Raised when a manga cannot be resolved or the catalog response is malformed."""


class LockHeldError(MdownError):
    """Raised when another live instance already owns the working directory."""


class StaleArchiveConflictError(MdownError):
    """
    Raised when an archive on disk does not match the chapter the ledger expects
    at that path. Overwriting it requires the force flag.
    """


class LedgerCorruptionError(MdownError):
    """Raised when the progress ledger cannot be read or fails its integrity check."""


class InvalidTransitionError(MdownError):
    """Raised when a chapter state change would move the chapter backwards."""


class ConfigurationError(MdownError):
    """Raised for issues related to configuration loading or validation."""


class FileIntegrityError(MdownError):
    """Raised when a downloaded page fails a post-download integrity check."""
