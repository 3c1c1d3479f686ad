"""Error types for the scrap ledger.

Every failure raised by the ledger derives from ``LedgerError`` so
collaborators can catch the whole family in one place.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger errors."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigurationError(LedgerError):
    """Invalid configuration, e.g. a reduction factor outside [0, 1)."""


class ValidationError(LedgerError):
    """Missing or invalid line data, caught before persistence or transmission."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(LedgerError):
    """The referenced bill, item or bottle type does not exist."""


class ReferentialIntegrityError(LedgerError):
    """An entity cannot be removed while other records still reference it."""


class PersistenceError(LedgerError):
    """The local store failed, including migration failures."""


class SyncError(LedgerError):
    """Base class for failures while talking to the remote backend."""


class NetworkError(SyncError):
    """Device offline or backend unreachable."""


class RemoteRejection(SyncError):
    """Backend answered with a structured failure or a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncTimeoutError(SyncError, TimeoutError):
    """A bounded remote call exceeded its deadline."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout
