"""
Exception classes for the status poller.

All exceptions inherit from StStatusError and provide structured
error information with codes, messages, and optional details. Errors
raised by the provider API client also carry the ErrorCategory the
alert state machine files them under.
"""

from typing import Optional

from .enums import ErrorCategory


class StStatusError(Exception):
    """Base exception for all status poller errors."""

    category: Optional[ErrorCategory] = None

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "category": self.category.value if self.category else None,
            "details": self.details,
        }


class ConfigurationError(StStatusError):
    """Raised when the module configuration is structurally invalid."""

    pass


class NoCredentialsError(StStatusError):
    """Raised when no usable credentials exist; the operator must run setup."""

    category = ErrorCategory.AUTH


class VaultKeyError(StStatusError):
    """
    Raised when key material is unusable (wrong length, unreadable).

    This is a fatal misconfiguration: the key is never regenerated over an
    existing one, since that would orphan the encrypted data.
    """

    pass


class TokenRefreshError(StStatusError):
    """Raised when exchanging the refresh token fails."""

    category = ErrorCategory.AUTH

    def __init__(
        self,
        code: str,
        message: str,
        permanent: bool = False,
        details: Optional[dict] = None,
    ) -> None:
        self.permanent = permanent
        super().__init__(code, message, details)


class AuthenticationError(StStatusError):
    """Raised on HTTP 401 from a read endpoint."""

    category = ErrorCategory.AUTH


class PermissionDeniedError(StStatusError):
    """Raised on HTTP 403 (token lacks the scope for this request)."""

    category = ErrorCategory.SCOPE


class RateLimitError(StStatusError):
    """Raised on HTTP 429."""

    category = ErrorCategory.RATE_LIMIT


class ServerOutageError(StStatusError):
    """Raised on HTTP 5xx or an unparseable success response."""

    category = ErrorCategory.OUTAGE


class ApiError(StStatusError):
    """Raised on any other unexpected HTTP status."""

    category = ErrorCategory.OUTAGE


class SchemaError(StStatusError):
    """Raised when a well-formed response carries a malformed payload."""

    category = ErrorCategory.SCHEMA


class NetworkError(StStatusError):
    """Raised on DNS, connect or timeout failures."""

    category = ErrorCategory.NETWORK


class PersistenceError(StStatusError):
    """Raised when persistence operations fail (file I/O, JSON encoding)."""

    pass
