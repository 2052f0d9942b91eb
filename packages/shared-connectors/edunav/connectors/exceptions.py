"""Custom exceptions for connector synchronization."""

from __future__ import annotations


class ConnectorError(Exception):
    """Base exception for connector errors."""

    pass


class ConfigurationError(ConnectorError):
    """Raised when a connector or its mappings are misconfigured."""

    pass


class ConnectorNotFoundError(ConnectorError):
    """Raised when a connector does not exist."""

    pass


class AuthenticationError(ConnectorError):
    """Raised when authentication fails."""

    pass


class OAuthRefreshError(AuthenticationError):
    """Raised when an OAuth token refresh is rejected.

    Fatal for the current run: retrying with the same stale refresh token
    cannot succeed.
    """

    pass


class TransportError(ConnectorError):
    """Raised when a request against the remote API fails.

    Attributes:
        status_code: HTTP status of the last response, None for network errors.
        retryable: Whether the failure class is retryable (429, 5xx, network).
        attempts: Number of attempts made before giving up.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts


class InvalidResponseError(TransportError):
    """Raised when a response body is not valid JSON."""

    def __init__(self, message: str, *, snippet: str = "", status_code: int | None = None):
        super().__init__(message, status_code=status_code, retryable=False)
        self.snippet = snippet


class TransformError(ConnectorError):
    """Raised when a transform operation cannot be applied to a value."""

    pass


class SyncError(ConnectorError):
    """Raised when a sync operation fails."""

    pass


class SyncConflictError(SyncError):
    """Raised when a run is requested while another run holds the connector."""

    pass
