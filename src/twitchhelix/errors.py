"""Exception classes for the Twitch Helix SDK."""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Any
from typing import Dict
from typing import Optional

if TYPE_CHECKING:
    import httpx

    from twitchhelix.models import HelixErrorBody
    from twitchhelix.models import ShardStatus


class TwitchHelixError(Exception):
    """Base exception for all SDK errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize SDK error.

        Args:
            message: Error message
            error_code: Optional error code
            details: Optional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def __repr__(self) -> str:
        """Detailed representation of the error."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ConfigurationError(TwitchHelixError):
    """Invalid configuration value."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "CONFIGURATION_ERROR", details)


class NoCredentialError(TwitchHelixError):
    """No usable credential matches the requested kind."""

    def __init__(
        self,
        message: str = "No credential available",
        kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize missing credential error.

        Args:
            message: Error message
            kind: Credential kind that was requested
            details: Optional error details
        """
        super().__init__(message, "NO_CREDENTIAL", details)
        self.kind = kind


class RefreshError(TwitchHelixError):
    """Token exchange with the OAuth2 endpoint failed."""

    def __init__(
        self,
        message: str = "Token refresh failed",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize refresh error.

        Args:
            message: Error message
            status_code: HTTP status of the token endpoint, if any
            details: Optional error details
        """
        super().__init__(message, "REFRESH_FAILED", details)
        self.status_code = status_code


class HelixHTTPError(TwitchHelixError):
    """Error derived from a Helix HTTP response."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_body: Optional[HelixErrorBody] = None,
        attempts: int = 1,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize HTTP error.

        Args:
            message: Error message
            status_code: HTTP status code
            error_body: Decoded platform error envelope
            attempts: Number of attempts made before giving up
            error_code: Optional error code
            details: Optional error details
        """
        super().__init__(message, error_code, details)
        self.status_code = status_code
        self.error_body = error_body
        self.attempts = attempts

    def __str__(self) -> str:
        """String representation of the HTTP error."""
        base = super().__str__()
        return f"HTTP {self.status_code}: {base} (attempts: {self.attempts})"


class AuthError(HelixHTTPError):
    """Request was still unauthorized after refreshing the credential."""

    def __init__(
        self,
        message: str = "Authentication failed",
        error_body: Optional[HelixErrorBody] = None,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            401,
            error_body=error_body,
            attempts=attempts,
            error_code="AUTHENTICATION_FAILED",
            details=details,
        )


class RateLimitExceededError(HelixHTTPError):
    """Rate limit retries were exhausted."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
        reset: Optional[float] = None,
        error_body: Optional[HelixErrorBody] = None,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message
            limit: Bucket capacity reported by the server
            remaining: Remaining points reported by the server
            reset: Epoch seconds at which the bucket refills
            error_body: Decoded platform error envelope
            attempts: Number of attempts made
            details: Optional error details
        """
        super().__init__(
            message,
            429,
            error_body=error_body,
            attempts=attempts,
            error_code="RATE_LIMIT_EXCEEDED",
            details=details,
        )
        self.limit = limit
        self.remaining = remaining
        self.reset = reset


class RequestError(HelixHTTPError):
    """Non-retryable client error (4xx other than 401 and 429)."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_body: Optional[HelixErrorBody] = None,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            status_code,
            error_body=error_body,
            attempts=attempts,
            error_code="REQUEST_ERROR",
            details=details,
        )


class TransportError(TwitchHelixError):
    """Network failure or server error persisted through every retry."""

    def __init__(
        self,
        message: str,
        last_response: Optional[httpx.Response] = None,
        cause: Optional[BaseException] = None,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize transport error.

        Args:
            message: Error message
            last_response: Last response received, if any
            cause: Last exception raised by the transport, if any
            attempts: Number of attempts made
            details: Optional error details
        """
        super().__init__(message, "TRANSPORT_ERROR", details)
        self.last_response = last_response
        self.cause = cause
        self.attempts = attempts

    @property
    def status_code(self) -> Optional[int]:
        """Status code of the last response, if one was received."""
        if self.last_response is None:
            return None
        return self.last_response.status_code

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (attempts: {self.attempts})"


class HelixTimeoutError(TwitchHelixError, TimeoutError):
    """A caller-supplied deadline expired."""

    def __init__(
        self,
        message: str = "Operation timed out",
        timeout: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize timeout error.

        Args:
            message: Error message
            timeout: Timeout value in seconds
            details: Optional error details
        """
        super().__init__(message, "TIMEOUT", details)
        self.timeout = timeout

    def __str__(self) -> str:
        base = super().__str__()
        if self.timeout:
            return f"{base} (timeout: {self.timeout}s)"
        return base


class DecodeError(TwitchHelixError):
    """Payload could not be decoded into the expected schema."""

    def __init__(
        self,
        message: str,
        data: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize decode error.

        Args:
            message: Error message
            data: Raw data that failed to decode
            details: Optional error details
        """
        super().__init__(message, "DECODE_ERROR", details)
        self.data = data


class SessionFailure(TwitchHelixError):
    """A single EventSub WebSocket connection attempt ended."""

    def __init__(
        self,
        status: ShardStatus,
        message: Optional[str] = None,
        code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize session failure.

        Args:
            status: Shard status describing the failure
            message: Error message
            code: WebSocket close code, if the transport closed
            details: Optional error details
        """
        super().__init__(message or f"Session failed: {status.value}", "SESSION_FAILURE", details)
        self.status = status
        self.code = code
