"""oidcflow exception hierarchy.

All oidcflow-specific exceptions inherit from OIDCFlowException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class OIDCFlowException(Exception):
    """Base exception for all oidcflow errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize oidcflow exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (endpoint, state, status_code, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(OIDCFlowException):
    """Invalid or missing client configuration.

    Raised synchronously when required options are absent, an option has
    an unsupported value, or an endpoint is not offered by the provider.
    """

    def __init__(self, message: str, option: str | None = None, **context: Any) -> None:
        """Initialize configuration error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        option : str, optional
            The configuration option at fault.
        **context : Any
            Additional context.
        """
        super().__init__(message, option=option, **context)
        self.option = option


class AuthenticationError(OIDCFlowException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    authorization requests, callback handling, token exchange, or
    session monitoring.
    """

    def __init__(
        self,
        message: str,
        flow: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        flow : str, optional
            The flow in use ("standard", "implicit", "hybrid").
        **context : Any
            Additional context.
        """
        super().__init__(message, flow=flow, **context)
        self.flow = flow


class NotAuthenticatedError(AuthenticationError):
    """An operation requiring tokens was called without a session."""


class NetworkError(AuthenticationError):
    """The identity provider answered with a non-success status.

    Also raised when the request could not be completed at all, in which
    case ``status_code`` is ``None``.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize network error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status returned by the provider.
        url : str, optional
            The URL that was requested.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, url=url, **context)
        self.status_code = status_code
        self.url = url


class ProtocolError(AuthenticationError):
    """The identity provider returned an OAuth2 error in the redirect."""

    def __init__(
        self,
        message: str,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize protocol error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str
            The ``error`` code sent by the provider.
        error_description : str, optional
            The ``error_description`` sent by the provider.
        error_uri : str, optional
            The ``error_uri`` sent by the provider.
        **context : Any
            Additional context.
        """
        super().__init__(
            message,
            error=error,
            error_description=error_description,
            error_uri=error_uri,
            **context,
        )
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri


class StateMismatchError(AuthenticationError):
    """A callback carried a state id that no pending request owns,
    or the ID token nonce did not match the stored one.
    """


class PKCEError(AuthenticationError):
    """The PKCE verifier or challenge could not be generated."""


class SessionCheckError(AuthenticationError):
    """The check-session frame reported an error."""


class MessageTimeoutError(AuthenticationError):
    """No frame reply arrived within the configured window.

    Distinct from :class:`NetworkError`: nothing was sent over HTTP.
    """

    def __init__(self, message: str, timeout: float, **context: Any) -> None:
        """Initialize message timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        **context : Any
            Additional context.
        """
        super().__init__(message, timeout=timeout, **context)
        self.timeout = timeout


class AuthFlowTimeout(MessageTimeoutError):
    """The authorization redirect did not arrive in time.

    Raised by the loopback adapter when the blocking wait for the
    redirect exceeds its timeout.
    """


class TokenError(AuthenticationError):
    """Token operation failed.

    Raised for token decoding failures and invalid expiry arguments.
    """


class DecodingError(TokenError):
    """A token payload is not valid base64url or not valid JSON."""


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when no refresh token is held or the refresh grant fails.
    """


class StorageError(OIDCFlowException):
    """Callback state storage is unavailable or failed."""

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize storage error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The storage key involved.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class StorageQuotaError(StorageError):
    """The key/value store refused a write because it is full."""
