"""oidcflow - client-side OAuth2 / OpenID Connect engine.

Runs the authorization code (with PKCE), implicit and hybrid flows
against a realm-based identity server or any OpenID Connect provider,
keeps tokens fresh with single-flight refresh and watches the provider
session through a check-session frame.
"""

from __future__ import annotations

from .auth import (
    AuthEvents,
    AuthFlowManager,
    DefaultAdapter,
    FrameHost,
    HiddenFrame,
    LoopbackAdapter,
    NavigationAdapter,
    decode_token,
)
from .config import (
    ClientSettings,
    InitSettings,
    LogSettings,
    OIDCFlowSettings,
    StorageSettings,
    get_settings,
)
from .exceptions import (
    AuthenticationError,
    AuthFlowTimeout,
    ConfigurationError,
    DecodingError,
    MessageTimeoutError,
    NetworkError,
    NotAuthenticatedError,
    OIDCFlowException,
    PKCEError,
    ProtocolError,
    SessionCheckError,
    StateMismatchError,
    StorageError,
    StorageQuotaError,
    TokenError,
    TokenRefreshError,
)
from .log import enable_debug, get_logger, set_level
from .state.types import (
    AccountOptions,
    Acr,
    AuthFlowState,
    FrameMessage,
    LoginOptions,
    LogoutOptions,
    SessionState,
)


__version__ = "0.1.0"

__all__ = [
    "AccountOptions",
    "Acr",
    "AuthEvents",
    "AuthFlowManager",
    "AuthFlowState",
    "AuthFlowTimeout",
    "AuthenticationError",
    "ClientSettings",
    "ConfigurationError",
    "DecodingError",
    "DefaultAdapter",
    "FrameHost",
    "FrameMessage",
    "HiddenFrame",
    "InitSettings",
    "LogSettings",
    "LoginOptions",
    "LogoutOptions",
    "LoopbackAdapter",
    "MessageTimeoutError",
    "NavigationAdapter",
    "NetworkError",
    "NotAuthenticatedError",
    "OIDCFlowException",
    "OIDCFlowSettings",
    "PKCEError",
    "ProtocolError",
    "SessionCheckError",
    "SessionState",
    "StateMismatchError",
    "StorageError",
    "StorageQuotaError",
    "StorageSettings",
    "TokenError",
    "TokenRefreshError",
    "__version__",
    "decode_token",
    "enable_debug",
    "get_logger",
    "get_settings",
    "set_level",
]
