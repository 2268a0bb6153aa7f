"""OAuth2 / OpenID Connect client engine.

Provides the endpoint resolution, authorization request building,
redirect parsing, token coordination, session monitoring and navigation
adapters used by :class:`AuthFlowManager`.
"""

from __future__ import annotations

from .adapters import DefaultAdapter, LoopbackAdapter, NavigationAdapter, create_adapter
from .callback import parse_callback, parse_callback_url
from .callback_server import OAuthCallbackServer
from .endpoints import Endpoints, OIDCEndpoints, RealmEndpoints, load_endpoints
from .events import AuthEvents
from .flow import AuthFlowManager
from .http import IdentityProviderClient
from .monitor import FrameHost, HiddenFrame, SessionMonitor
from .pkce import PKCEChallenge, generate_code_verifier, generate_pkce_challenge
from .session import SessionManager
from .tokens import decode_token
from .urls import AuthorizationRequestBuilder


__all__ = [
    "AuthEvents",
    "AuthFlowManager",
    "AuthorizationRequestBuilder",
    "DefaultAdapter",
    "Endpoints",
    "FrameHost",
    "HiddenFrame",
    "IdentityProviderClient",
    "LoopbackAdapter",
    "NavigationAdapter",
    "OAuthCallbackServer",
    "OIDCEndpoints",
    "PKCEChallenge",
    "RealmEndpoints",
    "SessionManager",
    "SessionMonitor",
    "create_adapter",
    "decode_token",
    "generate_code_verifier",
    "generate_pkce_challenge",
    "load_endpoints",
    "parse_callback",
    "parse_callback_url",
]
