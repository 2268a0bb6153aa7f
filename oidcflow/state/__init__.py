"""Callback state storage for oidcflow.

Pending authorization requests are stored under their state id until
the redirect returns. Backends:

- ``local``: bounded key/value store (falls back to cookies)
- ``cookie``: one cookie per pending request
- ``redis``: shared store for multi-worker deployments
"""

from __future__ import annotations

from ._factory import create_callback_storage
from .base import CallbackStorage, KeyValueStorage
from .cookie import CookieCallbackStorage, CookieJar, MemoryCookieJar
from .memory import LocalCallbackStorage, MemoryStorage
from .redis import RedisCallbackStorage
from .types import (
    AccountOptions,
    Acr,
    AuthFlowState,
    CallbackState,
    CheckResult,
    FrameMessage,
    LoginOptions,
    LogoutOptions,
    OAuthTokenSet,
    ParsedCallback,
    SessionState,
    StorageBackend,
)


__all__ = [
    "AccountOptions",
    "Acr",
    "AuthFlowState",
    "CallbackState",
    "CallbackStorage",
    "CheckResult",
    "CookieCallbackStorage",
    "CookieJar",
    "FrameMessage",
    "KeyValueStorage",
    "LocalCallbackStorage",
    "LoginOptions",
    "LogoutOptions",
    "MemoryCookieJar",
    "MemoryStorage",
    "OAuthTokenSet",
    "ParsedCallback",
    "RedisCallbackStorage",
    "SessionState",
    "StorageBackend",
    "create_callback_storage",
]
