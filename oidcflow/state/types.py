"""Type definitions for oidcflow state.

Shared types used by the callback stores, the session manager and the
session monitor.
"""

from __future__ import annotations

import json
import time

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StorageBackend(str, Enum):
    """Available callback state storage backends."""

    LOCAL = "local"
    COOKIE = "cookie"
    REDIS = "redis"


class AuthFlowState(str, Enum):
    """Lifecycle of an engine instance."""

    PENDING = "pending"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class CheckResult(str, Enum):
    """Reply of the check-session frame."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    ERROR = "error"


@dataclass
class Acr:
    """Requested authentication context class reference.

    Attributes
    ----------
    values : list[str]
        Acceptable ACR values.
    essential : bool
        Whether the provider must satisfy the request.
    """

    values: list[str] = field(default_factory=list)
    essential: bool = False


@dataclass
class LoginOptions:
    """Per-call options for building an authorization request.

    Attributes
    ----------
    redirect_uri : str or None
        Overrides the configured redirect URI.
    prompt : str or None
        ``none``, ``login``, ``consent``...
    action : str or None
        ``register`` targets the registration endpoint; any other value is
        sent as ``kc_action``.
    max_age : int or None
        Maximum authentication age in seconds; ``0`` is sent.
    login_hint : str or None
        Pre-fills the username.
    scope : str or None
        Space-separated scopes; ``openid`` is always added.
    idp_hint : str or None
        Sent as ``kc_idp_hint``.
    acr : Acr or None
        Serialized into the ``claims`` parameter.
    acr_values : str or None
        Sent as-is in ``acr_values``.
    locale : str or None
        Sent as ``ui_locales``.
    attempt : int
        How many times this login has been retried after an
        ``authentication_expired`` error.
    """

    redirect_uri: str | None = None
    prompt: str | None = None
    action: str | None = None
    max_age: int | None = None
    login_hint: str | None = None
    scope: str | None = None
    idp_hint: str | None = None
    acr: Acr | None = None
    acr_values: str | None = None
    locale: str | None = None
    attempt: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict, omitting unset options."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LoginOptions:
        """Rebuild options persisted with :meth:`to_dict`."""
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        acr = known.pop("acr", None)
        if isinstance(acr, dict):
            acr = Acr(values=list(acr.get("values", [])), essential=bool(acr.get("essential")))
        return cls(acr=acr, **known)


@dataclass
class LogoutOptions:
    """Per-call options for the logout request."""

    redirect_uri: str | None = None
    logout_method: str | None = None


@dataclass
class AccountOptions:
    """Per-call options for the account management URL."""

    redirect_uri: str | None = None


@dataclass
class CallbackState:
    """Pending authorization request, persisted until its redirect returns.

    Attributes
    ----------
    state : str
        Random id echoed back by the provider.
    nonce : str
        Random value expected in the ID token.
    redirect_uri : str
        Percent-encoded redirect URI sent with the request.
    pkce_code_verifier : str or None
        PKCE verifier when PKCE is active.
    prompt : str or None
        The prompt sent with the request.
    login_options : LoginOptions
        The caller's options, replayed on retry.
    expires : int
        Absolute expiry, epoch milliseconds.
    """

    state: str
    nonce: str
    redirect_uri: str
    pkce_code_verifier: str | None = None
    prompt: str | None = None
    login_options: LoginOptions = field(default_factory=LoginOptions)
    expires: int = 0

    def to_json(self, include_expiry: bool = True) -> str:
        """Serialize to the persisted JSON layout."""
        data: dict[str, Any] = {
            "state": self.state,
            "nonce": self.nonce,
            "redirectUri": self.redirect_uri,
            "loginOptions": self.login_options.to_dict(),
        }
        if self.pkce_code_verifier is not None:
            data["pkceCodeVerifier"] = self.pkce_code_verifier
        if self.prompt is not None:
            data["prompt"] = self.prompt
        if include_expiry:
            data["expires"] = self.expires
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> CallbackState:
        """Parse the persisted JSON layout.

        Raises
        ------
        ValueError
            If the value is not valid JSON or lacks a state id.
        """
        data = json.loads(raw)
        if not isinstance(data, dict) or "state" not in data:
            msg = "Callback state entry has no state id"
            raise ValueError(msg)
        return cls(
            state=data["state"],
            nonce=data.get("nonce", ""),
            redirect_uri=data.get("redirectUri", ""),
            pkce_code_verifier=data.get("pkceCodeVerifier"),
            prompt=data.get("prompt"),
            login_options=LoginOptions.from_dict(data.get("loginOptions")),
            expires=int(data.get("expires", 0)),
        )

    def is_expired(self, now_ms: float | None = None) -> bool:
        """Whether the entry outlived its expiry timestamp."""
        now_ms = time.time() * 1000 if now_ms is None else now_ms
        return self.expires < now_ms


@dataclass
class ParsedCallback:
    """Result of parsing a redirect URL.

    Attributes
    ----------
    url : str
        The URL that was parsed.
    new_url : str
        The URL with recognized OAuth parameters stripped.
    params : dict[str, str]
        Recognized OAuth parameters.
    valid : bool
        Whether the state id matched a pending request.
    redirect_uri : str or None
        Stored percent-encoded redirect URI (valid callbacks only).
    stored_nonce : str or None
        Stored nonce (valid callbacks only).
    prompt : str or None
        Prompt sent with the request (valid callbacks only).
    pkce_code_verifier : str or None
        Stored PKCE verifier (valid callbacks only).
    login_options : LoginOptions or None
        Original login options (valid callbacks only).
    """

    url: str
    new_url: str
    params: dict[str, str] = field(default_factory=dict)
    valid: bool = False
    redirect_uri: str | None = None
    stored_nonce: str | None = None
    prompt: str | None = None
    pkce_code_verifier: str | None = None
    login_options: LoginOptions | None = None

    @property
    def state(self) -> str | None:
        """The state id carried by the callback."""
        return self.params.get("state")

    def get(self, name: str) -> str | None:
        """Return a recognized parameter, or None."""
        return self.params.get(name)


@dataclass
class OAuthTokenSet:
    """Token endpoint response.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token for obtaining new access tokens.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> OAuthTokenSet:
        """Build a token set from a token endpoint JSON body."""
        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            id_token=data.get("id_token"),
            scope=data.get("scope", ""),
            raw=data,
        )


@dataclass(frozen=True)
class SessionState:
    """Authentication state of one engine instance.

    Replaced as a whole on every transition; see
    :func:`oidcflow.auth.tokens.apply_tokens` and
    :func:`oidcflow.auth.tokens.cleared`.

    Attributes
    ----------
    authenticated : bool
        Whether an access token is held.
    token, refresh_token, id_token : str or None
        Encoded tokens.
    token_parsed, refresh_token_parsed, id_token_parsed : dict or None
        Decoded token payloads.
    subject : str or None
        ``sub`` claim of the access token.
    session_id : str or None
        ``sid`` claim of the access token.
    realm_access : dict or None
        ``realm_access`` claim (realm roles).
    resource_access : dict or None
        ``resource_access`` claim (client roles).
    time_skew : float or None
        Estimated client/server clock offset in seconds.
    """

    authenticated: bool = False
    token: str | None = None
    token_parsed: dict[str, Any] | None = None
    refresh_token: str | None = None
    refresh_token_parsed: dict[str, Any] | None = None
    id_token: str | None = None
    id_token_parsed: dict[str, Any] | None = None
    subject: str | None = None
    session_id: str | None = None
    realm_access: dict[str, Any] | None = None
    resource_access: dict[str, Any] | None = None
    time_skew: float | None = None


@dataclass(frozen=True)
class FrameMessage:
    """A message received from a hidden frame.

    Attributes
    ----------
    origin : str
        Origin of the sender.
    source : Any
        The sending frame (compared by identity).
    data : Any
        The message payload.
    """

    origin: str
    source: Any
    data: Any
