"""Token exchange and refresh coordination.

Owns the :class:`SessionState` of one engine instance. Concurrent
``update_token`` calls share one refresh grant; the single-shot expiry
timer is re-armed on every token change.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import time

from numbers import Real
from typing import TYPE_CHECKING, Any

from ..exceptions import NetworkError, TokenError, TokenRefreshError
from ..log import short_id
from ..state.types import SessionState
from ..utils.async_helpers import InFlightRegistry
from . import tokens as token_codec
from .events import AuthEvents


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..config import ClientSettings, InitSettings
    from ..state.types import OAuthTokenSet
    from .endpoints import Endpoints
    from .http import IdentityProviderClient


logger = logging.getLogger("oidcflow.auth")

REFRESH_KIND = "token-refresh"
DEFAULT_MIN_VALIDITY = 5


class SessionManager:
    """Manages the token set with single-flight refresh.

    Parameters
    ----------
    client : ClientSettings
        Client registration (``client_id``, ``client_secret``).
    init : InitSettings
        Flow options (``flow``, initial ``time_skew``).
    endpoints : Endpoints
        Endpoint set providing the token endpoint.
    http : IdentityProviderClient
        Client used for the token grants.
    events : AuthEvents, optional
        Lifecycle hooks (refresh success/error, token expiry).
    clock : callable, optional
        Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        client: ClientSettings,
        init: InitSettings,
        endpoints: Endpoints,
        http: IdentityProviderClient,
        events: AuthEvents | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the session manager."""
        self.client = client
        self.init = init
        self.endpoints = endpoints
        self.http = http
        self.events = events or AuthEvents()
        self._clock = clock

        self._state = SessionState(time_skew=init.time_skew)
        self._expiry_handle: asyncio.TimerHandle | None = None
        self._in_flight = InFlightRegistry()

        #: Awaited before each refresh decision (session check); set by the engine.
        self.session_check: Callable[[], Awaitable[Any]] | None = None
        #: Called when the provider rejects the refresh token; defaults to clear_tokens.
        self.on_invalid_grant: Callable[[], Any] | None = None

    @property
    def state(self) -> SessionState:
        """Current session state (immutable snapshot)."""
        return self._state

    @property
    def refresh_in_flight(self) -> bool:
        """Whether a refresh grant is outstanding."""
        return self._in_flight.is_active(REFRESH_KIND)

    # ── State transitions ────────────────────────────────────────────

    def set_tokens(
        self,
        token: str,
        refresh_token: str | None = None,
        id_token: str | None = None,
        time_local: float | None = None,
    ) -> SessionState:
        """Install a new token set and re-arm the expiry timer.

        Parameters
        ----------
        token : str
            Access token.
        refresh_token, id_token : str, optional
            Companion tokens.
        time_local : float, optional
            Client time at which the tokens were issued; re-estimates
            the clock skew when given.

        Returns
        -------
        SessionState
            The new state.
        """
        self._state = token_codec.apply_tokens(
            self._state, token, refresh_token, id_token, time_local
        )
        self._arm_expiry_timer()
        logger.debug(
            "Tokens set for subject %s, time skew %s",
            short_id(self._state.subject),
            self._state.time_skew,
        )
        return self._state

    def clear_tokens(self) -> SessionState:
        """Drop all tokens and cancel the expiry timer."""
        self._cancel_expiry_timer()
        self._state = token_codec.cleared(self._state)
        return self._state

    def _cancel_expiry_timer(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _arm_expiry_timer(self) -> None:
        self._cancel_expiry_timer()
        if self.events.on_token_expired is None:
            return

        token_parsed = self._state.token_parsed
        if not token_parsed or "exp" not in token_parsed or self._state.time_skew is None:
            return

        expires_in = token_parsed["exp"] - self._clock() + self._state.time_skew
        if expires_in <= 0:
            self.events.fire("on_token_expired")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, token expiry timer not armed")
            return
        self._expiry_handle = loop.call_later(expires_in, self._on_expiry_timer)

    def _on_expiry_timer(self) -> None:
        self._expiry_handle = None
        self.events.fire("on_token_expired")

    # ── Queries ──────────────────────────────────────────────────────

    def is_token_expired(self, min_validity: float | None = None) -> bool:
        """Whether the access token expires within ``min_validity`` seconds.

        Raises
        ------
        NotAuthenticatedError
            If no token set is held.
        TokenError
            If ``min_validity`` is not a number.
        """
        return token_codec.is_token_expired(
            self._state, self.init.flow, min_validity, now=self._clock()
        )

    # ── Grants ───────────────────────────────────────────────────────

    async def exchange_code(
        self, code: str, redirect_uri: str, pkce_code_verifier: str | None = None
    ) -> tuple[OAuthTokenSet, float]:
        """Exchange an authorization code.

        Returns
        -------
        tuple[OAuthTokenSet, float]
            The token set and the midpoint of the request, used as the
            client-side issue time.
        """
        time_before = self._clock()
        tokens = await self.http.fetch_access_token(
            self.endpoints.token(),
            code,
            self.client.client_id or "",
            redirect_uri,
            client_secret=self.client.client_secret,
            pkce_code_verifier=pkce_code_verifier,
        )
        time_local = (time_before + self._clock()) / 2
        return tokens, time_local

    async def update_token(self, min_validity: Any = DEFAULT_MIN_VALIDITY) -> bool:
        """Refresh the token set if it expires within ``min_validity`` seconds.

        Safe to call concurrently: callers arriving while a refresh is
        outstanding wait for it and receive its outcome.

        Parameters
        ----------
        min_validity : float
            Required remaining lifetime in seconds (default 5); ``-1``
            forces a refresh.

        Returns
        -------
        bool
            ``True`` if the token was refreshed, ``False`` if still valid.

        Raises
        ------
        TokenRefreshError
            If no refresh token is held, or the refresh grant failed.
        TokenError
            If ``min_validity`` is not a number.
        """
        if not self._state.refresh_token:
            msg = "Unable to update token, no refresh token available."
            raise TokenRefreshError(msg, flow=self.init.flow)

        if not min_validity:
            min_validity = DEFAULT_MIN_VALIDITY
        if isinstance(min_validity, bool) or not isinstance(min_validity, Real):
            msg = "Invalid minValidity"
            raise TokenError(msg, min_validity=min_validity)

        if self.session_check is not None:
            await self.session_check()

        if min_validity == -1:
            must_refresh = True
        elif self._state.token_parsed is None or not self._state.refresh_token:
            must_refresh = True
        else:
            must_refresh = self.is_token_expired(min_validity)

        if not must_refresh:
            logger.debug("Token still valid for at least %ss", min_validity)
            return False

        return await self._in_flight.run(REFRESH_KIND, self._refresh)

    async def _refresh(self) -> bool:
        refresh_token = self._state.refresh_token
        if not refresh_token:
            msg = "Unable to update token, no refresh token available."
            raise TokenRefreshError(msg, flow=self.init.flow)

        logger.info("Refreshing access token")
        time_before = self._clock()
        try:
            tokens = await self.http.fetch_refresh_token(
                self.endpoints.token(), refresh_token, self.client.client_id or ""
            )
        except NetworkError as exc:
            logger.warning("Failed to refresh token: %s", exc)
            if exc.status_code == 400:
                (self.on_invalid_grant or self.clear_tokens)()
            self.events.fire("on_auth_refresh_error")
            raise

        time_local = (time_before + self._clock()) / 2
        self.set_tokens(tokens.access_token, tokens.refresh_token, tokens.id_token, time_local)
        self.events.fire("on_auth_refresh_success")
        return True

    def close(self) -> None:
        """Cancel the expiry timer and any refresh in flight."""
        self._cancel_expiry_timer()
        self._in_flight.cancel(REFRESH_KIND)
