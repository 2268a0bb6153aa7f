"""Authentication engine.

Provides AuthFlowManager, the public entry point: it loads the endpoint
set, redeems authorization redirects, holds the token set and keeps it
fresh, and watches the provider session. Navigation is delegated to a
:class:`~oidcflow.auth.adapters.NavigationAdapter`.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes,too-many-public-methods

from __future__ import annotations

import asyncio
import logging
import time

from dataclasses import replace
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from ..config import ClientSettings, InitSettings, build_settings, get_settings
from ..exceptions import (
    ConfigurationError,
    NotAuthenticatedError,
    OIDCFlowException,
    ProtocolError,
    StateMismatchError,
)
from ..log import set_level, short_id
from ..state import create_callback_storage
from ..state.types import (
    AccountOptions,
    AuthFlowState,
    LoginOptions,
    LogoutOptions,
    ParsedCallback,
    SessionState,
)
from . import callback as callback_parser
from .adapters import create_adapter
from .endpoints import load_endpoints
from .events import AuthEvents
from .http import IdentityProviderClient
from .monitor import SessionMonitor, await_frame_message, origin_of
from .session import DEFAULT_MIN_VALIDITY, SessionManager
from .urls import AuthorizationRequestBuilder


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..state.base import CallbackStorage
    from .adapters import NavigationAdapter
    from .endpoints import Endpoints
    from .monitor import FrameHost


logger = logging.getLogger("oidcflow.auth")


class AuthFlowManager:
    """Client-side OAuth2 / OpenID Connect engine.

    One instance represents one client of one identity provider.
    :meth:`init` must be awaited exactly once before any other
    operation.

    Parameters
    ----------
    config : ClientSettings, dict or str, optional
        Client configuration. A string is the URL of a JSON adapter
        config document; a dict is validated into :class:`ClientSettings`.
        Defaults to the ``client`` section of the layered settings.
    oidc_metadata : dict, optional
        OpenID Connect discovery metadata, skipping discovery.
    frame_host : FrameHost, optional
        Hidden frame provider for session monitoring, silent SSO and the
        third-party storage probe; those features are off without one.
    storage : CallbackStorage, optional
        Callback state store (default: built from the storage settings).
    http : IdentityProviderClient, optional
        HTTP client for the identity provider.
    adapter : str or NavigationAdapter, optional
        Overrides ``init_options.adapter``.
    events : AuthEvents, optional
        Lifecycle hooks.
    clock : callable, optional
        Returns the current epoch time in seconds.

    Raises
    ------
    ConfigurationError
        If required client options are missing.
    """

    def __init__(
        self,
        config: ClientSettings | dict[str, Any] | str | None = None,
        *,
        oidc_metadata: dict[str, Any] | None = None,
        frame_host: FrameHost | None = None,
        storage: CallbackStorage | None = None,
        http: IdentityProviderClient | None = None,
        adapter: str | NavigationAdapter | None = None,
        events: AuthEvents | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine."""
        if config is None:
            client = get_settings().client
        elif isinstance(config, str):
            client = ClientSettings(config_url=config)
        elif isinstance(config, dict):
            client = build_settings(ClientSettings, config)
        else:
            client = config
        if oidc_metadata is None and not client.config_url:
            client.validate_required()

        self.client = client
        self.oidc_metadata = oidc_metadata
        self.frame_host = frame_host
        self.events = events or AuthEvents()
        self._clock = clock
        self._storage = storage
        self._adapter_override = adapter
        self._owns_http = http is None
        self.http = http or IdentityProviderClient(timeout=client.timeout)

        self.init_options = InitSettings()
        self.location: str | None = None
        self.cleaned_url: str | None = None
        self.login_required = False
        self.profile: dict[str, Any] | None = None
        self.user_info: dict[str, Any] | None = None

        self.endpoints: Endpoints | None = None
        self.session: SessionManager | None = None
        self.monitor: SessionMonitor | None = None
        self.builder: AuthorizationRequestBuilder | None = None
        self.adapter: NavigationAdapter | None = None

        self._silent_sso_uri: str | None = None
        self._flow_state = AuthFlowState.PENDING
        self._tasks: set[asyncio.Task[Any]] = set()

    # ── Properties ───────────────────────────────────────────────────

    @property
    def flow_state(self) -> AuthFlowState:
        """Lifecycle state of the engine."""
        return self._flow_state

    @property
    def state(self) -> SessionState:
        """Current session state (empty before ``init``)."""
        if self.session is None:
            return SessionState()
        return self.session.state

    @property
    def authenticated(self) -> bool:
        return self.state.authenticated

    @property
    def token(self) -> str | None:
        return self.state.token

    @property
    def token_parsed(self) -> dict[str, Any] | None:
        return self.state.token_parsed

    @property
    def refresh_token(self) -> str | None:
        return self.state.refresh_token

    @property
    def refresh_token_parsed(self) -> dict[str, Any] | None:
        return self.state.refresh_token_parsed

    @property
    def id_token(self) -> str | None:
        return self.state.id_token

    @property
    def id_token_parsed(self) -> dict[str, Any] | None:
        return self.state.id_token_parsed

    @property
    def subject(self) -> str | None:
        return self.state.subject

    @property
    def session_id(self) -> str | None:
        return self.state.session_id

    @property
    def realm_access(self) -> dict[str, Any] | None:
        return self.state.realm_access

    @property
    def resource_access(self) -> dict[str, Any] | None:
        return self.state.resource_access

    @property
    def time_skew(self) -> float | None:
        return self.state.time_skew

    # ── Initialization ───────────────────────────────────────────────

    async def init(
        self,
        options: InitSettings | dict[str, Any] | None = None,
        current_url: str | None = None,
    ) -> bool:
        """Initialize the engine and process any pending redirect.

        Parameters
        ----------
        options : InitSettings or dict, optional
            Init options. Defaults to the ``init`` section of the layered
            settings.
        current_url : str, optional
            URL the application was opened with. Checked for an
            authorization response and used as the default redirect URI.

        Returns
        -------
        bool
            Whether the engine ended up authenticated.

        Raises
        ------
        ConfigurationError
            If called twice, or options are invalid.
        OIDCFlowException
            Any error of the redirect, token or on-load processing.
        """
        if self._flow_state is not AuthFlowState.PENDING:
            msg = "An AuthFlowManager instance can only be initialized once."
            raise ConfigurationError(msg)
        self._flow_state = AuthFlowState.INITIALIZING

        try:
            self._configure(options, current_url)
            await self._load()
            await self._probe_third_party_storage()
            await self._process_init(current_url)
        except BaseException:
            self._flow_state = AuthFlowState.FAILED
            raise

        self._flow_state = AuthFlowState.READY
        logger.info("Initialized, authenticated=%s", self.authenticated)
        self.events.fire("on_ready", self.authenticated)
        return self.authenticated

    def _configure(self, options: InitSettings | dict[str, Any] | None, current_url: str | None) -> None:
        if options is None:
            init = get_settings().init
        elif isinstance(options, dict):
            init = build_settings(InitSettings, options)
        else:
            init = options

        if init.enable_logging:
            set_level(logging.INFO)

        self.init_options = init
        self.location = current_url
        self.login_required = init.on_load == "login-required"
        self._silent_sso_uri = init.silent_check_sso_redirect_uri

    async def _load(self) -> None:
        self.endpoints, self.client = await load_endpoints(self.client, self.http, self.oidc_metadata)
        init = self.init_options

        if self._storage is None:
            self._storage = create_callback_storage()

        self.session = SessionManager(
            self.client, init, self.endpoints, self.http, self.events, self._clock
        )
        self.session.on_invalid_grant = self.clear_token

        self.monitor = SessionMonitor(
            self.client.client_id or "",
            init,
            self.endpoints,
            self.session,
            frame_host=self.frame_host,
            clear_token=self.clear_token,
        )
        self.session.session_check = self._session_check

        self.builder = AuthorizationRequestBuilder(self.client, init, self.endpoints, self._storage)
        self.adapter = create_adapter(self._adapter_override or init.adapter, self)

    async def _session_check(self) -> None:
        if self.monitor is not None and self.monitor.enabled:
            await self.monitor.check()

    async def _probe_third_party_storage(self) -> None:
        supported = await self.monitor.probe_third_party_storage(
            silent_sso=bool(self._silent_sso_uri)
        )
        if supported is False and self.init_options.silent_check_sso_fallback:
            self._silent_sso_uri = None

    async def _process_init(self, current_url: str | None) -> None:
        init = self.init_options

        parsed = await self.parse_callback(current_url) if current_url else None
        if parsed is not None:
            self.cleaned_url = parsed.new_url
            self.location = parsed.new_url
            self.events.fire("on_url_cleaned", parsed.new_url)

        if parsed is not None and parsed.valid:
            await self.monitor.setup()
            await self.process_callback(parsed)
            return
        if parsed is not None:
            logger.warning("Discarding authorization response with unknown state")

        if init.token and init.refresh_token:
            await self._restore_tokens()
            return

        if init.on_load:
            await self._on_load()

    async def _restore_tokens(self) -> None:
        init = self.init_options
        self.session.set_tokens(init.token, init.refresh_token, init.id_token)

        await self.monitor.setup()
        if self.monitor.ready:
            if await self.monitor.check():
                self.events.fire("on_auth_success")
                self.monitor.schedule()
            return

        try:
            await self.update_token(-1)
        except OIDCFlowException as exc:
            self.events.fire("on_auth_error", exc)
            if not init.on_load:
                raise
            await self._on_load()
            return
        self.events.fire("on_auth_success")

    async def _on_load(self) -> None:
        init = self.init_options
        if init.on_load == "check-sso":
            await self.monitor.setup()
            if self.monitor.ready and await self.monitor.check():
                return
            if self._silent_sso_uri and self.frame_host is not None:
                await self._check_sso_silently()
            else:
                await self.login(LoginOptions(prompt="none", locale=init.locale))
        elif init.on_load == "login-required":
            await self.login(LoginOptions(locale=init.locale))

    async def _check_sso_silently(self) -> None:
        init = self.init_options
        src = await self.create_login_url(
            LoginOptions(prompt="none", redirect_uri=self._silent_sso_uri)
        )
        app_origin = origin_of(self._silent_sso_uri, init.origin)

        message = await await_frame_message(
            self.frame_host,
            src,
            "oidcflow silent check sso",
            lambda msg, frame: msg.origin == app_origin and msg.source is frame,
            init.message_receive_timeout,
            "Timeout when waiting for silent check-sso message.",
        )

        parsed = await self.parse_callback(str(message.data))
        if parsed is None:
            logger.debug("Silent check-sso returned without an authorization response")
            return
        await self.process_callback(parsed)

    # ── Redirect handling ────────────────────────────────────────────

    async def parse_callback(self, url: str) -> ParsedCallback | None:
        """Parse a redirect URL and redeem its state id.

        Returns
        -------
        ParsedCallback or None
            None when the URL carries no authorization response.
        """
        self._require_init()
        return await callback_parser.parse_callback(
            url, self.init_options.response_mode, self.init_options.flow, self._storage
        )

    async def process_callback(self, parsed: ParsedCallback) -> None:
        """Complete an authorization response.

        Handles provider errors (retrying ``authentication_expired`` up
        to ``max_login_retries`` times), implicit tokens and the code
        exchange.

        Raises
        ------
        StateMismatchError
            If the callback's state id matched no pending request, or the
            ID token nonce differs from the stored one. The session is
            cleared in both cases.
        ProtocolError
            If the provider returned an error for an interactive request.
        NetworkError
            If the code exchange failed.
        """
        self._require_init()
        init = self.init_options
        flow = init.flow
        time_local = self._clock()

        if not parsed.valid:
            self.clear_token()
            msg = "Invalid state"
            raise StateMismatchError(msg, flow=flow, state=short_id(parsed.state))

        if parsed.get("kc_action_status"):
            self.events.fire(
                "on_action_update", parsed.get("kc_action_status"), parsed.get("kc_action")
            )

        error = parsed.get("error")
        if error:
            if parsed.prompt == "none":
                logger.debug("Silent authorization ended with %s", error)
                return
            description = parsed.get("error_description")
            options = parsed.login_options or LoginOptions()
            if description == "authentication_expired" and options.attempt < init.max_login_retries:
                logger.info("Authentication expired, retrying login")
                await self.login(replace(options, attempt=options.attempt + 1))
                return
            exc = ProtocolError(
                description or error,
                error=error,
                error_description=description,
                error_uri=parsed.get("error_uri"),
                flow=flow,
            )
            self.events.fire("on_auth_error", exc)
            raise exc

        access_token = parsed.get("access_token")
        if flow != "standard" and access_token:
            self._auth_success(
                access_token, None, parsed.get("id_token"), (time_local + self._clock()) / 2, parsed
            )
            self.events.fire("on_auth_success")

        code = parsed.get("code")
        if flow != "implicit" and code:
            try:
                tokens, exchanged_at = await self.session.exchange_code(
                    code, unquote(parsed.redirect_uri or ""), parsed.pkce_code_verifier
                )
                self._auth_success(
                    tokens.access_token,
                    tokens.refresh_token,
                    tokens.id_token,
                    exchanged_at,
                    parsed,
                )
            except OIDCFlowException as exc:
                self.events.fire("on_auth_error", exc)
                raise
            if flow == "standard":
                self.events.fire("on_auth_success")

        self.monitor.schedule()

    def _auth_success(
        self,
        token: str,
        refresh_token: str | None,
        id_token: str | None,
        time_local: float,
        parsed: ParsedCallback,
    ) -> None:
        state = self.session.set_tokens(token, refresh_token, id_token, time_local)
        if not self.init_options.use_nonce or state.id_token_parsed is None:
            return
        if state.id_token_parsed.get("nonce") != parsed.stored_nonce:
            logger.warning("Invalid nonce, clearing token")
            self.clear_token()
            msg = "Invalid nonce."
            raise StateMismatchError(msg, flow=self.init_options.flow)

    async def handle_redirect(self, url: str) -> bool:
        """Parse and complete the redirect an external navigation ended at.

        Returns
        -------
        bool
            Whether the engine is authenticated afterwards; ``False`` when
            the URL carries no authorization response.
        """
        parsed = await self.parse_callback(url)
        if parsed is None:
            return False
        self.cleaned_url = parsed.new_url
        self.events.fire("on_url_cleaned", parsed.new_url)
        await self.process_callback(parsed)
        return self.authenticated

    # ── URLs ─────────────────────────────────────────────────────────

    def _require_init(self) -> None:
        if self.builder is None:
            msg = "The engine has not been initialized; await init() first"
            raise ConfigurationError(msg)

    async def create_login_url(self, options: LoginOptions | None = None) -> str:
        """Build an authorization URL and persist its callback state."""
        self._require_init()
        return await self.builder.create_login_url(options, self.adapter.redirect_uri(options))

    async def create_register_url(self, options: LoginOptions | None = None) -> str:
        """Build an authorization URL targeting the registration endpoint."""
        self._require_init()
        return await self.builder.create_register_url(options, self.adapter.redirect_uri(options))

    def create_logout_url(self, options: LogoutOptions | None = None) -> str:
        """Build the end-session URL."""
        self._require_init()
        options = options or LogoutOptions()
        return self.builder.create_logout_url(
            self.adapter.redirect_uri(options), self.id_token, options.logout_method
        )

    def create_account_url(self, options: AccountOptions | None = None) -> str:
        """Build the account management URL."""
        self._require_init()
        return self.builder.create_account_url(self.adapter.redirect_uri(options))

    # ── Navigation ───────────────────────────────────────────────────

    async def login(self, options: LoginOptions | None = None) -> None:
        self._require_init()
        await self.adapter.login(options)

    async def logout(self, options: LogoutOptions | None = None) -> None:
        self._require_init()
        await self.adapter.logout(options)

    async def register(self, options: LoginOptions | None = None) -> None:
        self._require_init()
        await self.adapter.register(options)

    async def account_management(self) -> None:
        self._require_init()
        await self.adapter.account_management()

    # ── Tokens ───────────────────────────────────────────────────────

    def is_token_expired(self, min_validity: float | None = None) -> bool:
        """Whether the access token expires within ``min_validity`` seconds.

        Raises
        ------
        NotAuthenticatedError
            If no token set is held.
        """
        self._require_init()
        return self.session.is_token_expired(min_validity)

    async def update_token(self, min_validity: Any = DEFAULT_MIN_VALIDITY) -> bool:
        """Refresh the token set if it expires within ``min_validity`` seconds.

        See :meth:`SessionManager.update_token`.
        """
        self._require_init()
        return await self.session.update_token(min_validity)

    def clear_token(self) -> None:
        """Drop the token set.

        Fires ``on_auth_logout`` when a token was held and, with
        ``on_load='login-required'``, starts a new login.
        """
        if self.session is None or not self.session.state.token:
            return
        self.session.clear_tokens()
        logger.info("Token cleared")
        self.events.fire("on_auth_logout")
        if self.login_required:
            self._spawn(self.login())

    def _spawn(self, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, login not started")
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background login failed: %s", task.exception())

    # ── Roles and profile ────────────────────────────────────────────

    def has_realm_role(self, role: str) -> bool:
        access = self.realm_access or {}
        return role in access.get("roles", [])

    def has_resource_role(self, role: str, resource: str | None = None) -> bool:
        access = (self.resource_access or {}).get(resource or self.client.client_id or "")
        if not access:
            return False
        return role in access.get("roles", [])

    async def load_user_profile(self) -> dict[str, Any]:
        """Fetch the account profile of the signed-in user.

        Raises
        ------
        ConfigurationError
            If the client uses a generic OIDC provider.
        NotAuthenticatedError
            If no token is held.
        NetworkError
            If the request fails.
        """
        self._require_init()
        realm_url = self.endpoints.realm_url
        if not realm_url:
            msg = (
                "Unable to load user profile, make sure the adapter is not "
                "configured using a generic OIDC provider."
            )
            raise ConfigurationError(msg, option="oidc_provider")
        self.profile = await self.http.fetch_json(f"{realm_url}/account", self._bearer())
        return self.profile

    async def load_user_info(self) -> dict[str, Any]:
        """Fetch the claims of the userinfo endpoint."""
        self._require_init()
        self.user_info = await self.http.fetch_json(self.endpoints.userinfo(), self._bearer())
        return self.user_info

    def _bearer(self) -> str:
        token = self.token
        if not token:
            msg = "Not authenticated"
            raise NotAuthenticatedError(msg, flow=self.init_options.flow)
        return token

    # ── Shutdown ─────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop timers and monitoring and release owned resources."""
        for task in list(self._tasks):
            task.cancel()
        if self.monitor is not None:
            self.monitor.close()
        if self.session is not None:
            self.session.close()
        storage_close = getattr(self._storage, "close", None)
        if storage_close is not None:
            result = storage_close()
            if asyncio.iscoroutine(result):
                await result
        if self._owns_http:
            await self.http.close()
        self._flow_state = AuthFlowState.CLOSED
