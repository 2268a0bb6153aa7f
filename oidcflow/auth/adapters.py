"""Navigation adapters.

The engine never navigates by itself: login, logout, registration and
account management are delegated to an adapter, which also decides the
redirect URI. Two variants ship:

- :class:`DefaultAdapter` hands URLs to a ``navigate`` callable
  (``webbrowser.open`` by default); the redirect is fed back through
  ``AuthFlowManager.init`` or ``AuthFlowManager.handle_redirect``.
- :class:`LoopbackAdapter` opens the system browser and captures the
  redirect on an ephemeral localhost server, completing the login in
  the same call.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import html
import logging
import tempfile
import webbrowser

from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..exceptions import AuthenticationError, AuthFlowTimeout, ConfigurationError
from ..state.types import LoginOptions, LogoutOptions
from .callback_server import OAuthCallbackServer


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..state.types import AccountOptions
    from .flow import AuthFlowManager


logger = logging.getLogger("oidcflow.auth")


def render_logout_form(action: str, fields: dict[str, str]) -> str:
    """HTML page that immediately POSTs ``fields`` to ``action``."""
    inputs = "\n".join(
        f'    <input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}">'
        for name, value in fields.items()
        if value
    )
    return (
        "<!DOCTYPE html>\n<html>\n<head><title>Signing out</title></head>\n"
        '<body onload="document.forms[0].submit()">\n'
        f'  <form method="POST" action="{html.escape(action)}">\n{inputs}\n  </form>\n'
        "</body>\n</html>"
    )


def submit_form_in_browser(action: str, fields: dict[str, str]) -> None:
    """Render an auto-submitting form to a temporary file and open it."""
    with tempfile.NamedTemporaryFile(
        "w", suffix=".html", prefix="oidcflow-logout-", delete=False, encoding="utf-8"
    ) as fh:
        fh.write(render_logout_form(action, fields))
    webbrowser.open(Path(fh.name).as_uri())


class NavigationAdapter(ABC):
    """Environment-specific navigation for one engine.

    Parameters
    ----------
    engine : AuthFlowManager
        The engine whose URLs are navigated to.
    """

    def __init__(self, engine: AuthFlowManager) -> None:
        """Initialize the adapter."""
        self.engine = engine

    @abstractmethod
    async def login(self, options: LoginOptions | None = None) -> None:
        """Start an interactive login."""

    @abstractmethod
    async def logout(self, options: LogoutOptions | None = None) -> None:
        """End the provider session."""

    @abstractmethod
    async def register(self, options: LoginOptions | None = None) -> None:
        """Start user registration."""

    @abstractmethod
    async def account_management(self) -> None:
        """Open the account management page."""

    def redirect_uri(self, options: LoginOptions | LogoutOptions | AccountOptions | None = None) -> str:
        """Redirect URI for a request.

        Resolution order: the per-call option, the configured
        ``redirect_uri``, then the application URL given to ``init``.

        Raises
        ------
        ConfigurationError
            If none of them is set.
        """
        if options is not None and options.redirect_uri:
            return options.redirect_uri
        if self.engine.init_options.redirect_uri:
            return self.engine.init_options.redirect_uri
        if self.engine.location:
            return self.engine.location
        msg = "No redirect URI configured"
        raise ConfigurationError(msg, option="redirect_uri")


class DefaultAdapter(NavigationAdapter):
    """Adapter handing every URL to a ``navigate`` callable.

    Parameters
    ----------
    engine : AuthFlowManager
        The engine whose URLs are navigated to.
    navigate : callable, optional
        Receives each URL (default ``webbrowser.open``).
    submit_form : callable, optional
        Receives ``(action, fields)`` for POST logout (default: an
        auto-submitting page opened in the browser).
    """

    def __init__(
        self,
        engine: AuthFlowManager,
        navigate: Callable[[str], Any] | None = None,
        submit_form: Callable[[str, dict[str, str]], Any] | None = None,
    ) -> None:
        """Initialize the default adapter."""
        super().__init__(engine)
        self.navigate = navigate or webbrowser.open
        self.submit_form = submit_form or submit_form_in_browser

    async def login(self, options: LoginOptions | None = None) -> None:
        self.navigate(await self.engine.create_login_url(options))

    async def logout(self, options: LogoutOptions | None = None) -> None:
        options = options or LogoutOptions()
        method = options.logout_method or self.engine.init_options.logout_method
        if method == "GET":
            self.navigate(self.engine.create_logout_url(options))
            return

        self.submit_form(
            self.engine.create_logout_url(replace(options, logout_method="POST")),
            {
                "id_token_hint": self.engine.id_token or "",
                "client_id": self.engine.client.client_id or "",
                "post_logout_redirect_uri": self.redirect_uri(options),
            },
        )

    async def register(self, options: LoginOptions | None = None) -> None:
        self.navigate(await self.engine.create_register_url(options))

    async def account_management(self) -> None:
        self.navigate(self.engine.create_account_url())


class LoopbackAdapter(NavigationAdapter):
    """Adapter capturing the redirect on an ephemeral localhost server.

    Requires ``response_mode='query'``: fragments never reach a server.

    Parameters
    ----------
    engine : AuthFlowManager
        The engine whose URLs are navigated to.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port (``0`` for auto-assign).
    timeout : float
        Seconds to wait for the redirect (default 120).
    navigate : callable, optional
        Receives each URL (default ``webbrowser.open``).
    """

    def __init__(
        self,
        engine: AuthFlowManager,
        host: str = "127.0.0.1",
        port: int = 0,
        timeout: float = 120.0,
        navigate: Callable[[str], Any] | None = None,
    ) -> None:
        """Initialize the loopback adapter."""
        super().__init__(engine)
        if engine.init_options.response_mode != "query":
            msg = "The loopback adapter requires response_mode='query'"
            raise ConfigurationError(msg, option="response_mode")
        self.host = host
        self.port = port
        self.timeout = timeout
        self.navigate = navigate or webbrowser.open
        self._server: OAuthCallbackServer | None = None

    def redirect_uri(self, options: LoginOptions | LogoutOptions | AccountOptions | None = None) -> str:
        if options is not None and options.redirect_uri:
            return options.redirect_uri
        if self._server is not None and self._server.running:
            return self._server.redirect_uri
        return super().redirect_uri(options)

    async def _authorize(self, options: LoginOptions | None, register: bool) -> None:
        server = OAuthCallbackServer(self.host, self.port)
        self._server = server
        redirect_uri = server.start()
        try:
            options = replace(options or LoginOptions(), redirect_uri=redirect_uri)
            if register:
                url = await self.engine.create_register_url(options)
            else:
                url = await self.engine.create_login_url(options)
            self.navigate(url)

            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, server.wait_for_callback, self.timeout)
        finally:
            server.stop()
            self._server = None

        if result is None:
            msg = f"No authorization redirect received within {self.timeout}s"
            raise AuthFlowTimeout(msg, timeout=self.timeout)

        parsed = await self.engine.parse_callback(result["url"])
        if parsed is None:
            msg = "Redirect did not carry an authorization response"
            raise AuthenticationError(msg, flow=self.engine.init_options.flow)
        await self.engine.process_callback(parsed)

    async def login(self, options: LoginOptions | None = None) -> None:
        await self._authorize(options, register=False)

    async def register(self, options: LoginOptions | None = None) -> None:
        await self._authorize(options, register=True)

    async def logout(self, options: LogoutOptions | None = None) -> None:
        options = replace(options or LogoutOptions(), logout_method="GET")
        self.navigate(self.engine.create_logout_url(options))
        self.engine.clear_token()

    async def account_management(self) -> None:
        self.navigate(self.engine.create_account_url())


def create_adapter(adapter: str | NavigationAdapter, engine: AuthFlowManager) -> NavigationAdapter:
    """Resolve an adapter name or instance.

    Raises
    ------
    ConfigurationError
        If the name is unknown.
    """
    if isinstance(adapter, NavigationAdapter):
        return adapter
    if adapter == "default":
        return DefaultAdapter(engine)
    if adapter == "loopback":
        return LoopbackAdapter(engine)
    msg = f"Unknown adapter: {adapter}"
    raise ConfigurationError(msg, option="adapter")
