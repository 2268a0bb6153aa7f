"""Authorization, logout, registration and account URL construction."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from dataclasses import replace
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

from ..exceptions import ConfigurationError
from ..log import short_id
from ..state.types import CallbackState, LoginOptions
from .crypto import create_uuid
from .pkce import PKCEChallenge, build_claims_parameter


if TYPE_CHECKING:
    from ..config import ClientSettings, InitSettings
    from ..state.base import CallbackStorage
    from .endpoints import Endpoints


logger = logging.getLogger("oidcflow.auth")


def normalize_scope(scope: str | None) -> str:
    """Ensure ``openid`` is one of the requested scopes.

    Prepends ``openid`` unless a scope token already equals it; the order
    of the other scopes is preserved.
    """
    values = scope.split(" ") if scope else []
    if "openid" not in values:
        values.insert(0, "openid")
    return " ".join(values)


def encode_uri_component(value: str) -> str:
    """Percent-encode ``value`` like a URI component."""
    return quote(value, safe="!*'()")


class AuthorizationRequestBuilder:
    """Builds request URLs for one configured client.

    Parameters
    ----------
    client : ClientSettings
        Client registration.
    init : InitSettings
        Flow options (response mode and type, PKCE, nonce, scope).
    endpoints : Endpoints
        Endpoint set of the identity provider.
    storage : CallbackStorage
        Store receiving one entry per authorization URL.
    """

    def __init__(
        self,
        client: ClientSettings,
        init: InitSettings,
        endpoints: Endpoints,
        storage: CallbackStorage,
    ) -> None:
        """Initialize the request builder."""
        self.client = client
        self.init = init
        self.endpoints = endpoints
        self.storage = storage

    async def create_login_url(self, options: LoginOptions | None, redirect_uri: str) -> str:
        """Build an authorization URL and register its callback state.

        Parameters
        ----------
        options : LoginOptions, optional
            Per-call options.
        redirect_uri : str
            Redirect URI for this request.

        Returns
        -------
        str
            The absolute authorization (or registration) URL.

        Raises
        ------
        PKCEError
            If the PKCE challenge cannot be generated; nothing is stored.
        ConfigurationError
            If the target endpoint is not supported.
        """
        options = options or LoginOptions()
        state = create_uuid()
        nonce = create_uuid()

        callback_state = CallbackState(
            state=state,
            nonce=nonce,
            redirect_uri=encode_uri_component(redirect_uri),
            prompt=options.prompt,
            login_options=options,
        )

        if options.action == "register":
            base_url = self.endpoints.register()
        else:
            base_url = self.endpoints.authorize()

        params: list[tuple[str, str]] = [
            ("client_id", self.client.client_id or ""),
            ("redirect_uri", redirect_uri),
            ("state", state),
            ("response_mode", self.init.response_mode),
            ("response_type", self.init.response_type),
            ("scope", normalize_scope(options.scope or self.init.scope)),
        ]

        if self.init.use_nonce:
            params.append(("nonce", nonce))
        if options.prompt:
            params.append(("prompt", options.prompt))
        if isinstance(options.max_age, int) and not isinstance(options.max_age, bool):
            params.append(("max_age", str(options.max_age)))
        if options.login_hint:
            params.append(("login_hint", options.login_hint))
        if options.idp_hint:
            params.append(("kc_idp_hint", options.idp_hint))
        if options.action and options.action != "register":
            params.append(("kc_action", options.action))
        if options.locale:
            params.append(("ui_locales", options.locale))
        if options.acr:
            params.append(("claims", build_claims_parameter(options.acr)))
        if options.acr_values:
            params.append(("acr_values", options.acr_values))

        if self.init.pkce_method:
            pkce = PKCEChallenge.generate(
                length=self.init.pkce_verifier_length, method=self.init.pkce_method
            )
            callback_state.pkce_code_verifier = pkce.verifier
            params.append(("code_challenge", pkce.challenge))
            params.append(("code_challenge_method", pkce.method))

        await self.storage.add(callback_state)
        logger.debug("Created authorization request, state=%s", short_id(state))

        return f"{base_url}?{urlencode(params)}"

    async def create_register_url(self, options: LoginOptions | None, redirect_uri: str) -> str:
        """Authorization URL targeting the registration endpoint."""
        options = replace(options or LoginOptions(), action="register")
        return await self.create_login_url(options, redirect_uri)

    def create_logout_url(
        self,
        redirect_uri: str,
        id_token: str | None = None,
        logout_method: str | None = None,
    ) -> str:
        """Build the end-session URL.

        Parameters
        ----------
        redirect_uri : str
            Post-logout redirect URI.
        id_token : str, optional
            Held ID token, sent as ``id_token_hint``.
        logout_method : str, optional
            ``GET`` or ``POST``; overrides the configured method.

        Returns
        -------
        str
            The bare endpoint for ``POST``, endpoint plus query for ``GET``.
        """
        method = logout_method or self.init.logout_method
        url = self.endpoints.logout()
        if method == "POST":
            return url

        params = [
            ("client_id", self.client.client_id or ""),
            ("post_logout_redirect_uri", redirect_uri),
        ]
        if id_token:
            params.append(("id_token_hint", id_token))
        return f"{url}?{urlencode(params)}"

    def create_account_url(self, redirect_uri: str) -> str:
        """Build the account management URL.

        Raises
        ------
        ConfigurationError
            If the client uses a generic OIDC provider.
        """
        realm_url = self.endpoints.realm_url
        if not realm_url:
            msg = (
                "Unable to create account URL, make sure the adapter is not "
                "configured using a generic OIDC provider."
            )
            raise ConfigurationError(msg, option="oidc_provider")
        params = [("referrer", self.client.client_id or ""), ("referrer_uri", redirect_uri)]
        return f"{realm_url}/account?{urlencode(params)}"
