"""Identity provider endpoint sets.

Endpoints come either from the realm layout of the identity server
(``{url}/realms/{realm}/protocol/openid-connect/...``) or from OpenID
Connect discovery metadata. The set is fixed once loaded.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from ..exceptions import ConfigurationError


if TYPE_CHECKING:
    from ..config import ClientSettings
    from .http import IdentityProviderClient


logger = logging.getLogger("oidcflow.auth")

WELL_KNOWN_PATH = ".well-known/openid-configuration"


class Endpoints(ABC):
    """Endpoint URLs of one identity provider."""

    #: Realm base URL; None for generic OIDC providers.
    realm_url: str | None = None

    @abstractmethod
    def authorize(self) -> str:
        """Authorization endpoint."""

    @abstractmethod
    def token(self) -> str:
        """Token endpoint."""

    @abstractmethod
    def logout(self) -> str:
        """End-session endpoint."""

    @abstractmethod
    def register(self) -> str:
        """Registration endpoint."""

    @abstractmethod
    def userinfo(self) -> str:
        """Userinfo endpoint."""

    @abstractmethod
    def check_session_iframe(self) -> str | None:
        """Check-session frame, or None when unsupported."""

    @abstractmethod
    def third_party_cookies_iframe(self) -> str | None:
        """Third-party storage probe frame, or None when unsupported."""


class RealmEndpoints(Endpoints):
    """Endpoints derived from a realm URL.

    Parameters
    ----------
    url : str
        Base URL of the identity server.
    realm : str
        Realm name.
    """

    def __init__(self, url: str, realm: str) -> None:
        """Initialize from server URL and realm."""
        self.realm_url = f"{url.rstrip('/')}/realms/{quote(realm, safe='')}"
        self._base = f"{self.realm_url}/protocol/openid-connect"

    def authorize(self) -> str:
        return f"{self._base}/auth"

    def token(self) -> str:
        return f"{self._base}/token"

    def logout(self) -> str:
        return f"{self._base}/logout"

    def register(self) -> str:
        return f"{self._base}/registrations"

    def userinfo(self) -> str:
        return f"{self._base}/userinfo"

    def check_session_iframe(self) -> str:
        return f"{self._base}/login-status-iframe.html"

    def third_party_cookies_iframe(self) -> str:
        return f"{self._base}/3p-cookies/step1.html"


class OIDCEndpoints(Endpoints):
    """Endpoints read from OpenID Connect discovery metadata.

    Parameters
    ----------
    metadata : dict
        The provider's ``openid-configuration`` document.
    """

    def __init__(self, metadata: dict[str, Any]) -> None:
        """Initialize from discovery metadata."""
        self.metadata = metadata

    def _require(self, key: str) -> str:
        value = self.metadata.get(key)
        if not value:
            msg = "Not supported by the OIDC server"
            raise ConfigurationError(msg, option=key)
        return str(value)

    def authorize(self) -> str:
        return self._require("authorization_endpoint")

    def token(self) -> str:
        return self._require("token_endpoint")

    def logout(self) -> str:
        return self._require("end_session_endpoint")

    def register(self) -> str:
        msg = 'Redirection to "Register user" page not supported in standard OIDC mode'
        raise ConfigurationError(msg, option="registration_endpoint")

    def userinfo(self) -> str:
        return self._require("userinfo_endpoint")

    def check_session_iframe(self) -> str:
        return self._require("check_session_iframe")

    def third_party_cookies_iframe(self) -> None:
        return None


def discovery_url(issuer: str) -> str:
    """Discovery document URL for an issuer."""
    if issuer.endswith("/"):
        return f"{issuer}{WELL_KNOWN_PATH}"
    return f"{issuer}/{WELL_KNOWN_PATH}"


async def load_endpoints(
    client: ClientSettings,
    http: IdentityProviderClient,
    oidc_metadata: dict[str, Any] | None = None,
) -> tuple[Endpoints, ClientSettings]:
    """Resolve the endpoint set for a client configuration.

    Parameters
    ----------
    client : ClientSettings
        Client section of the configuration.
    http : IdentityProviderClient
        Client used for the adapter config and discovery requests.
    oidc_metadata : dict, optional
        Discovery metadata supplied directly, skipping discovery.

    Returns
    -------
    tuple[Endpoints, ClientSettings]
        The endpoints and the effective client settings (filled in from
        the adapter config document when ``config_url`` is used).

    Raises
    ------
    ConfigurationError
        If required options are missing.
    NetworkError
        If a configuration document cannot be fetched.
    """
    if oidc_metadata is not None:
        if not client.client_id:
            msg = "Missing client_id for the OIDC provider"
            raise ConfigurationError(msg, option="client_id")
        return OIDCEndpoints(oidc_metadata), client

    if client.config_url and not client.oidc_provider:
        config = await http.fetch_json_config(client.config_url)
        client = client.model_copy(
            update={
                "url": config.get("auth-server-url") or client.url,
                "realm": config.get("realm") or client.realm,
                "client_id": config.get("resource") or client.client_id,
                "client_secret": (config.get("credentials") or {}).get("secret")
                or client.client_secret,
                "config_url": None,
            }
        )

    client.validate_required()

    if client.oidc_provider:
        metadata = await http.fetch_openid_config(discovery_url(client.oidc_provider))
        logger.debug("Loaded OIDC metadata from %s", client.oidc_provider)
        return OIDCEndpoints(metadata), client

    return RealmEndpoints(client.url or "", client.realm or ""), client
