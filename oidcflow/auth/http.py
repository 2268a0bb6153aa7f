"""HTTP client for identity provider requests.

Wraps a shared ``httpx.AsyncClient`` for the token grants, discovery,
adapter config and profile requests. Every non-2xx response raises
:class:`~oidcflow.exceptions.NetworkError`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import Any

import httpx

from ..exceptions import NetworkError
from ..log import redact_sensitive_data
from ..state.types import OAuthTokenSet


logger = logging.getLogger("oidcflow.auth")

_JSON_HEADERS = {"Accept": "application/json"}
_FORM_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/x-www-form-urlencoded",
}


def build_authorization_header(token: str) -> str:
    """Bearer authorization header value for ``token``."""
    return f"bearer {token}"


class IdentityProviderClient:
    """Async client for identity provider endpoints.

    Parameters
    ----------
    timeout : float
        Request timeout in seconds (default 30).
    http_client : httpx.AsyncClient, optional
        Pre-configured client; closed by :meth:`close` only when owned.
    """

    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize the identity provider client."""
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if (
            self._owns_client
            and self._http_client is not None
            and not self._http_client.is_closed
        ):
            await self._http_client.aclose()
            self._http_client = None

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"Request to identity provider failed: {exc}"
            raise NetworkError(msg, url=url) from exc

        if not resp.is_success:
            logger.warning("%s %s returned %s", method, url, resp.status_code)
            msg = "Server responded with an invalid status."
            raise NetworkError(msg, status_code=resp.status_code, url=url)

        try:
            data = resp.json()
        except ValueError as exc:
            msg = "Server responded with an invalid JSON body."
            raise NetworkError(msg, status_code=resp.status_code, url=url) from exc
        return data if isinstance(data, dict) else {"value": data}

    async def fetch_json(self, url: str, token: str | None = None) -> dict[str, Any]:
        """GET a JSON document, optionally with a bearer token.

        Parameters
        ----------
        url : str
            Document URL.
        token : str, optional
            Access token sent in the ``Authorization`` header.

        Returns
        -------
        dict[str, Any]
            The decoded JSON body.

        Raises
        ------
        NetworkError
            On transport failure or a non-2xx status.
        """
        headers = dict(_JSON_HEADERS)
        if token:
            headers["Authorization"] = build_authorization_header(token)
        return await self._send("GET", url, headers=headers)

    async def fetch_openid_config(self, url: str) -> dict[str, Any]:
        """Fetch an OpenID Connect discovery document."""
        return await self.fetch_json(url)

    async def fetch_json_config(self, url: str) -> dict[str, Any]:
        """Fetch a JSON adapter config document."""
        return await self.fetch_json(url)

    async def fetch_access_token(
        self,
        url: str,
        code: str,
        client_id: str,
        redirect_uri: str,
        client_secret: str | None = None,
        pkce_code_verifier: str | None = None,
    ) -> OAuthTokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        url : str
            Token endpoint.
        code : str
            The authorization code from the redirect.
        client_id : str
            Client ID.
        redirect_uri : str
            The (decoded) redirect URI sent with the authorization request.
        client_secret : str, optional
            Client secret for confidential clients.
        pkce_code_verifier : str, optional
            The PKCE verifier if PKCE was used.

        Returns
        -------
        OAuthTokenSet
            The token endpoint response.
        """
        data = {
            "code": code,
            "grant_type": "authorization_code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
        }
        if client_secret:
            data["client_secret"] = client_secret
        if pkce_code_verifier:
            data["code_verifier"] = pkce_code_verifier

        logger.debug("Exchanging authorization code: %s", redact_sensitive_data(data))
        body = await self._send("POST", url, data=data, headers=_FORM_HEADERS)
        return OAuthTokenSet.from_response(body)

    async def fetch_refresh_token(
        self, url: str, refresh_token: str, client_id: str
    ) -> OAuthTokenSet:
        """Exchange a refresh token for a new token set.

        Parameters
        ----------
        url : str
            Token endpoint.
        refresh_token : str
            The current refresh token.
        client_id : str
            Client ID.

        Returns
        -------
        OAuthTokenSet
            The token endpoint response.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        body = await self._send("POST", url, data=data, headers=_FORM_HEADERS)
        return OAuthTokenSet.from_response(body)
