"""Redirect callback parsing and validation.

A redirect URL carries the OAuth2 response either in its query string or
in its fragment. Recognized parameters are split off, the rest of the URL
is rebuilt without them, and the ``state`` parameter is redeemed against
the callback store.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING
from urllib.parse import unquote_plus

from ..log import short_id
from ..state.types import ParsedCallback


if TYPE_CHECKING:
    from ..state.base import CallbackStorage


logger = logging.getLogger("oidcflow.auth")

_ERROR_PARAMS = ("error", "error_description", "error_uri")

_STANDARD_PARAMS = ("code", "state", "session_state", "kc_action_status", "kc_action", "iss")

_IMPLICIT_PARAMS = (
    "access_token",
    "token_type",
    "id_token",
    "state",
    "session_state",
    "expires_in",
    "kc_action_status",
    "kc_action",
    "iss",
)


def supported_params(flow: str) -> tuple[str, ...]:
    """OAuth parameters recognized in a redirect for ``flow``."""
    if flow == "standard":
        params = _STANDARD_PARAMS
    elif flow == "implicit":
        params = _IMPLICIT_PARAMS
    elif flow == "hybrid":
        params = (*_IMPLICIT_PARAMS, "code")
    else:
        params = ()
    return (*params, *_ERROR_PARAMS)


def _split_params(params_string: str, supported: tuple[str, ...]) -> tuple[dict[str, str], str]:
    """Partition ``a=1&b=2`` into recognized params and the remaining string."""
    oauth_params: dict[str, str] = {}
    remaining: list[str] = []
    for piece in params_string.split("&"):
        key, _, value = piece.partition("=")
        if key in supported:
            oauth_params[key] = unquote_plus(value)
        elif piece:
            remaining.append(piece)
    return oauth_params, "&".join(remaining)


def parse_callback_url(url: str, response_mode: str, flow: str) -> ParsedCallback | None:
    """Extract OAuth parameters from a redirect URL.

    Parameters
    ----------
    url : str
        The URL the browser was redirected to.
    response_mode : str
        ``query`` or ``fragment``.
    flow : str
        ``standard``, ``implicit`` or ``hybrid``.

    Returns
    -------
    ParsedCallback or None
        The recognized parameters and the cleaned URL, or None when the
        URL does not carry a callback (a primary parameter and ``state``).
    """
    supported = supported_params(flow)
    oauth_params: dict[str, str] | None = None
    new_url = url

    if response_mode == "query":
        query_index = url.find("?")
        if query_index != -1:
            fragment_index = url.find("#", query_index)
            end = fragment_index if fragment_index != -1 else len(url)
            oauth_params, remaining = _split_params(url[query_index + 1 : end], supported)
            new_url = url[:query_index]
            if remaining:
                new_url += "?" + remaining
            if fragment_index != -1:
                new_url += url[fragment_index:]
    elif response_mode == "fragment":
        fragment_index = url.find("#")
        if fragment_index != -1:
            oauth_params, remaining = _split_params(url[fragment_index + 1 :], supported)
            new_url = url[:fragment_index]
            if remaining:
                new_url += "#" + remaining

    if not oauth_params or not oauth_params.get("state"):
        return None

    if flow in ("standard", "hybrid"):
        primary = oauth_params.get("code") or oauth_params.get("error")
    elif flow == "implicit":
        primary = oauth_params.get("access_token") or oauth_params.get("error")
    else:
        primary = None

    if not primary:
        return None
    return ParsedCallback(url=url, new_url=new_url, params=oauth_params)


async def parse_callback(
    url: str, response_mode: str, flow: str, storage: CallbackStorage
) -> ParsedCallback | None:
    """Parse a redirect URL and redeem its state id.

    The stored entry is consumed whether or not the callback is later
    accepted.

    Returns
    -------
    ParsedCallback or None
        None when no callback is present; otherwise a callback whose
        ``valid`` flag tells whether the state id matched a pending
        request.
    """
    parsed = parse_callback_url(url, response_mode, flow)
    if parsed is None:
        return None

    stored = await storage.get(parsed.state)
    if stored is None:
        logger.warning("Callback state %s is unknown or expired", short_id(parsed.state))
        return parsed

    parsed.valid = True
    parsed.redirect_uri = stored.redirect_uri
    parsed.stored_nonce = stored.nonce
    parsed.prompt = stored.prompt
    parsed.pkce_code_verifier = stored.pkce_code_verifier
    parsed.login_options = stored.login_options
    return parsed
