"""Token codec and session state transitions.

Decodes the payload segment of compact tokens (no signature check) and
computes skew-adjusted expiry. ``apply_tokens`` and ``cleared`` are the
only ways a :class:`SessionState` is produced from another one.
"""

from __future__ import annotations

import json
import math
import time

from dataclasses import replace
from numbers import Real
from typing import Any

from ..exceptions import DecodingError, NotAuthenticatedError, TokenError
from ..state.types import SessionState
from .crypto import base64url_decode


def decode_token(token: str) -> dict[str, Any]:
    """Decode the JSON payload of a compact three-segment token.

    Parameters
    ----------
    token : str
        Encoded token ``header.payload.signature``.

    Returns
    -------
    dict[str, Any]
        The decoded claims.

    Raises
    ------
    DecodingError
        If the payload is missing, not base64url, or not a JSON object.
    """
    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        msg = "Unable to decode token, payload not found."
        raise DecodingError(msg)

    try:
        payload = base64url_decode(parts[1])
    except ValueError as exc:
        msg = "Unable to decode token, payload is not a valid Base64URL value."
        raise DecodingError(msg) from exc

    try:
        claims = json.loads(payload)
    except ValueError as exc:
        msg = "Unable to decode token, payload is not a valid JSON value."
        raise DecodingError(msg) from exc

    if not isinstance(claims, dict):
        msg = "Unable to decode token, payload is not a valid JSON value."
        raise DecodingError(msg)
    return claims


def estimate_time_skew(time_local: float, issued_at: Any) -> float | None:
    """Clock offset between the client and the token issuer, in seconds.

    Parameters
    ----------
    time_local : float
        Client wall-clock time (seconds) estimated for the issuing
        request, usually the midpoint of the round trip.
    issued_at : Any
        The token's ``iat`` claim.
    """
    if not isinstance(issued_at, Real) or isinstance(issued_at, bool):
        return None
    return math.floor(time_local) - issued_at


def seconds_until_expiry(
    token_parsed: dict[str, Any], time_skew: float, now: float | None = None
) -> float:
    """Seconds left before ``exp`` passes, adjusted by the clock skew."""
    now = time.time() if now is None else now
    return token_parsed["exp"] - math.ceil(now) + time_skew


def _check_min_validity(min_validity: Any) -> float:
    if min_validity is None:
        return 0
    if isinstance(min_validity, bool) or not isinstance(min_validity, Real):
        msg = "Invalid minValidity"
        raise TokenError(msg, min_validity=min_validity)
    if math.isnan(min_validity):
        msg = "Invalid minValidity"
        raise TokenError(msg, min_validity=min_validity)
    return min_validity


def is_token_expired(
    state: SessionState,
    flow: str = "standard",
    min_validity: float | None = None,
    now: float | None = None,
) -> bool:
    """Whether the access token expires within ``min_validity`` seconds.

    Parameters
    ----------
    state : SessionState
        Current session state.
    flow : str
        Configured flow; the implicit flow holds no refresh token.
    min_validity : float, optional
        Required remaining lifetime in seconds.
    now : float, optional
        Current epoch seconds (defaults to ``time.time()``).

    Returns
    -------
    bool
        ``True`` when expired, or when the clock skew is still unknown.

    Raises
    ------
    NotAuthenticatedError
        If no access token (or, outside the implicit flow, no refresh
        token) is held.
    TokenError
        If ``min_validity`` is not a number.
    """
    if state.token_parsed is None or (state.refresh_token is None and flow != "implicit"):
        msg = "Not authenticated"
        raise NotAuthenticatedError(msg, flow=flow)

    min_validity = _check_min_validity(min_validity)
    if state.time_skew is None or "exp" not in state.token_parsed:
        return True

    expires_in = seconds_until_expiry(state.token_parsed, state.time_skew, now) - min_validity
    return expires_in < 0


def apply_tokens(
    state: SessionState,
    token: str,
    refresh_token: str | None = None,
    id_token: str | None = None,
    time_local: float | None = None,
) -> SessionState:
    """Return the session state holding a new token set.

    Parameters
    ----------
    state : SessionState
        Current state; only its time skew survives when ``time_local``
        is not given.
    token : str
        Access token.
    refresh_token, id_token : str, optional
        Companion tokens; absent ones are dropped.
    time_local : float, optional
        Client time (epoch seconds) at which the tokens were issued;
        when given the time skew is re-estimated from ``iat``.

    Raises
    ------
    DecodingError
        If any of the tokens cannot be decoded. ``state`` is unchanged.
    """
    token_parsed = decode_token(token)
    refresh_parsed = decode_token(refresh_token) if refresh_token else None
    id_parsed = decode_token(id_token) if id_token else None

    time_skew = state.time_skew
    if time_local is not None:
        time_skew = estimate_time_skew(time_local, token_parsed.get("iat"))

    return SessionState(
        authenticated=True,
        token=token,
        token_parsed=token_parsed,
        refresh_token=refresh_token or None,
        refresh_token_parsed=refresh_parsed,
        id_token=id_token or None,
        id_token_parsed=id_parsed,
        subject=token_parsed.get("sub"),
        session_id=token_parsed.get("sid"),
        realm_access=token_parsed.get("realm_access"),
        resource_access=token_parsed.get("resource_access"),
        time_skew=time_skew,
    )


def cleared(state: SessionState) -> SessionState:
    """Return the unauthenticated state, keeping the clock skew estimate."""
    return SessionState(time_skew=state.time_skew)


def with_time_skew(state: SessionState, time_skew: float | None) -> SessionState:
    """Return ``state`` with a different clock skew estimate."""
    return replace(state, time_skew=time_skew)
