"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import json

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..exceptions import OIDCFlowException, PKCEError
from .crypto import UNRESERVED_CHARSET, base64url_encode, generate_random_string, sha256_digest


if TYPE_CHECKING:
    from ..state.types import Acr


MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 96


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    length : int
        Number of characters, between 43 and 128 (default 96).

    Returns
    -------
    str
        Verifier over the unreserved character set.

    Raises
    ------
    PKCEError
        If the length is out of range or no secure random source exists.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        msg = f"PKCE verifier length must be between {MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH}"
        raise PKCEError(msg, length=length)
    try:
        return generate_random_string(length, UNRESERVED_CHARSET)
    except OIDCFlowException as exc:
        msg = "Failed to generate PKCE challenge."
        raise PKCEError(msg) from exc


def generate_pkce_challenge(method: str, verifier: str) -> str:
    """Derive the code challenge for ``verifier``.

    Raises
    ------
    PKCEError
        If ``method`` is anything other than "S256".
    """
    if method != "S256":
        msg = f"Invalid value for 'pkce_method', expected 'S256' but got {method!r}."
        raise PKCEError(msg)
    return base64url_encode(sha256_digest(verifier))


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = DEFAULT_VERIFIER_LENGTH, method: str = "S256") -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Verifier length in characters (default 96).
        method : str
            Challenge method; only "S256" is supported.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = generate_code_verifier(length)
        challenge = generate_pkce_challenge(method, verifier)
        return cls(verifier=verifier, challenge=challenge, method=method)


def build_claims_parameter(acr: Acr) -> str:
    """Serialize an ACR request as the compact ``claims`` parameter."""
    claims = {"id_token": {"acr": {"values": acr.values, "essential": acr.essential}}}
    return json.dumps(claims, separators=(",", ":"))
