"""Random and hashing primitives used by the authorization flow."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import uuid

from ..exceptions import ConfigurationError


#: Unreserved characters allowed in a PKCE code verifier (RFC 7636 section 4.1).
UNRESERVED_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

ALPHANUMERIC = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"


def generate_random_data(length: int) -> bytes:
    """Return ``length`` bytes from the OS secure random source.

    Raises
    ------
    ConfigurationError
        If the platform has no secure random source.
    """
    try:
        return os.urandom(length)
    except NotImplementedError as exc:
        msg = "Secure random number generation is not available on this platform"
        raise ConfigurationError(msg) from exc


def generate_random_string(length: int, alphabet: str = ALPHANUMERIC) -> str:
    """Build a random string by mapping secure random bytes onto ``alphabet``."""
    data = generate_random_data(length)
    size = len(alphabet)
    return "".join(alphabet[b % size] for b in data)


def create_uuid() -> str:
    """Random (version 4) UUID string."""
    return str(uuid.uuid4())


def sha256_digest(text: str) -> bytes:
    """SHA-256 over the UTF-8 encoding of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).digest()


def base64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> str:
    """Decode unpadded URL-safe base64 into text.

    The result is decoded as UTF-8, falling back to Latin-1 for payloads
    that are not valid UTF-8.

    Raises
    ------
    ValueError
        If ``text`` is not valid base64url.
    """
    if len(text) % 4 == 1:
        msg = "Input is not of the correct length"
        raise ValueError(msg)
    padded = text + "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)
    except binascii.Error as exc:
        raise ValueError(str(exc)) from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")
