"""Cookie-based callback state storage.

Fallback used when no key/value store is available. Each entry lives in
its own cookie with a fixed lifetime; reading an entry expires it.
"""

from __future__ import annotations

import asyncio
import threading
import time

from typing import TYPE_CHECKING, Protocol

from .base import CallbackStorage
from .memory import DEFAULT_PREFIX
from .types import CallbackState


if TYPE_CHECKING:
    from collections.abc import Callable


class CookieJar(Protocol):
    """Minimal cookie contract: values with an absolute expiry."""

    def get_cookie(self, name: str) -> str | None:
        """Return the unexpired value of cookie ``name``, or None."""
        ...

    def set_cookie(self, name: str, value: str, expires_at: float) -> None:
        """Set cookie ``name`` expiring at ``expires_at`` (epoch seconds)."""
        ...


class MemoryCookieJar:
    """In-memory cookie jar honouring expiry times.

    Parameters
    ----------
    clock : callable, optional
        Returns the current epoch time in seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the cookie jar."""
        self._cookies: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get_cookie(self, name: str) -> str | None:
        """Return the unexpired value of cookie ``name``, or None."""
        with self._lock:
            item = self._cookies.get(name)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self._clock():
                del self._cookies[name]
                return None
            return value

    def set_cookie(self, name: str, value: str, expires_at: float) -> None:
        """Set cookie ``name``; a past expiry deletes it."""
        with self._lock:
            if expires_at <= self._clock():
                self._cookies.pop(name, None)
            else:
                self._cookies[name] = (value, expires_at)


class CookieCallbackStorage(CallbackStorage):
    """Callback store keeping one cookie per pending request.

    Parameters
    ----------
    jar : CookieJar, optional
        Cookie backend (default: a new :class:`MemoryCookieJar`).
    prefix : str
        Cookie name prefix.
    ttl_seconds : int
        Cookie lifetime (default 60 minutes).
    clock : callable, optional
        Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        jar: CookieJar | None = None,
        prefix: str = DEFAULT_PREFIX,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cookie callback store."""
        self._clock = clock
        self._jar: CookieJar = jar if jar is not None else MemoryCookieJar(clock)
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._lock = asyncio.Lock()

    def _name(self, state_id: str) -> str:
        return f"{self._prefix}{state_id}"

    async def get(self, state_id: str | None) -> CallbackState | None:
        """Read the cookie for ``state_id`` and expire it."""
        if not state_id:
            return None
        async with self._lock:
            name = self._name(state_id)
            value = self._jar.get_cookie(name)
            # Expire immediately so the entry cannot be replayed
            self._jar.set_cookie(name, "", self._clock() - 100 * 60)
            if value is None:
                return None
            try:
                return CallbackState.from_json(value)
            except (ValueError, TypeError):
                return None

    async def add(self, state: CallbackState) -> None:
        """Write the entry as a cookie expiring after the configured lifetime."""
        async with self._lock:
            expires_at = self._clock() + self._ttl
            state.expires = int(expires_at * 1000)
            self._jar.set_cookie(
                self._name(state.state), state.to_json(include_expiry=False), expires_at
            )
