"""In-process callback state storage.

Default backend: a bounded key/value store with the local storage
contract, and the callback store built on top of it.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import threading
import time

from typing import TYPE_CHECKING

from ..exceptions import StorageError, StorageQuotaError
from .base import CallbackStorage, KeyValueStorage
from .types import CallbackState


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("oidcflow.state")

DEFAULT_PREFIX = "oidcflow-callback-"
PROBE_KEY = "oidcflow-test"


class MemoryStorage(KeyValueStorage):
    """Bounded in-memory key/value store.

    Parameters
    ----------
    max_entries : int
        Number of keys held before writes of new keys are refused.
    """

    def __init__(self, max_entries: int = 256) -> None:
        """Initialize the memory storage."""
        self._items: dict[str, str] = {}
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def get_item(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None."""
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""
        with self._lock:
            if key not in self._items and len(self._items) >= self._max_entries:
                msg = "Storage quota exceeded"
                raise StorageQuotaError(msg, key=key, max_entries=self._max_entries)
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        """Remove ``key``."""
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        """Return a snapshot of all stored keys."""
        with self._lock:
            return list(self._items)


class LocalCallbackStorage(CallbackStorage):
    """Callback store over a :class:`KeyValueStorage`.

    Entries are JSON documents under ``prefix + state_id`` carrying an
    absolute ``expires`` timestamp in epoch milliseconds. Expired and
    malformed entries are swept on every read and write.

    Parameters
    ----------
    storage : KeyValueStorage, optional
        Backing store (default: a new :class:`MemoryStorage`).
    prefix : str
        Key prefix for entries.
    ttl_seconds : int
        Lifetime of an entry.
    clock : callable, optional
        Returns the current epoch time in seconds.

    Raises
    ------
    StorageError
        If the backing store rejects a probe write.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        prefix: str = DEFAULT_PREFIX,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize and probe the backing store."""
        self._storage = storage if storage is not None else MemoryStorage()
        self._prefix = prefix
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock
        self._lock = asyncio.Lock()

        try:
            self._storage.set_item(PROBE_KEY, PROBE_KEY)
            self._storage.remove_item(PROBE_KEY)
        except StorageError:
            raise
        except Exception as exc:
            msg = "Key/value storage is not available"
            raise StorageError(msg, key=PROBE_KEY) from exc

    def _key(self, state_id: str) -> str:
        return f"{self._prefix}{state_id}"

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prefixed_keys(self) -> list[str]:
        return [k for k in self._storage.keys() if k.startswith(self._prefix)]

    def clear_invalid_values(self) -> None:
        """Remove expired and malformed entries."""
        now = self._now_ms()
        for key in self._prefixed_keys():
            value = self._storage.get_item(key)
            if value is None:
                continue
            try:
                entry = CallbackState.from_json(value)
            except (ValueError, TypeError):
                logger.debug("Removing malformed callback entry %s", key)
                self._storage.remove_item(key)
                continue
            if entry.is_expired(now):
                self._storage.remove_item(key)

    def clear_all_values(self) -> None:
        """Remove every entry under this store's prefix."""
        for key in self._prefixed_keys():
            self._storage.remove_item(key)

    async def get(self, state_id: str | None) -> CallbackState | None:
        """Read and delete the entry for ``state_id``."""
        if not state_id:
            return None
        async with self._lock:
            key = self._key(state_id)
            value = self._storage.get_item(key)
            entry: CallbackState | None = None
            if value is not None:
                self._storage.remove_item(key)
                try:
                    entry = CallbackState.from_json(value)
                except (ValueError, TypeError):
                    entry = None
                if entry is not None and entry.is_expired(self._now_ms()):
                    entry = None
            self.clear_invalid_values()
            return entry

    async def add(self, state: CallbackState) -> None:
        """Persist a pending request, purging all entries once on quota errors."""
        async with self._lock:
            self.clear_invalid_values()
            state.expires = int(self._now_ms() + self._ttl_ms)
            key = self._key(state.state)
            value = state.to_json()
            try:
                self._storage.set_item(key, value)
            except StorageQuotaError:
                logger.warning("Callback storage full, clearing all pending entries")
                self.clear_all_values()
                self._storage.set_item(key, value)
