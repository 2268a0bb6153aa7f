"""Abstract base classes for callback state storage.

Two layers: a synchronous key/value contract modelled on browser local
storage, and the async callback store used by the authorization flow.
"""

# pylint: disable=unnecessary-ellipsis
# Ellipsis (...) is the standard Python idiom for abstract method bodies

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from .types import CallbackState


class KeyValueStorage(ABC):
    """Persisted string key/value store.

    Implementations raise :class:`~oidcflow.exceptions.StorageQuotaError`
    from :meth:`set_item` when they cannot hold another value.
    """

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None."""
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        """Return a snapshot of all stored keys."""
        ...


class CallbackStorage(ABC):
    """Store of pending authorization requests keyed by state id.

    Entries are single-use: :meth:`get` removes what it returns.
    All methods are async to support both local and network-backed stores.
    """

    @abstractmethod
    async def add(self, state: CallbackState) -> None:
        """Persist a pending request.

        Parameters
        ----------
        state : CallbackState
            The entry to store under ``state.state``.

        Raises
        ------
        StorageError
            If the entry cannot be written.
        """
        ...

    @abstractmethod
    async def get(self, state_id: str | None) -> CallbackState | None:
        """Read and delete the entry for ``state_id``.

        Parameters
        ----------
        state_id : str or None
            The state id from the redirect.

        Returns
        -------
        CallbackState or None
            The stored entry, or None when unknown or expired.
        """
        ...
