"""Factory for callback state stores."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

from ..exceptions import StorageError
from .cookie import CookieCallbackStorage
from .memory import LocalCallbackStorage, MemoryStorage
from .types import StorageBackend


if TYPE_CHECKING:
    from ..config import StorageSettings
    from .base import CallbackStorage, KeyValueStorage
    from .cookie import CookieJar


logger = logging.getLogger("oidcflow.state")


def create_callback_storage(
    settings: StorageSettings | None = None,
    *,
    kv_storage: KeyValueStorage | None = None,
    cookie_jar: CookieJar | None = None,
    redis_client: Any = None,
) -> CallbackStorage:
    """Create the callback store selected by the configuration.

    The ``local`` backend probes the key/value store and falls back to
    cookies when it is unusable.

    Parameters
    ----------
    settings : StorageSettings, optional
        Storage section (default: from the global settings).
    kv_storage : KeyValueStorage, optional
        Key/value backend for the ``local`` store.
    cookie_jar : CookieJar, optional
        Cookie backend for the ``cookie`` store and the fallback.
    redis_client : Redis, optional
        Pre-configured client for the ``redis`` store.

    Returns
    -------
    CallbackStorage
        A configured callback store.
    """
    if settings is None:
        from ..config import get_settings

        settings = get_settings().storage

    backend = StorageBackend(settings.backend)

    if backend is StorageBackend.REDIS:
        from .redis import RedisCallbackStorage

        return RedisCallbackStorage(
            redis_url=settings.redis_url,
            prefix=settings.prefix,
            ttl_seconds=settings.ttl_seconds,
            redis_client=redis_client,
        )

    if backend is StorageBackend.LOCAL:
        try:
            return LocalCallbackStorage(
                kv_storage if kv_storage is not None else MemoryStorage(settings.max_entries),
                prefix=settings.prefix,
                ttl_seconds=settings.ttl_seconds,
            )
        except StorageError as exc:
            logger.warning("Key/value storage unavailable, using cookies: %s", exc)

    return CookieCallbackStorage(
        cookie_jar,
        prefix=settings.prefix,
        ttl_seconds=settings.ttl_seconds,
    )
