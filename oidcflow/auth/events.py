"""Lifecycle event hooks."""

from __future__ import annotations

import asyncio
import inspect
import logging

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


logger = logging.getLogger("oidcflow.auth")

Handler = Callable[..., Any]


@dataclass
class AuthEvents:
    """Optional handlers invoked as the session changes.

    Handlers may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop. Exceptions raised by a handler are
    logged and do not interrupt the flow.
    """

    on_ready: Handler | None = None
    on_auth_success: Handler | None = None
    on_auth_error: Handler | None = None
    on_auth_refresh_success: Handler | None = None
    on_auth_refresh_error: Handler | None = None
    on_auth_logout: Handler | None = None
    on_token_expired: Handler | None = None
    on_action_update: Handler | None = None
    on_url_cleaned: Handler | None = None
    _tasks: set[asyncio.Future[Any]] = field(
        default_factory=set, init=False, repr=False, compare=False
    )

    def fire(self, name: str, *args: Any) -> None:
        """Invoke handler ``name`` if one is set."""
        handler = getattr(self, name)
        if handler is None:
            return
        try:
            result = handler(*args)
        except Exception as exc:
            logger.exception("Callback error for '%s': %s", name, exc)
            return
        if not inspect.isawaitable(result):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop for '%s', handler skipped", name)
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: _log_task_error(name, t))


def _log_task_error(name: str, task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Callback error for '%s': %s", name, exc, exc_info=exc)
