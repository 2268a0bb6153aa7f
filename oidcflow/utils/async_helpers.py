"""Async utility helpers for oidcflow.

Single-flight coordination for operations that must not run twice
concurrently, bounded waits, and a decorator for calling coroutines
from synchronous entry points.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import functools
import logging

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..exceptions import MessageTimeoutError


F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

logger = logging.getLogger("oidcflow.auth")


def run_async(func: F) -> F:
    """Run an async function synchronously.

    Parameters
    ----------
    func : Callable
        The async function to wrap.

    Returns
    -------
    Callable
        A synchronous wrapper function.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper  # type: ignore[return-value]


class InFlightRegistry:
    """Registry of in-flight operations keyed by kind.

    The first caller for a kind starts the operation as its own task;
    callers arriving before it completes attach a waiter and receive the
    same outcome. Cancelling one caller only cancels that caller's wait.
    Waiters are settled in registration order, or in reverse when
    ``reverse`` is set for the kind.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._waiters: dict[str, list[asyncio.Future[Any]]] = {}
        self._tasks: dict[str, asyncio.Future[Any]] = {}

    def is_active(self, kind: str) -> bool:
        """Whether an operation of ``kind`` is in flight."""
        return bool(self._waiters.get(kind))

    def pending(self, kind: str) -> int:
        """Number of callers waiting on ``kind``."""
        return len(self._waiters.get(kind, ()))

    def attach(self, kind: str) -> tuple[asyncio.Future[Any], bool]:
        """Register a waiter.

        Returns
        -------
        tuple[asyncio.Future, bool]
            The waiter and whether it is the first one, in which case
            the caller must start the operation.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        waiters = self._waiters.setdefault(kind, [])
        waiters.append(future)
        return future, len(waiters) == 1

    def settle(
        self,
        kind: str,
        result: Any = None,
        error: BaseException | None = None,
        *,
        reverse: bool = False,
    ) -> int:
        """Deliver one outcome to every waiter of ``kind``.

        Returns
        -------
        int
            Number of waiters settled.
        """
        waiters = self._waiters.pop(kind, [])
        ordered = reversed(waiters) if reverse else waiters
        for future in ordered:
            if future.done():
                continue
            if isinstance(error, asyncio.CancelledError):
                future.cancel()
            elif error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
        return len(waiters)

    async def run(
        self,
        kind: str,
        operation: Callable[[], Awaitable[T]],
        *,
        reverse: bool = False,
    ) -> T:
        """Run ``operation`` once for all concurrent callers of ``kind``."""
        future, first = self.attach(kind)
        if first:
            task = asyncio.ensure_future(operation())
            self._tasks[kind] = task
            task.add_done_callback(functools.partial(self._finish, kind, reverse))
        else:
            logger.debug("Joining in-flight %s (%d waiting)", kind, self.pending(kind))
        return await future

    def _finish(self, kind: str, reverse: bool, task: asyncio.Future[Any]) -> None:
        if self._tasks.get(kind) is task:
            del self._tasks[kind]
        if task.cancelled():
            self.settle(kind, error=asyncio.CancelledError(), reverse=reverse)
        elif task.exception() is not None:
            self.settle(kind, error=task.exception(), reverse=reverse)
        else:
            self.settle(kind, result=task.result(), reverse=reverse)

    def cancel(self, kind: str) -> None:
        """Cancel the running operation of ``kind``, if any."""
        task = self._tasks.pop(kind, None)
        if task is not None and not task.done():
            task.cancel()


async def wait_for(awaitable: Awaitable[T], timeout: float, message: str) -> T:
    """Await with a deadline.

    Raises
    ------
    MessageTimeoutError
        If ``timeout`` seconds pass first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise MessageTimeoutError(message, timeout=timeout) from exc
