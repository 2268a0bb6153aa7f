"""Session monitoring over hidden frames.

The identity provider publishes a check-session page; posting
``"<client_id> <session_id>"`` to it yields ``unchanged``, ``changed`` or
``error``. A one-shot probe page reports whether third-party storage is
available to such frames at all.

Frames are provided by the embedding environment through
:class:`FrameHost`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlsplit

from ..exceptions import ConfigurationError, SessionCheckError
from ..state.types import CheckResult, FrameMessage
from ..utils.async_helpers import InFlightRegistry, wait_for


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import InitSettings
    from .endpoints import Endpoints
    from .session import SessionManager


logger = logging.getLogger("oidcflow.auth")

CHECK_KIND = "session-check"


class HiddenFrame(Protocol):
    """A loaded hidden frame."""

    def post_message(self, data: str, target_origin: str) -> None:
        """Post ``data`` to the frame, restricted to ``target_origin``."""
        ...

    def close(self) -> None:
        """Remove the frame."""
        ...


class FrameHost(Protocol):
    """Creates hidden frames and routes their messages."""

    async def open_frame(
        self, src: str, title: str, on_message: Callable[[FrameMessage], None]
    ) -> HiddenFrame:
        """Load ``src`` in a new hidden frame.

        Returns once the frame has loaded. Every message the frame posts
        afterwards is passed to ``on_message``.
        """
        ...


def origin_of(url: str, app_origin: str | None = None) -> str | None:
    """Origin (``scheme://host[:port]``) of ``url``.

    Path-relative URLs resolve to ``app_origin``.
    """
    parts = urlsplit(url)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    if url.startswith("/"):
        return app_origin
    return None


async def await_frame_message(
    frame_host: FrameHost,
    src: str,
    title: str,
    accept: Callable[[FrameMessage, Any], bool],
    timeout: float,
    timeout_message: str,
) -> FrameMessage:
    """Open a frame and wait for the first message it posts that ``accept`` approves.

    ``accept`` receives the message and the frame. The frame is closed
    once a message is accepted or the wait times out.

    Raises
    ------
    MessageTimeoutError
        If no accepted message arrives within ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    received: asyncio.Future[FrameMessage] = loop.create_future()
    holder: dict[str, Any] = {}

    def on_message(message: FrameMessage) -> None:
        frame = holder.get("frame")
        if frame is None or received.done():
            return
        if accept(message, frame):
            received.set_result(message)

    frame = await frame_host.open_frame(src, title, on_message)
    holder["frame"] = frame
    try:
        return await wait_for(received, timeout, timeout_message)
    finally:
        frame.close()


class SessionMonitor:
    """Polls the provider session through the check-session frame.

    Parameters
    ----------
    client_id : str
        Client ID sent with each check.
    init : InitSettings
        Monitoring options (enable flag, interval, timeouts, origin).
    endpoints : Endpoints
        Endpoint set providing the frame URLs.
    session : SessionManager
        Session whose id is checked.
    frame_host : FrameHost, optional
        Frame provider; monitoring is disabled without one.
    clear_token : callable, optional
        Invoked when the provider reports ``changed`` or ``error``
        (default: ``session.clear_tokens``).
    """

    def __init__(
        self,
        client_id: str,
        init: InitSettings,
        endpoints: Endpoints,
        session: SessionManager,
        frame_host: FrameHost | None = None,
        clear_token: Callable[[], Any] | None = None,
    ) -> None:
        """Initialize the session monitor."""
        self.client_id = client_id
        self.init = init
        self.endpoints = endpoints
        self.session = session
        self.frame_host = frame_host
        self.clear_token = clear_token or session.clear_tokens

        self.enabled = bool(init.check_login_iframe and frame_host is not None)
        self.interval = init.check_login_iframe_interval

        self._frame: HiddenFrame | None = None
        self._origin: str | None = None
        self._checks = InFlightRegistry()
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def origin(self) -> str | None:
        """Origin trusted for check-session replies."""
        return self._origin

    @property
    def ready(self) -> bool:
        """Whether the check-session frame is loaded."""
        return self._frame is not None and self._origin is not None

    def disable(self) -> None:
        """Stop monitoring for the rest of the engine's life."""
        self.enabled = False
        self._cancel_poll()

    # ── Check-session frame ──────────────────────────────────────────

    async def setup(self) -> None:
        """Load the check-session frame once."""
        if not self.enabled or self._frame is not None or self.frame_host is None:
            return

        try:
            src = self.endpoints.check_session_iframe()
        except ConfigurationError as exc:
            logger.warning("Session monitoring disabled: %s", exc)
            self.disable()
            return

        origin = origin_of(src, self.init.origin) if src else None
        if origin is None:
            logger.warning("Session monitoring disabled: cannot derive origin of %s", src)
            self.disable()
            return

        self._origin = origin
        self._frame = await self.frame_host.open_frame(
            src, "oidcflow session iframe", self._on_message
        )
        logger.debug("Check-session frame loaded from %s", origin)

    def _on_message(self, message: FrameMessage) -> None:
        if message.origin != self._origin or message.source is not self._frame:
            logger.debug("Ignoring frame message from %s", message.origin)
            return
        try:
            result = CheckResult(message.data)
        except ValueError:
            return

        if result is not CheckResult.UNCHANGED:
            logger.info("Provider session %s, clearing tokens", result.value)
            self.clear_token()

        if result is CheckResult.ERROR:
            error = SessionCheckError("Error while checking login iframe")
            self._checks.settle(CHECK_KIND, error=error, reverse=True)
        else:
            self._checks.settle(
                CHECK_KIND, result=result is CheckResult.UNCHANGED, reverse=True
            )

    async def check(self) -> bool | None:
        """Ask the provider whether the session is unchanged.

        Concurrent calls share one round trip.

        Returns
        -------
        bool or None
            ``True`` when unchanged, ``False`` when changed, ``None`` when
            the frame is not loaded.

        Raises
        ------
        SessionCheckError
            If the provider replied ``error``.
        """
        if not self.ready:
            return None
        future, first = self._checks.attach(CHECK_KIND)
        if first:
            session_id = self.session.state.session_id or ""
            self._frame.post_message(f"{self.client_id} {session_id}", self._origin)
        return await future

    def schedule(self) -> None:
        """Start periodic checks, replacing any running schedule."""
        self._cancel_poll()
        if not self.enabled or not self.session.state.token:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def _poll(self) -> None:
        while self.enabled and self.session.state.token:
            await asyncio.sleep(self.interval)
            try:
                unchanged = await self.check()
            except SessionCheckError as exc:
                logger.warning("Session check failed: %s", exc)
                return
            if not unchanged:
                return

    def _cancel_poll(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Third-party storage probe ────────────────────────────────────

    async def probe_third_party_storage(self, silent_sso: bool = False) -> bool | None:
        """Check whether frames from the provider can use storage.

        Runs only when monitoring or silent SSO is configured and the
        provider publishes a probe page. Disables monitoring when
        storage is unsupported.

        Returns
        -------
        bool or None
            ``True``/``False`` for supported/unsupported, ``None`` when
            the probe did not run.

        Raises
        ------
        MessageTimeoutError
            If the probe page does not answer in time.
        """
        if not (self.enabled or silent_sso) or self.frame_host is None:
            return None
        src = self.endpoints.third_party_cookies_iframe()
        if not src:
            return None

        message = await await_frame_message(
            self.frame_host,
            src,
            "oidcflow 3rd party check iframe",
            lambda msg, frame: msg.source is frame and msg.data in ("supported", "unsupported"),
            self.init.message_receive_timeout,
            "Timeout when waiting for 3rd party check iframe message.",
        )

        if message.data == "unsupported":
            logger.warning(
                "Your browser is blocking access to 3rd-party cookies, this means:\n\n"
                " - It is not possible to retrieve tokens without redirecting to the server.\n"
                " - It is not possible to automatically detect changes to the session status."
            )
            self.disable()
            return False
        return True

    def close(self) -> None:
        """Stop polling, remove the frame and cancel pending checks."""
        self._cancel_poll()
        self._checks.settle(CHECK_KIND, error=asyncio.CancelledError())
        if self._frame is not None:
            self._frame.close()
            self._frame = None
