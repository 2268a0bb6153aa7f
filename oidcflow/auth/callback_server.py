"""Ephemeral localhost HTTP server for redirect capture.

Used by the loopback adapter to receive the authorization redirect on a
randomly assigned port. The full redirect URL is captured so it can be
run through the regular callback parser; a success or error page is
shown to the user.

Uses only stdlib (http.server, threading, urllib.parse).
"""

# pylint: disable=C0103,W0212,logging-too-many-args

from __future__ import annotations

import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse


logger = logging.getLogger("oidcflow.auth")

_PAGE_STYLE = """
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: {accent}; }}
  p {{ color: #666; }}
"""

_PAGE_HTML = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>{style}</style></head>
<body><div class="card">
  <h1>{heading}</h1>
  <p>{body}</p>
</div></body></html>"""


def _render_page(title: str, heading: str, body: str, accent: str = "#1a1a2e") -> str:
    return _PAGE_HTML.format(
        title=title,
        style=_PAGE_STYLE.format(accent=accent),
        heading=heading,
        body=body,
    )


_SUCCESS_HTML = _render_page(
    "Sign-in Complete", "&#x2705; Sign-in Complete", "You can close this window."
)
_WAITING_HTML = _render_page(
    "Waiting for Sign-in",
    "Waiting for sign-in&hellip;",
    "Please complete the sign-in in the browser window.",
)


def _error_html(message: str) -> str:
    safe_msg = html.escape(message, quote=True)
    return _render_page("Sign-in Error", "&#x274C; Sign-in Failed", safe_msg, "#cc0000")


def _first(params: dict[str, list[str]], name: str) -> str | None:
    return params.get(name, [None])[0]


class OAuthCallbackServer:
    """Ephemeral localhost HTTP server capturing one redirect.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    path : str
        Path the provider redirects to (default ``"/callback"``).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        """Initialize the callback server."""
        self._host = host
        self._port = port
        self._path = path
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._result: dict[str, Any] | None = None
        self._result_event = threading.Event()
        self._actual_port: int = 0

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI for this callback server.

        Returns
        -------
        str
            The full redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        return f"http://{self._host}:{self._actual_port}{self._path}"

    @property
    def running(self) -> bool:
        """Whether the server thread is serving."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> str:
        """Start the callback server on a daemon thread.

        Returns
        -------
        str
            The redirect URI to register with the authorization request.
        """
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for authorization redirects."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)

                if parsed.path == server_ref._path:
                    params = parse_qs(parsed.query, keep_blank_values=True)
                    result: dict[str, Any] = {
                        "url": f"http://{server_ref._host}:{server_ref._actual_port}{self.path}",
                        "code": _first(params, "code"),
                        "state": _first(params, "state"),
                        "error": _first(params, "error"),
                        "error_description": _first(params, "error_description"),
                    }

                    # Only capture the first redirect
                    if not server_ref._result_event.is_set():
                        server_ref._result = result

                        if result.get("error"):
                            error_msg = result.get("error_description") or result["error"]
                            self._send_html(_error_html(str(error_msg)))
                        else:
                            self._send_html(_SUCCESS_HTML)

                        server_ref._result_event.set()
                        # Shut down from another thread; shutdown() blocks until serve_forever exits
                        threading.Thread(target=self._shutdown_server, daemon=True).start()
                    else:
                        self._send_html(_SUCCESS_HTML)

                elif parsed.path == "/":
                    self._send_html(_WAITING_HTML)
                else:
                    self.send_error(404)

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def _shutdown_server(self) -> None:
                """Shut down the HTTP server."""
                if server_ref._server:
                    server_ref._server.shutdown()

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the oidcflow logger."""
                if args:
                    logger.debug("Redirect capture server: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._actual_port = self._server.server_address[1]

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        logger.debug("Redirect capture server started on %s", self.redirect_uri)
        return self.redirect_uri

    def wait_for_callback(self, timeout: float = 120.0) -> dict[str, Any] | None:
        """Block until the redirect is received or timeout expires.

        Parameters
        ----------
        timeout : float
            Maximum seconds to wait (default 120).

        Returns
        -------
        dict or None
            ``url`` (the full redirect URL) plus ``code``, ``state``,
            ``error`` and ``error_description``, or ``None`` on timeout.
        """
        received = self._result_event.wait(timeout=timeout)
        if received:
            return self._result
        return None

    def stop(self) -> None:
        """Force-shutdown the callback server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
