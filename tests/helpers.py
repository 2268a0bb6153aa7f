"""Test doubles shared by the oidcflow test suite.

Provides compact token construction, a scripted identity provider served
through ``httpx.MockTransport`` and an in-process frame host.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time

from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx

from oidcflow.auth.http import IdentityProviderClient
from oidcflow.auth.monitor import origin_of
from oidcflow.state.types import FrameMessage
from tests.constants import CLIENT_ID, ISSUER


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_token(claims: dict[str, Any] | None = None, **extra: Any) -> str:
    """Build an unsigned compact token carrying ``claims``."""
    payload = dict(claims or {})
    payload.update(extra)
    header = b64url(json.dumps({"alg": "none", "typ": "JWT"}).encode())
    body = b64url(json.dumps(payload).encode())
    return f"{header}.{body}.signature"


def fresh_claims(lifetime: int = 300, **extra: Any) -> dict[str, Any]:
    """Claims issued now and valid for ``lifetime`` seconds."""
    now = int(time.time())
    claims: dict[str, Any] = {
        "iat": now,
        "exp": now + lifetime,
        "sub": "user-1",
        "sid": "session-1",
        "realm_access": {"roles": ["user"]},
        "resource_access": {CLIENT_ID: {"roles": ["editor"]}},
    }
    claims.update(extra)
    return claims


def query_params(url: str) -> dict[str, str]:
    """Single-valued query parameters of ``url``."""
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query, keep_blank_values=True).items()}


# ── Identity provider ───────────────────────────────────────────────


class MockIdentityProvider:
    """Scripted token, userinfo and discovery endpoints.

    Attributes
    ----------
    requests : list[httpx.Request]
        Every request received, in order.
    token_status : int
        Status returned by the token endpoint.
    nonce : str or None
        Nonce placed in issued ID tokens.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.nonce: str | None = None
        self.issue_id_token = True
        self.lifetime = 300
        self.delay = 0.0
        self.metadata: dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "end_session_endpoint": f"{ISSUER}/logout",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "check_session_iframe": f"{ISSUER}/check-session",
        }

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded request."""
        body = self.requests[index].content.decode()
        return {k: v[0] for k, v in parse_qs(body).items()}

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/token")]

    def issue(self) -> dict[str, Any]:
        """A token endpoint response body."""
        body: dict[str, Any] = {
            "access_token": make_token(fresh_claims(self.lifetime)),
            "refresh_token": make_token(fresh_claims(1800, typ="Refresh")),
            "token_type": "Bearer",
            "expires_in": self.lifetime,
        }
        if self.issue_id_token:
            body["id_token"] = make_token(fresh_claims(self.lifetime, nonce=self.nonce))
        return body

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path

        if path.endswith("/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.issue())
        if path.endswith("/userinfo"):
            return httpx.Response(200, json={"sub": "user-1", "email": "user@example.com"})
        if path.endswith("/account"):
            return httpx.Response(200, json={"username": "user", "email": "user@example.com"})
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=self.metadata)
        if path.endswith("/keycloak.json"):
            return httpx.Response(
                200,
                json={
                    "auth-server-url": "https://sso.example.com",
                    "realm": "acme",
                    "resource": CLIENT_ID,
                    "credentials": {"secret": "s3cret"},
                },
            )
        return httpx.Response(404, json={"error": "not_found"})

    def client(self) -> IdentityProviderClient:
        """An IdentityProviderClient routed to this provider."""
        transport = httpx.MockTransport(self.handler)
        return IdentityProviderClient(http_client=httpx.AsyncClient(transport=transport))


# ── Frames ──────────────────────────────────────────────────────────


class FakeFrame:
    """A hidden frame whose replies are scripted by its host."""

    def __init__(self, host: FakeFrameHost, src: str, title: str, on_message: Any) -> None:
        self.host = host
        self.src = src
        self.title = title
        self.on_message = on_message
        self.origin = origin_of(src) or ""
        self.posted: list[tuple[str, str]] = []
        self.closed = False

    def post_message(self, data: str, target_origin: str) -> None:
        self.posted.append((data, target_origin))
        if self.host.check_reply is not None:
            self.reply(self.host.check_reply)

    def reply(self, data: Any, origin: str | None = None, source: Any = None) -> None:
        """Deliver a message from this frame on the next loop iteration."""
        message = FrameMessage(
            origin=origin or self.origin,
            source=self if source is None else source,
            data=data,
        )
        asyncio.get_running_loop().call_soon(self.on_message, message)

    def close(self) -> None:
        self.closed = True


class FakeFrameHost:
    """Frame host answering the check-session, probe and silent SSO pages.

    Parameters
    ----------
    check_reply : str or None
        Reply to every check-session post; None never replies.
    probe_reply : str or None
        Reply of the third-party storage probe page.
    silent_reply : callable, optional
        Receives the silent SSO frame and returns the redirect URL the
        silent page posts back.
    app_origin : str
        Origin the silent SSO page posts from.
    """

    def __init__(
        self,
        check_reply: str | None = "unchanged",
        probe_reply: str | None = "supported",
        silent_reply: Any = None,
        app_origin: str = "https://app.example.com",
    ) -> None:
        self.check_reply = check_reply
        self.probe_reply = probe_reply
        self.silent_reply = silent_reply
        self.app_origin = app_origin
        self.frames: list[FakeFrame] = []

    def find(self, fragment: str) -> list[FakeFrame]:
        return [f for f in self.frames if fragment in f.src]

    async def open_frame(self, src: str, title: str, on_message: Any) -> FakeFrame:
        frame = FakeFrame(self, src, title, on_message)
        self.frames.append(frame)
        if "3p-cookies" in src:
            if self.probe_reply is not None:
                frame.reply(self.probe_reply)
        elif "prompt=none" in src and self.silent_reply is not None:
            frame.reply(self.silent_reply(frame), origin=self.app_origin)
        return frame

