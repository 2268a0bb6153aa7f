"""Tests for the AuthFlowManager engine.

The identity provider is served through ``httpx.MockTransport`` and
hidden frames through :class:`tests.helpers.FakeFrameHost`; browser
navigation is captured by patching ``webbrowser.open``.
"""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio

from unittest.mock import MagicMock

import pytest

from oidcflow.auth.events import AuthEvents
from oidcflow.auth.flow import AuthFlowManager
from oidcflow.exceptions import (
    ConfigurationError,
    NetworkError,
    NotAuthenticatedError,
    ProtocolError,
    StateMismatchError,
)
from oidcflow.state import LocalCallbackStorage
from oidcflow.state.types import AuthFlowState, LoginOptions
from tests.constants import (
    APP_ORIGIN,
    APP_URL,
    CLIENT_ID,
    ISSUER,
    OIDC_BASE,
    REALM,
    REALM_URL,
    SERVER_URL,
)
from tests.helpers import FakeFrameHost, MockIdentityProvider, fresh_claims, make_token, query_params


CLIENT = {"url": SERVER_URL, "realm": REALM, "client_id": CLIENT_ID}
SILENT_URI = f"{APP_ORIGIN}/silent-check-sso.html"
NO_MONITOR = {"check_login_iframe": False}


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def idp() -> MockIdentityProvider:
    return MockIdentityProvider()


@pytest.fixture()
def navigated(monkeypatch) -> list[str]:
    """URLs handed to the system browser."""
    urls: list[str] = []
    monkeypatch.setattr("oidcflow.auth.adapters.webbrowser.open", urls.append)
    return urls


@pytest.fixture()
def storage() -> LocalCallbackStorage:
    return LocalCallbackStorage()


@pytest.fixture()
def events() -> AuthEvents:
    return AuthEvents(
        on_ready=MagicMock(),
        on_auth_success=MagicMock(),
        on_auth_error=MagicMock(),
        on_auth_logout=MagicMock(),
        on_url_cleaned=MagicMock(),
        on_action_update=MagicMock(),
    )


def _engine(idp, storage=None, config=None, **kwargs) -> AuthFlowManager:
    return AuthFlowManager(
        dict(CLIENT) if config is None else config,
        http=idp.client(),
        storage=storage or LocalCallbackStorage(),
        **kwargs,
    )


def _redirect_for(login_url: str, idp: MockIdentityProvider, base: str = APP_URL, **params) -> str:
    """Redirect URL answering the authorization request ``login_url``."""
    request = query_params(login_url)
    idp.nonce = request.get("nonce")
    params.setdefault("code", "auth-code")
    response = "&".join(f"{k}={v}" for k, v in params.items())
    return f"{base}#state={request['state']}&session_state=s1&{response}"


def _stored_tokens() -> dict[str, str]:
    return {
        "token": make_token(fresh_claims()),
        "refresh_token": make_token(fresh_claims(1800, typ="Refresh")),
        "id_token": make_token(fresh_claims(nonce="n")),
    }


# ── Construction and init ───────────────────────────────────────────


class TestConstruction:
    """Tests for constructor validation."""

    def test_missing_required_option(self, idp) -> None:
        with pytest.raises(ConfigurationError, match="client_id"):
            _engine(idp, config={"url": SERVER_URL, "realm": REALM})

    def test_config_url_defers_validation(self, idp) -> None:
        engine = _engine(idp, config=f"{SERVER_URL}/keycloak.json")
        assert engine.client.config_url == f"{SERVER_URL}/keycloak.json"
        assert engine.flow_state is AuthFlowState.PENDING

    def test_state_before_init(self, idp) -> None:
        engine = _engine(idp)
        assert engine.authenticated is False
        assert engine.token is None

    def test_operations_require_init(self, idp) -> None:
        engine = _engine(idp)
        with pytest.raises(ConfigurationError, match="init"):
            engine.create_logout_url()
        with pytest.raises(ConfigurationError, match="init"):
            asyncio.run(engine.create_login_url())


class TestInit:
    """Tests for AuthFlowManager.init."""

    @pytest.mark.asyncio
    async def test_plain_init(self, idp, events) -> None:
        engine = _engine(idp, events=events)
        assert await engine.init(NO_MONITOR, APP_URL) is False
        assert engine.flow_state is AuthFlowState.READY
        assert isinstance(engine.endpoints.token(), str)
        events.on_ready.assert_called_once_with(False)
        assert idp.requests == []
        await engine.close()
        assert engine.flow_state is AuthFlowState.CLOSED

    @pytest.mark.asyncio
    async def test_init_only_once(self, idp) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR)
        with pytest.raises(ConfigurationError, match="only be initialized once"):
            await engine.init(NO_MONITOR)
        await engine.close()

    @pytest.mark.asyncio
    async def test_invalid_options(self, idp) -> None:
        engine = _engine(idp)
        with pytest.raises(ConfigurationError):
            await engine.init({"flow": "magic"})
        assert engine.flow_state is AuthFlowState.FAILED

    @pytest.mark.asyncio
    async def test_adapter_config_document(self, idp) -> None:
        engine = _engine(idp, config=f"{SERVER_URL}/keycloak.json")
        await engine.init(NO_MONITOR)
        assert engine.client.realm == REALM
        assert engine.client.client_id == CLIENT_ID
        assert engine.client.client_secret == "s3cret"
        assert engine.endpoints.token() == f"{OIDC_BASE}/token"
        await engine.close()

    @pytest.mark.asyncio
    async def test_oidc_discovery(self, idp) -> None:
        engine = _engine(idp, config={"oidc_provider": ISSUER, "client_id": CLIENT_ID})
        await engine.init(NO_MONITOR)
        assert engine.endpoints.token() == f"{ISSUER}/token"
        assert engine.endpoints.realm_url is None
        await engine.close()

    @pytest.mark.asyncio
    async def test_oidc_metadata_skips_discovery(self, idp) -> None:
        engine = _engine(idp, config={"client_id": CLIENT_ID}, oidc_metadata=idp.metadata)
        await engine.init(NO_MONITOR)
        assert engine.endpoints.authorize() == f"{ISSUER}/authorize"
        assert idp.requests == []
        await engine.close()


# ── Authorization code flow ─────────────────────────────────────────


class TestCodeFlow:
    """Tests for the standard flow."""

    @pytest.mark.asyncio
    async def test_login_and_redirect_on_next_start(self, idp, navigated, storage, events) -> None:
        first = _engine(idp, storage)
        await first.init(NO_MONITOR, APP_URL)
        await first.login()
        assert len(navigated) == 1
        request = query_params(navigated[0])
        assert navigated[0].startswith(f"{OIDC_BASE}/auth?")
        assert request["redirect_uri"] == APP_URL
        assert request["response_mode"] == "fragment"
        assert request["code_challenge_method"] == "S256"

        redirect = _redirect_for(navigated[0], idp)
        second = _engine(idp, storage, events=events)
        assert await second.init(NO_MONITOR, redirect) is True

        assert second.cleaned_url == APP_URL
        events.on_url_cleaned.assert_called_once_with(APP_URL)
        events.on_auth_success.assert_called_once()
        events.on_ready.assert_called_once_with(True)

        form = idp.form()
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == APP_URL
        assert len(form["code_verifier"]) == 96
        assert second.subject == "user-1"
        assert second.session_id == "session-1"

        await first.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_handle_redirect(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login()
        assert await engine.handle_redirect(_redirect_for(navigated[0], idp)) is True
        assert engine.authenticated is True
        assert engine.cleaned_url == APP_URL
        await engine.close()

    @pytest.mark.asyncio
    async def test_handle_redirect_without_response(self, idp) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        assert await engine.handle_redirect(f"{APP_URL}#section") is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_state_redeemed_once(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login()
        redirect = _redirect_for(navigated[0], idp)
        await engine.handle_redirect(redirect)
        with pytest.raises(StateMismatchError, match="Invalid state"):
            await engine.handle_redirect(redirect)
        assert engine.authenticated is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_unknown_state_discarded_on_init(self, idp, events) -> None:
        engine = _engine(idp, events=events)
        redirect = f"{APP_URL}#state=unknown&code=c"
        assert await engine.init(NO_MONITOR, redirect) is False
        assert engine.cleaned_url == APP_URL
        assert idp.token_requests() == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login()
        redirect = _redirect_for(navigated[0], idp)
        idp.nonce = "forged"
        with pytest.raises(StateMismatchError, match="Invalid nonce"):
            await engine.handle_redirect(redirect)
        assert engine.authenticated is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_nonce_check_disabled(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, "use_nonce": False}, APP_URL)
        await engine.login()
        assert "nonce" not in query_params(navigated[0])
        redirect = _redirect_for(navigated[0], idp)
        idp.nonce = "anything"
        assert await engine.handle_redirect(redirect) is True
        await engine.close()

    @pytest.mark.asyncio
    async def test_exchange_failure(self, idp, navigated, events) -> None:
        idp.token_status = 400
        engine = _engine(idp, events=events)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login()
        with pytest.raises(NetworkError):
            await engine.handle_redirect(_redirect_for(navigated[0], idp))
        events.on_auth_error.assert_called_once()
        await engine.close()

    @pytest.mark.asyncio
    async def test_action_status_reported(self, idp, navigated, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login(LoginOptions(action="UPDATE_PASSWORD"))
        assert query_params(navigated[0])["kc_action"] == "UPDATE_PASSWORD"
        redirect = _redirect_for(
            navigated[0], idp, kc_action_status="success", kc_action="UPDATE_PASSWORD"
        )
        await engine.handle_redirect(redirect)
        events.on_action_update.assert_called_once_with("success", "UPDATE_PASSWORD")
        await engine.close()

    @pytest.mark.asyncio
    async def test_action_status_ignored_for_unknown_state(self, idp, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init(NO_MONITOR, APP_URL)
        redirect = f"{APP_URL}#state=unknown&code=c&kc_action_status=success"
        with pytest.raises(StateMismatchError, match="Invalid state"):
            await engine.handle_redirect(redirect)
        events.on_action_update.assert_not_called()
        await engine.close()

    @pytest.mark.asyncio
    async def test_query_response_mode(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, "response_mode": "query"}, f"{APP_URL}?tab=2")
        await engine.login()
        request = query_params(navigated[0])
        assert request["response_mode"] == "query"
        redirect = f"{APP_URL}?tab=2&state={request['state']}&code=c"
        idp.nonce = request["nonce"]
        assert await engine.handle_redirect(redirect) is True
        assert engine.cleaned_url == f"{APP_URL}?tab=2"
        await engine.close()


class TestProviderErrors:
    """Tests for error responses."""

    @pytest.mark.asyncio
    async def test_error_raises(self, idp, navigated, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login()
        redirect = _redirect_for(
            navigated[0], idp, code="", error="access_denied", error_description="Denied"
        )
        with pytest.raises(ProtocolError, match="Denied") as exc_info:
            await engine.handle_redirect(redirect)
        assert exc_info.value.error == "access_denied"
        events.on_auth_error.assert_called_once()
        await engine.close()

    @pytest.mark.asyncio
    async def test_silent_error_ignored(self, idp, navigated, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login(LoginOptions(prompt="none"))
        redirect = _redirect_for(navigated[0], idp, code="", error="login_required")
        assert await engine.handle_redirect(redirect) is False
        events.on_auth_error.assert_not_called()
        await engine.close()

    @pytest.mark.asyncio
    async def test_authentication_expired_retried(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        await engine.login(LoginOptions(login_hint="alice"))
        expired = {
            "code": "",
            "error": "temporarily_unavailable",
            "error_description": "authentication_expired",
        }

        assert await engine.handle_redirect(_redirect_for(navigated[0], idp, **expired)) is False
        assert len(navigated) == 2
        assert query_params(navigated[1])["login_hint"] == "alice"

        with pytest.raises(ProtocolError, match="authentication_expired"):
            await engine.handle_redirect(_redirect_for(navigated[1], idp, **expired))
        assert len(navigated) == 2
        await engine.close()


# ── Implicit and hybrid flows ───────────────────────────────────────


class TestImplicitFlow:
    """Tests for tokens delivered in the redirect."""

    @pytest.mark.asyncio
    async def test_implicit(self, idp, navigated, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init({**NO_MONITOR, "flow": "implicit"}, APP_URL)
        await engine.login()
        request = query_params(navigated[0])
        assert request["response_type"] == "id_token token"

        access = make_token(fresh_claims())
        id_token = make_token(fresh_claims(nonce=request["nonce"]))
        redirect = (
            f"{APP_URL}#state={request['state']}&access_token={access}"
            f"&id_token={id_token}&token_type=bearer&expires_in=300"
        )
        assert await engine.handle_redirect(redirect) is True
        assert engine.token == access
        assert engine.refresh_token is None
        assert idp.token_requests() == []
        events.on_auth_success.assert_called_once()
        assert engine.is_token_expired() is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_hybrid(self, idp, navigated) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, "flow": "hybrid"}, APP_URL)
        await engine.login()
        request = query_params(navigated[0])
        assert request["response_type"] == "code id_token token"

        idp.nonce = request["nonce"]
        access = make_token(fresh_claims())
        id_token = make_token(fresh_claims(nonce=request["nonce"]))
        redirect = (
            f"{APP_URL}#state={request['state']}&code=c"
            f"&access_token={access}&id_token={id_token}"
        )
        assert await engine.handle_redirect(redirect) is True
        assert len(idp.token_requests()) == 1
        assert engine.refresh_token is not None
        await engine.close()


# ── Stored tokens and on-load actions ───────────────────────────────


class TestRestoreTokens:
    """Tests for initializing from stored tokens."""

    @pytest.mark.asyncio
    async def test_refreshes_stored_tokens(self, idp, events) -> None:
        engine = _engine(idp, events=events)
        stored = _stored_tokens()
        assert await engine.init({**NO_MONITOR, **stored}, APP_URL) is True
        form = idp.form()
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == stored["refresh_token"]
        events.on_auth_success.assert_called_once()
        await engine.close()

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises(self, idp, events) -> None:
        idp.token_status = 400
        engine = _engine(idp, events=events)
        with pytest.raises(NetworkError):
            await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        events.on_auth_error.assert_called_once()
        assert engine.authenticated is False
        assert engine.flow_state is AuthFlowState.FAILED

    @pytest.mark.asyncio
    async def test_rejected_refresh_falls_back_to_on_load(self, idp, navigated) -> None:
        idp.token_status = 400
        engine = _engine(idp)
        options = {**NO_MONITOR, **_stored_tokens(), "on_load": "check-sso"}
        assert await engine.init(options, APP_URL) is False
        assert query_params(navigated[0])["prompt"] == "none"
        await engine.close()

    @pytest.mark.asyncio
    async def test_session_check_instead_of_refresh(self, idp, events) -> None:
        host = FakeFrameHost(check_reply="unchanged")
        engine = _engine(idp, frame_host=host, events=events)
        assert await engine.init(_stored_tokens(), APP_URL) is True
        assert idp.token_requests() == []
        assert host.find("login-status-iframe.html")[0].posted == [
            (f"{CLIENT_ID} session-1", SERVER_URL)
        ]
        events.on_auth_success.assert_called_once()
        await engine.close()

    @pytest.mark.asyncio
    async def test_changed_session_clears_tokens(self, idp, events) -> None:
        host = FakeFrameHost(check_reply="changed")
        engine = _engine(idp, frame_host=host, events=events)
        assert await engine.init(_stored_tokens(), APP_URL) is False
        events.on_auth_logout.assert_called_once()
        events.on_auth_success.assert_not_called()
        await engine.close()


class TestOnLoad:
    """Tests for check-sso and login-required."""

    @staticmethod
    def _silent_reply(idp, **response):
        def reply(frame):
            return _redirect_for(frame.src, idp, base=SILENT_URI, **response)

        return reply

    @pytest.mark.asyncio
    async def test_login_required(self, idp, navigated) -> None:
        engine = _engine(idp)
        options = {**NO_MONITOR, "on_load": "login-required", "locale": "de"}
        assert await engine.init(options, APP_URL) is False
        request = query_params(navigated[0])
        assert "prompt" not in request
        assert request["ui_locales"] == "de"
        assert engine.login_required is True
        await engine.close()

    @pytest.mark.asyncio
    async def test_check_sso_redirects_without_frames(self, idp, navigated) -> None:
        engine = _engine(idp)
        assert await engine.init({**NO_MONITOR, "on_load": "check-sso"}, APP_URL) is False
        assert query_params(navigated[0])["prompt"] == "none"
        await engine.close()

    @pytest.mark.asyncio
    async def test_silent_check_sso(self, idp, navigated) -> None:
        host = FakeFrameHost(check_reply="changed", silent_reply=self._silent_reply(idp))
        engine = _engine(idp, frame_host=host)
        options = {"on_load": "check-sso", "silent_check_sso_redirect_uri": SILENT_URI}
        assert await engine.init(options, APP_URL) is True

        assert navigated == []
        silent = [f for f in host.frames if "prompt=none" in f.src][0]
        assert silent.closed is True
        assert query_params(silent.src)["redirect_uri"] == SILENT_URI
        assert idp.form()["redirect_uri"] == SILENT_URI
        await engine.close()

    @pytest.mark.asyncio
    async def test_silent_check_sso_not_logged_in(self, idp, navigated) -> None:
        host = FakeFrameHost(
            check_reply="changed",
            silent_reply=self._silent_reply(idp, code="", error="login_required"),
        )
        engine = _engine(idp, frame_host=host)
        options = {"on_load": "check-sso", "silent_check_sso_redirect_uri": SILENT_URI}
        assert await engine.init(options, APP_URL) is False
        assert navigated == []
        assert idp.token_requests() == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_blocked_storage_falls_back_to_redirect(self, idp, navigated) -> None:
        host = FakeFrameHost(probe_reply="unsupported")
        engine = _engine(idp, frame_host=host)
        options = {"on_load": "check-sso", "silent_check_sso_redirect_uri": SILENT_URI}
        assert await engine.init(options, APP_URL) is False
        assert query_params(navigated[0])["prompt"] == "none"
        assert engine.monitor.enabled is False
        await engine.close()


# ── Session operations ──────────────────────────────────────────────


class TestSessionOperations:
    """Tests for token, role and profile operations."""

    @pytest.mark.asyncio
    async def test_clear_token(self, idp, events) -> None:
        engine = _engine(idp, events=events)
        await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        engine.clear_token()
        assert engine.authenticated is False
        events.on_auth_logout.assert_called_once()
        engine.clear_token()
        events.on_auth_logout.assert_called_once()
        await engine.close()

    @pytest.mark.asyncio
    async def test_clear_token_restarts_required_login(self, idp, navigated) -> None:
        engine = _engine(idp)
        options = {**NO_MONITOR, **_stored_tokens(), "on_load": "login-required"}
        assert await engine.init(options, APP_URL) is True
        assert navigated == []
        engine.clear_token()
        await asyncio.sleep(0.05)
        assert len(navigated) == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_update_token(self, idp) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        assert await engine.update_token(30) is False
        assert await engine.update_token(-1) is True
        assert len(idp.token_requests()) == 2
        await engine.close()

    @pytest.mark.asyncio
    async def test_roles(self, idp) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        assert engine.has_realm_role("user") is True
        assert engine.has_realm_role("admin") is False
        assert engine.has_resource_role("editor") is True
        assert engine.has_resource_role("editor", "other-app") is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_load_user_profile(self, idp) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        profile = await engine.load_user_profile()
        assert profile["username"] == "user"
        assert engine.profile == profile
        request = idp.requests[-1]
        assert str(request.url) == f"{REALM_URL}/account"
        assert request.headers["Authorization"] == f"bearer {engine.token}"
        await engine.close()

    @pytest.mark.asyncio
    async def test_load_user_info(self, idp) -> None:
        engine = _engine(idp)
        await engine.init({**NO_MONITOR, **_stored_tokens()}, APP_URL)
        info = await engine.load_user_info()
        assert info["email"] == "user@example.com"
        assert str(idp.requests[-1].url) == f"{OIDC_BASE}/userinfo"
        await engine.close()

    @pytest.mark.asyncio
    async def test_profile_requires_token(self, idp) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        with pytest.raises(NotAuthenticatedError):
            await engine.load_user_info()
        await engine.close()

    @pytest.mark.asyncio
    async def test_profile_unavailable_for_oidc_provider(self, idp) -> None:
        engine = _engine(idp, config={"client_id": CLIENT_ID}, oidc_metadata=idp.metadata)
        await engine.init(NO_MONITOR, APP_URL)
        with pytest.raises(ConfigurationError, match="generic OIDC provider"):
            await engine.load_user_profile()
        await engine.close()

    @pytest.mark.asyncio
    async def test_account_url(self, idp) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        url = engine.create_account_url()
        assert url.startswith(f"{REALM_URL}/account?")
        assert query_params(url) == {"referrer": CLIENT_ID, "referrer_uri": APP_URL}
        await engine.close()

    @pytest.mark.asyncio
    async def test_register_url(self, idp) -> None:
        engine = _engine(idp)
        await engine.init(NO_MONITOR, APP_URL)
        url = await engine.create_register_url()
        assert url.startswith(f"{OIDC_BASE}/registrations?")
        await engine.close()

    @pytest.mark.asyncio
    async def test_close_keeps_injected_http_client_open(self, idp) -> None:
        http = idp.client()
        engine = AuthFlowManager(dict(CLIENT), http=http, storage=LocalCallbackStorage())
        await engine.init(NO_MONITOR, APP_URL)
        await engine.close()
        assert await http.fetch_json(f"{OIDC_BASE}/userinfo") == {
            "sub": "user-1",
            "email": "user@example.com",
        }
        await http.close()
