"""Tests for the in-process and cookie callback stores."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import json

import pytest

from oidcflow.config import StorageSettings
from oidcflow.exceptions import StorageError, StorageQuotaError
from oidcflow.state import (
    CallbackState,
    CookieCallbackStorage,
    LocalCallbackStorage,
    LoginOptions,
    MemoryCookieJar,
    MemoryStorage,
    create_callback_storage,
)
from oidcflow.state.base import KeyValueStorage
from tests.constants import NOW


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _entry(state: str = "s-1", **kwargs) -> CallbackState:
    return CallbackState(
        state=state,
        nonce=kwargs.pop("nonce", "n-1"),
        redirect_uri=kwargs.pop("redirect_uri", "https%3A%2F%2Fapp%2Fcb"),
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class BrokenStorage(KeyValueStorage):
    """Key/value store refusing every write."""

    def get_item(self, key):
        return None

    def set_item(self, key, value):
        raise RuntimeError("disabled")

    def remove_item(self, key):
        return None

    def keys(self):
        return []


# --- CallbackState ---


class TestCallbackState:
    """Tests for the persisted layout."""

    def test_json_layout(self) -> None:
        entry = _entry(pkce_code_verifier="v" * 43, prompt="none", expires=5)
        data = json.loads(entry.to_json())
        assert data == {
            "state": "s-1",
            "nonce": "n-1",
            "redirectUri": "https%3A%2F%2Fapp%2Fcb",
            "loginOptions": {"attempt": 0},
            "pkceCodeVerifier": "v" * 43,
            "prompt": "none",
            "expires": 5,
        }

    def test_round_trip_login_options(self) -> None:
        options = LoginOptions(prompt="login", scope="email", attempt=1)
        entry = _entry(login_options=options)
        restored = CallbackState.from_json(entry.to_json())
        assert restored.login_options == options

    def test_from_json_rejects_missing_state(self) -> None:
        with pytest.raises(ValueError):
            CallbackState.from_json('{"nonce": "x"}')


# --- MemoryStorage ---


class TestMemoryStorage:
    """Tests for the bounded key/value store."""

    def test_basic_operations(self) -> None:
        storage = MemoryStorage()
        storage.set_item("a", "1")
        assert storage.get_item("a") == "1"
        assert storage.keys() == ["a"]
        storage.remove_item("a")
        assert storage.get_item("a") is None

    def test_quota(self) -> None:
        storage = MemoryStorage(max_entries=1)
        storage.set_item("a", "1")
        storage.set_item("a", "2")
        with pytest.raises(StorageQuotaError):
            storage.set_item("b", "1")


# --- LocalCallbackStorage ---


class TestLocalCallbackStorage:
    """Tests for LocalCallbackStorage."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, clock: FakeClock) -> None:
        store = LocalCallbackStorage(MemoryStorage(), clock=clock)
        await store.add(_entry())
        got = await store.get("s-1")
        assert got is not None
        assert got.nonce == "n-1"
        assert got.expires == int(NOW * 1000) + 3600 * 1000

    @pytest.mark.asyncio
    async def test_get_consumes_entry(self, clock: FakeClock) -> None:
        store = LocalCallbackStorage(MemoryStorage(), clock=clock)
        await store.add(_entry())
        assert await store.get("s-1") is not None
        assert await store.get("s-1") is None

    @pytest.mark.asyncio
    async def test_unknown_and_empty_state(self, clock: FakeClock) -> None:
        store = LocalCallbackStorage(MemoryStorage(), clock=clock)
        assert await store.get("missing") is None
        assert await store.get(None) is None
        assert await store.get("") is None

    @pytest.mark.asyncio
    async def test_expired_entry_not_returned(self, clock: FakeClock) -> None:
        kv = MemoryStorage()
        store = LocalCallbackStorage(kv, ttl_seconds=60, clock=clock)
        await store.add(_entry())
        clock.now += 61
        assert await store.get("s-1") is None
        assert kv.keys() == []

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_and_malformed(self, clock: FakeClock) -> None:
        kv = MemoryStorage()
        store = LocalCallbackStorage(kv, ttl_seconds=60, clock=clock)
        await store.add(_entry("old"))
        kv.set_item("oidcflow-callback-junk", "{not json")
        kv.set_item("unrelated", "keep")
        clock.now += 120
        await store.add(_entry("new"))
        assert sorted(kv.keys()) == ["oidcflow-callback-new", "unrelated"]

    @pytest.mark.asyncio
    async def test_quota_clears_all_and_retries(self, clock: FakeClock) -> None:
        kv = MemoryStorage(max_entries=2)
        store = LocalCallbackStorage(kv, clock=clock)
        await store.add(_entry("a"))
        await store.add(_entry("b"))
        await store.add(_entry("c"))
        assert kv.keys() == ["oidcflow-callback-c"]
        assert await store.get("a") is None
        assert await store.get("c") is not None

    def test_probe_failure(self) -> None:
        with pytest.raises(StorageError):
            LocalCallbackStorage(BrokenStorage())

    def test_clear_all_values_respects_prefix(self, clock: FakeClock) -> None:
        kv = MemoryStorage()
        kv.set_item("oidcflow-callback-x", "{}")
        kv.set_item("other", "1")
        store = LocalCallbackStorage(kv, clock=clock)
        store.clear_all_values()
        assert kv.keys() == ["other"]


# --- Cookie storage ---


class TestCookieStorage:
    """Tests for MemoryCookieJar / CookieCallbackStorage."""

    def test_jar_expiry(self, clock: FakeClock) -> None:
        jar = MemoryCookieJar(clock)
        jar.set_cookie("a", "1", NOW + 10)
        assert jar.get_cookie("a") == "1"
        clock.now += 11
        assert jar.get_cookie("a") is None

    def test_jar_past_expiry_deletes(self, clock: FakeClock) -> None:
        jar = MemoryCookieJar(clock)
        jar.set_cookie("a", "1", NOW + 10)
        jar.set_cookie("a", "", NOW - 1)
        assert jar.get_cookie("a") is None

    @pytest.mark.asyncio
    async def test_add_and_get(self, clock: FakeClock) -> None:
        jar = MemoryCookieJar(clock)
        store = CookieCallbackStorage(jar, clock=clock)
        await store.add(_entry(prompt="none"))

        raw = jar.get_cookie("oidcflow-callback-s-1")
        assert raw is not None
        assert "expires" not in json.loads(raw)

        got = await store.get("s-1")
        assert got is not None
        assert got.prompt == "none"
        assert await store.get("s-1") is None

    @pytest.mark.asyncio
    async def test_cookie_lifetime(self, clock: FakeClock) -> None:
        store = CookieCallbackStorage(ttl_seconds=60, clock=clock)
        await store.add(_entry())
        clock.now += 61
        assert await store.get("s-1") is None


# --- Factory ---


class TestFactory:
    """Tests for create_callback_storage."""

    def test_local_default(self) -> None:
        assert isinstance(create_callback_storage(StorageSettings()), LocalCallbackStorage)

    def test_cookie(self) -> None:
        store = create_callback_storage(StorageSettings(backend="cookie"))
        assert isinstance(store, CookieCallbackStorage)

    def test_local_falls_back_to_cookie(self) -> None:
        store = create_callback_storage(StorageSettings(), kv_storage=BrokenStorage())
        assert isinstance(store, CookieCallbackStorage)

    def test_reads_global_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from oidcflow.config import clear_settings

        monkeypatch.setenv("OIDCFLOW_STORAGE__BACKEND", "cookie")
        clear_settings()
        assert isinstance(create_callback_storage(), CookieCallbackStorage)
