from __future__ import annotations

import asyncio
from http.cookiejar import Cookie
from typing import Any

import pytest

from oracle.browser.cookies import (
    CookieSynchronizer,
    candidate_urls,
    cookie_set_params,
    jar_cookie_to_dict,
    merge_cookies,
    normalize_cookie,
    normalize_expiration,
    sync_cookies,
)
from oracle.browser.errors import CdpConnectionClosedError, ChromeCookieSyncError


def _jar_cookie(name: str, value: str, domain: str, *, http_only: bool = False, expires: int | None = None) -> Cookie:
    rest = {"HTTPOnly": ""} if http_only else {}
    return Cookie(
        0,
        name,
        value,
        None,
        False,
        domain,
        True,
        domain.startswith("."),
        "/",
        True,
        True,
        expires,
        False,
        None,
        None,
        rest,
    )


class DummyCookieModule:
    def __init__(self, by_host: dict[str, list[Cookie]]) -> None:
        self.by_host = by_host
        self.calls: list[tuple[str | None, str]] = []

    def chrome(self, cookie_file: str | None = None, domain_name: str = "") -> list[Cookie]:
        self.calls.append((cookie_file, domain_name))
        return list(self.by_host.get(domain_name, []))


class DummyNetwork:
    def __init__(self, fail_names: set[str] | None = None, closed: bool = False) -> None:
        self.fail_names = fail_names or set()
        self.closed = closed
        self.calls: list[dict[str, Any]] = []

    async def set_cookie(self, **cookie: Any) -> bool:
        if self.closed:
            raise CdpConnectionClosedError("WebSocket connection closed")
        self.calls.append(cookie)
        if cookie["name"] in self.fail_names:
            raise RuntimeError("Invalid cookie fields")
        return True


# ─────────────────────────────────────────────────────────────────────────────
# Normalization
# ─────────────────────────────────────────────────────────────────────────────


def test_normalize_expiration_encodings() -> None:
    unix = 1_767_225_600  # 2026-01-01
    assert normalize_expiration(unix) == unix
    assert normalize_expiration(unix * 1000) == unix
    assert normalize_expiration(unix * 1_000_000) == unix
    assert normalize_expiration((unix + 11_644_473_600) * 1_000_000) == unix
    assert normalize_expiration((unix + 11_644_473_600) * 10_000_000) == unix


@pytest.mark.parametrize("raw", [None, 0, -1, "soon", float("nan"), True])
def test_normalize_expiration_drops_invalid(raw: Any) -> None:
    assert normalize_expiration(raw) is None


def test_normalize_cookie_defaults() -> None:
    cookie = normalize_cookie({"name": "sid", "value": "abc"}, "chatgpt.com")
    assert cookie == {
        "name": "sid",
        "value": "abc",
        "domain": "chatgpt.com",
        "path": "/",
        "secure": True,
        "httpOnly": False,
    }
    assert normalize_cookie({"value": "orphan"}, "chatgpt.com") is None


def test_normalize_cookie_is_idempotent() -> None:
    raw = {
        "name": "__Secure-next-auth.session-token",
        "value": "tok",
        "domain": ".chatgpt.com",
        "path": "/api",
        "Secure": False,
        "HttpOnly": True,
        "expires": 13_400_000_000_000_000,
    }
    once = normalize_cookie(raw, "chatgpt.com")
    twice = normalize_cookie(once or {}, "chatgpt.com")
    assert once == twice
    assert once is not None
    assert once["secure"] is False
    assert once["httpOnly"] is True
    assert once["domain"] == ".chatgpt.com"


def test_jar_cookie_conversion_reads_http_only() -> None:
    data = jar_cookie_to_dict(_jar_cookie("sid", "v", ".chatgpt.com", http_only=True, expires=1_767_225_600))
    assert data["httpOnly"] is True
    assert data["secure"] is True
    assert data["expires"] == 1_767_225_600


def test_merge_prefers_first_seen() -> None:
    merged = merge_cookies(
        [
            ("chatgpt.com", [{"name": "sid", "value": "first", "domain": ".chatgpt.com"}]),
            ("chat.openai.com", [{"name": "sid", "value": "second", "domain": ".chatgpt.com"}, {"name": "x", "value": "1"}]),
        ]
    )
    assert [(c["domain"], c["name"], c["value"]) for c in merged] == [
        (".chatgpt.com", "sid", "first"),
        ("chat.openai.com", "x", "1"),
    ]


def test_candidate_urls_strip_query_and_dedupe() -> None:
    urls = candidate_urls("https://chatgpt.com/?model=gpt-5#frag")
    assert urls[0] == "https://chatgpt.com/"
    assert "https://chat.openai.com" in urls
    assert len(urls) == len(set(urls))


def test_cookie_set_params_url_rules() -> None:
    target = "http://localhost:3000/"
    assert cookie_set_params({"name": "a", "domain": "localhost"}, target)["url"] == target
    assert cookie_set_params({"name": "a", "domain": "chatgpt.com"}, target)["url"] == "https://chatgpt.com"
    assert "url" not in cookie_set_params({"name": "a", "domain": ".chatgpt.com"}, target)


# ─────────────────────────────────────────────────────────────────────────────
# Sync
# ─────────────────────────────────────────────────────────────────────────────


def test_sync_applies_cookies_and_skips_failures() -> None:
    module = DummyCookieModule(
        {
            "chatgpt.com": [
                _jar_cookie("sid", "1", ".chatgpt.com"),
                _jar_cookie("bad", "2", ".chatgpt.com"),
            ],
            "chat.openai.com": [_jar_cookie("sid", "dup", ".chatgpt.com")],
        }
    )
    network = DummyNetwork(fail_names={"bad"})
    logs: list[str] = []
    sync = CookieSynchronizer(loader=lambda: module, env={})

    applied = asyncio.run(sync.sync(network, "https://chatgpt.com/", None, logs.append))

    assert applied == 1
    assert [c["name"] for c in network.calls] == ["sid", "bad"]
    assert network.calls[0]["value"] == "1"
    assert any("Failed to set cookie bad" in line for line in logs)
    assert {host for _file, host in module.calls} >= {"chatgpt.com", "chat.openai.com", "atlas.openai.com"}


def test_sync_propagates_connection_loss() -> None:
    module = DummyCookieModule({"chatgpt.com": [_jar_cookie("sid", "1", ".chatgpt.com")]})
    sync = CookieSynchronizer(loader=lambda: module, env={})
    with pytest.raises(CdpConnectionClosedError):
        asyncio.run(sync.sync(DummyNetwork(closed=True), "https://chatgpt.com/", None, lambda _m: None))


def test_read_failure_raises_sync_error() -> None:
    class Broken:
        def chrome(self, **_kwargs: Any) -> list[Cookie]:
            raise RuntimeError("database is locked")

    sync = CookieSynchronizer(loader=Broken, env={})
    with pytest.raises(ChromeCookieSyncError, match="database is locked"):
        asyncio.run(sync.sync(DummyNetwork(), "https://chatgpt.com/", None, lambda _m: None))


def test_allow_errors_downgrades_to_log() -> None:
    def loader() -> Any:
        raise ImportError("No module named 'browser_cookie3'")

    logs: list[str] = []
    sync = CookieSynchronizer(loader=loader, rebuild=lambda: pytest.fail("rebuild must be opt-in"), env={})
    applied = asyncio.run(sync.sync(DummyNetwork(), "https://chatgpt.com/", None, logs.append, allow_errors=True))
    assert applied == 0
    assert any("Cookie sync failed (continuing with override)" in line for line in logs)


def test_rebuild_runs_once_when_opted_in() -> None:
    module = DummyCookieModule({})
    state = {"loads": 0, "rebuilds": 0}

    def loader() -> Any:
        state["loads"] += 1
        if state["rebuilds"] == 0:
            raise ImportError("libsqlite3.so: undefined symbol: sqlite3_deserialize")
        return module

    def rebuild() -> bool:
        state["rebuilds"] += 1
        return True

    sync = CookieSynchronizer(loader=loader, rebuild=rebuild, env={"ORACLE_ALLOW_COOKIE_REBUILD": "1"})
    assert sync.load_module() is module
    assert state == {"loads": 2, "rebuilds": 1}
    assert sync.rebuild_attempted is True


def test_rebuild_is_attempted_at_most_once_per_instance() -> None:
    rebuilds: list[int] = []

    def loader() -> Any:
        raise ImportError("DLL load failed while importing _sqlite3")

    def rebuild() -> bool:
        rebuilds.append(1)
        return True

    sync = CookieSynchronizer(loader=loader, rebuild=rebuild, env={"ORACLE_ALLOW_COOKIE_REBUILD": "1"})
    for _ in range(2):
        with pytest.raises(ChromeCookieSyncError):
            sync.load_module()
    assert rebuilds == [1]

    fresh = CookieSynchronizer(loader=loader, rebuild=rebuild, env={"ORACLE_ALLOW_COOKIE_REBUILD": "1"})
    with pytest.raises(ChromeCookieSyncError):
        fresh.load_module()
    assert rebuilds == [1, 1]


def test_rebuild_requires_opt_in() -> None:
    def loader() -> Any:
        raise ImportError("No module named 'Cryptodome'")

    sync = CookieSynchronizer(loader=loader, rebuild=lambda: pytest.fail("rebuild must be opt-in"), env={})
    with pytest.raises(ChromeCookieSyncError, match="Unable to load browser_cookie3"):
        sync.load_module()
    assert sync.rebuild_attempted is True


def test_module_level_sync_uses_given_synchronizer() -> None:
    module = DummyCookieModule({"chatgpt.com": [_jar_cookie("sid", "1", ".chatgpt.com")]})
    sync = CookieSynchronizer(loader=lambda: module, env={})
    network = DummyNetwork()
    applied = asyncio.run(sync_cookies(network, "https://chatgpt.com/", "Default", lambda _m: None, synchronizer=sync))
    assert applied == 1


def test_loader_runtime_failure_becomes_sync_error() -> None:
    def loader() -> Any:
        raise OSError("keyring backend unavailable")

    sync = CookieSynchronizer(loader=loader, rebuild=lambda: pytest.fail("rebuild is for import errors"), env={})
    with pytest.raises(ChromeCookieSyncError, match="keyring backend unavailable") as excinfo:
        sync.load_module()
    assert isinstance(excinfo.value.__cause__, OSError)


def test_allow_errors_covers_loader_runtime_failure() -> None:
    def loader() -> Any:
        raise RuntimeError("secretstorage locked")

    logs: list[str] = []
    sync = CookieSynchronizer(loader=loader, env={})
    applied = asyncio.run(sync.sync(DummyNetwork(), "https://chatgpt.com/", None, logs.append, allow_errors=True))
    assert applied == 0
    assert any("continuing with override" in line and "secretstorage locked" in line for line in logs)


def test_unexpected_read_failure_is_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    sync = CookieSynchronizer(loader=lambda: DummyCookieModule({}), env={})

    def broken_read(_url: str, _profile: str | None) -> list[dict[str, Any]]:
        raise ValueError("malformed cookie row")

    monkeypatch.setattr(sync, "read_cookies", broken_read)
    with pytest.raises(ChromeCookieSyncError, match="malformed cookie row") as excinfo:
        asyncio.run(sync.sync(DummyNetwork(), "https://chatgpt.com/", None, lambda _m: None))
    assert isinstance(excinfo.value.__cause__, ValueError)
