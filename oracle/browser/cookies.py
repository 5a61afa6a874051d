"""Copy ChatGPT session cookies from the user's Chrome profile.

Cookies are read from the persistent profile with ``browser_cookie3`` (SQLite
plus OS keyring decryption) and injected into the throwaway automation
profile through ``Network.setCookie``. Nothing is ever written back.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
import subprocess
import sys
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from .config import resolve_cookie_file
from .constants import COOKIE_URLS
from .errors import ChromeCookieSyncError, is_connection_closed_error

_LOGGER = logging.getLogger("oracle.browser.cookies")

COOKIE_MODULE = "browser_cookie3"
COOKIE_DISTRIBUTION = "browser-cookie3"
REBUILD_ENV = "ORACLE_ALLOW_COOKIE_REBUILD"

# Seconds between 1601-01-01 (Windows/Chromium epoch) and 1970-01-01.
_WINDOWS_EPOCH_OFFSET = 11_644_473_600

_BINDING_ERROR_MARKERS = (
    "cryptodome",
    "undefined symbol",
    "dll load failed",
    ".so",
    "_sqlite3",
    "lz4",
    "jeepney",
    "no module named",
)

REBUILD_HINT = (
    f"Chrome cookie sync needs a working {COOKIE_DISTRIBUTION} install. "
    f"Set {REBUILD_ENV}=1 to let oracle reinstall it automatically, or run: "
    f"{sys.executable} -m pip install --force-reinstall --no-cache-dir {COOKIE_DISTRIBUTION}"
)


def strip_query(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def candidate_urls(url: str) -> list[str]:
    """Target URL plus the known hosts sharing the same ChatGPT session, deduplicated in order."""
    seen: list[str] = []
    for candidate in (strip_query(url), *COOKIE_URLS):
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def normalize_expiration(expires: Any) -> int | None:
    """Coerce Chrome/Windows/Unix timestamps into integer Unix seconds.

    Magnitude picks the encoding: 100 ns ticks since 1601 (FILETIME),
    microseconds since 1601 (Chromium), microseconds or milliseconds since
    1970, otherwise seconds. Present-day Unix seconds fall through untouched,
    so normalizing twice is a no-op.
    """
    if expires is None or isinstance(expires, bool):
        return None
    try:
        value = float(expires)
    except (TypeError, ValueError):
        return None
    if value != value or value <= 0:  # NaN
        return None
    if value > 1e17:
        return round(value / 10_000_000 - _WINDOWS_EPOCH_OFFSET)
    if value > 1e16:
        return round(value / 1_000_000 - _WINDOWS_EPOCH_OFFSET)
    if value > 1e14:
        return round(value / 1_000_000)
    if value > 1e11:
        return round(value / 1000)
    return round(value)


def _first_bool(cookie: Mapping[str, Any], *keys: str) -> bool | None:
    for key in keys:
        value = cookie.get(key)
        if isinstance(value, bool):
            return value
    return None


def normalize_cookie(cookie: Mapping[str, Any], fallback_host: str) -> dict[str, Any] | None:
    """Return ``Network.setCookie`` parameters, or None for a nameless cookie."""
    name = cookie.get("name")
    if not name:
        return None
    raw_domain = cookie.get("domain")
    domain = raw_domain if isinstance(raw_domain, str) and raw_domain else fallback_host
    secure = _first_bool(cookie, "secure", "Secure")
    http_only = _first_bool(cookie, "httpOnly", "HttpOnly", "http_only")
    out: dict[str, Any] = {
        "name": str(name),
        "value": "" if cookie.get("value") is None else str(cookie.get("value")),
        "domain": domain,
        "path": cookie.get("path") or "/",
        "secure": True if secure is None else secure,
        "httpOnly": False if http_only is None else http_only,
    }
    expires = normalize_expiration(cookie.get("expires"))
    if expires is not None:
        out["expires"] = expires
    return out


def jar_cookie_to_dict(cookie: Any) -> dict[str, Any]:
    """Flatten an ``http.cookiejar.Cookie`` produced by browser_cookie3."""
    has_attr = getattr(cookie, "has_nonstandard_attr", None)
    http_only = False
    if callable(has_attr):
        http_only = bool(has_attr("HttpOnly") or has_attr("HTTPOnly") or has_attr("httponly"))
    return {
        "name": getattr(cookie, "name", None),
        "value": getattr(cookie, "value", None),
        "domain": getattr(cookie, "domain", None),
        "path": getattr(cookie, "path", None),
        "secure": bool(getattr(cookie, "secure", True)),
        "httpOnly": http_only,
        "expires": getattr(cookie, "expires", None),
    }


def merge_cookies(batches: Iterable[tuple[str, Iterable[Mapping[str, Any]]]]) -> list[dict[str, Any]]:
    """Normalize and merge ``(fallback_host, cookies)`` batches by (domain, name), first seen wins."""
    merged: dict[tuple[str, str], dict[str, Any]] = {}
    for fallback_host, cookies in batches:
        for raw in cookies:
            normalized = normalize_cookie(raw, fallback_host)
            if normalized is None:
                continue
            key = (normalized["domain"], normalized["name"])
            merged.setdefault(key, normalized)
    return list(merged.values())


def cookie_set_params(cookie: Mapping[str, Any], target_url: str) -> dict[str, Any]:
    params = dict(cookie)
    domain = str(params.get("domain") or "")
    if not domain or domain == "localhost":
        params["url"] = target_url
    elif not domain.startswith("."):
        params["url"] = f"https://{domain}"
    return params


def is_binding_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _BINDING_ERROR_MARKERS)


def _import_cookie_module() -> Any:
    importlib.invalidate_caches()
    return importlib.import_module(COOKIE_MODULE)


def _run_pip_rebuild() -> bool:
    cmd = [sys.executable, "-m", "pip", "install", "--force-reinstall", "--no-cache-dir", COOKIE_DISTRIBUTION]
    _LOGGER.warning("Attempting to reinstall %s: %s", COOKIE_DISTRIBUTION, " ".join(cmd))
    try:
        result = subprocess.run(cmd, check=False)
    except OSError as exc:
        _LOGGER.warning("Unable to run pip to reinstall %s: %s", COOKIE_DISTRIBUTION, exc)
        return False
    if result.returncode != 0:
        _LOGGER.warning("%s reinstall failed with exit code %s", COOKIE_DISTRIBUTION, result.returncode)
        return False
    _LOGGER.warning("%s reinstall completed", COOKIE_DISTRIBUTION)
    return True


class CookieSynchronizer:
    """Reads Chrome cookies and applies them over CDP.

    The automatic reinstall of the cookie reader runs at most once per
    instance and only when ``ORACLE_ALLOW_COOKIE_REBUILD=1``.
    """

    def __init__(
        self,
        *,
        loader: Callable[[], Any] | None = None,
        rebuild: Callable[[], bool] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._loader = loader or _import_cookie_module
        self._rebuild = rebuild or _run_pip_rebuild
        self._env = env
        self._rebuild_attempted = False

    @property
    def rebuild_attempted(self) -> bool:
        return self._rebuild_attempted

    def _rebuild_allowed(self) -> bool:
        env = self._env if self._env is not None else os.environ
        return env.get(REBUILD_ENV) == "1"

    def _attempt_rebuild(self) -> bool:
        if self._rebuild_attempted:
            return False
        self._rebuild_attempted = True
        if not self._rebuild_allowed():
            _LOGGER.warning("%s could not be loaded. %s", COOKIE_DISTRIBUTION, REBUILD_HINT)
            return False
        return bool(self._rebuild())

    def load_module(self) -> Any:
        try:
            return self._loader()
        except ImportError as exc:
            _LOGGER.warning("Failed to load %s: %s", COOKIE_MODULE, exc)
            if is_binding_error(exc) and self._attempt_rebuild():
                try:
                    return self._loader()
                except ImportError as retry_exc:
                    raise ChromeCookieSyncError(
                        f"Unable to load {COOKIE_MODULE} after reinstall: {retry_exc}",
                        details={"hint": REBUILD_HINT},
                    ) from retry_exc
            raise ChromeCookieSyncError(
                f"Unable to load {COOKIE_MODULE}. Cookie copy is required.",
                details={"hint": REBUILD_HINT},
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise ChromeCookieSyncError(f"Unable to load {COOKIE_MODULE}: {exc}") from exc

    def read_cookies(self, url: str, profile: str | None) -> list[dict[str, Any]]:
        """Blocking read of every cookie relevant to *url* from the Chrome *profile*."""
        module = self.load_module()
        reader = getattr(module, "chrome", None)
        if not callable(reader):
            raise ChromeCookieSyncError(f"{COOKIE_MODULE} does not expose chrome()")
        cookie_file = resolve_cookie_file(profile)

        batches: list[tuple[str, list[dict[str, Any]]]] = []
        for candidate in candidate_urls(url):
            host = urlsplit(candidate).hostname or ""
            try:
                jar = reader(cookie_file=cookie_file, domain_name=host)
            except Exception as exc:  # noqa: BLE001
                raise ChromeCookieSyncError(
                    f"Failed to read Chrome cookies for {host or candidate}: {exc}",
                    details={"profile": profile, "cookieFile": cookie_file},
                ) from exc
            batches.append((host, [jar_cookie_to_dict(c) for c in jar]))
        return merge_cookies(batches)

    async def sync(
        self,
        network: Any,
        url: str,
        profile: str | None,
        log: Callable[[str], None],
        allow_errors: bool = False,
    ) -> int:
        """Apply the profile's cookies; returns how many Chrome accepted."""
        try:
            cookies = await asyncio.to_thread(self.read_cookies, url, profile)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, ChromeCookieSyncError) else ChromeCookieSyncError(f"Cookie sync failed: {exc}")
            if allow_errors:
                log(f"Cookie sync failed (continuing with override): {error}")
                return 0
            if error is exc:
                raise
            raise error from exc

        applied = 0
        for cookie in cookies:
            try:
                if await network.set_cookie(**cookie_set_params(cookie, url)):
                    applied += 1
            except Exception as exc:  # noqa: BLE001
                if is_connection_closed_error(exc):
                    raise
                log(f"Failed to set cookie {cookie.get('name')}: {exc}")
        _LOGGER.debug("Applied %d of %d cookies", applied, len(cookies))
        return applied


_shared_synchronizer: CookieSynchronizer | None = None


def shared_synchronizer() -> CookieSynchronizer:
    """Process-wide instance used when the caller does not supply one."""
    global _shared_synchronizer
    if _shared_synchronizer is None:
        _shared_synchronizer = CookieSynchronizer()
    return _shared_synchronizer


async def sync_cookies(
    network: Any,
    url: str,
    profile: str | None,
    log: Callable[[str], None],
    allow_errors: bool = False,
    *,
    synchronizer: CookieSynchronizer | None = None,
) -> int:
    sync = synchronizer or shared_synchronizer()
    return await sync.sync(network, url, profile, log, allow_errors)


__all__ = [
    "CookieSynchronizer",
    "candidate_urls",
    "cookie_set_params",
    "is_binding_error",
    "jar_cookie_to_dict",
    "merge_cookies",
    "normalize_cookie",
    "normalize_expiration",
    "shared_synchronizer",
    "strip_query",
    "sync_cookies",
]
