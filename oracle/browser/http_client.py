"""Blocking helpers for Chrome's DevTools HTTP endpoints (/json/*)."""

from __future__ import annotations

import json
import urllib.parse
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .errors import HttpClientError

_USER_AGENT = "oracle-browser/1.0"


def devtools_url(port: int, path: str, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{int(port)}{path}"


def http_get_json(url: str, *, timeout: float = 2.0, method: str = "GET") -> Any:
    req = Request(url, headers={"User-Agent": _USER_AGENT}, method=method)
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (OSError, TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc
    except json.JSONDecodeError as exc:
        raise HttpClientError(f"Invalid JSON from {url}: {exc}") from exc


def cdp_ready(port: int, *, host: str = "127.0.0.1", timeout: float = 0.4) -> bool:
    """Return True if the DevTools HTTP endpoint responds."""
    try:
        payload = http_get_json(devtools_url(port, "/json/version", host), timeout=timeout)
    except HttpClientError:
        return False
    return isinstance(payload, dict)


def list_targets(port: int, *, host: str = "127.0.0.1", timeout: float = 2.0) -> list[dict[str, Any]]:
    payload = http_get_json(devtools_url(port, "/json/list", host), timeout=timeout)
    if not isinstance(payload, list):
        return []
    return [t for t in payload if isinstance(t, dict)]


def open_target(port: int, url: str = "about:blank", *, host: str = "127.0.0.1", timeout: float = 2.0) -> dict[str, Any]:
    # Newer Chrome builds reject GET on /json/new.
    path = "/json/new?" + urllib.parse.quote(url, safe=":/?=&")
    payload = http_get_json(devtools_url(port, path, host), timeout=timeout, method="PUT")
    if not isinstance(payload, dict):
        raise HttpClientError("Unexpected /json/new payload")
    return payload


__all__ = ["cdp_ready", "devtools_url", "http_get_json", "list_targets", "open_target"]
