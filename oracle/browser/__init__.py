"""ChatGPT browser automation over the Chrome DevTools Protocol.

Keep this package import light: the public names below resolve lazily so that
importing a single submodule (``oracle.browser.cookies`` for instance) does not
pull in the whole run coordinator.
"""

from __future__ import annotations

from typing import Any

_EXPORTS: dict[str, str] = {
    "AutomationConfig": "config",
    "resolve_browser_config": "config",
    "BrowserAttachment": "page_actions",
    "AssistantAnswer": "page_actions",
    "RunResult": "browser_mode",
    "run_browser": "browser_mode",
    "run_browser_mode": "browser_mode",
    "BrowserAutomationError": "errors",
    "BrowserClosedError": "errors",
    "CookieSynchronizer": "cookies",
    "sync_cookies": "cookies",
    "CHATGPT_URL": "constants",
    "DEFAULT_MODEL_TARGET": "constants",
    "estimate_token_count": "utils",
    "parse_duration": "utils",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:  # pragma: no cover
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
