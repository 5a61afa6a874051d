from __future__ import annotations

import dataclasses
import os
import shutil
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .constants import CHATGPT_URL
from .utils import parse_duration

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome-beta",
    "/opt/google/chrome/chrome",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir outside $HOME; keep them last.
    "/snap/bin/chromium",
]

_PATH_BINARY_NAMES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")

# Session-layer spelling -> field name. Millisecond keys are converted to seconds.
_OVERRIDE_ALIASES: dict[str, str] = {
    "chromeProfile": "chrome_profile",
    "chromePath": "chrome_path",
    "cookieSync": "cookie_sync",
    "keepBrowser": "keep_browser",
    "hideWindow": "hide_window",
    "desiredModel": "desired_model",
    "allowCookieErrors": "allow_cookie_errors",
}
_MS_ALIASES: dict[str, str] = {
    "timeoutMs": "timeout",
    "inputTimeoutMs": "input_timeout",
}


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass(frozen=True)
class AutomationConfig:
    url: str = CHATGPT_URL
    timeout: float = 900.0
    input_timeout: float = 30.0
    chrome_profile: str | None = None
    chrome_path: str | None = None
    cookie_sync: bool = True
    headless: bool = False
    keep_browser: bool = False
    hide_window: bool = False
    desired_model: str | None = None
    debug: bool = False
    allow_cookie_errors: bool = False

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in dataclasses.fields(cls)}

    @classmethod
    def from_env(cls) -> AutomationConfig:
        """Defaults overlaid with ``ORACLE_BROWSER_*`` environment variables."""
        values: dict[str, Any] = {}
        if url := _env_str("ORACLE_BROWSER_URL"):
            values["url"] = url
        if timeout := _env_str("ORACLE_BROWSER_TIMEOUT"):
            values["timeout"] = parse_duration(timeout)
        if input_timeout := _env_str("ORACLE_BROWSER_INPUT_TIMEOUT"):
            values["input_timeout"] = parse_duration(input_timeout)
        if profile := _env_str("ORACLE_BROWSER_PROFILE"):
            values["chrome_profile"] = profile
        if binary := (_env_str("ORACLE_BROWSER_BINARY") or _env_str("CHROME_PATH")):
            values["chrome_path"] = expand_path(binary)
        if model := _env_str("ORACLE_BROWSER_MODEL"):
            values["desired_model"] = model
        no_sync = _env_flag("ORACLE_BROWSER_NO_COOKIE_SYNC")
        if no_sync is not None:
            values["cookie_sync"] = not no_sync
        for env_name, field_name in (
            ("ORACLE_BROWSER_HEADLESS", "headless"),
            ("ORACLE_BROWSER_KEEP", "keep_browser"),
            ("ORACLE_BROWSER_HIDE_WINDOW", "hide_window"),
            ("ORACLE_BROWSER_ALLOW_COOKIE_ERRORS", "allow_cookie_errors"),
            ("ORACLE_BROWSER_DEBUG", "debug"),
        ):
            flag = _env_flag(env_name)
            if flag is not None:
                values[field_name] = flag
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _normalize_overrides(overrides: Mapping[str, Any]) -> dict[str, Any]:
    known = AutomationConfig.field_names()
    out: dict[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _MS_ALIASES:
            out[_MS_ALIASES[key]] = float(value) / 1000.0
            continue
        name = _OVERRIDE_ALIASES.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown browser config option: {key}")
        if name in {"timeout", "input_timeout"}:
            value = parse_duration(value)
        out[name] = value
    return out


def resolve_browser_config(
    overrides: AutomationConfig | Mapping[str, Any] | None = None,
    *,
    base: AutomationConfig | None = None,
) -> AutomationConfig:
    """Merge caller overrides onto *base* (environment-derived defaults when omitted)."""
    if isinstance(overrides, AutomationConfig):
        return overrides
    resolved = base if base is not None else AutomationConfig.from_env()
    if not overrides:
        return resolved
    return dataclasses.replace(resolved, **_normalize_overrides(overrides))


def detect_binary(config: AutomationConfig | None = None) -> str:
    if config is not None and config.chrome_path:
        return expand_path(config.chrome_path)
    env_path = _env_str("ORACLE_BROWSER_BINARY") or _env_str("CHROME_PATH")
    if env_path:
        return expand_path(env_path)
    for candidate in DEFAULT_BINARY_CANDIDATES:
        path = Path(candidate)
        if path.exists() and os.access(str(path), os.X_OK):
            return str(path)
    for name in _PATH_BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return "google-chrome"


def chrome_user_data_root() -> Path:
    """Location of the user's persistent Chrome profiles on this platform."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Google" / "Chrome"
    if sys.platform.startswith("win"):
        local = os.environ.get("LOCALAPPDATA") or str(home / "AppData" / "Local")
        return Path(local) / "Google" / "Chrome" / "User Data"
    return home / ".config" / "google-chrome"


def resolve_cookie_file(profile: str | None) -> str | None:
    """Map a profile name, profile directory or Cookies file path to the cookie database.

    ``None`` keeps the cookie reader's own default (the ``Default`` profile).
    """
    if not profile:
        return None
    raw = Path(expand_path(profile))
    if raw.is_file():
        return str(raw)
    profile_dir = raw if raw.is_dir() else chrome_user_data_root() / profile
    for candidate in (profile_dir / "Network" / "Cookies", profile_dir / "Cookies"):
        if candidate.exists():
            return str(candidate)
    # Let the reader report the missing database with its own message.
    return str(profile_dir / "Network" / "Cookies")


__all__ = [
    "AutomationConfig",
    "DEFAULT_BINARY_CANDIDATES",
    "chrome_user_data_root",
    "detect_binary",
    "expand_path",
    "resolve_browser_config",
    "resolve_cookie_file",
]
