from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import os
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import AutomationConfig, detect_binary
from .errors import ChromeLaunchError
from .http_client import cdp_ready

_LOGGER = logging.getLogger("oracle.browser.launcher")

PROFILE_PREFIX = "oracle-browser-"
LAUNCH_LOG_NAME = "chrome_launch.log"


def create_user_data_dir() -> str:
    return tempfile.mkdtemp(prefix=PROFILE_PREFIX)


def remove_user_data_dir(path: str) -> None:
    """Recursively delete a temporary profile; errors are ignored."""
    if not path:
        return
    try:
        shutil.rmtree(path, ignore_errors=True)
    except Exception:  # noqa: BLE001
        _LOGGER.debug("Failed to remove %s", path, exc_info=True)


def find_free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _needs_no_sandbox(binary: str) -> bool:
    if "vendor/chromium" in binary:
        return True
    geteuid = getattr(os, "geteuid", None)
    return sys.platform.startswith("linux") and callable(geteuid) and geteuid() == 0


def build_launch_command(config: AutomationConfig, user_data_dir: str, port: int, binary: str | None = None) -> list[str]:
    binary = binary or detect_binary(config)
    flags = [
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
        "--remote-allow-origins=*",
        "--disable-fre",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-background-networking",
        "--disable-popup-blocking",
        "--disable-features=TranslateUI,MediaRouter",
        "--password-store=basic",
    ]
    if _needs_no_sandbox(binary):
        flags.append("--no-sandbox")
    if config.headless:
        flags.append("--headless=new")
    else:
        flags.append("--window-size=1280,900")
    return [binary, *flags, "about:blank"]


def _tail_text(path: Path, max_chars: int = 2000) -> str | None:
    try:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw[-max_chars:] if len(raw) > max_chars else raw


@dataclass
class ChromeProcess:
    pid: int
    port: int
    user_data_dir: str
    command: list[str] = field(default_factory=list)
    process: Any = None
    _killed: bool = field(default=False, init=False, repr=False)
    _profile_removed: bool = field(default=False, init=False, repr=False)

    @property
    def alive(self) -> bool:
        proc = self.process
        if proc is None:
            return False
        try:
            return proc.poll() is None
        except Exception:  # noqa: BLE001
            return False

    def kill(self, *, timeout: float = 2.0) -> bool:
        """Terminate the browser, escalating to SIGKILL. Runs at most once."""
        if self._killed:
            return False
        self._killed = True
        proc = self.process
        if proc is None:
            return False
        try:
            if proc.poll() is not None:
                return True
        except Exception:  # noqa: BLE001
            pass

        with contextlib.suppress(Exception):
            proc.terminate()

        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            try:
                if proc.poll() is not None:
                    return True
            except Exception:  # noqa: BLE001
                break
            time.sleep(0.05)

        with contextlib.suppress(Exception):
            proc.kill()
        return True

    def remove_user_data_dir(self) -> bool:
        """Delete the temporary profile. Runs at most once."""
        if self._profile_removed:
            return False
        self._profile_removed = True
        remove_user_data_dir(self.user_data_dir)
        return True


async def launch_chrome(
    config: AutomationConfig,
    user_data_dir: str,
    log: Callable[[str], None],
    *,
    port: int | None = None,
    ready_timeout: float = 15.0,
) -> ChromeProcess:
    """Start Chrome against *user_data_dir* and wait for its DevTools endpoint."""
    port = int(port or find_free_port())
    cmd = build_launch_command(config, user_data_dir, port)
    log_path = Path(user_data_dir) / LAUNCH_LOG_NAME

    popen_kwargs: dict[str, Any] = {"stdin": subprocess.DEVNULL}
    if os.name == "posix":
        # Own session: a terminal Ctrl-C reaches us first, cleanup decides what happens to Chrome.
        popen_kwargs["start_new_session"] = True
    try:
        with open(log_path, "ab", buffering=0) as log_fh:
            proc = subprocess.Popen(cmd, stdout=log_fh, stderr=log_fh, **popen_kwargs)
    except OSError as exc:
        raise ChromeLaunchError(
            f"Failed to launch Chrome ({cmd[0]}): {exc}",
            details={"command": cmd},
        ) from exc

    chrome = ChromeProcess(pid=proc.pid, port=port, user_data_dir=user_data_dir, command=cmd, process=proc)
    deadline = time.monotonic() + max(0.5, float(ready_timeout))
    try:
        while time.monotonic() < deadline:
            exit_code = proc.poll()
            if exit_code is not None:
                raise ChromeLaunchError(
                    f"Chrome exited with code {exit_code} before DevTools became available",
                    details={"command": cmd, "logTail": _tail_text(log_path)},
                )
            if await asyncio.to_thread(cdp_ready, port):
                log(f"Launched Chrome (pid {chrome.pid}) on port {port}")
                return chrome
            await asyncio.sleep(0.1)
        raise ChromeLaunchError(
            f"Chrome DevTools endpoint did not respond on port {port} within {ready_timeout:.0f}s",
            details={"command": cmd, "logTail": _tail_text(log_path)},
        )
    except BaseException:
        # Chrome has its own session; a terminal Ctrl-C never reaches it.
        await asyncio.to_thread(chrome.kill)
        raise


def can_hide_window() -> bool:
    return sys.platform == "darwin" and shutil.which("osascript") is not None


async def hide_chrome_window(chrome: ChromeProcess, log: Callable[[str], None]) -> bool:
    """Hide the Chrome window where the host supports it; otherwise do nothing."""
    if not can_hide_window():
        _LOGGER.debug("Window hiding is not supported on %s", sys.platform)
        return False
    script = f'tell application "System Events" to set visible of (first process whose unix id is {int(chrome.pid)}) to false'
    try:
        result = await asyncio.to_thread(
            subprocess.run,
            ["osascript", "-e", script],
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        log(f"Failed to hide Chrome window: {exc}")
        return False
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace").strip()
        log(f"Failed to hide Chrome window: {stderr or result.returncode}")
        return False
    log("Chrome window hidden")
    return True


def _termination_signals() -> list[signal.Signals]:
    sigs = [signal.SIGINT, signal.SIGTERM]
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is not None:
        sigs.append(sighup)
    return sigs


def register_termination_hooks(
    chrome: ChromeProcess,
    user_data_dir: str,
    keep_browser: bool,
    log: Callable[[str], None],
) -> Callable[[], None]:
    """Clean up Chrome if the host process dies; returns a disposer."""
    previous: dict[int, Any] = {}
    state = {"handled": False, "disposed": False}

    def _cleanup() -> None:
        if state["handled"]:
            return
        state["handled"] = True
        if keep_browser:
            log(f"Chrome left running on port {chrome.port} with profile {user_data_dir}")
            return
        chrome.kill()
        if user_data_dir == chrome.user_data_dir:
            chrome.remove_user_data_dir()
        else:
            remove_user_data_dir(user_data_dir)

    def _dispose() -> None:
        if state["disposed"]:
            return
        state["disposed"] = True
        for signum, handler in previous.items():
            with contextlib.suppress(Exception):
                if signal.getsignal(signum) is _on_signal:
                    signal.signal(signum, handler)
        atexit.unregister(_cleanup)

    def _on_signal(signum: int, frame: Any) -> None:
        _cleanup()
        handler = previous.get(signum)
        _dispose()
        if callable(handler):
            handler(signum, frame)
            return
        if handler == signal.SIG_IGN:
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + int(signum))

    atexit.register(_cleanup)
    try:
        for signum in _termination_signals():
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, _on_signal)
    except ValueError:
        # signal.signal only works from the main thread; atexit still covers normal exits.
        _LOGGER.debug("Signal hooks unavailable outside the main thread")
    return _dispose


__all__ = [
    "ChromeProcess",
    "build_launch_command",
    "can_hide_window",
    "create_user_data_dir",
    "find_free_port",
    "hide_chrome_window",
    "launch_chrome",
    "register_termination_hooks",
    "remove_user_data_dir",
]
