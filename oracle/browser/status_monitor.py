from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from . import page_scripts
from .constants import THINKING_KEYWORDS, THINKING_SELECTORS, THINKING_SHIMMER_SELECTOR
from .errors import is_connection_closed_error
from .page_actions import read_assistant_snapshot
from .utils import format_elapsed

_LOGGER = logging.getLogger("oracle.browser.status")

THINKING_INTERVAL = 1.5
SOFT_TARGET_MS = 600_000
BAR_SEGMENTS = 10

_PRO_PREFIX_RE = re.compile(r"^(pro thinking)\s*[•:\-–—]*\s*", re.IGNORECASE)


def sanitize_thinking_text(raw: str | None) -> str:
    if not raw:
        return ""
    trimmed = raw.strip()
    return _PRO_PREFIX_RE.sub("", trimmed, count=1).strip()


def format_thinking_log(started_at_ms: float, now_ms: float, message: str, locator_suffix: str = "") -> str:
    """``[1m 5s / ~10m] █░░░░░░░░░  11% — Thinking`` against a soft ten-minute target."""
    elapsed_ms = max(0.0, now_ms - started_at_ms)
    progress = min(1.0, elapsed_ms / SOFT_TARGET_MS)
    filled = round(progress * BAR_SEGMENTS)
    bar = ("█" * filled).ljust(BAR_SEGMENTS, "░")
    pct = str(round(progress * 100)).rjust(3)
    status = f" — {message}" if message else ""
    return f"[{format_elapsed(elapsed_ms)} / ~10m] {bar} {pct}%{status}{locator_suffix}"


async def read_thinking_status(runtime: Any) -> str | None:
    expression = page_scripts.render(
        "thinking_status",
        selectors=THINKING_SELECTORS,
        keywords=THINKING_KEYWORDS,
        shimmerSelector=THINKING_SHIMMER_SELECTOR,
    )
    value = await runtime.evaluate_value(expression)
    sanitized = sanitize_thinking_text(value if isinstance(value, str) else "")
    return sanitized or None


class ThinkingStatusMonitor:
    """Background poller that logs ChatGPT's "thinking" label while a response is pending.

    Purely observational: failures are logged at debug level and never reach
    the caller. Lines are emitted only when the label changes; with
    ``heartbeat_interval`` set, a keep-alive line fills long silences.
    """

    def __init__(
        self,
        runtime: Any,
        log: Callable[[str], None],
        *,
        verbose: bool = False,
        interval: float = THINKING_INTERVAL,
        heartbeat_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runtime = runtime
        self.log = log
        self.verbose = verbose
        self.interval = interval
        self.heartbeat_interval = heartbeat_interval if heartbeat_interval and heartbeat_interval > 0 else None
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stopped = False
        self._started_at = 0.0
        self._last_emit = 0.0
        self.last_message: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> ThinkingStatusMonitor:
        if self._task is None and not self._stopped:
            self._started_at = self._last_emit = self._clock()
            self._task = asyncio.get_running_loop().create_task(self._run(), name="thinking-status")
        return self

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.stop()
        task = self._task
        if task is not None:
            with suppress(asyncio.CancelledError, Exception):
                await task

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                return
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                if is_connection_closed_error(exc):
                    _LOGGER.debug("Status monitor stopping: %s", exc)
                    return
                _LOGGER.debug("Status poll failed: %s", exc)

    async def _locator_suffix(self) -> str:
        try:
            snapshot = await read_assistant_snapshot(self.runtime)
        except Exception:  # noqa: BLE001
            return " | assistant-turn=error"
        return f" | assistant-turn={'present' if snapshot else 'missing'}"

    async def tick(self) -> str | None:
        """Sample the page once; returns the line logged, if any."""
        message = await read_thinking_status(self.runtime)
        now = self._clock()
        if message and message != self.last_message:
            self.last_message = message
            suffix = await self._locator_suffix() if self.verbose else ""
            line = format_thinking_log(self._started_at * 1000, now * 1000, message, suffix)
        elif self.heartbeat_interval and now - self._last_emit >= self.heartbeat_interval:
            line = f"Still waiting for ChatGPT ({format_elapsed((now - self._started_at) * 1000)} elapsed)"
        else:
            return None
        self._last_emit = now
        self.log(line)
        return line


__all__ = [
    "ThinkingStatusMonitor",
    "format_thinking_log",
    "read_thinking_status",
    "sanitize_thinking_text",
]
