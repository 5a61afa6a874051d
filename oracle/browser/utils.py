from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


async def with_retries(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int = 2,
    delay: float = 0.35,
    backoff: float = 1.0,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Call *func* until it succeeds, at most ``retries + 1`` times.

    ``on_retry(attempt, error)`` runs before each retry; the last error is
    re-raised once the budget is spent.
    """
    current_delay = delay
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001
            if attempt >= retries:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            attempt += 1
            await asyncio.sleep(current_delay)
            current_delay *= backoff


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def format_elapsed(elapsed_ms: float) -> str:
    total_seconds = max(0.0, float(elapsed_ms) / 1000.0)
    if total_seconds < 60:
        return f"{total_seconds:.1f}s"
    minutes, seconds = divmod(int(total_seconds), 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def parse_duration(raw: Any, *, default_unit: str = "s") -> float:
    """Parse ``90``, ``"90s"``, ``"1500ms"``, ``"2m"`` or ``"1h"`` into seconds."""
    if isinstance(raw, bool):
        raise ValueError(f"Invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw) * _DURATION_UNITS[default_unit]
    else:
        match = _DURATION_RE.match(str(raw or ""))
        if not match:
            raise ValueError(f"Invalid duration: {raw!r}")
        unit = (match.group(2) or default_unit).lower()
        value = float(match.group(1)) * _DURATION_UNITS[unit]
    if value < 0:
        raise ValueError(f"Duration must be positive: {raw!r}")
    return value


__all__ = ["estimate_token_count", "format_elapsed", "parse_duration", "with_retries"]
