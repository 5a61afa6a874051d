"""Run coordinator: one prompt through a throwaway Chrome instance.

``run_browser_mode`` launches Chrome with a temporary profile, connects over
the DevTools protocol, optionally copies cookies from the user's real
profile, drives the ChatGPT page steps and always tears everything down in a
fixed order:

    stop status monitor -> close socket -> drop termination hooks
    -> kill Chrome -> remove the temporary profile

Closing and killing are skipped when Chrome already went away; killing and
profile removal are skipped entirely with ``keep_browser``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from .config import AutomationConfig, resolve_browser_config
from .cookies import CookieSynchronizer, sync_cookies
from .errors import (
    AttachmentUploadError,
    BrowserAutomationError,
    BrowserClosedError,
    CdpError,
    HttpClientError,
    ResponseCaptureError,
    is_connection_closed_error,
)
from .launcher import (
    ChromeProcess,
    create_user_data_dir,
    hide_chrome_window,
    launch_chrome,
    register_termination_hooks,
    remove_user_data_dir,
)
from .page_actions import (
    AssistantAnswer,
    BrowserAttachment,
    capture_assistant_markdown,
    ensure_model_selection,
    ensure_not_blocked,
    ensure_prompt_ready,
    navigate_to_chatgpt,
    submit_prompt,
    upload_attachment_file,
    wait_for_assistant_response,
    wait_for_attachment_completion,
)
from .session_cdp import DISCONNECT_EVENT, CdpConnection, connect_to_chrome
from .status_monitor import ThinkingStatusMonitor
from .utils import estimate_token_count, with_retries

_LOGGER = logging.getLogger("oracle.browser")

Log = Callable[[str], None]

BROWSER_CLOSED_MESSAGE = "Chrome window closed before Oracle finished. Please keep it open until completion."
TRACE_ENV = "CHATGPT_DEVTOOLS_TRACE"
MIN_ATTACHMENT_WAIT = 30.0
MARKDOWN_RETRIES = 2
MARKDOWN_RETRY_DELAY = 0.35


@dataclass
class RunResult:
    answer_text: str
    answer_markdown: str
    answer_html: str | None
    took_ms: int
    answer_tokens: int
    answer_chars: int
    chrome_pid: int | None
    chrome_port: int | None
    user_data_dir: str | None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "answerText": self.answer_text,
            "answerMarkdown": self.answer_markdown,
            "tookMs": self.took_ms,
            "answerTokens": self.answer_tokens,
            "answerChars": self.answer_chars,
            "chromePid": self.chrome_pid,
            "chromePort": self.chrome_port,
            "userDataDir": self.user_data_dir,
        }
        if self.answer_html:
            out["answerHtml"] = self.answer_html
        return out


def _default_log(message: str) -> None:
    _LOGGER.info("%s", message)


def _trace_enabled(config: AutomationConfig) -> bool:
    return bool(config.debug) or os.environ.get(TRACE_ENV) == "1"


class _BrowserRun:
    """Per-run resources and the single teardown path that releases them."""

    def __init__(self, config: AutomationConfig, chrome: ChromeProcess, user_data_dir: str, log: Log) -> None:
        self.config = config
        self.chrome = chrome
        self.user_data_dir = user_data_dir
        self.log = log
        self.conn: CdpConnection | None = None
        self.monitor: ThinkingStatusMonitor | None = None
        self.dispose_hooks: Callable[[], None] | None = None
        self.connection_lost = False
        self.status = "attempted"
        self.step = "connect"
        self.started_at = time.monotonic()
        self._cleaned_up = False

    def mark_connection_lost(self, _params: Any = None) -> None:
        self.connection_lost = True

    async def cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self.monitor is not None:
            with suppress(Exception):
                await self.monitor.aclose()
        if self.conn is not None and not self.connection_lost:
            try:
                await self.conn.close()
            except Exception:  # noqa: BLE001
                _LOGGER.debug("Failed to close DevTools connection", exc_info=True)
        if self.dispose_hooks is not None:
            try:
                self.dispose_hooks()
            except Exception:  # noqa: BLE001
                _LOGGER.debug("Failed to remove termination hooks", exc_info=True)

        if self.config.keep_browser:
            if not self.connection_lost:
                self.log(f"Chrome left running on port {self.chrome.port} with profile {self.user_data_dir}")
            return
        if not self.connection_lost:
            try:
                await asyncio.to_thread(self.chrome.kill)
            except Exception:  # noqa: BLE001
                _LOGGER.debug("Failed to stop Chrome", exc_info=True)
        try:
            self.chrome.remove_user_data_dir()
        except Exception:  # noqa: BLE001
            _LOGGER.debug("Failed to remove %s", self.user_data_dir, exc_info=True)
        if not self.connection_lost:
            total = time.monotonic() - self.started_at
            self.log(f"Cleanup {self.status} • {total:.1f}s total")


async def _sync_cookies_step(
    conn: CdpConnection,
    config: AutomationConfig,
    log: Log,
    synchronizer: CookieSynchronizer | None,
) -> None:
    await conn.network.clear_browser_cookies()
    if not config.cookie_sync:
        log("Skipping Chrome cookie sync (cookie sync disabled)")
        return
    count = await sync_cookies(
        conn.network,
        config.url,
        config.chrome_profile,
        log,
        config.allow_cookie_errors,
        synchronizer=synchronizer,
    )
    if count > 0:
        log(f"Copied {count} cookies from Chrome profile {config.chrome_profile or 'Default'}")
    else:
        log("No Chrome cookies found; continuing without session reuse")


async def _capture_markdown(runtime: Any, answer: AssistantAnswer, log: Log, verbose: bool) -> str | None:
    async def _attempt() -> str:
        markdown = await capture_assistant_markdown(runtime, answer, log)
        if not markdown:
            raise ResponseCaptureError("copy-missing")
        return markdown

    def _on_retry(attempt: int, error: BaseException) -> None:
        if verbose:
            log(f"[retry] Markdown capture attempt {attempt + 1}: {error}")

    try:
        return await with_retries(_attempt, retries=MARKDOWN_RETRIES, delay=MARKDOWN_RETRY_DELAY, on_retry=_on_retry)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.debug("Markdown capture fell back to plain text: %s", exc)
        return None


async def _drive_page(
    run: _BrowserRun,
    conn: CdpConnection,
    prompt: str,
    attachments: Sequence[BrowserAttachment],
    *,
    verbose: bool,
    heartbeat_interval: float | None,
    synchronizer: CookieSynchronizer | None,
) -> RunResult:
    config, log = run.config, run.log

    if config.hide_window and not config.headless:
        await hide_chrome_window(run.chrome, log)

    run.step = "enable-domains"
    await conn.enable_domains(network=True, page=True, runtime=True)
    dom_failures = await conn.enable_domains(dom=True, strict=False)
    if dom_failures:
        _LOGGER.debug("DOM domain unavailable: %s", dom_failures)

    run.step = "cookie-sync"
    await _sync_cookies_step(conn, config, log, synchronizer)

    run.step = "navigate"
    await navigate_to_chatgpt(conn.page, conn.runtime, config.url, log)
    run.step = "block-check"
    await ensure_not_blocked(conn.runtime, config.headless, log)
    run.step = "composer-ready"
    await ensure_prompt_ready(conn.runtime, config.input_timeout, log)
    log(f"Prompt textarea ready (initial focus, {len(prompt):,} chars queued)")

    if config.desired_model:
        run.step = "model-selection"
        await ensure_model_selection(conn.runtime, config.desired_model, log)

    if attachments:
        run.step = "attachment-upload"
        if not conn.is_enabled("DOM"):
            raise AttachmentUploadError("Chrome DOM domain unavailable while uploading attachments.")
        for attachment in attachments:
            log(f"Uploading attachment: {attachment.display_path}")
            await upload_attachment_file(conn.runtime, conn.dom, attachment, log)
        await wait_for_attachment_completion(conn.runtime, max(config.input_timeout, MIN_ATTACHMENT_WAIT), log)
        log("All attachments uploaded")

    run.step = "submit"
    await submit_prompt(conn.runtime, conn.input, prompt, log)

    run.step = "response-wait"
    run.monitor = ThinkingStatusMonitor(
        conn.runtime,
        log,
        verbose=verbose,
        heartbeat_interval=heartbeat_interval,
    ).start()
    try:
        answer = await wait_for_assistant_response(conn.runtime, config.timeout, log)
    finally:
        run.monitor.stop()

    markdown = await _capture_markdown(conn.runtime, answer, log, verbose)
    answer_markdown = markdown or answer.text
    run.status = "complete"
    return RunResult(
        answer_text=answer.text,
        answer_markdown=answer_markdown,
        answer_html=answer.html or None,
        took_ms=int((time.monotonic() - run.started_at) * 1000),
        answer_tokens=estimate_token_count(answer_markdown),
        answer_chars=len(answer.text),
        chrome_pid=run.chrome.pid,
        chrome_port=run.chrome.port,
        user_data_dir=run.user_data_dir,
    )


async def run_browser_mode(
    prompt: str,
    attachments: Sequence[BrowserAttachment] | None = None,
    config: AutomationConfig | Mapping[str, Any] | None = None,
    log: Log | None = None,
    *,
    heartbeat_interval: float | None = None,
    verbose: bool = False,
    cookie_synchronizer: CookieSynchronizer | None = None,
) -> RunResult:
    """Submit *prompt* to ChatGPT in a fresh Chrome and return the answer.

    Raises ``ValueError`` for an empty prompt, ``BrowserClosedError`` when the
    DevTools connection drops mid-run, and the step's own
    ``BrowserAutomationError`` subclass for every other failure. Cleanup has
    always run by the time this returns or raises.
    """
    prompt_text = (prompt or "").strip()
    if not prompt_text:
        raise ValueError("Prompt text is required when using browser mode.")

    attachment_list = list(attachments or [])
    resolved = resolve_browser_config(config)
    log = log or _default_log
    trace = _trace_enabled(resolved)
    if trace:
        log(f"[browser-mode] config: {json.dumps({**resolved.to_dict(), 'promptLength': len(prompt_text)})}")

    user_data_dir = create_user_data_dir()
    log(f"Created temporary Chrome profile at {user_data_dir}")
    try:
        chrome = await launch_chrome(resolved, user_data_dir, log)
    except BaseException:
        if not resolved.keep_browser:
            remove_user_data_dir(user_data_dir)
        raise

    run = _BrowserRun(resolved, chrome, user_data_dir, log)
    try:
        run.dispose_hooks = register_termination_hooks(chrome, user_data_dir, resolved.keep_browser, log)
    except Exception:  # noqa: BLE001
        _LOGGER.debug("Termination hooks unavailable", exc_info=True)

    try:
        run.conn = await connect_to_chrome(chrome.port, log)
        run.conn.on(DISCONNECT_EVENT, run.mark_connection_lost)
        return await _drive_page(
            run,
            run.conn,
            prompt_text,
            attachment_list,
            verbose=verbose,
            heartbeat_interval=heartbeat_interval,
            synchronizer=cookie_synchronizer,
        )
    except Exception as exc:
        if run.connection_lost or is_connection_closed_error(exc):
            run.connection_lost = True
            if trace:
                log(f"Chrome window closed before completion: {exc}")
                log(traceback.format_exc())
            raise BrowserClosedError(BROWSER_CLOSED_MESSAGE, details={"reason": str(exc)}) from exc
        log(f"Failed to complete ChatGPT run: {exc}")
        if trace:
            log(traceback.format_exc())
        if isinstance(exc, (CdpError, HttpClientError)):
            raise BrowserAutomationError(
                f"DevTools error during {run.step}: {exc}",
                stage=run.step,
                details={"errorType": type(exc).__name__},
            ) from exc
        raise
    finally:
        await run.cleanup()


def run_browser(
    prompt: str,
    attachments: Sequence[BrowserAttachment] | None = None,
    config: AutomationConfig | Mapping[str, Any] | None = None,
    log: Log | None = None,
    **kwargs: Any,
) -> RunResult:
    """Blocking wrapper around :func:`run_browser_mode`."""
    return asyncio.run(run_browser_mode(prompt, attachments, config, log, **kwargs))


__all__ = [
    "BROWSER_CLOSED_MESSAGE",
    "AssistantAnswer",
    "BrowserAttachment",
    "RunResult",
    "run_browser",
    "run_browser_mode",
]
