"""ChatGPT page steps, one coroutine per state of a browser run.

Each step takes the CDP domain objects it needs (``runtime``, ``page``,
``input_``, ``dom``) plus the run's ``log`` callable, so tests can drive
them with small fakes. Steps wait by polling page scripts from
:mod:`oracle.browser.page_scripts`; every wait has its own deadline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import page_scripts
from .constants import (
    ASSISTANT_ROLE_SELECTOR,
    CLOUDFLARE_SCRIPT_SELECTOR,
    CLOUDFLARE_TITLE_MARKER,
    CONVERSATION_TURN_SELECTOR,
    COPY_BUTTON_SELECTOR,
    FILE_INPUT_SELECTOR,
    INPUT_SELECTORS,
    MODEL_BUTTON_SELECTOR,
    PROMPT_EDITOR_SELECTOR,
    PROMPT_FALLBACK_SELECTOR,
    SEND_BUTTON_SELECTOR,
    STOP_BUTTON_SELECTOR,
    UPLOAD_INDICATOR_SELECTORS,
)
from .errors import (
    AttachmentTimeoutError,
    AttachmentUploadError,
    CdpError,
    CdpEvaluationError,
    CloudflareChallengeError,
    DocumentNotReadyError,
    ModelOptionNotFoundError,
    ModelSelectorMissingError,
    PromptNotReadyError,
    PromptSubmitError,
    ResponseCaptureError,
    ResponseTimeoutError,
    SubmitNotConfirmedError,
    is_connection_closed_error,
)

_LOGGER = logging.getLogger("oracle.browser.page")

Log = Callable[[str], None]

DOCUMENT_READY_TIMEOUT = 45.0
DOCUMENT_READY_INTERVAL = 0.1
PROMPT_READY_INTERVAL = 0.2
MODEL_MENU_MAX_WAIT = 12.0
MODEL_MENU_POLL = 0.05
MODEL_MENU_RECLICK = 0.5
ATTACHMENT_POLL_INTERVAL = 0.25
SEND_BUTTON_WINDOW = 2.0
SEND_BUTTON_INTERVAL = 0.1
SUBMIT_CONFIRM_TIMEOUT = 30.0
SUBMIT_CONFIRM_INTERVAL = 0.1
RESPONSE_POLL_INTERVAL = 1.0
STOP_BUTTON_INTERVAL = 0.5
SETTLE_WINDOW = 5.0
SETTLE_INTERVAL = 0.4
COPY_TIMEOUT = 5.0
SNAPSHOT_TURNS = 3

_ENTER_KEY = {"key": "Enter", "code": "Enter", "windowsVirtualKeyCode": 13, "nativeVirtualKeyCode": 13}


@dataclass(frozen=True)
class BrowserAttachment:
    """A local file to upload into the composer."""

    path: str
    display_path: str = ""

    def __post_init__(self) -> None:
        if not self.display_path:
            object.__setattr__(self, "display_path", Path(self.path).name)


@dataclass
class AssistantAnswer:
    text: str
    html: str | None = None
    message_id: str | None = None
    turn_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> AssistantAnswer | None:
        if not isinstance(payload, dict):
            return None
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            return None

        def _opt(key: str) -> str | None:
            value = payload.get(key)
            return value if isinstance(value, str) and value else None

        return cls(text=text, html=_opt("html"), message_id=_opt("messageId"), turn_id=_opt("turnId"))


@dataclass(frozen=True)
class ModelMatchers:
    label_tokens: list[str] = field(default_factory=list)
    word_tokens: list[str] = field(default_factory=list)
    test_id_tokens: list[str] = field(default_factory=list)


async def _evaluate_quiet(runtime: Any, expression: str, **kwargs: Any) -> Any:
    """Evaluate for a polling loop: page-side failures read as None, a lost socket still raises."""
    try:
        return await runtime.evaluate_value(expression, **kwargs)
    except CdpError as exc:
        if is_connection_closed_error(exc):
            raise
        _LOGGER.debug("%s failed: %s", page_scripts.script_name(expression) or "evaluate", exc)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Navigation and readiness
# ─────────────────────────────────────────────────────────────────────────────


async def wait_for_document_ready(
    runtime: Any,
    timeout: float = DOCUMENT_READY_TIMEOUT,
    *,
    poll_interval: float = DOCUMENT_READY_INTERVAL,
) -> None:
    deadline = time.monotonic() + timeout
    expression = page_scripts.render("document_ready")
    while time.monotonic() < deadline:
        state = await _evaluate_quiet(runtime, expression)
        if state in ("interactive", "complete"):
            return
        await asyncio.sleep(poll_interval)
    raise DocumentNotReadyError("Page did not reach ready state in time", details={"timeout": timeout})


async def navigate_to_chatgpt(
    page: Any,
    runtime: Any,
    url: str,
    log: Log,
    *,
    ready_timeout: float = DOCUMENT_READY_TIMEOUT,
) -> None:
    log(f"Navigating to {url}")
    await page.navigate(url)
    await wait_for_document_ready(runtime, ready_timeout)


async def is_cloudflare_interstitial(runtime: Any) -> bool:
    info = await runtime.evaluate_value(
        page_scripts.render(
            "cloudflare_check",
            titleMarker=CLOUDFLARE_TITLE_MARKER,
            scriptSelector=CLOUDFLARE_SCRIPT_SELECTOR,
        )
    )
    if not isinstance(info, dict):
        return False
    return bool(info.get("titleMatch") or info.get("challengeScript"))


async def ensure_not_blocked(runtime: Any, headless: bool, log: Log) -> None:
    if not await is_cloudflare_interstitial(runtime):
        return
    log("Cloudflare anti-bot page detected")
    if headless:
        message = "Cloudflare challenge detected in headless mode. Re-run with --headful so you can solve the challenge."
    else:
        message = "Cloudflare challenge detected. Complete the “Just a moment…” check in the open browser, then rerun."
    raise CloudflareChallengeError(message, details={"headless": headless})


async def wait_for_prompt(runtime: Any, timeout: float, *, poll_interval: float = PROMPT_READY_INTERVAL) -> bool:
    deadline = time.monotonic() + timeout
    expression = page_scripts.render("prompt_ready", selectors=INPUT_SELECTORS)
    while time.monotonic() < deadline:
        if await _evaluate_quiet(runtime, expression):
            return True
        await asyncio.sleep(poll_interval)
    return False


async def ensure_prompt_ready(
    runtime: Any,
    timeout: float,
    log: Log,
    *,
    poll_interval: float = PROMPT_READY_INTERVAL,
) -> None:
    if not await wait_for_prompt(runtime, timeout, poll_interval=poll_interval):
        raise PromptNotReadyError(
            "Prompt textarea did not appear before timeout",
            details={"timeout": timeout, "selectors": INPUT_SELECTORS},
        )
    log("Prompt textarea ready")


# ─────────────────────────────────────────────────────────────────────────────
# Model picker
# ─────────────────────────────────────────────────────────────────────────────


def normalize_label(value: str | None) -> str:
    """Lowercase alphanumeric words separated by single spaces."""
    return re.sub(r"[^a-z0-9]+", " ", (value or "").lower()).strip()


def build_model_matchers(target: str) -> ModelMatchers:
    base = target.strip().lower()
    labels: list[str] = []
    words: list[str] = []
    test_ids: list[str] = []

    def push(bucket: list[str], value: str) -> None:
        value = value.strip()
        if value and value not in bucket:
            bucket.append(value)

    collapsed = re.sub(r"\s+", "", base)
    dotless = base.replace(".", "")
    hyphenated = re.sub(r"\s+", "-", base)

    for value in (
        base,
        re.sub(r"\s+", " ", base),
        collapsed,
        dotless,
        f"chatgpt {base}",
        f"chatgpt {dotless}",
        f"gpt {base}",
        f"gpt {dotless}",
    ):
        push(labels, value)
    for word in base.split():
        if word not in labels:
            push(words, word)

    for value in (hyphenated, collapsed, dotless, f"model-switcher-{hyphenated}", f"model-switcher-{collapsed}"):
        push(test_ids, value)

    if not labels:
        labels.append(base)
    if not test_ids:
        test_ids.append(hyphenated)
    return ModelMatchers(label_tokens=labels, word_tokens=words, test_id_tokens=test_ids)


def _label_matches(label: str, tokens: list[str]) -> bool:
    text = normalize_label(label)
    compact = text.replace(" ", "")
    for token in tokens:
        normalized = normalize_label(token)
        if not normalized:
            continue
        if normalized in text or normalized.replace(" ", "") in compact:
            return True
    return False


def model_option_matches(label: str | None, testid: str | None, matchers: ModelMatchers, *, loose: bool = False) -> bool:
    """Python rendering of the picker's matching rule.

    ``loose`` adds the single-word tokens the page falls back to when no
    option matches a whole label.
    """
    lowered = (testid or "").lower()
    if lowered and any(token in lowered for token in matchers.test_id_tokens):
        return True
    if _label_matches(label or "", matchers.label_tokens):
        return True
    return loose and _label_matches(label or "", matchers.word_tokens)


async def ensure_model_selection(
    runtime: Any,
    desired_model: str,
    log: Log,
    *,
    max_wait: float = MODEL_MENU_MAX_WAIT,
) -> str:
    """Pick *desired_model* in the model switcher; returns the option label."""
    matchers = build_model_matchers(desired_model)
    expression = page_scripts.render(
        "model_selection",
        buttonSelector=MODEL_BUTTON_SELECTOR,
        labelTokens=matchers.label_tokens,
        wordTokens=matchers.word_tokens,
        testIdTokens=matchers.test_id_tokens,
        pollMs=int(MODEL_MENU_POLL * 1000),
        maxWaitMs=int(max_wait * 1000),
        reclickMs=int(MODEL_MENU_RECLICK * 1000),
    )
    outcome = await runtime.evaluate_value(expression, await_promise=True, timeout=max_wait + 5.0)
    status = outcome.get("status") if isinstance(outcome, dict) else None

    if status in ("already-selected", "switched"):
        label = outcome.get("label") or desired_model
        log(f"Model picker: {label}")
        return str(label)
    if status == "option-not-found":
        raise ModelOptionNotFoundError(
            f'Unable to find model option matching "{desired_model}" in the model switcher.',
            details={"labelTokens": matchers.label_tokens, "testIdTokens": matchers.test_id_tokens},
        )
    raise ModelSelectorMissingError(
        "Unable to locate the ChatGPT model selector button.",
        details={"selector": MODEL_BUTTON_SELECTOR, "status": status},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Attachments
# ─────────────────────────────────────────────────────────────────────────────


async def upload_attachment_file(runtime: Any, dom: Any, attachment: BrowserAttachment, log: Log) -> None:
    document = await dom.get_document()
    root = document.get("root") if isinstance(document, dict) else None
    root_id = int(root.get("nodeId") or 0) if isinstance(root, dict) else 0
    node_id = await dom.query_selector(root_id, FILE_INPUT_SELECTOR) if root_id else 0
    if not node_id:
        raise AttachmentUploadError(
            "Unable to locate ChatGPT attachment input.",
            details={"selector": FILE_INPUT_SELECTOR, "path": attachment.path},
        )
    await dom.set_file_input_files(node_id, [attachment.path])

    queued = await _evaluate_quiet(
        runtime,
        page_scripts.render("attachment_queued", fileName=Path(attachment.display_path).name),
    )
    if isinstance(queued, dict) and queued.get("matched"):
        log(f"Attachment queued: {attachment.display_path}")
    else:
        log(f"Attachment queued: {attachment.display_path} (preview not visible yet)")


async def wait_for_attachment_completion(
    runtime: Any,
    timeout: float,
    log: Log | None = None,
    *,
    poll_interval: float = ATTACHMENT_POLL_INTERVAL,
) -> None:
    deadline = time.monotonic() + timeout
    expression = page_scripts.render(
        "attachment_status",
        sendSelector=SEND_BUTTON_SELECTOR,
        indicatorSelectors=UPLOAD_INDICATOR_SELECTORS,
    )
    last: Any = None
    while True:
        last = await _evaluate_quiet(runtime, expression)
        if isinstance(last, dict) and last.get("state") == "ready" and not last.get("uploading"):
            if log is not None:
                log("Attachments ready")
            return
        if time.monotonic() + poll_interval > deadline:
            break
        await asyncio.sleep(poll_interval)
    raise AttachmentTimeoutError(
        f"Attachments did not finish uploading within {timeout:.0f}s",
        details={"lastState": last},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Prompt submission
# ─────────────────────────────────────────────────────────────────────────────


async def _attempt_send_button(
    runtime: Any,
    *,
    window: float = SEND_BUTTON_WINDOW,
    poll_interval: float = SEND_BUTTON_INTERVAL,
) -> bool:
    deadline = time.monotonic() + window
    expression = page_scripts.render("click_send", selector=SEND_BUTTON_SELECTOR)
    while time.monotonic() < deadline:
        status = await _evaluate_quiet(runtime, expression)
        if status == "clicked":
            return True
        if status == "missing":
            return False
        await asyncio.sleep(poll_interval)
    return False


async def _press_enter(input_: Any) -> None:
    await input_.dispatch_key_event(type="rawKeyDown", **_ENTER_KEY)
    await input_.dispatch_key_event(type="keyUp", **_ENTER_KEY)


async def verify_prompt_committed(
    runtime: Any,
    prompt: str,
    timeout: float = SUBMIT_CONFIRM_TIMEOUT,
    *,
    poll_interval: float = SUBMIT_CONFIRM_INTERVAL,
) -> None:
    deadline = time.monotonic() + timeout
    expression = page_scripts.render(
        "prompt_committed",
        prompt=prompt.strip(),
        turnSelector=CONVERSATION_TURN_SELECTOR,
        editorSelector=PROMPT_EDITOR_SELECTOR,
        fallbackSelector=PROMPT_FALLBACK_SELECTOR,
    )
    while time.monotonic() < deadline:
        info = await _evaluate_quiet(runtime, expression)
        if isinstance(info, dict) and info.get("userMatched"):
            return
        await asyncio.sleep(poll_interval)
    raise SubmitNotConfirmedError(
        "Prompt did not appear in conversation before timeout (send may have failed)",
        details={"timeout": timeout},
    )


async def submit_prompt(
    runtime: Any,
    input_: Any,
    prompt: str,
    log: Log,
    *,
    commit_timeout: float = SUBMIT_CONFIRM_TIMEOUT,
) -> None:
    focus = await runtime.evaluate_value(page_scripts.render("focus_composer", selectors=INPUT_SELECTORS))
    if not (isinstance(focus, dict) and focus.get("focused")):
        raise PromptSubmitError("Failed to focus prompt textarea", details={"selectors": INPUT_SELECTORS})

    await input_.insert_text(prompt)

    composer = await runtime.evaluate_value(
        page_scripts.render(
            "read_composer",
            editorSelector=PROMPT_EDITOR_SELECTOR,
            fallbackSelector=PROMPT_FALLBACK_SELECTOR,
        )
    )
    composer = composer if isinstance(composer, dict) else {}
    if not str(composer.get("editorText") or "").strip() and not str(composer.get("fallbackValue") or "").strip():
        _LOGGER.debug("Inserted text did not land in the composer; writing it directly")
        await runtime.evaluate_value(
            page_scripts.render(
                "force_composer_text",
                text=prompt,
                editorSelector=PROMPT_EDITOR_SELECTOR,
                fallbackSelector=PROMPT_FALLBACK_SELECTOR,
            )
        )

    if await _attempt_send_button(runtime):
        log("Clicked send button")
    else:
        await _press_enter(input_)
        log("Submitted prompt via Enter key")

    await verify_prompt_committed(runtime, prompt, commit_timeout)


# ─────────────────────────────────────────────────────────────────────────────
# Response
# ─────────────────────────────────────────────────────────────────────────────


def _extractor_params() -> dict[str, Any]:
    return {"turnSelector": CONVERSATION_TURN_SELECTOR, "assistantSelector": ASSISTANT_ROLE_SELECTOR}


async def _read_snapshot_state(runtime: Any) -> tuple[AssistantAnswer | None, bool]:
    payload = await runtime.evaluate_value(
        page_scripts.render("assistant_snapshot", stopSelector=STOP_BUTTON_SELECTOR, **_extractor_params())
    )
    if not isinstance(payload, dict):
        return None, False
    answer = AssistantAnswer.from_payload(payload) if payload.get("found") else None
    return answer, bool(payload.get("stopVisible"))


async def read_assistant_snapshot(runtime: Any) -> AssistantAnswer | None:
    """Latest assistant turn with non-empty text, if any."""
    answer, _ = await _read_snapshot_state(runtime)
    return answer


async def _poll_for_answer(runtime: Any, interval: float) -> AssistantAnswer:
    while True:
        try:
            answer = await read_assistant_snapshot(runtime)
        except CdpError as exc:
            if is_connection_closed_error(exc):
                raise
            answer = None
        if answer is not None:
            return answer
        await asyncio.sleep(interval)


async def _race_for_answer(runtime: Any, timeout: float, poll_interval: float) -> AssistantAnswer | None:
    """Page-side MutationObserver raced against a polling fallback; None when *timeout* elapses."""
    expression = page_scripts.render(
        "response_observer",
        stopSelector=STOP_BUTTON_SELECTOR,
        timeoutMs=int(timeout * 1000),
        stopIntervalMs=int(STOP_BUTTON_INTERVAL * 1000),
        **_extractor_params(),
    )
    observer = asyncio.ensure_future(runtime.evaluate_value(expression, await_promise=True, timeout=0))
    poller = asyncio.ensure_future(_poll_for_answer(runtime, poll_interval))
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    pending: set[asyncio.Future] = {observer, poller}
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    if is_connection_closed_error(exc):
                        raise exc
                    _LOGGER.debug("Response watcher stopped: %s", exc)
                    continue
                result = task.result()
                answer = result if isinstance(result, AssistantAnswer) else AssistantAnswer.from_payload(result)
                if answer is not None:
                    return answer
        return None
    finally:
        for task in (observer, poller):
            if not task.done():
                task.cancel()
        await asyncio.gather(observer, poller, return_exceptions=True)


async def _wait_for_settle(
    runtime: Any,
    answer: AssistantAnswer,
    *,
    window: float = SETTLE_WINDOW,
    interval: float = SETTLE_INTERVAL,
) -> AssistantAnswer:
    """Keep re-reading while ChatGPT is still generating; the longest text wins."""
    deadline = time.monotonic() + window
    latest = answer
    while time.monotonic() < deadline:
        await asyncio.sleep(interval)
        try:
            refreshed, stop_visible = await _read_snapshot_state(runtime)
        except CdpError as exc:
            if is_connection_closed_error(exc):
                raise
            _LOGGER.debug("Settle read failed: %s", exc)
            continue
        if refreshed is not None and len(refreshed.text) >= len(latest.text):
            latest = refreshed
        if not stop_visible:
            break
    return latest


async def wait_for_assistant_response(
    runtime: Any,
    timeout: float,
    log: Log,
    *,
    poll_interval: float = RESPONSE_POLL_INTERVAL,
    settle_window: float = SETTLE_WINDOW,
    settle_interval: float = SETTLE_INTERVAL,
) -> AssistantAnswer:
    log("Waiting for ChatGPT response")
    try:
        answer = await read_assistant_snapshot(runtime)
        if answer is None:
            answer = await _race_for_answer(runtime, timeout, poll_interval)
        if answer is None:
            raise ResponseTimeoutError(
                f"ChatGPT did not respond within {timeout:.0f}s",
                details={"timeout": timeout},
            )
        answer = await _wait_for_settle(runtime, answer, window=settle_window, interval=settle_interval)
    except Exception as exc:
        if not is_connection_closed_error(exc):
            await log_conversation_snapshot(runtime, log)
        raise
    if not answer.text.strip():
        raise ResponseCaptureError("Unable to capture assistant response")
    return answer


async def log_conversation_snapshot(runtime: Any, log: Log) -> None:
    try:
        turns = await runtime.evaluate_value(
            page_scripts.render("conversation_debug", turnSelector=CONVERSATION_TURN_SELECTOR, maxChars=200)
        )
    except Exception as exc:  # noqa: BLE001
        _LOGGER.debug("Conversation snapshot failed: %s", exc)
        return
    if isinstance(turns, list):
        log(f"Conversation snapshot: {json.dumps(turns[-SNAPSHOT_TURNS:], ensure_ascii=False)}")


async def capture_assistant_markdown(
    runtime: Any,
    answer: AssistantAnswer,
    log: Log,
    *,
    copy_timeout: float = COPY_TIMEOUT,
) -> str | None:
    """Markdown from ChatGPT's own copy button, or None when nothing was copied."""
    expression = page_scripts.render(
        "copy_markdown",
        buttonSelector=COPY_BUTTON_SELECTOR,
        timeoutMs=int(copy_timeout * 1000),
        messageId=answer.message_id,
        turnId=answer.turn_id,
    )
    try:
        result = await runtime.evaluate_value(expression, await_promise=True, timeout=copy_timeout + 5.0)
    except CdpEvaluationError as exc:
        log(f"Copy button fallback status: {exc}")
        return None
    if not isinstance(result, dict):
        return None
    markdown = result.get("markdown")
    if result.get("success") and isinstance(markdown, str) and markdown.strip():
        return markdown
    status = result.get("status")
    if status and status != "missing-button":
        log(f"Copy button fallback status: {status}")
    return None


__all__ = [
    "AssistantAnswer",
    "BrowserAttachment",
    "ModelMatchers",
    "build_model_matchers",
    "capture_assistant_markdown",
    "ensure_model_selection",
    "ensure_not_blocked",
    "ensure_prompt_ready",
    "is_cloudflare_interstitial",
    "log_conversation_snapshot",
    "model_option_matches",
    "navigate_to_chatgpt",
    "normalize_label",
    "read_assistant_snapshot",
    "submit_prompt",
    "upload_attachment_file",
    "verify_prompt_committed",
    "wait_for_assistant_response",
    "wait_for_attachment_completion",
    "wait_for_document_ready",
    "wait_for_prompt",
]
