from __future__ import annotations

import asyncio
from http.cookiejar import Cookie
from pathlib import Path
from typing import Any

import pytest

from oracle.browser import browser_mode, page_scripts
from oracle.browser.browser_mode import BROWSER_CLOSED_MESSAGE, run_browser, run_browser_mode
from oracle.browser.config import AutomationConfig
from oracle.browser.cookies import CookieSynchronizer
from oracle.browser.errors import (
    AttachmentUploadError,
    BrowserAutomationError,
    BrowserClosedError,
    CdpCommandError,
    CdpConnectionClosedError,
    ChromeLaunchError,
    CloudflareChallengeError,
    PromptNotReadyError,
)
from oracle.browser.page_actions import BrowserAttachment


class FakeRuntime:
    def __init__(self, **handlers: Any) -> None:
        self.handlers = handlers
        self.calls: list[str | None] = []

    async def evaluate_value(self, expression: str, **_kwargs: Any) -> Any:
        name = page_scripts.script_name(expression)
        self.calls.append(name)
        value = self.handlers.get(name)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if callable(value):
            value = value()
        if isinstance(value, BaseException):
            raise value
        return value


class FakeNetwork:
    def __init__(self) -> None:
        self.cleared = 0
        self.cookies: list[dict[str, Any]] = []

    async def clear_browser_cookies(self) -> None:
        self.cleared += 1

    async def set_cookie(self, **cookie: Any) -> bool:
        self.cookies.append(cookie)
        return True


class FakePage:
    def __init__(self) -> None:
        self.urls: list[str] = []

    async def navigate(self, url: str) -> dict[str, Any]:
        self.urls.append(url)
        return {}


class FakeInput:
    def __init__(self) -> None:
        self.texts: list[str] = []

    async def insert_text(self, text: str) -> None:
        self.texts.append(text)

    async def dispatch_key_event(self, **_event: Any) -> None:
        pass


class FakeDom:
    def __init__(self, events: list[tuple[str, ...]]) -> None:
        self.events = events

    async def get_document(self) -> dict[str, Any]:
        return {"root": {"nodeId": 1}}

    async def query_selector(self, _node_id: int, _selector: str) -> int:
        return 5

    async def set_file_input_files(self, _node_id: int, files: list[str]) -> None:
        self.events.append(("upload", *files))


class FakeConn:
    def __init__(self, runtime: FakeRuntime, *, dom_ok: bool = True) -> None:
        self.runtime = runtime
        self.events: list[tuple[str, ...]] = []
        self.network = FakeNetwork()
        self.page = FakePage()
        self.input = FakeInput()
        self.dom = FakeDom(self.events)
        self.dom_ok = dom_ok
        self.enabled: set[str] = set()
        self.handlers: dict[str, list[Any]] = {}
        self.closed = 0

    def on(self, event: str, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def drop(self) -> None:
        for handler in self.handlers.get("disconnect", []):
            handler({"reason": "WebSocket connection closed"})

    async def enable_domains(
        self,
        *,
        page: bool = False,
        runtime: bool = False,
        network: bool = False,
        dom: bool = False,
        strict: bool = True,  # noqa: ARG002
    ) -> list[str]:
        for name, flag in (("Page", page), ("Runtime", runtime), ("Network", network)):
            if flag:
                self.enabled.add(name)
        if dom:
            if not self.dom_ok:
                return ["DOM"]
            self.enabled.add("DOM")
        return []

    def is_enabled(self, name: str) -> bool:
        return name in self.enabled

    async def close(self) -> None:
        self.closed += 1


class FakeChrome:
    def __init__(self, user_data_dir: str) -> None:
        self.pid = 4242
        self.port = 9333
        self.user_data_dir = user_data_dir
        self.killed = 0
        self.removed = 0

    def kill(self, *, timeout: float = 2.0) -> bool:  # noqa: ARG002
        self.killed += 1
        return True

    def remove_user_data_dir(self) -> bool:
        self.removed += 1
        return True


def _answer(text: str, stop: bool = False) -> dict[str, Any]:
    return {"found": True, "text": text, "html": f"<p>{text}</p>", "messageId": "m1", "turnId": "t2", "stopVisible": stop}


def _happy_runtime(**overrides: Any) -> FakeRuntime:
    handlers: dict[str, Any] = {
        "document_ready": "complete",
        "cloudflare_check": {"title": "ChatGPT", "titleMatch": False, "challengeScript": False},
        "prompt_ready": True,
        "model_selection": {"status": "switched", "label": "GPT-5 Pro"},
        "attachment_queued": {"matched": True},
        "attachment_status": {"state": "ready", "uploading": False},
        "focus_composer": {"focused": True},
        "read_composer": {"editorText": "Hello", "fallbackValue": ""},
        "click_send": "clicked",
        "prompt_committed": {"userMatched": True},
        "assistant_snapshot": _answer("Answer text"),
        "copy_markdown": {"success": True, "markdown": "**Answer** text", "status": "write-text"},
        "thinking_status": None,
        "conversation_debug": [],
    }
    handlers.update(overrides)
    return FakeRuntime(**handlers)


class Harness:
    def __init__(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, conn: FakeConn) -> None:
        self.conn = conn
        self.profile = str(tmp_path / "profile")
        self.chrome = FakeChrome(self.profile)
        self.created = 0
        self.removed_dirs: list[str] = []
        self.hooks: list[tuple[Any, ...]] = []
        self.disposed = 0
        self.logs: list[str] = []
        self.launch_error: BaseException | None = None

        monkeypatch.delenv("CHATGPT_DEVTOOLS_TRACE", raising=False)
        monkeypatch.setattr(browser_mode, "create_user_data_dir", self._create)
        monkeypatch.setattr(browser_mode, "launch_chrome", self._launch)
        monkeypatch.setattr(browser_mode, "register_termination_hooks", self._register)
        monkeypatch.setattr(browser_mode, "connect_to_chrome", self._connect)
        monkeypatch.setattr(browser_mode, "remove_user_data_dir", self.removed_dirs.append)

    def _create(self) -> str:
        self.created += 1
        Path(self.profile).mkdir(parents=True, exist_ok=True)
        return self.profile

    async def _launch(self, _config: AutomationConfig, _user_data_dir: str, log: Any) -> FakeChrome:
        if self.launch_error is not None:
            raise self.launch_error
        log(f"Launched Chrome (pid {self.chrome.pid}) on port {self.chrome.port}")
        return self.chrome

    def _register(self, *args: Any) -> Any:
        self.hooks.append(args)

        def dispose() -> None:
            self.disposed += 1

        return dispose

    async def _connect(self, _port: int, _log: Any) -> FakeConn:
        return self.conn

    def run(self, prompt: str = "Hello", attachments: list[BrowserAttachment] | None = None, **config: Any) -> Any:
        cfg = AutomationConfig(**{"cookie_sync": False, **config})
        return asyncio.run(run_browser_mode(prompt, attachments, cfg, self.logs.append))


# ─────────────────────────────────────────────────────────────────────────────
# Success paths
# ─────────────────────────────────────────────────────────────────────────────


def test_successful_run_returns_result_and_cleans_up(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    result = h.run()

    assert result.answer_text == "Answer text"
    assert result.answer_markdown == "**Answer** text"
    assert result.answer_html == "<p>Answer text</p>"
    assert result.answer_tokens == 4
    assert result.answer_chars == 11
    assert result.chrome_pid == 4242
    assert result.chrome_port == 9333
    assert result.user_data_dir == h.profile
    assert result.took_ms >= 0
    assert set(result.to_dict()) >= {"answerText", "answerMarkdown", "answerHtml", "tookMs", "answerTokens"}

    assert h.chrome.killed == 1
    assert h.chrome.removed == 1
    assert h.conn.closed == 1
    assert h.disposed == 1
    assert h.conn.network.cleared == 1
    assert h.conn.page.urls == ["https://chatgpt.com/"]
    assert h.conn.input.texts == ["Hello"]
    assert h.logs[0] == f"Created temporary Chrome profile at {h.profile}"
    assert "Skipping Chrome cookie sync (cookie sync disabled)" in h.logs
    assert "Prompt textarea ready (initial focus, 5 chars queued)" in h.logs
    assert "Clicked send button" in h.logs
    assert h.logs[-1].startswith("Cleanup complete • ")


def test_keep_browser_leaves_chrome_and_profile(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    h.run(keep_browser=True)
    assert h.chrome.killed == 0
    assert h.chrome.removed == 0
    assert h.logs[-1] == f"Chrome left running on port 9333 with profile {h.profile}"
    assert not any(line.startswith("Cleanup ") for line in h.logs)
    assert h.hooks[0][2] is True


def test_markdown_capture_falls_back_to_text(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime(copy_markdown={"success": False, "markdown": "", "status": "timeout"})
    h = Harness(monkeypatch, tmp_path, FakeConn(runtime))
    result = h.run()
    assert result.answer_markdown == "Answer text"
    assert result.answer_tokens == 3
    assert runtime.calls.count("copy_markdown") == browser_mode.MARKDOWN_RETRIES + 1
    assert "Copy button fallback status: timeout" in h.logs


def test_model_selection_runs_when_requested(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime()
    h = Harness(monkeypatch, tmp_path, FakeConn(runtime))
    h.run(desired_model="GPT-5 Pro")
    assert "Model picker: GPT-5 Pro" in h.logs
    assert runtime.calls.index("model_selection") < runtime.calls.index("focus_composer")


def test_model_selection_skipped_without_model(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime()
    Harness(monkeypatch, tmp_path, FakeConn(runtime)).run()
    assert "model_selection" not in runtime.calls


def test_attachments_upload_in_order_before_submit(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime()
    conn = FakeConn(runtime)

    def status() -> dict[str, Any]:
        conn.events.append(("status",))
        return {"state": "ready", "uploading": False}

    runtime.handlers["attachment_status"] = status
    h = Harness(monkeypatch, tmp_path, conn)
    h.run(attachments=[BrowserAttachment("/tmp/a.md"), BrowserAttachment("/tmp/b.md")])

    assert conn.events == [("upload", "/tmp/a.md"), ("upload", "/tmp/b.md"), ("status",)]
    assert runtime.calls.index("attachment_status") < runtime.calls.index("focus_composer")
    assert "Uploading attachment: a.md" in h.logs
    assert "All attachments uploaded" in h.logs


def test_cookie_sync_applies_profile_cookies(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cookie = Cookie(0, "sid", "v", None, False, ".chatgpt.com", True, True, "/", True, True, None, False, None, None, {})

    class Module:
        def chrome(self, cookie_file: str | None = None, domain_name: str = "") -> list[Cookie]:  # noqa: ARG002
            return [cookie] if domain_name == "chatgpt.com" else []

    conn = FakeConn(_happy_runtime())
    h = Harness(monkeypatch, tmp_path, conn)
    synchronizer = CookieSynchronizer(loader=Module, env={})
    cfg = AutomationConfig(cookie_sync=True)
    asyncio.run(run_browser_mode("Hello", None, cfg, h.logs.append, cookie_synchronizer=synchronizer))
    assert [c["name"] for c in conn.network.cookies] == ["sid"]
    assert "Copied 1 cookies from Chrome profile Default" in h.logs


def test_cookie_sync_without_cookies_continues(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    class Empty:
        def chrome(self, **_kwargs: Any) -> list[Cookie]:
            return []

    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    cfg = AutomationConfig(cookie_sync=True)
    asyncio.run(
        run_browser_mode("Hello", None, cfg, h.logs.append, cookie_synchronizer=CookieSynchronizer(loader=Empty, env={}))
    )
    assert "No Chrome cookies found; continuing without session reuse" in h.logs


def test_blocking_wrapper(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    result = run_browser("Hello", config={"cookie_sync": False}, log=h.logs.append)
    assert result.answer_text == "Answer text"


# ─────────────────────────────────────────────────────────────────────────────
# Failure paths
# ─────────────────────────────────────────────────────────────────────────────


def test_empty_prompt_is_rejected_before_launch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    with pytest.raises(ValueError, match="Prompt text is required"):
        h.run(prompt="   ")
    assert h.created == 0


def test_disconnect_mid_response_raises_browser_closed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime()
    conn = FakeConn(runtime)

    def snapshot() -> BaseException:
        conn.drop()
        return CdpConnectionClosedError("WebSocket connection closed while waiting for Runtime.evaluate")

    runtime.handlers["assistant_snapshot"] = snapshot
    h = Harness(monkeypatch, tmp_path, conn)
    with pytest.raises(BrowserClosedError, match="Chrome window closed before Oracle finished") as excinfo:
        h.run()

    assert str(excinfo.value) == BROWSER_CLOSED_MESSAGE
    assert isinstance(excinfo.value.__cause__, CdpConnectionClosedError)
    assert h.chrome.killed == 0
    assert h.chrome.removed == 1
    assert conn.closed == 0
    assert h.disposed == 1
    assert not any(line.startswith("Cleanup ") for line in h.logs)


def test_cloudflare_stops_before_submit(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime(cloudflare_check={"title": "Just a moment...", "titleMatch": True, "challengeScript": False})
    h = Harness(monkeypatch, tmp_path, FakeConn(runtime))
    with pytest.raises(CloudflareChallengeError, match="--headful"):
        h.run(headless=True)
    assert "focus_composer" not in runtime.calls
    assert h.chrome.killed == 1
    assert h.chrome.removed == 1


def test_step_failure_cleans_up_once_and_reraises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime(prompt_ready=False)
    h = Harness(monkeypatch, tmp_path, FakeConn(runtime))
    with pytest.raises(PromptNotReadyError):
        h.run(input_timeout=0.3)
    assert "Failed to complete ChatGPT run: Prompt textarea did not appear before timeout" in h.logs
    assert h.chrome.killed == 1
    assert h.chrome.removed == 1
    assert h.conn.closed == 1
    assert h.logs[-1].startswith("Cleanup attempted • ")


def test_keep_browser_step_failure_leaves_chrome_and_profile(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime(prompt_ready=False)))
    with pytest.raises(PromptNotReadyError):
        h.run(input_timeout=0.3, keep_browser=True)
    assert h.chrome.killed == 0
    assert h.chrome.removed == 0
    assert h.conn.closed == 1
    assert f"Chrome left running on port 9333 with profile {h.profile}" in h.logs


def test_keep_browser_disconnect_leaves_profile(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime()
    conn = FakeConn(runtime)

    def snapshot() -> BaseException:
        conn.drop()
        return CdpConnectionClosedError("WebSocket connection closed while waiting for Runtime.evaluate")

    runtime.handlers["assistant_snapshot"] = snapshot
    h = Harness(monkeypatch, tmp_path, conn)
    with pytest.raises(BrowserClosedError):
        h.run(keep_browser=True)
    assert h.chrome.killed == 0
    assert h.chrome.removed == 0
    assert h.disposed == 1


def test_devtools_error_is_reported_with_failing_step(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runtime = _happy_runtime(
        cloudflare_check=CdpCommandError("Runtime.evaluate", {"message": "Execution context was destroyed."})
    )
    h = Harness(monkeypatch, tmp_path, FakeConn(runtime))
    with pytest.raises(BrowserAutomationError, match="during block-check") as excinfo:
        h.run()
    assert excinfo.value.stage == "block-check"
    assert excinfo.value.details == {"errorType": "CdpCommandError"}
    assert isinstance(excinfo.value.__cause__, CdpCommandError)
    assert excinfo.value.to_dict()["cause"].startswith("Runtime.evaluate failed")
    assert h.chrome.killed == 1
    assert h.chrome.removed == 1


def test_attachments_need_dom_domain(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime(), dom_ok=False))
    with pytest.raises(AttachmentUploadError, match="DOM domain unavailable"):
        h.run(attachments=[BrowserAttachment("/tmp/a.md")])
    assert h.conn.events == []


def test_launch_failure_removes_profile(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    h.launch_error = ChromeLaunchError("Failed to launch Chrome (chrome): not found")
    with pytest.raises(ChromeLaunchError):
        h.run()
    assert h.removed_dirs == [h.profile]
    assert h.hooks == []


def test_launch_failure_keeps_profile_with_keep_browser(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    h = Harness(monkeypatch, tmp_path, FakeConn(_happy_runtime()))
    h.launch_error = ChromeLaunchError("boom")
    with pytest.raises(ChromeLaunchError):
        h.run(keep_browser=True)
    assert h.removed_dirs == []


def test_cancel_during_launch_stops_chrome_and_removes_profile(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from oracle.browser import launcher

    class SlowChrome:
        pid = 5150

        def __init__(self) -> None:
            self.exit_code: int | None = None
            self.terminated = 0

        def poll(self) -> int | None:
            return self.exit_code

        def terminate(self) -> None:
            self.terminated += 1
            self.exit_code = -15

        def kill(self) -> None:
            self.exit_code = -9

    proc = SlowChrome()
    profile = tmp_path / "profile"
    profile.mkdir()
    monkeypatch.delenv("CHATGPT_DEVTOOLS_TRACE", raising=False)
    monkeypatch.setattr(launcher.subprocess, "Popen", lambda _cmd, **_kwargs: proc)
    monkeypatch.setattr(launcher, "cdp_ready", lambda _port: False)
    monkeypatch.setattr(launcher, "detect_binary", lambda _cfg=None: "chrome")
    monkeypatch.setattr(browser_mode, "create_user_data_dir", lambda: str(profile))

    async def run() -> None:
        task = asyncio.ensure_future(run_browser_mode("Hello", None, AutomationConfig(cookie_sync=False), lambda _m: None))
        await asyncio.sleep(0.3)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(run())
    assert proc.terminated == 1
    assert proc.poll() is not None
    assert not profile.exists()
