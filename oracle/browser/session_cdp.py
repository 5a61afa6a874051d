"""Chrome DevTools Protocol connection.

One WebSocket per run, shared by every caller: each command carries its own
id and resolves its own future, so the step sequence and the status monitor
can have requests in flight at the same time.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import (
    CdpCommandError,
    CdpConnectionClosedError,
    CdpError,
    CdpEvaluationError,
    CdpTimeoutError,
)
from .http_client import list_targets, open_target

_LOGGER = logging.getLogger("oracle.browser.cdp")

DISCONNECT_EVENT = "disconnect"
CLOSED_MESSAGE = "WebSocket connection closed"

EventHandler = Callable[[dict[str, Any]], Any]


class _Domain:
    name = ""

    def __init__(self, conn: CdpConnection) -> None:
        self._conn = conn

    async def call(self, command: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        return await self._conn.send(f"{self.name}.{command}", params, timeout=timeout)

    async def enable(self, **params: Any) -> dict[str, Any]:
        return await self.call("enable", params or None)


class NetworkDomain(_Domain):
    name = "Network"

    async def clear_browser_cookies(self) -> None:
        await self.call("clearBrowserCookies")

    async def set_cookie(self, **cookie: Any) -> bool:
        result = await self.call("setCookie", cookie)
        return bool(result.get("success", True))


class PageDomain(_Domain):
    name = "Page"

    async def navigate(self, url: str) -> dict[str, Any]:
        result = await self.call("navigate", {"url": url})
        error_text = result.get("errorText")
        if error_text:
            raise CdpCommandError("Page.navigate", f"{error_text} ({url})")
        return result


class RuntimeDomain(_Domain):
    name = "Runtime"

    async def evaluate(
        self,
        expression: str,
        *,
        await_promise: bool = False,
        return_by_value: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Evaluate *expression* in the page and return the CDP remote object."""
        params: dict[str, Any] = {"expression": expression, "returnByValue": return_by_value}
        if await_promise:
            params["awaitPromise"] = True
        res = await self.call("evaluate", params, timeout=timeout)
        details = res.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            message = exc.get("description") or details.get("text") or "Script evaluation failed"
            raise CdpEvaluationError(str(message), details)
        result = res.get("result")
        return result if isinstance(result, dict) else {}

    async def evaluate_value(
        self,
        expression: str,
        *,
        await_promise: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Evaluate and return the JSON value (``undefined``/``null`` become None)."""
        result = await self.evaluate(expression, await_promise=await_promise, timeout=timeout)
        if result.get("type") == "undefined" or result.get("subtype") == "null":
            return None
        return result.get("value")


class InputDomain(_Domain):
    name = "Input"

    async def insert_text(self, text: str) -> None:
        await self.call("insertText", {"text": text})

    async def dispatch_key_event(self, **event: Any) -> None:
        await self.call("dispatchKeyEvent", event)


class DomDomain(_Domain):
    name = "DOM"

    async def get_document(self) -> dict[str, Any]:
        return await self.call("getDocument", {"depth": 0})

    async def query_selector(self, node_id: int, selector: str) -> int:
        result = await self.call("querySelector", {"nodeId": int(node_id), "selector": selector})
        return int(result.get("nodeId") or 0)

    async def set_file_input_files(self, node_id: int, files: list[str]) -> None:
        await self.call("setFileInputFiles", {"nodeId": int(node_id), "files": list(files)})


class CdpConnection:
    """Multiplexed CDP WebSocket connection."""

    def __init__(self, ws: Any, *, ws_url: str = "", timeout: float = 30.0) -> None:
        self.ws = ws
        self.ws_url = ws_url
        self.timeout = timeout
        self.target_id: str | None = None
        self._next_id = 1
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._disconnected = False
        self._closing = False
        self._disconnect_reason: str | None = None
        self._reader: asyncio.Task | None = None
        self._enabled: set[str] = set()

        self.network = NetworkDomain(self)
        self.page = PageDomain(self)
        self.runtime = RuntimeDomain(self)
        self.input = InputDomain(self)
        self.dom = DomDomain(self)

    @classmethod
    async def open(cls, ws_url: str, *, timeout: float = 30.0, open_timeout: float = 10.0) -> CdpConnection:
        try:
            ws = await websockets.connect(ws_url, max_size=None, open_timeout=open_timeout, ping_interval=None)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise CdpError(f"Unable to open DevTools WebSocket {ws_url}: {exc}") from exc
        conn = cls(ws, ws_url=ws_url, timeout=timeout)
        conn.start()
        return conn

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name="cdp-reader")

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _dispatch(self, method: str, params: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(method, ())):
            try:
                outcome = handler(params)
            except Exception:  # noqa: BLE001
                _LOGGER.debug("CDP event handler for %s failed", method, exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its response.

        ``timeout=None`` uses the connection default; ``timeout<=0`` waits until
        the response arrives or the socket closes.
        """
        if self._disconnected:
            raise CdpConnectionClosedError(self._disconnect_reason or CLOSED_MESSAGE)

        msg_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (method, fut)

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        try:
            try:
                await self.ws.send(json.dumps(msg))
            except ConnectionClosed as exc:
                self._mark_disconnected(CLOSED_MESSAGE)
                raise CdpConnectionClosedError(CLOSED_MESSAGE) from exc

            wait = self.timeout if timeout is None else float(timeout)
            if wait <= 0:
                return await fut
            try:
                return await asyncio.wait_for(fut, wait)
            except asyncio.TimeoutError:
                raise CdpTimeoutError(f"CDP response timed out: {method}") from None
        finally:
            self._pending.pop(msg_id, None)

    async def enable_domains(
        self,
        *,
        page: bool = False,
        runtime: bool = False,
        network: bool = False,
        dom: bool = False,
        strict: bool = True,
    ) -> list[str]:
        """Enable CDP domains once per connection; returns the names that failed."""
        wanted = [
            (name, domain)
            for name, flag, domain in (
                ("Network", network, self.network),
                ("Page", page, self.page),
                ("Runtime", runtime, self.runtime),
                ("DOM", dom, self.dom),
            )
            if flag and name not in self._enabled
        ]
        if not wanted:
            return []

        results = await asyncio.gather(*(domain.enable() for _, domain in wanted), return_exceptions=True)
        failures: list[tuple[str, BaseException]] = []
        for (name, _), outcome in zip(wanted, results):
            if isinstance(outcome, BaseException):
                failures.append((name, outcome))
            else:
                self._enabled.add(name)

        if failures and strict:
            closed = next((exc for _, exc in failures if isinstance(exc, CdpConnectionClosedError)), None)
            if closed is not None:
                raise closed
            details = "; ".join(f"{name}: {exc}" for name, exc in failures)
            raise CdpError(f"Failed to enable CDP domain(s): {details}")
        return [name for name, _ in failures]

    def is_enabled(self, domain: str) -> bool:
        return domain in self._enabled

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        reason = CLOSED_MESSAGE
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue

                msg_id = data.get("id")
                if isinstance(msg_id, int):
                    entry = self._pending.pop(msg_id, None)
                    if entry is None:
                        continue
                    method, fut = entry
                    if fut.done():
                        continue
                    if "error" in data:
                        fut.set_exception(CdpCommandError(method, data["error"]))
                    else:
                        result = data.get("result")
                        fut.set_result(result if isinstance(result, dict) else {})
                    continue

                method = data.get("method")
                if isinstance(method, str):
                    params = data.get("params")
                    self._dispatch(method, params if isinstance(params, dict) else {})
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            reason = f"WebSocket error: {exc}"
            _LOGGER.debug("CDP reader stopped", exc_info=True)
        finally:
            self._mark_disconnected(reason)

    def _mark_disconnected(self, reason: str) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._disconnect_reason = reason
        pending = list(self._pending.values())
        self._pending.clear()
        for method, fut in pending:
            if not fut.done():
                fut.set_exception(CdpConnectionClosedError(f"{reason} while waiting for {method}"))
        if not self._closing:
            _LOGGER.debug("DevTools connection lost: %s", reason)
            self._dispatch(DISCONNECT_EVENT, {"reason": reason})

    async def close(self) -> None:
        """Close the socket; no-op when the browser already dropped it."""
        if self._disconnected:
            return
        self._closing = True
        with suppress(Exception):
            await asyncio.wait_for(self.ws.close(), 2.0)
        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader
        self._mark_disconnected("closed by client")


async def connect_to_chrome(
    port: int,
    log: Callable[[str], None],
    *,
    host: str = "127.0.0.1",
    timeout: float = 30.0,
) -> CdpConnection:
    """Attach to the first page target of the Chrome instance on *port*."""
    targets = await asyncio.to_thread(list_targets, port, host=host)
    target = next(
        (t for t in targets if t.get("type") == "page" and t.get("webSocketDebuggerUrl")),
        None,
    )
    if target is None:
        target = await asyncio.to_thread(open_target, port, "about:blank", host=host)
    ws_url = target.get("webSocketDebuggerUrl")
    if not isinstance(ws_url, str) or not ws_url:
        raise CdpError(f"No debuggable page target on port {port}")
    conn = await CdpConnection.open(ws_url, timeout=timeout)
    conn.target_id = str(target.get("id") or "") or None
    _LOGGER.debug("Attached to target %s via %s", conn.target_id, ws_url)
    log(f"Connected to Chrome DevTools on port {port}")
    return conn


__all__ = [
    "CLOSED_MESSAGE",
    "DISCONNECT_EVENT",
    "CdpConnection",
    "DomDomain",
    "InputDomain",
    "NetworkDomain",
    "PageDomain",
    "RuntimeDomain",
    "connect_to_chrome",
]
