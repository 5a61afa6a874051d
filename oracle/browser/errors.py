"""Error types for browser automation.

Transport-level failures (the DevTools socket or HTTP endpoint) are kept apart
from user-facing automation failures so the run coordinator can tell "the
browser went away" from "a step failed".
"""

from __future__ import annotations

from typing import Any

from websockets.exceptions import ConnectionClosed


class HttpClientError(Exception):
    pass


class CdpError(Exception):
    """Base class for DevTools protocol transport errors."""


class CdpConnectionClosedError(CdpError):
    pass


class CdpTimeoutError(CdpError):
    pass


class CdpCommandError(CdpError):
    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.error = error
        if isinstance(error, dict):
            detail = str(error.get("message") or error)
            data = error.get("data")
            if data:
                detail = f"{detail} ({data})"
        else:
            detail = str(error)
        super().__init__(f"{method} failed: {detail}")


class CdpEvaluationError(CdpError):
    """Script evaluated with Runtime.evaluate threw inside the page."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class BrowserAutomationError(Exception):
    """A browser-mode step failed in a way the user can act on."""

    stage = "browser"

    def __init__(self, message: str, *, stage: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if stage:
            self.stage = stage
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "error": True,
            "type": type(self).__name__,
            "stage": self.stage,
            "message": self.message,
            "details": self.details,
        }
        cause = self.__cause__
        if cause is not None:
            out["cause"] = str(cause)
        return out


class ChromeLaunchError(BrowserAutomationError):
    stage = "launch"


class DocumentNotReadyError(BrowserAutomationError):
    stage = "navigate"


class CloudflareChallengeError(BrowserAutomationError):
    stage = "block-check"


class PromptNotReadyError(BrowserAutomationError):
    stage = "composer-ready"


class ModelSelectorMissingError(BrowserAutomationError):
    stage = "model-selection"


class ModelOptionNotFoundError(BrowserAutomationError):
    stage = "model-selection"


class AttachmentUploadError(BrowserAutomationError):
    stage = "attachment-upload"


class AttachmentTimeoutError(BrowserAutomationError):
    stage = "attachment-upload"


class PromptSubmitError(BrowserAutomationError):
    stage = "submit"


class SubmitNotConfirmedError(PromptSubmitError):
    pass


class ResponseTimeoutError(BrowserAutomationError):
    stage = "response-wait"


class ResponseCaptureError(BrowserAutomationError):
    stage = "response-wait"


class ChromeCookieSyncError(BrowserAutomationError):
    stage = "cookie-sync"


class BrowserClosedError(BrowserAutomationError):
    stage = "connection"


_CLOSURE_MARKERS = (
    "websocket connection closed",
    "websocket is closed",
    "websocket error",
    "target closed",
    "connection closed",
    "no close frame received",
)


def is_connection_closed_error(exc: BaseException) -> bool:
    """Return True when *exc* means the DevTools socket is gone."""
    if isinstance(exc, CdpConnectionClosedError):
        return True
    if isinstance(exc, ConnectionClosed):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CLOSURE_MARKERS)


__all__ = [
    "AttachmentTimeoutError",
    "AttachmentUploadError",
    "BrowserAutomationError",
    "BrowserClosedError",
    "CdpCommandError",
    "CdpConnectionClosedError",
    "CdpError",
    "CdpEvaluationError",
    "CdpTimeoutError",
    "ChromeCookieSyncError",
    "ChromeLaunchError",
    "CloudflareChallengeError",
    "DocumentNotReadyError",
    "HttpClientError",
    "ModelOptionNotFoundError",
    "ModelSelectorMissingError",
    "PromptNotReadyError",
    "PromptSubmitError",
    "ResponseCaptureError",
    "ResponseTimeoutError",
    "SubmitNotConfirmedError",
    "is_connection_closed_error",
]
