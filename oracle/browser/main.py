"""Command line entry point: send one prompt to ChatGPT through Chrome."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .browser_mode import run_browser
from .constants import DEFAULT_MODEL_TARGET
from .errors import BrowserAutomationError, CdpError, HttpClientError
from .page_actions import BrowserAttachment
from .utils import parse_duration

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("oracle.browser")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oracle-browser",
        description="Submit a prompt to ChatGPT in a throwaway Chrome profile and print the answer.",
    )
    parser.add_argument("prompt", help="Prompt text, or '-' to read it from stdin")
    parser.add_argument("-f", "--file", dest="files", action="append", default=[], help="Attach a file (repeatable)")
    parser.add_argument("--url", help="ChatGPT URL (default: https://chatgpt.com/)")
    parser.add_argument(
        "--model",
        dest="desired_model",
        nargs="?",
        const=DEFAULT_MODEL_TARGET,
        help=f"Model picker label to select (bare --model picks {DEFAULT_MODEL_TARGET!r})",
    )
    parser.add_argument("--timeout", help="Response timeout, e.g. 900, 15m, 90s")
    parser.add_argument("--input-timeout", dest="input_timeout", help="Composer readiness timeout, e.g. 30s")
    parser.add_argument("--profile", dest="chrome_profile", help="Chrome profile name, directory or Cookies file")
    parser.add_argument("--chrome-path", dest="chrome_path", help="Chrome/Chromium binary")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--headless", dest="headless", action="store_const", const=True, default=None)
    mode.add_argument("--headful", dest="headless", action="store_const", const=False)
    parser.add_argument("--hide-window", dest="hide_window", action="store_const", const=True, default=None)
    parser.add_argument("--keep-browser", dest="keep_browser", action="store_const", const=True, default=None)
    parser.add_argument("--no-cookie-sync", dest="cookie_sync", action="store_const", const=False, default=None)
    parser.add_argument(
        "--allow-cookie-errors",
        dest="allow_cookie_errors",
        action="store_const",
        const=True,
        default=None,
        help="Continue logged-out when Chrome cookies cannot be read",
    )
    parser.add_argument("--heartbeat", help="Log a keep-alive line after this much silence, e.g. 30s")
    parser.add_argument("--verbose", action="store_true", help="Extra progress diagnostics")
    parser.add_argument("--debug", dest="debug", action="store_const", const=True, default=None)
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print the full result as JSON")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "url",
        "desired_model",
        "timeout",
        "input_timeout",
        "chrome_profile",
        "chrome_path",
        "headless",
        "hide_window",
        "keep_browser",
        "cookie_sync",
        "allow_cookie_errors",
        "debug",
    )
    return {key: getattr(args, key) for key in keys if getattr(args, key) is not None}


def _read_prompt(raw: str) -> str:
    if raw == "-":
        return sys.stdin.read()
    return raw


def _as_automation_error(exc: Exception) -> BrowserAutomationError:
    error = BrowserAutomationError(str(exc), stage="devtools", details={"errorType": type(exc).__name__})
    error.__cause__ = exc
    return error


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        heartbeat = parse_duration(args.heartbeat) if args.heartbeat else None
        attachments = [BrowserAttachment(str(Path(p).expanduser().resolve()), p) for p in args.files]
        for attachment in attachments:
            if not Path(attachment.path).is_file():
                parser.error(f"attachment not found: {attachment.display_path}")
        result = run_browser(
            _read_prompt(args.prompt),
            attachments,
            _overrides(args),
            heartbeat_interval=heartbeat,
            verbose=args.verbose,
        )
    except ValueError as exc:
        parser.error(str(exc))
    except (BrowserAutomationError, CdpError, HttpClientError) as exc:
        error = exc if isinstance(exc, BrowserAutomationError) else _as_automation_error(exc)
        logger.error("%s", error)
        if args.as_json:
            print(json.dumps(error.to_dict(), ensure_ascii=False))
        return 1
    except KeyboardInterrupt:
        return 130

    if args.as_json:
        print(json.dumps(result.to_dict(), ensure_ascii=False))
    else:
        print(result.answer_markdown)
    return 0


if __name__ == "__main__":
    sys.exit(main())
