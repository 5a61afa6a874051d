"""ChatGPT web app endpoints and DOM selectors.

The selectors track chatgpt.com's current markup and are expected to need
maintenance when the app ships UI changes.
"""

from __future__ import annotations

CHATGPT_URL = "https://chatgpt.com/"
DEFAULT_MODEL_TARGET = "ChatGPT 5.1"

# Cookies for the same account can be scoped to any of these hosts.
COOKIE_URLS: list[str] = [
    "https://chatgpt.com",
    "https://chat.openai.com",
    "https://atlas.openai.com",
]

INPUT_SELECTORS: list[str] = [
    'textarea[data-id="prompt-textarea"]',
    'textarea[placeholder*="Send a message"]',
    'textarea[aria-label="Message ChatGPT"]',
    "textarea:not([disabled])",
    'textarea[name="prompt-textarea"]',
    "#prompt-textarea",
    ".ProseMirror",
    '[contenteditable="true"][data-virtualkeyboard="true"]',
]

PROMPT_EDITOR_SELECTOR = "#prompt-textarea"
PROMPT_FALLBACK_SELECTOR = 'textarea[name="prompt-textarea"]'

CONVERSATION_TURN_SELECTOR = 'article[data-testid^="conversation-turn"]'
ASSISTANT_ROLE_SELECTOR = '[data-message-author-role="assistant"]'

SEND_BUTTON_SELECTOR = 'button[data-testid="send-button"]'
STOP_BUTTON_SELECTOR = '[data-testid="stop-button"]'
MODEL_BUTTON_SELECTOR = '[data-testid="model-switcher-dropdown-button"]'
COPY_BUTTON_SELECTOR = 'button[data-testid="copy-turn-action-button"]'
FILE_INPUT_SELECTOR = 'form input[type="file"]:not([accept])'

UPLOAD_INDICATOR_SELECTORS: list[str] = [
    '[data-testid*="upload"][aria-busy="true"]',
    '[data-testid*="attachment"] [role="progressbar"]',
    '[role="progressbar"]',
    ".animate-spin",
]

CLOUDFLARE_TITLE_MARKER = "just a moment"
CLOUDFLARE_SCRIPT_SELECTOR = 'script[src*="/challenge-platform/"]'

THINKING_SELECTORS: list[str] = [
    "span.loading-shimmer",
    "span.flex.items-center.gap-1.truncate.text-start.align-middle.text-token-text-tertiary",
    '[data-testid*="thinking"]',
    '[data-testid*="reasoning"]',
    '[role="status"]',
    '[aria-live="polite"]',
]
THINKING_SHIMMER_SELECTOR = "span.flex.items-center.gap-1.truncate.text-start.align-middle.text-token-text-tertiary"
THINKING_KEYWORDS: list[str] = [
    "pro thinking",
    "thinking",
    "reasoning",
    "clarifying",
    "planning",
    "drafting",
    "summarizing",
]
