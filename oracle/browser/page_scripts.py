"""Named page queries and commands evaluated inside the ChatGPT tab.

Every script is a template whose ``{{param}}`` slots are filled with
JSON-encoded values, so selectors, keyword lists and prompt text are never
spliced into JavaScript by hand. Each template evaluates to a
JSON-serializable value (or a promise of one when ``awaitPromise`` is used)::

    expression = render("prompt_ready", selectors=INPUT_SELECTORS)
    ready = await runtime.evaluate_value(expression)
"""

from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_NAME_MARKER_RE = re.compile(r"^/\* oracle:(\w+) \*/")

# Latest assistant turn extractor, shared by the snapshot query and the observer.
_ASSISTANT_EXTRACTOR = r"""
  const TURN_SELECTOR = {{turnSelector}};
  const ASSISTANT_SELECTOR = {{assistantSelector}};
  const isAssistantTurn = (node) => {
    if (!(node instanceof HTMLElement)) return false;
    const role = (node.getAttribute('data-message-author-role') || '').toLowerCase();
    if (role === 'assistant') return true;
    const testId = node.getAttribute('data-testid') || '';
    if (testId.includes('assistant')) return true;
    return Boolean(node.querySelector(ASSISTANT_SELECTOR + ', [data-testid*="assistant"]'));
  };
  const expandCollapsibles = (root) => {
    for (const button of Array.from(root.querySelectorAll('button'))) {
      const label = (button.textContent || '').toLowerCase();
      const testid = (button.getAttribute('data-testid') || '').toLowerCase();
      if (label.includes('more') || label.includes('expand') || label.includes('show') ||
          testid.includes('markdown') || testid.includes('toggle')) {
        button.click();
      }
    }
  };
  const extractFromTurns = () => {
    const turns = Array.from(document.querySelectorAll(TURN_SELECTOR));
    for (let index = turns.length - 1; index >= 0; index -= 1) {
      const turn = turns[index];
      if (!isAssistantTurn(turn)) continue;
      const messageRoot = turn.querySelector(ASSISTANT_SELECTOR) || turn;
      expandCollapsibles(messageRoot);
      const preferred = messageRoot.querySelector('.markdown') ||
        messageRoot.querySelector('[data-message-content]') || messageRoot;
      const text = preferred.innerText || '';
      if (!text.trim()) continue;
      return {
        text,
        html: preferred.innerHTML || '',
        messageId: messageRoot.getAttribute('data-message-id'),
        turnId: messageRoot.getAttribute('data-testid') || turn.getAttribute('data-testid'),
      };
    }
    return null;
  };
"""

_TEMPLATES: dict[str, str] = {
    "document_ready": "document.readyState",
    "cloudflare_check": r"""(() => {
  const title = (document.title || '').toLowerCase();
  return {
    title: document.title || '',
    titleMatch: title.includes({{titleMarker}}),
    challengeScript: Boolean(document.querySelector({{scriptSelector}})),
  };
})()""",
    "prompt_ready": r"""(() => {
  const selectors = {{selectors}};
  for (const selector of selectors) {
    const node = document.querySelector(selector);
    if (node && !node.hasAttribute('disabled')) {
      return true;
    }
  }
  return false;
})()""",
    "model_selection": r"""(() => {
  const BUTTON_SELECTOR = {{buttonSelector}};
  const LABEL_TOKENS = {{labelTokens}};
  const WORD_TOKENS = {{wordTokens}};
  const TEST_IDS = {{testIdTokens}};
  const POLL_MS = {{pollMs}};
  const MAX_WAIT_MS = {{maxWaitMs}};
  const RECLICK_MS = {{reclickMs}};
  const normalizeText = (value) => (value || '')
    .toLowerCase()
    .replace(/[^a-z0-9]+/g, ' ')
    .replace(/\s+/g, ' ')
    .trim();

  const button = document.querySelector(BUTTON_SELECTOR);
  if (!button) {
    return { status: 'button-missing' };
  }

  let lastPointerClick = 0;
  const pointerClick = () => {
    button.dispatchEvent(new PointerEvent('pointerdown', { bubbles: true, pointerId: 1, pointerType: 'mouse' }));
    button.dispatchEvent(new PointerEvent('pointerup', { bubbles: true, pointerId: 1, pointerType: 'mouse' }));
    button.dispatchEvent(new MouseEvent('click', { bubbles: true }));
    lastPointerClick = performance.now();
  };

  const optionLabel = (node) => (node && node.textContent ? node.textContent.trim() : '');
  const optionIsSelected = (node) => {
    if (!(node instanceof HTMLElement)) return false;
    if (['aria-checked', 'aria-selected', 'aria-current', 'data-selected']
      .some((name) => node.getAttribute(name) === 'true')) {
      return true;
    }
    const dataState = (node.getAttribute('data-state') || '').toLowerCase();
    if (['checked', 'selected', 'on', 'true'].includes(dataState)) return true;
    return Boolean(node.querySelector('[data-testid*="check"], [role="img"][data-icon="check"], svg[data-icon="check"]'));
  };

  const matchesLabel = (text, tokens) => {
    const compact = text.replace(/ /g, '');
    return tokens.some((token) => {
      const normalized = normalizeText(token);
      if (!normalized) return false;
      return text.includes(normalized) || compact.includes(normalized.replace(/ /g, ''));
    });
  };
  const findOption = () => {
    const menus = Array.from(document.querySelectorAll('[role="menu"], [data-radix-collection-root]'));
    const options = [];
    for (const menu of menus) {
      options.push(...Array.from(menu.querySelectorAll(
        'button, [role="menuitem"], [role="menuitemradio"], [data-testid*="model-switcher-"]',
      )));
    }
    // Whole-label tokens first so a shared word ("5.1") cannot pick a sibling model.
    for (const tokens of [LABEL_TOKENS, WORD_TOKENS]) {
      for (const option of options) {
        const testid = (option.getAttribute('data-testid') || '').toLowerCase();
        const matchesTestId = tokens === LABEL_TOKENS && testid && TEST_IDS.some((id) => testid.includes(id));
        if (matchesTestId || matchesLabel(normalizeText(option.textContent), tokens)) {
          return option;
        }
      }
    }
    return null;
  };

  pointerClick();
  return new Promise((resolve) => {
    const start = performance.now();
    const attempt = () => {
      const option = findOption();
      if (option) {
        if (optionIsSelected(option)) {
          resolve({ status: 'already-selected', label: optionLabel(option) });
          return;
        }
        option.click();
        resolve({ status: 'switched', label: optionLabel(option) });
        return;
      }
      if (performance.now() - start > MAX_WAIT_MS) {
        resolve({ status: 'option-not-found' });
        return;
      }
      if (performance.now() - lastPointerClick > RECLICK_MS) {
        pointerClick();
      }
      setTimeout(attempt, POLL_MS);
    };
    attempt();
  });
})()""",
    "attachment_queued": r"""(() => {
  const name = {{fileName}}.toLowerCase();
  const form = document.querySelector('form') || document.body;
  const text = (form.innerText || '').toLowerCase();
  const chips = Array.from(form.querySelectorAll('[data-testid*="attachment"], [data-testid*="file"]'));
  return { matched: text.includes(name) || chips.length > 0, chips: chips.length };
})()""",
    "attachment_status": r"""(() => {
  const button = document.querySelector({{sendSelector}});
  const indicators = {{indicatorSelectors}};
  const uploading = indicators.some((selector) => Boolean(document.querySelector(selector)));
  if (!button) {
    return { state: 'missing', uploading };
  }
  const disabled = button.hasAttribute('disabled') || button.getAttribute('aria-disabled') === 'true';
  return { state: disabled ? 'disabled' : 'ready', uploading };
})()""",
    "focus_composer": r"""(() => {
  const SELECTORS = {{selectors}};
  const dispatchPointer = (target) => {
    if (!(target instanceof HTMLElement)) return;
    for (const type of ['pointerdown', 'mousedown', 'pointerup', 'mouseup', 'click']) {
      target.dispatchEvent(new MouseEvent(type, { bubbles: true, cancelable: true, view: window }));
    }
  };
  const focusNode = (node) => {
    if (!node) return false;
    dispatchPointer(node);
    if (typeof node.focus === 'function') node.focus();
    const doc = node.ownerDocument;
    const selection = doc && doc.getSelection ? doc.getSelection() : null;
    if (selection) {
      const range = doc.createRange();
      range.selectNodeContents(node);
      range.collapse(false);
      selection.removeAllRanges();
      selection.addRange(range);
    }
    return true;
  };
  for (const selector of SELECTORS) {
    const node = document.querySelector(selector);
    if (node && focusNode(node)) {
      return { focused: true, selector };
    }
  }
  return { focused: false };
})()""",
    "read_composer": r"""(() => {
  const editor = document.querySelector({{editorSelector}});
  const fallback = document.querySelector({{fallbackSelector}});
  return {
    editorText: editor ? (editor.innerText || '') : '',
    fallbackValue: fallback ? (fallback.value || '') : '',
  };
})()""",
    "force_composer_text": r"""(() => {
  const text = {{text}};
  const fallback = document.querySelector({{fallbackSelector}});
  if (fallback) {
    fallback.value = text;
    fallback.dispatchEvent(new InputEvent('input', { bubbles: true, data: text, inputType: 'insertFromPaste' }));
    fallback.dispatchEvent(new Event('change', { bubbles: true }));
  }
  const editor = document.querySelector({{editorSelector}});
  if (editor) {
    editor.textContent = text;
  }
  return { editor: Boolean(editor), fallback: Boolean(fallback) };
})()""",
    "click_send": r"""(() => {
  const button = document.querySelector({{selector}});
  if (!button) {
    return 'missing';
  }
  const disabled = button.hasAttribute('disabled') || button.getAttribute('aria-disabled') === 'true';
  if (disabled || window.getComputedStyle(button).display === 'none') {
    return 'disabled';
  }
  button.click();
  return 'clicked';
})()""",
    "prompt_committed": r"""(() => {
  const normalize = (value) => (value || '').toLowerCase().replace(/\s+/g, ' ').trim();
  const prompt = normalize({{prompt}});
  const turns = Array.from(document.querySelectorAll({{turnSelector}}));
  const editor = document.querySelector({{editorSelector}});
  const fallback = document.querySelector({{fallbackSelector}});
  return {
    userMatched: turns.some((node) => normalize(node.innerText).includes(prompt)),
    turns: turns.length,
    editorValue: editor ? (editor.innerText || '') : '',
    fallbackValue: fallback ? (fallback.value || '') : '',
  };
})()""",
    "assistant_snapshot": r"""(() => {
""" + _ASSISTANT_EXTRACTOR + r"""
  const snapshot = extractFromTurns();
  return {
    found: Boolean(snapshot),
    text: snapshot ? snapshot.text : '',
    html: snapshot ? snapshot.html : '',
    messageId: snapshot ? snapshot.messageId : null,
    turnId: snapshot ? snapshot.turnId : null,
    stopVisible: Boolean(document.querySelector({{stopSelector}})),
  };
})()""",
    "response_observer": r"""(() => {
""" + _ASSISTANT_EXTRACTOR + r"""
  const STOP_SELECTOR = {{stopSelector}};
  const TIMEOUT_MS = {{timeoutMs}};
  const STOP_INTERVAL_MS = {{stopIntervalMs}};
  const immediate = extractFromTurns();
  if (immediate) {
    return Promise.resolve(immediate);
  }
  return new Promise((resolve, reject) => {
    let stopInterval = null;
    let timer = null;
    const finish = () => {
      observer.disconnect();
      if (stopInterval) clearInterval(stopInterval);
      if (timer) clearTimeout(timer);
    };
    const observer = new MutationObserver(() => {
      const extracted = extractFromTurns();
      if (extracted) {
        finish();
        resolve(extracted);
      }
    });
    observer.observe(document.body, { childList: true, subtree: true, characterData: true });
    stopInterval = setInterval(() => {
      const stop = document.querySelector(STOP_SELECTOR);
      if (!stop) return;
      const ariaLabel = (stop.getAttribute('aria-label') || '').toLowerCase();
      if (ariaLabel.includes('stop')) return;
      stop.click();
    }, STOP_INTERVAL_MS);
    timer = setTimeout(() => {
      finish();
      reject(new Error('Response timeout'));
    }, TIMEOUT_MS);
  });
})()""",
    "conversation_debug": r"""(() => {
  const turns = Array.from(document.querySelectorAll({{turnSelector}}));
  return turns.map((node) => ({
    role: node.getAttribute('data-message-author-role'),
    text: (node.innerText || '').slice(0, {{maxChars}}),
    testid: node.getAttribute('data-testid'),
  }));
})()""",
    "copy_markdown": r"""(() => {
  const BUTTON_SELECTOR = {{buttonSelector}};
  const TIMEOUT_MS = {{timeoutMs}};
  const hint = { messageId: {{messageId}}, turnId: {{turnId}} };
  const lastButtonIn = (node) => {
    if (!node) return null;
    const buttons = Array.from(node.querySelectorAll(BUTTON_SELECTOR));
    return buttons.length ? buttons[buttons.length - 1] : null;
  };
  const locateButton = () => {
    if (hint.messageId) {
      const button = lastButtonIn(document.querySelector('[data-message-id="' + CSS.escape(hint.messageId) + '"]'));
      if (button) return button;
    }
    if (hint.turnId) {
      const button = lastButtonIn(document.querySelector('[data-testid="' + CSS.escape(hint.turnId) + '"]'));
      if (button) return button;
    }
    return lastButtonIn(document);
  };

  const button = locateButton();
  if (!button) {
    return Promise.resolve({ success: false, status: 'missing-button' });
  }

  return new Promise((resolve) => {
    const clipboard = navigator.clipboard;
    const original = clipboard
      ? { writeText: clipboard.writeText, write: clipboard.write }
      : null;
    let settled = false;
    let timer = null;
    const restore = () => {
      document.removeEventListener('copy', onCopyEvent, true);
      if (clipboard && original) {
        try {
          clipboard.writeText = original.writeText;
          clipboard.write = original.write;
        } catch (_error) {}
      }
    };
    const finish = (markdown, status) => {
      if (settled) return;
      settled = true;
      if (timer) clearTimeout(timer);
      restore();
      const text = typeof markdown === 'string' ? markdown : '';
      resolve({ success: Boolean(text.trim()), markdown: text, status });
    };
    const onCopyEvent = (event) => {
      setTimeout(() => {
        const data = event.clipboardData ? event.clipboardData.getData('text/plain') : '';
        if (data) finish(data, 'copy-event');
      }, 0);
    };
    document.addEventListener('copy', onCopyEvent, true);
    if (clipboard) {
      try {
        clipboard.writeText = (text) => {
          finish(String(text || ''), 'write-text');
          return Promise.resolve();
        };
        clipboard.write = async (items) => {
          for (const item of items || []) {
            if (item.types && item.types.includes('text/plain')) {
              const blob = await item.getType('text/plain');
              finish(await blob.text(), 'write');
              return;
            }
          }
          finish('', 'write-empty');
        };
      } catch (_error) {}
    }
    button.scrollIntoView({ block: 'center', behavior: 'instant' });
    button.click();
    timer = setTimeout(() => finish('', 'timeout'), TIMEOUT_MS);
  });
})()""",
    "thinking_status": r"""(() => {
  const selectors = {{selectors}};
  const keywords = {{keywords}};
  const shimmerSelector = {{shimmerSelector}};
  const nodes = new Set();
  for (const selector of selectors) {
    document.querySelectorAll(selector).forEach((node) => nodes.add(node));
  }
  document.querySelectorAll('[data-testid]').forEach((node) => nodes.add(node));
  for (const node of nodes) {
    if (!(node instanceof HTMLElement)) continue;
    const text = (node.textContent || '').trim();
    if (!text) continue;
    const classLabel = String(node.className || '').toLowerCase();
    const dataLabel = ((node.getAttribute('data-testid') || '') + ' ' + (node.getAttribute('aria-label') || ''))
      .toLowerCase();
    const normalizedText = text.toLowerCase();
    const matches = keywords.some((keyword) =>
      normalizedText.includes(keyword) || classLabel.includes(keyword) || dataLabel.includes(keyword));
    if (matches) {
      const shimmer = node.querySelector(shimmerSelector);
      const shimmerText = shimmer ? (shimmer.textContent || '').trim() : '';
      return shimmerText || text;
    }
  }
  return null;
})()""",
}


def names() -> list[str]:
    return sorted(_TEMPLATES)


def script_name(expression: str) -> str | None:
    """Template name of a rendered expression, read from its leading marker."""
    match = _NAME_MARKER_RE.match(expression or "")
    return match.group(1) if match else None


def placeholders(name: str) -> set[str]:
    """Parameter names the template *name* expects."""
    return set(_PLACEHOLDER_RE.findall(_TEMPLATES[name]))


def render(name: str, **params: Any) -> str:
    """Fill template *name* with JSON-encoded *params*.

    Raises ``KeyError`` for an unknown template or a missing parameter and
    ``ValueError`` for parameters the template does not use.
    """
    template = _TEMPLATES[name]
    expected = placeholders(name)
    unused = set(params) - expected
    if unused:
        raise ValueError(f"Unexpected parameters for page script {name!r}: {sorted(unused)}")

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in params:
            raise KeyError(f"Page script {name!r} requires parameter {key!r}")
        return json.dumps(params[key])

    return f"/* oracle:{name} */ " + _PLACEHOLDER_RE.sub(_sub, template)


__all__ = ["names", "placeholders", "render", "script_name"]
