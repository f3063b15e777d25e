"""
Action implementations for the CDP bridge.

18 actions over the supervisor's current page, plus the Dispatcher that
connects first, routes by name and folds every outcome into a
{success, error?, ...} envelope.

Handlers share one signature: handler(page, params, session) where
``session`` is the ConnectionSupervisor and ``page`` may be None.
Page operations check for a live page before validating parameters.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine

from config import Config, normalize_wait_until
from errors import (
    ActionValidationError,
    BridgeError,
    NoActivePageError,
    UnknownActionError,
    to_ai_friendly_error,
)
from models import INTROSPECTION_ACTIONS, Action

log = logging.getLogger(__name__)

# Type for action handlers
ActionHandler = Callable[..., Coroutine[Any, Any, dict]]

SCROLL_DIRECTIONS = ("up", "down", "top", "bottom")


# ---------------------------------------------------------------------------
# Parameter helpers
# ---------------------------------------------------------------------------

def _require_page(page: Any) -> Any:
    if page is None:
        raise NoActivePageError()
    return page


def _require_str(params: dict, key: str, message: str) -> str:
    value = params.get(key)
    if not value or not isinstance(value, str):
        raise ActionValidationError(message)
    return value


def _number(params: dict, key: str, default: float) -> float:
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ActionValidationError(f"Invalid {key} parameter: expected a non-negative number")
    return value


def _timeout(params: dict) -> float:
    """Page-operation timeout in ms; 0 or absent gives the default."""
    return _number(params, "timeout", Config.DEFAULT_TIMEOUT) or Config.DEFAULT_TIMEOUT


async def _safe_title(page: Any) -> str | None:
    try:
        return await page.title()
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

async def action_navigate(page, params: dict, session) -> dict:
    """Navigate to a URL and report load time in ms."""
    page = _require_page(page)
    url = _require_str(params, "url", "Missing or invalid url parameter")
    timeout = _timeout(params)

    start = time.monotonic()
    await page.goto(url, wait_until=normalize_wait_until(params.get("waitUntil")), timeout=timeout)
    return {
        "success": True,
        "url": page.url,
        "title": await _safe_title(page),
        "loadTime": int((time.monotonic() - start) * 1000),
    }


async def action_back(page, params: dict, session) -> dict:
    page = _require_page(page)
    await page.go_back(wait_until=Config.DEFAULT_WAIT_UNTIL, timeout=Config.DEFAULT_TIMEOUT)
    return {"success": True, "url": page.url}


async def action_forward(page, params: dict, session) -> dict:
    page = _require_page(page)
    await page.go_forward(wait_until=Config.DEFAULT_WAIT_UNTIL, timeout=Config.DEFAULT_TIMEOUT)
    return {"success": True, "url": page.url}


async def action_reload(page, params: dict, session) -> dict:
    page = _require_page(page)
    await page.reload(wait_until=Config.DEFAULT_WAIT_UNTIL, timeout=Config.DEFAULT_TIMEOUT)
    return {"success": True, "url": page.url}


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

async def action_snapshot(page, params: dict, session) -> dict:
    """Visible text of the page."""
    page = _require_page(page)
    content = await page.evaluate("() => document.body ? document.body.innerText : ''")
    content = content or ""
    return {
        "success": True,
        "content": content,
        "url": page.url,
        "title": await _safe_title(page),
        "length": len(content),
    }


async def action_html(page, params: dict, session) -> dict:
    page = _require_page(page)
    return {
        "success": True,
        "html": await page.content(),
        "url": page.url,
    }


ELEMENTS_JS = """
(limit) => {
    const selectors = 'a, button, input, select, textarea, [role="button"], [onclick]';
    return [...document.querySelectorAll(selectors)]
        .filter(el => el.offsetParent !== null)
        .slice(0, limit)
        .map(el => ({
            tag: el.tagName.toLowerCase(),
            type: el.type || null,
            text: (el.textContent || el.value || el.placeholder || '').slice(0, 60).trim(),
            id: el.id || null,
            name: el.name || null,
            href: el.href || null,
            selector: el.id ? `#${el.id}` :
                      el.name ? `[name="${el.name}"]` :
                      (typeof el.className === 'string' && el.className)
                          ? `${el.tagName.toLowerCase()}.${el.className.split(' ')[0]}` : null
        }));
}
"""


async def action_elements(page, params: dict, session) -> dict:
    """Summary of visible interactive elements."""
    page = _require_page(page)
    limit = int(_number(params, "limit", Config.DEFAULT_ELEMENTS_LIMIT))
    elements = await page.evaluate(ELEMENTS_JS, limit)
    return {"success": True, "count": len(elements), "elements": elements}


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

CLICK_BY_TEXT_JS = """
(text) => {
    const selectors = 'a, button, [role="button"], input[type="submit"], input[type="button"]';
    const needle = text.toLowerCase();
    const el = [...document.querySelectorAll(selectors)]
        .find(e => e.textContent?.toLowerCase().includes(needle) ||
                   e.value?.toLowerCase().includes(needle));
    if (el) { el.click(); return true; }
    return false;
}
"""


async def action_click(page, params: dict, session) -> dict:
    """Click by visible text (first match) or by CSS selector."""
    page = _require_page(page)
    text = params.get("text")
    selector = params.get("selector")

    if text:
        if not isinstance(text, str):
            raise ActionValidationError("Invalid text parameter")
        clicked = await page.evaluate(CLICK_BY_TEXT_JS, text)
        if not clicked:
            return {"success": False, "error": f"No clickable element with text: {text}"}
    elif selector:
        if not isinstance(selector, str):
            raise ActionValidationError("Invalid selector parameter")
        await page.click(selector, timeout=Config.DEFAULT_TIMEOUT)
    else:
        raise ActionValidationError("Need text or selector")

    return {"success": True}


async def action_type(page, params: dict, session) -> dict:
    """Type into a field, optionally clearing it first and pressing Enter."""
    page = _require_page(page)
    selector = _require_str(params, "selector", "Need selector")
    text = params.get("text") or ""
    if not isinstance(text, str):
        raise ActionValidationError("Invalid text parameter")
    delay = _number(params, "delay", Config.DEFAULT_DELAY)

    locator = page.locator(selector)
    if params.get("clear"):
        await locator.click(click_count=3, timeout=Config.DEFAULT_TIMEOUT)
        await page.keyboard.press("Backspace")

    await locator.press_sequentially(text, delay=delay, timeout=Config.DEFAULT_TIMEOUT)

    if params.get("submit"):
        await page.keyboard.press("Enter")

    return {"success": True}


async def action_scroll(page, params: dict, session) -> dict:
    """Scroll an element into view, or the window up/down/top/bottom. No-op without either."""
    page = _require_page(page)
    selector = params.get("selector")

    if selector:
        if not isinstance(selector, str):
            raise ActionValidationError("Invalid selector parameter")
        await page.evaluate(
            "(sel) => document.querySelector(sel)?.scrollIntoView({behavior: 'smooth', block: 'center'})",
            selector,
        )
        return {"success": True}

    direction = params.get("direction")
    if direction is None:
        return {"success": True}
    if direction not in SCROLL_DIRECTIONS:
        raise ActionValidationError(
            f"Invalid direction: {direction}. Use one of: {', '.join(SCROLL_DIRECTIONS)}"
        )
    if direction == "up":
        await page.evaluate("(dy) => window.scrollBy(0, -dy)", Config.SCROLL_STEP)
    elif direction == "down":
        await page.evaluate("(dy) => window.scrollBy(0, dy)", Config.SCROLL_STEP)
    elif direction == "top":
        await page.evaluate("() => window.scrollTo(0, 0)")
    else:
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

    return {"success": True}


async def action_wait(page, params: dict, session) -> dict:
    """Wait for a selector, for text in the body, or for a number of ms."""
    page = _require_page(page)
    timeout = _timeout(params)

    if params.get("selector"):
        selector = _require_str(params, "selector", "Invalid selector parameter")
        await page.wait_for_selector(selector, timeout=timeout)
    elif params.get("text"):
        text = _require_str(params, "text", "Invalid text parameter")
        await page.wait_for_function(
            "(text) => document.body && document.body.innerText.includes(text)",
            arg=text,
            timeout=timeout,
        )
    elif params.get("ms") is not None:
        ms = _number(params, "ms", 0)
        await asyncio.sleep(ms / 1000)

    return {"success": True}


# ---------------------------------------------------------------------------
# Capture and scripts
# ---------------------------------------------------------------------------

async def action_screenshot(page, params: dict, session) -> dict:
    """Save a screenshot to disk. Full page unless fullPage is false."""
    page = _require_page(page)
    path = params.get("path") or Config.DEFAULT_SCREENSHOT_PATH
    if not isinstance(path, str):
        raise ActionValidationError("Invalid path parameter")

    image_type = "jpeg" if path.lower().endswith((".jpg", ".jpeg")) else "png"
    await page.screenshot(
        path=path,
        full_page=params.get("fullPage") is not False,
        type=image_type,
        timeout=Config.DEFAULT_TIMEOUT,
    )
    return {"success": True, "path": path}


async def action_evaluate(page, params: dict, session) -> dict:
    """Hand a script to the page as-is and return its result."""
    page = _require_page(page)
    script = _require_str(params, "script", "Missing or invalid script parameter")
    result = await page.evaluate(script)
    return {"success": True, "result": result}


async def action_console(page, params: dict, session) -> dict:
    """Buffered console messages of the current page, optionally by level."""
    level = params.get("level")
    messages = session.console.filter(level if isinstance(level, str) and level else None)
    return {"success": True, "count": len(messages), "messages": messages}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

async def action_status(page, params: dict, session) -> dict:
    conn = session.connection
    result = {
        "success": True,
        "connected": session.connected,
        "wsConnected": conn is not None and conn.ws_open,
        "sessionId": session.session.session_id,
        "browserConnected": conn is not None and conn.browser_connected,
        "url": page.url if page is not None else None,
        "title": await _safe_title(page) if page is not None else None,
    }
    if session.last_error and not session.connected:
        result["connectError"] = session.last_error
    return result


async def action_session_info(page, params: dict, session) -> dict:
    conn = session.connection
    connected_at = session.session.connected_at
    result = {
        "success": True,
        **session.describe(),
        "browserConnected": conn is not None and conn.browser_connected,
        "connectedAt": connected_at.isoformat() if connected_at else None,
        "state": session.state.value,
        **session.credentials_info(),
    }
    if session.last_error and not session.connected:
        result["connectError"] = session.last_error
    return result


async def action_new_page(page, params: dict, session) -> dict:
    """Open a new tab and make it the current page."""
    new_page = await session.new_page()
    return {
        "success": True,
        "message": "New page/tab created",
        "url": new_page.url if new_page is not None else None,
    }


async def action_close(page, params: dict, session) -> dict:
    """Disconnect from the remote browser; it keeps running remotely."""
    await session.disconnect()
    return {"success": True, "message": "Browser disconnected"}


# ---------------------------------------------------------------------------
# Action registry
# ---------------------------------------------------------------------------

ACTION_HANDLERS: dict[Action, ActionHandler] = {
    Action.NAVIGATE: action_navigate,
    Action.BACK: action_back,
    Action.FORWARD: action_forward,
    Action.RELOAD: action_reload,
    Action.SNAPSHOT: action_snapshot,
    Action.HTML: action_html,
    Action.ELEMENTS: action_elements,
    Action.CLICK: action_click,
    Action.TYPE: action_type,
    Action.SCROLL: action_scroll,
    Action.WAIT: action_wait,
    Action.SCREENSHOT: action_screenshot,
    Action.EVALUATE: action_evaluate,
    Action.CONSOLE: action_console,
    Action.STATUS: action_status,
    Action.SESSION_INFO: action_session_info,
    Action.NEW_PAGE: action_new_page,
    Action.CLOSE: action_close,
}


def _failure(error: Exception) -> dict:
    if isinstance(error, BridgeError):
        return {"success": False, "error": str(error), "code": error.code}
    return {"success": False, "error": to_ai_friendly_error(error)}


class Dispatcher:
    """Connect, route, and normalize. Never raises.

    Dispatches run one at a time so a navigation and a read never
    interleave on the shared page.
    """

    def __init__(self, supervisor) -> None:
        self.supervisor = supervisor
        self._lock = asyncio.Lock()

    async def dispatch(self, action: str, params: dict | None = None) -> dict:
        async with self._lock:
            return await self._dispatch(action, params or {})

    async def _dispatch(self, action: str, params: dict) -> dict:
        connect_error: Exception | None = None
        try:
            await self.supervisor.ensure_connected()
        except Exception as e:
            log.warning("Connect before '%s' failed: %s", action, e)
            connect_error = e

        name = Action.parse(action)
        if connect_error is not None and name not in INTROSPECTION_ACTIONS:
            return _failure(connect_error)
        if name is None:
            return _failure(UnknownActionError(action))

        handler = ACTION_HANDLERS[name]
        try:
            return await handler(self.supervisor.page, params, self.supervisor)
        except Exception as e:
            log.warning("Action '%s' failed: %s", action, e)
            return _failure(e)
