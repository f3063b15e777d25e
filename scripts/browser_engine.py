"""
One live connection to the remote automation endpoint.

A connection is two layers over the same authenticated endpoint:
  1. a raw WebSocket (aiohttp) that completes the session handshake and
     keeps draining service frames (ping/pong, errors);
  2. a Playwright CDP attach (connect_over_cdp) that drives pages.

If the CDP attach fails the connection stays up in raw mode: status works,
page operations report that no page is active.

Loss of either layer fires the registered observer exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

import aiohttp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from config import Config, mask_secret, redact_url
from errors import BrowserConnectionError
from models import EndpointConfig

log = logging.getLogger(__name__)

LostCallback = Callable[["CdpConnection", str], None]

_QUIET_MESSAGE_TYPES = frozenset({"ping", "pong"})


def _log_frame(data: str) -> dict | None:
    """Log one service frame; return it parsed when it is a JSON object."""
    try:
        message = json.loads(data)
    except ValueError:
        log.info("Received (non-JSON): %s", data[:200])
        return None
    if not isinstance(message, dict):
        log.info("Received (non-object): %s", data[:200])
        return None

    message_type = message.get("messageType")
    if message_type == "error":
        log.warning("Service error: %s %s", message.get("error"), message.get("details") or "")
    elif message_type not in _QUIET_MESSAGE_TYPES and message_type != "session-connected":
        log.info("Received: %s", message_type or "message")
    return message


async def _await_session_connected(ws: aiohttp.ClientWebSocketResponse, timeout: float) -> str:
    """Read frames until the service confirms the session. Returns its id."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise BrowserConnectionError(
                "Session connection timeout - no session-connected message received"
            )
        try:
            msg = await asyncio.wait_for(ws.receive(), timeout=remaining)
        except asyncio.TimeoutError:
            continue

        if msg.type == aiohttp.WSMsgType.TEXT:
            message = _log_frame(msg.data)
            if message and message.get("messageType") == "session-connected":
                session_id = message.get("sessionId")
                log.info("Session connected: %s", session_id)
                if message.get("addonSessionId"):
                    log.info("Addon session: %s", mask_secret(message["addonSessionId"]))
                return session_id
        elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                          aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
            raise BrowserConnectionError(
                f"WebSocket closed before session was connected (code {ws.close_code})"
            )


class CdpConnection:
    """A connected session: service WebSocket plus optional CDP browser."""

    def __init__(
        self,
        endpoint: EndpointConfig,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        session_id: str | None,
    ) -> None:
        self.endpoint = endpoint
        self.session_id = session_id
        self._http = http
        self._ws = ws
        self._pw: Any = None
        self.browser: Any = None
        self._on_lost: LostCallback | None = None
        self._lost = False
        self._closing = False
        self._reader: asyncio.Task | None = None

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def ws_open(self) -> bool:
        return not self._ws.closed

    @property
    def browser_connected(self) -> bool:
        return self.browser is not None and self.browser.is_connected()

    @property
    def is_alive(self) -> bool:
        return not self._lost and not self._closing and self.ws_open

    # -----------------------------------------------------------------------
    # Loss observer
    # -----------------------------------------------------------------------

    def on_lost(self, callback: LostCallback) -> None:
        """Register the loss observer. One observer per connection."""
        if self._on_lost is not None:
            raise RuntimeError("Loss observer already registered for this connection")
        self._on_lost = callback

    def _notify_lost(self, reason: str) -> None:
        if self._lost or self._closing:
            return
        self._lost = True
        if self._on_lost is not None:
            self._on_lost(self, reason)

    def _on_browser_disconnected(self, _browser: Any) -> None:
        self._notify_lost("CDP browser disconnected")

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start_reader(self) -> None:
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                _log_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.warning("WebSocket error: %s", self._ws.exception())
                break
        if not self._closing:
            log.warning(
                "WebSocket connection closed: code=%s session=%s",
                self._ws.close_code, self.session_id or "(none)",
            )
        self._notify_lost(f"WebSocket closed (code {self._ws.close_code})")

    async def attach_cdp(self) -> bool:
        """Attach Playwright over CDP. False leaves the connection in raw mode."""
        url = self.endpoint.connect_url()
        self._pw = await async_playwright().start()
        try:
            self.browser = await self._pw.chromium.connect_over_cdp(
                url, timeout=Config.PROTOCOL_TIMEOUT,
            )
        except PlaywrightError as e:
            log.warning("CDP attach to %s failed: %s -> using raw WebSocket mode", redact_url(url), e)
            await self._pw.stop()
            self._pw = None
            return False
        self.browser.on("disconnected", self._on_browser_disconnected)
        return True

    async def new_page(self) -> Any:
        """Open a tab with the default viewport. None when no browser is attached."""
        if self.browser is None:
            return None
        contexts = self.browser.contexts
        context = contexts[0] if contexts else await self.browser.new_context()
        page = await context.new_page()
        await page.set_viewport_size(Config.DEFAULT_VIEWPORT)
        return page

    async def close(self) -> None:
        """Detach from the remote browser and close the socket. Idempotent."""
        if self._closing:
            return
        self._closing = True

        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
        if self.browser is not None:
            self.browser.remove_listener("disconnected", self._on_browser_disconnected)
            try:
                # Over CDP this disconnects; the remote browser keeps running
                await self.browser.close()
            except PlaywrightError as e:
                log.debug("Browser detach failed: %s", e)
            self.browser = None
        if self._pw is not None:
            try:
                await self._pw.stop()
            except PlaywrightError as e:
                log.debug("Playwright stop failed: %s", e)
            self._pw = None
        await self._ws.close()
        await self._http.close()


async def open_connection(endpoint: EndpointConfig) -> CdpConnection:
    """Connect, authenticate and attach. Raises BrowserConnectionError."""
    url = endpoint.connect_url()
    log.info("Connecting via WebSocket: %s", redact_url(url))

    http = aiohttp.ClientSession()
    try:
        ws = await asyncio.wait_for(http.ws_connect(url), timeout=Config.HANDSHAKE_TIMEOUT)
        session_id = await _await_session_connected(ws, Config.HANDSHAKE_TIMEOUT)
    except asyncio.TimeoutError as e:
        await http.close()
        raise BrowserConnectionError("WebSocket connection timeout") from e
    except aiohttp.ClientError as e:
        await http.close()
        raise BrowserConnectionError(f"WebSocket connection failed: {e}") from e
    except BaseException:
        await http.close()
        raise

    conn = CdpConnection(endpoint, http, ws, session_id)
    conn.start_reader()
    try:
        await conn.attach_cdp()
    except BaseException:
        await conn.close()
        raise
    return conn
