"""Connection supervisor: owns the single connection and the current page.

States:
  DISCONNECTED → CONNECTING → CONNECTED → (loss) DISCONNECTED → ...

- ensure_connected(): connects on demand; failures surface to the caller
  and never consume backoff.
- A loss observed on a live connection clears the page and schedules a
  supervised reconnect: floor, 2×floor, 4×floor ... capped at the ceiling,
  back to the floor after any success. At most one reconnect is pending.
- shutdown() cancels the pending reconnect and tears the connection down.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from browser_engine import CdpConnection, open_connection
from config import Config, mask_secret, redact_url
from errors import BrowserConnectionError, NoActivePageError
from models import AuthKind, ConnectionState, ConsoleLog, EndpointConfig, SessionDescriptor

log = logging.getLogger(__name__)

Connector = Callable[[EndpointConfig], Awaitable[CdpConnection]]
Sleeper = Callable[[float], Awaitable[Any]]


class Backoff:
    """Exponential reconnect delay between a floor and a ceiling."""

    def __init__(self, floor: float = Config.BACKOFF_FLOOR, ceiling: float = Config.BACKOFF_CEILING):
        self.floor = floor
        self.ceiling = ceiling
        self.delay = floor

    def failed(self) -> float:
        self.delay = min(self.delay * 2, self.ceiling)
        return self.delay

    def reset(self) -> None:
        self.delay = self.floor


class ConnectionSupervisor:
    """Single owner of the connection handle and the current page reference."""

    def __init__(
        self,
        endpoint: EndpointConfig,
        connector: Connector = open_connection,
        backoff: Backoff | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._endpoint = endpoint
        self._connector = connector
        self._backoff = backoff or Backoff()
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._conn: CdpConnection | None = None
        self._page: Any = None
        self._descriptor = SessionDescriptor()
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()
        self._shutdown = False
        self.last_error: str | None = None
        self.console = ConsoleLog()

    # -----------------------------------------------------------------------
    # Read-only state
    # -----------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> EndpointConfig:
        return self._endpoint

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    @property
    def connection(self) -> CdpConnection | None:
        return self._conn

    @property
    def page(self) -> Any:
        return self._page

    @property
    def session(self) -> SessionDescriptor:
        return self._descriptor

    @property
    def connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._conn is not None
            and self._conn.is_alive
        )

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def describe(self) -> dict[str, Any]:
        """Connection status without touching the connection."""
        return {
            "connected": self.connected,
            "wsConnected": self._conn is not None and self._conn.ws_open,
            "sessionId": self._descriptor.session_id,
            "url": self._page.url if self._page is not None else None,
            "server": self._endpoint.server_url,
            "wsEndpoint": self._endpoint.endpoint_url,
        }

    def credentials_info(self) -> dict[str, Any]:
        kind, value = self._endpoint.auth_kind, self._endpoint.auth_value
        return {
            "hasApiKey": kind == AuthKind.API_KEY,
            "hasAddonSessionId": kind == AuthKind.SESSION_ID,
            "addonSessionId": mask_secret(value) if kind == AuthKind.SESSION_ID else None,
        }

    # -----------------------------------------------------------------------
    # Connecting
    # -----------------------------------------------------------------------

    async def ensure_connected(self) -> None:
        """Return at once when live, otherwise connect now.

        Raises BrowserConnectionError; a failure here does not schedule
        a reconnect.
        """
        if self.connected:
            return
        async with self._lock:
            if self.connected:
                return
            if self._shutdown:
                raise BrowserConnectionError("Bridge is shut down")
            self._cancel_reconnect()
            await self._connect()

    async def _connect(self) -> None:
        self._state = ConnectionState.CONNECTING
        if self._conn is not None:
            await self._teardown()

        try:
            conn = await self._connector(self._endpoint)
        except BrowserConnectionError as e:
            self._state = ConnectionState.DISCONNECTED
            self.last_error = str(e)
            raise
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            self.last_error = f"Failed to connect: {e}"
            raise BrowserConnectionError(self.last_error) from e

        self._conn = conn
        conn.on_lost(self._handle_lost)
        self._descriptor = SessionDescriptor(
            session_id=conn.session_id,
            connected_at=datetime.now(timezone.utc),
        )
        self._state = ConnectionState.CONNECTED
        self._backoff.reset()
        self.last_error = None

        try:
            page = await conn.new_page()
        except Exception as e:
            log.warning("Could not open a page: %s -> using raw websocket mode", e)
            page = None

        if conn is not self._conn or not conn.is_alive:
            # Lost while the page was opening; the page belongs to a dead connection
            if conn is self._conn:
                await self._teardown()
                self._state = ConnectionState.DISCONNECTED
            self.last_error = "Connection lost while opening a page"
            raise BrowserConnectionError(self.last_error)
        self._set_page(page)
        log.info(
            "Connected to %s (session %s, %s)",
            redact_url(self._endpoint.connect_url()), conn.session_id,
            "cdp" if page is not None else "raw websocket mode",
        )

    # -----------------------------------------------------------------------
    # Loss and supervised reconnect
    # -----------------------------------------------------------------------

    def _handle_lost(self, conn: CdpConnection, reason: str) -> None:
        if conn is not self._conn:
            return
        log.warning(
            "Connection lost: %s (previous session %s)",
            reason, self._descriptor.session_id or "(none)",
        )
        self._set_page(None)
        self._conn = None
        self._descriptor = SessionDescriptor()
        self._state = ConnectionState.DISCONNECTED
        task = asyncio.get_running_loop().create_task(conn.close())
        self._closing.add(task)
        task.add_done_callback(self._close_done)
        self.schedule_reconnect()

    def _close_done(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("Closing lost connection failed: %s", task.exception())

    def schedule_reconnect(self) -> bool:
        """Start the backoff loop. No-op while one is pending or after shutdown."""
        if self._shutdown or self.reconnect_pending:
            return False
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())
        return True

    async def _reconnect_loop(self) -> None:
        while not self._shutdown:
            delay = self._backoff.delay
            log.info("Reconnecting in %.1fs", delay)
            await self._sleep(delay)
            async with self._lock:
                if self._shutdown or self.connected:
                    return
                try:
                    await self._connect()
                except BrowserConnectionError as e:
                    next_delay = self._backoff.failed()
                    log.warning("Reconnect failed: %s (next attempt in %.1fs)", e, next_delay)
                    continue
            log.info("Reconnected (session %s)", self._descriptor.session_id)
            return

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # -----------------------------------------------------------------------
    # Pages
    # -----------------------------------------------------------------------

    def _on_console(self, msg: Any) -> None:
        self.console.append(msg.type, msg.text)

    def _on_page_error(self, error: Any) -> None:
        log.error("Page error: %s", error)

    def _set_page(self, page: Any) -> None:
        old = self._page
        if old is not None and old is not page:
            old.remove_listener("console", self._on_console)
            old.remove_listener("pageerror", self._on_page_error)
        self._page = page
        if page is not None and page is not old:
            page.on("console", self._on_console)
            page.on("pageerror", self._on_page_error)

    async def new_page(self) -> Any:
        """Open a new tab and make it current; its console starts empty."""
        if self._conn is None or self._conn.browser is None:
            raise NoActivePageError("No browser connected")
        page = await self._conn.new_page()
        self.console.clear()
        self._set_page(page)
        return page

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def _teardown(self) -> None:
        conn = self._conn
        self._set_page(None)
        self._conn = None
        self._descriptor = SessionDescriptor()
        if conn is not None:
            await conn.close()

    async def disconnect(self) -> None:
        """Drop the connection on request; the next ensure_connected reconnects."""
        async with self._lock:
            self._cancel_reconnect()
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
        log.info("Browser disconnected on request")

    async def shutdown(self) -> None:
        """Stop reconnecting and close the connection. Safe to call twice."""
        if self._shutdown:
            return
        self._shutdown = True
        self._cancel_reconnect()
        await self._teardown()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._state = ConnectionState.DISCONNECTED
        log.info("Supervisor shut down")
