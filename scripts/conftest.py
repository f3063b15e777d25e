"""Shared fakes for the bridge tests.

FakeConnection stands in for browser_engine.CdpConnection and FakeConnector
for open_connection, so the supervisor, dispatcher and front door run
without a network or a browser.
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import BrowserConnectionError
from models import AuthKind, EndpointConfig
from supervisor import Backoff, ConnectionSupervisor

# Live smoke script against a running bridge, not a pytest module
collect_ignore = ["test_e2e.py"]


def make_page(url: str = "about:blank") -> MagicMock:
    page = MagicMock()
    page.url = url

    async def _goto(target, **kwargs):
        page.url = target.rstrip("/") + "/" if target.count("/") == 2 else target

    page.goto = AsyncMock(side_effect=_goto)
    page.title = AsyncMock(return_value="Example Domain")
    page.evaluate = AsyncMock(return_value=None)
    page.content = AsyncMock(return_value="<html><body>hi</body></html>")
    page.go_back = AsyncMock()
    page.go_forward = AsyncMock()
    page.reload = AsyncMock()
    page.click = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.screenshot = AsyncMock()
    page.keyboard.press = AsyncMock()
    locator = MagicMock()
    locator.click = AsyncMock()
    locator.press_sequentially = AsyncMock()
    page.locator.return_value = locator
    return page


def console_handler(page: MagicMock):
    """The console listener the supervisor registered on ``page``."""
    for call in page.on.call_args_list:
        if call.args[0] == "console":
            return call.args[1]
    raise AssertionError("no console listener registered")


# Connector outcome: connect, then drop while the first page is opening
DROP_ON_PAGE = "drop-on-page"


class FakeConnection:
    def __init__(self, session_id: str | None = "sess-1", with_browser: bool = True,
                 drop_on_page: bool = False, close_error: Exception | None = None):
        self.session_id = session_id
        self.browser = MagicMock() if with_browser else None
        self.pages: list[MagicMock] = []
        self.closed = False
        self.lost = False
        self.drop_on_page = drop_on_page
        self.close_error = close_error
        self.observers: list[Any] = []

    @property
    def is_alive(self) -> bool:
        return not self.closed and not self.lost

    @property
    def ws_open(self) -> bool:
        return self.is_alive

    @property
    def browser_connected(self) -> bool:
        return self.browser is not None and self.is_alive

    def on_lost(self, callback) -> None:
        self.observers.append(callback)

    def lose(self, reason: str = "WebSocket closed (code 1006)") -> None:
        self.lost = True
        for callback in self.observers:
            callback(self, reason)

    async def new_page(self):
        if self.browser is None:
            return None
        page = make_page()
        self.pages.append(page)
        if self.drop_on_page:
            self.lose()
        return page

    async def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeConnector:
    """Connector whose outcomes are scripted: an Exception fails that attempt."""

    def __init__(self, outcomes: list[Any] | None = None, with_browser: bool = True):
        self.outcomes = list(outcomes or [])
        self.with_browser = with_browser
        self.calls = 0
        self.connections: list[FakeConnection] = []

    async def __call__(self, endpoint: EndpointConfig) -> FakeConnection:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        conn = FakeConnection(
            session_id=f"sess-{self.calls}",
            with_browser=self.with_browser,
            drop_on_page=outcome == DROP_ON_PAGE,
        )
        self.connections.append(conn)
        return conn


class RecordingSleep:
    """Sleep replacement that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def blocked_sleep(delay: float) -> None:
    await asyncio.Event().wait()


async def settle(predicate, rounds: int = 200) -> bool:
    """Yield to the loop until ``predicate()`` holds."""
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def refused(message: str = "Connection refused") -> BrowserConnectionError:
    return BrowserConnectionError(message)


@pytest.fixture
def endpoint() -> EndpointConfig:
    return EndpointConfig(
        endpoint_url="wss://ws.example.test/prod",
        auth_kind=AuthKind.SESSION_ID,
        auth_value="addon-0123456789",
        auth_source="explicit session id",
        server_url="http://192.168.50.78:4200/",
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def supervisor(endpoint, connector) -> ConnectionSupervisor:
    return ConnectionSupervisor(
        endpoint,
        connector=connector,
        backoff=Backoff(floor=1.0, ceiling=8.0),
        sleep=blocked_sleep,
    )
