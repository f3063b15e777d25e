"""Tests for the connection supervisor: connect, loss, backoff, shutdown."""

from __future__ import annotations

import asyncio

import pytest

from conftest import (
    DROP_ON_PAGE,
    FakeConnector,
    RecordingSleep,
    blocked_sleep,
    console_handler,
    refused,
    settle,
)
from errors import BrowserConnectionError, NoActivePageError
from models import ConnectionState
from supervisor import Backoff, ConnectionSupervisor


def test_backoff_doubles_to_ceiling_and_resets():
    backoff = Backoff(floor=5.0, ceiling=60.0)
    assert backoff.delay == 5.0
    assert [backoff.failed() for _ in range(6)] == [10.0, 20.0, 40.0, 60.0, 60.0, 60.0]
    backoff.reset()
    assert backoff.delay == 5.0


async def test_ensure_connected_populates_session(supervisor, connector):
    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.session.session_id is None

    await supervisor.ensure_connected()

    assert supervisor.state == ConnectionState.CONNECTED
    assert supervisor.connected
    assert supervisor.session.session_id == "sess-1"
    assert supervisor.session.connected_at is not None
    assert supervisor.page is connector.connections[0].pages[0]
    assert supervisor.last_error is None


async def test_ensure_connected_is_noop_when_live(supervisor, connector):
    await supervisor.ensure_connected()
    page = supervisor.page
    await supervisor.ensure_connected()

    assert connector.calls == 1
    assert supervisor.page is page


async def test_observer_registered_once_per_connection(supervisor, connector):
    await supervisor.ensure_connected()
    assert len(connector.connections[0].observers) == 1


async def test_initial_failure_raises_without_backoff(endpoint):
    connector = FakeConnector([refused()])
    sup = ConnectionSupervisor(endpoint, connector=connector, backoff=Backoff(1.0, 8.0), sleep=blocked_sleep)

    with pytest.raises(BrowserConnectionError, match="Connection refused"):
        await sup.ensure_connected()

    assert sup.state == ConnectionState.DISCONNECTED
    assert not sup.reconnect_pending
    assert sup.backoff.delay == 1.0
    assert sup.last_error == "Connection refused"


async def test_unexpected_connector_error_is_wrapped(endpoint):
    connector = FakeConnector([RuntimeError("boom")])
    sup = ConnectionSupervisor(endpoint, connector=connector, sleep=blocked_sleep)

    with pytest.raises(BrowserConnectionError, match="Failed to connect: boom"):
        await sup.ensure_connected()


async def test_loss_clears_page_and_schedules_reconnect(supervisor, connector):
    await supervisor.ensure_connected()
    conn = connector.connections[0]
    old_page = supervisor.page

    conn.lose()

    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.page is None
    assert supervisor.session.session_id is None
    assert not supervisor.connected
    assert supervisor.reconnect_pending
    old_page.remove_listener.assert_any_call("console", supervisor._on_console)
    assert await settle(lambda: conn.closed)


async def test_only_one_reconnect_pending(supervisor, connector):
    await supervisor.ensure_connected()
    connector.connections[0].lose()

    assert supervisor.reconnect_pending
    assert supervisor.schedule_reconnect() is False
    assert supervisor.schedule_reconnect() is False


async def test_stale_connection_loss_is_ignored(supervisor, connector):
    await supervisor.ensure_connected()
    first = connector.connections[0]
    await supervisor.disconnect()
    await supervisor.ensure_connected()

    first.lose()

    assert supervisor.connected
    assert not supervisor.reconnect_pending


async def test_reconnect_backoff_sequence(endpoint):
    sleep = RecordingSleep()
    connector = FakeConnector()
    sup = ConnectionSupervisor(endpoint, connector=connector, backoff=Backoff(1.0, 8.0), sleep=sleep)
    await sup.ensure_connected()

    connector.outcomes = [refused(), refused(), refused(), refused()]
    connector.connections[0].lose()

    assert await settle(lambda: sup.connected)
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert connector.calls == 6
    assert sup.backoff.delay == 1.0
    assert sup.session.session_id == "sess-6"
    assert await settle(lambda: not sup.reconnect_pending)


async def test_backoff_restarts_at_floor_after_success(endpoint):
    sleep = RecordingSleep()
    connector = FakeConnector()
    sup = ConnectionSupervisor(endpoint, connector=connector, backoff=Backoff(1.0, 8.0), sleep=sleep)
    await sup.ensure_connected()

    connector.outcomes = [refused(), refused()]
    connector.connections[-1].lose()
    assert await settle(lambda: sup.connected)
    assert await settle(lambda: not sup.reconnect_pending)

    connector.connections[-1].lose()
    assert await settle(lambda: sup.connected)
    assert sleep.delays == [1.0, 2.0, 4.0, 1.0]


async def test_ensure_connected_preempts_pending_reconnect(supervisor, connector):
    await supervisor.ensure_connected()
    connector.connections[0].lose()
    assert supervisor.reconnect_pending

    await supervisor.ensure_connected()

    assert supervisor.connected
    assert not supervisor.reconnect_pending
    assert connector.calls == 2


async def test_console_survives_reconnect(endpoint):
    connector = FakeConnector()
    sup = ConnectionSupervisor(endpoint, connector=connector, sleep=blocked_sleep)
    await sup.ensure_connected()
    handler = console_handler(sup.page)
    handler(type("Msg", (), {"type": "log", "text": "hello"})())

    connector.connections[0].lose()
    await sup.ensure_connected()

    assert [m["text"] for m in sup.console.filter()] == ["hello"]


async def test_new_page_resets_console_and_swaps_listeners(supervisor, connector):
    await supervisor.ensure_connected()
    first = supervisor.page
    console_handler(first)(type("Msg", (), {"type": "error", "text": "old"})())
    assert len(supervisor.console) == 1

    second = await supervisor.new_page()

    assert supervisor.page is second
    assert second is not first
    assert len(supervisor.console) == 0
    first.remove_listener.assert_any_call("console", supervisor._on_console)
    second.on.assert_any_call("console", supervisor._on_console)


async def test_new_page_requires_browser(endpoint):
    sup = ConnectionSupervisor(endpoint, connector=FakeConnector(with_browser=False), sleep=blocked_sleep)
    await sup.ensure_connected()

    assert sup.connected
    assert sup.page is None
    with pytest.raises(NoActivePageError, match="No browser connected"):
        await sup.new_page()


async def test_disconnect_does_not_schedule_reconnect(supervisor, connector):
    await supervisor.ensure_connected()

    await supervisor.disconnect()

    assert connector.connections[0].closed
    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.page is None
    assert not supervisor.reconnect_pending

    await supervisor.ensure_connected()
    assert connector.calls == 2


async def test_shutdown_is_idempotent_and_final(supervisor, connector):
    await supervisor.ensure_connected()
    connector.connections[0].lose()
    assert supervisor.reconnect_pending

    await supervisor.shutdown()
    await supervisor.shutdown()

    assert not supervisor.reconnect_pending
    assert supervisor.schedule_reconnect() is False
    with pytest.raises(BrowserConnectionError, match="shut down"):
        await supervisor.ensure_connected()


async def test_shutdown_closes_live_connection(supervisor, connector):
    await supervisor.ensure_connected()
    await supervisor.shutdown()

    assert connector.connections[0].closed
    assert supervisor.connection is None
    assert supervisor.describe()["connected"] is False


async def test_describe_reads_state_only(supervisor, connector):
    status = supervisor.describe()

    assert connector.calls == 0
    assert status == {
        "connected": False,
        "wsConnected": False,
        "sessionId": None,
        "url": None,
        "server": "http://192.168.50.78:4200/",
        "wsEndpoint": "wss://ws.example.test/prod",
    }


async def test_credentials_info_masks_session_id(supervisor):
    info = supervisor.credentials_info()
    assert info == {
        "hasApiKey": False,
        "hasAddonSessionId": True,
        "addonSessionId": "***456789",
    }


async def test_reconnect_stops_after_shutdown(endpoint):
    gate = asyncio.Event()

    async def gated_sleep(delay):
        await gate.wait()

    connector = FakeConnector()
    sup = ConnectionSupervisor(endpoint, connector=connector, sleep=gated_sleep)
    await sup.ensure_connected()
    connector.connections[0].lose()
    await asyncio.sleep(0)

    await sup.shutdown()
    gate.set()
    await asyncio.sleep(0)

    assert connector.calls == 1
    assert sup.state == ConnectionState.DISCONNECTED


async def test_drop_while_reconnect_opens_page_keeps_retrying(endpoint):
    sleep = RecordingSleep()
    connector = FakeConnector()
    sup = ConnectionSupervisor(endpoint, connector=connector, backoff=Backoff(1.0, 8.0), sleep=sleep)
    await sup.ensure_connected()

    connector.outcomes = [DROP_ON_PAGE]
    connector.connections[0].lose()

    assert await settle(lambda: sup.connected)
    assert connector.calls == 3
    assert sleep.delays == [1.0, 2.0]
    assert sup.connection is connector.connections[-1]
    assert sup.page is connector.connections[-1].pages[0]


async def test_drop_while_first_page_opens(endpoint):
    connector = FakeConnector([DROP_ON_PAGE])
    sup = ConnectionSupervisor(endpoint, connector=connector, sleep=blocked_sleep)

    with pytest.raises(BrowserConnectionError, match="lost while opening a page"):
        await sup.ensure_connected()

    assert sup.state == ConnectionState.DISCONNECTED
    assert sup.page is None
    assert sup.connection is None
    assert sup.describe()["url"] is None
    assert sup.reconnect_pending


async def test_failed_close_of_lost_connection_is_logged(supervisor, connector, caplog):
    await supervisor.ensure_connected()
    conn = connector.connections[0]
    conn.close_error = RuntimeError("socket already gone")

    conn.lose()

    assert await settle(lambda: conn.closed)
    assert await settle(lambda: "socket already gone" in caplog.text)


async def test_shutdown_waits_for_lost_connection_close(supervisor, connector):
    await supervisor.ensure_connected()
    conn = connector.connections[0]
    conn.lose()

    await supervisor.shutdown()

    assert conn.closed
