#!/usr/bin/env python3
"""
Local HTTP front door for the CDP bridge.

Resolves the remote endpoint, keeps one supervised connection to the remote
browser and exposes it on loopback:

    GET  /   connection status (never triggers a reconnect)
    POST /   {"action": "<name>", ...params} -> action result

Usage:
    BRIDGE_SERVER=http://192.168.50.78:4200/ python3 scripts/server.py [--port 9222]
"""

from __future__ import annotations

import argparse
import asyncio
import errno
import functools
import json
import logging
import os
import signal
import sys
from http import HTTPStatus

# Ensure scripts/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from aiohttp import web

import remote_config
from actions import Dispatcher
from config import Config
from discovery import discover
from errors import BrowserConnectionError, ConfigFetchError, ConfigFormatError, NoActiveSessionError
from models import ActionRequest, AuthKind, EndpointConfig
from supervisor import ConnectionSupervisor

log = logging.getLogger("server")

SUPERVISOR = web.AppKey("supervisor", ConnectionSupervisor)
DISPATCHER = web.AppKey("dispatcher", Dispatcher)

_dumps = functools.partial(json.dumps, default=str)


def _error(message: str, status: HTTPStatus) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_status(request: web.Request) -> web.Response:
    """Status from supervisor state only."""
    supervisor = request.app[SUPERVISOR]
    return web.json_response({"status": "ok", **supervisor.describe()}, dumps=_dumps)


async def handle_http(request: web.Request) -> web.Response:
    """Validate the body, then hand the action to the dispatcher."""
    if request.content_length is not None and request.content_length > Config.MAX_BODY_BYTES:
        return _error("Request body too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    try:
        raw = await request.read()
    except web.HTTPRequestEntityTooLarge:
        return _error("Request body too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

    try:
        body = json.loads(raw or b"{}")
    except ValueError as e:
        return _error(f"Invalid JSON: {e}", HTTPStatus.BAD_REQUEST)
    if not isinstance(body, dict):
        return _error("Request body must be a JSON object", HTTPStatus.BAD_REQUEST)
    if not body.get("action"):
        return _error("Missing action", HTTPStatus.BAD_REQUEST)
    if not isinstance(body["action"], str):
        return _error("Invalid action: expected a string", HTTPStatus.BAD_REQUEST)

    action_request = ActionRequest.from_body(body)
    try:
        result = await request.app[DISPATCHER].dispatch(action_request.action, action_request.params)
    except Exception as e:
        log.exception("Action '%s' crashed", action_request.action)
        return _error(f"Unhandled error: {e}", HTTPStatus.INTERNAL_SERVER_ERROR)

    return web.json_response(result, dumps=_dumps)


async def handle_method_not_allowed(request: web.Request) -> web.Response:
    return _error("Method not allowed", HTTPStatus.METHOD_NOT_ALLOWED)


async def cleanup(app: web.Application) -> None:
    """Stop reconnecting and drop the remote connection on shutdown."""
    await app[SUPERVISOR].shutdown()


def create_app(supervisor: ConnectionSupervisor, dispatcher: Dispatcher | None = None) -> web.Application:
    app = web.Application(client_max_size=Config.MAX_BODY_BYTES)
    app[SUPERVISOR] = supervisor
    app[DISPATCHER] = dispatcher or Dispatcher(supervisor)
    app.router.add_get("/", handle_status)
    app.router.add_post("/", handle_http)
    app.router.add_route("*", "/", handle_method_not_allowed)
    app.on_cleanup.append(cleanup)
    return app


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

async def load_endpoint(
    server_url: str,
    session_id: str | None = None,
    api_key: str | None = None,
) -> EndpointConfig:
    """Resolve the endpoint; discover a session when no credential is given."""
    endpoint = await remote_config.resolve(server_url, session_id=session_id, api_key=api_key)
    if endpoint.auth_kind == AuthKind.NONE and endpoint.discovery is not None:
        found = await discover(endpoint.discovery.url, endpoint.discovery.api_key)
        endpoint = endpoint.with_auth(AuthKind.SESSION_ID, found, "session discovery")
        remote_config.log_auth(endpoint)
    return endpoint


async def start_site(runner: web.AppRunner, host: str, port: int) -> int:
    """Bind the first free port starting at ``port``. Returns the bound port."""
    for candidate in range(port, port + Config.PORT_ATTEMPTS):
        site = web.TCPSite(runner, host, candidate)
        try:
            await site.start()
        except OSError as e:
            await site.stop()
            if e.errno != errno.EADDRINUSE:
                raise
            log.warning("Port %d is in use, trying %d...", candidate, candidate + 1)
            continue
        return candidate
    raise OSError(errno.EADDRINUSE, f"No free port in {port}-{port + Config.PORT_ATTEMPTS - 1}")


async def serve(args: argparse.Namespace) -> None:
    endpoint = await load_endpoint(args.server, session_id=args.session_id, api_key=args.api_key)
    supervisor = ConnectionSupervisor(endpoint)

    runner = web.AppRunner(create_app(supervisor))
    await runner.setup()
    try:
        port = await start_site(runner, args.host, args.port)
        log.info("Browser bridge listening on http://%s:%d", args.host, port)
        if port != args.port:
            log.info("Original port %d was in use, using %d instead", args.port, port)

        try:
            await supervisor.ensure_connected()
        except BrowserConnectionError as e:
            log.warning("Initial connection failed: %s (next request will retry)", e)
        log.info("Ready for browser actions on http://%s:%d", args.host, port)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await stop.wait()
        log.info("Shutting down...")
    finally:
        await runner.cleanup()


def main():
    parser = argparse.ArgumentParser(description="Local HTTP bridge to a remote CDP browser")
    parser.add_argument("--port", type=int, default=Config.HTTP_PORT,
                        help=f"Port (default: {Config.HTTP_PORT})")
    parser.add_argument("--host", default=Config.DEFAULT_HOST,
                        help=f"Host (default: {Config.DEFAULT_HOST})")
    parser.add_argument("--server", default=Config.SERVER,
                        help="Remote server base URL (default: $BRIDGE_SERVER)")
    parser.add_argument("--api-key", default=Config.API_KEY or None)
    parser.add_argument("--session-id", default=Config.SESSION_ID or None,
                        help="Addon session id; preferred over --api-key")
    parser.add_argument("--log-level", default=Config.LOG_LEVEL)
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(serve(args))
    except (ConfigFetchError, ConfigFormatError, NoActiveSessionError) as e:
        log.error("Failed to load configuration: %s", e)
        log.error("Make sure BRIDGE_SERVER is set and %s is reachable",
                  remote_config.config_url(args.server or "<server>"))
        sys.exit(1)


if __name__ == "__main__":
    main()
