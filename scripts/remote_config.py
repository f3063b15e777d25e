"""Remote configuration resolver.

Fetches ``amplify_outputs.json`` from the bridge server and turns it into an
EndpointConfig: the WebSocket endpoint (``custom.WEBSOCKET_API``), an optional
embedded API key (``custom.done24bot.apiKey``) and an optional GraphQL listing
endpoint (``data.url`` / ``data.api_key``) used for session discovery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

import aiohttp
from pydantic import ValidationError

from config import Config, mask_secret
from errors import ConfigFetchError, ConfigFormatError
from models import AuthKind, DiscoverySettings, EndpointConfig

log = logging.getLogger(__name__)


def config_url(server_url: str) -> str:
    return server_url.rstrip("/") + "/" + Config.REMOTE_CONFIG_PATH


async def fetch_remote_config(
    server_url: str,
    session: aiohttp.ClientSession | None = None,
) -> dict[str, Any]:
    """GET the remote config document. Raises ConfigFetchError."""
    url = config_url(server_url)
    log.info("Fetching configuration from %s", url)

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=Config.FETCH_TIMEOUT))
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise ConfigFetchError(f"HTTP {resp.status} from {url}")
            try:
                doc = await resp.json(content_type=None)
            except ValueError as e:
                raise ConfigFetchError(f"Invalid JSON from {url}: {e}") from e
    except aiohttp.ClientError as e:
        raise ConfigFetchError(f"Cannot reach {url}: {e}") from e
    except asyncio.TimeoutError as e:
        raise ConfigFetchError(f"Timed out fetching {url}") from e
    finally:
        if own_session:
            await session.close()

    if not isinstance(doc, dict):
        raise ConfigFormatError(f"Expected a JSON object from {url}")
    return doc


def _dig(doc: dict[str, Any], *path: str) -> Any:
    node: Any = doc
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def build_endpoint(doc: dict[str, Any], server_url: str) -> str:
    """Join endpoint and stage into one canonical WebSocket URL.

    A placeholder host in the endpoint is replaced with the host of
    ``server_url`` so dev configs point at the reachable machine.
    """
    endpoint = _dig(doc, "custom", "WEBSOCKET_API", "endpoint")
    if not endpoint or not isinstance(endpoint, str):
        raise ConfigFormatError(
            f"No custom.WEBSOCKET_API.endpoint found in {Config.REMOTE_CONFIG_PATH}"
        )
    stage = _dig(doc, "custom", "WEBSOCKET_API", "stageName") or Config.DEFAULT_STAGE

    ws_endpoint = endpoint.rstrip("/") + "/" + str(stage).strip("/")
    if Config.PLACEHOLDER_HOST in ws_endpoint:
        server_host = urlparse(server_url).hostname
        if server_host:
            ws_endpoint = ws_endpoint.replace(Config.PLACEHOLDER_HOST, server_host)
    return ws_endpoint


def discovery_settings(doc: dict[str, Any]) -> DiscoverySettings | None:
    url = _dig(doc, "data", "url")
    if not url or not isinstance(url, str):
        return None
    return DiscoverySettings(url=url, api_key=_dig(doc, "data", "api_key"))


def parse_config(
    doc: dict[str, Any],
    server_url: str,
    session_id: str | None = None,
    api_key: str | None = None,
) -> EndpointConfig:
    """Build an EndpointConfig from a fetched document.

    Auth priority: explicit session id, explicit API key. Without either,
    auth stays NONE when a discovery endpoint exists (the caller runs
    discovery); otherwise the document's embedded API key is used.
    """
    endpoint = build_endpoint(doc, server_url)
    discovery = discovery_settings(doc)

    if session_id:
        kind, value, source = AuthKind.SESSION_ID, session_id, "explicit session id"
    elif api_key:
        kind, value, source = AuthKind.API_KEY, api_key, "explicit api key"
    elif discovery is None and _dig(doc, "custom", "done24bot", "apiKey"):
        kind, value, source = (
            AuthKind.API_KEY, _dig(doc, "custom", "done24bot", "apiKey"), Config.REMOTE_CONFIG_PATH,
        )
    else:
        kind, value, source = AuthKind.NONE, None, ""

    try:
        return EndpointConfig(
            endpoint_url=endpoint,
            auth_kind=kind,
            auth_value=value,
            auth_source=source,
            server_url=server_url,
            discovery=discovery,
        )
    except ValidationError as e:
        raise ConfigFormatError(str(e)) from e


async def resolve(
    server_url: str,
    session_id: str | None = None,
    api_key: str | None = None,
    session: aiohttp.ClientSession | None = None,
) -> EndpointConfig:
    """Fetch and parse the remote config for ``server_url``."""
    if not server_url:
        raise ConfigFetchError("No server URL configured (set BRIDGE_SERVER)")
    doc = await fetch_remote_config(server_url, session=session)
    endpoint = parse_config(doc, server_url, session_id=session_id, api_key=api_key)

    log.info("Configuration loaded: server=%s websocket=%s", server_url, endpoint.endpoint_url)
    log_auth(endpoint)
    return endpoint


def log_auth(endpoint: EndpointConfig) -> None:
    if endpoint.auth_kind == AuthKind.NONE:
        log.info("Auth: (none - public access)")
    else:
        log.info(
            "Auth: %s=%s (from %s)",
            endpoint.auth_kind.value, mask_secret(endpoint.auth_value), endpoint.auth_source,
        )
