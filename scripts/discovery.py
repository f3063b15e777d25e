"""Active-session discovery over the remote GraphQL listing API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from config import Config, mask_secret
from errors import ConfigFetchError, NoActiveSessionError

log = logging.getLogger(__name__)

LIST_SESSIONS_QUERY = """
query ListSessions($filter: ModelSessionFilterInput) {
  listSessions(filter: $filter) {
    items { id status }
  }
}
"""


def _session_filter(prefix: str) -> dict[str, Any]:
    return {"status": {"eq": "active"}, "id": {"beginsWith": prefix}}


def select_session(items: list[dict[str, Any]], prefix: str) -> str:
    """First active item whose id carries the prefix, in listing order."""
    for item in items:
        sid = item.get("id")
        if item.get("status", "active") == "active" and isinstance(sid, str) and sid.startswith(prefix):
            return sid
    raise NoActiveSessionError(f"No active session with prefix '{prefix}' found")


async def discover(
    listing_url: str,
    credential: str | None,
    prefix: str = Config.SESSION_PREFIX,
    session: aiohttp.ClientSession | None = None,
) -> str:
    """Return the id of the first active session reported by the listing API."""
    headers = {"Content-Type": "application/json"}
    if credential:
        headers["x-api-key"] = credential
    payload = {"query": LIST_SESSIONS_QUERY, "variables": {"filter": _session_filter(prefix)}}

    log.info("Discovering active session at %s", listing_url)
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=Config.FETCH_TIMEOUT))
    try:
        async with session.post(listing_url, json=payload, headers=headers) as resp:
            if resp.status != 200:
                raise ConfigFetchError(f"Session listing returned HTTP {resp.status}")
            body = await resp.json(content_type=None)
    except aiohttp.ClientError as e:
        raise ConfigFetchError(f"Cannot reach session listing at {listing_url}: {e}") from e
    except asyncio.TimeoutError as e:
        raise ConfigFetchError(f"Timed out querying session listing at {listing_url}") from e
    except ValueError as e:
        raise ConfigFetchError(f"Session listing returned invalid JSON: {e}") from e
    finally:
        if own_session:
            await session.close()

    if not isinstance(body, dict):
        raise ConfigFetchError("Session listing returned a non-object body")
    if body.get("errors"):
        messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
        raise ConfigFetchError(f"Session listing failed: {messages}")

    items = ((body.get("data") or {}).get("listSessions") or {}).get("items") or []
    session_id = select_session(items, prefix)
    log.info("Discovered session %s", mask_secret(session_id))
    return session_id
