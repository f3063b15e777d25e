"""Data models for the CDP bridge.

Enums and models shared by the resolver, the supervisor and the action layer:
- EndpointConfig: where to connect and how to authenticate
- ConnectionState / SessionDescriptor: supervisor-owned connection status
- Action: the closed set of action names callable through the front door
- ConsoleLog: bounded console message buffer of the current page
"""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, Field, model_validator

from config import Config


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AuthKind(str, Enum):
    """How the bridge authenticates its WebSocket session."""
    SESSION_ID = "addonSessionId"   # query parameter name doubles as the value
    API_KEY = "apiKey"
    NONE = "none"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Recoverability(str, Enum):
    """3-level error recoverability."""
    RECOVERABLE = "recoverable"          # retry same action
    ESCALATABLE = "escalatable"          # reconnect or change strategy
    NON_RECOVERABLE = "non_recoverable"  # abort


class Action(str, Enum):
    """Every action name the dispatcher accepts."""
    NAVIGATE = "navigate"
    BACK = "back"
    FORWARD = "forward"
    RELOAD = "reload"
    SNAPSHOT = "snapshot"
    HTML = "html"
    ELEMENTS = "elements"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    WAIT = "wait"
    SCREENSHOT = "screenshot"
    EVALUATE = "evaluate"
    CONSOLE = "console"
    STATUS = "status"
    SESSION_INFO = "sessionInfo"
    NEW_PAGE = "newPage"
    CLOSE = "close"

    @classmethod
    def parse(cls, name: str) -> Action | None:
        try:
            return cls(name)
        except ValueError:
            return None


# Actions that answer from supervisor state even when the connection is down
INTROSPECTION_ACTIONS = frozenset({Action.STATUS, Action.SESSION_INFO})


# ---------------------------------------------------------------------------
# Core models
# ---------------------------------------------------------------------------

class DiscoverySettings(BaseModel):
    """GraphQL listing endpoint used to find an active session."""
    url: str
    api_key: str | None = None

    model_config = {"frozen": True}


class EndpointConfig(BaseModel):
    """Resolved connection parameters. Immutable once built."""
    endpoint_url: str
    auth_kind: AuthKind = AuthKind.NONE
    auth_value: str | None = None
    server_url: str
    auth_source: str = ""
    discovery: DiscoverySettings | None = None

    model_config = {"frozen": True, "json_schema_extra": {"examples": [
        {
            "endpoint_url": "wss://abc.execute-api.eu-west-1.amazonaws.com/prod",
            "auth_kind": "apiKey",
            "auth_value": "k-123456",
            "server_url": "http://192.168.50.78:4200/",
        }
    ]}}

    @model_validator(mode="after")
    def _check_invariants(self) -> EndpointConfig:
        if not self.endpoint_url.startswith(("ws://", "wss://")):
            raise ValueError(f"Endpoint is not a WebSocket URL: {self.endpoint_url}")
        if self.auth_kind != AuthKind.NONE and not self.auth_value:
            raise ValueError(f"Auth kind {self.auth_kind.value} requires a value")
        return self

    def connect_url(self) -> str:
        """Endpoint URL with the credential appended as a query parameter."""
        if self.auth_kind == AuthKind.NONE:
            return self.endpoint_url
        sep = "&" if "?" in self.endpoint_url else "?"
        return f"{self.endpoint_url}{sep}{self.auth_kind.value}={self.auth_value}"

    def with_auth(self, kind: AuthKind, value: str | None, source: str = "") -> EndpointConfig:
        return self.model_copy(update={"auth_kind": kind, "auth_value": value, "auth_source": source})


class SessionDescriptor(BaseModel):
    session_id: str | None = None
    connected_at: datetime | None = None


class ActionRequest(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)

    model_config = {"json_schema_extra": {"examples": [
        {"action": "navigate", "params": {"url": "https://example.com"}}
    ]}}

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ActionRequest:
        """Split a flat front-door body into action name and parameters."""
        params = {k: v for k, v in body.items() if k != "action"}
        return cls(action=str(body["action"]), params=params)


class ConsoleMessage(BaseModel):
    level: str
    text: str
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


# ---------------------------------------------------------------------------
# Console buffer
# ---------------------------------------------------------------------------

class ConsoleLog:
    """Ring buffer of console messages; the oldest entry is evicted first."""

    def __init__(self, capacity: int = Config.CONSOLE_CAPACITY):
        self._messages: deque[ConsoleMessage] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._messages.maxlen or 0

    def append(self, level: str, text: str) -> None:
        self._messages.append(ConsoleMessage(level=level, text=text))

    def filter(self, level: str | None = None) -> list[dict[str, Any]]:
        return [
            m.model_dump() for m in self._messages
            if level is None or m.level == level
        ]

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConsoleMessage]:
        return iter(self._messages)
