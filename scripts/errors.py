"""Error types and AI-friendly error transformation for the CDP bridge.

- BridgeError hierarchy with a stable code and 3-level Recoverability
- AI-friendly message transforms for Playwright exceptions raised by actions
"""

from __future__ import annotations

import re
from typing import Callable

from config import Config
from models import Recoverability


# ---------------------------------------------------------------------------
# Typed errors
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""
    code = "UNKNOWN"
    recoverability = Recoverability.NON_RECOVERABLE

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "recoverability": self.recoverability.value,
        }


class ConfigFetchError(BridgeError):
    """Remote config source unreachable or answered with a non-success status."""
    code = "CONFIG_FETCH"


class ConfigFormatError(BridgeError):
    """Remote config document lacks a required field."""
    code = "CONFIG_FORMAT"


class NoActiveSessionError(BridgeError):
    """Session discovery found no active session."""
    code = "NO_ACTIVE_SESSION"


class BrowserConnectionError(BridgeError, ConnectionError):
    """Connecting to the automation endpoint failed."""
    code = "CONNECTION_FAILED"
    recoverability = Recoverability.ESCALATABLE


class NoActivePageError(BridgeError):
    code = "NO_ACTIVE_PAGE"
    recoverability = Recoverability.ESCALATABLE

    def __init__(self, message: str = "No active page - browser may be disconnected"):
        super().__init__(message)


class ActionValidationError(BridgeError):
    """A required action parameter is missing or has the wrong type."""
    code = "INVALID_PARAMS"
    recoverability = Recoverability.RECOVERABLE


class UnknownActionError(BridgeError):
    code = "UNKNOWN_ACTION"

    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}")
        self.action = action


# ---------------------------------------------------------------------------
# AI-friendly transform for automation-library exceptions
# ---------------------------------------------------------------------------

def _timeout_ms(error: Exception) -> str:
    found = re.search(r"(\d+)\s*ms", str(error))
    return found.group(1) if found else str(Config.DEFAULT_TIMEOUT)


def _net_code(error: Exception) -> str:
    found = re.search(r"net::(ERR_[A-Z_]+)", str(error))
    return found.group(1) if found else "unknown network error"


_CLOSED = "Browser tab or connection was closed."

# First match wins, so specific patterns precede general ones
_FRIENDLY: list[tuple[str, Callable[[Exception], str]]] = [
    ("timeout", lambda e: f"Action timed out after {_timeout_ms(e)}ms."),
    ("not visible", lambda e: "Element exists but is not visible (hidden, covered or off-screen)."),
    ("frame was detached", lambda e: "The frame navigated away during the action."),
    ("detached", lambda e: "Element was removed from the page before the action finished."),
    ("target closed", lambda e: _CLOSED),
    ("has been closed", lambda e: _CLOSED),
    ("net::err_", lambda e: f"Network error: {_net_code(e)}."),
    ("execution context was destroyed", lambda e: "Page navigated during the action."),
]


def to_ai_friendly_error(error: Exception) -> str:
    """Turn a raw automation exception into a short, actionable message."""
    text = str(error)
    lowered = text.lower()
    for needle, describe in _FRIENDLY:
        if needle in lowered:
            return describe(error)
    return f"Browser error: {text or type(error).__name__}"
