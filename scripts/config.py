"""Configuration for the CDP bridge."""

import os
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip().isdigit() else default


class Config:
    # Remote service
    SERVER = os.getenv("BRIDGE_SERVER", "")
    REMOTE_CONFIG_PATH = "amplify_outputs.json"
    DEFAULT_STAGE = "prod"
    # Local/dev configs point at this host; it is rewritten to the server's host
    PLACEHOLDER_HOST = "local.done24bot.com"

    # Credentials (ADDON_SESSION_ID wins over the API key)
    API_KEY = os.getenv("BRIDGE_API_KEY", "")
    SESSION_ID = os.getenv("ADDON_SESSION_ID", "")
    SESSION_PREFIX = "addon"

    # Local front door, loopback by default
    DEFAULT_HOST = os.getenv("BRIDGE_HOST", "127.0.0.1")
    HTTP_PORT = _env_int("HTTP_PORT", 9222)
    PORT_ATTEMPTS = 10
    MAX_BODY_BYTES = 1024 * 1024

    LOG_LEVEL = os.getenv("BRIDGE_LOG_LEVEL", "INFO")

    # Timeouts
    FETCH_TIMEOUT = 10.0  # seconds
    HANDSHAKE_TIMEOUT = 10.0  # seconds
    PROTOCOL_TIMEOUT = 10_000  # ms
    DEFAULT_TIMEOUT = 30_000  # ms, page operations
    DEFAULT_DELAY = 0  # ms between keystrokes

    # Reconnect backoff (seconds)
    BACKOFF_FLOOR = 5.0
    BACKOFF_CEILING = 60.0

    # Page defaults
    DEFAULT_VIEWPORT = {"width": 1440, "height": 900}
    DEFAULT_WAIT_UNTIL = "networkidle"
    DEFAULT_ELEMENTS_LIMIT = 30
    DEFAULT_SCREENSHOT_PATH = "/tmp/screenshot.png"
    SCROLL_STEP = 500  # px
    CONSOLE_CAPACITY = 100


# ---------------------------------------------------------------------------
# Secret masking
# ---------------------------------------------------------------------------

def mask_secret(value: str | None) -> str | None:
    """Mask a credential for display: '***' plus its last 6 characters."""
    if not value:
        return None
    return f"***{value[-6:]}"


def redact_url(url: str) -> str:
    """Replace every query value in a URL with '***'."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = urlencode([(k, "***") for k, _ in parse_qsl(parts.query, keep_blank_values=True)], safe="*")
    return urlunsplit(parts._replace(query=query))


_WAIT_UNTIL_ALIASES = {
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
    "domcontentloaded": "domcontentloaded",
    "load": "load",
    "commit": "commit",
    "networkidle": "networkidle",
}


def normalize_wait_until(value: str | None) -> str:
    """Map puppeteer-style wait conditions onto Playwright's names."""
    if not value:
        return Config.DEFAULT_WAIT_UNTIL
    return _WAIT_UNTIL_ALIASES.get(value.lower(), Config.DEFAULT_WAIT_UNTIL)
