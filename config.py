"""Config management for npm-mcp-server.

All settings come from the environment (optionally seeded from a `.env`
file by the entry points). Secrets default to empty, which disables the
feature that needs them.
"""
import os
from typing import Mapping, Optional


VERSION = "1.0.0"
SERVER_NAME = "npm-mcp-server"

DEFAULT_NPM_URL = "http://localhost:81"
DEFAULT_NPM_EMAIL = "admin@example.com"
DEFAULT_TRANSPORT = "streamable-http"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_SWEEP_INTERVAL = 60

TRANSPORTS = ("streamable-http", "stdio")


class Config:
    """Configuration container."""

    def __init__(self, data: Mapping[str, str] = None):
        self.data = dict(data or {})

    def _int(self, name: str, default: int) -> int:
        raw = self.data.get(name, "")
        if not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None
        if value < 0:
            raise ValueError(f"{name} must not be negative, got {value}")
        return value

    @property
    def npm_url(self) -> str:
        return (self.data.get("NPM_URL") or DEFAULT_NPM_URL).rstrip("/")

    @property
    def npm_email(self) -> str:
        return self.data.get("NPM_EMAIL") or DEFAULT_NPM_EMAIL

    @property
    def npm_password(self) -> str:
        return self.data.get("NPM_PASSWORD", "")

    @property
    def transport(self) -> str:
        transport = (self.data.get("MCP_TRANSPORT") or DEFAULT_TRANSPORT).lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"MCP_TRANSPORT must be one of {', '.join(TRANSPORTS)}, got {transport!r}")
        return transport

    @property
    def host(self) -> str:
        return self.data.get("MCP_HOST") or DEFAULT_HOST

    @property
    def port(self) -> int:
        return self._int("PORT", DEFAULT_PORT)

    @property
    def mcp_api_key(self) -> str:
        return self.data.get("MCP_API_KEY", "")

    @property
    def oauth_client_id(self) -> str:
        return self.data.get("OAUTH_CLIENT_ID", "")

    @property
    def oauth_client_secret(self) -> str:
        return self.data.get("OAUTH_CLIENT_SECRET", "")

    @property
    def server_url(self) -> Optional[str]:
        url = self.data.get("SERVER_URL", "").rstrip("/")
        return url or None

    @property
    def max_sessions(self) -> int:
        return self._int("MCP_MAX_SESSIONS", 0)

    @property
    def sweep_interval(self) -> int:
        return self._int("OAUTH_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL) or DEFAULT_SWEEP_INTERVAL

    @property
    def log_level(self) -> str:
        return (self.data.get("LOG_LEVEL") or "INFO").upper()

    @property
    def log_format(self) -> str:
        return (self.data.get("LOG_FORMAT") or "plain").lower()

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.oauth_client_id)

    def validate(self) -> None:
        """Raise ValueError naming the first malformed setting."""
        for name in ("transport", "port", "max_sessions", "sweep_interval"):
            getattr(self, name)

    def is_open(self) -> bool:
        """True when neither a shared secret nor an OAuth client is configured."""
        return not self.mcp_api_key and not self.oauth_enabled


def load_config(environ: Mapping[str, str] = None) -> Config:
    """Load config from the environment."""
    return Config(os.environ if environ is None else environ)
