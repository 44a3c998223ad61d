"""Bearer-token gate for the MCP endpoint.

A request passes when:
- neither a shared API key nor an OAuth client is configured (open mode), or
- it presents ``Authorization: Bearer <MCP_API_KEY>``, or
- it presents a live access token minted by the authorization server.

Everything else is answered with 401 before the session router sees it.
"""

import logging
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.endpoints import get_base_url
from oauth.provider import AuthorizationServer

logger = logging.getLogger(__name__)

MISSING_TOKEN = "missing_token"
INVALID_TOKEN = "invalid_token"


class AuthGate:
    """Decides whether an ``Authorization`` header value grants access."""

    def __init__(self, auth_server: AuthorizationServer, api_key: str = ""):
        self.auth_server = auth_server
        self.api_key = api_key

    @property
    def is_open(self) -> bool:
        return not self.api_key and not self.auth_server.configured

    def check(self, authorization: Optional[str]) -> Optional[str]:
        """Return ``None`` when access is granted, else the OAuth error code."""
        if self.is_open:
            return None
        if not authorization or not authorization.startswith("Bearer "):
            return MISSING_TOKEN
        token = authorization[7:]
        if not token:
            return MISSING_TOKEN
        if self.api_key and secrets.compare_digest(token.encode(), self.api_key.encode()):
            return None
        if self.auth_server.validate_token(token):
            return None
        return INVALID_TOKEN


class MCPAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to validate Bearer tokens for the Streamable HTTP MCP endpoint."""

    def __init__(self, app, gate: AuthGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next):
        error = self.gate.check(request.headers.get("Authorization"))
        if error is None:
            return await call_next(request)

        logger.info(f"[AUTH] Request rejected: {error}")
        return JSONResponse(
            {"error": error},
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer resource_metadata="{get_base_url(request)}/.well-known/oauth-protected-resource"'}
        )
