"""MCP Server for Nginx Proxy Manager.

It handles:
- MCP tools for the Nginx Proxy Manager API via tools.py
- MCP protocol endpoint via Streamable HTTP (/mcp), one session per client
- OAuth 2.0 authorization server (/authorize, /oauth/token, /.well-known/*)
- Bearer-token gate in front of /mcp (static API key or OAuth token)

Run with ``python main.py`` or the ``npm-mcp-server`` CLI.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER

from config import SERVER_NAME, VERSION, Config, load_config
from logging_config import setup_logging
from npm_client import NpmClient
from oauth.endpoints import get_base_url, router as oauth_router
from oauth.middleware import AuthGate, MCPAuthMiddleware
from oauth.provider import AuthorizationServer
from sessions import SessionManager
from tools import create_mcp_server

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

logger = logging.getLogger(__name__)


def create_protocol_server_factory(config: Config):
    """Factory for per-session MCP servers, each with its own NPM client."""

    def create_protocol_server():
        client = NpmClient(config.npm_url, config.npm_email, config.npm_password)
        return create_mcp_server(client)._mcp_server

    return create_protocol_server


def create_app(
    config: Config,
    auth_server: AuthorizationServer = None,
    session_manager: SessionManager = None,
) -> FastAPI:
    """Build the FastAPI application for the Streamable HTTP transport."""
    if auth_server is None:
        auth_server = AuthorizationServer(config.oauth_client_id, config.oauth_client_secret)
    if session_manager is None:
        session_manager = SessionManager(
            create_protocol_server_factory(config),
            max_sessions=config.max_sessions,
        )
    gate = AuthGate(auth_server, api_key=config.mcp_api_key)
    # Filled on the first info request, then reused
    tool_names: list[str] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with session_manager.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(auth_server.run_sweeper, config.sweep_interval)
                logger.info("[STARTUP] Session manager and token sweeper running")
                try:
                    yield
                finally:
                    tg.cancel_scope.cancel()
        logger.info("[SHUTDOWN] All sessions closed")

    app = FastAPI(
        title="NPM MCP Server",
        description="MCP server for the Nginx Proxy Manager API with OAuth 2.0",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_server = auth_server
    app.state.session_manager = session_manager
    app.state.server_url = config.server_url

    # Add CORS middleware for browser-based MCP client access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[MCP_SESSION_ID_HEADER],
    )

    # ============== Include Routers ==============

    app.include_router(oauth_router)
    app.add_route("/mcp", MCPAuthMiddleware(session_manager, gate=gate), include_in_schema=False)

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "sessions": session_manager.session_count}

    @app.get("/")
    async def root(request: Request):
        """Root endpoint with server info."""
        base_url = get_base_url(request)
        if not tool_names:
            listing = create_mcp_server(NpmClient(config.npm_url, config.npm_email, config.npm_password))
            tool_names.extend(sorted(await listing.get_tools()))
        response = {
            "name": SERVER_NAME,
            "version": VERSION,
            "transport": "streamable-http",
            "endpoints": {
                "streamable_http": "/mcp",
                "health": "/health",
            },
            "auth": {
                "api_key": bool(config.mcp_api_key),
                "oauth": config.oauth_enabled,
            },
            "tools": tool_names,
        }
        if config.oauth_enabled:
            response["oauth"] = {
                "protected_resource": f"{base_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{base_url}/.well-known/oauth-authorization-server",
            }
        return response

    if gate.is_open:
        logger.warning("[STARTUP] No MCP_API_KEY or OAUTH_CLIENT_ID set: /mcp is open to everyone")
    logger.info(f"[STARTUP] Upstream NPM: {config.npm_url}")
    return app


local_config = load_config()
setup_logging(local_config.log_level, local_config.log_format)
app = create_app(local_config)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting MCP server on {local_config.host}:{local_config.port}")
    logger.info("Streamable HTTP endpoint: /mcp")
    uvicorn.run(app, host=local_config.host, port=local_config.port)
