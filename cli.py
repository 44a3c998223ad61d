"""CLI entry point for npm-mcp-server.

Runs the MCP server either over Streamable HTTP (the default) or over
stdio for MCP clients that spawn the server as a subprocess.
"""
import argparse
import logging
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from config import SERVER_NAME, VERSION, Config, load_config
from logging_config import setup_logging
from npm_client import NpmClient
from tools import create_mcp_server

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

logger = logging.getLogger(__name__)


# ============== CLI Commands ==============

def cmd_start(config: Config, host: str = None, port: int = None):
    """Serve MCP over Streamable HTTP at /mcp."""
    host = host or config.host
    port = port or config.port

    print("\n" + "=" * 60)
    print(f"  {SERVER_NAME} v{VERSION}")
    print("=" * 60)
    print(f"  NPM:      {config.npm_url}")
    print(f"  Endpoint: http://{host}:{port}/mcp")
    if config.is_open():
        print("  Auth:     NONE (set MCP_API_KEY or OAUTH_CLIENT_ID)")
    else:
        modes = []
        if config.mcp_api_key:
            modes.append("api key")
        if config.oauth_enabled:
            modes.append("oauth")
        print(f"  Auth:     {', '.join(modes)}")
    print("=" * 60 + "\n")

    uvicorn.run("main:app", host=host, port=port, log_level=config.log_level.lower())


def cmd_stdio(config: Config):
    """Serve a single MCP session over stdin/stdout."""
    client = NpmClient(config.npm_url, config.npm_email, config.npm_password)
    mcp = create_mcp_server(client)
    logger.info(f"[STARTUP] {SERVER_NAME} v{VERSION} on stdio, upstream {config.npm_url}")
    mcp.run(transport="stdio")


def cmd_version():
    """Show version information."""
    print(f"{SERVER_NAME} v{VERSION}")


# ============== Main Entry Point ==============

def main():
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="MCP server for the Nginx Proxy Manager API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  start     Serve over Streamable HTTP (default; MCP_TRANSPORT=stdio switches to stdio)
  stdio     Serve over stdin/stdout
  version   Show version

Examples:
  npm-mcp-server start --port 3000
  npm-mcp-server stdio
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="start",
        choices=["start", "stdio", "version"],
        help="Command to run (default: start)"
    )
    parser.add_argument("--host", default=None, help="Bind address (default: MCP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: PORT or 3000)")

    args = parser.parse_args()

    if args.command == "version":
        cmd_version()
        return

    config = load_config()
    try:
        config.validate()
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(config.log_level, config.log_format)

    if args.command == "stdio" or config.transport == "stdio":
        cmd_stdio(config)
    else:
        cmd_start(config, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
