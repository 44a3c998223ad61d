"""MCP tools for npm-mcp-server.

Each tool maps to one Nginx Proxy Manager action. Inputs are declared with
type hints so FastMCP validates them (pydantic) before any upstream call;
results are returned as pretty-printed JSON text.

A fresh server is built per protocol session via :func:`create_mcp_server`.
"""

import json
import logging
from typing import Annotated, Any, Literal, Optional

from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import BaseModel, Field

from config import SERVER_NAME
from npm_client import NpmClient

logger = logging.getLogger(__name__)

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, openWorldHint=True)
CREATES = ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=True)
MODIFIES = ToolAnnotations(readOnlyHint=False, destructiveHint=True, openWorldHint=True)
DELETES = ToolAnnotations(readOnlyHint=False, destructiveHint=True, idempotentHint=True, openWorldHint=True)

HostId = Annotated[int, Field(ge=1, description="Host ID")]
Port = Annotated[int, Field(ge=1, le=65535)]
NonNegativeInt = Annotated[int, Field(ge=0)]
GenericHostType = Annotated[
    Literal["redirection-hosts", "dead-hosts", "streams"],
    Field(description="Host type: redirection-hosts, dead-hosts, or streams"),
]
AnyHostType = Annotated[
    Literal["proxy-hosts", "redirection-hosts", "dead-hosts", "streams"],
    Field(description="Host type (all types including proxy-hosts)"),
]


class AccessListItem(BaseModel):
    username: str = Field(description="Username")
    password: str = Field(description="Password")


class AccessListClient(BaseModel):
    address: str = Field(description="IP address or CIDR")
    directive: Literal["allow", "deny"] = Field(description="Allow or deny")


def _as_text(result: Any) -> str:
    return json.dumps(result, indent=2)


def _present(**fields: Any) -> dict:
    """Drop optional fields the caller did not supply."""
    return {key: value for key, value in fields.items() if value is not None}


def register_proxy_host_tools(mcp: FastMCP, client: NpmClient) -> None:
    @mcp.tool(name="npm_list_proxy_hosts", annotations=READ_ONLY)
    async def list_proxy_hosts() -> str:
        """List all proxy hosts configured in Nginx Proxy Manager."""
        return _as_text(await client.list_proxy_hosts())

    @mcp.tool(name="npm_get_proxy_host", annotations=READ_ONLY)
    async def get_proxy_host(id: Annotated[int, Field(ge=1, description="Proxy host ID")]) -> str:
        """Get detailed information about a specific proxy host."""
        return _as_text(await client.get_proxy_host(id))

    @mcp.tool(name="npm_create_proxy_host", annotations=CREATES)
    async def create_proxy_host(
        domain_names: Annotated[list[str], Field(min_length=1, description='Domain names (e.g. ["app.example.com"])')],
        forward_scheme: Annotated[Literal["http", "https"], Field(description="Forward scheme")],
        forward_host: Annotated[str, Field(min_length=1, description="Forward host (IP or hostname)")],
        forward_port: Annotated[Port, Field(description="Forward port")],
        certificate_id: Annotated[Optional[NonNegativeInt], Field(description="SSL certificate ID (0 for none)")] = None,
        ssl_forced: Annotated[Optional[bool], Field(description="Force SSL")] = None,
        hsts_enabled: Annotated[Optional[bool], Field(description="Enable HSTS")] = None,
        http2_support: Annotated[Optional[bool], Field(description="Enable HTTP/2")] = None,
        block_exploits: Annotated[Optional[bool], Field(description="Block common exploits")] = None,
        caching_enabled: Annotated[Optional[bool], Field(description="Enable caching")] = None,
        allow_websocket_upgrade: Annotated[Optional[bool], Field(description="Allow WebSocket upgrade")] = None,
        access_list_id: Annotated[Optional[NonNegativeInt], Field(description="Access list ID (0 for none)")] = None,
        advanced_config: Annotated[Optional[str], Field(description="Custom Nginx configuration")] = None,
    ) -> str:
        """Create a new proxy host. Required: domain_names, forward_scheme, forward_host, forward_port."""
        payload = _present(
            domain_names=domain_names,
            forward_scheme=forward_scheme,
            forward_host=forward_host,
            forward_port=forward_port,
            certificate_id=certificate_id,
            ssl_forced=ssl_forced,
            hsts_enabled=hsts_enabled,
            http2_support=http2_support,
            block_exploits=block_exploits,
            caching_enabled=caching_enabled,
            allow_websocket_upgrade=allow_websocket_upgrade,
            access_list_id=access_list_id,
            advanced_config=advanced_config,
        )
        logger.info(f"[TOOL] create proxy host for {', '.join(domain_names)}")
        return _as_text(await client.create_proxy_host(payload))

    @mcp.tool(name="npm_update_proxy_host", annotations=MODIFIES)
    async def update_proxy_host(
        id: Annotated[int, Field(ge=1, description="Proxy host ID")],
        domain_names: Annotated[Optional[list[str]], Field(description="Domain names")] = None,
        forward_scheme: Annotated[Optional[Literal["http", "https"]], Field(description="Forward scheme")] = None,
        forward_host: Annotated[Optional[str], Field(description="Forward host")] = None,
        forward_port: Annotated[Optional[Port], Field(description="Forward port")] = None,
        certificate_id: Annotated[Optional[NonNegativeInt], Field(description="SSL certificate ID")] = None,
        ssl_forced: Annotated[Optional[bool], Field(description="Force SSL")] = None,
        hsts_enabled: Annotated[Optional[bool], Field(description="Enable HSTS")] = None,
        http2_support: Annotated[Optional[bool], Field(description="Enable HTTP/2")] = None,
        block_exploits: Annotated[Optional[bool], Field(description="Block common exploits")] = None,
        caching_enabled: Annotated[Optional[bool], Field(description="Enable caching")] = None,
        allow_websocket_upgrade: Annotated[Optional[bool], Field(description="Allow WebSocket upgrade")] = None,
        access_list_id: Annotated[Optional[NonNegativeInt], Field(description="Access list ID")] = None,
        advanced_config: Annotated[Optional[str], Field(description="Custom Nginx configuration")] = None,
    ) -> str:
        """Update an existing proxy host. Only the supplied fields are changed."""
        payload = _present(
            domain_names=domain_names,
            forward_scheme=forward_scheme,
            forward_host=forward_host,
            forward_port=forward_port,
            certificate_id=certificate_id,
            ssl_forced=ssl_forced,
            hsts_enabled=hsts_enabled,
            http2_support=http2_support,
            block_exploits=block_exploits,
            caching_enabled=caching_enabled,
            allow_websocket_upgrade=allow_websocket_upgrade,
            access_list_id=access_list_id,
            advanced_config=advanced_config,
        )
        return _as_text(await client.update_proxy_host(id, payload))

    @mcp.tool(name="npm_delete_proxy_host", annotations=DELETES)
    async def delete_proxy_host(id: Annotated[int, Field(ge=1, description="Proxy host ID to delete")]) -> str:
        """Delete a proxy host."""
        await client.delete_proxy_host(id)
        logger.info(f"[TOOL] deleted proxy host {id}")
        return f"Proxy host {id} deleted successfully."


def register_host_tools(mcp: FastMCP, client: NpmClient) -> None:
    @mcp.tool(name="npm_list_hosts", annotations=READ_ONLY)
    async def list_hosts(type: GenericHostType) -> str:
        """List hosts by type (redirection-hosts, dead-hosts, or streams)."""
        return _as_text(await client.list_hosts(type))

    @mcp.tool(name="npm_get_host", annotations=READ_ONLY)
    async def get_host(type: GenericHostType, id: HostId) -> str:
        """Get detailed information about a specific host (redirection, dead, or stream)."""
        return _as_text(await client.get_host(type, id))

    @mcp.tool(name="npm_create_host", annotations=CREATES)
    async def create_host(
        type: GenericHostType,
        data: Annotated[dict[str, Any], Field(description="Host creation data (fields depend on type)")],
    ) -> str:
        """Create a new host (redirection, dead, or stream). Fields vary by type:
        - redirection-hosts: domain_names, forward_http_code, forward_scheme, forward_domain_name
        - dead-hosts: domain_names
        - streams: incoming_port, forwarding_host, forwarding_port
        """
        return _as_text(await client.create_host(type, data))

    @mcp.tool(name="npm_delete_host", annotations=DELETES)
    async def delete_host(type: GenericHostType, id: Annotated[int, Field(ge=1, description="Host ID to delete")]) -> str:
        """Delete a host (redirection, dead, or stream)."""
        await client.delete_host(type, id)
        logger.info(f"[TOOL] deleted {type} host {id}")
        return f"{type} host {id} deleted successfully."

    @mcp.tool(name="npm_host_action", annotations=MODIFIES)
    async def host_action(
        type: AnyHostType,
        id: HostId,
        action: Annotated[Literal["enable", "disable"], Field(description="Action to perform")],
    ) -> str:
        """Enable or disable a host (any type including proxy-hosts)."""
        if action == "enable":
            await client.enable_host(type, id)
        else:
            await client.disable_host(type, id)
        return f"{type} host {id} {action}d successfully."


def register_certificate_tools(mcp: FastMCP, client: NpmClient) -> None:
    @mcp.tool(name="npm_list_certificates", annotations=READ_ONLY)
    async def list_certificates() -> str:
        """List all SSL certificates managed by Nginx Proxy Manager."""
        return _as_text(await client.list_certificates())

    @mcp.tool(name="npm_create_certificate", annotations=CREATES)
    async def create_certificate(
        provider: Annotated[Literal["letsencrypt", "other"], Field(description="Certificate provider")],
        nice_name: Annotated[str, Field(description="Friendly name for the certificate")],
        domain_names: Annotated[list[str], Field(min_length=1, description="Domain names to include")],
        letsencrypt_email: Annotated[Optional[str], Field(description="Email for Let's Encrypt notifications")] = None,
        letsencrypt_agree: Annotated[Optional[bool], Field(description="Agree to Let's Encrypt ToS (required for letsencrypt)")] = None,
        dns_challenge: Annotated[Optional[bool], Field(description="Use DNS challenge instead of HTTP")] = None,
        dns_provider: Annotated[Optional[str], Field(description="DNS provider (if dns_challenge is true)")] = None,
        dns_provider_credentials: Annotated[Optional[str], Field(description="DNS provider credentials")] = None,
    ) -> str:
        """Request a new Let's Encrypt SSL certificate or add a custom certificate."""
        payload: dict[str, Any] = {"provider": provider, "nice_name": nice_name, "domain_names": domain_names}
        meta = _present(
            letsencrypt_email=letsencrypt_email,
            letsencrypt_agree=letsencrypt_agree,
            dns_challenge=dns_challenge,
            dns_provider=dns_provider,
            dns_provider_credentials=dns_provider_credentials,
        )
        if meta:
            payload["meta"] = meta
        return _as_text(await client.create_certificate(payload))

    @mcp.tool(name="npm_delete_certificate", annotations=DELETES)
    async def delete_certificate(id: Annotated[int, Field(ge=1, description="Certificate ID to delete")]) -> str:
        """Delete an SSL certificate."""
        await client.delete_certificate(id)
        return f"Certificate {id} deleted successfully."

    @mcp.tool(name="npm_renew_certificate", annotations=MODIFIES)
    async def renew_certificate(id: Annotated[int, Field(ge=1, description="Certificate ID to renew")]) -> str:
        """Renew a Let's Encrypt SSL certificate."""
        return _as_text(await client.renew_certificate(id))


def register_access_list_tools(mcp: FastMCP, client: NpmClient) -> None:
    @mcp.tool(name="npm_list_access_lists", annotations=READ_ONLY)
    async def list_access_lists() -> str:
        """List all access control lists."""
        return _as_text(await client.list_access_lists())

    @mcp.tool(name="npm_create_access_list", annotations=CREATES)
    async def create_access_list(
        name: Annotated[str, Field(min_length=1, description="Access list name")],
        satisfy_any: Annotated[Optional[bool], Field(description="Allow access if ANY rule matches (default: all must match)")] = None,
        pass_auth: Annotated[Optional[bool], Field(description="Pass basic auth to upstream server")] = None,
        items: Annotated[Optional[list[AccessListItem]], Field(description="Username/password credentials")] = None,
        clients: Annotated[Optional[list[AccessListClient]], Field(description="IP-based access rules")] = None,
    ) -> str:
        """Create a new access control list with optional username/password items and IP-based client rules."""
        payload = _present(
            name=name,
            satisfy_any=satisfy_any,
            pass_auth=pass_auth,
            items=[item.model_dump() for item in items] if items is not None else None,
            clients=[rule.model_dump() for rule in clients] if clients is not None else None,
        )
        return _as_text(await client.create_access_list(payload))

    @mcp.tool(name="npm_delete_access_list", annotations=DELETES)
    async def delete_access_list(id: Annotated[int, Field(ge=1, description="Access list ID to delete")]) -> str:
        """Delete an access control list."""
        await client.delete_access_list(id)
        return f"Access list {id} deleted successfully."


def register_system_tools(mcp: FastMCP, client: NpmClient) -> None:
    @mcp.tool(name="npm_get_health", annotations=READ_ONLY)
    async def get_health() -> str:
        """Get Nginx Proxy Manager health status and version information."""
        return _as_text(await client.get_health())

    @mcp.tool(name="npm_get_hosts_report", annotations=READ_ONLY)
    async def get_hosts_report() -> str:
        """Get hosts statistics report (counts of proxy, redirection, stream, and dead hosts)."""
        return _as_text(await client.get_hosts_report())

    @mcp.tool(name="npm_list_audit_log", annotations=READ_ONLY)
    async def list_audit_log() -> str:
        """List audit log entries showing recent actions performed in Nginx Proxy Manager."""
        return _as_text(await client.list_audit_log())


def create_mcp_server(client: NpmClient) -> FastMCP:
    """Build a FastMCP server whose tools all talk to ``client``."""
    mcp = FastMCP(SERVER_NAME)
    register_proxy_host_tools(mcp, client)
    register_host_tools(mcp, client)
    register_certificate_tools(mcp, client)
    register_access_list_tools(mcp, client)
    register_system_tools(mcp, client)
    return mcp
