"""Async client for the Nginx Proxy Manager REST API.

Authenticates with the configured identity, caches the bearer token until
shortly before it expires, and exposes one coroutine per upstream action.
Non-2xx responses raise :class:`NpmApiError`; nothing is retried here.
"""

import logging
import time
from datetime import datetime
from typing import Any, Literal, Optional

import httpx

logger = logging.getLogger(__name__)

HostType = Literal["proxy-hosts", "redirection-hosts", "dead-hosts", "streams"]

# Refresh the cached token this many seconds before NPM says it expires
TOKEN_REFRESH_MARGIN = 60


class NpmApiError(Exception):
    """Non-success response from the proxy manager API."""

    def __init__(self, status_code: int, body: Any, method: str = "", path: str = ""):
        self.status_code = status_code
        self.body = body
        self.method = method
        self.path = path
        target = f" {method} {path}" if method else ""
        super().__init__(f"NPM API error {status_code}{target}: {body}")


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _parse_expiry(expires: str) -> float:
    """Turn NPM's ISO-8601 ``expires`` value into a unix timestamp."""
    return datetime.fromisoformat(expires.replace("Z", "+00:00")).timestamp()


class NpmClient:
    """Token-caching gateway to one Nginx Proxy Manager instance."""

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now_fn=time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self._transport = transport
        self._now = now_fn
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport)

    async def _ensure_authenticated(self) -> str:
        if self._token and self._now() < self._token_expiry:
            return self._token

        async with self._client() as client:
            response = await client.post(
                "/api/tokens",
                json={"identity": self.email, "secret": self.password},
            )
        if not response.is_success:
            logger.warning(f"[NPM] Login failed with status {response.status_code}")
            raise NpmApiError(response.status_code, _response_body(response), "POST", "/api/tokens")

        data = response.json()
        self._token = data["token"]
        self._token_expiry = _parse_expiry(data["expires"]) - TOKEN_REFRESH_MARGIN
        logger.info(f"[NPM] Authenticated as {self.email}")
        return self._token

    async def request(self, method: str, path: str, data: Any = None) -> Any:
        """Issue an authenticated call against ``/api{path}``."""
        token = await self._ensure_authenticated()
        url = f"/api{path}"
        async with self._client() as client:
            response = await client.request(
                method,
                url,
                json=data,
                headers={"Authorization": f"Bearer {token}"},
            )
        if not response.is_success:
            logger.info(f"[NPM] {method} {url} -> {response.status_code}")
            raise NpmApiError(response.status_code, _response_body(response), method, url)
        if not response.content:
            return None
        return _response_body(response)

    # Health (no auth required)
    async def get_health(self) -> Any:
        async with self._client() as client:
            response = await client.get("/api")
        if not response.is_success:
            raise NpmApiError(response.status_code, _response_body(response), "GET", "/api")
        return response.json()

    # Proxy hosts
    async def list_proxy_hosts(self) -> list:
        return await self.request("GET", "/nginx/proxy-hosts?expand=owner,certificate,access_list")

    async def get_proxy_host(self, host_id: int) -> dict:
        return await self.request("GET", f"/nginx/proxy-hosts/{host_id}?expand=owner,certificate,access_list")

    async def create_proxy_host(self, data: dict) -> dict:
        return await self.request("POST", "/nginx/proxy-hosts", data)

    async def update_proxy_host(self, host_id: int, data: dict) -> dict:
        return await self.request("PUT", f"/nginx/proxy-hosts/{host_id}", data)

    async def delete_proxy_host(self, host_id: int) -> None:
        await self.request("DELETE", f"/nginx/proxy-hosts/{host_id}")

    # Generic hosts (redirection-hosts, dead-hosts, streams)
    async def list_hosts(self, host_type: HostType) -> list:
        return await self.request("GET", f"/nginx/{host_type}?expand=owner,certificate")

    async def get_host(self, host_type: HostType, host_id: int) -> dict:
        return await self.request("GET", f"/nginx/{host_type}/{host_id}?expand=owner,certificate")

    async def create_host(self, host_type: HostType, data: dict) -> dict:
        return await self.request("POST", f"/nginx/{host_type}", data)

    async def delete_host(self, host_type: HostType, host_id: int) -> None:
        await self.request("DELETE", f"/nginx/{host_type}/{host_id}")

    # Enable/disable works for every host type, proxy-hosts included
    async def enable_host(self, host_type: HostType, host_id: int) -> None:
        await self.request("POST", f"/nginx/{host_type}/{host_id}/enable")

    async def disable_host(self, host_type: HostType, host_id: int) -> None:
        await self.request("POST", f"/nginx/{host_type}/{host_id}/disable")

    # Certificates
    async def list_certificates(self) -> list:
        return await self.request("GET", "/nginx/certificates?expand=owner")

    async def create_certificate(self, data: dict) -> dict:
        return await self.request("POST", "/nginx/certificates", data)

    async def delete_certificate(self, certificate_id: int) -> None:
        await self.request("DELETE", f"/nginx/certificates/{certificate_id}")

    async def renew_certificate(self, certificate_id: int) -> dict:
        return await self.request("POST", f"/nginx/certificates/{certificate_id}/renew")

    # Access lists
    async def list_access_lists(self) -> list:
        return await self.request("GET", "/nginx/access-lists?expand=owner,items,clients,proxy_hosts")

    async def create_access_list(self, data: dict) -> dict:
        return await self.request("POST", "/nginx/access-lists", data)

    async def delete_access_list(self, access_list_id: int) -> None:
        await self.request("DELETE", f"/nginx/access-lists/{access_list_id}")

    # Reports & audit
    async def get_hosts_report(self) -> dict:
        return await self.request("GET", "/reports/hosts")

    async def list_audit_log(self) -> list:
        return await self.request("GET", "/audit-log?expand=user")
