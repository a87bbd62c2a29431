"""Client for the managed CDN / DNS REST API (Cloudflare v4 shape).

Every response uses the envelope::

    {"success": true, "errors": [], "result": ..., "result_info": {...}}

Transport errors, non-2xx responses and ``success: false`` all raise
ExternalServiceError carrying the provider's first error message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from domainmapper.core.exceptions import ExternalServiceError, ValidationError
from domainmapper.observability.metrics import CDN_API_REQUESTS

logger = structlog.get_logger()

SSL_MODES = ("off", "flexible", "full", "strict")


@dataclass
class Zone:
    id: str
    name: str
    status: str = ""
    name_servers: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Zone:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", ""),
            name_servers=list(data.get("name_servers") or []),
        )


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
    return fallback


class CloudflareClient:
    """Bearer-token authenticated async client.

    Usage:
        async with CloudflareClient(token) as cdn:
            zone = await cdn.find_zone("shop.example.com")
            await cdn.enable_ssl(zone.id, "full")
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            api_token: API token sent as a bearer credential.
            base_url: API root.
            timeout: Per-request timeout in seconds.
            transport: Optional transport, e.g. httpx.MockTransport in tests.
        """
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> CloudflareClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            CDN_API_REQUESTS.labels(operation=operation, outcome="transport_error").inc()
            logger.warning("CDN API request failed", operation=operation, error=str(e))
            raise ExternalServiceError(
                f"CDN API {operation} failed: {e}", {"operation": operation}
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error or not isinstance(body, dict) or not body.get("success", False):
            CDN_API_REQUESTS.labels(operation=operation, outcome="error").inc()
            message = _error_message(body, f"HTTP {response.status_code}")
            logger.warning(
                "CDN API returned an error",
                operation=operation,
                status_code=response.status_code,
                message=message,
            )
            raise ExternalServiceError(
                f"CDN API {operation} failed: {message}",
                {"operation": operation, "status_code": response.status_code},
            )

        CDN_API_REQUESTS.labels(operation=operation, outcome="ok").inc()
        return body

    async def verify_token(self) -> bool:
        """Check that the API token is valid and active."""
        body = await self._request("verify_token", "GET", "/user/tokens/verify")
        return (body.get("result") or {}).get("status") == "active"

    async def get_zones(self, name: str | None = None) -> list[Zone]:
        """List zones visible to the token, following pagination."""
        zones: list[Zone] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            params: dict[str, Any] = {"page": page, "per_page": 50}
            if name:
                params["name"] = name
            body = await self._request("get_zones", "GET", "/zones", params=params)
            zones.extend(Zone.from_api(z) for z in body.get("result") or [])
            total_pages = int((body.get("result_info") or {}).get("total_pages", 1) or 1)
            page += 1
        return zones

    async def find_zone(self, domain: str) -> Zone | None:
        """Find the zone that owns a domain, preferring the longest suffix match."""
        best: Zone | None = None
        for zone in await self.get_zones():
            if domain == zone.name:
                return zone
            if domain.endswith(f".{zone.name}") and (best is None or len(zone.name) > len(best.name)):
                best = zone
        return best

    async def add_dns_record(
        self,
        zone_id: str,
        record_type: str,
        name: str,
        content: str,
        ttl: int = 1,
        proxied: bool = False,
    ) -> dict[str, Any]:
        """Create a DNS record. A ttl of 1 means automatic."""
        body = await self._request(
            "add_dns_record",
            "POST",
            f"/zones/{zone_id}/dns_records",
            json={
                "type": record_type,
                "name": name,
                "content": content,
                "ttl": ttl,
                "proxied": proxied,
            },
        )
        return body.get("result") or {}

    async def enable_ssl(self, zone_id: str, mode: str = "full") -> dict[str, Any]:
        """Set the zone's SSL mode."""
        if mode not in SSL_MODES:
            raise ValidationError(f"Unsupported SSL mode: {mode}", {"mode": mode})
        body = await self._request(
            "enable_ssl",
            "PATCH",
            f"/zones/{zone_id}/settings/ssl",
            json={"value": mode},
        )
        logger.info("CDN SSL mode set", zone_id=zone_id, mode=mode)
        return body.get("result") or {}

    async def get_ssl_status(self, zone_id: str) -> str:
        """Return the zone's current SSL mode."""
        body = await self._request("get_ssl_status", "GET", f"/zones/{zone_id}/settings/ssl")
        return str((body.get("result") or {}).get("value", "unknown"))
