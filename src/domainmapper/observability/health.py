"""HTTP accessibility sampling for custom domains."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
import structlog

from domainmapper.domains.models import MappingStatus
from domainmapper.domains.registry import DomainRegistry
from domainmapper.observability.metrics import HEALTH_RESPONSE_TIME

logger = structlog.get_logger()


@dataclass
class HealthSample:
    """One HTTP probe of a domain."""

    domain: str
    url: str
    status_code: int | None
    response_time_ms: float | None
    accessible: bool
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "url": self.url,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "accessible": self.accessible,
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
        }


class HealthMonitor:
    """Probes domains over HTTP(S) and samples every live mapping."""

    def __init__(
        self,
        registry: DomainRegistry | None = None,
        timeout: float = 30.0,
        concurrency: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.timeout = timeout
        self.concurrency = concurrency
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            verify=False,
            transport=self._transport,
        )

    async def probe(self, domain: str, scheme: str = "https") -> HealthSample:
        """GET the domain root and record status and latency.

        A response with status 200-399 counts as accessible. Network errors
        produce an inaccessible sample, never an exception.
        """
        url = f"{scheme}://{domain}/"
        started = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            return HealthSample(
                domain=domain,
                url=url,
                status_code=None,
                response_time_ms=None,
                accessible=False,
                error=str(e) or type(e).__name__,
            )
        elapsed = time.perf_counter() - started
        HEALTH_RESPONSE_TIME.observe(elapsed)
        return HealthSample(
            domain=domain,
            url=url,
            status_code=response.status_code,
            response_time_ms=round(elapsed * 1000, 2),
            accessible=200 <= response.status_code < 400,
        )

    async def is_reachable(self, domain: str, scheme: str = "http") -> bool:
        return (await self.probe(domain, scheme)).accessible

    async def check_accessibility(self, domain: str) -> dict[str, HealthSample]:
        """Probe a domain over both http and https."""
        http, https = await asyncio.gather(self.probe(domain, "http"), self.probe(domain, "https"))
        return {"http": http, "https": https}

    async def collect_samples(self, per_page: int = 100) -> list[HealthSample]:
        """Sample every live mapping with bounded concurrency."""
        if self.registry is None:
            raise RuntimeError("HealthMonitor needs a registry to collect samples")

        domains: list[str] = []
        page = 1
        while True:
            batch = await self.registry.list(
                status=MappingStatus.LIVE, page=page, per_page=per_page
            )
            domains.extend(m.domain for m in batch)
            if len(batch) < per_page:
                break
            page += 1

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(domain: str) -> HealthSample:
            async with semaphore:
                return await self.probe(domain)

        samples = await asyncio.gather(*(bounded(d) for d in domains))
        logger.info(
            "Health samples collected",
            total=len(samples),
            accessible=sum(1 for s in samples if s.accessible),
        )
        return list(samples)
