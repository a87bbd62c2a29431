"""Wire components from settings.

Both the CLI and the HTTP API build their object graph here so that they
share one definition of how settings map onto components.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from domainmapper.cdn.cloudflare import CloudflareClient
from domainmapper.certificates.inspector import CertificateInspector
from domainmapper.certificates.provisioner import CertificateProvisioner
from domainmapper.core.config import DomainMapperSettings
from domainmapper.domains.events import (
    CompositeDispatcher,
    LoggingDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
)
from domainmapper.domains.manager import LifecycleManager, TenantDirectory
from domainmapper.domains.registry import DomainRegistry, InMemoryRegistry, SQLiteRegistry
from domainmapper.domains.verification import ChallengeVerifier
from domainmapper.observability.health import HealthMonitor
from domainmapper.proxy.generator import ProxyConfigGenerator

logger = structlog.get_logger()


@dataclass
class Components:
    settings: DomainMapperSettings
    registry: DomainRegistry
    verifier: ChallengeVerifier
    inspector: CertificateInspector
    dispatcher: NotificationDispatcher
    proxy_generator: ProxyConfigGenerator
    health: HealthMonitor
    provisioner: CertificateProvisioner
    manager: LifecycleManager
    cdn: CloudflareClient | None = None

    async def close(self) -> None:
        """Release network clients and the registry connection."""
        if self.cdn is not None:
            await self.cdn.close()
        await self.dispatcher.close()
        await self.registry.close()


def build_registry(path: str) -> DomainRegistry:
    if path == ":memory:":
        return InMemoryRegistry()
    return SQLiteRegistry(path)


def build_dispatcher(settings: DomainMapperSettings) -> NotificationDispatcher:
    logging_dispatcher = LoggingDispatcher()
    url = settings.notifications.webhook_url
    if not url:
        return logging_dispatcher
    return CompositeDispatcher(
        [logging_dispatcher, WebhookDispatcher(url, timeout=settings.notifications.webhook_timeout)]
    )


def build_components(
    settings: DomainMapperSettings,
    registry: DomainRegistry | None = None,
    verifier: ChallengeVerifier | None = None,
    dispatcher: NotificationDispatcher | None = None,
    tenants: TenantDirectory | None = None,
) -> Components:
    """Build the full component graph.

    Args:
        settings: Loaded settings.
        registry: Registry to use instead of the configured one.
        verifier: Verifier to use instead of one built from DNS settings.
        dispatcher: Dispatcher to use instead of log plus optional webhook.
        tenants: Tenant directory for transfers. Defaults to accepting everyone.

    Returns:
        Components ready for use. Call ``close()`` when done.
    """
    registry = registry or build_registry(settings.registry.path)
    verifier = verifier or ChallengeVerifier.from_settings(settings.verification)
    dispatcher = dispatcher or build_dispatcher(settings)
    certs = settings.certificates

    cdn: CloudflareClient | None = None
    if settings.cloudflare.api_token:
        cdn = CloudflareClient(
            settings.cloudflare.api_token,
            base_url=settings.cloudflare.api_url,
            timeout=settings.cloudflare.timeout,
        )

    inspector = CertificateInspector(timeout=certs.tls_timeout)
    health = HealthMonitor(
        registry,
        timeout=settings.health.timeout,
        concurrency=settings.health.concurrency,
    )
    proxy_generator = ProxyConfigGenerator(certs.certs_dir)
    provisioner = CertificateProvisioner(
        registry,
        inspector,
        verifier,
        dispatcher,
        certs,
        cdn=cdn,
        reachability=health.is_reachable,
    )
    manager = LifecycleManager(
        registry,
        verifier,
        provisioner,
        proxy_generator,
        dispatcher=dispatcher,
        tenants=tenants,
        max_domains_per_owner=settings.registry.max_domains_per_owner,
        allow_reverify_rejected=settings.registry.allow_reverify_rejected,
        token_prefix=settings.verification.token_prefix,
        strip_www=settings.verification.strip_www,
        default_upstream=settings.proxy.upstream_url,
    )
    logger.debug(
        "Components built",
        registry=type(registry).__name__,
        cdn=cdn is not None,
        webhook=bool(settings.notifications.webhook_url),
    )
    return Components(
        settings=settings,
        registry=registry,
        verifier=verifier,
        inspector=inspector,
        dispatcher=dispatcher,
        proxy_generator=proxy_generator,
        health=health,
        provisioner=provisioner,
        manager=manager,
        cdn=cdn,
    )
