"""Certificate provisioning coordinator.

Three paths lead to a certificate:

- managed_cdn: the domain delegates its nameservers to the CDN, which
  issues and renews the certificate at the edge. No key is stored here.
- automated_ca: an external ACME client runs a command this module
  renders. The command is never executed here.
- manual: the owner buys and installs a certificate.

The renewal sweep re-probes automated certificates and only notifies.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from domainmapper.certificates.inspector import CertificateInfo, CertificateInspector
from domainmapper.core.exceptions import ExternalServiceError, StateError, ValidationError
from domainmapper.domains.events import EventName, NotificationDispatcher, emit
from domainmapper.domains.models import DomainMapping, MappingStatus, SslStatus
from domainmapper.domains.registry import DomainRegistry
from domainmapper.domains.verification import ChallengeVerifier
from domainmapper.observability.metrics import CERTIFICATES_EXPIRING

if TYPE_CHECKING:
    from domainmapper.cdn.cloudflare import CloudflareClient
    from domainmapper.core.config import CertificateSettings

logger = structlog.get_logger()

PROVISIONABLE_STATUSES = frozenset(
    {MappingStatus.VERIFIED, MappingStatus.APPROVED, MappingStatus.LIVE}
)
RENEWABLE_SSL_STATUSES = (SslStatus.AUTO, SslStatus.MANAGED_CDN)


class ProvisioningPath(str, Enum):
    MANAGED_CDN = "managed_cdn"
    AUTOMATED_CA = "automated_ca"
    MANUAL = "manual"


_SSL_STATUS_FOR_PATH = {
    ProvisioningPath.MANAGED_CDN: SslStatus.MANAGED_CDN,
    ProvisioningPath.AUTOMATED_CA: SslStatus.AUTO,
    ProvisioningPath.MANUAL: SslStatus.MANUAL,
}


@dataclass
class ProvisioningResult:
    """What the caller has to do next for the chosen path."""

    mapping: DomainMapping
    provider: ProvisioningPath
    instructions: list[str]
    commands: list[str] = field(default_factory=list)
    nameservers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping": self.mapping.to_dict(),
            "provider": self.provider.value,
            "ssl_status": self.mapping.ssl_status.value,
            "instructions": self.instructions,
            "commands": self.commands,
            "nameservers": self.nameservers,
        }


@dataclass
class CertificateStatus:
    mapping: DomainMapping
    certificate: CertificateInfo
    setup_required: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.mapping.domain,
            "ssl_status": self.mapping.ssl_status.value,
            "certificate": self.certificate.to_dict(),
            "setup_required": self.setup_required,
        }


@dataclass
class SweepReport:
    """Outcome of one renewal sweep."""

    checked: int = 0
    expiring: list[CertificateInfo] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "expiring": [c.to_dict() for c in self.expiring],
            "unreachable": self.unreachable,
        }


def _manual_instructions(domain: str) -> list[str]:
    return [
        "Purchase an SSL certificate from a certificate authority.",
        f"Generate a CSR for {domain} on your server.",
        "Submit the CSR to the certificate authority.",
        "Download and install the certificate and key files.",
        "Configure your web server with the generated proxy configuration.",
        "Test the TLS configuration.",
    ]


def _managed_cdn_instructions(domain: str, nameservers: list[str]) -> list[str]:
    delegate = (
        f"Update the nameservers of {domain} at your registrar to: {', '.join(nameservers)}."
        if nameservers
        else f"Update the nameservers of {domain} at your registrar to the CDN's nameservers."
    )
    return [
        f"Add {domain} to your CDN account if it is not there yet.",
        delegate,
        "Wait for DNS propagation (usually 5-10 minutes, up to 48 hours).",
        "The CDN issues and renews the certificate automatically.",
    ]


class CertificateProvisioner:
    """Chooses and drives a certificate provisioning path for a mapping."""

    def __init__(
        self,
        registry: DomainRegistry,
        inspector: CertificateInspector,
        verifier: ChallengeVerifier,
        dispatcher: NotificationDispatcher,
        settings: CertificateSettings,
        cdn: CloudflareClient | None = None,
        reachability: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        """Initialize provisioner.

        Args:
            registry: Mapping storage.
            inspector: TLS probe used by status checks and the renewal sweep.
            verifier: Used for nameserver lookups.
            dispatcher: Receives cert_provisioned and cert_expiring.
            settings: Certificate settings.
            cdn: CDN API client. When None the managed path only records the
                choice and returns instructions.
            reachability: Async predicate telling whether http://domain answers.
        """
        self.registry = registry
        self.inspector = inspector
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.settings = settings
        self.cdn = cdn
        self.reachability = reachability

    def acme_client_available(self) -> bool:
        """Whether an ACME client binary is installed locally."""
        for path in self.settings.acme_client_paths:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return True
        return shutil.which("certbot") is not None

    def acme_command(self, domain: str) -> str:
        return self.settings.acme_command_template.format(
            domain=shlex.quote(domain),
            email=shlex.quote(self.settings.acme_contact_email),
        )

    async def is_delegated_to_cdn(self, domain: str) -> bool:
        """Whether the domain's NS records point at the managed CDN.

        A failed lookup counts as not delegated.
        """
        try:
            nameservers = await self.verifier.lookup_nameservers(domain)
        except ExternalServiceError as e:
            logger.info("Nameserver lookup failed", domain=domain, error=e.message)
            return False
        marker = self.settings.managed_cdn_ns_marker.lower()
        return any(marker in ns.lower() for ns in nameservers)

    async def choose_path(self, domain: str) -> ProvisioningPath:
        """Pick the best provisioning path without operator input."""
        if await self.is_delegated_to_cdn(domain):
            return ProvisioningPath.MANAGED_CDN
        if (
            self.settings.automated_ca_enabled
            and self.acme_client_available()
            and self.reachability is not None
            and await self.reachability(domain)
        ):
            return ProvisioningPath.AUTOMATED_CA
        return ProvisioningPath.MANUAL

    async def setup(self, mapping: DomainMapping, provider: ProvisioningPath | str) -> ProvisioningResult:
        """Provision a certificate for a mapping along the given path.

        Args:
            mapping: A verified, approved or live mapping.
            provider: managed_cdn, automated_ca or manual.

        Returns:
            ProvisioningResult with the updated mapping and next steps.

        Raises:
            ValidationError: If the provider is unknown.
            StateError: If the mapping is not yet verified, or the automated
                CA path is disabled.
            ExternalServiceError: If the CDN API call fails. No state changes.
        """
        try:
            path = ProvisioningPath(provider)
        except ValueError as e:
            raise ValidationError(f"Invalid SSL provider: {provider}", {"provider": str(provider)}) from e

        if mapping.status not in PROVISIONABLE_STATUSES:
            raise StateError(
                f"Domain {mapping.domain} must be verified before certificate setup "
                f"(status: {mapping.status.value})",
                {"id": mapping.id, "status": mapping.status.value},
            )

        commands: list[str] = []
        nameservers: list[str] = []

        if path == ProvisioningPath.MANAGED_CDN:
            if self.cdn is not None:
                zone = await self.cdn.find_zone(mapping.domain)
                if zone is None:
                    raise ExternalServiceError(
                        f"No CDN zone found for {mapping.domain}", {"domain": mapping.domain}
                    )
                await self.cdn.enable_ssl(zone.id, self.settings.cdn_ssl_mode)
                nameservers = zone.name_servers
            instructions = _managed_cdn_instructions(mapping.domain, nameservers)
        elif path == ProvisioningPath.AUTOMATED_CA:
            if not self.settings.automated_ca_enabled:
                raise StateError(
                    "Automated certificate issuance is disabled",
                    {"setting": "automated_ca_enabled"},
                )
            commands = [self.acme_command(mapping.domain), "certbot renew --dry-run"]
            instructions = [
                "Make sure an ACME client (e.g. certbot) is installed on the proxy host.",
                f"Make sure http://{mapping.domain} reaches the proxy host.",
                "Run the issuance command, then the renewal dry run.",
                "Schedule renewal, e.g. '0 12 * * * certbot renew --quiet'.",
            ]
        else:
            instructions = _manual_instructions(mapping.domain)

        updated = await self.registry.update(
            mapping.id,
            expected_status=mapping.status,
            ssl_status=_SSL_STATUS_FOR_PATH[path],
        )
        logger.info("Certificate path configured", domain=updated.domain, provider=path.value)
        await emit(
            self.dispatcher,
            EventName.CERT_PROVISIONED,
            {
                "mapping_id": updated.id,
                "domain": updated.domain,
                "owner_id": updated.owner_id,
                "provider": path.value,
            },
        )
        return ProvisioningResult(
            mapping=updated,
            provider=path,
            instructions=instructions,
            commands=commands,
            nameservers=nameservers,
        )

    async def auto_provision(self, mapping: DomainMapping) -> ProvisioningResult:
        """Choose the best path for the mapping and set it up."""
        path = await self.choose_path(mapping.domain)
        logger.info("Provisioning path chosen", domain=mapping.domain, provider=path.value)
        return await self.setup(mapping, path)

    async def certificate_status(self, mapping: DomainMapping) -> CertificateStatus:
        info = await self.inspector.inspect(mapping.domain)
        setup_required = mapping.ssl_status == SslStatus.NONE or (
            mapping.ssl_status == SslStatus.MANUAL and not info.valid
        )
        return CertificateStatus(mapping=mapping, certificate=info, setup_required=setup_required)

    async def renewal_sweep(self, per_page: int = 100) -> SweepReport:
        """Re-probe automated certificates and warn about the ones expiring soon.

        Probes run with at most ``sweep_concurrency`` simultaneous connections.
        Mapping state is never modified.
        """
        mappings: list[DomainMapping] = []
        page = 1
        while True:
            batch = await self.registry.list(
                ssl_statuses=RENEWABLE_SSL_STATUSES, page=page, per_page=per_page
            )
            mappings.extend(batch)
            if len(batch) < per_page:
                break
            page += 1

        semaphore = asyncio.Semaphore(self.settings.sweep_concurrency)

        async def probe(mapping: DomainMapping) -> tuple[DomainMapping, CertificateInfo]:
            async with semaphore:
                return mapping, await self.inspector.inspect(mapping.domain)

        report = SweepReport()
        for mapping, info in await asyncio.gather(*(probe(m) for m in mappings)):
            report.checked += 1
            if not info.present:
                report.unreachable.append(mapping.domain)
                continue
            if info.days_remaining <= self.settings.expiry_warning_days:
                report.expiring.append(info)
                await emit(
                    self.dispatcher,
                    EventName.CERT_EXPIRING,
                    {
                        "mapping_id": mapping.id,
                        "domain": mapping.domain,
                        "owner_id": mapping.owner_id,
                        "days_remaining": info.days_remaining,
                        "not_after": info.not_after.isoformat() if info.not_after else None,
                    },
                )

        CERTIFICATES_EXPIRING.set(len(report.expiring))
        logger.info(
            "Renewal sweep finished",
            checked=report.checked,
            expiring=len(report.expiring),
            unreachable=len(report.unreachable),
        )
        return report
