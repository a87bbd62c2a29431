"""Observational TLS probe for custom domains.

The probe connects to ``domain:443`` without hostname or CA validation and
reads the peer certificate. It answers "is there a certificate, who issued
it and when does it expire", never "is this connection trustworthy".
"""

from __future__ import annotations

import asyncio
import math
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog
from cryptography import x509
from cryptography.x509.oid import NameOID

from domainmapper.observability.metrics import CERTIFICATE_PROBES

logger = structlog.get_logger()

MAX_TLS_TIMEOUT = 30.0


class IssuerCategory(str, Enum):
    """Coarse bucket for a certificate's issuer organization."""

    MANAGED_CDN = "managed_cdn"
    AUTOMATED_CA = "automated_ca"
    OTHER = "other"


ISSUER_VOCABULARY: dict[IssuerCategory, tuple[str, ...]] = {
    IssuerCategory.MANAGED_CDN: ("cloudflare",),
    IssuerCategory.AUTOMATED_CA: ("let's encrypt", "lets encrypt", "letsencrypt", "zerossl"),
}


def classify_issuer(organization: str | None) -> IssuerCategory:
    """Bucket an issuer organization by case-insensitive substring match."""
    if not organization:
        return IssuerCategory.OTHER
    lowered = organization.lower()
    for category, needles in ISSUER_VOCABULARY.items():
        if any(needle in lowered for needle in needles):
            return category
    return IssuerCategory.OTHER


@dataclass
class CertificateInfo:
    """What the TLS probe saw for a domain."""

    domain: str
    present: bool
    valid: bool = False
    issuer: str | None = None
    issuer_category: IssuerCategory = IssuerCategory.OTHER
    subject: str | None = None
    not_after: datetime | None = None
    days_remaining: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "present": self.present,
            "valid": self.valid,
            "issuer": self.issuer,
            "issuer_category": self.issuer_category.value,
            "subject": self.subject,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "days_remaining": self.days_remaining,
            "error": self.error,
        }


def _name_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> str | None:
    attributes = name.get_attributes_for_oid(oid)
    if not attributes:
        return None
    value = attributes[0].value
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value


def parse_certificate(domain: str, der: bytes, now: datetime) -> CertificateInfo:
    """Build CertificateInfo from a DER-encoded certificate.

    Args:
        domain: Domain the certificate was served for.
        der: Certificate bytes as returned by getpeercert(binary_form=True).
        now: Reference time (timezone-aware UTC).

    Returns:
        CertificateInfo with present=True.
    """
    cert = x509.load_der_x509_certificate(der)
    not_after = cert.not_valid_after_utc
    issuer = _name_attribute(cert.issuer, NameOID.ORGANIZATION_NAME) or _name_attribute(
        cert.issuer, NameOID.COMMON_NAME
    )
    seconds_left = (not_after - now).total_seconds()
    return CertificateInfo(
        domain=domain,
        present=True,
        valid=not_after > now,
        issuer=issuer,
        issuer_category=classify_issuer(issuer),
        subject=_name_attribute(cert.subject, NameOID.COMMON_NAME),
        not_after=not_after,
        days_remaining=max(0, math.floor(seconds_left / 86400)),
    )


def _probe_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class CertificateInspector:
    """Fetches and parses the certificate served on port 443."""

    def __init__(
        self,
        timeout: float = 30.0,
        port: int = 443,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize inspector.

        Args:
            timeout: Connect plus handshake timeout in seconds, capped at 30.
            port: TLS port to probe.
            clock: Returns the current UTC time. Defaults to datetime.now(UTC).
        """
        self.timeout = min(timeout, MAX_TLS_TIMEOUT)
        self.port = port
        self.clock = clock or (lambda: datetime.now(UTC))

    async def fetch_der(self, domain: str) -> bytes | None:
        """Open a TLS connection and return the peer certificate in DER form."""
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(
                domain, self.port, ssl=_probe_context(), server_hostname=domain
            ),
            timeout=self.timeout,
        )
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            return ssl_object.getpeercert(binary_form=True) if ssl_object else None
        finally:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
            except (OSError, TimeoutError, ssl.SSLError):
                logger.debug("TLS close did not complete cleanly", domain=domain)

    async def inspect(self, domain: str) -> CertificateInfo:
        """Probe a domain's certificate.

        Connection failure, timeout, refusal and handshake errors return
        present=False instead of raising.
        """
        try:
            der = await self.fetch_der(domain)
        except (OSError, TimeoutError, ssl.SSLError) as e:
            CERTIFICATE_PROBES.labels(result="absent").inc()
            if isinstance(e, TimeoutError):
                error = f"Connection timed out after {self.timeout}s"
            else:
                error = str(e) or type(e).__name__
            logger.info("No certificate reachable", domain=domain, error=error)
            return CertificateInfo(domain=domain, present=False, error=error)

        if not der:
            CERTIFICATE_PROBES.labels(result="absent").inc()
            return CertificateInfo(domain=domain, present=False, error="No peer certificate")

        try:
            info = parse_certificate(domain, der, self.clock())
        except ValueError as e:
            CERTIFICATE_PROBES.labels(result="absent").inc()
            return CertificateInfo(domain=domain, present=False, error=f"Unparseable certificate: {e}")

        CERTIFICATE_PROBES.labels(result="present").inc()
        logger.info(
            "Certificate inspected",
            domain=domain,
            issuer=info.issuer,
            days_remaining=info.days_remaining,
            valid=info.valid,
        )
        return info
