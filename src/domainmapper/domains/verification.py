"""DNS TXT challenge for custom domain ownership.

The owner proves control of a domain by publishing a platform-issued token
in a TXT record on the domain itself:

    example.com  TXT  "domainmapper-verification=3f9a...c1"

A check passes when any TXT record on the domain contains the token. Zero
records is a normal negative result, not an error.

Lookups go through the ``TxtResolver`` interface. ``AiodnsResolver`` is the
native implementation; ``SubprocessResolver`` shells out to dig or nslookup
against a specific server with a hard timeout, and ``FallbackResolver``
chains them.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import secrets
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import aiodns
import pycares
import structlog

from domainmapper.core.exceptions import ExternalServiceError, ValidationError
from domainmapper.domains.models import VerificationInstructions
from domainmapper.observability.metrics import DNS_LOOKUP_DURATION, VERIFICATION_CHECKS

if TYPE_CHECKING:
    from domainmapper.core.config import VerificationSettings

logger = structlog.get_logger()

DEFAULT_TOKEN_PREFIX = "domainmapper-verification="

MAX_SUBPROCESS_TIMEOUT = 10.0

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')

_EMPTY_ANSWER_CODES = frozenset({aiodns.error.ARES_ENOTFOUND, aiodns.error.ARES_ENODATA})

_QUERY_TYPES = {"TXT": pycares.QUERY_TYPE_TXT, "NS": pycares.QUERY_TYPE_NS}

DNS_PROVIDER_MARKERS: dict[str, tuple[str, ...]] = {
    "cloudflare": ("cloudflare",),
    "godaddy": ("godaddy", "domaincontrol.com"),
    "namecheap": ("namecheap", "registrar-servers.com"),
    "google": ("googledomains", "google"),
}


def generate_token(prefix: str = DEFAULT_TOKEN_PREFIX) -> str:
    """Generate a verification token.

    Args:
        prefix: Fixed prefix that lets operators spot platform-issued records.

    Returns:
        The prefix followed by 128 random bits as hex
        (e.g., "domainmapper-verification=9b1f...e2").
    """
    return f"{prefix}{secrets.token_hex(16)}"


def normalize_domain(raw: str, strip_www: bool = True) -> str:
    """Normalize user input to a bare lowercase hostname.

    Examples:
        normalize_domain("https://WWW.Shop.Example.com/") -> "shop.example.com"
        normalize_domain("www.example.com", strip_www=False) -> "www.example.com"
    """
    domain = raw.strip()
    domain = _SCHEME_RE.sub("", domain)
    domain = domain.split("/", 1)[0]
    domain = domain.lower().rstrip(".")
    if strip_www and domain.startswith("www."):
        domain = domain[4:]
    return domain


def validate_domain(domain: str) -> tuple[bool, str | None]:
    """Validate a normalized hostname.

    Rules:
    - At least two labels
    - Each label 1-63 characters of a-z, 0-9 and hyphen
    - No label starts or ends with a hyphen
    - At most 253 characters overall

    Args:
        domain: Normalized hostname.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not domain:
        return False, "Domain is empty"

    if len(domain) > 253:
        return False, "Domain is longer than 253 characters"

    labels = domain.split(".")
    if len(labels) < 2:
        return False, "Domain must have at least two labels (e.g., example.com)"

    for label in labels:
        if not label:
            return False, "Domain contains an empty label"
        if len(label) > 63:
            return False, f"Label '{label[:20]}...' is longer than 63 characters"
        if not _LABEL_RE.fullmatch(label):
            return False, (
                f"Invalid label '{label}': use letters, digits and hyphens, "
                "not starting or ending with a hyphen"
            )

    return True, None


def require_valid_domain(domain: str) -> None:
    """Raise ValidationError unless domain is a valid normalized hostname."""
    valid, error = validate_domain(domain)
    if not valid:
        raise ValidationError(f"Invalid domain '{domain}': {error}", {"domain": domain})


def build_instructions(domain: str, token: str) -> VerificationInstructions:
    return VerificationInstructions(
        domain=domain,
        record_type="TXT",
        record_name=domain,
        record_value=token,
    )


def _decode_txt(value: str | bytes) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value.strip().strip('"')


def parse_dig_output(output: str) -> list[str]:
    """Parse `dig +short` output into record values.

    Multi-string TXT records ("part1" "part2") are joined.
    """
    records = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith(";"):
            continue
        parts = _QUOTED_RE.findall(line)
        records.append("".join(parts) if parts else line.rstrip("."))
    return records


def parse_nslookup_output(output: str, marker: str = "text =") -> list[str]:
    """Parse nslookup output, keeping the value after ``marker`` on each line."""
    records = []
    for line in output.splitlines():
        if marker not in line:
            continue
        value = line.split(marker, 1)[1].strip()
        parts = _QUOTED_RE.findall(value)
        records.append("".join(parts) if parts else value.rstrip("."))
    return records


class TxtResolver(ABC):
    """Resolver interface used by the challenge protocol.

    NXDOMAIN and empty answers return an empty list. Timeouts and server
    failures raise ExternalServiceError.
    """

    name: str = "resolver"

    @abstractmethod
    async def resolve_txt(self, domain: str) -> list[str]:
        """Return the TXT record values for a domain."""

    @abstractmethod
    async def resolve_ns(self, domain: str) -> list[str]:
        """Return the nameserver hostnames for a domain, without trailing dots."""


class AiodnsResolver(TxtResolver):
    """Native asynchronous resolver backed by aiodns (c-ares)."""

    def __init__(
        self,
        nameservers: Sequence[str] | None = None,
        timeout: float = 5.0,
        name: str | None = None,
    ) -> None:
        """Initialize resolver.

        Args:
            nameservers: Servers to query. None uses the system configuration.
            timeout: Timeout in seconds for a single query.
            name: Label used in logs and propagation reports.
        """
        self.nameservers = list(nameservers) if nameservers else None
        self.timeout = timeout
        self.name = name or (",".join(self.nameservers) if self.nameservers else "system")

    def _get_resolver(self) -> aiodns.DNSResolver:
        """Create a resolver for one lookup; nothing is shared between calls."""
        if self.nameservers:
            return aiodns.DNSResolver(nameservers=self.nameservers, timeout=self.timeout, tries=1)
        return aiodns.DNSResolver(timeout=self.timeout, tries=1)

    async def _query(self, domain: str, record_type: str) -> list:
        """Run one query and return the answer records of the requested type."""
        resolver = self._get_resolver()
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                resolver.query_dns(domain, record_type), timeout=self.timeout + 1.0
            )
        except aiodns.error.DNSError as e:
            code = e.args[0] if e.args else None
            if code in _EMPTY_ANSWER_CODES:
                return []
            raise ExternalServiceError(
                f"{record_type} lookup for {domain} failed: {e}",
                {"domain": domain, "resolver": self.name},
            ) from e
        except TimeoutError as e:
            raise ExternalServiceError(
                f"{record_type} lookup for {domain} timed out after {self.timeout}s",
                {"domain": domain, "resolver": self.name},
            ) from e
        finally:
            await resolver.close()
            DNS_LOOKUP_DURATION.labels(record_type=record_type).observe(
                time.perf_counter() - started
            )
        wanted = _QUERY_TYPES[record_type]
        return [record.data for record in result.answer if record.type == wanted]

    async def resolve_txt(self, domain: str) -> list[str]:
        return [_decode_txt(data.data) for data in await self._query(domain, "TXT")]

    async def resolve_ns(self, domain: str) -> list[str]:
        return [data.nsdname.rstrip(".").lower() for data in await self._query(domain, "NS")]


def default_lookup_tool() -> str:
    """Pick dig when installed, otherwise nslookup."""
    return "dig" if shutil.which("dig") else "nslookup"


class SubprocessResolver(TxtResolver):
    """Fallback resolver that runs dig or nslookup against one server.

    The child process is killed if it outlives the timeout.
    """

    def __init__(self, server: str, tool: str = "dig", timeout: float = 10.0) -> None:
        if tool not in ("dig", "nslookup"):
            raise ValueError(f"Unsupported lookup tool: {tool}")
        self.server = server
        self.tool = tool
        self.timeout = min(timeout, MAX_SUBPROCESS_TIMEOUT)
        self.name = f"{tool}@{server}"

    def _command(self, domain: str, record_type: str) -> list[str]:
        if self.tool == "dig":
            return [
                "dig",
                "+short",
                f"+time={max(int(self.timeout) - 1, 1)}",
                "+tries=1",
                f"@{self.server}",
                domain,
                record_type,
            ]
        return ["nslookup", f"-type={record_type}", domain, self.server]

    async def _run(self, domain: str, record_type: str) -> tuple[int, str]:
        command = self._command(domain, record_type)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExternalServiceError(
                f"{self.tool} is not installed", {"resolver": self.name}
            ) from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError as e:
            raise ExternalServiceError(
                f"{self.tool} lookup for {domain} timed out after {self.timeout}s",
                {"domain": domain, "resolver": self.name},
            ) from e
        finally:
            # Timed out or cancelled: never leave the child running
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        return proc.returncode or 0, stdout.decode("utf-8", errors="replace")

    async def _lookup(self, domain: str, record_type: str) -> list[str]:
        returncode, output = await self._run(domain, record_type)
        if self.tool == "dig":
            if returncode != 0:
                raise ExternalServiceError(
                    f"dig exited with status {returncode}",
                    {"domain": domain, "resolver": self.name},
                )
            return parse_dig_output(output)

        marker = "text =" if record_type == "TXT" else "nameserver ="
        records = parse_nslookup_output(output, marker)
        if not records and returncode != 0 and "can't find" not in output:
            raise ExternalServiceError(
                f"nslookup exited with status {returncode}",
                {"domain": domain, "resolver": self.name},
            )
        return records

    async def resolve_txt(self, domain: str) -> list[str]:
        return await self._lookup(domain, "TXT")

    async def resolve_ns(self, domain: str) -> list[str]:
        return [ns.lower() for ns in await self._lookup(domain, "NS")]


class FallbackResolver(TxtResolver):
    """Try resolvers in order; the first non-empty answer wins.

    If every resolver failed, the last error is raised. If at least one
    answered (even with nothing), the result is an empty list.
    """

    def __init__(self, resolvers: Sequence[TxtResolver]) -> None:
        if not resolvers:
            raise ValueError("FallbackResolver needs at least one resolver")
        self.resolvers = list(resolvers)
        self.name = "fallback(" + ",".join(r.name for r in self.resolvers) + ")"

    async def _first_answer(self, domain: str, record_type: str) -> list[str]:
        last_error: ExternalServiceError | None = None
        answered = False
        for resolver in self.resolvers:
            try:
                if record_type == "TXT":
                    records = await resolver.resolve_txt(domain)
                else:
                    records = await resolver.resolve_ns(domain)
            except ExternalServiceError as e:
                logger.debug(
                    "Resolver failed, trying next",
                    resolver=resolver.name,
                    domain=domain,
                    error=e.message,
                )
                last_error = e
                continue
            answered = True
            if records:
                return records
        if not answered and last_error is not None:
            raise last_error
        return []

    async def resolve_txt(self, domain: str) -> list[str]:
        return await self._first_answer(domain, "TXT")

    async def resolve_ns(self, domain: str) -> list[str]:
        return await self._first_answer(domain, "NS")


@dataclass
class TxtCheckResult:
    """Outcome of a single TXT challenge check."""

    domain: str
    verified: bool
    matched_records: list[str] = field(default_factory=list)
    all_records: list[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "verified": self.verified,
            "matched_records": self.matched_records,
            "all_records": self.all_records,
            "message": self.message,
        }


@dataclass
class ResolverProbe:
    """Result of the challenge check against one resolver of the panel."""

    resolver: str
    address: str
    found: bool
    records: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class PropagationResult:
    """How many resolvers of the panel already see the token."""

    domain: str
    total_resolvers: int
    matched_resolvers: int
    percentage: float
    results: list[ResolverProbe] = field(default_factory=list)
    dns_provider: str = "unknown"

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "total_resolvers": self.total_resolvers,
            "matched_resolvers": self.matched_resolvers,
            "percentage": self.percentage,
            "dns_provider": self.dns_provider,
            "results": [
                {
                    "resolver": p.resolver,
                    "address": p.address,
                    "found": p.found,
                    "records": p.records,
                    "error": p.error,
                }
                for p in self.results
            ],
        }


def _match(records: list[str], token: str) -> list[str]:
    return [record for record in records if token in record]


class ChallengeVerifier:
    """Runs the TXT challenge against a primary resolver and a propagation panel."""

    def __init__(
        self,
        resolver: TxtResolver,
        panel: dict[str, tuple[str, TxtResolver]] | None = None,
    ) -> None:
        """Initialize verifier.

        Args:
            resolver: Resolver used for the authoritative check.
            panel: Propagation panel as address -> (label, resolver).
        """
        self.resolver = resolver
        self.panel = panel or {}

    @classmethod
    def from_settings(cls, settings: VerificationSettings) -> ChallengeVerifier:
        primary: TxtResolver = AiodnsResolver(settings.nameservers or None, settings.timeout)
        if settings.subprocess_fallback and settings.fallback_nameservers:
            tool = default_lookup_tool()
            primary = FallbackResolver(
                [primary]
                + [
                    SubprocessResolver(server, tool=tool, timeout=settings.timeout)
                    for server in settings.fallback_nameservers
                ]
            )
        panel = {
            address: (label, AiodnsResolver([address], settings.timeout, name=label))
            for address, label in settings.propagation_resolvers.items()
        }
        return cls(primary, panel)

    async def check(self, domain: str, token: str) -> TxtCheckResult:
        """Check whether any TXT record on domain contains token.

        Raises:
            ExternalServiceError: If the lookup timed out or the server failed.
        """
        records = await self.resolver.resolve_txt(domain)
        matched = _match(records, token)

        if not records:
            outcome, message = "no_records", "No TXT records found"
        elif matched:
            outcome, message = "verified", "Verification token found"
        else:
            outcome, message = "mismatch", "Verification token not found"

        VERIFICATION_CHECKS.labels(result=outcome).inc()
        logger.info("TXT challenge checked", domain=domain, result=outcome, records=len(records))
        return TxtCheckResult(
            domain=domain,
            verified=bool(matched),
            matched_records=matched,
            all_records=records,
            message=message,
        )

    async def _probe(self, address: str, label: str, resolver: TxtResolver, domain: str, token: str) -> ResolverProbe:
        try:
            records = await resolver.resolve_txt(domain)
        except ExternalServiceError as e:
            return ResolverProbe(resolver=label, address=address, found=False, error=e.message)
        return ResolverProbe(
            resolver=label,
            address=address,
            found=bool(_match(records, token)),
            records=records,
        )

    async def propagation(self, domain: str, token: str) -> PropagationResult:
        """Query every panel resolver concurrently and report how many see the token.

        The report also names the DNS host, so the caller can tell the owner
        where the record has to be published.
        """
        provider, *probes = await asyncio.gather(
            self.detect_dns_provider(domain),
            *(
                self._probe(address, label, resolver, domain, token)
                for address, (label, resolver) in self.panel.items()
            ),
        )
        total = len(probes)
        matched = sum(1 for p in probes if p.found)
        percentage = round(matched / total * 100, 2) if total else 0.0
        return PropagationResult(
            domain=domain,
            total_resolvers=total,
            matched_resolvers=matched,
            percentage=percentage,
            results=list(probes),
            dns_provider=provider,
        )

    async def lookup_nameservers(self, domain: str) -> list[str]:
        return await self.resolver.resolve_ns(domain)

    async def detect_dns_provider(self, domain: str) -> str:
        """Guess the DNS host from the domain's nameservers.

        Returns:
            One of "cloudflare", "godaddy", "namecheap", "google" or "unknown".
        """
        try:
            nameservers = await self.lookup_nameservers(domain)
        except ExternalServiceError:
            return "unknown"
        for provider, markers in DNS_PROVIDER_MARKERS.items():
            if any(marker in ns for ns in nameservers for marker in markers):
                return provider
        return "unknown"
