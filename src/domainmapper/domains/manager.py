"""Lifecycle manager for custom domain mappings.

Every mutation of a mapping goes through this module:

    pending --verify--> verified --approve--> approved --mark_live--> live
                           |
                           +--reject--> rejected

Deletion is allowed from any state. Ownership moves via direct transfer or
via a transfer request approved by an administrator.

Usage:
    manager = LifecycleManager(registry, verifier, provisioner, generator)

    added = await manager.add_domain("42", "https://www.Example.com/")
    outcome = await manager.verify_domain(added.mapping.id)
    approval = await manager.approve_domain(added.mapping.id)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from domainmapper.certificates.inspector import CertificateInfo
from domainmapper.certificates.provisioner import (
    CertificateProvisioner,
    CertificateStatus,
    ProvisioningPath,
    ProvisioningResult,
)
from domainmapper.core.exceptions import StateError, ValidationError
from domainmapper.domains.events import EventName, LoggingDispatcher, NotificationDispatcher, emit
from domainmapper.domains.models import (
    DomainMapping,
    MappingStatus,
    TransferLogEntry,
    TransferRequest,
    TransferStatus,
    VerificationInstructions,
)
from domainmapper.domains.registry import DomainRegistry
from domainmapper.domains.verification import (
    DEFAULT_TOKEN_PREFIX,
    ChallengeVerifier,
    PropagationResult,
    TxtCheckResult,
    build_instructions,
    generate_token,
    normalize_domain,
    require_valid_domain,
)
from domainmapper.observability.metrics import LIFECYCLE_TRANSITIONS
from domainmapper.proxy.generator import ProxyConfig, ProxyConfigGenerator

logger = structlog.get_logger()


class TenantDirectory(ABC):
    """Answers whether an owner id belongs to an active tenant."""

    @abstractmethod
    async def is_active(self, owner_id: str) -> bool:
        """Return True if owner_id may hold domains."""


class AllowAllTenants(TenantDirectory):
    async def is_active(self, owner_id: str) -> bool:
        return bool(owner_id)


class StaticTenantDirectory(TenantDirectory):
    """Accepts a fixed set of owner ids."""

    def __init__(self, owner_ids: Iterable[str]) -> None:
        self.owner_ids = {str(o) for o in owner_ids}

    async def is_active(self, owner_id: str) -> bool:
        return owner_id in self.owner_ids


@dataclass
class AddDomainResult:
    mapping: DomainMapping
    instructions: VerificationInstructions

    def to_dict(self) -> dict[str, Any]:
        return {"mapping": self.mapping.to_dict(), "instructions": self.instructions.to_dict()}


@dataclass
class VerifyOutcome:
    """Result of a verification attempt. A failed check is not an error."""

    mapping: DomainMapping
    verified: bool
    check: TxtCheckResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping": self.mapping.to_dict(),
            "verified": self.verified,
            "check": self.check.to_dict(),
        }


@dataclass
class ApprovalResult:
    mapping: DomainMapping
    proxy: ProxyConfig

    def to_dict(self) -> dict[str, Any]:
        return {"mapping": self.mapping.to_dict(), "proxy": self.proxy.to_dict()}


def _mapping_payload(mapping: DomainMapping, **extra: Any) -> dict[str, Any]:
    return {
        "mapping_id": mapping.id,
        "domain": mapping.domain,
        "owner_id": mapping.owner_id,
        "status": mapping.status.value,
        **extra,
    }


def _require_state(mapping: DomainMapping, allowed: Iterable[MappingStatus], action: str) -> None:
    allowed = tuple(allowed)
    if mapping.status not in allowed:
        raise StateError(
            f"Cannot {action} {mapping.domain}: status is {mapping.status.value}, "
            f"expected {' or '.join(s.value for s in allowed)}",
            {"id": mapping.id, "status": mapping.status.value},
        )


class LifecycleManager:
    """Owns every state transition of a domain mapping."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: ChallengeVerifier,
        provisioner: CertificateProvisioner,
        proxy_generator: ProxyConfigGenerator,
        dispatcher: NotificationDispatcher | None = None,
        tenants: TenantDirectory | None = None,
        max_domains_per_owner: int = 1,
        allow_reverify_rejected: bool = False,
        token_prefix: str = DEFAULT_TOKEN_PREFIX,
        strip_www: bool = True,
        default_upstream: str = "http://127.0.0.1:8080",
    ) -> None:
        """Initialize lifecycle manager.

        Args:
            registry: Mapping storage.
            verifier: TXT challenge checker.
            provisioner: Certificate provisioner.
            proxy_generator: Builds proxy config on approval.
            dispatcher: Receives lifecycle events. Defaults to the structured log.
            tenants: Decides which owners may receive transfers.
            max_domains_per_owner: Quota enforced on add and transfer.
            allow_reverify_rejected: Let rejected mappings be verified again.
            token_prefix: Prefix of generated verification tokens.
            strip_www: Strip a leading "www." during normalization.
            default_upstream: Upstream used when approval does not name one.
        """
        self.registry = registry
        self.verifier = verifier
        self.provisioner = provisioner
        self.proxy_generator = proxy_generator
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.tenants = tenants or AllowAllTenants()
        self.max_domains_per_owner = max_domains_per_owner
        self.allow_reverify_rejected = allow_reverify_rejected
        self.token_prefix = token_prefix
        self.strip_www = strip_www
        self.default_upstream = default_upstream

    async def _notify(self, event: EventName, payload: dict[str, Any]) -> None:
        await emit(self.dispatcher, event, payload)

    # Mapping lifecycle

    async def add_domain(self, owner_id: str, raw_domain: str) -> AddDomainResult:
        """Register a domain for an owner in the pending state.

        Args:
            owner_id: Tenant that will own the mapping.
            raw_domain: User input, e.g. "https://www.shop.example.com/".

        Returns:
            AddDomainResult with the new mapping and the TXT record to publish.

        Raises:
            ValidationError: If the owner id is empty or the domain is malformed.
            ConflictError: If any owner already mapped the domain.
            LimitExceededError: If the owner is at quota.
        """
        if not owner_id:
            raise ValidationError("Owner id is required")
        domain = normalize_domain(raw_domain, strip_www=self.strip_www)
        require_valid_domain(domain)

        mapping = DomainMapping(
            owner_id=owner_id,
            domain=domain,
            verification_token=generate_token(self.token_prefix),
        )
        await self.registry.create(mapping, max_per_owner=self.max_domains_per_owner)
        LIFECYCLE_TRANSITIONS.labels(transition="added").inc()
        logger.info("Domain added", domain=domain, owner_id=owner_id, mapping_id=mapping.id)
        await self._notify(EventName.MAPPING_CREATED, _mapping_payload(mapping))
        return AddDomainResult(
            mapping=mapping,
            instructions=build_instructions(domain, mapping.verification_token),
        )

    async def verify_domain(self, mapping_id: str) -> VerifyOutcome:
        """Run the TXT challenge and move the mapping to verified on success.

        Raises:
            NotFoundError: If the mapping does not exist.
            StateError: If the mapping is not pending (or rejected, when
                re-verification is allowed).
            ExternalServiceError: If the DNS lookup failed. Safe to retry.
        """
        mapping = await self.registry.get(mapping_id)
        allowed = [MappingStatus.PENDING]
        if self.allow_reverify_rejected:
            allowed.append(MappingStatus.REJECTED)
        _require_state(mapping, allowed, "verify")

        check = await self.verifier.check(mapping.domain, mapping.verification_token)
        if not check.verified:
            logger.info("Domain verification failed", domain=mapping.domain, reason=check.message)
            return VerifyOutcome(mapping=mapping, verified=False, check=check)

        fields: dict[str, Any] = {"status": MappingStatus.VERIFIED}
        if mapping.status == MappingStatus.REJECTED:
            fields["rejection_reason"] = None
        updated = await self.registry.update(mapping_id, expected_status=mapping.status, **fields)
        LIFECYCLE_TRANSITIONS.labels(transition="verified").inc()
        logger.info("Domain verified", domain=updated.domain, mapping_id=mapping_id)
        await self._notify(EventName.VERIFIED, _mapping_payload(updated))
        return VerifyOutcome(mapping=updated, verified=True, check=check)

    async def approve_domain(self, mapping_id: str, upstream_url: str | None = None) -> ApprovalResult:
        """Approve a verified mapping and return its proxy configuration.

        The upstream URL is validated before the transition so an invalid URL
        leaves the mapping verified.
        """
        mapping = await self.registry.get(mapping_id)
        _require_state(mapping, [MappingStatus.VERIFIED], "approve")
        proxy = self.proxy_generator.generate(
            mapping.domain, mapping.ssl_status, upstream_url or self.default_upstream
        )
        updated = await self.registry.update(
            mapping_id, expected_status=MappingStatus.VERIFIED, status=MappingStatus.APPROVED
        )
        LIFECYCLE_TRANSITIONS.labels(transition="approved").inc()
        logger.info("Domain approved", domain=updated.domain, mapping_id=mapping_id)
        await self._notify(EventName.APPROVED, _mapping_payload(updated))
        return ApprovalResult(mapping=updated, proxy=proxy)

    async def reject_domain(self, mapping_id: str, reason: str) -> DomainMapping:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        mapping = await self.registry.get(mapping_id)
        _require_state(mapping, [MappingStatus.VERIFIED], "reject")
        updated = await self.registry.update(
            mapping_id,
            expected_status=MappingStatus.VERIFIED,
            status=MappingStatus.REJECTED,
            rejection_reason=reason,
        )
        LIFECYCLE_TRANSITIONS.labels(transition="rejected").inc()
        logger.info("Domain rejected", domain=updated.domain, mapping_id=mapping_id, reason=reason)
        await self._notify(EventName.REJECTED, _mapping_payload(updated, reason=reason))
        return updated

    async def mark_live(self, mapping_id: str) -> DomainMapping:
        mapping = await self.registry.get(mapping_id)
        _require_state(mapping, [MappingStatus.APPROVED], "mark live")
        updated = await self.registry.update(
            mapping_id, expected_status=MappingStatus.APPROVED, status=MappingStatus.LIVE
        )
        LIFECYCLE_TRANSITIONS.labels(transition="live").inc()
        logger.info("Domain live", domain=updated.domain, mapping_id=mapping_id)
        return updated

    async def delete_domain(self, mapping_id: str) -> None:
        """Delete a mapping in any state. Raises NotFoundError if absent."""
        mapping = await self.registry.get(mapping_id)
        await self.registry.delete(mapping_id)
        LIFECYCLE_TRANSITIONS.labels(transition="deleted").inc()
        logger.info("Domain deleted", domain=mapping.domain, mapping_id=mapping_id)

    # Ownership

    async def _check_recipient(self, mapping: DomainMapping, new_owner_id: str) -> None:
        if not new_owner_id:
            raise ValidationError("New owner id is required")
        if new_owner_id == mapping.owner_id:
            raise ValidationError(
                f"{mapping.domain} is already owned by {new_owner_id}",
                {"owner_id": new_owner_id},
            )
        if not await self.tenants.is_active(new_owner_id):
            raise ValidationError(
                f"Owner {new_owner_id} is not an active tenant", {"owner_id": new_owner_id}
            )

    async def _transfer(
        self,
        mapping: DomainMapping,
        new_owner_id: str,
        reason: str,
        actor_id: str | None,
        request_id: str | None = None,
    ) -> DomainMapping:
        await self._check_recipient(mapping, new_owner_id)
        entry = TransferLogEntry(
            mapping_id=mapping.id,
            domain=mapping.domain,
            old_owner_id=mapping.owner_id,
            new_owner_id=new_owner_id,
            actor_id=actor_id,
            reason=reason,
        )
        updated = await self.registry.transfer_owner(
            mapping.id,
            new_owner_id,
            entry,
            max_per_owner=self.max_domains_per_owner,
            request_id=request_id,
            expected_owner_id=mapping.owner_id,
        )
        LIFECYCLE_TRANSITIONS.labels(transition="transferred").inc()
        logger.info(
            "Domain transferred",
            domain=mapping.domain,
            old_owner_id=mapping.owner_id,
            new_owner_id=new_owner_id,
            actor_id=actor_id,
        )
        for recipient in (mapping.owner_id, new_owner_id):
            await self._notify(
                EventName.TRANSFERRED,
                _mapping_payload(
                    updated,
                    recipient_id=recipient,
                    old_owner_id=mapping.owner_id,
                    new_owner_id=new_owner_id,
                    reason=reason,
                ),
            )
        return updated

    async def transfer_domain(
        self,
        mapping_id: str,
        new_owner_id: str,
        reason: str = "",
        actor_id: str | None = None,
    ) -> DomainMapping:
        """Move a mapping to another owner. Status is preserved.

        Raises:
            NotFoundError: If the mapping does not exist.
            ValidationError: If the new owner is the current owner or not an
                active tenant.
            LimitExceededError: If the new owner is at quota.
            StateError: If the owner changed while the transfer was in flight.
        """
        mapping = await self.registry.get(mapping_id)
        return await self._transfer(mapping, new_owner_id, reason, actor_id)

    async def request_transfer(
        self, mapping_id: str, requester_id: str, reason: str = ""
    ) -> TransferRequest:
        mapping = await self.registry.get(mapping_id)
        if not requester_id:
            raise ValidationError("Requester id is required")
        if requester_id == mapping.owner_id:
            raise ValidationError(
                f"{mapping.domain} is already owned by {requester_id}",
                {"owner_id": requester_id},
            )
        request = TransferRequest(
            mapping_id=mapping.id,
            domain=mapping.domain,
            current_owner_id=mapping.owner_id,
            requesting_owner_id=requester_id,
            reason=reason,
        )
        await self.registry.create_transfer_request(request)
        logger.info(
            "Transfer requested",
            domain=mapping.domain,
            request_id=request.id,
            requester_id=requester_id,
        )
        await self._notify(
            EventName.TRANSFER_REQUESTED,
            {
                "request_id": request.id,
                "mapping_id": mapping.id,
                "domain": mapping.domain,
                "current_owner_id": mapping.owner_id,
                "requesting_owner_id": requester_id,
                "reason": reason,
            },
        )
        return request

    async def approve_transfer_request(
        self, request_id: str, actor_id: str | None = None
    ) -> DomainMapping:
        """Approve a pending request and transfer the mapping to the requester.

        The owner change, the log entry and the request approval commit together.
        """
        request = await self.registry.get_transfer_request(request_id)
        if request.status != TransferStatus.PENDING:
            raise StateError(
                f"Transfer request {request_id} is {request.status.value}",
                {"id": request_id, "status": request.status.value},
            )
        mapping = await self.registry.get(request.mapping_id)
        if mapping.owner_id != request.current_owner_id:
            raise StateError(
                f"Owner of {mapping.domain} changed since the request was made",
                {"id": request_id, "owner_id": mapping.owner_id},
            )
        return await self._transfer(
            mapping,
            request.requesting_owner_id,
            request.reason,
            actor_id,
            request_id=request_id,
        )

    async def reject_transfer_request(
        self,
        request_id: str,
        rejection_reason: str = "",
        actor_id: str | None = None,
    ) -> TransferRequest:
        updated = await self.registry.update_transfer_request(
            request_id,
            expected_status=TransferStatus.PENDING,
            status=TransferStatus.REJECTED,
            rejection_reason=rejection_reason,
        )
        logger.info("Transfer request rejected", request_id=request_id, actor_id=actor_id)
        await self._notify(
            EventName.TRANSFER_REJECTED,
            {
                "request_id": updated.id,
                "mapping_id": updated.mapping_id,
                "domain": updated.domain,
                "requesting_owner_id": updated.requesting_owner_id,
                "rejection_reason": rejection_reason,
                "actor_id": actor_id,
            },
        )
        return updated

    # Reads

    async def get_mapping(self, mapping_id: str) -> DomainMapping:
        return await self.registry.get(mapping_id)

    async def find_mapping(self, raw_domain: str) -> DomainMapping | None:
        return await self.registry.find_by_domain(
            normalize_domain(raw_domain, strip_www=self.strip_www)
        )

    async def list_mappings(
        self,
        owner_id: str | None = None,
        status: MappingStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> list[DomainMapping]:
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be positive")
        return await self.registry.list(owner_id=owner_id, status=status, page=page, per_page=per_page)

    async def list_transfer_requests(
        self,
        status: TransferStatus | None = None,
        owner_id: str | None = None,
    ) -> list[TransferRequest]:
        return await self.registry.list_transfer_requests(status=status, owner_id=owner_id)

    async def list_transfer_logs(self, mapping_id: str | None = None) -> list[TransferLogEntry]:
        return await self.registry.list_transfer_logs(mapping_id)

    async def instructions_for(self, mapping_id: str) -> VerificationInstructions:
        mapping = await self.registry.get(mapping_id)
        return build_instructions(mapping.domain, mapping.verification_token)

    async def propagation(self, mapping_id: str) -> PropagationResult:
        """Report how widely the challenge record has propagated. Informational only."""
        mapping = await self.registry.get(mapping_id)
        return await self.verifier.propagation(mapping.domain, mapping.verification_token)

    # Certificates and proxy

    async def inspect_certificate(self, mapping_id: str) -> CertificateInfo:
        mapping = await self.registry.get(mapping_id)
        return await self.provisioner.inspector.inspect(mapping.domain)

    async def certificate_status(self, mapping_id: str) -> CertificateStatus:
        mapping = await self.registry.get(mapping_id)
        return await self.provisioner.certificate_status(mapping)

    async def setup_certificate(
        self, mapping_id: str, provider: ProvisioningPath | str
    ) -> ProvisioningResult:
        mapping = await self.registry.get(mapping_id)
        return await self.provisioner.setup(mapping, provider)

    async def auto_provision(self, mapping_id: str) -> ProvisioningResult:
        mapping = await self.registry.get(mapping_id)
        return await self.provisioner.auto_provision(mapping)

    async def generate_proxy_config(
        self, mapping_id: str, upstream_url: str | None = None
    ) -> ProxyConfig:
        """Regenerate proxy configuration for an approved or live mapping."""
        mapping = await self.registry.get(mapping_id)
        _require_state(
            mapping, [MappingStatus.APPROVED, MappingStatus.LIVE], "generate proxy config for"
        )
        return self.proxy_generator.generate(
            mapping.domain, mapping.ssl_status, upstream_url or self.default_upstream
        )
