"""Records persisted by the domain registry."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class MappingStatus(str, Enum):
    """Lifecycle state of a domain mapping."""

    PENDING = "pending"
    VERIFIED = "verified"
    APPROVED = "approved"
    REJECTED = "rejected"
    LIVE = "live"


class SslStatus(str, Enum):
    """How the certificate for a mapping is provided."""

    NONE = "none"
    MANUAL = "manual"
    AUTO = "auto"
    MANAGED_CDN = "managed_cdn"


class TransferStatus(str, Enum):
    """State of a two-party transfer request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class DomainMapping:
    """A custom domain attached to one owner's store."""

    owner_id: str
    domain: str
    verification_token: str
    status: MappingStatus = MappingStatus.PENDING
    ssl_status: SslStatus = SslStatus.NONE
    ssl_certificate_ref: str | None = None
    ssl_expiry: datetime | None = None
    rejection_reason: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def copy(self, **changes: Any) -> DomainMapping:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "domain": self.domain,
            "status": self.status.value,
            "ssl_status": self.ssl_status.value,
            "verification_token": self.verification_token,
            "ssl_certificate_ref": self.ssl_certificate_ref,
            "ssl_expiry": self.ssl_expiry.isoformat() if self.ssl_expiry else None,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainMapping:
        """Create from dictionary (JSON or database row)."""
        return cls(
            id=data["id"],
            owner_id=str(data["owner_id"]),
            domain=data["domain"],
            verification_token=data["verification_token"],
            status=MappingStatus(data.get("status", "pending")),
            ssl_status=SslStatus(data.get("ssl_status") or "none"),
            ssl_certificate_ref=data.get("ssl_certificate_ref"),
            ssl_expiry=_parse_dt(data.get("ssl_expiry")),
            rejection_reason=data.get("rejection_reason"),
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or _utc_now(),
        )


MAPPING_FIELDS = frozenset(f.name for f in fields(DomainMapping))


@dataclass
class TransferRequest:
    """A non-owner's proposal to take over a mapping."""

    mapping_id: str
    domain: str
    current_owner_id: str
    requesting_owner_id: str
    reason: str = ""
    status: TransferStatus = TransferStatus.PENDING
    rejection_reason: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def copy(self, **changes: Any) -> TransferRequest:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mapping_id": self.mapping_id,
            "domain": self.domain,
            "current_owner_id": self.current_owner_id,
            "requesting_owner_id": self.requesting_owner_id,
            "reason": self.reason,
            "status": self.status.value,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferRequest:
        return cls(
            id=data["id"],
            mapping_id=data["mapping_id"],
            domain=data["domain"],
            current_owner_id=str(data["current_owner_id"]),
            requesting_owner_id=str(data["requesting_owner_id"]),
            reason=data.get("reason") or "",
            status=TransferStatus(data.get("status", "pending")),
            rejection_reason=data.get("rejection_reason"),
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or _utc_now(),
        )


TRANSFER_REQUEST_FIELDS = frozenset(f.name for f in fields(TransferRequest))


@dataclass(frozen=True)
class TransferLogEntry:
    """Append-only audit record of an ownership change."""

    mapping_id: str
    domain: str
    old_owner_id: str
    new_owner_id: str
    actor_id: str | None = None
    reason: str = ""
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mapping_id": self.mapping_id,
            "domain": self.domain,
            "old_owner_id": self.old_owner_id,
            "new_owner_id": self.new_owner_id,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferLogEntry:
        return cls(
            id=data["id"],
            mapping_id=data["mapping_id"],
            domain=data["domain"],
            old_owner_id=str(data["old_owner_id"]),
            new_owner_id=str(data["new_owner_id"]),
            actor_id=data.get("actor_id"),
            reason=data.get("reason") or "",
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
        )


@dataclass(frozen=True)
class VerificationInstructions:
    """The TXT record an owner must publish, plus human-readable steps."""

    domain: str
    record_type: str
    record_name: str
    record_value: str

    @property
    def steps(self) -> list[str]:
        return [
            "Log in to the DNS management panel of your domain registrar or DNS host.",
            f"Create a new {self.record_type} record.",
            f"Set the name/host to '{self.record_name}' (use '@' if your provider asks "
            "for a name relative to the zone).",
            f"Set the value to: {self.record_value}",
            "Save the record and wait for DNS propagation (usually a few minutes, "
            "up to 48 hours).",
            "Run verification once the record is visible.",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "record_type": self.record_type,
            "record_name": self.record_name,
            "record_value": self.record_value,
            "steps": self.steps,
        }
