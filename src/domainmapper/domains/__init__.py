"""Custom domain mappings.

This package holds the data model, the registry backends, the DNS TXT
challenge and lifecycle events. The state machine lives in
``domainmapper.domains.manager``:

    from domainmapper.domains.manager import LifecycleManager
"""

from domainmapper.domains.events import (
    EventName,
    LoggingDispatcher,
    MemoryDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
)
from domainmapper.domains.models import (
    DomainMapping,
    MappingStatus,
    SslStatus,
    TransferLogEntry,
    TransferRequest,
    TransferStatus,
    VerificationInstructions,
)
from domainmapper.domains.registry import DomainRegistry, InMemoryRegistry, SQLiteRegistry
from domainmapper.domains.verification import (
    ChallengeVerifier,
    generate_token,
    normalize_domain,
    validate_domain,
)

__all__ = [
    "ChallengeVerifier",
    "DomainMapping",
    "DomainRegistry",
    "EventName",
    "InMemoryRegistry",
    "LoggingDispatcher",
    "MappingStatus",
    "MemoryDispatcher",
    "NotificationDispatcher",
    "SQLiteRegistry",
    "SslStatus",
    "TransferLogEntry",
    "TransferRequest",
    "TransferStatus",
    "VerificationInstructions",
    "WebhookDispatcher",
    "generate_token",
    "normalize_domain",
    "validate_domain",
]
