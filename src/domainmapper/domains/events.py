"""Lifecycle event delivery.

The lifecycle manager calls ``notify`` directly after every committed
transition. Dispatchers decide where the event goes: the structured log, an
in-memory list, or an HTTP webhook.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
import structlog

from domainmapper.core.exceptions import ExternalServiceError

logger = structlog.get_logger()


class EventName(str, Enum):
    """Events emitted by the lifecycle manager and provisioner."""

    MAPPING_CREATED = "mapping_created"
    VERIFIED = "verified"
    APPROVED = "approved"
    REJECTED = "rejected"
    TRANSFERRED = "transferred"
    CERT_PROVISIONED = "cert_provisioned"
    CERT_EXPIRING = "cert_expiring"
    TRANSFER_REQUESTED = "transfer_requested"
    TRANSFER_REJECTED = "transfer_rejected"


class NotificationDispatcher(ABC):
    """Receives lifecycle events."""

    @abstractmethod
    async def notify(self, event: EventName, payload: dict[str, Any]) -> None:
        """Deliver one event."""

    async def close(self) -> None:
        """Release resources held by the dispatcher."""


class LoggingDispatcher(NotificationDispatcher):
    """Writes every event to the structured log."""

    async def notify(self, event: EventName, payload: dict[str, Any]) -> None:
        logger.info("Lifecycle event", event_name=event.value, **payload)


@dataclass
class RecordedEvent:
    event: EventName
    payload: dict[str, Any]
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


class MemoryDispatcher(NotificationDispatcher):
    """Keeps events in a list. Used by tests and embedding callers."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []

    async def notify(self, event: EventName, payload: dict[str, Any]) -> None:
        self.events.append(RecordedEvent(event, dict(payload)))

    def names(self) -> list[str]:
        return [e.event.value for e in self.events]

    def of(self, event: EventName) -> list[dict[str, Any]]:
        return [e.payload for e in self.events if e.event == event]


class WebhookDispatcher(NotificationDispatcher):
    """POSTs events as JSON to a webhook URL.

    Body format:
        {"event": "verified", "timestamp": "...", "payload": {...}}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, event: EventName, payload: dict[str, Any]) -> None:
        body = {
            "event": event.value,
            "timestamp": datetime.now(UTC).isoformat(),
            "payload": payload,
        }
        try:
            response = await self._client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Webhook delivery of {event.value} failed: {e}", {"url": self.url}
            ) from e

    async def close(self) -> None:
        await self._client.aclose()


class CompositeDispatcher(NotificationDispatcher):
    """Fans one event out to several dispatchers.

    Every dispatcher is attempted; the first failure is re-raised afterwards.
    """

    def __init__(self, dispatchers: Sequence[NotificationDispatcher]) -> None:
        self.dispatchers = list(dispatchers)

    async def notify(self, event: EventName, payload: dict[str, Any]) -> None:
        first_error: Exception | None = None
        for dispatcher in self.dispatchers:
            try:
                await dispatcher.notify(event, payload)
            except Exception as e:
                logger.warning(
                    "Dispatcher failed",
                    dispatcher=type(dispatcher).__name__,
                    event_name=event.value,
                    error=str(e),
                )
                first_error = first_error or e
        if first_error is not None:
            raise first_error

    async def close(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.close()


async def emit(dispatcher: NotificationDispatcher, event: EventName, payload: dict[str, Any]) -> bool:
    """Deliver an event after a committed change.

    Delivery failures are logged and reported as False; the change that
    triggered the event stays committed.
    """
    try:
        await dispatcher.notify(event, payload)
    except Exception as e:
        logger.warning("Event delivery failed", event_name=event.value, error=str(e))
        return False
    return True
