"""Error kinds raised by the domain mapping engine.

Every error carries a stable ``code`` used by the CLI for panel titles and an
``http_status`` used by the API layer. Negative verification results and
missing certificates are ordinary results, never errors.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class DomainMapperError(Exception):
    """Base class for all recoverable engine errors."""

    code = "domainmapper_error"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(DomainMapperError):
    """Malformed domain, URL or missing required field."""

    code = "validation_error"
    http_status = 422


class ConflictError(DomainMapperError):
    """Domain already mapped, or a duplicate pending transfer request."""

    code = "conflict"
    http_status = 409


class LimitExceededError(DomainMapperError):
    """Owner is at the mapping quota."""

    code = "limit_exceeded"
    http_status = 403


class NotFoundError(DomainMapperError):
    """Unknown mapping or transfer request id."""

    code = "not_found"
    http_status = 404


class StateError(DomainMapperError):
    """Operation is not valid for the current status."""

    code = "invalid_state"
    http_status = 409


class ExternalServiceError(DomainMapperError):
    """DNS timeout, TLS probe failure or CDN API failure. Safe to retry."""

    code = "external_service_error"
    http_status = 502


@dataclass
class Result(Generic[T]):
    """Tagged result: either ``value`` or ``error`` is set."""

    value: T | None = None
    error: DomainMapperError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: DomainMapperError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def capture(awaitable: Awaitable[T]) -> Result[T]:
    """Await an operation and fold engine errors into a Result.

    Errors that are not DomainMapperError propagate unchanged.
    """
    try:
        return Result.success(await awaitable)
    except DomainMapperError as e:
        return Result.failure(e)


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single line suitable for a terminal."""
    if isinstance(error, DomainMapperError):
        text = error.message
        if error.details:
            extras = ", ".join(f"{k}={v}" for k, v in sorted(error.details.items()))
            text = f"{text} ({extras})"
        return text
    name = type(error).__name__
    message = str(error)
    return f"{name}: {message}" if message else name
