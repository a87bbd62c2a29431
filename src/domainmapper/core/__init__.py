"""Core configuration and error types."""

from domainmapper.core.exceptions import (
    ConflictError,
    DomainMapperError,
    ExternalServiceError,
    LimitExceededError,
    NotFoundError,
    Result,
    StateError,
    ValidationError,
    capture,
    format_error_for_user,
)

__all__ = [
    "ConflictError",
    "DomainMapperError",
    "ExternalServiceError",
    "LimitExceededError",
    "NotFoundError",
    "Result",
    "StateError",
    "ValidationError",
    "capture",
    "format_error_for_user",
]
