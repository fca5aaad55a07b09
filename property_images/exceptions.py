"""
Custom Exceptions for the Property Image Archive

All exceptions carry the context needed for logging and manual replay
(property identifier, failure kind, store coordinates).
"""

from dataclasses import dataclass
from typing import Any


class PropertyImagesError(Exception):
    """Base exception for the property image archive."""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class ConfigError(PropertyImagesError):
    """Required configuration is missing or invalid. Fatal at cold start."""

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        self.missing = missing or []
        super().__init__(message, missing=self.missing)


@dataclass
class ParseError(PropertyImagesError):
    """Inbound message could not be parsed (MalformedMessage)."""

    reason: str

    def __init__(self, reason: str, **context: Any) -> None:
        self.reason = reason
        super().__init__(f"Malformed message: {reason}", **context)


class NotFoundError(PropertyImagesError):
    """A property record or blob does not exist. Never a system fault."""


@dataclass
class PropertyNotFoundError(NotFoundError):
    """Property record not found in DynamoDB."""

    property_id: str

    def __init__(self, property_id: str) -> None:
        self.property_id = property_id
        super().__init__(
            f"Property '{property_id}' not found",
            property_id=property_id,
        )


@dataclass
class BlobNotFoundError(NotFoundError):
    """Blob key missing from the archive (expired or never written)."""

    key: str

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Blob '{key}' not found", key=key)


@dataclass
class TransientIOError(PropertyImagesError):
    """Network or store unavailability/timeout. Safe to retry."""

    operation: str
    error_message: str | None = None

    def __init__(
        self,
        operation: str,
        error_message: str | None = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.error_message = error_message
        super().__init__(
            f"Transient failure during {operation}: {error_message or 'Unknown error'}",
            operation=operation,
            **context,
        )


class CapacityError(TransientIOError):
    """Store throttling. Retried like any transient failure."""


@dataclass
class StoreError(PropertyImagesError):
    """Non-retryable DynamoDB or S3 failure."""

    operation: str
    resource: str

    def __init__(
        self,
        operation: str,
        resource: str,
        error_message: str | None = None,
    ) -> None:
        self.operation = operation
        self.resource = resource
        super().__init__(
            f"Store {operation} failed on '{resource}': {error_message or 'Unknown error'}",
            operation=operation,
            resource=resource,
            error_message=error_message,
        )


@dataclass
class ConditionalWriteError(PropertyImagesError):
    """Optimistic lock conflict on a property record."""

    property_id: str
    expected_version: int | None = None

    def __init__(self, property_id: str, expected_version: int | None = None) -> None:
        self.property_id = property_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent update on property '{property_id}'",
            property_id=property_id,
            expected_version=expected_version,
        )


@dataclass
class FeedError(PropertyImagesError):
    """Permanent feed or image download failure (e.g. 404, bad payload)."""

    url: str
    status_code: int | None = None

    def __init__(
        self,
        url: str,
        status_code: int | None = None,
        error_message: str | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(
            f"Feed request failed for {url}: {error_message or 'Unknown error'}",
            url=url,
            status_code=status_code,
        )
