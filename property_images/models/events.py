"""
Event Models

Transient inputs to the two entry points and the outcomes they report.
None of these are persisted except FeedEntry inside the archiver cursor.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IngestEvent(BaseModel):
    """One inbound mail message, as delivered by the trigger."""

    model_config = ConfigDict(frozen=True)

    sender_address: str = Field(default="", description="Envelope sender")
    recipient_address: str = Field(default="", description="Envelope recipient")
    raw_message: bytes = Field(..., description="Raw RFC 5322 message bytes")
    received_at: datetime = Field(..., description="When the mail provider received it")


class FeedEntry(BaseModel):
    """One property from the external feed with its candidate images."""

    model_config = ConfigDict(frozen=True)

    property_id: str = Field(..., min_length=1, description="Property identifier")
    image_urls: tuple[str, ...] = Field(default=(), description="Candidate image URLs")
    fetch_token: str | None = Field(default=None, description="Opaque token for the feed")


class IngestStatus(str, Enum):
    """Terminal outcome of one mail ingestion."""

    STORED = "STORED"
    REJECTED_MALFORMED_MESSAGE = "REJECTED_MALFORMED_MESSAGE"
    REJECTED_UNKNOWN_PROPERTY = "REJECTED_UNKNOWN_PROPERTY"
    REJECTED_NO_IMAGES_FOUND = "REJECTED_NO_IMAGES_FOUND"

    @property
    def is_rejection(self) -> bool:
        return self is not IngestStatus.STORED


@dataclass
class IngestOutcome:
    """Result reported by MailIngestHandler for one event."""

    status: IngestStatus
    property_id: str | None = None
    images_found: int = 0
    images_added: int = 0
    notification_sent: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "property_id": self.property_id,
            "images_found": self.images_found,
            "images_added": self.images_added,
            "notification_sent": self.notification_sent,
            "reason": self.reason,
        }


class EntryStatus(str, Enum):
    """Per-entry result of an archiver run."""

    SUCCESS = "SUCCESS"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"


@dataclass
class EntryResult:
    """Outcome for a single feed entry."""

    entry: FeedEntry
    status: EntryStatus
    images_added: int = 0
    error: str | None = None

    @property
    def property_id(self) -> str:
        return self.entry.property_id


@dataclass
class ArchiveRunResult:
    """Summary of one scheduled archiver run."""

    subscription_id: str
    results: list[EntryResult] = field(default_factory=list)
    start_offset: int = 0
    end_offset: int = 0
    stopped_early: bool = False
    dry_run: bool = False
    dropped: list[str] = field(default_factory=list)
    page_error: str | None = None
    duration_ms: float = 0.0

    def _count(self, status: EntryStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(EntryStatus.SUCCESS)

    @property
    def transient_failures(self) -> int:
        return self._count(EntryStatus.TRANSIENT_FAILURE)

    @property
    def permanent_failures(self) -> int:
        return self._count(EntryStatus.PERMANENT_FAILURE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "attempted": len(self.results),
            "succeeded": self.succeeded,
            "transient_failures": self.transient_failures,
            "permanent_failures": self.permanent_failures,
            "images_added": sum(r.images_added for r in self.results),
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "stopped_early": self.stopped_early,
            "dry_run": self.dry_run,
            "dropped": self.dropped,
            "page_error": self.page_error,
            "failures": [
                {"property_id": r.property_id, "status": r.status.value, "error": r.error}
                for r in self.results
                if r.status is not EntryStatus.SUCCESS
            ],
            "duration_ms": round(self.duration_ms, 2),
        }
