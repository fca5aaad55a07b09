"""
Pydantic models for property records, image references and trigger payloads.
"""

from property_images.models.events import (
    ArchiveRunResult,
    EntryResult,
    EntryStatus,
    FeedEntry,
    IngestEvent,
    IngestOutcome,
    IngestStatus,
)
from property_images.models.records import (
    ImageRef,
    ImageSource,
    PropertyRecord,
    merge_images,
    normalize_property_id,
    property_key,
)

__all__ = [
    "ArchiveRunResult",
    "EntryResult",
    "EntryStatus",
    "FeedEntry",
    "IngestEvent",
    "IngestOutcome",
    "IngestStatus",
    "ImageRef",
    "ImageSource",
    "PropertyRecord",
    "merge_images",
    "normalize_property_id",
    "property_key",
]
