"""
DynamoDB Models

Pydantic models for items in the PropertyImages table.

PropertyRecord:
    PK: PROPERTY#<property_id>
    SK: METADATA
"""

import re
from enum import Enum
from typing import Any, Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field

PROPERTY_PK_PREFIX = "PROPERTY#"
METADATA_SK = "METADATA"

PROPERTY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class ImageSource(str, Enum):
    """Where an image entered the archive."""

    EMAIL = "email"
    FEED = "feed"


class ImageRef(BaseModel):
    """
    Weak reference to an image blob.

    The key points into the blob archive and may dangle once the blob
    expires. Immutable; dedup is by content_hash only.
    """

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1, description="Blob archive key")
    content_hash: str = Field(..., pattern=r"^[a-f0-9]{64}$", description="SHA-256 hex digest")
    size_bytes: int = Field(..., ge=0, description="Image size in bytes")
    captured_at: int = Field(..., description="Unix epoch timestamp of ingestion")
    content_type: str | None = Field(default=None, description="MIME type if known")
    source: ImageSource | None = Field(default=None, description="Ingestion source")

    def to_dynamodb(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "key": self.key,
            "content_hash": self.content_hash,
            "size_bytes": self.size_bytes,
            "captured_at": self.captured_at,
        }
        if self.content_type:
            item["content_type"] = self.content_type
        if self.source:
            item["source"] = self.source.value
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "ImageRef":
        source = item.get("source")
        return cls(
            key=item["key"],
            content_hash=item["content_hash"],
            size_bytes=int(item.get("size_bytes", 0)),
            captured_at=int(item.get("captured_at", 0)),
            content_type=item.get("content_type"),
            source=ImageSource(source) if source else None,
        )


def merge_images(
    existing: Sequence[ImageRef],
    new: Iterable[ImageRef],
    cap: int | None = None,
) -> tuple[list[ImageRef], list[ImageRef]]:
    """
    Append-with-dedup merge of image references.

    Order is preserved: existing references first, then new ones in the
    order given. When cap is set, the oldest references are evicted.

    Returns:
        Tuple of (merged list, references actually added)
    """
    seen = {ref.content_hash for ref in existing}
    merged = list(existing)
    added: list[ImageRef] = []

    for ref in new:
        if ref.content_hash in seen:
            continue
        seen.add(ref.content_hash)
        merged.append(ref)
        added.append(ref)

    if cap is not None and len(merged) > cap:
        merged = merged[len(merged) - cap:]

    return merged, added


class PropertyRecord(BaseModel):
    """
    Property record stored in DynamoDB.

    Created on first write, updated in place, never deleted.
    """

    model_config = ConfigDict(frozen=True)

    property_id: str = Field(..., min_length=1, description="Property identifier")
    images: tuple[ImageRef, ...] = Field(default=(), description="Ordered, hash-unique images")
    last_updated: int = Field(..., description="Unix epoch timestamp of last merge")
    created_at: int = Field(..., description="Unix epoch timestamp of first write")
    version: int = Field(default=0, ge=0, description="Optimistic lock counter")

    @property
    def pk(self) -> str:
        return f"{PROPERTY_PK_PREFIX}{self.property_id}"

    @property
    def sk(self) -> str:
        return METADATA_SK

    @property
    def content_hashes(self) -> frozenset[str]:
        return frozenset(ref.content_hash for ref in self.images)

    def has_image(self, content_hash: str) -> bool:
        return content_hash in self.content_hashes

    def merged_with(
        self,
        new_images: Iterable[ImageRef],
        *,
        now: int,
        cap: int | None = None,
    ) -> tuple["PropertyRecord", list[ImageRef]]:
        """Return a copy with new_images merged in and the list of refs added."""
        merged, added = merge_images(self.images, new_images, cap)
        record = self.model_copy(
            update={
                "images": tuple(merged),
                "last_updated": max(self.last_updated, now),
                "version": self.version + 1,
            }
        )
        return record, added

    @classmethod
    def empty(cls, property_id: str, now: int) -> "PropertyRecord":
        return cls(property_id=property_id, last_updated=now, created_at=now, version=0)

    def to_dynamodb(self) -> dict[str, Any]:
        """Convert to DynamoDB item."""
        return {
            "PK": self.pk,
            "SK": self.sk,
            "property_id": self.property_id,
            "images": [ref.to_dynamodb() for ref in self.images],
            "last_updated": self.last_updated,
            "created_at": self.created_at,
            "version": self.version,
        }

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "PropertyRecord":
        """Parse from DynamoDB item."""
        return cls(
            property_id=item["property_id"],
            images=tuple(ImageRef.from_dynamodb(ref) for ref in item.get("images", [])),
            last_updated=int(item.get("last_updated", 0)),
            created_at=int(item.get("created_at", 0)),
            version=int(item.get("version", 0)),
        )


def property_key(property_id: str) -> dict[str, str]:
    """DynamoDB primary key for a property record."""
    return {"PK": f"{PROPERTY_PK_PREFIX}{property_id}", "SK": METADATA_SK}


def normalize_property_id(value: object) -> str | None:
    """
    Strip surrounding whitespace and validate the identifier.

    Returns:
        The normalized id, or None if it is not a valid property id
    """
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not PROPERTY_ID_PATTERN.match(candidate):
        return None
    return candidate
