"""
Archiver Cursor

Durable position of the scheduled archiver in the feed, stored in the
same table as property records.

ArchiverCursor:
    PK: FEED#<subscription_id>
    SK: CURSOR

The cursor holds the next feed offset plus the entries that failed
transiently and must be retried on the next run. Writes are
last-writer-wins; overlapping runs are tolerated because record
upserts merge monotonically.
"""

import time
from typing import Any

import boto3
import structlog
from pydantic import BaseModel, Field

from property_images.config import Settings
from property_images.models.events import FeedEntry
from property_images.retry import RetryPolicy, aws_errors

log = structlog.get_logger()

FEED_PK_PREFIX = "FEED#"
CURSOR_SK = "CURSOR"


class PendingEntry(BaseModel):
    """A feed entry awaiting retry after a transient failure."""

    entry: FeedEntry
    attempts: int = Field(default=1, ge=1, description="Runs that failed on this entry")
    last_error: str | None = Field(default=None, description="Most recent failure")

    def to_dynamodb(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "property_id": self.entry.property_id,
            "image_urls": list(self.entry.image_urls),
            "attempts": self.attempts,
        }
        if self.entry.fetch_token:
            item["fetch_token"] = self.entry.fetch_token
        if self.last_error:
            item["last_error"] = self.last_error
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "PendingEntry":
        return cls(
            entry=FeedEntry(
                property_id=item["property_id"],
                image_urls=tuple(item.get("image_urls", [])),
                fetch_token=item.get("fetch_token"),
            ),
            attempts=int(item.get("attempts", 1)),
            last_error=item.get("last_error"),
        )


class ArchiverCursor(BaseModel):
    """Resumable archiver position for one feed subscription."""

    subscription_id: str = Field(..., min_length=1)
    offset: int = Field(default=0, ge=0, description="Next feed offset to fetch")
    pending: list[PendingEntry] = Field(default_factory=list)
    updated_at: int = Field(default=0, description="Unix epoch timestamp of last commit")

    @property
    def pk(self) -> str:
        return f"{FEED_PK_PREFIX}{self.subscription_id}"

    @property
    def sk(self) -> str:
        return CURSOR_SK

    def to_dynamodb(self) -> dict[str, Any]:
        return {
            "PK": self.pk,
            "SK": self.sk,
            "subscription_id": self.subscription_id,
            "offset": self.offset,
            "pending": [p.to_dynamodb() for p in self.pending],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "ArchiverCursor":
        return cls(
            subscription_id=item["subscription_id"],
            offset=int(item.get("offset", 0)),
            pending=[PendingEntry.from_dynamodb(p) for p in item.get("pending", [])],
            updated_at=int(item.get("updated_at", 0)),
        )


def cursor_key(subscription_id: str) -> dict[str, str]:
    return {"PK": f"{FEED_PK_PREFIX}{subscription_id}", "SK": CURSOR_SK}


class CursorStore:
    """Loads and commits ArchiverCursor items."""

    def __init__(
        self,
        settings: Settings,
        *,
        dynamodb: Any | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._dynamodb = dynamodb
        self._table = None
        self._retry = retry_policy or RetryPolicy.from_settings(settings)

    @property
    def table_name(self) -> str:
        return self._settings.dynamodb_table_name

    @property
    def table(self):
        if self._table is None:
            dynamodb = self._dynamodb or boto3.resource("dynamodb", **self._settings.dynamodb_config)
            self._table = dynamodb.Table(self.table_name)
        return self._table

    def _get_item(self, subscription_id: str) -> dict[str, Any] | None:
        with aws_errors("get_cursor", self.table_name):
            response = self.table.get_item(Key=cursor_key(subscription_id), ConsistentRead=True)
        return response.get("Item")

    def load(self, subscription_id: str) -> ArchiverCursor:
        """Load the cursor, starting at offset 0 when none was committed yet."""
        item = self._retry.call(self._get_item, subscription_id)
        if not item:
            log.info("cursor_not_found_starting_fresh", subscription_id=subscription_id)
            return ArchiverCursor(subscription_id=subscription_id)
        return ArchiverCursor.from_dynamodb(item)

    def _put_item(self, item: dict[str, Any]) -> None:
        with aws_errors("put_cursor", self.table_name):
            self.table.put_item(Item=item)

    def save(self, cursor: ArchiverCursor) -> ArchiverCursor:
        """Commit the cursor, stamping updated_at."""
        committed = cursor.model_copy(update={"updated_at": int(time.time())})
        self._retry.call(self._put_item, committed.to_dynamodb())
        log.info(
            "cursor_committed",
            subscription_id=committed.subscription_id,
            offset=committed.offset,
            pending=len(committed.pending),
        )
        return committed
