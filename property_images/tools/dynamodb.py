"""
DynamoDB Tools

PropertyImageStore: property records keyed by property identifier.

upsert() is a read-modify-write guarded by an optimistic version
condition. Conflicting writers re-read and re-merge, so concurrent
updates to the same property union their image sets instead of
overwriting each other.
"""

import time
from typing import Any, Iterable, Sequence

import boto3
import structlog
from botocore.exceptions import ClientError

from property_images.config import Settings
from property_images.exceptions import (
    CapacityError,
    ConditionalWriteError,
    PropertyNotFoundError,
    TransientIOError,
)
from property_images.models.records import ImageRef, PropertyRecord, property_key
from property_images.retry import RetryPolicy, aws_errors

log = structlog.get_logger()

BATCH_GET_LIMIT = 100  # DynamoDB BatchGetItem key limit


def _get_resource(settings: Settings):
    """Get DynamoDB service resource."""
    return boto3.resource("dynamodb", **settings.dynamodb_config)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class PropertyImageStore:
    """Key-value store of PropertyRecord items."""

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
    def dynamodb(self):
        if self._dynamodb is None:
            self._dynamodb = _get_resource(self._settings)
        return self._dynamodb

    @property
    def table(self):
        if self._table is None:
            self._table = self.dynamodb.Table(self.table_name)
        return self._table

    # ---------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------

    def _get_item(self, property_id: str) -> dict[str, Any] | None:
        with aws_errors("get", self.table_name):
            response = self.table.get_item(
                Key=property_key(property_id),
                ConsistentRead=True,
            )
        return response.get("Item")

    def find(self, property_id: str) -> PropertyRecord | None:
        """
        Load a property record.

        Returns:
            PropertyRecord if found, None otherwise

        Raises:
            TransientIOError: If the read keeps failing transiently
            StoreError: On a non-retryable DynamoDB failure
        """
        log.debug("loading_property", property_id=property_id)
        item = self._retry.call(self._get_item, property_id)
        if not item:
            return None
        return PropertyRecord.from_dynamodb(item)

    def get(self, property_id: str) -> PropertyRecord:
        """
        Load a property record.

        Raises:
            PropertyNotFoundError: If no record exists
        """
        record = self.find(property_id)
        if record is None:
            raise PropertyNotFoundError(property_id)
        return record

    def _batch_get_chunk(self, keys: list[dict[str, str]]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        request: dict[str, Any] = {
            self.table_name: {"Keys": keys, "ConsistentRead": True},
        }

        for _ in range(self._retry.attempts):
            with aws_errors("batch_get", self.table_name):
                response = self.dynamodb.batch_get_item(RequestItems=request)
            items.extend(response.get("Responses", {}).get(self.table_name, []))

            unprocessed = response.get("UnprocessedKeys") or {}
            if not unprocessed.get(self.table_name):
                return items

            log.warning(
                "batch_get_unprocessed_keys",
                count=len(unprocessed[self.table_name]["Keys"]),
            )
            request = unprocessed

        raise CapacityError(
            "batch_get",
            "unprocessed keys remained after retries",
            resource=self.table_name,
        )

    def batch_get(self, property_ids: Iterable[str]) -> dict[str, PropertyRecord]:
        """
        Load several property records.

        Returns:
            Mapping of property id to record; missing ids are omitted
        """
        unique_ids = list(dict.fromkeys(property_ids))
        records: dict[str, PropertyRecord] = {}

        for start in range(0, len(unique_ids), BATCH_GET_LIMIT):
            chunk = unique_ids[start:start + BATCH_GET_LIMIT]
            items = self._retry.call(
                self._batch_get_chunk,
                [property_key(pid) for pid in chunk],
            )
            for item in items:
                record = PropertyRecord.from_dynamodb(item)
                records[record.property_id] = record

        log.debug(
            "properties_batch_loaded",
            requested=len(unique_ids),
            found=len(records),
        )
        return records

    # ---------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------

    def _conditional_put(
        self,
        record: PropertyRecord,
        expected: PropertyRecord | None,
    ) -> None:
        params: dict[str, Any] = {"Item": record.to_dynamodb()}
        if expected is None:
            params["ConditionExpression"] = "attribute_not_exists(PK)"
        else:
            params["ConditionExpression"] = "#version = :expected_version"
            params["ExpressionAttributeNames"] = {"#version": "version"}
            params["ExpressionAttributeValues"] = {":expected_version": expected.version}

        with aws_errors("put", self.table_name):
            try:
                self.table.put_item(**params)
            except ClientError as e:
                if _error_code(e) == "ConditionalCheckFailedException":
                    raise ConditionalWriteError(
                        record.property_id,
                        expected_version=expected.version if expected else None,
                    ) from e
                raise

    def upsert(
        self,
        property_id: str,
        new_images: Sequence[ImageRef],
        *,
        now: int | None = None,
    ) -> PropertyRecord:
        """
        Merge new image references into a property record.

        Creates the record on first write. References whose content hash
        is already present are skipped; if nothing is new the existing
        record is returned without a write.

        Returns:
            The record as stored after the merge

        Raises:
            TransientIOError: If the store stays unavailable or conflicts persist
            StoreError: On a non-retryable DynamoDB failure
        """
        now = now if now is not None else int(time.time())
        cap = self._settings.max_images_per_property

        for attempt in range(1, self._settings.store_conflict_retries + 1):
            current = self.find(property_id)
            base = current or PropertyRecord.empty(property_id, now)
            updated, added = base.merged_with(new_images, now=now, cap=cap)

            if current is not None and not added:
                log.info(
                    "property_unchanged",
                    property_id=property_id,
                    image_count=len(current.images),
                )
                return current

            try:
                self._retry.call(self._conditional_put, updated, current)
            except ConditionalWriteError:
                log.warning(
                    "property_upsert_conflict",
                    property_id=property_id,
                    attempt=attempt,
                )
                continue

            log.info(
                "property_upserted",
                property_id=property_id,
                images_added=len(added),
                image_count=len(updated.images),
                created=current is None,
                version=updated.version,
            )
            return updated

        log.error(
            "property_upsert_conflicts_exhausted",
            property_id=property_id,
            attempts=self._settings.store_conflict_retries,
        )
        raise TransientIOError(
            "upsert",
            "conflicting concurrent writes",
            property_id=property_id,
        )
