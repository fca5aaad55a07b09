"""
S3 Tools

BlobArchive: content-addressed image storage. The object key is derived
from the SHA-256 of the bytes, so identical images share one object.
Objects expire through a bucket lifecycle rule; a missing key is a
normal read-miss.
"""

import hashlib
from typing import Any

import boto3
import structlog
from botocore.exceptions import ClientError

from property_images.config import Settings
from property_images.exceptions import BlobNotFoundError
from property_images.retry import RetryPolicy, aws_errors

log = structlog.get_logger()

MISSING_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
LIFECYCLE_RULE_ID = "expire-property-images"


def _get_client(settings: Settings):
    """Get S3 client."""
    return boto3.client("s3", **settings.s3_config)


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest used as the dedup key and object name."""
    return hashlib.sha256(data).hexdigest()


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "") in MISSING_CODES


class BlobArchive:
    """Content-addressed object storage with time-bounded retention."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Any | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._retry = retry_policy or RetryPolicy.from_settings(settings)

    @property
    def bucket(self) -> str:
        return self._settings.s3_bucket_name

    @property
    def client(self):
        if self._client is None:
            self._client = _get_client(self._settings)
        return self._client

    def key_for(self, digest: str) -> str:
        return f"{self._settings.s3_images_prefix}{digest}"

    def _exists(self, key: str) -> bool:
        with aws_errors("head", self.bucket):
            try:
                self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_missing(e):
                    return False
                raise
        return True

    def _put_object(self, key: str, data: bytes, digest: str, content_type: str | None) -> None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "Metadata": {"sha256": digest},
        }
        if content_type:
            params["ContentType"] = content_type

        with aws_errors("put", self.bucket):
            self.client.put_object(**params)

    def put(self, data: bytes, content_type: str | None = None) -> str:
        """
        Store bytes under their content-derived key.

        Storing the same bytes twice returns the same key and skips the upload.

        Returns:
            Blob key

        Raises:
            TransientIOError: If S3 stays unavailable
            StoreError: On a non-retryable S3 failure
        """
        digest = content_hash(data)
        key = self.key_for(digest)

        if self._retry.call(self._exists, key):
            log.debug("blob_already_stored", key=key)
            return key

        self._retry.call(self._put_object, key, data, digest, content_type)
        log.info(
            "blob_stored",
            key=key,
            size_bytes=len(data),
            content_type=content_type,
        )
        return key

    def _get_object(self, key: str) -> bytes:
        with aws_errors("get", self.bucket):
            try:
                response = self.client.get_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_missing(e):
                    raise BlobNotFoundError(key) from e
                raise
            return response["Body"].read()

    def get(self, key: str) -> bytes:
        """
        Read blob bytes.

        Raises:
            BlobNotFoundError: If the blob expired or was never written
            TransientIOError: If S3 stays unavailable
        """
        try:
            data = self._retry.call(self._get_object, key)
        except BlobNotFoundError:
            log.info("blob_not_found", key=key)
            raise

        log.debug("blob_loaded", key=key, size_bytes=len(data))
        return data

    def ensure_retention_policy(self) -> None:
        """Install the lifecycle rule that expires images after the retention window."""
        days = self._settings.blob_retention_days
        rule = {
            "ID": LIFECYCLE_RULE_ID,
            "Filter": {"Prefix": self._settings.s3_images_prefix},
            "Status": "Enabled",
            "Expiration": {"Days": days},
        }

        with aws_errors("get_lifecycle", self.bucket):
            try:
                existing = self.client.get_bucket_lifecycle_configuration(
                    Bucket=self.bucket,
                ).get("Rules", [])
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "NoSuchLifecycleConfiguration":
                    raise
                existing = []

        # Rules owned by other tooling are kept as they are
        rules = [r for r in existing if r.get("ID") != LIFECYCLE_RULE_ID] + [rule]

        with aws_errors("put_lifecycle", self.bucket):
            self.client.put_bucket_lifecycle_configuration(
                Bucket=self.bucket,
                LifecycleConfiguration={"Rules": rules},
            )

        log.info(
            "blob_retention_configured",
            bucket=self.bucket,
            prefix=self._settings.s3_images_prefix,
            retention_days=days,
        )
