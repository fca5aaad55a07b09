"""
Pytest Configuration and Shared Fixtures

Provides moto AWS mocking, settings, sample messages and feed payloads.
"""

import base64
import json
import os
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable

import boto3
import pytest
from moto import mock_aws

# Set test environment before importing application modules
os.environ["PROPERTY_IMAGES_FROM_ADDRESS"] = "archive@example.com"
os.environ["PROPERTY_IMAGES_TO_ADDRESSES"] = "agent@example.com,office@example.com"
os.environ["PROPERTY_IMAGES_FEED_SUBSCRIPTION_ID"] = "sub-test"
os.environ["PROPERTY_IMAGES_DYNAMODB_TABLE_NAME"] = "TestPropertyImages"
os.environ["PROPERTY_IMAGES_S3_BUCKET_NAME"] = "test-property-images"
os.environ["PROPERTY_IMAGES_FEED_BASE_URL"] = "https://feed.example.com/v1"
os.environ["PROPERTY_IMAGES_AWS_REGION"] = "us-east-1"
os.environ["PROPERTY_IMAGES_RETRY_MAX_WAIT_SECONDS"] = "0"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"

from property_images.config import Settings, get_settings, load_settings  # noqa: E402
from property_images.retry import RetryPolicy  # noqa: E402
from property_images.tools.dynamodb import PropertyImageStore  # noqa: E402
from property_images.tools.email import NotificationRelay  # noqa: E402
from property_images.tools.s3 import BlobArchive  # noqa: E402

TABLE_NAME = "TestPropertyImages"
BUCKET_NAME = "test-property-images"
REGION = "us-east-1"

# Minimal byte strings with real image signatures; content differs per image
PNG_HEADER = b"\x89PNG\r\n\x1a\n"
JPEG_HEADER = b"\xff\xd8\xff\xe0"


# --- Time Fixtures ---


@pytest.fixture
def frozen_time() -> int:
    """Fixed Unix timestamp for deterministic tests."""
    return 1738800000  # 2025-02-06 00:00:00 UTC


@pytest.fixture
def frozen_datetime(frozen_time: int) -> datetime:
    """Fixed datetime for deterministic tests."""
    return datetime.fromtimestamp(frozen_time, tz=timezone.utc)


# --- Settings Fixtures ---


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings built from the test environment."""
    return load_settings()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for settings with overrides."""
    return load_settings


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Retry policy without backoff sleeps."""
    return RetryPolicy(attempts=3, max_wait_seconds=0)


# --- AWS Mocking Fixtures ---


def _create_table(dynamodb) -> Any:
    table = dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.meta.client.get_waiter("table_exists").wait(TableName=TABLE_NAME)
    return table


@pytest.fixture
def mock_aws_all():
    """
    Mock all AWS services used by the application.

    Provides the PropertyImages table, the image bucket and a verified
    SES sender identity.
    """
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        table = _create_table(dynamodb)

        s3 = boto3.client("s3", region_name=REGION)
        s3.create_bucket(Bucket=BUCKET_NAME)

        ses = boto3.client("ses", region_name=REGION)
        ses.verify_email_identity(EmailAddress="archive@example.com")

        yield {
            "dynamodb": dynamodb,
            "table": table,
            "s3": s3,
            "ses": ses,
        }


@pytest.fixture
def store(settings: Settings, retry_policy: RetryPolicy, mock_aws_all) -> PropertyImageStore:
    return PropertyImageStore(settings, retry_policy=retry_policy)


@pytest.fixture
def archive(settings: Settings, retry_policy: RetryPolicy, mock_aws_all) -> BlobArchive:
    return BlobArchive(settings, retry_policy=retry_policy)


@pytest.fixture
def relay(settings: Settings, mock_aws_all) -> NotificationRelay:
    return NotificationRelay(settings)


# --- Image and Message Fixtures ---


@pytest.fixture
def image_bytes() -> Callable[[str], bytes]:
    """Factory for distinct small PNG-like payloads keyed by a label."""

    def _make(label: str) -> bytes:
        return PNG_HEADER + f"image-{label}".encode() * 8

    return _make


@pytest.fixture
def build_message() -> Callable[..., bytes]:
    """
    Factory for raw MIME messages.

    images is a list of (filename, bytes, content_type) tuples added as
    attachments.
    """

    def _build(
        *,
        to: str = "images+12345@archive.example.com",
        from_: str = "photographer@example.com",
        subject: str = "New photos",
        body: str = "See attached.",
        html: str | None = None,
        images: list[tuple[str, bytes, str]] | None = None,
    ) -> bytes:
        message = EmailMessage()
        message["From"] = from_
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = "<msg-1@example.com>"
        message.set_content(body)
        if html is not None:
            message.add_alternative(html, subtype="html")
        for filename, content, content_type in images or []:
            maintype, _, subtype = content_type.partition("/")
            message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        return message.as_bytes()

    return _build


@pytest.fixture
def direct_payload(frozen_datetime: datetime) -> Callable[..., dict[str, Any]]:
    """Factory for the direct inbound mail trigger payload."""

    def _make(raw: bytes, recipient: str = "images+12345@archive.example.com") -> dict[str, Any]:
        return {
            "sender": "photographer@example.com",
            "recipient": recipient,
            "rawMessage": base64.b64encode(raw).decode("ascii"),
            "receivedAt": frozen_datetime.isoformat().replace("+00:00", "Z"),
        }

    return _make


@pytest.fixture
def sns_ses_event() -> Callable[..., dict[str, Any]]:
    """Factory for an SNS record wrapping an SES receipt notification."""

    def _make(
        raw: bytes | None = None,
        *,
        recipient: str = "images+12345@archive.example.com",
        notification_type: str = "Received",
        s3_action: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        action: dict[str, Any] = {"type": "SNS", "encoding": "BASE64"}
        if s3_action:
            action = {"type": "S3", "bucketName": s3_action[0], "objectKey": s3_action[1]}
        notification: dict[str, Any] = {
            "notificationType": notification_type,
            "mail": {
                "timestamp": "2025-02-06T10:30:00.000Z",
                "source": "photographer@example.com",
                "messageId": "ses-message-1",
                "destination": [recipient],
            },
            "receipt": {
                "timestamp": "2025-02-06T10:30:00.000Z",
                "recipients": [recipient],
                "action": action,
            },
        }
        if raw is not None:
            notification["content"] = base64.b64encode(raw).decode("ascii")
        return {
            "Records": [
                {
                    "EventSource": "aws:sns",
                    "Sns": {"Type": "Notification", "Message": json.dumps(notification)},
                }
            ]
        }

    return _make


@pytest.fixture
def scheduled_event() -> dict[str, Any]:
    """Sample EventBridge scheduled event."""
    return {
        "version": "0",
        "id": "53dc4d37-cffa-4f76-80c9-8b7d4a4d2eaa",
        "detail-type": "Scheduled Event",
        "source": "aws.events",
        "time": "2025-02-06T00:00:00Z",
        "region": REGION,
        "resources": ["arn:aws:events:us-east-1:123456789012:rule/archive-feed"],
        "detail": {},
    }


class FakeLambdaContext:
    """Lambda context with a controllable remaining-time clock."""

    aws_request_id = "test-request-id"

    def __init__(self, remaining_ms: int = 300_000) -> None:
        self.remaining_ms = remaining_ms

    def get_remaining_time_in_millis(self) -> int:
        return self.remaining_ms


@pytest.fixture
def lambda_context() -> FakeLambdaContext:
    return FakeLambdaContext()
