"""
Email Parser Module

Decodes inbound-mail trigger payloads into IngestEvents and parses raw
MIME messages into a structured ParsedMessage with its image parts.

parse_message() either returns a ParsedMessage or raises ParseError;
there is no partially parsed result.
"""

import base64
import binascii
import email
import json
import mimetypes
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.errors import MultipartInvariantViolationDefect, StartBoundaryNotFoundDefect
from email.message import EmailMessage
from email.policy import default as default_policy
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from property_images.exceptions import ParseError
from property_images.models.events import IngestEvent

log = structlog.get_logger()

FATAL_DEFECTS = (StartBoundaryNotFoundDefect, MultipartInvariantViolationDefect)
NON_INBOUND_NOTIFICATIONS = frozenset({"Bounce", "Complaint", "Delivery"})


@dataclass(frozen=True)
class ImagePart:
    """One image found in a message, attached or inline."""

    filename: str
    content: bytes
    content_type: str
    disposition: str
    content_id: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass
class ParsedMessage:
    """Structured representation of an inbound message."""

    from_address: str
    subject: str
    message_id: str
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    delivered_to: list[str] = field(default_factory=list)
    date: str | None = None
    text_body: str = ""
    html_body: str = ""
    image_parts: list[ImagePart] = field(default_factory=list)
    skipped_parts: list[str] = field(default_factory=list)

    @property
    def recipients(self) -> list[str]:
        """Delivery recipients first, then To and Cc."""
        return list(dict.fromkeys(self.delivered_to + self.to_addresses + self.cc_addresses))


@dataclass(frozen=True)
class S3MessageRef:
    """An inbound message SES stored in S3 instead of embedding it."""

    bucket: str
    key: str
    sender_address: str
    recipient_address: str
    received_at: datetime


def _extract_address(header_value: str | None) -> str:
    """
    Extract email address from a header value.

    Handles formats like:
    - "John Doe <john@example.com>"
    - "<john@example.com>"
    - "john@example.com"
    """
    if not header_value:
        return ""

    match = re.search(r"<([^>]+)>", header_value)
    if match:
        return match.group(1).strip()

    return header_value.strip()


def _extract_addresses(header_values: Iterable[Any] | None) -> list[str]:
    """Extract addresses from one or more address headers (To, Cc, Delivered-To)."""
    addresses = []
    for value in header_values or []:
        for part in str(value).split(","):
            addr = _extract_address(part)
            if addr:
                addresses.append(addr)
    return addresses


def _decode_text(part: EmailMessage) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _image_type(part: EmailMessage) -> str | None:
    """Content type of an image part, guessing from the filename for octet-stream."""
    content_type = part.get_content_type()
    if content_type.startswith("image/"):
        return content_type
    if content_type == "application/octet-stream":
        guessed, _ = mimetypes.guess_type(part.get_filename() or "")
        if guessed and guessed.startswith("image/"):
            return guessed
    return None


def _walk_parts(
    msg: EmailMessage,
    parsed: ParsedMessage,
    allowed_types: frozenset[str],
    max_image_bytes: int,
) -> None:
    for index, part in enumerate(msg.walk()):
        if part.is_multipart():
            continue

        disposition = part.get_content_disposition() or "inline"
        content_type = part.get_content_type()

        image_type = _image_type(part)
        if image_type:
            filename = part.get_filename() or f"image-{index}{mimetypes.guess_extension(image_type) or ''}"

            if image_type not in allowed_types:
                log.warning(
                    "skipping_unsupported_image",
                    filename=filename,
                    content_type=image_type,
                )
                parsed.skipped_parts.append(f"{filename}: unsupported type {image_type}")
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                parsed.skipped_parts.append(f"{filename}: empty")
                continue

            if len(payload) > max_image_bytes:
                log.warning(
                    "skipping_oversized_image",
                    filename=filename,
                    size_bytes=len(payload),
                    max_size=max_image_bytes,
                )
                parsed.skipped_parts.append(f"{filename}: {len(payload)} bytes exceeds limit")
                continue

            content_id = part.get("Content-ID")
            parsed.image_parts.append(
                ImagePart(
                    filename=filename,
                    content=payload,
                    content_type=image_type,
                    disposition=disposition,
                    content_id=str(content_id).strip("<>") if content_id else None,
                )
            )
            continue

        if disposition == "attachment":
            continue

        # First text/plain and text/html bodies win
        if content_type == "text/plain" and not parsed.text_body:
            parsed.text_body = _decode_text(part).strip()
        elif content_type == "text/html" and not parsed.html_body:
            parsed.html_body = _decode_text(part).strip()


def parse_message(
    raw_message: str | bytes,
    *,
    allowed_image_types: Iterable[str] = ("image/jpeg", "image/png", "image/gif", "image/webp"),
    max_image_bytes: int = 10 * 1024 * 1024,
) -> ParsedMessage:
    """
    Parse a raw MIME message.

    Args:
        raw_message: Raw email content as string or bytes
        allowed_image_types: MIME types kept as property images
        max_image_bytes: Larger images are skipped

    Returns:
        ParsedMessage with headers, bodies and image parts

    Raises:
        ParseError: If the input is not a usable email message
    """
    raw_bytes = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    if not raw_bytes or not raw_bytes.strip():
        raise ParseError("empty message")

    try:
        msg = email.message_from_bytes(raw_bytes, policy=default_policy)
    except Exception as e:
        # email raises a wide range of exception types on pathological input
        raise ParseError(f"undecodable MIME structure: {e}") from e

    if not msg.keys():
        raise ParseError("no header block")

    fatal = [d for d in msg.defects if isinstance(d, FATAL_DEFECTS)]
    if fatal:
        raise ParseError(
            f"broken multipart structure: {type(fatal[0]).__name__}",
            defects=[type(d).__name__ for d in fatal],
        )

    try:
        from_address = _extract_address(str(msg.get("From", "") or ""))
        to_addresses = _extract_addresses(msg.get_all("To"))
        cc_addresses = _extract_addresses(msg.get_all("Cc"))
        delivered_to = _extract_addresses(msg.get_all("Delivered-To"))
        subject = str(msg.get("Subject", "") or "")
        message_id = str(msg.get("Message-ID", "") or "").strip()
        date = str(msg.get("Date")) if msg.get("Date") else None
    except (ValueError, IndexError, TypeError) as e:
        raise ParseError(f"unreadable headers: {e}") from e

    if not from_address and not (to_addresses or delivered_to):
        raise ParseError("missing From and recipient headers")

    parsed = ParsedMessage(
        from_address=from_address,
        subject=subject,
        message_id=message_id,
        to_addresses=to_addresses,
        cc_addresses=cc_addresses,
        delivered_to=delivered_to,
        date=date,
    )

    try:
        _walk_parts(msg, parsed, frozenset(allowed_image_types), max_image_bytes)
    except (ValueError, LookupError, binascii.Error) as e:
        raise ParseError(f"undecodable message part: {e}", message_id=message_id) from e

    log.debug(
        "message_parsed",
        message_id=message_id,
        from_address=from_address,
        image_count=len(parsed.image_parts),
        skipped=len(parsed.skipped_parts),
    )
    return parsed


# =====================================================
# Trigger payload decoding
# =====================================================


def _envelope_address(value: Any, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"{field_name} is not a string")
    return value


def _build_event(**fields: Any) -> IngestEvent:
    try:
        return IngestEvent(**fields)
    except ValidationError as e:
        raise ParseError(f"invalid trigger fields: {e.error_count()} error(s)") from e


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ParseError(f"invalid timestamp '{value}'") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if value not in (None, ""):
        raise ParseError(f"invalid timestamp '{value}'")
    return datetime.now(timezone.utc)


def _decode_raw(value: Any, encoding: str | None = None) -> bytes:
    """Decode raw message content that may be base64 or plain text."""
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str) or not value:
        raise ParseError("raw message content missing")
    if encoding is not None and not isinstance(encoding, str):
        raise ParseError("content encoding is not a string")

    if encoding and encoding.upper() == "BASE64":
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ParseError("content is not valid base64") from e

    if encoding:
        return value.encode("utf-8")

    # No declared encoding: content that already looks like headers is raw text
    if re.match(r"^[A-Za-z0-9-]+:", value):
        return value.encode("utf-8")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return value.encode("utf-8")


def iter_trigger_records(event: dict[str, Any]) -> list[dict[str, Any]]:
    """Split a Lambda event into per-message records."""
    records = event.get("Records")
    if isinstance(records, list):
        return records
    return [event]


def _section(container: dict[str, Any], name: str) -> dict[str, Any]:
    value = container.get(name) or {}
    if not isinstance(value, dict):
        raise ParseError(f"'{name}' is not an object")
    return value


def _decode_ses_notification(notification: dict[str, Any]) -> IngestEvent | S3MessageRef:
    notification_type = notification.get("notificationType") or notification.get("eventType")
    if notification_type in NON_INBOUND_NOTIFICATIONS:
        raise ParseError(f"not an inbound message: {notification_type} notification")

    mail = _section(notification, "mail")
    receipt = _section(notification, "receipt")
    action = _section(receipt, "action")

    recipients = receipt.get("recipients") or mail.get("destination") or []
    if isinstance(recipients, str):
        recipients = [recipients]
    if not isinstance(recipients, list):
        raise ParseError("recipients is not a list")
    sender = _envelope_address(mail.get("source"), "mail source")
    recipient = _envelope_address(recipients[0] if recipients else None, "recipient")
    received_at = _parse_timestamp(receipt.get("timestamp") or mail.get("timestamp"))

    content = notification.get("content")
    if content:
        return _build_event(
            sender_address=sender,
            recipient_address=recipient,
            raw_message=_decode_raw(content, action.get("encoding")),
            received_at=received_at,
        )

    if action.get("type") == "S3" and action.get("bucketName"):
        bucket, key = action["bucketName"], action.get("objectKey")
        if not isinstance(bucket, str) or not isinstance(key, str) or not key:
            raise ParseError("S3 action has no object location")
        return S3MessageRef(
            bucket=bucket,
            key=key,
            sender_address=sender,
            recipient_address=recipient,
            received_at=received_at,
        )

    raise ParseError("SES notification carries no message content")


def decode_trigger_record(record: dict[str, Any]) -> IngestEvent | S3MessageRef:
    """
    Decode one trigger record.

    Accepts the direct payload {sender, recipient, rawMessage, receivedAt},
    SNS records wrapping an SES notification, and bare SES notifications.

    Raises:
        ParseError: If the record is not a recognizable inbound message
    """
    if not isinstance(record, dict):
        raise ParseError("trigger record is not an object")

    payload: Any = record
    if "Sns" in record:
        message = (record.get("Sns") or {}).get("Message", "")
        try:
            payload = json.loads(message)
        except (TypeError, json.JSONDecodeError) as e:
            raise ParseError("SNS message is not valid JSON") from e
    elif "ses" in record:
        payload = record["ses"]

    if not isinstance(payload, dict):
        raise ParseError("trigger payload is not an object")

    if "rawMessage" in payload:
        return _build_event(
            sender_address=_envelope_address(payload.get("sender"), "sender"),
            recipient_address=_envelope_address(payload.get("recipient"), "recipient"),
            raw_message=_decode_raw(payload["rawMessage"], payload.get("encoding")),
            received_at=_parse_timestamp(payload.get("receivedAt")),
        )

    if "mail" in payload or "content" in payload:
        return _decode_ses_notification(payload)

    raise ParseError("unknown trigger payload", keys=sorted(payload.keys()))
