"""
MailIngest Lambda Handler

Main entry point for inbound property mail.
Parses each message, matches it to a property and archives its images.

Trigger: SNS topic subscribed to an SES receipt rule (or a direct invocation)
Output: PropertyRecord update in DynamoDB, image bytes in S3

Flow:
1. Decode the trigger record (embedded content or S3 reference)
2. Parse the MIME message
3. Derive the property id
4. Extract and deduplicate image parts
5. Store new blobs, then a single record upsert
6. Optionally send a confirmation email
"""

import json
import time
from typing import Any, Sequence

import boto3
import structlog
from botocore.exceptions import ClientError

from lambdas.mail_ingest.email_parser import (
    ImagePart,
    ParsedMessage,
    S3MessageRef,
    decode_trigger_record,
    iter_trigger_records,
    parse_message,
)
from lambdas.mail_ingest.property_id import PropertyIdDeriver, build_deriver
from property_images.config import Settings, get_settings
from property_images.deadline import Deadline
from property_images.exceptions import (
    BlobNotFoundError,
    ParseError,
    PropertyImagesError,
    StoreError,
    TransientIOError,
)
from property_images.logging_config import configure_logging
from property_images.models.events import IngestEvent, IngestOutcome, IngestStatus
from property_images.models.records import ImageRef, ImageSource, PropertyRecord
from property_images.retry import RetryPolicy, aws_errors
from property_images.state_machine import IngestState, IngestTracker
from property_images.tools.dynamodb import PropertyImageStore
from property_images.tools.email import NotificationRelay, OutboundAttachment
from property_images.tools.s3 import BlobArchive, content_hash

# Validated once per cold start; a ConfigError here fails the import
settings = get_settings()
configure_logging(settings.log_level)

log = structlog.get_logger()


class MailIngestHandler:
    """
    Processes one IngestEvent into one IngestOutcome.

    Rejections (malformed message, unknown property, no images) are
    terminal and write nothing. Transient store failures propagate to
    the caller after the retry budget is spent.
    """

    def __init__(
        self,
        settings: Settings,
        store: PropertyImageStore,
        archive: BlobArchive,
        relay: NotificationRelay,
        derive_property_id: PropertyIdDeriver | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._archive = archive
        self._relay = relay
        self._derive_property_id = derive_property_id or build_deriver(settings)

    def _reject(
        self,
        tracker: IngestTracker,
        state: IngestState,
        reason: str,
        property_id: str | None = None,
        images_found: int = 0,
    ) -> IngestOutcome:
        tracker.advance(state)
        log.warning(
            "message_rejected",
            status=state.value,
            property_id=property_id,
            reason=reason,
        )
        return IngestOutcome(
            status=tracker.outcome_status(),
            property_id=property_id,
            images_found=images_found,
            reason=reason,
        )

    def handle(self, event: IngestEvent) -> IngestOutcome:
        """
        Ingest one inbound message.

        Raises:
            TransientIOError: If a store stays unavailable after retries
            StoreError: On a non-retryable store failure
        """
        tracker = IngestTracker()

        try:
            parsed = parse_message(
                event.raw_message,
                allowed_image_types=self._settings.allowed_image_types,
                max_image_bytes=self._settings.max_image_bytes,
            )
        except ParseError as e:
            return self._reject(tracker, IngestState.REJECTED_MALFORMED_MESSAGE, e.reason)
        tracker.advance(IngestState.PARSED)

        property_id = self._derive_property_id(parsed, event)
        if not property_id:
            tracker.advance(IngestState.UNMATCHED)
            return self._reject(
                tracker,
                IngestState.REJECTED_UNKNOWN_PROPERTY,
                "no property id could be derived",
            )
        tracker.advance(IngestState.MATCHED)

        images = _unique_images(parsed.image_parts)
        if not images:
            return self._reject(
                tracker,
                IngestState.REJECTED_NO_IMAGES_FOUND,
                "message has no usable image parts",
                property_id=property_id,
            )
        tracker.advance(IngestState.IMAGES_EXTRACTED)

        log.info(
            "message_parsed",
            property_id=property_id,
            message_id=parsed.message_id,
            from_address=parsed.from_address,
            images_found=len(images),
            skipped_parts=len(parsed.skipped_parts),
        )

        existing = self._store.find(property_id)
        if existing is None and self._settings.require_known_property:
            return self._reject(
                tracker,
                IngestState.REJECTED_UNKNOWN_PROPERTY,
                "property has no record",
                property_id=property_id,
                images_found=len(images),
            )

        known = existing.content_hashes if existing else frozenset()
        captured_at = int(event.received_at.timestamp())
        new_refs = [
            self._store_blob(digest, part, captured_at)
            for digest, part in images
            if digest not in known
        ]

        record = existing
        if new_refs:
            record = self._store.upsert(property_id, new_refs, now=int(time.time()))
        tracker.advance(IngestState.STORED)

        log.info(
            "images_stored",
            property_id=property_id,
            images_found=len(images),
            images_added=len(new_refs),
            image_count=len(record.images) if record else 0,
        )

        outcome = IngestOutcome(
            status=IngestStatus.STORED,
            property_id=property_id,
            images_found=len(images),
            images_added=len(new_refs),
        )

        if self._settings.notify_on_ingest and record is not None:
            try:
                sent = self._notify(parsed, record, outcome)
            except PropertyImagesError as e:
                # The record is already committed; the outcome stands
                log.warning(
                    "notification_failed",
                    property_id=property_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                sent = False
            if sent:
                tracker.advance(IngestState.NOTIFICATION_SENT)
                outcome.notification_sent = True

        return outcome

    def _store_blob(self, digest: str, part: ImagePart, captured_at: int) -> ImageRef:
        key = self._archive.put(part.content, part.content_type)
        return ImageRef(
            key=key,
            content_hash=digest,
            size_bytes=part.size_bytes,
            captured_at=captured_at,
            content_type=part.content_type,
            source=ImageSource.EMAIL,
        )

    def _load_attachments(self, record: PropertyRecord) -> list[OutboundAttachment]:
        attachments = []
        for ref in record.images:
            try:
                data = self._archive.get(ref.key)
            except BlobNotFoundError:
                continue
            except (TransientIOError, StoreError) as e:
                log.warning(
                    "notification_attachments_unavailable",
                    property_id=record.property_id,
                    error=str(e),
                )
                break
            attachments.append(
                OutboundAttachment(
                    filename=f"{ref.content_hash[:12]}{_extension(ref.content_type)}",
                    content=data,
                    content_type=ref.content_type or "application/octet-stream",
                )
            )
        return attachments

    def _notify(
        self,
        parsed: ParsedMessage,
        record: PropertyRecord,
        outcome: IngestOutcome,
    ) -> bool:
        attachments = (
            self._load_attachments(record) if self._settings.notify_attach_images else []
        )
        subject = f"Property {record.property_id}: {outcome.images_added} new image(s)"
        body = "\n".join([
            f"Property: {record.property_id}",
            f"From: {parsed.from_address or 'unknown'}",
            f"Subject: {parsed.subject}",
            f"Images in message: {outcome.images_found}",
            f"New images archived: {outcome.images_added}",
            f"Images on record: {len(record.images)}",
        ])
        message_id = self._relay.send(
            self._settings.from_address,
            self._settings.to_addresses,
            subject,
            body,
            attachments,
        )
        return message_id is not None


def _unique_images(parts: Sequence[ImagePart]) -> list[tuple[str, ImagePart]]:
    """Hash image parts and drop in-message duplicates, keeping first occurrence."""
    seen: set[str] = set()
    unique = []
    for part in parts:
        digest = content_hash(part.content)
        if digest in seen:
            continue
        seen.add(digest)
        unique.append((digest, part))
    return unique


def _extension(content_type: str | None) -> str:
    subtype = (content_type or "").partition("/")[2]
    return {"jpeg": ".jpg", "png": ".png", "gif": ".gif", "webp": ".webp"}.get(subtype, "")


def _get_s3_client():
    """Get S3 client for raw messages stored by SES."""
    return boto3.client("s3", **settings.s3_config)


def fetch_raw_message(ref: S3MessageRef, retry_policy: RetryPolicy | None = None) -> IngestEvent:
    """
    Load a raw message that SES stored in S3.

    Raises:
        ParseError: If the stored object does not exist
        TransientIOError: If S3 stays unavailable
    """
    retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    def _get() -> bytes:
        with aws_errors("get_raw_message", ref.bucket):
            try:
                response = _get_s3_client().get_object(Bucket=ref.bucket, Key=ref.key)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                    raise ParseError("stored message not found", bucket=ref.bucket, key=ref.key) from e
                raise
            return response["Body"].read()

    log.info("email_stored_in_s3", bucket=ref.bucket, key=ref.key)
    return IngestEvent(
        sender_address=ref.sender_address,
        recipient_address=ref.recipient_address,
        raw_message=retry_policy.call(_get),
        received_at=ref.received_at,
    )


_handler: MailIngestHandler | None = None


def get_handler() -> MailIngestHandler:
    """Build the handler on first use; components create AWS clients lazily."""
    global _handler
    if _handler is None:
        _handler = MailIngestHandler(
            settings,
            PropertyImageStore(settings),
            BlobArchive(settings),
            NotificationRelay(settings),
        )
    return _handler


def _process_record(record: dict[str, Any], handler: MailIngestHandler) -> IngestOutcome:
    try:
        decoded = decode_trigger_record(record)
        event = fetch_raw_message(decoded) if isinstance(decoded, S3MessageRef) else decoded
    except ParseError as e:
        log.warning("trigger_record_rejected", reason=e.reason)
        return IngestOutcome(status=IngestStatus.REJECTED_MALFORMED_MESSAGE, reason=e.reason)

    return handler.handle(event)


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    AWS Lambda handler for inbound property mail.

    Each record is processed independently. Transient failures are
    re-raised after all records were attempted so the transport
    redelivers; redelivery is safe because writes are content-addressed.
    Records not started before the deadline are redelivered the same way.

    Args:
        event: SNS event, SES notification or direct payload
        context: Lambda context

    Returns:
        Response dict with one outcome per record
    """
    request_id = getattr(context, "aws_request_id", "local")
    deadline = Deadline.from_context(context, settings.deadline_safety_margin_seconds)
    handler = get_handler()
    records = iter_trigger_records(event)

    log.info(
        "processing_inbound_mail",
        request_id=request_id,
        record_count=len(records),
        remaining_seconds=deadline.remaining_seconds(),
    )

    outcomes: list[IngestOutcome] = []
    errors: list[str] = []
    transient: TransientIOError | None = None

    for index, record in enumerate(records):
        if deadline.should_stop():
            not_started = len(records) - index
            log.warning(
                "mail_ingest_stopped_at_deadline",
                request_id=request_id,
                not_started=not_started,
                remaining_seconds=deadline.remaining_seconds(),
            )
            transient = transient or TransientIOError(
                "ingest",
                "deadline reached before all records were started",
                not_started=not_started,
            )
            break

        try:
            outcomes.append(_process_record(record, handler))
        except TransientIOError as e:
            log.error("mail_ingest_transient_failure", request_id=request_id, error=str(e))
            transient = transient or e
        except PropertyImagesError as e:
            log.error(
                "mail_ingest_failed",
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            errors.append(str(e))

    if transient is not None:
        raise transient

    stored = [o for o in outcomes if o.status is IngestStatus.STORED]
    if errors:
        status_code = 500
    elif stored:
        status_code = 200
    else:
        status_code = 400

    log.info(
        "inbound_mail_processed",
        request_id=request_id,
        stored=len(stored),
        rejected=len(outcomes) - len(stored),
        errors=len(errors),
    )

    return {
        "statusCode": status_code,
        "body": json.dumps({
            "outcomes": [o.to_dict() for o in outcomes],
            "errors": errors or None,
        }),
    }
