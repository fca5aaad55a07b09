"""
Email Tools

NotificationRelay: best-effort outbound mail through SES.

A send failure is logged and discarded; it never changes or retries the
ingestion outcome being reported.
"""

from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Sequence

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from property_images.config import Settings

log = structlog.get_logger()


@dataclass(frozen=True)
class OutboundAttachment:
    """An inline attachment for an outbound notification."""

    filename: str
    content: bytes
    content_type: str = "image/jpeg"


def _get_client(settings: Settings):
    """Get SES client."""
    return boto3.client("ses", **settings.ses_config)


def build_raw_message(
    from_address: str,
    to_addresses: Sequence[str],
    subject: str,
    body: str,
    attachments: Sequence[OutboundAttachment],
) -> bytes:
    """Build a MIME message with the body and inline attachments."""
    message = EmailMessage()
    message["From"] = from_address
    message["To"] = ", ".join(to_addresses)
    message["Subject"] = subject
    message.set_content(body)

    for attachment in attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        message.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
            disposition="inline",
        )

    return message.as_bytes()


class NotificationRelay:
    """Fire-and-forget sender for ingestion confirmations and reports."""

    def __init__(self, settings: Settings, *, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_client(self._settings)
        return self._client

    def send(
        self,
        from_address: str,
        to_addresses: Sequence[str],
        subject: str,
        body: str,
        attachments: Sequence[OutboundAttachment] = (),
    ) -> str | None:
        """
        Send an email via SES.

        Returns:
            SES message ID, or None if the send failed (already logged)
        """
        recipients = [address for address in to_addresses if address]
        if not from_address or not recipients:
            log.error(
                "notification_missing_addresses",
                from_address=from_address,
                to_addresses=list(to_addresses),
            )
            return None

        log.info(
            "sending_notification",
            to=recipients,
            subject=subject[:80],
            attachment_count=len(attachments),
        )

        try:
            if attachments:
                raw = build_raw_message(from_address, recipients, subject, body, attachments)
                response = self.client.send_raw_email(
                    Source=from_address,
                    Destinations=recipients,
                    RawMessage={"Data": raw},
                )
            else:
                response = self.client.send_email(
                    Source=from_address,
                    Destination={"ToAddresses": recipients},
                    Message={
                        "Subject": {"Data": subject, "Charset": "UTF-8"},
                        "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
                    },
                )
        except ClientError as e:
            log.error(
                "notification_send_failed",
                to=recipients,
                error_code=e.response.get("Error", {}).get("Code"),
                error_message=e.response.get("Error", {}).get("Message"),
            )
            return None
        except BotoCoreError as e:
            log.error("notification_send_failed", to=recipients, error=str(e))
            return None

        message_id = response["MessageId"]
        log.info("notification_sent", message_id=message_id, to=recipients)
        return message_id
