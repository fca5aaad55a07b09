"""
Test NotificationRelay

Unit tests for best-effort SES notifications.
"""

import email
from email.policy import default as default_policy
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError

from property_images.tools.email import NotificationRelay, OutboundAttachment, build_raw_message


class TestBuildRawMessage:
    """Tests for build_raw_message()."""

    def test_inline_attachments(self):
        """Test attachments are added inline with their content type."""
        raw = build_raw_message(
            "archive@example.com",
            ["agent@example.com", "office@example.com"],
            "Property 12345",
            "Two images",
            [
                OutboundAttachment("a.png", b"\x89PNGaaa", "image/png"),
                OutboundAttachment("b.jpg", b"\xff\xd8bbb"),
            ],
        )

        msg = email.message_from_bytes(raw, policy=default_policy)
        parts = list(msg.iter_attachments())

        assert msg["To"] == "agent@example.com, office@example.com"
        assert [p.get_content_type() for p in parts] == ["image/png", "image/jpeg"]
        assert all(p.get_content_disposition() == "inline" for p in parts)
        assert parts[0].get_payload(decode=True) == b"\x89PNGaaa"


class TestSend:
    """Tests for NotificationRelay.send()."""

    def test_plain_send(self, relay, mock_aws_all):
        """Test a plain message goes out through send_email."""
        message_id = relay.send(
            "archive@example.com",
            ["agent@example.com"],
            "Property 12345",
            "1 new image",
        )

        assert message_id
        assert mock_aws_all["ses"].get_send_quota()["SentLast24Hours"] == 1

    def test_send_with_attachments_uses_raw(self, settings):
        """Test attachments switch to send_raw_email."""
        client = MagicMock()
        client.send_raw_email.return_value = {"MessageId": "raw-1"}
        relay = NotificationRelay(settings, client=client)

        message_id = relay.send(
            "archive@example.com",
            ["agent@example.com"],
            "Property 12345",
            "body",
            [OutboundAttachment("a.png", b"png", "image/png")],
        )

        assert message_id == "raw-1"
        client.send_email.assert_not_called()
        kwargs = client.send_raw_email.call_args.kwargs
        assert kwargs["Destinations"] == ["agent@example.com"]
        assert b"a.png" in kwargs["RawMessage"]["Data"]

    def test_raw_send_through_ses(self, relay, mock_aws_all):
        """Test raw messages are accepted by SES."""
        message_id = relay.send(
            "archive@example.com",
            ["agent@example.com"],
            "Property 12345",
            "body",
            [OutboundAttachment("a.png", b"png", "image/png")],
        )

        assert message_id

    def test_unverified_sender_returns_none(self, relay, mock_aws_all):
        """Test a rejected send is logged and swallowed."""
        assert relay.send("nobody@example.org", ["agent@example.com"], "s", "b") is None

    def test_connection_failure_returns_none(self, settings):
        """Test transport errors never propagate."""
        client = MagicMock()
        client.send_email.side_effect = EndpointConnectionError(endpoint_url="https://ses")
        relay = NotificationRelay(settings, client=client)

        assert relay.send("archive@example.com", ["agent@example.com"], "s", "b") is None

    def test_client_error_returns_none(self, settings):
        """Test SES client errors never propagate."""
        client = MagicMock()
        client.send_email.side_effect = ClientError(
            {"Error": {"Code": "Throttling", "Message": "Maximum sending rate exceeded"}},
            "SendEmail",
        )
        relay = NotificationRelay(settings, client=client)

        assert relay.send("archive@example.com", ["agent@example.com"], "s", "b") is None

    def test_missing_recipients_returns_none(self, settings):
        """Test nothing is sent without recipients."""
        client = MagicMock()
        relay = NotificationRelay(settings, client=client)

        assert relay.send("archive@example.com", ["", ""], "s", "b") is None
        client.send_email.assert_not_called()
