"""
MailIngest Lambda

Archives property images received by email via SES → SNS.

Flow:
    Agent or photographer sends mail to images+<property_id>@domain
    → SES Receipt Rule
    → SNS Topic
    → This Lambda
    → DynamoDB PropertyRecord + S3 image blobs
"""

from lambdas.mail_ingest.email_parser import (
    ImagePart,
    ParsedMessage,
    decode_trigger_record,
    parse_message,
)
from lambdas.mail_ingest.handler import MailIngestHandler, lambda_handler
from lambdas.mail_ingest.property_id import build_deriver, normalize_property_id

__all__ = [
    "ImagePart",
    "MailIngestHandler",
    "ParsedMessage",
    "build_deriver",
    "decode_trigger_record",
    "lambda_handler",
    "normalize_property_id",
    "parse_message",
]
