"""
Property Identifier Derivation

Rules mapping an inbound message onto the property it belongs to.
The rule is selected by the property_id_rule setting.

Recipient tag convention:
    images+<property_id>@domain

Example:
    images+12345@archive.example.com -> 12345
"""

import re
from typing import Callable

import structlog

from lambdas.mail_ingest.email_parser import ParsedMessage
from property_images.config import Settings
from property_images.models.events import IngestEvent
from property_images.models.records import normalize_property_id

log = structlog.get_logger()

PropertyIdDeriver = Callable[[ParsedMessage, IngestEvent], str | None]

DEFAULT_SUBJECT_PATTERN = r"\b(\d{3,})\b"
DEFAULT_BODY_IMAGE_PATTERN = r"https://bilder\.hemnet\.se/images/itemgallery.+?([a-z0-9]+)\.jpg"

# Quoted-printable soft line break
SOFT_LINE_BREAK = re.compile(r"=\r?\n")


def _tag_from_address(address: str) -> str | None:
    local, at, _domain = address.strip().strip("<>").partition("@")
    if not at or not local:
        return None
    _base, plus, tag = local.partition("+")
    return tag if plus and tag else local


def recipient_tag(parsed: ParsedMessage, event: IngestEvent) -> str | None:
    """Plus-tag of the recipient local part, else the whole local part."""
    candidates = [event.recipient_address] if event.recipient_address else []
    candidates.extend(parsed.recipients)

    for address in candidates:
        property_id = normalize_property_id(_tag_from_address(address))
        if property_id:
            return property_id
    return None


def subject_token(pattern: str | None = None) -> PropertyIdDeriver:
    """Build a deriver matching the first capture group of pattern in the subject."""
    regex = re.compile(pattern or DEFAULT_SUBJECT_PATTERN)

    def derive(parsed: ParsedMessage, event: IngestEvent) -> str | None:
        match = regex.search(parsed.subject or "")
        if not match:
            return None
        return normalize_property_id(match.group(1) if regex.groups else match.group(0))

    return derive


def body_image_url(pattern: str | None = None) -> PropertyIdDeriver:
    """Build a deriver extracting the id from an image URL in the message body."""
    regex = re.compile(pattern or DEFAULT_BODY_IMAGE_PATTERN)

    def derive(parsed: ParsedMessage, event: IngestEvent) -> str | None:
        for body in (parsed.html_body, parsed.text_body):
            if not body:
                continue
            match = regex.search(SOFT_LINE_BREAK.sub("", body))
            if match:
                return normalize_property_id(match.group(1) if regex.groups else match.group(0))
        return None

    return derive


def build_deriver(settings: Settings) -> PropertyIdDeriver:
    """Select the deriver configured by property_id_rule."""
    rule = settings.property_id_rule
    log.debug("property_id_rule_selected", rule=rule, pattern=settings.property_id_pattern)

    if rule == "subject_token":
        return subject_token(settings.property_id_pattern)
    if rule == "body_image_url":
        return body_image_url(settings.property_id_pattern)
    return recipient_tag
