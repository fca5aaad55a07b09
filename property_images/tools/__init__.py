# Store and I/O Tools
"""
Store and I/O components shared by both Lambda entry points.

- PropertyImageStore: property records in DynamoDB
- BlobArchive: content-addressed image bytes in S3
- NotificationRelay: best-effort outbound mail through SES
- FeedClient: external property feed over HTTP
"""

from property_images.tools.dynamodb import PropertyImageStore
from property_images.tools.email import NotificationRelay, OutboundAttachment
from property_images.tools.feed import FeedClient, FeedPage, FetchedImage
from property_images.tools.s3 import BlobArchive, content_hash

__all__ = [
    "PropertyImageStore",
    "BlobArchive",
    "content_hash",
    "NotificationRelay",
    "OutboundAttachment",
    "FeedClient",
    "FeedPage",
    "FetchedImage",
]
