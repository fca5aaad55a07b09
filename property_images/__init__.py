# Property Image Archive
"""
Shared infrastructure for the property image archive.

This package provides:
- Configuration management (pydantic-settings)
- Error taxonomy and retry policy
- Pydantic models for property records, image references and trigger payloads
- Store tools for DynamoDB, S3, SES and the external feed
- The mail ingestion state machine
"""

from property_images.config import Settings, get_settings, load_settings
from property_images.exceptions import (
    BlobNotFoundError,
    CapacityError,
    ConfigError,
    FeedError,
    NotFoundError,
    ParseError,
    PropertyImagesError,
    PropertyNotFoundError,
    StoreError,
    TransientIOError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "load_settings",
    # Exceptions
    "PropertyImagesError",
    "ConfigError",
    "ParseError",
    "NotFoundError",
    "PropertyNotFoundError",
    "BlobNotFoundError",
    "TransientIOError",
    "CapacityError",
    "StoreError",
    "FeedError",
]
