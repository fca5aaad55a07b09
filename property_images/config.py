"""
Configuration Management

Pydantic-settings based configuration for the property image archive.
All settings can be overridden via environment variables.

Settings are built and validated exactly once per cold start through
load_settings(); a missing required key raises ConfigError before any
event is processed.
"""

import re
from functools import lru_cache
from typing import Annotated, Literal

from botocore.config import Config as BotoConfig
from email_validator import EmailNotValidError, validate_email
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from property_images.exceptions import ConfigError

REQUIRED_KEYS = ("from_address", "to_addresses", "feed_subscription_id")


def _check_address(address: str) -> str:
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValueError(f"invalid email address '{address}': {e}") from e
    return address


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are prefixed with PROPERTY_IMAGES_ and are case-insensitive.
    Example: PROPERTY_IMAGES_DYNAMODB_TABLE_NAME=MyTable
    """

    model_config = SettingsConfigDict(
        env_prefix="PROPERTY_IMAGES_",
        env_file=[".env.local", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Required
    from_address: str = Field(
        ...,
        min_length=1,
        description="Sender address for outbound notifications",
    )
    to_addresses: Annotated[list[str], NoDecode] = Field(
        ...,
        min_length=1,
        description="Comma-separated recipients for outbound notifications",
    )
    feed_subscription_id: str = Field(
        ...,
        min_length=1,
        description="Feed subscription polled by the scheduled archiver",
    )

    # DynamoDB Configuration
    dynamodb_table_name: str = Field(
        default="PropertyImages",
        description="DynamoDB table holding property records and archiver cursors",
    )
    dynamodb_endpoint_url: str | None = Field(
        default=None,
        description="DynamoDB endpoint URL (for local development)",
    )

    # S3 Configuration
    s3_bucket_name: str = Field(
        default="property-images",
        description="S3 bucket for image bytes",
    )
    s3_images_prefix: str = Field(
        default="images/",
        description="Key prefix for content-addressed image objects",
    )
    s3_endpoint_url: str | None = Field(
        default=None,
        description="S3 endpoint URL (for local development)",
    )
    blob_retention_days: int = Field(
        default=120,
        ge=1,
        description="Days after which stored image bytes expire",
    )

    # SES Configuration
    ses_endpoint_url: str | None = Field(
        default=None,
        description="SES endpoint URL (for local development)",
    )
    notify_on_ingest: bool = Field(
        default=False,
        description="Send a confirmation email after each mail ingestion",
    )
    notify_attach_images: bool = Field(
        default=False,
        description="Attach the property's stored images to confirmations",
    )

    # Feed Configuration
    feed_base_url: str = Field(
        default="https://feed.example.com/v1",
        description="Base URL of the external property feed",
    )
    feed_api_token: str | None = Field(
        default=None,
        description="Bearer token for the property feed",
    )
    feed_page_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Feed entries fetched per archiver run",
    )
    feed_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for feed and image download requests",
    )
    max_pending_attempts: int = Field(
        default=5,
        ge=1,
        description="Runs a transiently failing entry is retried before it is dropped",
    )

    # Ingestion rules
    property_id_rule: Literal["recipient_tag", "subject_token", "body_image_url"] = Field(
        default="recipient_tag",
        description="Rule deriving the property id from an inbound message",
    )
    property_id_pattern: str | None = Field(
        default=None,
        description="Regex for subject_token/body_image_url rules (first group is the id)",
    )
    require_known_property: bool = Field(
        default=False,
        description="Reject mail for properties without an existing record",
    )
    allowed_image_types: Annotated[list[str], NoDecode] = Field(
        default=["image/jpeg", "image/png", "image/gif", "image/webp"],
        description="MIME types accepted as property images",
    )
    max_image_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Images larger than this are skipped",
    )
    max_images_per_property: int = Field(
        default=200,
        ge=1,
        description="Image list cap; oldest references are evicted on overflow",
    )

    # Resilience
    retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per store/network call before giving up",
    )
    retry_max_wait_seconds: float = Field(
        default=8.0,
        ge=0,
        description="Upper bound on exponential backoff between attempts",
    )
    store_conflict_retries: int = Field(
        default=5,
        ge=1,
        description="Re-merge attempts for conflicting concurrent upserts",
    )
    aws_connect_timeout_seconds: float = Field(default=5.0, gt=0)
    aws_read_timeout_seconds: float = Field(default=10.0, gt=0)
    deadline_safety_margin_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Stop starting new work when less time than this remains",
    )

    # AWS / Application Configuration
    aws_region: str = Field(
        default="eu-north-1",
        description="AWS region",
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("to_addresses", "allowed_image_types", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("from_address")
    @classmethod
    def _validate_from(cls, value: str) -> str:
        return _check_address(value)

    @field_validator("to_addresses")
    @classmethod
    def _validate_to(cls, value: list[str]) -> list[str]:
        return [_check_address(address) for address in value]

    @field_validator("property_id_pattern")
    @classmethod
    def _validate_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid property_id_pattern '{value}': {e}") from e
        return value

    def _client_config(self, endpoint_url: str | None) -> dict:
        config = {
            "region_name": self.aws_region,
            # Retries are owned by property_images.retry, not botocore
            "config": BotoConfig(
                connect_timeout=self.aws_connect_timeout_seconds,
                read_timeout=self.aws_read_timeout_seconds,
                retries={"mode": "standard", "max_attempts": 1},
            ),
        }
        if endpoint_url:
            config["endpoint_url"] = endpoint_url
        return config

    @property
    def dynamodb_config(self) -> dict:
        """DynamoDB client configuration."""
        return self._client_config(self.dynamodb_endpoint_url)

    @property
    def s3_config(self) -> dict:
        """S3 client configuration."""
        return self._client_config(self.s3_endpoint_url)

    @property
    def ses_config(self) -> dict:
        """SES client configuration."""
        return self._client_config(self.ses_endpoint_url)


def load_settings(**overrides) -> Settings:
    """
    Build and validate settings.

    Raises:
        ConfigError: If a required key is missing or any value is invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing = [
            ".".join(str(part) for part in err["loc"])
            for err in e.errors()
            if err["type"] == "missing"
        ]
        if missing:
            env_names = ", ".join(f"PROPERTY_IMAGES_{name.upper()}" for name in missing)
            raise ConfigError(
                f"Missing required configuration: {env_names}",
                missing=missing,
            ) from e
        raise ConfigError(f"Invalid configuration: {e}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache so validation happens once per process.
    Call get_settings.cache_clear() in tests after changing the environment.
    """
    return load_settings()
