"""
Test Configuration

Unit tests for settings loading, validation and client configuration.
"""

import pytest

from property_images.config import get_settings, load_settings
from property_images.exceptions import ConfigError


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_loads_required_keys_from_environment(self):
        """Test required keys are read from PROPERTY_IMAGES_* variables."""
        settings = load_settings()

        assert settings.from_address == "archive@example.com"
        assert settings.to_addresses == ["agent@example.com", "office@example.com"]
        assert settings.feed_subscription_id == "sub-test"

    def test_defaults(self):
        """Test documented defaults."""
        settings = load_settings()

        assert settings.blob_retention_days == 120
        assert settings.feed_page_size == 10
        assert settings.max_pending_attempts == 5
        assert settings.max_images_per_property == 200
        assert settings.property_id_rule == "recipient_tag"
        assert settings.notify_on_ingest is False
        assert "image/jpeg" in settings.allowed_image_types

    def test_comma_separated_lists_are_trimmed(self, monkeypatch):
        """Test CSV values tolerate whitespace and empty items."""
        monkeypatch.setenv("PROPERTY_IMAGES_TO_ADDRESSES", " a@example.com , ,b@example.com ")
        monkeypatch.setenv("PROPERTY_IMAGES_ALLOWED_IMAGE_TYPES", "image/png,image/jpeg")

        settings = load_settings()

        assert settings.to_addresses == ["a@example.com", "b@example.com"]
        assert settings.allowed_image_types == ["image/png", "image/jpeg"]

    def test_missing_required_key_raises_config_error(self, monkeypatch):
        """Test a missing required key names the environment variable."""
        monkeypatch.delenv("PROPERTY_IMAGES_FEED_SUBSCRIPTION_ID")

        with pytest.raises(ConfigError) as exc_info:
            load_settings()

        assert "PROPERTY_IMAGES_FEED_SUBSCRIPTION_ID" in str(exc_info.value)
        assert exc_info.value.missing == ["feed_subscription_id"]

    def test_all_missing_keys_reported(self, monkeypatch):
        """Test every missing key is reported at once."""
        monkeypatch.delenv("PROPERTY_IMAGES_FROM_ADDRESS")
        monkeypatch.delenv("PROPERTY_IMAGES_TO_ADDRESSES")

        with pytest.raises(ConfigError) as exc_info:
            load_settings()

        assert set(exc_info.value.missing) == {"from_address", "to_addresses"}

    def test_empty_recipient_list_rejected(self, monkeypatch):
        """Test to_addresses must not be empty."""
        monkeypatch.setenv("PROPERTY_IMAGES_TO_ADDRESSES", " , ")

        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_settings()

    def test_invalid_address_rejected(self, monkeypatch):
        """Test addresses are validated."""
        monkeypatch.setenv("PROPERTY_IMAGES_FROM_ADDRESS", "not-an-address")

        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_settings()

    def test_page_size_bounds(self):
        """Test feed_page_size is bounded."""
        with pytest.raises(ConfigError):
            load_settings(feed_page_size=0)

    def test_invalid_property_id_pattern_rejected(self):
        """Test a regex that does not compile fails at load time."""
        with pytest.raises(ConfigError, match="property_id_pattern"):
            load_settings(property_id_rule="subject_token", property_id_pattern="(unclosed")

    def test_valid_property_id_pattern_accepted(self):
        settings = load_settings(property_id_rule="subject_token", property_id_pattern=r"ref-(\d+)")

        assert settings.property_id_pattern == r"ref-(\d+)"

    def test_overrides(self):
        """Test keyword overrides win over the environment."""
        settings = load_settings(feed_page_size=3, notify_on_ingest=True)

        assert settings.feed_page_size == 3
        assert settings.notify_on_ingest is True

    def test_settings_are_frozen(self, settings):
        """Test settings cannot be mutated after construction."""
        with pytest.raises(Exception):
            settings.feed_page_size = 50


class TestGetSettings:
    """Tests for the cached accessor."""

    def test_cached(self):
        """Test the same instance is returned until the cache is cleared."""
        assert get_settings() is get_settings()

    def test_cache_clear_reloads(self, monkeypatch):
        """Test cache_clear picks up environment changes."""
        first = get_settings()
        monkeypatch.setenv("PROPERTY_IMAGES_FEED_PAGE_SIZE", "7")
        get_settings.cache_clear()

        assert get_settings() is not first
        assert get_settings().feed_page_size == 7


class TestClientConfig:
    """Tests for boto3 client configuration."""

    def test_region_and_timeouts(self, settings):
        """Test clients get the region and bounded timeouts without botocore retries."""
        config = settings.dynamodb_config

        assert config["region_name"] == "us-east-1"
        assert "endpoint_url" not in config
        assert config["config"].connect_timeout == settings.aws_connect_timeout_seconds
        assert config["config"].read_timeout == settings.aws_read_timeout_seconds
        assert config["config"].retries["max_attempts"] == 1

    def test_endpoint_override(self):
        """Test local endpoints are passed through."""
        settings = load_settings(s3_endpoint_url="http://localhost:4566")

        assert settings.s3_config["endpoint_url"] == "http://localhost:4566"
        assert "endpoint_url" not in settings.ses_config
