"""
Test Models

Unit tests for property records, image references, merge rules and
run summaries.
"""

import hashlib

import pytest
from pydantic import ValidationError

from property_images.models import (
    ArchiveRunResult,
    EntryResult,
    EntryStatus,
    FeedEntry,
    ImageRef,
    ImageSource,
    IngestOutcome,
    IngestStatus,
    PropertyRecord,
    merge_images,
    property_key,
)


def make_ref(label: str, captured_at: int = 1738800000) -> ImageRef:
    digest = hashlib.sha256(label.encode()).hexdigest()
    return ImageRef(
        key=f"images/{digest}",
        content_hash=digest,
        size_bytes=len(label),
        captured_at=captured_at,
        content_type="image/jpeg",
        source=ImageSource.EMAIL,
    )


class TestImageRef:
    """Tests for ImageRef."""

    def test_frozen(self):
        """Test image references are immutable."""
        ref = make_ref("A")
        with pytest.raises(ValidationError):
            ref.key = "other"

    def test_rejects_non_sha256_hash(self):
        """Test content_hash must be a SHA-256 hex digest."""
        with pytest.raises(ValidationError):
            ImageRef(key="k", content_hash="abc", size_bytes=1, captured_at=0)

    def test_dynamodb_round_trip_keeps_optional_fields(self):
        """Test optional metadata survives serialization."""
        ref = make_ref("A")
        assert ImageRef.from_dynamodb(ref.to_dynamodb()) == ref

    def test_dynamodb_omits_unset_optional_fields(self):
        """Test items without content_type or source stay compact."""
        digest = "a" * 64
        item = ImageRef(key="k", content_hash=digest, size_bytes=3, captured_at=5).to_dynamodb()

        assert "content_type" not in item
        assert "source" not in item


class TestMergeImages:
    """Tests for append-with-dedup merge."""

    def test_appends_in_order(self):
        """Test new references follow existing ones in the given order."""
        a, b, c = make_ref("A"), make_ref("B"), make_ref("C")

        merged, added = merge_images([a], [b, c])

        assert merged == [a, b, c]
        assert added == [b, c]

    def test_skips_known_hashes(self):
        """Test a repeated hash is not appended twice."""
        a, b, c = make_ref("A"), make_ref("B"), make_ref("C")

        merged, added = merge_images([a, b], [c, make_ref("A", captured_at=1)])

        assert [r.content_hash for r in merged] == [a.content_hash, b.content_hash, c.content_hash]
        assert added == [c]

    def test_dedups_within_new(self):
        """Test duplicates inside the new batch collapse to the first."""
        a = make_ref("A")

        merged, added = merge_images([], [a, make_ref("A", captured_at=2)])

        assert merged == [a]
        assert added == [a]

    def test_cap_evicts_oldest(self):
        """Test overflow evicts from the front."""
        refs = [make_ref(str(i)) for i in range(5)]

        merged, _ = merge_images(refs[:3], refs[3:], cap=4)

        assert merged == refs[1:]


class TestPropertyRecord:
    """Tests for PropertyRecord."""

    def test_keys(self):
        """Test single-table key layout."""
        record = PropertyRecord.empty("12345", 100)

        assert record.pk == "PROPERTY#12345"
        assert record.sk == "METADATA"
        assert property_key("12345") == {"PK": "PROPERTY#12345", "SK": "METADATA"}

    def test_merged_with_bumps_version_and_timestamp(self):
        """Test merge increments version and keeps the latest timestamp."""
        record = PropertyRecord.empty("12345", 100)

        updated, added = record.merged_with([make_ref("A")], now=200)

        assert updated.version == 1
        assert updated.last_updated == 200
        assert updated.created_at == 100
        assert len(added) == 1
        assert record.images == ()

    def test_last_updated_never_moves_backwards(self):
        """Test last_updated = max(old, new)."""
        record = PropertyRecord.empty("12345", 500)

        updated, _ = record.merged_with([make_ref("A")], now=100)

        assert updated.last_updated == 500

    def test_has_image(self):
        """Test content hash membership."""
        a = make_ref("A")
        record, _ = PropertyRecord.empty("p", 1).merged_with([a], now=1)

        assert record.has_image(a.content_hash)
        assert not record.has_image(make_ref("B").content_hash)

    def test_from_dynamodb_casts_decimals(self):
        """Test numeric attributes come back as ints (boto3 returns Decimal)."""
        from decimal import Decimal

        record, _ = PropertyRecord.empty("p", 1).merged_with([make_ref("A")], now=1)
        item = record.to_dynamodb()
        item["version"] = Decimal(item["version"])
        item["last_updated"] = Decimal(item["last_updated"])
        item["images"][0]["size_bytes"] = Decimal(item["images"][0]["size_bytes"])

        restored = PropertyRecord.from_dynamodb(item)

        assert restored == record
        assert isinstance(restored.version, int)


class TestIngestOutcome:
    """Tests for IngestOutcome."""

    def test_to_dict(self):
        """Test outcome serialization."""
        outcome = IngestOutcome(
            status=IngestStatus.STORED,
            property_id="12345",
            images_found=2,
            images_added=1,
        )

        assert outcome.to_dict()["status"] == "STORED"
        assert outcome.to_dict()["images_added"] == 1
        assert not outcome.status.is_rejection
        assert IngestStatus.REJECTED_NO_IMAGES_FOUND.is_rejection


class TestArchiveRunResult:
    """Tests for ArchiveRunResult."""

    def test_counts_and_failures(self):
        """Test summary counts by entry status."""
        results = [
            EntryResult(FeedEntry(property_id="1"), EntryStatus.SUCCESS, images_added=3),
            EntryResult(FeedEntry(property_id="2"), EntryStatus.TRANSIENT_FAILURE, error="timeout"),
            EntryResult(FeedEntry(property_id="3"), EntryStatus.PERMANENT_FAILURE, error="404"),
        ]
        run = ArchiveRunResult(subscription_id="sub", results=results, end_offset=3)

        summary = run.to_dict()

        assert (run.succeeded, run.transient_failures, run.permanent_failures) == (1, 1, 1)
        assert summary["attempted"] == 3
        assert summary["images_added"] == 3
        assert [f["property_id"] for f in summary["failures"]] == ["2", "3"]
