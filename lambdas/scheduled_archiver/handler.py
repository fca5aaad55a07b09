"""
ScheduledArchiver Lambda Handler

Main entry point for the scheduled feed archiver.
Advances a resumable cursor over the property feed and archives the
images of a bounded batch of entries per run.

Trigger: EventBridge Scheduled Rule (e.g., rate(15 minutes))
Output: PropertyRecord updates in DynamoDB, image bytes in S3

Flow:
1. Load the cursor for the configured subscription
2. Retry pending entries that failed transiently on earlier runs
3. Fetch one page of new entries from the cursor offset
4. Per entry: download images, dedup against the record, store new blobs,
   single record upsert
5. Commit the cursor (offset past attempted entries, updated pending list)
6. Return a run summary

Event detail (optional):
- dry_run: download and compare but write nothing, cursor included
- ensure_retention_policy: install the image expiry lifecycle rule first
"""

import json
import time
from typing import Any

import structlog

from lambdas.scheduled_archiver.cursor import ArchiverCursor, CursorStore, PendingEntry
from property_images.config import Settings, get_settings
from property_images.deadline import Deadline
from property_images.exceptions import (
    FeedError,
    PropertyImagesError,
    StoreError,
    TransientIOError,
)
from property_images.logging_config import configure_logging
from property_images.models.events import ArchiveRunResult, EntryResult, EntryStatus, FeedEntry
from property_images.models.records import ImageRef, ImageSource
from property_images.tools.dynamodb import PropertyImageStore
from property_images.tools.feed import FeedClient, FetchedImage
from property_images.tools.s3 import BlobArchive, content_hash

# Validated once per cold start; a ConfigError here fails the import
settings = get_settings()
configure_logging(settings.log_level)

log = structlog.get_logger()


class ScheduledArchiver:
    """Runs one bounded, resumable archival pass over the feed."""

    def __init__(
        self,
        settings: Settings,
        store: PropertyImageStore,
        archive: BlobArchive,
        feed: FeedClient,
        cursors: CursorStore,
    ) -> None:
        self._settings = settings
        self._store = store
        self._archive = archive
        self._feed = feed
        self._cursors = cursors

    def ensure_retention_policy(self) -> None:
        self._archive.ensure_retention_policy()

    # ---------------------------------------------------------------
    # Per-entry processing
    # ---------------------------------------------------------------

    def _download(self, entry: FeedEntry) -> tuple[list[FetchedImage], str | None, list[str]]:
        """
        Download every candidate image of an entry.

        Returns:
            Tuple of (fetched images, first transient error, permanent errors).
            Downloading stops at the first transient error.
        """
        fetched: list[FetchedImage] = []
        permanent: list[str] = []
        allowed = set(self._settings.allowed_image_types)

        for url in entry.image_urls:
            try:
                image = self._feed.fetch_image(url)
            except TransientIOError as e:
                return fetched, str(e), permanent
            except FeedError as e:
                log.warning("image_download_failed", property_id=entry.property_id, url=url, error=str(e))
                permanent.append(str(e))
                continue

            if image.content_type and image.content_type not in allowed:
                log.warning(
                    "skipping_unsupported_image",
                    property_id=entry.property_id,
                    url=url,
                    content_type=image.content_type,
                )
                permanent.append(f"{url}: unsupported type {image.content_type}")
                continue
            fetched.append(image)

        return fetched, None, permanent

    def process_entry(self, entry: FeedEntry, *, dry_run: bool = False) -> EntryResult:
        """
        Archive the images of one feed entry.

        An entry with any transient download failure writes nothing and is
        reported as a transient failure. Images that fail permanently are
        skipped; if none could be fetched the entry fails permanently.
        """
        if not entry.image_urls:
            log.info("feed_entry_without_images", property_id=entry.property_id)
            return EntryResult(entry=entry, status=EntryStatus.SUCCESS)

        fetched, transient_error, permanent_errors = self._download(entry)

        if transient_error:
            log.warning(
                "feed_entry_transient_failure",
                property_id=entry.property_id,
                error=transient_error,
            )
            return EntryResult(entry=entry, status=EntryStatus.TRANSIENT_FAILURE, error=transient_error)

        if not fetched:
            error = "; ".join(permanent_errors) or "no images could be fetched"
            log.error("feed_entry_permanent_failure", property_id=entry.property_id, error=error)
            return EntryResult(entry=entry, status=EntryStatus.PERMANENT_FAILURE, error=error)

        try:
            added = self._commit(entry.property_id, fetched, dry_run=dry_run)
        except TransientIOError as e:
            log.warning("feed_entry_transient_failure", property_id=entry.property_id, error=str(e))
            return EntryResult(entry=entry, status=EntryStatus.TRANSIENT_FAILURE, error=str(e))
        except StoreError as e:
            log.error("feed_entry_permanent_failure", property_id=entry.property_id, error=str(e))
            return EntryResult(entry=entry, status=EntryStatus.PERMANENT_FAILURE, error=str(e))

        return EntryResult(entry=entry, status=EntryStatus.SUCCESS, images_added=added)

    def _commit(self, property_id: str, fetched: list[FetchedImage], *, dry_run: bool) -> int:
        existing = self._store.find(property_id)
        known = set(existing.content_hashes) if existing else set()

        new_images = []
        for image in fetched:
            digest = content_hash(image.content)
            if digest in known:
                continue
            known.add(digest)
            new_images.append((digest, image))

        if dry_run:
            log.info("dry_run_entry", property_id=property_id, images_would_add=len(new_images))
            return 0

        if not new_images:
            log.info("property_unchanged", property_id=property_id, images_found=len(fetched))
            return 0

        now = int(time.time())
        refs = [
            ImageRef(
                key=self._archive.put(image.content, image.content_type),
                content_hash=digest,
                size_bytes=len(image.content),
                captured_at=now,
                content_type=image.content_type,
                source=ImageSource.FEED,
            )
            for digest, image in new_images
        ]
        self._store.upsert(property_id, refs, now=now)

        log.info(
            "images_stored",
            property_id=property_id,
            images_found=len(fetched),
            images_added=len(refs),
        )
        return len(refs)

    # ---------------------------------------------------------------
    # Run
    # ---------------------------------------------------------------

    def _retry_or_drop(
        self,
        result: EntryResult,
        attempts: int,
        run: ArchiveRunResult,
    ) -> PendingEntry | None:
        """Queue a transient failure for the next run, or drop it when out of attempts."""
        if attempts >= self._settings.max_pending_attempts:
            log.error(
                "pending_entry_dropped",
                property_id=result.property_id,
                attempts=attempts,
                error=result.error,
            )
            result.status = EntryStatus.PERMANENT_FAILURE
            run.dropped.append(result.property_id)
            return None
        return PendingEntry(entry=result.entry, attempts=attempts, last_error=result.error)

    def run(self, deadline: Deadline | None = None, *, dry_run: bool = False) -> ArchiveRunResult:
        """
        Run one archival pass.

        Pending entries are retried first, then one page of new entries is
        processed. No new entry is started once the deadline is near.

        Raises:
            TransientIOError: If the cursor cannot be loaded or committed
        """
        deadline = deadline or Deadline.unbounded()
        start_time = time.time()
        subscription_id = self._settings.feed_subscription_id

        cursor = self._cursors.load(subscription_id)
        run = ArchiveRunResult(
            subscription_id=subscription_id,
            start_offset=cursor.offset,
            end_offset=cursor.offset,
            dry_run=dry_run,
        )
        pending: list[PendingEntry] = []

        log.info(
            "archive_run_started",
            subscription_id=subscription_id,
            offset=cursor.offset,
            pending=len(cursor.pending),
            dry_run=dry_run,
        )

        for index, queued in enumerate(cursor.pending):
            if deadline.should_stop():
                run.stopped_early = True
                pending.extend(cursor.pending[index:])
                break

            result = self.process_entry(queued.entry, dry_run=dry_run)
            run.results.append(result)
            if result.status is EntryStatus.TRANSIENT_FAILURE:
                retry = self._retry_or_drop(result, queued.attempts + 1, run)
                if retry:
                    pending.append(retry)

        if not run.stopped_early and not deadline.should_stop():
            self._process_page(run, pending, deadline, dry_run=dry_run)
        else:
            run.stopped_early = True

        if run.stopped_early:
            log.warning(
                "archive_run_stopped_at_deadline",
                remaining_seconds=deadline.remaining_seconds(),
                end_offset=run.end_offset,
            )

        if not dry_run:
            self._cursors.save(
                ArchiverCursor(
                    subscription_id=subscription_id,
                    offset=run.end_offset,
                    pending=pending,
                )
            )

        run.duration_ms = (time.time() - start_time) * 1000

        log.info(
            "archive_run_completed",
            subscription_id=subscription_id,
            attempted=len(run.results),
            succeeded=run.succeeded,
            transient_failures=run.transient_failures,
            permanent_failures=run.permanent_failures,
            start_offset=run.start_offset,
            end_offset=run.end_offset,
            pending=len(pending),
            dropped=len(run.dropped),
            stopped_early=run.stopped_early,
            duration_ms=run.duration_ms,
        )
        return run

    def _process_page(
        self,
        run: ArchiveRunResult,
        pending: list[PendingEntry],
        deadline: Deadline,
        *,
        dry_run: bool,
    ) -> None:
        try:
            page = self._feed.fetch_page(run.start_offset, self._settings.feed_page_size)
        except (TransientIOError, FeedError) as e:
            log.error(
                "feed_page_unavailable",
                offset=run.start_offset,
                error=str(e),
                error_type=type(e).__name__,
            )
            run.page_error = str(e)
            return

        for position, entry in page:
            if deadline.should_stop():
                run.stopped_early = True
                return

            result = self.process_entry(entry, dry_run=dry_run)
            run.results.append(result)
            run.end_offset = position + 1
            if result.status is EntryStatus.TRANSIENT_FAILURE:
                retry = self._retry_or_drop(result, 1, run)
                if retry:
                    pending.append(retry)

        # Malformed entries at the end of the page are consumed too
        run.end_offset = page.next_offset


def _parse_scheduled_event(event: dict[str, Any]) -> dict[str, Any]:
    """
    Parse scheduled EventBridge event for optional configuration.

    Args:
        event: Lambda event payload

    Returns:
        Configuration dict
    """
    config = {
        "dry_run": False,
        "ensure_retention_policy": False,
    }

    detail = event.get("detail", {})
    if isinstance(detail, str):
        try:
            detail = json.loads(detail)
        except json.JSONDecodeError:
            log.warning("scheduled_event_detail_unreadable", detail=detail[:200])
            detail = {}

    if isinstance(detail, dict):
        config["dry_run"] = bool(detail.get("dry_run", False))
        config["ensure_retention_policy"] = bool(detail.get("ensure_retention_policy", False))

    return config


_archiver: ScheduledArchiver | None = None


def get_archiver() -> ScheduledArchiver:
    """Build the archiver on first use; components create clients lazily."""
    global _archiver
    if _archiver is None:
        _archiver = ScheduledArchiver(
            settings,
            PropertyImageStore(settings),
            BlobArchive(settings),
            FeedClient(settings),
            CursorStore(settings),
        )
    return _archiver


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Main Lambda handler for scheduled feed archival.

    Args:
        event: EventBridge scheduled event
        context: Lambda context

    Returns:
        Run summary
    """
    config = _parse_scheduled_event(event)
    deadline = Deadline.from_context(context, settings.deadline_safety_margin_seconds)
    archiver = get_archiver()

    log.info(
        "scheduled_archiver_invoked",
        dry_run=config["dry_run"],
        remaining_seconds=deadline.remaining_seconds(),
    )

    try:
        if config["ensure_retention_policy"] and not config["dry_run"]:
            archiver.ensure_retention_policy()
        result = archiver.run(deadline, dry_run=config["dry_run"])
    except PropertyImagesError as e:
        log.exception("archive_run_failed", error=str(e), error_type=type(e).__name__)
        return {
            "statusCode": 500,
            "body": {"message": "Archive run failed", "error": str(e)},
        }

    return {
        "statusCode": 200,
        "body": {"message": "Archive run complete", **result.to_dict()},
    }
