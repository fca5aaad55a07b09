"""
Feed Tools

HTTP client for the external property feed and for downloading the
candidate images it lists.

Feed API:
    GET {feed_base_url}/subscriptions/{subscription_id}/entries?offset=N&limit=M
    -> {"entries": [{"property_id": "...", "image_urls": ["..."]}]}
"""

from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from property_images.config import Settings
from property_images.exceptions import CapacityError, FeedError, TransientIOError
from property_images.models.events import FeedEntry
from property_images.models.records import normalize_property_id
from property_images.retry import RetryPolicy

log = structlog.get_logger()

TRANSIENT_STATUS_CODES = frozenset({408, 500, 502, 503, 504})


@dataclass(frozen=True)
class FetchedImage:
    """Downloaded image bytes with their declared type."""

    url: str
    content: bytes
    content_type: str | None


@dataclass(frozen=True)
class FeedPage:
    """
    One page of feed entries.

    positions holds the absolute feed offset of each entry; malformed
    entries are skipped but still counted in size so the cursor moves
    past them.
    """

    offset: int
    entries: tuple[FeedEntry, ...]
    positions: tuple[int, ...]
    size: int

    @property
    def next_offset(self) -> int:
        return self.offset + self.size

    def __iter__(self):
        return iter(zip(self.positions, self.entries))

    def __len__(self) -> int:
        return len(self.entries)


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    status = response.status_code
    if status < 400:
        return
    url = str(response.request.url)
    if status == 429:
        raise CapacityError(operation, f"HTTP {status}", url=url)
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientIOError(operation, f"HTTP {status}", url=url)
    raise FeedError(url=url, status_code=status, error_message=f"HTTP {status}")


def _parse_entry(raw: Any) -> FeedEntry | None:
    """Build a FeedEntry, or None when the entry is malformed."""
    if not isinstance(raw, dict):
        return None
    property_id = raw.get("property_id") or raw.get("id")
    if isinstance(property_id, int) and not isinstance(property_id, bool):
        property_id = str(property_id)
    property_id = normalize_property_id(property_id)
    if property_id is None:
        return None

    urls = raw.get("image_urls") or raw.get("images") or []
    if not isinstance(urls, list) or not all(isinstance(url, str) for url in urls):
        return None

    try:
        return FeedEntry(
            property_id=property_id,
            image_urls=tuple(url for url in urls if url),
            fetch_token=raw.get("fetch_token"),
        )
    except ValidationError:
        return None


class FeedClient:
    """Synchronous feed client with bounded timeouts and retries."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._owns_client = http_client is None
        self._client = http_client or self._build_client()

    def _build_client(self) -> httpx.Client:
        headers = {"Accept": "application/json"}
        if self._settings.feed_api_token:
            headers["Authorization"] = f"Bearer {self._settings.feed_api_token}"
        return httpx.Client(
            timeout=httpx.Timeout(self._settings.feed_timeout_seconds),
            headers=headers,
            follow_redirects=True,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "FeedClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, url: str, operation: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientIOError(operation, f"timeout: {e}", url=url) from e
        except httpx.TransportError as e:
            raise TransientIOError(operation, str(e), url=url) from e
        _raise_for_status(response, operation)
        return response

    def entries_url(self) -> str:
        base = self._settings.feed_base_url.rstrip("/")
        return f"{base}/subscriptions/{self._settings.feed_subscription_id}/entries"

    def fetch_page(self, offset: int, limit: int) -> FeedPage:
        """
        Fetch one page of feed entries starting at offset.

        Raises:
            TransientIOError: If the feed stays unavailable after retries
            FeedError: On a permanent HTTP error or an unreadable payload
        """
        url = self.entries_url()
        response = self._retry.call(
            self._get,
            url,
            "feed_page",
            {"offset": offset, "limit": limit},
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise FeedError(url=url, error_message=f"invalid JSON: {e}") from e

        raw_entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(raw_entries, list):
            raise FeedError(url=url, error_message="response has no 'entries' list")

        raw_entries = raw_entries[:limit]
        entries: list[FeedEntry] = []
        positions: list[int] = []
        for index, raw in enumerate(raw_entries):
            entry = _parse_entry(raw)
            if entry is None:
                log.warning("feed_entry_malformed", offset=offset + index, entry=raw)
                continue
            entries.append(entry)
            positions.append(offset + index)

        log.info(
            "feed_page_fetched",
            offset=offset,
            limit=limit,
            count=len(entries),
            malformed=len(raw_entries) - len(entries),
        )
        return FeedPage(
            offset=offset,
            entries=tuple(entries),
            positions=tuple(positions),
            size=len(raw_entries),
        )

    def fetch_image(self, url: str) -> FetchedImage:
        """
        Download one candidate image.

        Raises:
            TransientIOError: On timeouts, connection failures, 408/429/5xx
            FeedError: On other HTTP errors, non-image or oversized responses
        """
        response = self._retry.call(self._get, url, "image_download")

        content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        if content_type and not content_type.startswith("image/"):
            raise FeedError(url=url, error_message=f"not an image: {content_type}")

        content = response.content
        if not content:
            raise FeedError(url=url, error_message="empty response body")
        if len(content) > self._settings.max_image_bytes:
            raise FeedError(
                url=url,
                error_message=f"image of {len(content)} bytes exceeds limit",
            )

        log.debug("image_downloaded", url=url, size_bytes=len(content))
        return FetchedImage(url=url, content=content, content_type=content_type)
