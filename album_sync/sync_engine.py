"""Sync engine – the listing, resync, upload and duplicate-query operations behind the CLI."""

from __future__ import annotations

import glob
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from album_sync.auth import load_credentials
from album_sync.clients.smugmug import (
    SEARCH_PAGE_SIZE,
    Album,
    RemoteImage,
    SmugMugClient,
    SmugMugTransport,
    SmugMugUploader,
)
from album_sync.config import SyncConfig
from album_sync.dedup_store import DedupRecord, DedupStore
from album_sync.hasher import ContentFingerprint, fingerprint_file
from album_sync.pagination import AggregateResult, Page, PageFetcher, PaginationAggregator
from album_sync.upload_pool import (
    Transmitter,
    UploadBatchResult,
    UploadOutcome,
    UploadWorkerPool,
    validate_attempts,
)

logger = logging.getLogger(__name__)


def format_size(num_bytes: int) -> str:
    """Return a human-readable file size string."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}" if unit != "B" else f"{num_bytes} {unit}"
        num_bytes /= 1024  # type: ignore[assignment]
    return f"{num_bytes:.1f} PB"


def expand_file_names(
    patterns: Iterable[str],
    expander: Callable[[str], list[str]] = glob.glob,
) -> list[str]:
    """Apply shell-style pattern matching to every argument, keeping argument order.

    Patterns the expander rejects are skipped, and patterns with no match add nothing.
    """
    expanded: list[str] = []
    for pattern in patterns:
        try:
            matches = expander(pattern)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping pattern %r: %s", pattern, exc)
            continue
        expanded.extend(matches)
    return expanded


def join_search_terms(terms: Sequence[str]) -> str:
    """Combine search terms into one query string separated by plus signs."""
    return "+".join(terms)


def image_records(album: str, images: Iterable[RemoteImage]) -> list[DedupRecord]:
    """Dedup records for the listed images; entries without an MD5 cannot be matched and are dropped."""
    records = []
    for img in images:
        if not img.md5:
            logger.debug("No MD5 for %s in album %s; not recorded", img.filename, album)
            continue
        records.append(DedupRecord(album, img.md5, img.size, img.filename))
    return records


class SyncEngine:
    """Wires the remote client, the dedup store and the worker pools together."""

    def __init__(
        self,
        client: SmugMugClient,
        transmitter: Transmitter,
        store: DedupStore,
        config: SyncConfig,
        cancel_event: threading.Event | None = None,
    ):
        self._client = client
        self._transmitter = transmitter
        self._store = store
        self._config = config
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def from_config(cls, config: SyncConfig, cancel_event: threading.Event | None = None) -> "SyncEngine":
        """Load credentials from the home folder and open the dedup store."""
        api_key = load_credentials(config.api_token_path)
        user_token = load_credentials(config.user_token_path)
        transport = SmugMugTransport(api_key, user_token, timeout=config.timeout)
        return cls(
            client=SmugMugClient(transport, api_root=config.api_root),
            transmitter=SmugMugUploader(transport, upload_uri=config.upload_uri),
            store=DedupStore.open(config.db_path),
            config=config,
            cancel_event=cancel_event,
        )

    @property
    def store(self) -> DedupStore:
        return self._store

    def cancel(self) -> None:
        self._cancel.set()

    # ── listings ────────────────────────────────────────────────────

    def list_all(
        self,
        fetcher: PageFetcher,
        sort_key: Callable[[Any], Any] | None = None,
        on_complete: Callable[[AggregateResult], None] | None = None,
    ) -> AggregateResult:
        """Fetch a whole paginated collection concurrently, sorted once at the end."""
        aggregator = PaginationAggregator(page_size=self._config.page_size, cancel_event=self._cancel)
        return aggregator.collect(fetcher, sort_key=sort_key, on_complete=on_complete)

    def list_albums(
        self, on_complete: Callable[[AggregateResult], None] | None = None
    ) -> AggregateResult:
        """Every album of the authenticated user, sorted by name."""
        user_uri = self._client.get_user_uri()
        fetcher = self._client.album_page_fetcher(self._client.albums_uri(user_uri))
        return self.list_all(fetcher, sort_key=lambda a: a.name, on_complete=on_complete)

    def list_images(self, album: str) -> AggregateResult:
        """Every image of *album*, sorted by filename."""
        fetcher = self._client.image_page_fetcher(album)
        return self.list_all(fetcher, sort_key=lambda img: img.filename)

    def sync_album_images(self, album: str) -> AggregateResult:
        """Replace the local records of *album* with the remote listing.

        A partial listing leaves the stored records untouched rather than
        erasing entries for images whose page failed.
        """

        def persist(result: AggregateResult) -> None:
            if result.partial:
                logger.warning(
                    "Listing for album %s is incomplete; dedup records not refreshed.", album
                )
                return
            self._store.replace_album(album, image_records(album, result.items))

        fetcher = self._client.image_page_fetcher(album)
        return self.list_all(fetcher, sort_key=lambda img: img.filename, on_complete=persist)

    def search_albums(self, terms: Sequence[str], start: int = 1, count: int = SEARCH_PAGE_SIZE) -> Page[Album]:
        user_uri = self._client.get_user_uri()
        return self._client.search_albums(user_uri, join_search_terms(terms), start=start, count=count)

    # ── uploads ─────────────────────────────────────────────────────

    def upload_batch(
        self,
        album: str,
        file_paths: Iterable[str | Path],
        concurrency: int | None = None,
        attempts: int | None = None,
        allow_duplicates: bool | None = None,
        reporter: Callable[[UploadOutcome], None] | None = None,
    ) -> UploadBatchResult:
        """Upload *file_paths* into *album*; returns one outcome per file."""
        attempts = self._config.attempts if attempts is None else attempts
        validate_attempts(attempts)
        pool = UploadWorkerPool(
            transmitter=self._transmitter,
            store=self._store,
            concurrency=self._config.workers if concurrency is None else concurrency,
            allow_duplicates=(
                self._config.allow_duplicates if allow_duplicates is None else allow_duplicates
            ),
            retry_delay=self._config.retry_delay,
            cancel_event=self._cancel,
            reporter=reporter,
        )
        return pool.upload_batch(album, file_paths, attempts)

    # ── duplicate queries ───────────────────────────────────────────

    def query_duplicates(self, album: str, fingerprint: ContentFingerprint) -> frozenset[str]:
        return self._store.find_duplicates(album, fingerprint)

    def duplicates_of_file(self, album: str, path: str | Path) -> tuple[ContentFingerprint, frozenset[str]]:
        fingerprint = fingerprint_file(path)
        return fingerprint, self.query_duplicates(album, fingerprint)
