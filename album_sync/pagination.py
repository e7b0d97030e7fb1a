"""Paginated listings – the Page type and the concurrent fan-out / fan-in aggregator.

The aggregator asks for one item to learn the collection size, then requests
every remaining page at once.  Finished pages travel over a single queue to one
collector thread; the queue carries either a page or the DONE marker, which is
sent only after every fetch has reported.  The collector sorts the merged items
once, runs the caller's side effect and exits.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from album_sync.errors import ConfigurationError, SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class Page(Generic[T]):
    """One slice of a remote collection. ``start_index`` is 1-based."""

    items: tuple[T, ...]
    total_count: int
    start_index: int
    returned_count: int

    @classmethod
    def of(cls, items: Sequence[T], total_count: int, start_index: int) -> "Page[T]":
        return cls(tuple(items), total_count, start_index, len(items))

    @property
    def is_empty(self) -> bool:
        return not self.items


# (start, count) -> Page. One request per call, no internal retry.
PageFetcher = Callable[[int, int], Page[T]]


@dataclass
class AggregateResult(Generic[T]):
    """Everything the collector merged, plus the starts of pages that failed."""

    items: list[T] = field(default_factory=list)
    total_count: int = 0
    failed_starts: list[int] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def partial(self) -> bool:
        return bool(self.failed_starts)


@dataclass(frozen=True)
class _PageMessage:
    page: Page[Any]


_DONE = object()


def page_starts(first_count: int, total: int, page_size: int) -> list[int]:
    """Start indexes of the pages still needed after the first *first_count* items."""
    return list(range(first_count + 1, total + 1, page_size))


class PaginationAggregator:
    """Drives concurrent page fetches for a whole collection and merges the results."""

    def __init__(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_workers: int | None = None,
        cancel_event: threading.Event | None = None,
    ):
        if page_size < 1:
            raise ConfigurationError(f"page_size must be at least 1, got {page_size}")
        if max_workers is not None and max_workers < 1:
            raise ConfigurationError(f"max_workers must be at least 1, got {max_workers}")
        self._page_size = page_size
        self._max_workers = max_workers
        self._cancel = cancel_event or threading.Event()

    def collect(
        self,
        fetcher: PageFetcher[T],
        sort_key: Callable[[T], Any] | None = None,
        on_complete: Callable[[AggregateResult[T]], None] | None = None,
    ) -> AggregateResult[T]:
        """Fetch the entire collection behind *fetcher*.

        A failure of the first (size) request propagates.  Later page
        failures are logged and leave their items out of a partial result.
        """
        started = time.monotonic()
        logger.info("Requesting collection size.")
        first = fetcher(1, 1)
        result: AggregateResult[T] = AggregateResult(total_count=first.total_count)

        if first.returned_count >= first.total_count:
            result.items = list(first.items)
            self._finalize(result, sort_key, on_complete, started)
            return result

        starts = page_starts(first.returned_count, first.total_count, self._page_size)
        inbox: queue.Queue = queue.Queue()
        collector_errors: list[BaseException] = []
        collector = threading.Thread(
            target=self._collect_loop,
            args=(inbox, list(first.items), result, sort_key, on_complete, started, collector_errors),
            name="page-collector",
            daemon=True,
        )
        collector.start()

        # Starts without a report yet; any left over when the loop is interrupted count as failed.
        pending = set(starts)
        try:
            workers = self._max_workers or len(starts)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="page-fetch") as executor:
                futures = {}
                for start in starts:
                    if self._cancel.is_set():
                        logger.warning("Listing cancelled; page at %d not requested.", start)
                        result.failed_starts.append(start)
                        pending.discard(start)
                        continue
                    logger.info("Requesting %d items starting at %d.", self._page_size, start)
                    futures[executor.submit(fetcher, start, self._page_size)] = start

                for future in as_completed(futures):
                    start = futures[future]
                    try:
                        inbox.put(_PageMessage(future.result()))
                    except SyncError as exc:
                        logger.warning("Page starting at %d failed: %s", start, exc)
                        result.failed_starts.append(start)
                    except Exception:
                        logger.exception("Unexpected error fetching page starting at %d", start)
                        result.failed_starts.append(start)
                    pending.discard(start)
        finally:
            if pending:
                logger.warning("Listing interrupted; %d page(s) never reported.", len(pending))
                result.failed_starts.extend(sorted(pending))
            inbox.put(_DONE)
            collector.join()

        if collector_errors:
            raise collector_errors[0]
        return result

    def _collect_loop(
        self,
        inbox: queue.Queue,
        items: list[T],
        result: AggregateResult[T],
        sort_key: Callable[[T], Any] | None,
        on_complete: Callable[[AggregateResult[T]], None] | None,
        started: float,
        errors: list[BaseException],
    ) -> None:
        while True:
            msg = inbox.get()
            if msg is _DONE:
                break
            items.extend(msg.page.items)
        result.items = items
        try:
            self._finalize(result, sort_key, on_complete, started)
        except Exception as exc:
            # Re-raised on the calling thread after join.
            errors.append(exc)

    @staticmethod
    def _finalize(
        result: AggregateResult[T],
        sort_key: Callable[[T], Any] | None,
        on_complete: Callable[[AggregateResult[T]], None] | None,
        started: float,
    ) -> None:
        if sort_key is not None:
            result.items.sort(key=sort_key)
        result.failed_starts.sort()
        result.elapsed = time.monotonic() - started
        if result.partial:
            logger.warning(
                "Listing is partial: got %d of %d item(s); %d page(s) failed.",
                len(result.items), result.total_count, len(result.failed_starts),
            )
        else:
            logger.info("Got %d of %d item(s).", len(result.items), result.total_count)
        if on_complete is not None:
            on_complete(result)
