"""
Unit tests for the concurrent page aggregator.
Pages are served by an in-memory fetcher that answers out of order.
"""
import random
import threading
import time

import pytest

from album_sync.errors import ConfigurationError, NetworkError
from album_sync.pagination import Page, PaginationAggregator, page_starts


class FakeCollection:
    """Serves 1-based pages over ``items`` with a random delay per request."""

    def __init__(self, items, fail_starts=(), max_delay=0.02, seed=7):
        self.items = list(items)
        self.fail_starts = set(fail_starts)
        self.requests = []
        self._lock = threading.Lock()
        self._rng = random.Random(seed)
        self._max_delay = max_delay

    def __call__(self, start, count):
        with self._lock:
            self.requests.append((start, count))
            delay = self._rng.uniform(0, self._max_delay)
        time.sleep(delay)
        if start in self.fail_starts:
            raise NetworkError(f"page at {start} dropped")
        chunk = self.items[start - 1:start - 1 + count]
        return Page.of(chunk, total_count=len(self.items), start_index=start)


class TestPageStarts:

    def test_covers_remaining_items(self):
        assert page_starts(1, 250, 100) == [2, 102, 202]

    def test_includes_last_single_item_page(self):
        # total - 1 is a multiple of the page size; the last item still gets a page.
        assert page_starts(1, 101, 100) == [2]
        assert page_starts(1, 102, 100) == [2, 102]

    def test_nothing_left(self):
        assert page_starts(1, 1, 100) == []


class TestCollect:

    def test_all_items_unique_and_sorted(self):
        names = [f"item-{i:03d}" for i in range(250)]
        shuffled = names[:]
        random.Random(3).shuffle(shuffled)
        fetcher = FakeCollection(shuffled)

        result = PaginationAggregator(page_size=100).collect(fetcher, sort_key=lambda s: s)

        assert result.items == names
        assert result.total_count == 250
        assert not result.partial
        assert fetcher.requests[0] == (1, 1)
        assert sorted(fetcher.requests[1:]) == [(2, 100), (102, 100), (202, 100)]

    def test_single_item_collection_needs_one_request(self):
        fetcher = FakeCollection(["only"])
        result = PaginationAggregator(page_size=100).collect(fetcher)
        assert result.items == ["only"]
        assert fetcher.requests == [(1, 1)]

    def test_empty_collection(self):
        fetcher = FakeCollection([])
        result = PaginationAggregator().collect(fetcher)
        assert result.items == []
        assert result.total_count == 0
        assert not result.partial

    def test_failed_page_gives_partial_result(self):
        items = list(range(1, 251))
        fetcher = FakeCollection(items, fail_starts={102})

        result = PaginationAggregator(page_size=100).collect(fetcher, sort_key=lambda n: n)

        assert result.partial
        assert result.failed_starts == [102]
        assert result.items == list(range(1, 102)) + list(range(202, 251))
        assert len(result.items) < result.total_count

    def test_first_request_failure_propagates(self):
        fetcher = FakeCollection(list(range(10)), fail_starts={1})
        with pytest.raises(NetworkError):
            PaginationAggregator(page_size=5).collect(fetcher)

    def test_on_complete_runs_once_with_sorted_items(self):
        calls = []
        fetcher = FakeCollection([5, 3, 9, 1, 7, 2], max_delay=0.01)

        result = PaginationAggregator(page_size=2).collect(
            fetcher, sort_key=lambda n: n, on_complete=calls.append
        )

        assert len(calls) == 1
        assert calls[0] is result
        assert calls[0].items == [1, 2, 3, 5, 7, 9]

    def test_on_complete_error_reaches_caller(self):
        def boom(_result):
            raise RuntimeError("side effect failed")

        fetcher = FakeCollection(list(range(30)))
        with pytest.raises(RuntimeError, match="side effect failed"):
            PaginationAggregator(page_size=10).collect(fetcher, on_complete=boom)

    def test_cancelled_before_fan_out_requests_no_pages(self):
        cancel = threading.Event()
        cancel.set()
        fetcher = FakeCollection(list(range(30)))

        result = PaginationAggregator(page_size=10, cancel_event=cancel).collect(fetcher)

        assert fetcher.requests == [(1, 1)]
        assert result.partial
        assert result.failed_starts == [2, 12, 22]
        assert result.items == [0]

    def test_interrupted_listing_is_reported_partial(self):
        seen = []
        inner = FakeCollection(list(range(1, 31)), max_delay=0.0)

        def fetcher(start, count):
            if start == 12:
                raise KeyboardInterrupt
            return inner(start, count)

        with pytest.raises(KeyboardInterrupt):
            PaginationAggregator(page_size=10).collect(fetcher, on_complete=seen.append)

        assert len(seen) == 1
        assert seen[0].partial
        assert 12 in seen[0].failed_starts
        assert len(seen[0].items) < seen[0].total_count

    def test_max_workers_limits_parallel_fetches(self):
        lock = threading.Lock()
        state = {"now": 0, "peak": 0}
        inner = FakeCollection(list(range(100)), max_delay=0.0)

        def fetcher(start, count):
            with lock:
                state["now"] += 1
                state["peak"] = max(state["peak"], state["now"])
            try:
                time.sleep(0.01)
                return inner(start, count)
            finally:
                with lock:
                    state["now"] -= 1

        result = PaginationAggregator(page_size=10, max_workers=2).collect(fetcher)
        assert len(result.items) == 100
        assert state["peak"] <= 2


class TestConfiguration:

    @pytest.mark.parametrize("page_size", [0, -1])
    def test_page_size_must_be_positive(self, page_size):
        with pytest.raises(ConfigurationError):
            PaginationAggregator(page_size=page_size)

    def test_max_workers_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            PaginationAggregator(max_workers=0)
