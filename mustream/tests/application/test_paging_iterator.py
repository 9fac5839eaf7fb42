import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List
from unittest.mock import Mock

import pytest

from mustream.application.iterators import (
    NO_RETRY, PAGE_SIZE, PagingIterator, PrefetchDispatcher, RetryPolicy,
    fetch_with_retry, new_album_iterator, new_artist_iterator, new_track_iterator
)
from mustream.crosscutting.metrics import MetricsCollector
from mustream.domain.entities import Album, Artist, Track
from mustream.domain.errors import RateLimited, TemporaryFailure
from mustream.domain.filters import (
    AlbumFilter, AlbumFilterOptions, ArtistFilter, ArtistFilterOptions
)


def _albums(start: int, count: int, **kwargs) -> List[Album]:
    return [Album(id=f"al-{i}", name=f"Album {i}", cover_art_id=f"cov-{i}", **kwargs)
            for i in range(start, start + count)]


class ScriptedFetcher:
    """Fetch function returning scripted pages per call and recording (offset, limit)."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.calls = []

    def __call__(self, offset: int, limit: int):
        self.calls.append((offset, limit))
        if not self.pages:
            return []
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


class TestPagingIterator:
    """Tests for the generic paging iterator."""

    def test_serves_two_full_pages_then_ends(self):
        by_offset: Dict[int, List[Album]] = {0: _albums(0, 20), 20: _albums(20, 20)}
        calls = []

        def fetcher(offset, limit):
            calls.append((offset, limit))
            return by_offset.get(offset, [])

        iterator = new_album_iterator(fetcher, None, None)
        items = []
        for _ in range(40):
            items.append(iterator.next())

        assert all(item is not None for item in items)
        assert [a.id for a in items] == [f"al-{i}" for i in range(40)]
        assert iterator.next() is None
        assert iterator.next() is None
        assert calls == [(0, PAGE_SIZE), (20, PAGE_SIZE), (40, PAGE_SIZE)]

    def test_exhaustion_is_permanent(self):
        fetcher = ScriptedFetcher([_albums(0, 2), [], _albums(2, 5)])
        iterator = new_album_iterator(fetcher, None, None)

        assert iterator.next().id == "al-0"
        assert iterator.next().id == "al-1"
        assert iterator.next() is None
        for _ in range(3):
            assert iterator.next() is None
        # the page scripted after the empty one is never requested
        assert len(fetcher.calls) == 2

    def test_offset_advances_by_items_returned(self):
        fetcher = ScriptedFetcher([_albums(0, 7), _albums(7, 3), _albums(10, 20), []])
        iterator = new_album_iterator(fetcher, None, None)

        assert len(list(iterator)) == 30
        assert [offset for offset, _ in fetcher.calls] == [0, 7, 10, 30]
        assert all(limit == PAGE_SIZE for _, limit in fetcher.calls)

    def test_filter_correctness(self):
        page = [Album(id=f"al-{i}", year=1990 + i) for i in range(20)]
        fetcher = ScriptedFetcher([page, []])
        album_filter = AlbumFilter(AlbumFilterOptions(min_year=2000))
        iterator = new_album_iterator(fetcher, album_filter, None)

        items = list(iterator)
        assert [a.year for a in items] == list(range(2000, 2010))
        assert all(album_filter.matches(a) for a in items)

    def test_nil_filter_passes_everything_without_calling_matches(self):
        media_filter = Mock()
        media_filter.is_nil.return_value = True
        fetcher = ScriptedFetcher([_albums(0, 3), []])
        iterator = PagingIterator(fetcher, media_filter)

        assert len(list(iterator)) == 3
        media_filter.matches.assert_not_called()

    def test_fully_filtered_page_does_not_end_iteration(self):
        unfavorited = _albums(0, 20, favorite=False)
        favorites = [Album(id="fav-1", favorite=True), Album(id="fav-2", favorite=True)]
        fetcher = ScriptedFetcher([unfavorited, favorites, []])
        iterator = new_album_iterator(
            fetcher, AlbumFilter(AlbumFilterOptions(exclude_unfavorited=True)), None)

        assert iterator.next().id == "fav-1"
        assert iterator.next().id == "fav-2"
        assert iterator.next() is None
        assert [offset for offset, _ in fetcher.calls] == [0, 20, 22]

    def test_fetch_error_ends_iteration_without_raising(self):
        fetcher = ScriptedFetcher([_albums(0, 20), TemporaryFailure("boom"), _albums(20, 20)])
        iterator = new_album_iterator(fetcher, None, None)

        assert len(list(iterator)) == 20
        assert iterator.next() is None
        assert len(fetcher.calls) == 2

    def test_any_exception_is_treated_as_empty_page(self):
        fetcher = ScriptedFetcher([ValueError("malformed record")])
        iterator = new_album_iterator(fetcher, None, None)
        assert iterator.next() is None

    def test_retry_policy_recovers_from_transient_error(self):
        fetcher = ScriptedFetcher([TemporaryFailure("blip"), _albums(0, 5), []])
        sleeps = []
        iterator = PagingIterator(fetcher, retry_policy=RetryPolicy(max_attempts=3, backoff_ms=100),
                                  sleep=sleeps.append)

        assert len(list(iterator)) == 5
        assert fetcher.calls[:2] == [(0, PAGE_SIZE), (0, PAGE_SIZE)]
        assert sleeps == [0.1]

    def test_retry_policy_gives_up_after_max_attempts(self):
        fetcher = ScriptedFetcher([TemporaryFailure("down")] * 5)
        metrics = MetricsCollector("album")
        iterator = PagingIterator(fetcher, retry_policy=RetryPolicy(max_attempts=3, backoff_ms=10),
                                  metrics=metrics, sleep=lambda s: None)

        assert iterator.next() is None
        assert len(fetcher.calls) == 3
        assert metrics.get_metrics().fetch_errors == 3
        assert metrics.get_metrics().retries == 2
        assert iterator.next() is None
        assert len(fetcher.calls) == 3

    def test_prefetch_dispatched_for_every_item_of_page(self, immediate_executor):
        fetcher = ScriptedFetcher([_albums(0, 3), []])
        sink = Mock()
        iterator = new_album_iterator(fetcher, None, sink, executor=immediate_executor)

        first = iterator.next()
        assert first.id == "al-0"
        # the whole page is prefetched when it arrives, not item by item
        assert sorted(c.args[0] for c in sink.call_args_list) == ["cov-0", "cov-1", "cov-2"]

    def test_prefetch_skips_filtered_items(self, immediate_executor):
        page = [Album(id="a", cover_art_id="ca", year=2001), Album(id="b", cover_art_id="cb", year=1980)]
        sink = Mock()
        iterator = new_album_iterator(ScriptedFetcher([page, []]),
                                      AlbumFilter(AlbumFilterOptions(min_year=2000)),
                                      sink, executor=immediate_executor)
        list(iterator)
        sink.assert_called_once_with("ca")

    def test_prefetch_failure_is_not_observable(self, immediate_executor):
        sink = Mock(side_effect=RuntimeError("image server down"))
        metrics = MetricsCollector("album")
        iterator = new_album_iterator(ScriptedFetcher([_albums(0, 2), []]), None, sink,
                                      executor=immediate_executor, metrics=metrics)

        assert [a.id for a in iterator] == ["al-0", "al-1"]
        assert metrics.get_metrics().prefetch_failures == 2

    def test_slow_prefetch_does_not_block_next(self):
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            iterator = new_album_iterator(ScriptedFetcher([_albums(0, 3), []]), None,
                                          lambda cover_id: release.wait(5), executor=executor)

            assert iterator.next().id == "al-0"
            assert iterator.next().id == "al-1"
            assert not release.is_set()
        finally:
            release.set()
            executor.shutdown(wait=True)

    def test_artist_iterator_filters(self):
        artists = [Artist(id="1", favorite=True), Artist(id="2"), Artist(id="3", favorite=True)]
        iterator = new_artist_iterator(ScriptedFetcher([artists, []]),
                                       ArtistFilter(ArtistFilterOptions(exclude_unfavorited=True)), None)
        assert [a.id for a in iterator] == ["1", "3"]

    def test_track_iterator_has_no_filter(self):
        tracks = [Track(id=str(i)) for i in range(5)]
        iterator = new_track_iterator(ScriptedFetcher([tracks, []]), None)
        assert [t.id for t in iterator] == ["0", "1", "2", "3", "4"]

    def test_metrics_are_recorded(self):
        page = [Album(id=str(i), year=2000 if i % 2 else 1990) for i in range(10)]
        metrics = MetricsCollector("album")
        iterator = new_album_iterator(ScriptedFetcher([page, []]),
                                      AlbumFilter(AlbumFilterOptions(min_year=2000)), None,
                                      metrics=metrics)
        list(iterator)

        m = metrics.get_metrics()
        assert m.pages_fetched == 1
        assert m.items_fetched == 10
        assert m.items_filtered_out == 5
        assert m.items_returned == 5
        assert m.exhausted is True


class TestFetchWithRetry:
    """Tests for the retry helper."""

    def test_returns_page(self):
        assert fetch_with_retry(lambda o, l: [1, 2], 0, 20, NO_RETRY, "item") == [1, 2]

    def test_none_page_is_empty(self):
        assert fetch_with_retry(lambda o, l: None, 0, 20, NO_RETRY, "item") == []

    def test_backoff_grows(self):
        policy = RetryPolicy(max_attempts=4, backoff_ms=200, backoff_multiplier=2.0)
        sleeps = []

        def failing(offset, limit):
            raise TemporaryFailure("x")

        assert fetch_with_retry(failing, 0, 20, policy, "item", sleep=sleeps.append) == []
        assert sleeps == [pytest.approx(0.2), pytest.approx(0.4), pytest.approx(0.8)]

    def test_rate_limit_waits_at_least_retry_after(self):
        fetcher = ScriptedFetcher([RateLimited(retry_after_ms=3000), [1]])
        sleeps = []

        page = fetch_with_retry(fetcher, 0, 20, RetryPolicy(max_attempts=2, backoff_ms=100), "item",
                                sleep=sleeps.append)

        assert page == [1]
        assert sleeps == [3.0]


class TestPrefetchDispatcher:
    """Tests for fire-and-forget prefetch dispatch."""

    def test_empty_id_is_skipped(self, immediate_executor):
        sink = Mock()
        PrefetchDispatcher(sink, immediate_executor).dispatch("")
        sink.assert_not_called()

    def test_runs_on_real_pool(self):
        sink = Mock()
        executor = ThreadPoolExecutor(max_workers=2)
        dispatcher = PrefetchDispatcher(sink, executor)
        for i in range(5):
            dispatcher.dispatch(f"id-{i}")
        executor.shutdown(wait=True)

        assert sorted(c.args[0] for c in sink.call_args_list) == [f"id-{i}" for i in range(5)]

    def test_shut_down_executor_is_ignored(self):
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown(wait=True)
        sink = Mock()
        PrefetchDispatcher(sink, executor).dispatch("id")
        sink.assert_not_called()

    def test_cancelled_prefetches_log_no_errors(self, caplog):
        started = threading.Event()
        release = threading.Event()

        def sink(cover_id):
            started.set()
            release.wait(5)

        metrics = MetricsCollector("album")
        executor = ThreadPoolExecutor(max_workers=1)
        dispatcher = PrefetchDispatcher(sink, executor, metrics)
        with caplog.at_level(logging.DEBUG):
            for i in range(4):
                dispatcher.dispatch(f"id-{i}")
            started.wait(5)
            executor.shutdown(wait=False, cancel_futures=True)
            release.set()
            executor.shutdown(wait=True)

        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert metrics.get_metrics().prefetch_failures == 0
