import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

from mustream.application.iterators import RANDOM_BATCH_SIZE, RandomAlbumIterator, RetryPolicy
from mustream.crosscutting.metrics import MetricsCollector
from mustream.domain.entities import Album
from mustream.domain.errors import TemporaryFailure
from mustream.domain.filters import AlbumFilter, AlbumFilterOptions


LIBRARY = [Album(id=f"al-{i:02d}", name=f"Album {i}", cover_art_id=f"cov-{i}",
                 year=1980 + i) for i in range(40)]


class RandomSource:
    """Random fetcher replaying scripted batches and counting calls."""

    def __init__(self, batches):
        self.batches = list(batches)
        self.calls = 0

    def __call__(self, offset, limit):
        self.calls += 1
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class LibrarySweep:
    """Deterministic fetcher slicing LIBRARY by offset."""

    def __init__(self, library=LIBRARY, fail_at=None):
        self.library = library
        self.fail_at = fail_at
        self.offsets = []

    def __call__(self, offset, limit):
        self.offsets.append(offset)
        if self.fail_at is not None and offset >= self.fail_at:
            raise TemporaryFailure("server went away")
        return self.library[offset:offset + limit]


def _drain(iterator):
    items = []
    while True:
        item = iterator.next()
        if item is None:
            return items
        items.append(item)


class TestRandomAlbumIterator:
    """Tests for the two-phase random album iterator."""

    def setup_method(self):
        # 25 new, then 5 new among 20 repeats: 5/25 is below the switch threshold
        self.first = LIBRARY[:25]
        self.second = LIBRARY[25:30] + LIBRARY[:20]

    def test_never_returns_duplicates_and_covers_library(self):
        random_source = RandomSource([self.first, self.second])
        iterator = RandomAlbumIterator(LibrarySweep(), random_source, None, None)

        items = _drain(iterator)
        ids = [a.id for a in items]
        assert len(ids) == len(set(ids))
        assert sorted(ids) == sorted(a.id for a in LIBRARY)

    def test_switches_to_deterministic_phase_and_stays_there(self):
        random_source = RandomSource([self.first, self.second, LIBRARY[30:]])
        sweep = LibrarySweep()
        iterator = RandomAlbumIterator(sweep, random_source, None, None)

        for _ in range(25):
            assert iterator.next() is not None
        assert iterator.in_phase_two is False

        iterator.next()
        assert iterator.in_phase_two is True

        _drain(iterator)
        assert random_source.calls == 2
        assert sweep.offsets == [0, 25, 40]

    def test_high_hit_ratio_stays_in_random_phase(self):
        random_source = RandomSource([LIBRARY[:25], LIBRARY[25:40] + LIBRARY[:10], []])
        iterator = RandomAlbumIterator(LibrarySweep(), random_source, None, None)

        for _ in range(40):
            iterator.next()
        # 15 of 25 new in the second batch keeps sampling randomly
        assert iterator.in_phase_two is False
        assert random_source.calls == 2

    def test_random_fetch_error_ends_iteration(self):
        random_source = RandomSource([TemporaryFailure("timeout")])
        sweep = Mock(return_value=LIBRARY[:25])
        iterator = RandomAlbumIterator(sweep, random_source, None, None,
                                       retry_policy=RetryPolicy(max_attempts=5))

        assert iterator.next() is None
        assert iterator.next() is None
        assert random_source.calls == 1
        sweep.assert_not_called()

    def test_random_fetch_error_after_items_ends_iteration(self):
        random_source = RandomSource([LIBRARY[:25], TemporaryFailure("timeout")])
        iterator = RandomAlbumIterator(LibrarySweep(), random_source, None, None)

        assert len(_drain(iterator)) == 25
        assert iterator.in_phase_two is False

    def test_deterministic_error_ends_iteration_without_random_fallback(self):
        random_source = RandomSource([self.first, self.second])
        sweep = LibrarySweep(fail_at=25)
        iterator = RandomAlbumIterator(sweep, random_source, None, None)

        items = _drain(iterator)
        assert [a.id for a in items] == [a.id for a in LIBRARY[:30]]
        assert random_source.calls == 2
        assert iterator.next() is None

    def test_deterministic_error_is_retried_with_policy(self):
        random_source = RandomSource([self.first, self.second])
        attempts = {"count": 0}

        def flaky_sweep(offset, limit):
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise TemporaryFailure("blip")
            return LIBRARY[offset:offset + limit]

        sleeps = []
        iterator = RandomAlbumIterator(flaky_sweep, random_source, None, None,
                                       retry_policy=RetryPolicy(max_attempts=2, backoff_ms=50),
                                       sleep=sleeps.append)

        assert len(_drain(iterator)) == 40
        assert sleeps == [0.05]

    def test_filtered_albums_count_as_hits(self):
        old = [Album(id=f"old-{i}", year=1970) for i in range(RANDOM_BATCH_SIZE)]
        random_source = RandomSource([old, old])
        recent = [Album(id="new-1", year=2005)]
        sweep = LibrarySweep(library=old + recent)
        iterator = RandomAlbumIterator(sweep, random_source,
                                       AlbumFilter(AlbumFilterOptions(min_year=2000)), None)

        album = iterator.next()
        assert album.id == "new-1"
        # the all-filtered first batch was fully new, so only the repeat batch switched phases
        assert random_source.calls == 2
        assert iterator.in_phase_two is True
        assert iterator.next() is None

    def test_filter_applies_in_both_phases(self):
        random_source = RandomSource([self.first, self.second])
        album_filter = AlbumFilter(AlbumFilterOptions(min_year=2010))
        iterator = RandomAlbumIterator(LibrarySweep(), random_source, album_filter, None)

        items = _drain(iterator)
        assert sorted(a.year for a in items) == list(range(2010, 2020))

    def test_seen_set_released_when_done(self):
        random_source = RandomSource([self.first, self.second])
        iterator = RandomAlbumIterator(LibrarySweep(), random_source, None, None)

        _drain(iterator)
        assert iterator._album_ids is None
        assert iterator.next() is None

    def test_prefetch_dispatched_for_buffered_albums(self, immediate_executor):
        random_source = RandomSource([LIBRARY[:3], []])
        sink = Mock()
        metrics = MetricsCollector("random album")
        iterator = RandomAlbumIterator(LibrarySweep(library=LIBRARY[:3]), random_source, None, sink,
                                       executor=immediate_executor, metrics=metrics)

        assert iterator.next().id == "al-00"
        assert [c.args[0] for c in sink.call_args_list] == ["cov-0", "cov-1", "cov-2"]
        assert metrics.get_metrics().prefetches_dispatched == 3

    def test_slow_prefetch_does_not_block_next(self):
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            iterator = RandomAlbumIterator(LibrarySweep(library=LIBRARY[:3]), RandomSource([LIBRARY[:3], []]),
                                           None, lambda cover_id: release.wait(5), executor=executor)

            assert iterator.next().id == "al-00"
            assert not release.is_set()
        finally:
            release.set()
            executor.shutdown(wait=True)

    def test_metrics_record_phase_switch(self):
        metrics = MetricsCollector("random album")
        iterator = RandomAlbumIterator(LibrarySweep(), RandomSource([self.first, self.second]),
                                       None, None, metrics=metrics)
        _drain(iterator)

        m = metrics.get_metrics()
        assert m.phase_switched is True
        assert m.exhausted is True
        assert m.items_returned == 40
