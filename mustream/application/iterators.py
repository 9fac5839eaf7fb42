"""Paginated, filtered, lazily-fetched iteration over media server listings.

Iterators here are protocol-agnostic: a provider adapter hands in a fetch
function closed over its native sort/filter query and the iterator drives it
page by page. Iterators are not thread-safe and are meant to be pulled by a
single consumer. Fetch errors never reach the caller; they end the iteration
(see RetryPolicy for the opt-in alternative).
"""
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Set, TypeVar

from mustream.crosscutting.logging import (
    log_fetch_error, log_iterator_exhausted, log_phase_switch
)
from mustream.crosscutting.metrics import MetricsCollector
from mustream.domain.entities import Album, Artist, Track
from mustream.domain.errors import RateLimited
from mustream.domain.filters import AlbumFilter, ArtistFilter, NilFilter
from mustream.domain.ports import (
    AlbumFetchFn, ArtistFetchFn, MediaFilter, PrefetchSink, TrackFetchFn
)

logger = logging.getLogger(__name__)

M = TypeVar('M')

PAGE_SIZE = 20
RANDOM_BATCH_SIZE = 25
# Below this share of never-seen albums per random batch, random sampling is
# considered exhausted.
RANDOM_MIN_SUCCESS_RATIO = 0.3

DEFAULT_PREFETCH_WORKERS = 4


@dataclass(frozen=True)
class RetryPolicy:
    """How often a failed page fetch is attempted before it counts as an empty page."""
    max_attempts: int = 1
    backoff_ms: int = 500
    backoff_multiplier: float = 2.0

    def delay_seconds(self, attempt: int) -> float:
        """Delay before the attempt following the given (1-based) failed attempt."""
        return self.backoff_ms * (self.backoff_multiplier ** (attempt - 1)) / 1000.0


NO_RETRY = RetryPolicy()


_default_executor: Optional[ThreadPoolExecutor] = None
_default_executor_lock = threading.Lock()


def get_default_prefetch_executor() -> ThreadPoolExecutor:
    """Shared worker pool for prefetch side effects, created on first use."""
    global _default_executor
    with _default_executor_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolExecutor(
                max_workers=DEFAULT_PREFETCH_WORKERS,
                thread_name_prefix='mustream-prefetch'
            )
        return _default_executor


class PrefetchDispatcher:
    """Fire-and-forget delivery of cover art IDs to a prefetch sink.

    Submissions go to a thread pool with an unbounded queue, so dispatch never
    blocks page delivery. Callbacks are unordered and never awaited; failures
    are logged and otherwise dropped.
    """

    def __init__(self, sink: PrefetchSink, executor: Optional[Executor] = None,
                 metrics: Optional[MetricsCollector] = None):
        self._sink = sink
        self._executor = executor
        self._metrics = metrics

    def dispatch(self, cover_art_id: str) -> None:
        if not cover_art_id:
            return
        executor = self._executor or get_default_prefetch_executor()
        try:
            future = executor.submit(self._sink, cover_art_id)
        except RuntimeError as e:
            # executor already shut down
            logger.debug(f"Prefetch of {cover_art_id} not scheduled: {e}")
            return
        if self._metrics:
            self._metrics.record_prefetch_dispatched()
        future.add_done_callback(self._on_done)

    def _on_done(self, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug(f"Cover art prefetch failed: {error}")
            if self._metrics:
                self._metrics.record_prefetch_failure()


def fetch_with_retry(fetcher: Callable[[int, int], List[M]], offset: int, limit: int,
                     retry_policy: RetryPolicy, kind: str,
                     metrics: Optional[MetricsCollector] = None,
                     sleep: Callable[[float], None] = time.sleep) -> List[M]:
    """Fetch one page, returning an empty page once every attempt has failed."""
    attempts = max(1, retry_policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return list(fetcher(offset, limit) or [])
        except Exception as e:
            log_fetch_error(logger, kind, offset, limit, e, attempt=attempt)
            if metrics:
                metrics.record_fetch_error()
            if attempt < attempts:
                if metrics:
                    metrics.record_retry()
                delay = retry_policy.delay_seconds(attempt)
                if isinstance(e, RateLimited):
                    delay = max(delay, e.retry_after_ms / 1000.0)
                sleep(delay)
    return []


class PagingIterator(Generic[M]):
    """One-item-at-a-time pull sequence over a paged fetch function.

    Keeps a one-page client-side buffer. The server offset advances by the
    number of items each fetch actually returned, and pages emptied by the
    filter trigger an immediate fetch of the next page.
    """

    def __init__(self, fetcher: Callable[[int, int], List[M]],
                 media_filter: Optional[MediaFilter] = None,
                 prefetch_cb: Optional[Callable[[M], None]] = None,
                 page_size: int = PAGE_SIZE,
                 retry_policy: RetryPolicy = NO_RETRY,
                 metrics: Optional[MetricsCollector] = None,
                 kind: str = 'item',
                 sleep: Callable[[float], None] = time.sleep):
        self._fetcher = fetcher
        self._filter = media_filter if media_filter is not None else NilFilter()
        self._prefetch_cb = prefetch_cb
        self._page_size = page_size
        self._retry_policy = retry_policy
        self._metrics = metrics
        self._kind = kind
        self._sleep = sleep
        self._server_pos = 0
        self._prefetched: List[M] = []
        self._prefetched_pos = 0
        self._served = 0
        self._done = False

    def next(self) -> Optional[M]:
        if self._done:
            return None
        if self._prefetched_pos < len(self._prefetched):
            item = self._prefetched[self._prefetched_pos]
            self._prefetched_pos += 1
            return self._serve(item)

        self._prefetched = []
        self._prefetched_pos = 0
        while True:
            items = fetch_with_retry(self._fetcher, self._server_pos, self._page_size,
                                     self._retry_policy, self._kind, self._metrics, self._sleep)
            if not items:
                self._finish()
                return None
            self._server_pos += len(items)
            fetched = len(items)
            if not self._filter.is_nil():
                items = [item for item in items if self._filter.matches(item)]
            if self._metrics:
                self._metrics.record_page(fetched, len(items))
            if items:
                break

        self._prefetched = items
        self._prefetched_pos = 1
        if self._prefetch_cb is not None:
            for item in items:
                self._prefetch_cb(item)
        return self._serve(items[0])

    def _serve(self, item: M) -> M:
        self._served += 1
        if self._metrics:
            self._metrics.record_item_returned()
        return item

    def _finish(self) -> None:
        self._done = True
        self._prefetched = []
        self._prefetched_pos = 0
        if self._metrics:
            self._metrics.record_exhausted()
        log_iterator_exhausted(logger, self._kind, self._served)

    def __iter__(self):
        return self

    def __next__(self) -> M:
        item = self.next()
        if item is None:
            raise StopIteration
        return item


def _cover_art_cb(prefetch_cb: Optional[PrefetchSink], executor: Optional[Executor],
                  metrics: Optional[MetricsCollector]) -> Optional[Callable[[object], None]]:
    if prefetch_cb is None:
        return None
    dispatcher = PrefetchDispatcher(prefetch_cb, executor, metrics)
    return lambda item: dispatcher.dispatch(item.cover_art_id)


def new_album_iterator(fetch_fn: AlbumFetchFn, album_filter: Optional[AlbumFilter],
                       prefetch_cb: Optional[PrefetchSink],
                       retry_policy: RetryPolicy = NO_RETRY,
                       executor: Optional[Executor] = None,
                       metrics: Optional[MetricsCollector] = None) -> PagingIterator[Album]:
    return PagingIterator(fetch_fn, album_filter, _cover_art_cb(prefetch_cb, executor, metrics),
                          retry_policy=retry_policy, metrics=metrics, kind='album')


def new_artist_iterator(fetch_fn: ArtistFetchFn, artist_filter: Optional[ArtistFilter],
                        prefetch_cb: Optional[PrefetchSink],
                        retry_policy: RetryPolicy = NO_RETRY,
                        executor: Optional[Executor] = None,
                        metrics: Optional[MetricsCollector] = None) -> PagingIterator[Artist]:
    return PagingIterator(fetch_fn, artist_filter, _cover_art_cb(prefetch_cb, executor, metrics),
                          retry_policy=retry_policy, metrics=metrics, kind='artist')


def new_track_iterator(fetch_fn: TrackFetchFn, prefetch_cb: Optional[PrefetchSink],
                       retry_policy: RetryPolicy = NO_RETRY,
                       executor: Optional[Executor] = None,
                       metrics: Optional[MetricsCollector] = None) -> PagingIterator[Track]:
    return PagingIterator(fetch_fn, NilFilter(), _cover_art_cb(prefetch_cb, executor, metrics),
                          retry_policy=retry_policy, metrics=metrics, kind='track')


class RandomAlbumIterator:
    """De-duplicated random album sequence over a non-paginating random endpoint.

    Works in two phases. Phase one repeatedly requests a random sample and
    keeps only albums it has not returned yet. Since random samples cannot be
    paginated, duplicates grow as the unseen pool shrinks; once fewer than 30%
    of a batch are new, phase two sweeps a deterministic order by offset and
    returns whatever was never seen.

    Errors are handled differently per phase: a failed random fetch ends the
    iteration immediately and is never retried, while a failed deterministic
    fetch goes through the retry policy and then counts as an empty page,
    which also ends the iteration.
    """

    def __init__(self, deterministic_fetcher: AlbumFetchFn, random_fetcher: AlbumFetchFn,
                 album_filter: Optional[AlbumFilter],
                 prefetch_cb: Optional[PrefetchSink],
                 retry_policy: RetryPolicy = NO_RETRY,
                 executor: Optional[Executor] = None,
                 metrics: Optional[MetricsCollector] = None,
                 batch_size: int = RANDOM_BATCH_SIZE,
                 sleep: Callable[[float], None] = time.sleep):
        self._deterministic_fetcher = deterministic_fetcher
        self._random_fetcher = random_fetcher
        self._filter = album_filter if album_filter is not None else NilFilter()
        self._dispatcher = (PrefetchDispatcher(prefetch_cb, executor, metrics)
                            if prefetch_cb is not None else None)
        self._retry_policy = retry_policy
        self._metrics = metrics
        self._batch_size = batch_size
        self._sleep = sleep
        self._album_ids: Optional[Set[str]] = set()
        self._prefetched: List[Album] = []
        self._prefetched_pos = 0
        self._phase_two = False
        self._offset = 0
        self._served = 0
        self._done = False

    @property
    def in_phase_two(self) -> bool:
        return self._phase_two

    def next(self) -> Optional[Album]:
        if self._done:
            return None

        # Repeat fetch cycles until something matches or the end is reached.
        while not self._prefetched:
            if self._phase_two:
                if not self._fetch_deterministic():
                    return None
            elif not self._fetch_random():
                return None

        album = self._prefetched[self._prefetched_pos]
        self._prefetched_pos += 1
        if self._prefetched_pos == len(self._prefetched):
            self._prefetched = []
            self._prefetched_pos = 0
        self._served += 1
        if self._metrics:
            self._metrics.record_item_returned()
        return album

    def _fetch_random(self) -> bool:
        try:
            # offset is meaningless for a random sample
            albums = list(self._random_fetcher(0, self._batch_size) or [])
        except Exception as e:
            log_fetch_error(logger, 'random album', 0, self._batch_size, e)
            if self._metrics:
                self._metrics.record_fetch_error()
            self._finish()
            return False

        hit_count = 0
        kept = 0
        for album in albums:
            if album.id in self._album_ids:
                continue
            # unmatched albums still count as hits
            hit_count += 1
            self._album_ids.add(album.id)
            if self._filter.matches(album):
                self._buffer(album)
                kept += 1
        if self._metrics:
            self._metrics.record_page(len(albums), kept)

        if hit_count / self._batch_size < RANDOM_MIN_SUCCESS_RATIO:
            self._phase_two = True
            log_phase_switch(logger, hit_count, self._batch_size, len(self._album_ids))
            if self._metrics:
                self._metrics.record_phase_switch()
        return True

    def _fetch_deterministic(self) -> bool:
        albums = fetch_with_retry(self._deterministic_fetcher, self._offset, self._batch_size,
                                  self._retry_policy, 'album', self._metrics, self._sleep)
        if not albums:
            self._finish()
            return False
        self._offset += len(albums)
        kept = 0
        for album in albums:
            if album.id not in self._album_ids and self._filter.matches(album):
                self._buffer(album)
                self._album_ids.add(album.id)
                kept += 1
        if self._metrics:
            self._metrics.record_page(len(albums), kept)
        return True

    def _buffer(self, album: Album) -> None:
        self._prefetched.append(album)
        if self._dispatcher is not None:
            self._dispatcher.dispatch(album.cover_art_id)

    def _finish(self) -> None:
        self._done = True
        # the seen set is only needed while iterating and may be large
        self._album_ids = None
        self._prefetched = []
        self._prefetched_pos = 0
        if self._metrics:
            self._metrics.record_exhausted()
        log_iterator_exhausted(logger, 'random album', self._served)

    def __iter__(self):
        return self

    def __next__(self) -> Album:
        album = self.next()
        if album is None:
            raise StopIteration
        return album
