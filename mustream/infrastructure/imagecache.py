import logging
import threading
from collections import OrderedDict
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_COVER_SIZE = 300


class CoverArtCache:
    """In-memory LRU of cover art bytes, bounded by total size.

    prefetch() is the sink iterators notify for every returned item. It runs
    on prefetch worker threads, so all access goes through a lock. The fetch
    itself happens outside the lock; two concurrent prefetches of the same ID
    may both download it.
    """

    def __init__(self, fetch_fn: Callable[[str, int], bytes],
                 max_size_bytes: int = 50 * 1024 * 1024,
                 size: int = DEFAULT_COVER_SIZE):
        self._fetch_fn = fetch_fn
        self._max_size_bytes = max_size_bytes
        self._size = size
        self._entries: "OrderedDict[str, bytes]" = OrderedDict()
        self._total_bytes = 0
        self._lock = threading.Lock()

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes

    def __contains__(self, cover_art_id: str) -> bool:
        with self._lock:
            return cover_art_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, cover_art_id: str) -> Optional[bytes]:
        with self._lock:
            data = self._entries.get(cover_art_id)
            if data is not None:
                self._entries.move_to_end(cover_art_id)
            return data

    def prefetch(self, cover_art_id: str) -> None:
        """Download and cache the image unless it is already cached. Errors propagate to the caller."""
        if not cover_art_id or cover_art_id in self:
            return
        data = self._fetch_fn(cover_art_id, self._size)
        if data:
            self.put(cover_art_id, data)

    def put(self, cover_art_id: str, data: bytes) -> None:
        if len(data) > self._max_size_bytes:
            logger.debug(f"Cover art {cover_art_id} ({len(data)} bytes) exceeds cache size, not cached")
            return
        with self._lock:
            old = self._entries.pop(cover_art_id, None)
            if old is not None:
                self._total_bytes -= len(old)
            self._entries[cover_art_id] = data
            self._total_bytes += len(data)
            while self._total_bytes > self._max_size_bytes:
                _, evicted = self._entries.popitem(last=False)
                self._total_bytes -= len(evicted)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_bytes = 0
