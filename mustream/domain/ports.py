from __future__ import annotations

from typing import Callable, Iterator, List, Optional, Protocol, TypeVar

from .entities import Album, Artist, Track
from .filters import AlbumFilter, ArtistFilter


M = TypeVar("M")
O = TypeVar("O")

# (offset, limit) -> page. Raises on transport or server errors.
AlbumFetchFn = Callable[[int, int], List[Album]]
ArtistFetchFn = Callable[[int, int], List[Artist]]
TrackFetchFn = Callable[[int, int], List[Track]]

# Best-effort cover art notification; must not be relied on for correctness.
PrefetchSink = Callable[[str], None]


class MediaFilter(Protocol[M, O]):
    """Capability set shared by all filters."""

    def is_nil(self) -> bool:
        """True when no constraint is active."""

    def matches(self, item: Optional[M]) -> bool:
        """Return whether the item passes every active constraint."""

    def clone(self) -> "MediaFilter[M, O]":
        """Return an independent copy."""

    def options(self) -> O:
        """Return a copy of the options record."""

    def set_options(self, options: O) -> None:
        """Replace the options record."""


class MediaIterator(Protocol[M]):
    """Forward-only, pull-based sequence. next() returns None once exhausted, forever."""

    def next(self) -> Optional[M]:
        """Return the next item or None at the end."""

    def __iter__(self) -> Iterator[M]:
        ...


class MediaProvider(Protocol):
    """Port defining what the browsing UI needs from a media server adapter.

    Implementations translate abstract sort orders and filters into the server's
    native query shape and map raw records into domain entities.
    """

    def album_sort_orders(self) -> List[str]:
        """Names of the album sort orders this provider understands."""

    def artist_sort_orders(self) -> List[str]:
        """Names of the artist sort orders this provider understands."""

    def iterate_albums(self, sort_order: str, album_filter: AlbumFilter) -> MediaIterator[Album]:
        """Iterate all albums in the given order, filtered."""

    def search_albums(self, search_query: str, album_filter: AlbumFilter) -> MediaIterator[Album]:
        """Iterate albums matching the search query, filtered."""

    def iterate_artists(self, sort_order: str, artist_filter: ArtistFilter) -> MediaIterator[Artist]:
        """Iterate all album artists in the given order, filtered."""

    def search_artists(self, search_query: str, artist_filter: ArtistFilter) -> MediaIterator[Artist]:
        """Iterate artists matching the search query, filtered."""

    def iterate_tracks(self, search_query: str) -> MediaIterator[Track]:
        """Iterate all tracks, or tracks matching the query when it is non-empty."""

    def get_cover_art(self, cover_art_id: str, size: int) -> bytes:
        """Download cover art image bytes."""
