from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Generic, Iterable, List, Optional, TypeVar

from .entities import Album, Artist


M = TypeVar("M")


def _genres_match(wanted: List[str], have: Iterable[str]) -> bool:
    if not wanted:
        return True
    have_lower = {g.lower() for g in have or []}
    return any(g.lower() in have_lower for g in wanted)


@dataclass
class AlbumFilterOptions:
    """Inclusion rules for albums. Zero years mean unbounded."""

    min_year: int = 0
    max_year: int = 0
    exclude_favorited: bool = False
    exclude_unfavorited: bool = False
    genres: List[str] = field(default_factory=list)


@dataclass
class ArtistFilterOptions:
    """Inclusion rules for artists."""

    exclude_favorited: bool = False
    exclude_unfavorited: bool = False
    genres: List[str] = field(default_factory=list)


@dataclass
class NilFilterOptions:
    """Options record of a filter that never constrains anything."""


class AlbumFilter:
    """Album predicate built from AlbumFilterOptions."""

    def __init__(self, options: Optional[AlbumFilterOptions] = None):
        self._options = options if options is not None else AlbumFilterOptions()

    def is_nil(self) -> bool:
        o = self._options
        return (
            not o.exclude_favorited
            and not o.exclude_unfavorited
            and o.min_year == 0
            and o.max_year == 0
            and not o.genres
        )

    def matches(self, album: Optional[Album]) -> bool:
        if album is None:
            return False
        o = self._options
        if o.exclude_favorited and album.favorite:
            return False
        if o.exclude_unfavorited and not album.favorite:
            return False
        if o.min_year > 0 and album.year < o.min_year:
            return False
        if o.max_year > 0 and album.year > o.max_year:
            return False
        return _genres_match(o.genres, album.genres)

    def clone(self) -> "AlbumFilter":
        return AlbumFilter(self.options())

    def options(self) -> AlbumFilterOptions:
        """Return a copy of the options; use set_options to change them."""
        return replace(self._options, genres=list(self._options.genres))

    def set_options(self, options: AlbumFilterOptions) -> None:
        self._options = options

    def __repr__(self) -> str:
        return f"AlbumFilter({self._options!r})"


class ArtistFilter:
    """Artist predicate built from ArtistFilterOptions."""

    def __init__(self, options: Optional[ArtistFilterOptions] = None):
        self._options = options if options is not None else ArtistFilterOptions()

    def is_nil(self) -> bool:
        o = self._options
        return not o.exclude_favorited and not o.exclude_unfavorited and not o.genres

    def matches(self, artist: Optional[Artist]) -> bool:
        if artist is None:
            return False
        o = self._options
        if o.exclude_favorited and artist.favorite:
            return False
        if o.exclude_unfavorited and not artist.favorite:
            return False
        return _genres_match(o.genres, artist.genres)

    def clone(self) -> "ArtistFilter":
        return ArtistFilter(self.options())

    def options(self) -> ArtistFilterOptions:
        return replace(self._options, genres=list(self._options.genres))

    def set_options(self, options: ArtistFilterOptions) -> None:
        self._options = options

    def __repr__(self) -> str:
        return f"ArtistFilter({self._options!r})"


class NilFilter(Generic[M]):
    """Null-object filter: matches everything and reports itself as nil."""

    def is_nil(self) -> bool:
        return True

    def matches(self, item: Optional[M]) -> bool:
        return True

    def clone(self) -> "NilFilter[M]":
        return self

    def options(self) -> NilFilterOptions:
        return NilFilterOptions()

    def set_options(self, options: NilFilterOptions) -> None:
        pass
