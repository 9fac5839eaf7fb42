from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class Album:
    """Domain entity representing an album independent of servers."""

    id: str
    name: str = ""
    cover_art_id: str = ""
    artist_ids: List[str] = field(default_factory=list)
    artist_names: List[str] = field(default_factory=list)
    year: int = 0
    genres: List[str] = field(default_factory=list)
    track_count: int = 0
    duration: int = 0  # seconds
    favorite: bool = False
    date_added: Optional[datetime] = None


@dataclass(frozen=True)
class Artist:
    """Domain entity representing an (album) artist."""

    id: str
    name: str = ""
    cover_art_id: str = ""
    album_count: int = 0
    genres: List[str] = field(default_factory=list)
    favorite: bool = False


@dataclass(frozen=True)
class Track:
    """Domain entity representing a playable track."""

    id: str
    name: str = ""
    cover_art_id: str = ""
    album: str = ""
    album_id: str = ""
    artist_ids: List[str] = field(default_factory=list)
    artist_names: List[str] = field(default_factory=list)
    duration: int = 0  # seconds
    track_number: int = 0
    disc_number: int = 0
    year: int = 0
    genres: List[str] = field(default_factory=list)
    favorite: bool = False
    play_count: int = 0
    file_path: Optional[str] = None
