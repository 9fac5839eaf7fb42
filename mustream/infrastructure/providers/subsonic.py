import hashlib
import logging
from concurrent.futures import Executor
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from mustream.application.iterators import (
    NO_RETRY, RandomAlbumIterator, RetryPolicy,
    new_album_iterator, new_artist_iterator, new_track_iterator
)
from mustream.domain.entities import Album, Artist, Track
from mustream.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure
from mustream.domain.filters import AlbumFilter, ArtistFilter
from mustream.domain.ports import MediaProvider, PrefetchSink
from mustream.domain.sort_orders import (
    ALBUM_SORT_ARTIST_AZ, ALBUM_SORT_RANDOM, ALBUM_SORT_RECENTLY_ADDED,
    ALBUM_SORT_TITLE_AZ, ALBUM_SORT_YEAR_ASCENDING, ALBUM_SORT_YEAR_DESCENDING,
    ARTIST_SORT_NAME_AZ
)

logger = logging.getLogger(__name__)

API_VERSION = '1.16.1'
CLIENT_NAME = 'mustream'

ALBUM_SORT_RECENTLY_PLAYED = 'Recently Played'
ALBUM_SORT_FREQUENTLY_PLAYED = 'Frequently Played'

LIST_NEWEST = 'newest'
LIST_RANDOM = 'random'
LIST_BY_NAME = 'alphabeticalByName'
LIST_BY_ARTIST = 'alphabeticalByArtist'
LIST_RECENT = 'recent'
LIST_FREQUENT = 'frequent'
LIST_BY_YEAR = 'byYear'
LIST_STARRED = 'starred'

_SORT_TO_LIST_TYPE = {
    ALBUM_SORT_RECENTLY_ADDED: LIST_NEWEST,
    ALBUM_SORT_RANDOM: LIST_RANDOM,
    ALBUM_SORT_TITLE_AZ: LIST_BY_NAME,
    ALBUM_SORT_ARTIST_AZ: LIST_BY_ARTIST,
    ALBUM_SORT_RECENTLY_PLAYED: LIST_RECENT,
    ALBUM_SORT_FREQUENTLY_PLAYED: LIST_FREQUENT,
    ALBUM_SORT_YEAR_ASCENDING: LIST_BY_YEAR,
    ALBUM_SORT_YEAR_DESCENDING: LIST_BY_YEAR,
}


@dataclass
class SubsonicAlbumQuery:
    """Native getAlbumList2 query shape (minus paging)."""
    list_type: str = LIST_NEWEST
    from_year: Optional[int] = None
    to_year: Optional[int] = None


class SubsonicClient:
    """Minimal Subsonic REST client (JSON format, salted-token auth)."""

    def __init__(self, server: str, username: str, password: str,
                 timeout: int = 15, session: Optional[requests.Session] = None):
        s = server.strip()
        if not s.startswith('http://') and not s.startswith('https://'):
            s = 'http://' + s
        self.server = s.rstrip('/')
        self.username = username
        self._password = password
        self.timeout = timeout
        self.session = session or requests.Session()

    def _auth_params(self) -> Dict[str, str]:
        salt = secrets.token_hex(6)
        token = hashlib.md5((self._password + salt).encode('utf-8')).hexdigest()
        return {'u': self.username, 't': token, 's': salt}

    def _build_params(self, **kwargs) -> Dict[str, str]:
        params = {'v': API_VERSION, 'c': CLIENT_NAME, 'f': 'json'}
        params.update(self._auth_params())
        for key, value in kwargs.items():
            if value is not None:
                params[key] = str(value)
        return params

    def _request(self, endpoint: str, **kwargs) -> requests.Response:
        url = f"{self.server}/rest/{endpoint}"
        try:
            response = self.session.get(url, params=self._build_params(**kwargs), timeout=self.timeout)
        except requests.RequestException as e:
            raise TemporaryFailure(f"Request to {endpoint} failed: {e}")
        if response.status_code == 429:
            raise RateLimited(retry_after_ms=1000)
        if response.status_code == 404:
            raise NotFound(f"{endpoint} not found")
        if response.status_code in (401, 403):
            raise PermanentFailure(f"Not authorized for {endpoint} (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise TemporaryFailure(f"Subsonic returned HTTP {response.status_code} for {endpoint}")
        return response

    def _handle_response(self, response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise TemporaryFailure(f"Invalid JSON from server: {e}")
        body = data.get('subsonic-response', {})
        if body.get('status') == 'failed':
            error = body.get('error', {})
            code = error.get('code', 0)
            message = error.get('message', 'Unknown error')
            if code == 70:
                raise NotFound(message)
            if code in (10, 20, 30, 40, 41, 42, 43, 44, 50):
                raise PermanentFailure(f"Subsonic error {code}: {message}")
            raise TemporaryFailure(f"Subsonic error {code}: {message}")
        return body

    def _get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return self._handle_response(self._request(endpoint, **kwargs))

    def ping(self) -> bool:
        return self._get('ping').get('status') == 'ok'

    def get_album_list2(self, ltype: str, size: int = 10, offset: int = 0,
                        from_year: Optional[int] = None, to_year: Optional[int] = None,
                        genre: Optional[str] = None) -> List[Dict[str, Any]]:
        body = self._get('getAlbumList2', type=ltype, size=size, offset=offset,
                         fromYear=from_year, toYear=to_year, genre=genre)
        return (body.get('albumList2') or {}).get('album') or []

    def get_artists(self) -> List[Dict[str, Any]]:
        body = self._get('getArtists')
        artists = []
        for index in (body.get('artists') or {}).get('index') or []:
            artists.extend(index.get('artist') or [])
        return artists

    def search3(self, query: str, artist_count: int = 0, artist_offset: int = 0,
                album_count: int = 0, album_offset: int = 0,
                song_count: int = 0, song_offset: int = 0) -> Dict[str, List[Dict[str, Any]]]:
        body = self._get('search3', query=query,
                         artistCount=artist_count, artistOffset=artist_offset,
                         albumCount=album_count, albumOffset=album_offset,
                         songCount=song_count, songOffset=song_offset)
        result = body.get('searchResult3') or {}
        return {
            'artist': result.get('artist') or [],
            'album': result.get('album') or [],
            'song': result.get('song') or [],
        }

    def get_cover_art(self, cover_art_id: str, size: Optional[int] = None) -> bytes:
        response = self._request('getCoverArt', id=cover_art_id, size=size)
        content_type = response.headers.get('content-type', '')
        if content_type.startswith(('text/xml', 'application/json')):
            self._handle_response(response)
        return response.content


def _genres(record: Dict[str, Any]) -> List[str]:
    # OpenSubsonic servers send a list of {name}; classic ones a single string
    genres = record.get('genres')
    if genres:
        return [g.get('name', '') for g in genres if g.get('name')]
    genre = record.get('genre')
    return [genre] if genre else []


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def to_album(record: Dict[str, Any]) -> Album:
    artist_id = record.get('artistId')
    artist = record.get('artist')
    return Album(
        id=record['id'],
        name=record.get('name') or record.get('title', ''),
        cover_art_id=record.get('coverArt', ''),
        artist_ids=[artist_id] if artist_id else [],
        artist_names=[artist] if artist else [],
        year=int(record.get('year') or 0),
        genres=_genres(record),
        track_count=int(record.get('songCount') or 0),
        duration=int(record.get('duration') or 0),
        favorite=bool(record.get('starred')),
        date_added=_parse_date(record.get('created')),
    )


def to_artist(record: Dict[str, Any]) -> Artist:
    return Artist(
        id=record['id'],
        name=record.get('name', ''),
        cover_art_id=record.get('coverArt', ''),
        album_count=int(record.get('albumCount') or 0),
        genres=_genres(record),
        favorite=bool(record.get('starred')),
    )


def to_track(record: Dict[str, Any]) -> Track:
    artist_id = record.get('artistId')
    artist = record.get('artist')
    return Track(
        id=record['id'],
        name=record.get('title', ''),
        cover_art_id=record.get('coverArt', ''),
        album=record.get('album', ''),
        album_id=record.get('albumId', ''),
        artist_ids=[artist_id] if artist_id else [],
        artist_names=[artist] if artist else [],
        duration=int(record.get('duration') or 0),
        track_number=int(record.get('track') or 0),
        disc_number=int(record.get('discNumber') or 0),
        year=int(record.get('year') or 0),
        genres=_genres(record),
        favorite=bool(record.get('starred')),
        play_count=int(record.get('playCount') or 0),
        file_path=record.get('path'),
    )


def subsonic_query_from_filter(sort_order: str, album_filter: AlbumFilter,
                               current_year: Optional[int] = None) -> Tuple[SubsonicAlbumQuery, AlbumFilter]:
    """Translate a sort order and album filter into a getAlbumList2 query.

    getAlbumList2 can only filter through its list type, so constraints are
    pushed down only where the sort order allows it: year bounds for the
    byYear sorts and favorites for the alphabetical title sort. Everything
    else stays in the returned copy of the filter for client-side matching.
    """
    query = SubsonicAlbumQuery(list_type=_SORT_TO_LIST_TYPE.get(sort_order, LIST_NEWEST))
    modified_filter = album_filter.clone()
    options = modified_filter.options()

    if query.list_type == LIST_BY_YEAR:
        low = options.min_year if options.min_year > 0 else 0
        high = options.max_year if options.max_year > 0 else (current_year or datetime.now().year)
        if low <= high:
            options.min_year, options.max_year = 0, 0
        else:
            # an inverted range matches nothing; sweep every year and filter client-side
            low, high = 0, current_year or datetime.now().year
        if sort_order == ALBUM_SORT_YEAR_DESCENDING:
            # the server sorts descending when fromYear > toYear
            low, high = high, low
        query.from_year, query.to_year = low, high
    elif query.list_type == LIST_BY_NAME and options.exclude_unfavorited:
        # starred albums come back sorted by name
        query.list_type = LIST_STARRED
        options.exclude_unfavorited = False

    modified_filter.set_options(options)
    return query, modified_filter


class SubsonicMediaProvider(MediaProvider):
    """Subsonic adapter implementing the MediaProvider port."""

    def __init__(self, client: SubsonicClient,
                 prefetch_cover_cb: Optional[PrefetchSink] = None,
                 retry_policy: RetryPolicy = NO_RETRY,
                 metrics_factory: Optional[Callable[[str], Any]] = None,
                 executor: Optional[Executor] = None):
        self.client = client
        self.prefetch_cover_cb = prefetch_cover_cb
        self.retry_policy = retry_policy
        self._metrics_factory = metrics_factory
        self.executor = executor

    def _metrics(self, kind: str):
        return self._metrics_factory(kind) if self._metrics_factory else None

    def album_sort_orders(self) -> List[str]:
        return [
            ALBUM_SORT_RECENTLY_ADDED,
            ALBUM_SORT_RECENTLY_PLAYED,
            ALBUM_SORT_FREQUENTLY_PLAYED,
            ALBUM_SORT_RANDOM,
            ALBUM_SORT_TITLE_AZ,
            ALBUM_SORT_ARTIST_AZ,
            ALBUM_SORT_YEAR_ASCENDING,
            ALBUM_SORT_YEAR_DESCENDING,
        ]

    def artist_sort_orders(self) -> List[str]:
        return [ARTIST_SORT_NAME_AZ]

    def _album_fetcher(self, query: SubsonicAlbumQuery):
        def fetcher(offset: int, limit: int) -> List[Album]:
            albums = self.client.get_album_list2(query.list_type, size=limit, offset=offset,
                                                 from_year=query.from_year, to_year=query.to_year)
            return [to_album(a) for a in albums]
        return fetcher

    def iterate_albums(self, sort_order: str, album_filter: AlbumFilter):
        query, modified_filter = subsonic_query_from_filter(sort_order, album_filter)
        fetcher = self._album_fetcher(query)

        if query.list_type == LIST_RANDOM:
            determ_fetcher = self._album_fetcher(SubsonicAlbumQuery(list_type=LIST_BY_NAME))
            return RandomAlbumIterator(determ_fetcher, fetcher, modified_filter, self.prefetch_cover_cb,
                                       retry_policy=self.retry_policy, executor=self.executor,
                                       metrics=self._metrics('random album'))
        return new_album_iterator(fetcher, modified_filter, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('album'))

    def search_albums(self, search_query: str, album_filter: AlbumFilter):
        def fetcher(offset: int, limit: int) -> List[Album]:
            result = self.client.search3(search_query, album_count=limit, album_offset=offset)
            return [to_album(a) for a in result['album']]

        return new_album_iterator(fetcher, album_filter, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('album'))

    def iterate_tracks(self, search_query: str):
        # An empty search3 query lists every song on servers that support it
        def fetcher(offset: int, limit: int) -> List[Track]:
            result = self.client.search3(search_query or '', song_count=limit, song_offset=offset)
            return [to_track(s) for s in result['song']]

        return new_track_iterator(fetcher, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('track'))

    def iterate_artists(self, sort_order: str, artist_filter: ArtistFilter):
        # getArtists is not paginated; load the index on first fetch and page through it
        cache: Dict[str, List[Artist]] = {}

        def fetcher(offset: int, limit: int) -> List[Artist]:
            if 'artists' not in cache:
                artists = [to_artist(a) for a in self.client.get_artists()]
                cache['artists'] = sorted(artists, key=lambda a: a.name.lower())
            return cache['artists'][offset:offset + limit]

        return new_artist_iterator(fetcher, artist_filter, self.prefetch_cover_cb,
                                   retry_policy=self.retry_policy, executor=self.executor,
                                   metrics=self._metrics('artist'))

    def search_artists(self, search_query: str, artist_filter: ArtistFilter):
        def fetcher(offset: int, limit: int) -> List[Artist]:
            result = self.client.search3(search_query, artist_count=limit, artist_offset=offset)
            return [to_artist(a) for a in result['artist']]

        return new_artist_iterator(fetcher, artist_filter, self.prefetch_cover_cb,
                                   retry_policy=self.retry_policy, executor=self.executor,
                                   metrics=self._metrics('artist'))

    def get_cover_art(self, cover_art_id: str, size: int = 300) -> bytes:
        return self.client.get_cover_art(cover_art_id, size)
