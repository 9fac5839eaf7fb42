import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
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

CLIENT_NAME = 'MuStream'
CLIENT_VERSION = '0.1.0'

SORT_BY_NAME = 'SortName'
SORT_BY_DATE_CREATED = 'DateCreated'
SORT_BY_RANDOM = 'Random'
SORT_BY_ARTIST = 'AlbumArtist'
SORT_BY_YEAR = 'ProductionYear'

SORT_ASC = 'Ascending'
SORT_DESC = 'Descending'

TYPE_ALBUM = 'MusicAlbum'
TYPE_ARTIST = 'MusicArtist'
TYPE_SONG = 'Audio'

# Lower bound used when a filter only sets a maximum year
YEAR_RANGE_FLOOR = 1900

_ITEM_FIELDS = 'Genres,DateCreated,ChildCount,ProductionYear,Path'
_TICKS_PER_SECOND = 10_000_000


@dataclass
class JellyfinSort:
    """Native sort. An empty field leaves ordering to the server."""
    field: str = ''
    mode: str = ''


@dataclass
class JellyfinFilter:
    favorite: bool = False
    year_range: Optional[Tuple[int, int]] = None
    genres: List[str] = field(default_factory=list)


@dataclass
class Paging:
    start_index: int = 0
    limit: int = 0


@dataclass
class QueryOpts:
    sort: JellyfinSort = field(default_factory=JellyfinSort)
    filter: JellyfinFilter = field(default_factory=JellyfinFilter)
    paging: Paging = field(default_factory=Paging)


@dataclass
class SearchResult:
    albums: List[Dict[str, Any]] = field(default_factory=list)
    artists: List[Dict[str, Any]] = field(default_factory=list)
    songs: List[Dict[str, Any]] = field(default_factory=list)


class JellyfinClient:
    """Minimal Jellyfin REST client covering library listing and search."""

    def __init__(self, server: str, access_token: str, user_id: str,
                 device_id: str = 'mustream', device_name: str = 'MuStream',
                 timeout: int = 15, session: Optional[requests.Session] = None):
        self.server = self._clean_server(server)
        self.access_token = access_token
        self.user_id = user_id
        self.device_id = device_id
        self.device_name = device_name
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def _clean_server(server: str) -> str:
        s = server.strip()
        if not s.startswith('http://') and not s.startswith('https://'):
            s = 'http://' + s
        return s.rstrip('/')

    def _auth_header(self) -> str:
        parts = [
            f'Client="{CLIENT_NAME}"',
            f'Device="{self.device_name}"',
            f'DeviceId="{self.device_id}"',
            f'Version="{CLIENT_VERSION}"',
            f'Token="{self.access_token}"',
        ]
        return 'MediaBrowser ' + ', '.join(parts)

    def _headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/json',
            'Authorization': self._auth_header(),
        }

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self.server}{path}"
        try:
            response = self.session.get(url, headers=self._headers(), params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TemporaryFailure(f"Request to {path} failed: {e}")

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get('Retry-After', '1')
            try:
                retry_after_ms = int(retry_after) * 1000
            except ValueError:
                retry_after_ms = 1000
            raise RateLimited(retry_after_ms=retry_after_ms)
        if status == 404:
            raise NotFound(f"{path} not found")
        if status in (401, 403):
            raise PermanentFailure(f"Not authorized for {path} (HTTP {status})")
        if status >= 400:
            raise TemporaryFailure(f"Jellyfin returned HTTP {status} for {path}")
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._get(path, params)
        try:
            return response.json()
        except ValueError as e:
            raise TemporaryFailure(f"Invalid JSON from {path}: {e}")

    @staticmethod
    def _query_params(opts: QueryOpts) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if opts.sort.field:
            params['SortBy'] = opts.sort.field
            if opts.sort.mode:
                params['SortOrder'] = opts.sort.mode
        if opts.filter.favorite:
            params['Filters'] = 'IsFavorite'
        if opts.filter.year_range:
            low, high = opts.filter.year_range
            params['Years'] = ','.join(str(y) for y in range(low, high + 1))
        if opts.filter.genres:
            params['Genres'] = '|'.join(opts.filter.genres)
        if opts.paging.limit > 0:
            params['StartIndex'] = opts.paging.start_index
            params['Limit'] = opts.paging.limit
        return params

    def _get_items(self, item_type: str, opts: QueryOpts, extra: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params = {
            'IncludeItemTypes': item_type,
            'Recursive': 'true',
            'Fields': _ITEM_FIELDS,
            'EnableUserData': 'true',
        }
        params.update(self._query_params(opts))
        if extra:
            params.update(extra)
        data = self._get_json(f"/Users/{self.user_id}/Items", params)
        return data.get('Items') or []

    def ping(self) -> bool:
        data = self._get_json('/System/Info/Public')
        return bool(data.get('Id'))

    def get_albums(self, opts: QueryOpts) -> List[Dict[str, Any]]:
        return self._get_items(TYPE_ALBUM, opts)

    def get_songs(self, opts: QueryOpts) -> List[Dict[str, Any]]:
        return self._get_items(TYPE_SONG, opts)

    def get_album_artists(self, opts: QueryOpts) -> List[Dict[str, Any]]:
        params = {'UserId': self.user_id, 'Fields': 'Genres', 'EnableUserData': 'true'}
        params.update(self._query_params(opts))
        data = self._get_json('/Artists/AlbumArtists', params)
        return data.get('Items') or []

    def search(self, query: str, item_type: str, paging: Paging) -> SearchResult:
        items = self._get_items(item_type, QueryOpts(paging=paging), {'SearchTerm': query})
        result = SearchResult()
        for item in items:
            kind = item.get('Type')
            if kind == TYPE_ALBUM:
                result.albums.append(item)
            elif kind == TYPE_ARTIST:
                result.artists.append(item)
            elif kind == TYPE_SONG:
                result.songs.append(item)
        return result

    def get_cover_art(self, item_id: str, size: int = 300) -> bytes:
        response = self._get(f"/Items/{item_id}/Images/Primary", {'maxWidth': size, 'maxHeight': size})
        return response.content


def _user_favorite(item: Dict[str, Any]) -> bool:
    return bool((item.get('UserData') or {}).get('IsFavorite', False))


def _cover_id(item: Dict[str, Any]) -> str:
    if (item.get('ImageTags') or {}).get('Primary'):
        return item.get('Id', '')
    return ''


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        # Jellyfin emits 7 fractional digits, more than fromisoformat accepts
        return datetime.fromisoformat(value.rstrip('Z')[:26])
    except ValueError:
        return None


def to_album(item: Dict[str, Any]) -> Album:
    artists = item.get('AlbumArtists') or []
    return Album(
        id=item['Id'],
        name=item.get('Name', ''),
        cover_art_id=_cover_id(item),
        artist_ids=[a.get('Id', '') for a in artists],
        artist_names=[a.get('Name', '') for a in artists],
        year=int(item.get('ProductionYear') or 0),
        genres=list(item.get('Genres') or []),
        track_count=int(item.get('ChildCount') or 0),
        duration=int((item.get('RunTimeTicks') or 0) // _TICKS_PER_SECOND),
        favorite=_user_favorite(item),
        date_added=_parse_date(item.get('DateCreated')),
    )


def to_artist(item: Dict[str, Any]) -> Artist:
    return Artist(
        id=item['Id'],
        name=item.get('Name', ''),
        cover_art_id=_cover_id(item),
        album_count=int(item.get('AlbumCount') or item.get('ChildCount') or 0),
        genres=list(item.get('Genres') or []),
        favorite=_user_favorite(item),
    )


def to_track(item: Dict[str, Any]) -> Track:
    artists = item.get('ArtistItems') or []
    user_data = item.get('UserData') or {}
    album_id = item.get('AlbumId', '')
    return Track(
        id=item['Id'],
        name=item.get('Name', ''),
        # tracks show their album's art
        cover_art_id=album_id if item.get('AlbumPrimaryImageTag') else _cover_id(item),
        album=item.get('Album', ''),
        album_id=album_id,
        artist_ids=[a.get('Id', '') for a in artists],
        artist_names=[a.get('Name', '') for a in artists],
        duration=int((item.get('RunTimeTicks') or 0) // _TICKS_PER_SECOND),
        track_number=int(item.get('IndexNumber') or 0),
        disc_number=int(item.get('ParentIndexNumber') or 0),
        year=int(item.get('ProductionYear') or 0),
        genres=list(item.get('Genres') or []),
        favorite=bool(user_data.get('IsFavorite', False)),
        play_count=int(user_data.get('PlayCount') or 0),
        file_path=item.get('Path'),
    )


def jf_sort_from_sort_order(sort_order: str) -> JellyfinSort:
    """Map an abstract album sort order to the native sort; unknown orders use the server default."""
    mapping = {
        ALBUM_SORT_RECENTLY_ADDED: JellyfinSort(SORT_BY_DATE_CREATED, SORT_DESC),
        ALBUM_SORT_RANDOM: JellyfinSort(SORT_BY_RANDOM),
        ALBUM_SORT_ARTIST_AZ: JellyfinSort(SORT_BY_ARTIST, SORT_ASC),
        ALBUM_SORT_TITLE_AZ: JellyfinSort(SORT_BY_NAME, SORT_ASC),
        ALBUM_SORT_YEAR_ASCENDING: JellyfinSort(SORT_BY_YEAR, SORT_ASC),
        ALBUM_SORT_YEAR_DESCENDING: JellyfinSort(SORT_BY_YEAR, SORT_DESC),
    }
    return mapping.get(sort_order, JellyfinSort())


def jf_filter_from_filter(album_filter: AlbumFilter,
                          current_year: Optional[int] = None) -> Tuple[JellyfinFilter, AlbumFilter]:
    """Create the Jellyfin filter implementing the given album filter.

    Returns the native filter and a modified copy of the album filter with the
    now server-side constraints zeroed out. The caller's filter is left
    untouched since the UI keeps displaying and editing it.
    """
    jf_filt = JellyfinFilter()
    modified_filter = album_filter.clone()
    options = modified_filter.options()

    if options.exclude_unfavorited:
        jf_filt.favorite = True
        options.exclude_unfavorited = False

    if options.min_year > 0 or options.max_year > 0:
        low = options.min_year if options.min_year > 0 else YEAR_RANGE_FLOOR
        high = options.max_year if options.max_year > 0 else (current_year or datetime.now().year)
        # an inverted range matches nothing; leave it to the client-side filter
        if low <= high:
            jf_filt.year_range = (low, high)
            options.min_year, options.max_year = 0, 0

    jf_filt.genres = options.genres
    options.genres = []

    modified_filter.set_options(options)
    return jf_filt, modified_filter


class JellyfinMediaProvider(MediaProvider):
    """Jellyfin adapter implementing the MediaProvider port."""

    def __init__(self, client: JellyfinClient,
                 prefetch_cover_cb: Optional[PrefetchSink] = None,
                 retry_policy: RetryPolicy = NO_RETRY,
                 metrics_factory: Optional[Callable[[str], Any]] = None,
                 executor: Optional[Executor] = None):
        """Initialize the provider.

        Args:
            client: Authenticated Jellyfin client
            prefetch_cover_cb: Cover art sink notified for every returned item
            retry_policy: Page fetch retry policy applied by iterators
            metrics_factory: Optional callable creating a MetricsCollector per iterator
            executor: Worker pool for cover art prefetch (default: shared pool)
        """
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
            ALBUM_SORT_RANDOM,
            ALBUM_SORT_TITLE_AZ,
            ALBUM_SORT_ARTIST_AZ,
            ALBUM_SORT_YEAR_ASCENDING,
            ALBUM_SORT_YEAR_DESCENDING,
        ]

    def artist_sort_orders(self) -> List[str]:
        return [ARTIST_SORT_NAME_AZ]

    def iterate_albums(self, sort_order: str, album_filter: AlbumFilter):
        jf_sort = jf_sort_from_sort_order(sort_order)
        jf_filt, modified_filter = jf_filter_from_filter(album_filter)

        def fetcher(offset: int, limit: int) -> List[Album]:
            albums = self.client.get_albums(QueryOpts(
                sort=jf_sort, filter=jf_filt, paging=Paging(offset, limit)))
            return [to_album(a) for a in albums]

        if sort_order == ALBUM_SORT_RANDOM:
            def determ_fetcher(offset: int, limit: int) -> List[Album]:
                albums = self.client.get_albums(QueryOpts(
                    sort=JellyfinSort(SORT_BY_NAME, SORT_ASC), filter=jf_filt,
                    paging=Paging(offset, limit)))
                return [to_album(a) for a in albums]

            return RandomAlbumIterator(determ_fetcher, fetcher, modified_filter, self.prefetch_cover_cb,
                                       retry_policy=self.retry_policy, executor=self.executor,
                                       metrics=self._metrics('random album'))
        return new_album_iterator(fetcher, modified_filter, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('album'))

    def search_albums(self, search_query: str, album_filter: AlbumFilter):
        def fetcher(offset: int, limit: int) -> List[Album]:
            result = self.client.search(search_query, TYPE_ALBUM, Paging(offset, limit))
            return [to_album(a) for a in result.albums]

        return new_album_iterator(fetcher, album_filter, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('album'))

    def iterate_tracks(self, search_query: str):
        if not search_query:
            def fetcher(offset: int, limit: int) -> List[Track]:
                songs = self.client.get_songs(QueryOpts(paging=Paging(offset, limit)))
                return [to_track(s) for s in songs]
        else:
            def fetcher(offset: int, limit: int) -> List[Track]:
                result = self.client.search(search_query, TYPE_SONG, Paging(offset, limit))
                return [to_track(s) for s in result.songs]

        return new_track_iterator(fetcher, self.prefetch_cover_cb,
                                  retry_policy=self.retry_policy, executor=self.executor,
                                  metrics=self._metrics('track'))

    def iterate_artists(self, sort_order: str, artist_filter: ArtistFilter):
        if not sort_order:
            sort_order = ARTIST_SORT_NAME_AZ
        jf_sort = JellyfinSort()
        if sort_order == ARTIST_SORT_NAME_AZ:
            jf_sort = JellyfinSort(SORT_BY_NAME, SORT_ASC)

        def fetcher(offset: int, limit: int) -> List[Artist]:
            artists = self.client.get_album_artists(QueryOpts(sort=jf_sort, paging=Paging(offset, limit)))
            return [to_artist(a) for a in artists]

        return new_artist_iterator(fetcher, artist_filter, self.prefetch_cover_cb,
                                   retry_policy=self.retry_policy, executor=self.executor,
                                   metrics=self._metrics('artist'))

    def search_artists(self, search_query: str, artist_filter: ArtistFilter):
        def fetcher(offset: int, limit: int) -> List[Artist]:
            result = self.client.search(search_query, TYPE_ARTIST, Paging(offset, limit))
            return [to_artist(a) for a in result.artists]

        return new_artist_iterator(fetcher, artist_filter, self.prefetch_cover_cb,
                                   retry_policy=self.retry_policy, executor=self.executor,
                                   metrics=self._metrics('artist'))

    def get_cover_art(self, cover_art_id: str, size: int = 300) -> bytes:
        return self.client.get_cover_art(cover_art_id, size)
