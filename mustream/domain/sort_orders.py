"""Abstract sort order names shared by all providers.

Providers translate these into their native sort field/direction and may
offer additional orders of their own.
"""

ALBUM_SORT_RECENTLY_ADDED = "Recently Added"
ALBUM_SORT_RANDOM = "Random"
ALBUM_SORT_TITLE_AZ = "Title (A-Z)"
ALBUM_SORT_ARTIST_AZ = "Artist (A-Z)"
ALBUM_SORT_YEAR_ASCENDING = "Year (ascending)"
ALBUM_SORT_YEAR_DESCENDING = "Year (descending)"

ARTIST_SORT_NAME_AZ = "Name (A-Z)"

DEFAULT_ALBUM_SORT = ALBUM_SORT_RECENTLY_ADDED
DEFAULT_ARTIST_SORT = ARTIST_SORT_NAME_AZ
