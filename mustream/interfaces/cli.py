import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from dotenv import load_dotenv

from mustream.application.iterators import RetryPolicy
from mustream.crosscutting.config import (
    SERVER_TYPE_JELLYFIN, SERVER_TYPE_SUBSONIC, SERVER_TYPES,
    ConfigError, ConfigManager, ServerConfig, setup_config
)
from mustream.crosscutting.logging import CorrelationContext, setup_logging
from mustream.crosscutting.metrics import MetricsCollector
from mustream.domain.filters import (
    AlbumFilter, AlbumFilterOptions, ArtistFilter, ArtistFilterOptions
)
from mustream.infrastructure.imagecache import CoverArtCache
from mustream.infrastructure.providers.jellyfin import JellyfinClient, JellyfinMediaProvider
from mustream.infrastructure.providers.subsonic import SubsonicClient, SubsonicMediaProvider


class CLI:
    """Command Line Interface for MuStream."""

    def __init__(self):
        """Initialize CLI."""
        self.parser = self._create_parser()
        self._start_time = None
        self._collectors: List[MetricsCollector] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='mustream',
            description='Browse albums, artists and tracks on a Subsonic or Jellyfin server'
        )

        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            '--config-dir',
            default=None,
            help='Configuration directory (default: ~/.mustream)'
        )
        common.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='WARNING',
            help='Set logging level'
        )

        browse = argparse.ArgumentParser(add_help=False, parents=[common])
        browse.add_argument(
            '--server',
            default=None,
            help='Nickname of the server to use (default: the default server)'
        )
        browse.add_argument(
            '--search',
            default=None,
            help='Search query instead of browsing'
        )
        browse.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Stop after this many items'
        )
        browse.add_argument(
            '--retries',
            type=int,
            default=None,
            help='Attempts per page fetch before giving up (default from config: 1)'
        )
        browse.add_argument(
            '--stats',
            action='store_true',
            help='Print iterator metrics when done'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        subparsers.add_parser('servers', help='List configured servers', parents=[common])

        add_parser = subparsers.add_parser('add-server', help='Add a server', parents=[common])
        add_parser.add_argument('--type', dest='server_type', choices=list(SERVER_TYPES), required=True)
        add_parser.add_argument('--hostname', required=True)
        add_parser.add_argument('--username', required=True)
        add_parser.add_argument('--nickname', required=True)
        add_parser.add_argument('--user-id', default=None, help='Jellyfin user ID')
        add_parser.add_argument('--default', action='store_true', help='Make this the default server')

        albums_parser = subparsers.add_parser('albums', help='List albums', parents=[browse])
        albums_parser.add_argument('--sort', default=None, help='Album sort order')
        albums_parser.add_argument('--min-year', type=int, default=0)
        albums_parser.add_argument('--max-year', type=int, default=0)
        albums_parser.add_argument('--genre', nargs='+', default=[], help='Only albums in any of these genres')
        albums_parser.add_argument('--favorites', action='store_true', help='Only favorite albums')

        artists_parser = subparsers.add_parser('artists', help='List artists', parents=[browse])
        artists_parser.add_argument('--sort', default=None, help='Artist sort order')
        artists_parser.add_argument('--genre', nargs='+', default=[])
        artists_parser.add_argument('--favorites', action='store_true', help='Only favorite artists')

        subparsers.add_parser('tracks', help='List tracks', parents=[browse])

        return parser

    def _cleanup_resources(self) -> None:
        """Stop prefetch workers and log run duration."""
        logger = logging.getLogger(__name__)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _collector(self, kind: str) -> MetricsCollector:
        collector = MetricsCollector(kind)
        self._collectors.append(collector)
        return collector

    def _create_provider(self, manager: ConfigManager, server: ServerConfig, retries: Optional[int]):
        """Create a media provider for the configured server, wired to a cover art cache."""
        browse = manager.load_config().browse
        secret = manager.get_server_secret(server)
        attempts = retries if retries is not None else browse.fetch_retries + 1
        retry_policy = RetryPolicy(max_attempts=max(1, attempts), backoff_ms=browse.retry_backoff_ms)
        self._executor = ThreadPoolExecutor(max_workers=max(1, browse.prefetch_workers),
                                            thread_name_prefix="mustream-prefetch")

        if server.server_type == SERVER_TYPE_JELLYFIN:
            if not server.user_id:
                raise ConfigError(f"Server '{server.nickname}' has no Jellyfin user ID")
            client = JellyfinClient(server.hostname, access_token=secret, user_id=server.user_id)
            provider = JellyfinMediaProvider(client, retry_policy=retry_policy,
                                             metrics_factory=self._collector,
                                             executor=self._executor)
        elif server.server_type == SERVER_TYPE_SUBSONIC:
            client = SubsonicClient(server.hostname, server.username, secret)
            provider = SubsonicMediaProvider(client, retry_policy=retry_policy,
                                             metrics_factory=self._collector,
                                             executor=self._executor)
        else:
            raise ConfigError(f"Unsupported server type: {server.server_type}")

        cache = CoverArtCache(provider.get_cover_art,
                              max_size_bytes=browse.max_image_cache_size_mb * 1024 * 1024)
        provider.prefetch_cover_cb = cache.prefetch
        return provider

    def _drain(self, iterator, limit: Optional[int], fmt) -> int:
        """Pull items until the end-marker or the limit, printing each."""
        count = 0
        while limit is None or count < limit:
            item = iterator.next()
            if item is None:
                break
            print(fmt(item))
            count += 1
        return count

    def _print_stats(self) -> None:
        for collector in self._collectors:
            collector.print_summary()

    def _list_servers(self, manager: ConfigManager) -> None:
        summary = manager.get_config_summary()
        if not summary['servers']:
            print("No servers configured. Use 'mustream add-server'.")
            return
        for s in summary['servers']:
            default = " [DEFAULT]" if s['default'] else ""
            secret = "" if s['has_secret'] else " (no secret set)"
            print(f"{s['nickname']}: {s['server_type']} {s['hostname']}{default}{secret}")

    def _add_server(self, manager: ConfigManager, args: argparse.Namespace) -> None:
        server = ServerConfig(
            nickname=args.nickname,
            hostname=args.hostname,
            username=args.username,
            server_type=args.server_type,
            default=args.default,
            user_id=args.user_id,
        )
        manager.add_server(server)
        print(f"Added {server.server_type} server '{server.nickname}'.")
        print(f"Set {server.secret_env_key} in {manager.env_file} or the environment.")

    def _list_albums(self, provider, args: argparse.Namespace, default_sort: str) -> int:
        album_filter = AlbumFilter(AlbumFilterOptions(
            min_year=args.min_year,
            max_year=args.max_year,
            exclude_unfavorited=args.favorites,
            genres=list(args.genre),
        ))
        if args.search:
            iterator = provider.search_albums(args.search, album_filter)
        else:
            sort_order = args.sort or default_sort
            if sort_order not in provider.album_sort_orders():
                logging.getLogger(__name__).warning(
                    f"Unknown album sort order '{sort_order}', using server default")
            iterator = provider.iterate_albums(sort_order, album_filter)

        def fmt(album):
            artists = ', '.join(album.artist_names) or 'Unknown Artist'
            year = f" ({album.year})" if album.year else ""
            return f"{album.id}: {album.name} - {artists}{year}"

        return self._drain(iterator, args.limit, fmt)

    def _list_artists(self, provider, args: argparse.Namespace, default_sort: str) -> int:
        artist_filter = ArtistFilter(ArtistFilterOptions(
            exclude_unfavorited=args.favorites,
            genres=list(args.genre),
        ))
        if args.search:
            iterator = provider.search_artists(args.search, artist_filter)
        else:
            iterator = provider.iterate_artists(args.sort or default_sort, artist_filter)
        return self._drain(iterator, args.limit,
                           lambda a: f"{a.id}: {a.name} (albums: {a.album_count})")

    def _list_tracks(self, provider, args: argparse.Namespace) -> int:
        iterator = provider.iterate_tracks(args.search or '')

        def fmt(track):
            minutes, seconds = divmod(track.duration, 60)
            artists = ', '.join(track.artist_names) or 'Unknown Artist'
            return f"{track.id}: {track.name} - {artists} [{minutes}:{seconds:02d}]"

        return self._drain(iterator, args.limit, fmt)

    def _browse(self, manager: ConfigManager, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        config = manager.load_config()
        server = manager.get_server(args.server)
        provider = self._create_provider(manager, server, args.retries)

        with CorrelationContext(server_id=server.id, browse=args.command):
            if args.command == 'albums':
                count = self._list_albums(provider, args, config.browse.album_sort_order)
            elif args.command == 'artists':
                count = self._list_artists(provider, args, config.browse.artist_sort_order)
            else:
                count = self._list_tracks(provider, args)

        logger.info(f"Listed {count} {args.command} from {server.nickname}")
        if args.stats:
            self._print_stats()

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        logger = logging.getLogger(__name__)

        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return 1

        setup_logging(args.log_level)

        try:
            manager = setup_config(args.config_dir)
            if args.command == 'servers':
                self._list_servers(manager)
            elif args.command == 'add-server':
                self._add_server(manager, args)
            else:
                self._browse(manager, args)
            return 0
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return 130
        except ConfigError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return 2
        except Exception as e:
            logger.error(f"CLI error: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    load_dotenv()
    sys.exit(CLI().run())


if __name__ == '__main__':
    main()
