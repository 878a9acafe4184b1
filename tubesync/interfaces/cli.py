import argparse
import json
import logging
import signal
import sys
import time
import uuid
from datetime import datetime
from typing import List, Optional

from tubesync.application.fetcher import PaginatedFetcher
from tubesync.application.ledger import ProgressLedger
from tubesync.application.matching import STRATEGIES, MatchResolver
from tubesync.application.pipeline import PlaylistSynchronizer
from tubesync.application.retry import RetryPolicy
from tubesync.crosscutting.config import ConfigError, Settings
from tubesync.crosscutting.logging import log_error, setup_logging
from tubesync.domain.errors import SyncError
from tubesync.infrastructure.oauth import OAuthSession, ProviderConfig
from tubesync.infrastructure.providers.spotify import SpotifySource, parse_playlist_ref
from tubesync.infrastructure.providers.youtube import PRIVACY_STATUSES, YouTubeTarget
from tubesync.infrastructure.token_store import TokenStore
from tubesync.interfaces.http import LocalCallbackAuthorizer

PROVIDERS = ('spotify', 'youtube')


class CLI:
    """Command Line Interface for TubeSync."""

    def __init__(self):
        """Initialize CLI."""
        self.parser = self._create_parser()
        self._setup_signal_handlers()
        self._start_time = None
        self.settings: Optional[Settings] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='INFO',
            help='Set logging level'
        )
        common.add_argument(
            '--log-file',
            help='Also write logs to this file (rotated)'
        )
        common.add_argument(
            '--json-logs',
            action='store_true',
            help='Emit structured JSON log lines'
        )
        common.add_argument(
            '--env-file',
            help='Load configuration from this .env file'
        )

        parser = argparse.ArgumentParser(
            prog='tubesync',
            description='Copy Spotify playlists to YouTube, resumably'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Sync command
        sync_parser = subparsers.add_parser('sync', parents=[common], help='Sync a Spotify playlist to YouTube')
        sync_parser.add_argument(
            'playlist',
            help='Spotify playlist id, spotify:playlist: URI or open.spotify.com URL'
        )
        sync_parser.add_argument(
            '--target-playlist-id',
            help='Append to this existing YouTube playlist'
        )
        sync_parser.add_argument(
            '--name',
            help='Name of the YouTube playlist to create (default: source playlist name)'
        )
        sync_parser.add_argument(
            '--privacy',
            choices=PRIVACY_STATUSES,
            default=None,
            help='Privacy of a newly created playlist (default from TUBESYNC_PRIVACY or private)'
        )
        sync_parser.add_argument(
            '--reconcile',
            action='store_true',
            help='Re-append matched videos that are missing from the YouTube playlist'
        )
        sync_parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Run in dry-run mode (no actual changes)'
        )
        sync_parser.add_argument(
            '--delay-ms',
            type=int,
            default=None,
            help='Pause between items in milliseconds (default from TUBESYNC_ITEM_DELAY_MS or 500)'
        )
        sync_parser.add_argument(
            '--strategy',
            choices=STRATEGIES,
            default=None,
            help='Match strategy (default from TUBESYNC_MATCH_STRATEGY or first)'
        )

        # Auth command
        auth_parser = subparsers.add_parser('auth', parents=[common], help='Authorize providers ahead of a run')
        auth_parser.add_argument(
            '--provider',
            choices=PROVIDERS + ('all',),
            default='all',
            help='Provider to authorize'
        )
        auth_parser.add_argument(
            '--force',
            action='store_true',
            help='Discard the stored token and authorize again'
        )

        # Status command
        status_parser = subparsers.add_parser('status', parents=[common], help='Show ledger counts of a playlist')
        status_parser.add_argument(
            'playlist',
            help='Spotify playlist id, URI or URL'
        )

        # Config command
        subparsers.add_parser('config', parents=[common], help='Show configuration summary')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Clean up resources on exit."""
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.debug(f"CLI execution time: {duration:.2f}s")
            self._start_time = None

    def _setup_logging(self, args: argparse.Namespace) -> None:
        """Setup logging configuration."""
        setup_logging(
            level=args.log_level,
            log_file=getattr(args, 'log_file', None),
            json_format=getattr(args, 'json_logs', False),
        )

    def _create_run_id(self) -> str:
        """Create unique run identifier."""
        return f"tubesync_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"

    def _create_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.settings.max_attempts,
                           base_delay_sec=self.settings.backoff_base_sec)

    def _provider_config(self, provider_id: str) -> ProviderConfig:
        if provider_id == 'spotify':
            return self.settings.spotify_provider_config()
        if provider_id == 'youtube':
            return self.settings.youtube_provider_config()
        raise ValueError(f"Unsupported provider: {provider_id}")

    def _create_session(self, provider_id: str) -> OAuthSession:
        """Create an OAuth session backed by the token store and the browser flow."""
        return OAuthSession(
            provider=self._provider_config(provider_id),
            token_store=TokenStore(self.settings.tokens_dir),
            authorizer=LocalCallbackAuthorizer(timeout_sec=self.settings.auth_timeout_sec),
            retry_policy=self._create_retry_policy(),
        )

    def _create_synchronizer(self, args: argparse.Namespace) -> PlaylistSynchronizer:
        source_session = self._create_session('spotify')
        target_session = self._create_session('youtube')
        source = SpotifySource(source_session)
        target = YouTubeTarget(target_session)
        retry_policy = self._create_retry_policy()
        delay_ms = args.delay_ms if args.delay_ms is not None else self.settings.item_delay_ms

        return PlaylistSynchronizer(
            source_session=source_session,
            target_session=target_session,
            source=source,
            target=target,
            fetcher=PaginatedFetcher(source, retry_policy, max_workers=self.settings.page_concurrency),
            resolver=MatchResolver(
                target,
                retry_policy,
                strategy=args.strategy or self.settings.match_strategy,
                candidates=self.settings.search_candidates,
                min_score=self.settings.min_match_score,
            ),
            ledger_dir=self.settings.ledgers_dir,
            reports_dir=self.settings.reports_dir,
            retry_policy=retry_policy,
            item_delay_sec=max(0, delay_ms) / 1000.0,
        )

    def _sync(self, args: argparse.Namespace, run_id: str) -> int:
        """Sync one playlist."""
        logger = logging.getLogger(__name__)
        source_playlist_id = parse_playlist_ref(args.playlist)

        if args.dry_run:
            logger.info(f"Starting DRY-RUN sync of {source_playlist_id} (run: {run_id})")
        else:
            logger.info(f"Starting sync of {source_playlist_id} (run: {run_id})")

        synchronizer = self._create_synchronizer(args)
        summary = synchronizer.run(
            source_playlist_id,
            target_playlist_id=args.target_playlist_id,
            playlist_name=args.name,
            privacy=args.privacy or self.settings.privacy,
            reconcile=args.reconcile,
            dry_run=args.dry_run,
            run_id=run_id,
        )

        print(f"Playlist {source_playlist_id} -> {summary.target_playlist_id or '(not created)'}")
        print(f"  total: {summary.total}  matched: {summary.matched}  not found: {summary.not_found}  "
              f"failed: {summary.failed}")
        print(f"  appended this run: {summary.appended}  skipped: {summary.skipped}")
        print(f"  report: {summary.report_path}")
        return 0

    def _auth(self, args: argparse.Namespace) -> int:
        """Authorize one or both providers."""
        logger = logging.getLogger(__name__)
        providers: List[str] = list(PROVIDERS) if args.provider == 'all' else [args.provider]
        for provider_id in providers:
            session = self._create_session(provider_id)
            if args.force and TokenStore(self.settings.tokens_dir).clear(provider_id):
                logger.info(f"Discarded stored {provider_id} token")
            session.ensure_authenticated()
            print(f"{provider_id}: authorized")
        return 0

    def _status(self, args: argparse.Namespace) -> int:
        """Print ledger counts of a playlist."""
        source_playlist_id = parse_playlist_ref(args.playlist)
        ledger = ProgressLedger(self.settings.ledgers_dir / f"{source_playlist_id}.json", source_playlist_id)
        if not ledger.path.exists():
            print(f"No ledger for playlist {source_playlist_id}")
            return 0

        ledger.load()
        counts = ledger.counts()
        print(f"Playlist {source_playlist_id} -> {ledger.target_playlist_id or '(none)'}")
        for status, count in counts.items():
            print(f"  {status}: {count}")
        return 0

    def _config(self, args: argparse.Namespace) -> int:
        """Print configuration summary."""
        print(json.dumps(self.settings.summary(), indent=2))
        missing = self.settings.missing()
        if missing:
            print(f"Missing: {', '.join(missing)}")
            return 1
        return 0

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the exit code."""
        self._start_time = time.time()
        logger = logging.getLogger(__name__)

        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return 1

        run_id = self._create_run_id() if args.command == 'sync' else None
        self._setup_logging(args)

        try:
            self.settings = Settings.from_env(args.env_file)

            if args.command == 'sync':
                return self._sync(args, run_id)
            if args.command == 'auth':
                return self._auth(args)
            if args.command == 'status':
                return self._status(args)
            if args.command == 'config':
                return self._config(args)
            self.parser.print_help()
            return 1

        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return 130
        except (ConfigError, ValueError) as e:
            logger.error(f"Configuration error: {e}")
            return 1
        except SyncError as e:
            log_error(logger, f"{args.command} failed: {e}", e)
            return 1
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
