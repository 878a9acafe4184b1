import logging
import time
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from tubesync.application.fetcher import PaginatedFetcher
from tubesync.application.ledger import ProgressLedger
from tubesync.application.matching import MatchResolver
from tubesync.application.retry import RetryPolicy
from tubesync.crosscutting.logging import CorrelationContext, log_run_complete, log_run_start
from tubesync.crosscutting.reporting import (
    SyncReport, SyncSummary, UnresolvedItem, create_report_header, write_report
)
from tubesync.domain.entities import LedgerEntry, LedgerStatus, TargetPlaylist, TrackDescriptor
from tubesync.domain.errors import AuthError, SyncError
from tubesync.domain.ports import SourceCatalog, TargetCatalog
from tubesync.infrastructure.oauth import OAuthSession

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10


class SyncState(str, Enum):
    INIT = "init"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    DONE = "done"


class PlaylistSynchronizer:
    """Copies one source playlist into a target playlist, resumably.

    A run walks Init, Fetching, Resolving and Done. Every resolved item is
    written to the progress ledger before the next one starts, so an
    interrupted run picks up where it stopped. Items already Matched or
    NotFound are never searched again, and nothing is appended twice.
    """

    def __init__(self,
                 source_session: OAuthSession,
                 target_session: OAuthSession,
                 source: SourceCatalog,
                 target: TargetCatalog,
                 fetcher: PaginatedFetcher,
                 resolver: MatchResolver,
                 ledger_dir: Union[str, Path],
                 reports_dir: Union[str, Path],
                 retry_policy: Optional[RetryPolicy] = None,
                 item_delay_sec: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize the synchronizer.

        Args:
            source_session: OAuth session of the source provider
            target_session: OAuth session of the target provider
            source: Source catalog adapter
            target: Target catalog adapter
            fetcher: Paginated fetcher over the source
            resolver: Match resolver over the target
            ledger_dir: Directory holding one ledger file per source playlist
            reports_dir: Directory for unresolved-items reports
            retry_policy: Retry policy for append requests
            item_delay_sec: Pause after each item that issued target requests
            sleep: Sleep function, replaceable in tests
        """
        self.source_session = source_session
        self.target_session = target_session
        self.source = source
        self.target = target
        self.fetcher = fetcher
        self.resolver = resolver
        self.ledger_dir = Path(ledger_dir)
        self.reports_dir = Path(reports_dir)
        self.retry_policy = retry_policy or RetryPolicy()
        self.item_delay_sec = max(0.0, item_delay_sec)
        self._sleep = sleep
        self.state = SyncState.INIT

    def ledger_path(self, source_playlist_id: str) -> Path:
        return self.ledger_dir / f"{source_playlist_id}.json"

    def report_path(self, source_playlist_id: str) -> Path:
        return self.reports_dir / f"unresolved_{source_playlist_id}.json"

    def run(self,
            source_playlist_id: str,
            target_playlist_id: Optional[str] = None,
            playlist_name: Optional[str] = None,
            privacy: str = "private",
            reconcile: bool = False,
            dry_run: bool = False,
            run_id: Optional[str] = None) -> SyncSummary:
        """Synchronize a source playlist into the target catalog.

        Args:
            source_playlist_id: Source playlist id
            target_playlist_id: Existing target playlist to append to
            playlist_name: Name for a newly created target playlist
            privacy: Privacy status for a newly created target playlist
            reconcile: Re-append Matched items missing from the target playlist
            dry_run: Fetch and resolve only; no playlist writes, no ledger writes
            run_id: Correlation id of the run

        Returns:
            Summary of the run

        Raises:
            SyncError: when Init fails or authentication is lost mid-run
        """
        run_id = run_id or str(uuid.uuid4())
        header = create_report_header(run_id, source_playlist_id, dry_run=dry_run)
        log_run_start(logger, run_id, source_playlist_id, dry_run=dry_run, reconcile=reconcile)

        with CorrelationContext(run_id=run_id, source_playlist_id=source_playlist_id):
            self.state = SyncState.INIT
            with CorrelationContext(stage=SyncState.INIT.value):
                ledger = ProgressLedger(self.ledger_path(source_playlist_id), source_playlist_id, dry_run=dry_run)
                playlist = self._init(ledger, source_playlist_id, target_playlist_id,
                                      playlist_name, privacy, dry_run)
            header.target_playlist_id = playlist.target_playlist_id if playlist else None

            self.state = SyncState.FETCHING
            with CorrelationContext(stage=SyncState.FETCHING.value):
                tracks = self.fetcher.fetch_all(source_playlist_id)

            self.state = SyncState.RESOLVING
            summary = SyncSummary(target_playlist_id=header.target_playlist_id)
            try:
                with CorrelationContext(stage=SyncState.RESOLVING.value):
                    self._resolve_all(tracks, ledger, playlist, summary, reconcile, dry_run)
            except AuthError as e:
                logger.error(f"Authentication lost, stopping run; progress is kept in the ledger: {e}")
                self._finish(ledger, tracks, header, summary)
                raise

            self.state = SyncState.DONE
            with CorrelationContext(stage=SyncState.DONE.value):
                self._finish(ledger, tracks, header, summary)

        log_run_complete(logger, run_id, source_playlist_id,
                         matched=summary.matched, not_found=summary.not_found, failed=summary.failed,
                         appended=summary.appended, report=summary.report_path)
        return summary

    def _init(self, ledger: ProgressLedger, source_playlist_id: str,
              target_playlist_id: Optional[str], playlist_name: Optional[str],
              privacy: str, dry_run: bool) -> Optional[TargetPlaylist]:
        self.source_session.ensure_authenticated()
        self.target_session.ensure_authenticated()
        ledger.load()

        playlist_id = target_playlist_id or ledger.target_playlist_id
        if playlist_id:
            playlist = self.target.get_playlist(playlist_id)
            logger.info(f"Appending to target playlist '{playlist.name}' ({playlist_id}) "
                        f"with {len(playlist.member_item_ids)} items")
        else:
            name = playlist_name or self.source.get_collection_name(source_playlist_id)
            if dry_run:
                logger.info(f"DRY-RUN: would create target playlist '{name}' ({privacy})")
                return None
            playlist = self.target.create_playlist(
                name, description=f"Imported from Spotify playlist {source_playlist_id}", privacy=privacy,
            )

        ledger.set_target_playlist(playlist.target_playlist_id)
        return playlist

    def _resolve_all(self, tracks: List[TrackDescriptor], ledger: ProgressLedger,
                     playlist: Optional[TargetPlaylist], summary: SyncSummary,
                     reconcile: bool, dry_run: bool) -> None:
        added = ledger.register(track.source_item_id for track in tracks)
        logger.info(f"Resolving {len(tracks)} tracks ({added} new to the ledger)")

        for index, track in enumerate(tracks, start=1):
            entry = ledger.get(track.source_item_id)
            if entry is not None and entry.status.is_terminal:
                if reconcile and self._missing_from(playlist, entry):
                    self._reappend(track, entry, ledger, playlist, summary, dry_run)
                    self._pause()
                else:
                    summary.skipped += 1
            else:
                self._process(track, ledger, playlist, summary, dry_run)
                summary.processed += 1
                self._pause()

            if index % PROGRESS_EVERY == 0 or index == len(tracks):
                logger.info(f"Progress: {index}/{len(tracks)} tracks, "
                            f"{summary.appended} appended, {summary.skipped} skipped")

    def _process(self, track: TrackDescriptor, ledger: ProgressLedger,
                 playlist: Optional[TargetPlaylist], summary: SyncSummary, dry_run: bool) -> None:
        source_item_id = track.source_item_id
        try:
            resolution = self.resolver.resolve(track)
        except AuthError:
            raise
        except Exception as e:
            # One item's failure never aborts the run
            logger.exception(f"Unexpected error resolving {source_item_id}: {e}")
            ledger.upsert(LedgerEntry.failed(source_item_id, f"{type(e).__name__}: {e}"))
            return

        if resolution.status == LedgerStatus.NOT_FOUND:
            ledger.upsert(LedgerEntry(source_item_id, LedgerStatus.NOT_FOUND, reason=resolution.reason))
            return
        if resolution.status == LedgerStatus.FAILED:
            ledger.upsert(LedgerEntry.failed(source_item_id, resolution.reason or "search failed"))
            return

        video_id = resolution.candidate.target_item_id
        failure = self._append(video_id, playlist, summary, dry_run)
        if failure:
            ledger.upsert(LedgerEntry.failed(source_item_id, failure))
        else:
            ledger.upsert(LedgerEntry.matched(source_item_id, video_id))
            logger.info(f"Matched '{resolution.query}' -> {video_id}")

    def _reappend(self, track: TrackDescriptor, entry: LedgerEntry, ledger: ProgressLedger,
                  playlist: Optional[TargetPlaylist], summary: SyncSummary, dry_run: bool) -> None:
        logger.info(f"Reconciling {track.source_item_id}: {entry.target_item_id} is missing from the playlist")
        failure = self._append(entry.target_item_id, playlist, summary, dry_run)
        if failure:
            logger.warning(f"Could not re-append {entry.target_item_id}: {failure}")
            return
        ledger.upsert(LedgerEntry.matched(track.source_item_id, entry.target_item_id), force=True)

    def _append(self, video_id: str, playlist: Optional[TargetPlaylist],
                summary: SyncSummary, dry_run: bool) -> Optional[str]:
        """Append unless already a member. Returns a failure reason or None."""
        if playlist is not None and playlist.contains(video_id):
            logger.debug(f"{video_id} is already in the playlist")
            return None
        if dry_run:
            logger.info(f"DRY-RUN: would append {video_id}")
            return None

        try:
            self.retry_policy.run(
                lambda: self.target.append_item(playlist.target_playlist_id, video_id),
                description=f"append {video_id}",
            )
        except AuthError:
            raise
        except SyncError as e:
            return f"append: {type(e).__name__}: {e}"
        except Exception as e:
            logger.exception(f"Unexpected error appending {video_id}: {e}")
            return f"append: {type(e).__name__}: {e}"

        playlist.member_item_ids.add(video_id)
        summary.appended += 1
        return None

    @staticmethod
    def _missing_from(playlist: Optional[TargetPlaylist], entry: LedgerEntry) -> bool:
        if entry.status != LedgerStatus.MATCHED or playlist is None:
            return False
        return not playlist.contains(entry.target_item_id)

    def _pause(self) -> None:
        if self.item_delay_sec > 0:
            self._sleep(self.item_delay_sec)

    def _finish(self, ledger: ProgressLedger, tracks: List[TrackDescriptor],
                header, summary: SyncSummary) -> None:
        ledger.save()

        entries: Dict[str, LedgerEntry] = ledger.snapshot()
        seen = set()
        unresolved: List[UnresolvedItem] = []
        summary.total = 0
        summary.matched = summary.not_found = summary.failed = 0
        for track in tracks:
            if track.source_item_id in seen:
                continue
            seen.add(track.source_item_id)
            summary.total += 1
            entry = entries.get(track.source_item_id)
            status = entry.status if entry else LedgerStatus.PENDING
            if status == LedgerStatus.MATCHED:
                summary.matched += 1
            elif status == LedgerStatus.NOT_FOUND:
                summary.not_found += 1
                unresolved.append(UnresolvedItem(track, status, entry.reason))
            elif status == LedgerStatus.FAILED:
                summary.failed += 1
                unresolved.append(UnresolvedItem(track, status, entry.reason))

        header.finished_at = datetime.utcnow()
        report = SyncReport(header=header, totals=summary.to_json(), unresolved=unresolved)
        path = write_report(self.report_path(header.source_playlist_id), report)
        summary.unresolved = unresolved
        summary.report_path = str(path)
        logger.info(f"Run finished: {summary.matched} matched, {summary.not_found} not found, "
                    f"{summary.failed} failed, {summary.appended} appended; report at {path}")
