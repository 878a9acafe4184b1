import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from tubesync.domain.entities import LedgerEntry, LedgerStatus
from tubesync.domain.errors import LedgerError
from tubesync.infrastructure.storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1


class ProgressLedger:
    """Durable map of source item id to resolution outcome for one playlist.

    Every change is written to disk atomically before the call returns, so an
    interrupted run resumes from the last recorded item. A matched entry is
    never overwritten unless the caller forces it.
    """

    def __init__(self, path: Union[str, Path], source_playlist_id: Optional[str] = None,
                 dry_run: bool = False):
        """Initialize ledger.

        Args:
            path: Ledger file location
            source_playlist_id: Source collection this ledger belongs to
            dry_run: Keep all changes in memory only
        """
        self.path = Path(path)
        self.source_playlist_id = source_playlist_id
        self.dry_run = dry_run
        self.target_playlist_id: Optional[str] = None
        self._entries: Dict[str, LedgerEntry] = {}
        self._loaded = False

    def load(self) -> Dict[str, LedgerEntry]:
        """Load entries from disk. A missing file is an empty ledger.

        Raises:
            LedgerError: if the file exists but cannot be parsed
        """
        self._entries = {}
        self._loaded = True
        if not self.path.exists():
            logger.info(f"No ledger at {self.path}, starting fresh")
            return self.snapshot()

        try:
            data = read_json(self.path)
            if not isinstance(data, dict):
                raise ValueError("ledger root is not an object")
            entries = data.get('entries', {})
            if not isinstance(entries, dict):
                raise ValueError("'entries' is not an object")
            for source_item_id, raw in entries.items():
                self._entries[source_item_id] = LedgerEntry.from_json(source_item_id, raw)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise LedgerError(f"Ledger {self.path} is unreadable: {e}") from e

        stored_source = data.get('sourcePlaylistId')
        if self.source_playlist_id and stored_source and stored_source != self.source_playlist_id:
            raise LedgerError(f"Ledger {self.path} belongs to playlist {stored_source}, "
                              f"not {self.source_playlist_id}")
        self.source_playlist_id = self.source_playlist_id or stored_source
        self.target_playlist_id = data.get('targetPlaylistId')

        logger.info(f"Loaded ledger {self.path}: {self.counts()}")
        return self.snapshot()

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, source_item_id: str) -> Optional[LedgerEntry]:
        self._ensure_loaded()
        return self._entries.get(source_item_id)

    def register(self, source_item_ids: Iterable[str]) -> int:
        """Add Pending entries for ids not seen before. Returns how many were added."""
        self._ensure_loaded()
        added = 0
        for source_item_id in source_item_ids:
            if source_item_id not in self._entries:
                self._entries[source_item_id] = LedgerEntry.pending(source_item_id)
                added += 1
        if added:
            self.save()
        return added

    def upsert(self, entry: LedgerEntry, force: bool = False) -> bool:
        """Record an entry. Returns False when a Matched entry was left untouched.

        Args:
            entry: New state of the item
            force: Overwrite even a Matched entry (explicit reconciliation)
        """
        self._ensure_loaded()
        existing = self._entries.get(entry.source_item_id)
        if existing is not None and existing.status == LedgerStatus.MATCHED and not force:
            if entry != existing:
                logger.debug(f"Keeping matched entry for {entry.source_item_id}")
            return False

        self._entries[entry.source_item_id] = entry
        self.save()
        return True

    def set_target_playlist(self, target_playlist_id: str) -> None:
        self._ensure_loaded()
        if self.target_playlist_id != target_playlist_id:
            self.target_playlist_id = target_playlist_id
            self.save()

    def snapshot(self) -> Dict[str, LedgerEntry]:
        """Return a copy of all entries."""
        return dict(self._entries)

    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in LedgerStatus}
        for entry in self._entries.values():
            totals[entry.status.value] += 1
        return totals

    def to_json(self) -> Dict:
        return {
            'version': LEDGER_VERSION,
            'sourcePlaylistId': self.source_playlist_id,
            'targetPlaylistId': self.target_playlist_id,
            'updatedAt': datetime.utcnow().isoformat(),
            'entries': {k: v.to_json() for k, v in self._entries.items()},
        }

    def save(self) -> None:
        """Write the whole ledger atomically."""
        if self.dry_run:
            return
        try:
            atomic_write_json(self.path, self.to_json())
        except OSError as e:
            raise LedgerError(f"Failed to write ledger {self.path}: {e}") from e
