import json

import pytest

from tubesync.application.ledger import ProgressLedger
from tubesync.domain.entities import LedgerEntry, LedgerStatus
from tubesync.domain.errors import LedgerError


class TestProgressLedger:
    """Tests for ProgressLedger."""

    def setup_method(self):
        self.source_playlist_id = 'pl1'

    def _ledger(self, tmp_path, **kwargs):
        return ProgressLedger(tmp_path / 'ledgers' / 'pl1.json', self.source_playlist_id, **kwargs)

    def test_missing_file_is_empty_ledger(self, tmp_path):
        ledger = self._ledger(tmp_path)

        assert ledger.load() == {}
        assert ledger.target_playlist_id is None

    def test_register_adds_pending_entries_once(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()

        assert ledger.register(['a', 'b']) == 2
        assert ledger.register(['b', 'c']) == 1
        assert ledger.get('a').status == LedgerStatus.PENDING
        assert ledger.counts()['pending'] == 3

    def test_every_upsert_is_durable(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()
        ledger.upsert(LedgerEntry.matched('a', 'v1'))
        ledger.set_target_playlist('PL1')

        reopened = self._ledger(tmp_path)
        entries = reopened.load()

        assert entries['a'].target_item_id == 'v1'
        assert reopened.target_playlist_id == 'PL1'

    def test_matched_entry_is_not_overwritten_without_force(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()
        ledger.upsert(LedgerEntry.matched('a', 'v1'))

        assert ledger.upsert(LedgerEntry.failed('a', 'late failure')) is False
        assert ledger.upsert(LedgerEntry.matched('a', 'v2')) is False
        assert ledger.get('a').target_item_id == 'v1'

    def test_force_overwrites_matched_entry(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()
        ledger.upsert(LedgerEntry.matched('a', 'v1'))

        assert ledger.upsert(LedgerEntry.matched('a', 'v2'), force=True) is True
        assert ledger.get('a').target_item_id == 'v2'

    def test_failed_and_not_found_can_be_upgraded(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()
        ledger.upsert(LedgerEntry.failed('a', 'timeout'))

        assert ledger.upsert(LedgerEntry.matched('a', 'v1')) is True

    def test_file_format(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.load()
        ledger.upsert(LedgerEntry.not_found('a'))

        data = json.loads(ledger.path.read_text())
        assert data['version'] == 1
        assert data['sourcePlaylistId'] == 'pl1'
        assert data['entries']['a']['status'] == 'not_found'

    def test_corrupt_file_is_fatal(self, tmp_path):
        ledger = self._ledger(tmp_path)
        ledger.path.parent.mkdir(parents=True)
        ledger.path.write_text('{"entries": {"a": {"status": "bogus"}}}')

        with pytest.raises(LedgerError):
            ledger.load()

    def test_ledger_of_other_playlist_is_rejected(self, tmp_path):
        other = ProgressLedger(tmp_path / 'ledgers' / 'pl1.json', 'other')
        other.load()
        other.upsert(LedgerEntry.not_found('a'))

        with pytest.raises(LedgerError):
            self._ledger(tmp_path).load()

    def test_dry_run_never_writes(self, tmp_path):
        ledger = self._ledger(tmp_path, dry_run=True)
        ledger.load()
        ledger.register(['a'])
        ledger.upsert(LedgerEntry.matched('a', 'v1'))
        ledger.save()

        assert not ledger.path.exists()
        assert ledger.get('a').status == LedgerStatus.MATCHED
