import argparse
import json

import pytest
from unittest.mock import Mock, patch

from tubesync.application.ledger import ProgressLedger
from tubesync.crosscutting.reporting import SyncSummary
from tubesync.domain.entities import LedgerEntry
from tubesync.domain.errors import AuthError
from tubesync.interfaces.cli import CLI


class TestCLI:
    """Tests for CLI functionality."""

    def setup_method(self):
        self.cli = CLI()

    def test_create_parser(self):
        parser = self.cli._create_parser()

        assert isinstance(parser, argparse.ArgumentParser)

        args = parser.parse_args(['sync', 'spotify:playlist:abc', '--dry-run', '--reconcile',
                                  '--delay-ms', '0', '--strategy', 'scored', '--privacy', 'public'])
        assert args.command == 'sync'
        assert args.playlist == 'spotify:playlist:abc'
        assert args.dry_run is True
        assert args.reconcile is True
        assert args.delay_ms == 0
        assert args.strategy == 'scored'
        assert args.privacy == 'public'
        assert args.log_level == 'INFO'

        args = parser.parse_args(['auth', '--provider', 'youtube', '--force', '--json-logs'])
        assert args.provider == 'youtube'
        assert args.force is True
        assert args.json_logs is True

        args = parser.parse_args(['status', 'abc'])
        assert args.command == 'status'

    def test_unknown_strategy_is_rejected(self):
        with pytest.raises(SystemExit):
            self.cli._create_parser().parse_args(['sync', 'abc', '--strategy', 'fuzzy'])

    def test_no_command_prints_help(self):
        assert self.cli.run([]) == 1

    def test_config_reports_missing_credentials(self, capsys):
        assert self.cli.run(['config']) == 1

        out = capsys.readouterr().out
        assert 'SPOTIFY_CLIENT_ID' in out

    def test_config_ok(self, monkeypatch, capsys):
        for key in ('SPOTIFY_CLIENT_ID', 'SPOTIFY_CLIENT_SECRET', 'YOUTUBE_CLIENT_ID', 'YOUTUBE_CLIENT_SECRET'):
            monkeypatch.setenv(key, 'value')

        assert self.cli.run(['config']) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary['match_strategy'] == 'first'

    def test_status_prints_ledger_counts(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv('TUBESYNC_STATE_DIR', str(tmp_path))
        ledger = ProgressLedger(tmp_path / 'ledgers' / 'abc.json', 'abc')
        ledger.load()
        ledger.upsert(LedgerEntry.matched('s1', 'v1'))
        ledger.upsert(LedgerEntry.not_found('s2'))

        assert self.cli.run(['status', 'https://open.spotify.com/playlist/abc']) == 0

        out = capsys.readouterr().out
        assert 'matched: 1' in out
        assert 'not_found: 1' in out

    def test_sync_without_credentials_is_config_error(self):
        assert self.cli.run(['sync', 'abc']) == 1

    def test_sync_invalid_playlist_ref(self):
        assert self.cli.run(['sync', 'https://example.com/x']) == 1

    @patch('tubesync.interfaces.cli.CLI._create_synchronizer')
    def test_sync_runs_synchronizer(self, create_synchronizer, capsys):
        synchronizer = Mock()
        synchronizer.run.return_value = SyncSummary(total=2, matched=1, not_found=1, appended=1,
                                                    target_playlist_id='PL1', report_path='/tmp/r.json')
        create_synchronizer.return_value = synchronizer

        assert self.cli.run(['sync', 'spotify:playlist:abc', '--name', 'Mix', '--dry-run']) == 0

        args, kwargs = synchronizer.run.call_args
        assert args == ('abc',)
        assert kwargs['playlist_name'] == 'Mix'
        assert kwargs['dry_run'] is True
        assert kwargs['privacy'] == 'private'
        assert kwargs['run_id'].startswith('tubesync_')
        assert 'PL1' in capsys.readouterr().out

    @patch('tubesync.interfaces.cli.CLI._create_synchronizer')
    def test_fatal_sync_error_exit_code(self, create_synchronizer):
        create_synchronizer.return_value.run.side_effect = AuthError('revoked')

        assert self.cli.run(['sync', 'abc']) == 1

    @patch('tubesync.interfaces.cli.CLI._create_synchronizer')
    def test_keyboard_interrupt_exit_code(self, create_synchronizer):
        create_synchronizer.return_value.run.side_effect = KeyboardInterrupt()

        assert self.cli.run(['sync', 'abc']) == 130

    def test_synchronizer_wiring(self, monkeypatch):
        for key in ('SPOTIFY_CLIENT_ID', 'SPOTIFY_CLIENT_SECRET', 'YOUTUBE_CLIENT_ID', 'YOUTUBE_CLIENT_SECRET'):
            monkeypatch.setenv(key, 'value')
        monkeypatch.setenv('TUBESYNC_ITEM_DELAY_MS', '100')
        args = self.cli._create_parser().parse_args(['sync', 'abc', '--strategy', 'scored'])
        from tubesync.crosscutting.config import Settings
        self.cli.settings = Settings.from_env()

        synchronizer = self.cli._create_synchronizer(args)

        assert synchronizer.item_delay_sec == 0.1
        assert synchronizer.resolver.strategy == 'scored'
        assert synchronizer.source_session.provider_id == 'spotify'
        assert synchronizer.target_session.provider_id == 'youtube'
        assert synchronizer.ledger_dir == self.cli.settings.ledgers_dir
