"""
Unit tests for retention policy management (vmkeeper/backup/retention.py).

Tests select_expired and RetentionManager rotation of remote and local backups.
"""

import os
from datetime import datetime

import pytest

from vmkeeper.backup.context import RunContext
from vmkeeper.backup.retention import RetentionManager, select_expired
from vmkeeper.backup.storage import StorageError


RUN_TIME = datetime(2024, 3, 15, 1, 0, 0)


@pytest.fixture
def context(make_settings):
    return RunContext.create(make_settings(), RUN_TIME)


def _make_local_runs(archive_root, names):
    for name in names:
        (archive_root / name).mkdir()
        (archive_root / name / 'vm.7z').write_bytes(b'x')


class TestSelectExpired:
    """Test the keep-newest-N selection."""

    def test_keeps_newest(self):
        names = ['20240101_010000', '20240103_010000', '20240102_010000', '20240104_010000']

        assert select_expired(names, 2) == ['20240102_010000', '20240101_010000']

    def test_fewer_entries_than_retention(self):
        assert select_expired(['20240101_010000'], 5) == []

    def test_zero_keeps_everything(self):
        assert select_expired(['a', 'b', 'c'], 0) == []

    def test_empty(self):
        assert select_expired([], 3) == []

    def test_loose_files_sort_with_their_run(self):
        names = ['20240101_010000', '20240101_010000.log', '20240102_010000']

        assert select_expired(names, 1) == ['20240101_010000.log', '20240101_010000']


class TestRotationGate:
    """Test that a failed verification blocks all deletions."""

    def test_any_failure_skips_everything(self, make_settings, context, remote_store, backup_dirs):
        remote_store.entries = {'offsite': ['20240101_010000', '20240102_010000', '20240103_010000']}
        _make_local_runs(backup_dirs['archive'], ['20240110_010000', '20240111_010000',
                                                  '20240112_010000', '20240113_010000'])
        context.ledger.record('web01_a.7z', True)
        context.ledger.record('db_b.7z', False)

        summary = RetentionManager(make_settings(), remote_store.factory).enforce(context)

        assert summary['skipped'] is True
        assert summary['remote_deleted'] == 0
        assert summary['local_deleted'] == 0
        assert remote_store.calls == []
        assert len(os.listdir(backup_dirs['archive'])) == 6
        assert 'db_b.7z' in context.log.text()

    def test_unverified_archives_do_not_block(self, make_settings, context, remote_store):
        remote_store.entries = {'offsite': ['20240101_010000', '20240102_010000', '20240103_010000']}

        summary = RetentionManager(make_settings(), remote_store.factory).enforce(context)

        assert summary['skipped'] is False
        assert remote_store.operations('purge') == [('purge', 'offsite', '20240101_010000')]


class TestRemoteRotation:
    """Test rotation on remote targets."""

    def test_each_remote_uses_its_own_retention(self, make_settings, context, remote_store):
        remote_store.entries = {
            'offsite': ['20240101_010000', '20240102_010000', '20240103_010000', '20240104_010000'],
            'nas': ['20240101_010000', '20240102_010000', '20240103_010000'],
        }

        summary = RetentionManager(make_settings(), remote_store.factory).enforce(context)

        assert summary['remote_deleted'] == 2
        assert remote_store.entries['offsite'] == ['20240103_010000', '20240104_010000']
        assert len(remote_store.entries['nas']) == 3

    def test_zero_retention_skips_listing(self, make_settings, context, remote_store):
        settings = make_settings(remotes=[{'name': 'offsite', 'path': 'vm-backups', 'retention': 0}])

        RetentionManager(settings, remote_store.factory).enforce(context)

        assert remote_store.calls == []
        assert 'retention not limited' in context.log.text()

    def test_purge_errors_are_best_effort(self, make_settings, context, remote_store):
        remote_store.entries = {
            'offsite': ['20240101_010000', '20240102_010000', '20240103_010000', '20240104_010000'],
        }
        remote_store.purge_failures = {'20240102_010000'}

        summary = RetentionManager(make_settings(), remote_store.factory).enforce(context)

        assert summary['remote_deleted'] == 1
        assert len(summary['errors']) == 1
        assert '20240102_010000' in summary['errors'][0]
        assert [c[2] for c in remote_store.operations('purge')] == ['20240102_010000', '20240101_010000']

    def test_list_error_moves_on_to_next_remote(self, make_settings, context, remote_store):
        def factory(remote):
            if remote.name == 'offsite':
                raise StorageError('remote unreachable')
            return remote_store.factory(remote)

        remote_store.entries = {'nas': ['2024010%d_010000' % i for i in range(1, 8)]}

        summary = RetentionManager(make_settings(), factory).enforce(context)

        assert summary['remote_deleted'] == 2
        assert 'Failed to list remote offsite' in summary['errors'][0]


class TestLocalRotation:
    """Test rotation of the local archive root."""

    def test_reserved_folders_never_deleted(self, make_settings, context, remote_store, backup_dirs):
        _make_local_runs(backup_dirs['archive'], ['20240110_010000', '20240111_010000',
                                                  '20240112_010000', '20240113_010000',
                                                  '20240114_010000'])

        summary = RetentionManager(make_settings(), remote_store.factory).enforce(context)

        remaining = set(os.listdir(backup_dirs['archive']))
        assert summary['local_deleted'] == 2
        assert remaining == {'exported', 'logs', '20240112_010000', '20240113_010000', '20240114_010000'}

    def test_runs_without_remotes(self, make_settings, context, remote_store, backup_dirs):
        _make_local_runs(backup_dirs['archive'], ['20240110_010000', '20240111_010000',
                                                  '20240112_010000', '20240113_010000'])

        summary = RetentionManager(make_settings(remotes=[]), remote_store.factory).enforce(context)

        assert summary['local_deleted'] == 1
        assert not (backup_dirs['archive'] / '20240110_010000').exists()

    def test_local_retention_zero(self, make_settings, context, remote_store, backup_dirs):
        _make_local_runs(backup_dirs['archive'], ['20240110_010000', '20240111_010000',
                                                  '20240112_010000', '20240113_010000'])
        settings = make_settings(local={
            'export_path': str(backup_dirs['export']),
            'archive_path': str(backup_dirs['archive']),
            'log_path': str(backup_dirs['logs']),
            'retention': 0
        })

        summary = RetentionManager(settings, remote_store.factory).enforce(context)

        assert summary['local_deleted'] == 0
        assert len(os.listdir(backup_dirs['archive'])) == 6
