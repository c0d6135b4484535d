"""
Unit tests for run context (vmkeeper/backup/context.py).

Tests run IDs, archive naming, the verification ledger and the run log.
"""

import os
import threading
from datetime import datetime

import pytest
from freezegun import freeze_time

from vmkeeper.backup.context import (
    ArchiveDescriptor,
    RunContext,
    RunLog,
    VerificationLedger,
    VerificationStatus,
    generate_run_id,
    safe_vm_name,
)


VM_ID = '1f0c3c1e-0002-4c1a-9a11-bbbbbbbbbbbb'


class TestRunId:
    """Test run ID generation."""

    @freeze_time('2024-03-15 01:00:07')
    def test_run_id_from_current_time(self):
        assert generate_run_id() == '20240315_010007'

    def test_run_id_from_given_time(self):
        assert generate_run_id(datetime(2023, 12, 31, 23, 59, 59)) == '20231231_235959'

    def test_run_ids_sort_chronologically(self):
        earlier = generate_run_id(datetime(2024, 1, 9, 23, 0, 0))
        later = generate_run_id(datetime(2024, 1, 10, 1, 0, 0))

        assert sorted([later, earlier]) == [earlier, later]


class TestArchiveDescriptor:
    """Test archive file naming."""

    def test_safe_vm_name(self):
        assert safe_vm_name('build agent #2') == 'build_agent__2'
        assert safe_vm_name('web-01_prod') == 'web-01_prod'

    def test_file_name_and_paths(self, tmp_path):
        descriptor = ArchiveDescriptor(
            vm_id=VM_ID, vm_name='db primary', run_id='20240315_010000',
            extension='7z', directory=str(tmp_path)
        )

        assert descriptor.file_name == f"db_primary_{VM_ID}.7z"
        assert descriptor.path == os.path.join(str(tmp_path), descriptor.file_name)
        assert descriptor.checksum_path == descriptor.path + '.txt'

    @pytest.mark.parametrize('vm_name', ['db_primary', 'build agent #2', 'web01'])
    def test_vm_id_is_token_after_last_underscore(self, vm_name, tmp_path):
        """Names may contain the delimiter; the id still splits off the end."""
        descriptor = ArchiveDescriptor(
            vm_id=VM_ID, vm_name=vm_name, run_id='20240315_010000',
            extension='tar.gz', directory=str(tmp_path)
        )

        stem = descriptor.file_name.partition('.')[0]
        assert stem.rpartition('_')[2] == VM_ID


class TestVerificationLedger:
    """Test the per-archive verification outcome."""

    def test_unknown_archive_is_unverified(self):
        assert VerificationLedger().status('a.7z') is VerificationStatus.UNVERIFIED

    def test_verified(self):
        ledger = VerificationLedger()

        assert ledger.record('a.7z', True) is VerificationStatus.VERIFIED
        assert ledger.has_failures() is False

    def test_failure_is_sticky(self):
        ledger = VerificationLedger()
        ledger.record('a.7z', True)
        ledger.record('a.7z', False)

        assert ledger.record('a.7z', True) is VerificationStatus.FAILED
        assert ledger.status('a.7z') is VerificationStatus.FAILED
        assert ledger.has_failures() is True

    def test_failures_sorted(self):
        ledger = VerificationLedger()
        ledger.record('web.7z', False)
        ledger.record('db.7z', True)
        ledger.record('app.7z', False)

        assert ledger.failures() == ['app.7z', 'web.7z']
        assert len(ledger) == 3
        assert ledger.status('db.7z') is VerificationStatus.VERIFIED

    def test_concurrent_records_keep_failure(self):
        ledger = VerificationLedger()
        ledger.record('a.7z', False)

        threads = [threading.Thread(target=ledger.record, args=('a.7z', True)) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.failures() == ['a.7z']


class TestRunLog:
    """Test the per-run log sink."""

    @freeze_time('2024-03-15 01:02:03')
    def test_line_format(self):
        log = RunLog()

        assert log.write('Exporting VM web01') == '2024-03-15 01:02:03 - Exporting VM web01'
        assert log.text() == '2024-03-15 01:02:03 - Exporting VM web01'

    def test_open_replays_earlier_lines(self, tmp_path):
        log = RunLog()
        log.write('first')
        path = tmp_path / 'logs' / 'run.log'

        log.open(str(path))
        log.write('second')

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith(' - first')
        assert lines[1].endswith(' - second')

    def test_unwritable_file_keeps_memory_log(self, tmp_path):
        log = RunLog(str(tmp_path / 'missing-dir' / 'run.log'))

        log.write('still recorded')

        assert 'still recorded' in log.text()


class TestRunContext:
    """Test run folder layout."""

    def test_create(self, make_settings, backup_dirs):
        context = RunContext.create(make_settings(), datetime(2024, 3, 15, 1, 0, 0))

        assert context.run_id == '20240315_010000'
        assert context.export_dir == os.path.join(str(backup_dirs['export']), '20240315_010000')
        assert context.archive_dir == os.path.join(str(backup_dirs['archive']), '20240315_010000')
        assert context.log_file == os.path.join(str(backup_dirs['logs']), '20240315_010000.log')
        assert context.archives == []
        assert len(context.ledger) == 0
