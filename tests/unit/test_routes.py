"""
Unit tests for the run history API (vmkeeper/routes/runs_routes.py).
"""

from datetime import datetime
from unittest.mock import patch

import pytest

from vmkeeper.models import ArchiveRecord, BackupRun


@pytest.fixture
def runs(db):
    """Three finished runs, the newest with two archives."""
    records = [
        BackupRun(run_id='20240313_010000', status='success', started_at=datetime(2024, 3, 13, 1, 0),
                  completed_at=datetime(2024, 3, 13, 2, 0), vm_count=2, archive_count=2,
                  rotation_performed=True, logs='...'),
        BackupRun(run_id='20240314_010000', status='failed', started_at=datetime(2024, 3, 14, 1, 0),
                  completed_at=datetime(2024, 3, 14, 1, 5), error_message='Export of VM x failed'),
        BackupRun(run_id='20240315_010000', status='success', started_at=datetime(2024, 3, 15, 1, 0),
                  completed_at=datetime(2024, 3, 15, 2, 0), vm_count=2, archive_count=2,
                  logs='2024-03-15 01:00:00 - Starting backup run: 20240315_010000'),
    ]
    db.session.add_all(records)
    db.session.add_all([
        ArchiveRecord(run=records[2], file_name='web01_a.7z', vm_id='a', vm_name='web01',
                      size_bytes=1024, checksum='SHA256: abc', verification='verified'),
        ArchiveRecord(run=records[2], file_name='db_b.7z', vm_id='b', vm_name='db',
                      size_bytes=2048, checksum=None, verification='failed'),
    ])
    db.session.commit()
    return records


class TestListRuns:

    def test_newest_first(self, client, runs):
        response = client.get('/api/runs/')

        assert response.status_code == 200
        data = response.get_json()
        assert data['total'] == 3
        assert [r['run_id'] for r in data['records']] == [
            '20240315_010000', '20240314_010000', '20240313_010000'
        ]

    def test_status_filter(self, client, runs):
        data = client.get('/api/runs/?status=failed').get_json()

        assert data['total'] == 1
        assert data['records'][0]['error_message'] == 'Export of VM x failed'

    def test_invalid_status_filter(self, client, runs):
        assert client.get('/api/runs/?status=bogus').status_code == 400

    def test_pagination(self, client, runs):
        data = client.get('/api/runs/?limit=1&offset=1').get_json()

        assert data['limit'] == 1
        assert [r['run_id'] for r in data['records']] == ['20240314_010000']

    def test_empty(self, client, db):
        assert client.get('/api/runs/').get_json()['records'] == []


class TestRunDetail:

    def test_detail_includes_archives_and_logs(self, client, runs):
        data = client.get('/api/runs/20240315_010000').get_json()

        assert data['rotation_performed'] is False
        assert {a['file_name']: a['verification'] for a in data['archives']} == {
            'web01_a.7z': 'verified',
            'db_b.7z': 'failed',
        }
        assert data['logs'].startswith('2024-03-15 01:00:00 - ')

    def test_unknown_run(self, client, runs):
        assert client.get('/api/runs/20990101_000000').status_code == 404


class TestTriggerAndSchedule:

    @patch('vmkeeper.scheduler.trigger_backup_now', return_value='manual_1710464400')
    def test_trigger(self, mock_trigger, client, db):
        response = client.post('/api/runs/trigger')

        assert response.status_code == 202
        assert response.get_json()['job_id'] == 'manual_1710464400'

    @patch('vmkeeper.scheduler.trigger_backup_now', side_effect=RuntimeError('Scheduler not initialized'))
    def test_trigger_without_scheduler(self, mock_trigger, client, db):
        response = client.post('/api/runs/trigger')

        assert response.status_code == 409
        assert 'not initialized' in response.get_json()['error']

    def test_schedule_without_scheduler(self, client, db):
        assert client.get('/api/runs/schedule').get_json() == {'jobs': []}


def test_health(client):
    assert client.get('/health').get_json() == {'status': 'healthy'}
