"""
Shared pytest fixtures for vmkeeper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup settings built on temporary directories
- Fake collaborators (hypervisor, archiver, sync tool, notifier)
- Mock fixtures for external services (S3)
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from vmkeeper import create_app, db as _db
from vmkeeper.backup.hypervisor import VirtualMachine
from vmkeeper.backup.settings import parse_settings
from vmkeeper.utils.crypto import CryptoManager
from tests.fakes import FakeArchiver, FakeHypervisor, FakeNotifier, FakeRemoteStore


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing', overrides={
        'LOG_DIR': str(tmp_path / 'app_logs'),
        'BACKUP_CONFIG_FILE': str(tmp_path / 'backup.json'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def crypto_manager_initialized():
    """
    Create and initialize a CryptoManager instance.

    Passphrase: test_passphrase_123
    """
    cm = CryptoManager()
    salt = cm.initialize('test_passphrase_123')
    return cm, salt


@pytest.fixture
def backup_dirs(tmp_path):
    """Export, archive and log roots laid out like a default installation."""
    archive_root = tmp_path / 'backups'
    dirs = {
        'export': archive_root / 'exported',
        'archive': archive_root,
        'logs': archive_root / 'logs',
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    return dirs


@pytest.fixture
def settings_document(backup_dirs):
    """A valid settings document with two rclone remotes and no VM overrides."""
    return {
        'vms': [
            {'id': 'all', 'running_only': False}
        ],
        'applications': {'archiver': '7z', 'sync': 'rclone', 'hash_algorithm': 'sha256'},
        'archive': {'password': 'archive-secret', 'extension': '7z', 'compression_level': 9},
        'local': {
            'export_path': str(backup_dirs['export']),
            'archive_path': str(backup_dirs['archive']),
            'log_path': str(backup_dirs['logs']),
            'retention': 3
        },
        'remotes': [
            {'name': 'offsite', 'path': 'vm-backups', 'retention': 2},
            {'name': 'nas', 'path': 'backup/vms', 'retention': 5}
        ],
        'bandwidth_schedule': [
            {'start': '18:00', 'rate': '2M'},
            {'start': '23:00', 'rate': 'off'}
        ],
        'notification': {'enabled': False}
    }


@pytest.fixture
def make_settings(settings_document):
    """
    Build BackupSettings from the default document.

    Top-level keys passed as keyword arguments replace the document's values.
    """
    def _make(**overrides):
        document = dict(settings_document)
        document.update(overrides)
        return parse_settings(document)
    return _make


@pytest.fixture
def settings_file(tmp_path, settings_document):
    """The default settings document written to disk."""
    path = tmp_path / 'backup.json'
    path.write_text(json.dumps(settings_document))
    return path


@pytest.fixture
def three_vms():
    return [
        VirtualMachine(id='1f0c3c1e-0001-4c1a-9a11-aaaaaaaaaaaa', name='web01', state='Running'),
        VirtualMachine(id='1f0c3c1e-0002-4c1a-9a11-bbbbbbbbbbbb', name='db_primary', state='Running'),
        VirtualMachine(id='1f0c3c1e-0003-4c1a-9a11-cccccccccccc', name='build agent', state='Off'),
    ]


@pytest.fixture
def fake_hypervisor(three_vms):
    return FakeHypervisor(three_vms)


@pytest.fixture
def fake_archiver():
    return FakeArchiver()


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('vmkeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
