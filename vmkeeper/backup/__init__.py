"""
Backup module for vmkeeper.

This module handles the backup pipeline including:
- VM selection and export (Hyper-V)
- Encrypted archiving (7-Zip) and checksums
- Upload and verification on remote targets (rclone, S3)
- Retention rotation gated on verification
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .settings import BackupSettings, ConfigurationError, load_settings
from .context import RunContext, ArchiveDescriptor, VerificationLedger, VerificationStatus
from .hypervisor import HyperVHypervisor
from .compression import SevenZipArchiver
from .storage import RcloneSync, S3Sync, LocalStorage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'BackupSettings',
    'ConfigurationError',
    'load_settings',
    'RunContext',
    'ArchiveDescriptor',
    'VerificationLedger',
    'VerificationStatus',
    'HyperVHypervisor',
    'SevenZipArchiver',
    'RcloneSync',
    'S3Sync',
    'LocalStorage',
    'RetentionManager'
]
