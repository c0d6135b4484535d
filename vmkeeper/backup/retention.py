"""
Retention policy enforcement for backups.

Keeps the newest N backup generations on every remote target and in the local
archive root. Entry names start with the run ID, so sorting names descending
orders them newest first.

Rotation is gated on the run's verification ledger: if any archive failed
verification against any remote, nothing is deleted anywhere.
"""

import logging
from typing import Any, Callable, Dict, List

from .context import RunContext
from .settings import BackupSettings, RemoteTarget
from .storage import LocalStorage, StorageError, SyncTool


def select_expired(names: List[str], keep: int) -> List[str]:
    """
    Return the entries beyond the newest ``keep`` ones.

    A retention of 0 keeps everything. Fewer entries than ``keep`` means
    nothing expires.
    """
    if keep <= 0:
        return []
    return sorted(names, reverse=True)[keep:]


class RetentionManager:
    """
    Enforces remote and local retention counts for one run.
    """

    def __init__(self, settings: BackupSettings, sync_factory: Callable[[RemoteTarget], SyncTool]):
        """
        Initialize retention manager.

        Args:
            settings: Backup settings with remote and local retention counts
            sync_factory: Creates the sync handler for a remote target
        """
        self.settings = settings
        self.sync_factory = sync_factory

    def enforce(self, context: RunContext) -> Dict[str, Any]:
        """
        Rotate old backups if the run's verification ledger allows it.

        Returns:
            Dict with summary of rotation:
            {
                'skipped': bool,
                'remote_deleted': int,
                'local_deleted': int,
                'errors': List[str]
            }
        """
        log = context.log.write
        summary = {
            'skipped': False,
            'remote_deleted': 0,
            'local_deleted': 0,
            'errors': []
        }

        if context.ledger.has_failures():
            failed = context.ledger.failures()
            summary['skipped'] = True
            log(
                f"Rotation skipped: verification failed for {len(failed)} archive(s) ({', '.join(failed)}). "
                f"No backups will be deleted this run.",
                logging.WARNING
            )
            return summary

        for remote in self.settings.remotes:
            summary['remote_deleted'] += self._rotate_remote(remote, context, summary['errors'])

        summary['local_deleted'] = self._rotate_local(context, summary['errors'])

        log(
            f"Rotation complete. Remote deleted: {summary['remote_deleted']}, "
            f"Local deleted: {summary['local_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def _rotate_remote(self, remote: RemoteTarget, context: RunContext, errors: List[str]) -> int:
        log = context.log.write

        if remote.retention == 0:
            log(f"Remote {remote.name}: retention not limited, skipping rotation")
            return 0

        try:
            sync = self.sync_factory(remote)
            entries = sync.list()
        except StorageError as e:
            error_msg = f"Failed to list remote {remote.name}: {e}"
            log(error_msg, logging.ERROR)
            errors.append(error_msg)
            return 0

        expired = select_expired(entries, remote.retention)
        log(f"Remote {remote.name}: {len(entries)} backups, keeping {remote.retention}, deleting {len(expired)}")

        deleted_count = 0
        for name in expired:
            try:
                sync.purge(name)
                deleted_count += 1
                log(f"Deleted remote backup: {sync.uri(name)}")
            except StorageError as e:
                error_msg = f"Failed to delete remote backup {sync.uri(name)}: {e}"
                log(error_msg, logging.ERROR)
                errors.append(error_msg)

        return deleted_count

    def _rotate_local(self, context: RunContext, errors: List[str]) -> int:
        log = context.log.write
        local = self.settings.local

        if local.retention == 0:
            log("Local retention not limited, skipping rotation")
            return 0

        local_storage = LocalStorage(local.archive_path, reserved=local.reserved_names)

        try:
            entries = local_storage.list_entries()
        except StorageError as e:
            error_msg = f"Failed to list local archives: {e}"
            log(error_msg, logging.ERROR)
            errors.append(error_msg)
            return 0

        expired = select_expired(entries, local.retention)
        log(f"Local: {len(entries)} backups, keeping {local.retention}, deleting {len(expired)}")

        deleted_count = 0
        for name in expired:
            try:
                local_storage.delete(name)
                deleted_count += 1
                log(f"Deleted local backup: {name}")
            except StorageError as e:
                error_msg = f"Failed to delete local backup {name}: {e}"
                log(error_msg, logging.ERROR)
                errors.append(error_msg)

        return deleted_count
