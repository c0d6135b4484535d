"""
Backup executor - orchestrates one complete backup run.

Workflow:
1. Create BackupRun record (status: running) and the run log
2. Select VMs (running-only policy, exclusions); stop early if nothing to do
3. Export each VM into {export_root}/{run_id}/
4. Archive each export into {archive_root}/{run_id}/ (encrypted 7z)
5. Write a checksum file beside each archive
6. Upload every archive to every remote
7. Verify every archive on every remote into the verification ledger
8. Rotate old backups remotely and locally, only if no verification failed
9. Remove the export root, update BackupRun, send the notification

Stages run strictly one after another and every item within a stage is
processed sequentially. Export and archive failures abort the run; checksum,
upload and verification failures are per item; rotation and notification
failures are only logged.
"""

import os
import shutil
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from vmkeeper import db
from vmkeeper.models import BackupRun, ArchiveRecord
from .context import RunContext, ArchiveDescriptor, ExportedVM, safe_vm_name
from .selection import select_virtual_machines
from .settings import BackupSettings, RemoteTarget, load_settings
from .hypervisor import Hypervisor, HyperVHypervisor, VirtualMachine
from .compression import Archiver, SevenZipArchiver, get_archive_size
from .checksum import write_checksum_file, format_checksum_line, ChecksumError
from .storage import SyncTool, StorageError, create_sync
from .retention import RetentionManager
from .notifier import EmailNotifier, NotificationError


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one run.

    Collaborators default to the concrete tool handlers built from the
    settings and can be replaced (e.g. with fakes in tests).
    """

    def __init__(
        self,
        settings: BackupSettings,
        hypervisor: Optional[Hypervisor] = None,
        archiver: Optional[Archiver] = None,
        sync_factory: Optional[Callable[[RemoteTarget], SyncTool]] = None,
        notifier: Optional[EmailNotifier] = None,
        now: Optional[datetime] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Validated backup settings
            hypervisor: VM enumeration/export handler
            archiver: Archive handler
            sync_factory: Creates the sync handler for a remote target
            notifier: Run summary notifier
            now: Run start time (defaults to the current time)
        """
        self.settings = settings
        self.context = RunContext.create(settings, now)

        apps = settings.applications
        self.hypervisor = hypervisor or HyperVHypervisor(apps.powershell)
        self.archiver = archiver or SevenZipArchiver(apps.archiver, settings.archive.encrypt_headers)
        self.sync_factory = sync_factory or (
            lambda remote: create_sync(remote, apps, on_output=self._tool_output)
        )
        self.notifier = notifier or EmailNotifier(settings.notification)

        self.run_record = None
        self.archive_records: Dict[str, ArchiveRecord] = {}
        self.nothing_to_do = False
        self._sync_tools: Dict[RemoteTarget, SyncTool] = {}

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def execute(self) -> BackupRun:
        """
        Execute the backup run.

        Returns:
            BackupRun record with execution results
        """
        self.run_record = BackupRun(
            run_id=self.run_id,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()

        self._log(f"Starting backup run: {self.run_id}")

        try:
            self.context.log.open(self.context.log_file)
            self._execute_workflow()

            self.run_record.status = 'nothing_to_do' if self.nothing_to_do else 'success'
            self._log("Backup run completed" + (" (nothing to do)" if self.nothing_to_do else " successfully"))

        except Exception as e:
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            self._log(f"Backup run failed: {e}", logging.ERROR)

        finally:
            self._cleanup()
            self.run_record.completed_at = datetime.utcnow()
            self._notify()
            self._flush_logs_to_db()

        return self.run_record

    def _execute_workflow(self):
        """Execute the main backup workflow stages."""
        vms = self._selection_stage()
        if self.nothing_to_do:
            return

        self._export_stage(vms)
        self._flush_logs_to_db()

        self._archive_stage()
        self._flush_logs_to_db()

        self._checksum_stage()
        self._flush_logs_to_db()

        self._upload_stage()
        self._flush_logs_to_db()

        self._verify_stage()
        self._flush_logs_to_db()

        self._rotation_stage()

    def _selection_stage(self) -> List[VirtualMachine]:
        live_vms = self.hypervisor.list_vms()
        running = sum(1 for vm in live_vms if vm.is_running)
        self._log(f"Hypervisor reports {len(live_vms)} VMs ({running} running)")

        selection = select_virtual_machines(self.settings.policies, live_vms)
        if selection.nothing_to_do:
            self.nothing_to_do = True
            if self.settings.policies.running_only and not running:
                self._log("Nothing to do: no running VMs and only running VMs are backed up")
            else:
                self._log("Nothing to do: every eligible VM is excluded")
            return []

        self.run_record.vm_count = len(selection.vms)
        self._log(f"Selected {len(selection.vms)} VMs: {', '.join(vm.name for vm in selection.vms)}")
        return selection.vms

    def _export_stage(self, vms: List[VirtualMachine]):
        """Export every selected VM. Any failure aborts the run."""
        os.makedirs(self.context.export_dir, exist_ok=True)

        for vm in vms:
            dest = os.path.join(self.context.export_dir, f"{safe_vm_name(vm.name)}_{vm.id}")
            self._log(f"Exporting VM {vm.name} ({vm.id}) to {dest}")
            self.hypervisor.export_vm(vm.id, dest)
            self.context.exported.append(ExportedVM(vm.id, vm.name, dest))

        self._log(f"Exported {len(self.context.exported)} VMs")

    def _archive_stage(self):
        """Compress every export into one encrypted archive. Any failure aborts the run."""
        options = self.settings.archive

        for exported in self.context.exported:
            archive = ArchiveDescriptor(
                vm_id=exported.vm_id,
                vm_name=exported.vm_name,
                run_id=self.run_id,
                extension=options.extension,
                directory=self.context.archive_dir
            )
            self._log(f"Creating archive {archive.file_name}")
            self.archiver.compress(exported.path, archive.path, options.password, options.compression_level)

            size = get_archive_size(archive.path)
            self.context.archives.append(archive)
            self._record_archive(archive, size)
            self._log(f"Archive created: {archive.file_name} ({size / 1024 / 1024:.2f} MB)")

        self.run_record.archive_count = len(self.context.archives)

    def _checksum_stage(self):
        """Write a checksum file per archive, honoring skip flags."""
        policies = self.settings.policies
        algorithm = self.settings.applications.hash_algorithm

        if policies.local_checksum_disabled:
            self._log("Local checksums disabled for all VMs, skipping")
            return

        for archive in self.context.archives:
            if policies.skips_local_checksum(archive.vm_id):
                self._log(f"Skipping checksum for {archive.file_name} (VM {archive.vm_id} override)")
                continue

            try:
                hex_digest = write_checksum_file(archive.path, algorithm, archive.checksum_path)
            except ChecksumError as e:
                self._log(f"Checksum failed for {archive.file_name}: {e}", logging.ERROR)
                continue

            self.archive_records[archive.file_name].checksum = f"{algorithm.upper()}: {hex_digest}"
            self._log(format_checksum_line(algorithm, hex_digest, archive.file_name))

    def _upload_stage(self):
        """Copy every archive to every remote. Failures are logged only."""
        remotes = self.settings.remotes
        if not remotes:
            self._log("No remote targets configured, skipping upload")
            return

        uploaded = 0
        for archive in self.context.archives:
            for remote in remotes:
                try:
                    sync = self._sync(remote)
                    self._log(f"Uploading {archive.file_name} to {sync.uri(self.run_id)}")
                    sync.copy(archive.path, self.run_id, self.settings.bandwidth)
                    uploaded += 1
                except StorageError as e:
                    self._log(f"Upload of {archive.file_name} to {remote.name} failed: {e}", logging.ERROR)

        self._log(f"Uploads finished: {uploaded} of {len(self.context.archives) * len(remotes)} succeeded")

    def _verify_stage(self):
        """Compare every archive with every remote copy and record the outcome."""
        policies = self.settings.policies
        remotes = self.settings.remotes

        if not remotes:
            self._log("No remote targets configured, skipping verification")
            return
        if policies.remote_verification_disabled:
            self._log("Remote verification disabled for all VMs, skipping")
            return

        ledger = self.context.ledger
        for archive in self.context.archives:
            if policies.skips_remote_verification(archive.vm_id):
                self._log(f"Skipping verification for {archive.file_name} (VM {archive.vm_id} override)")
                continue

            for remote in remotes:
                try:
                    sync = self._sync(remote)
                    passed = sync.compare(archive.path, self.run_id)
                except StorageError as e:
                    self._log(f"Verification of {archive.file_name} on {remote.name} could not run: {e}", logging.ERROR)
                    passed = False

                ledger.record(archive.file_name, passed)
                if passed:
                    self._log(f"Verified {archive.file_name} on {remote.name}")
                else:
                    self._log(f"Verification FAILED for {archive.file_name} on {remote.name}", logging.ERROR)

            self.archive_records[archive.file_name].verification = ledger.status(archive.file_name).value

        failures = ledger.failures()
        self._log(f"Verification finished: {len(ledger) - len(failures)} verified, {len(failures)} failed")

    def _rotation_stage(self):
        manager = RetentionManager(self.settings, self._sync)
        summary = manager.enforce(self.context)
        self.run_record.rotation_performed = not summary['skipped']

    def _sync(self, remote: RemoteTarget) -> SyncTool:
        """Sync handler for a remote target, created once per run."""
        if remote not in self._sync_tools:
            self._sync_tools[remote] = self.sync_factory(remote)
        return self._sync_tools[remote]

    def _record_archive(self, archive: ArchiveDescriptor, size: int):
        record = ArchiveRecord(
            run=self.run_record,
            file_name=archive.file_name,
            vm_id=archive.vm_id,
            vm_name=archive.vm_name,
            size_bytes=size
        )
        db.session.add(record)
        self.archive_records[archive.file_name] = record

    def _cleanup(self):
        """Remove the export root; exported VM data is never retained."""
        export_root = self.context.export_root
        if export_root and os.path.exists(export_root):
            try:
                shutil.rmtree(export_root)
                self._log(f"Removed export folder {export_root}")
            except OSError as e:
                self._log(f"Warning: Failed to remove export folder {export_root}: {e}", logging.WARNING)

    def _notify(self):
        """Send the run log to the configured recipients. Failures are only logged."""
        if not self.notifier.enabled:
            return

        subject = f"VM backup {self.run_id}: {self.run_record.status}"
        self._log(f"Sending notification: {subject}")

        try:
            self.notifier.send(subject, self.context.log.text())
        except NotificationError as e:
            self._log(f"Warning: {e}", logging.WARNING)

    def _tool_output(self, line: str):
        self.context.log.write(line, logging.DEBUG)

    def _log(self, message: str, level: int = logging.INFO):
        """Add a timestamped message to the run log."""
        self.context.log.write(message, level)

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record:
            self.run_record.logs = self.context.log.text()
            db.session.commit()


def execute_backup(config_file: str, **collaborators) -> BackupRun:
    """
    Load backup settings and execute one backup run.

    Args:
        config_file: Path to the backup settings JSON document
        collaborators: Optional collaborator overrides passed to BackupExecutor

    Returns:
        BackupRun record with execution results

    Raises:
        ConfigurationError: If the settings are missing or invalid
    """
    settings = load_settings(config_file)
    executor = BackupExecutor(settings, **collaborators)
    return executor.execute()
