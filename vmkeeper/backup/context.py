"""
Run context - the state carried through a single backup run.

Holds the run identity and folder layout, the archive descriptors produced by
the archive stage, the verification ledger and the run log.
"""

import os
import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .settings import BackupSettings


logger = logging.getLogger(__name__)

RUN_ID_FORMAT = '%Y%m%d_%H%M%S'
NAME_DELIMITER = '_'


def generate_run_id(now: Optional[datetime] = None) -> str:
    """
    Generate a lexically sortable run ID from the run start time.

    Format: YYYYMMDD_HHMMSS
    """
    return (now or datetime.now()).strftime(RUN_ID_FORMAT)


def safe_vm_name(vm_name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in vm_name
    )


@dataclass(frozen=True)
class ArchiveDescriptor:
    """
    One VM's archive within a run.

    The file name is ``{safe_name}_{vm_id}.{extension}``. VM identifiers never
    contain the delimiter, so the identifier is always the token after the last
    underscore even when the VM name contains underscores itself.
    """
    vm_id: str
    vm_name: str
    run_id: str
    extension: str
    directory: str

    @property
    def folder_name(self) -> str:
        return f"{safe_vm_name(self.vm_name)}{NAME_DELIMITER}{self.vm_id}"

    @property
    def file_name(self) -> str:
        return f"{self.folder_name}.{self.extension}"

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.file_name)

    @property
    def checksum_path(self) -> str:
        return f"{self.path}.txt"


@dataclass(frozen=True)
class ExportedVM:
    """A VM exported into the run's export folder."""
    vm_id: str
    vm_name: str
    path: str


class VerificationStatus(enum.Enum):
    UNVERIFIED = 'unverified'
    VERIFIED = 'verified'
    FAILED = 'failed'


class VerificationLedger:
    """
    Per-archive outcome of remote verification for the current run.

    Keyed by archive file name only. Recording is a monotonic merge:
    FAILED is sticky and is never replaced by a later VERIFIED for the same
    archive (e.g. from another remote).
    """

    def __init__(self):
        self._entries: Dict[str, VerificationStatus] = {}
        self._lock = threading.Lock()

    def record(self, archive_name: str, passed: bool) -> VerificationStatus:
        """
        Merge one verification outcome into the ledger.

        Returns:
            The archive's aggregate status after the merge
        """
        outcome = VerificationStatus.VERIFIED if passed else VerificationStatus.FAILED
        with self._lock:
            current = self._entries.get(archive_name, VerificationStatus.UNVERIFIED)
            if current is not VerificationStatus.FAILED:
                self._entries[archive_name] = outcome
            return self._entries[archive_name]

    def status(self, archive_name: str) -> VerificationStatus:
        with self._lock:
            return self._entries.get(archive_name, VerificationStatus.UNVERIFIED)

    def has_failures(self) -> bool:
        with self._lock:
            return any(s is VerificationStatus.FAILED for s in self._entries.values())

    def failures(self) -> List[str]:
        with self._lock:
            return sorted(name for name, s in self._entries.items() if s is VerificationStatus.FAILED)

    def __len__(self):
        with self._lock:
            return len(self._entries)


class RunLog:
    """
    Log sink for one run.

    Each entry is written as ``{timestamp} - {message}`` to memory, to the
    run's log file (when a path is set) and to the application logger.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.lines: List[str] = []
        self._lock = threading.Lock()

    def open(self, path: str):
        """Start writing to a log file, replaying lines logged before it was known."""
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with self._lock:
            self.path = path
            with open(path, 'a', encoding='utf-8') as f:
                for line in self.lines:
                    f.write(line + '\n')

    def write(self, message: str, level: int = logging.INFO) -> str:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        line = f"{timestamp} - {message}"

        with self._lock:
            self.lines.append(line)
            if self.path:
                try:
                    with open(self.path, 'a', encoding='utf-8') as f:
                        f.write(line + '\n')
                except OSError as e:
                    logger.warning(f"Failed to write run log {self.path}: {e}")

        logger.log(level, message)
        return line

    def text(self) -> str:
        with self._lock:
            return '\n'.join(self.lines)


@dataclass
class RunContext:
    """Identity, folders and accumulated state of one backup run."""
    run_id: str
    export_root: str
    archive_root: str
    log_root: str
    exported: List[ExportedVM] = field(default_factory=list)
    archives: List[ArchiveDescriptor] = field(default_factory=list)
    ledger: VerificationLedger = field(default_factory=VerificationLedger)
    log: RunLog = field(default_factory=RunLog)

    @classmethod
    def create(cls, settings: BackupSettings, now: Optional[datetime] = None) -> 'RunContext':
        return cls(
            run_id=generate_run_id(now),
            export_root=settings.local.export_path,
            archive_root=settings.local.archive_path,
            log_root=settings.local.log_path,
        )

    @property
    def export_dir(self) -> str:
        return os.path.join(self.export_root, self.run_id)

    @property
    def archive_dir(self) -> str:
        return os.path.join(self.archive_root, self.run_id)

    @property
    def log_file(self) -> str:
        return os.path.join(self.log_root, f"{self.run_id}.log")
