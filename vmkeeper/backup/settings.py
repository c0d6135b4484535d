"""
Backup settings - the validated configuration model for a backup run.

The settings document is JSON:

    {
        "vms": [
            {"id": "all", "running_only": true, "skip_local_checksum": false},
            {"id": "<vm guid>", "exclude": true}
        ],
        "applications": {"archiver": "7z", "sync": "rclone", "hash_algorithm": "sha256"},
        "archive": {"password": "enc:...", "extension": "7z", "compression_level": 9},
        "local": {"export_path": "...", "archive_path": "...", "retention": 7},
        "remotes": [{"name": "b2", "path": "backups/vms", "retention": 14}],
        "bandwidth_schedule": [{"start": "18:00", "rate": "2M"}, {"start": "23:00", "rate": "off"}],
        "notification": {"enabled": true, "smtp_server": "...", "recipients": ["..."]},
        "schedule_cron": "0 1 * * *"
    }
"""

import os
import re
import json
import hashlib
from dataclasses import dataclass, field
from datetime import time
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from vmkeeper.utils.crypto import crypto_manager, SecretError


WILDCARD_VM_ID = 'all'
REMOTE_TYPES = ('rclone', 's3')
RATE_UNITS = {'': 1, 'b': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3}


class ConfigurationError(Exception):
    """Raised when the backup settings are missing or malformed."""
    pass


@dataclass(frozen=True)
class VMPolicy:
    """
    Per-VM override flags.

    On the wildcard entry (vm_id == 'all') every flag is a concrete default.
    On a named entry a flag left as None inherits the wildcard default.
    """
    vm_id: str
    exclude: Optional[bool] = None
    skip_local_checksum: Optional[bool] = None
    skip_remote_verification: Optional[bool] = None
    running_only: Optional[bool] = None

    @property
    def is_wildcard(self) -> bool:
        return self.vm_id == WILDCARD_VM_ID


@dataclass(frozen=True)
class PolicySet:
    """Wildcard defaults plus named overrides, keyed by lowercased VM id."""
    defaults: VMPolicy = field(default_factory=lambda: VMPolicy(
        WILDCARD_VM_ID, exclude=False, skip_local_checksum=False,
        skip_remote_verification=False, running_only=False
    ))
    overrides: Dict[str, VMPolicy] = field(default_factory=dict)

    @property
    def running_only(self) -> bool:
        return bool(self.defaults.running_only)

    def _effective(self, vm_id: str, flag: str) -> bool:
        override = self.overrides.get(vm_id.lower())
        if override is not None and getattr(override, flag) is not None:
            return getattr(override, flag)
        return bool(getattr(self.defaults, flag))

    def is_excluded(self, vm_id: str) -> bool:
        return self._effective(vm_id, 'exclude')

    def skips_local_checksum(self, vm_id: str) -> bool:
        return self._effective(vm_id, 'skip_local_checksum')

    def skips_remote_verification(self, vm_id: str) -> bool:
        return self._effective(vm_id, 'skip_remote_verification')

    def _skipped_globally(self, flag: str) -> bool:
        # A global skip only holds when no named entry switches the flag back off
        if not getattr(self.defaults, flag):
            return False
        return not any(getattr(p, flag) is False for p in self.overrides.values())

    @property
    def local_checksum_disabled(self) -> bool:
        return self._skipped_globally('skip_local_checksum')

    @property
    def remote_verification_disabled(self) -> bool:
        return self._skipped_globally('skip_remote_verification')


@dataclass(frozen=True)
class RemoteTarget:
    name: str
    path: str
    retention: int
    type: str = 'rclone'
    bucket: Optional[str] = None
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None


@dataclass(frozen=True)
class LocalTarget:
    export_path: str
    archive_path: str
    retention: int
    log_path: str

    @property
    def reserved_names(self) -> frozenset:
        """Folder names under the archive root that local rotation must never touch."""
        names = {'exported', 'logs'}
        archive_root = os.path.abspath(self.archive_path)
        for path in (self.export_path, self.log_path):
            path = os.path.abspath(path)
            if os.path.dirname(path) == archive_root:
                names.add(os.path.basename(path))
        return frozenset(names)


@dataclass(frozen=True)
class ApplicationPaths:
    powershell: str = 'powershell.exe'
    archiver: str = '7z'
    sync: str = 'rclone'
    hash_algorithm: str = 'sha256'


@dataclass(frozen=True)
class ArchiveOptions:
    password: str
    extension: str = '7z'
    compression_level: int = 9
    encrypt_headers: bool = True


@dataclass(frozen=True)
class BandwidthSchedule:
    """
    Time-of-day throttle for uploads.

    Each entry is (start, rate); a rate applies from its start time until the
    next entry's start, wrapping past midnight. 'off' means unlimited.
    """
    entries: Tuple[Tuple[time, str], ...] = ()

    def rate_at(self, at: time) -> str:
        if not self.entries:
            return 'off'
        active = self.entries[-1][1]
        for start, rate in self.entries:
            if start <= at:
                active = rate
        return active

    def bytes_per_second(self, at: time) -> Optional[int]:
        """Active limit in bytes per second, or None when unlimited."""
        return parse_rate(self.rate_at(at))

    def to_rclone(self) -> Optional[str]:
        """Render as an rclone --bwlimit timetable, e.g. '18:00,2M 23:00,off'."""
        if not self.entries:
            return None
        return ' '.join(f"{start.strftime('%H:%M')},{rate}" for start, rate in self.entries)


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = False
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    recipients: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BackupSettings:
    policies: PolicySet
    local: LocalTarget
    archive: ArchiveOptions
    applications: ApplicationPaths = field(default_factory=ApplicationPaths)
    remotes: Tuple[RemoteTarget, ...] = ()
    bandwidth: BandwidthSchedule = field(default_factory=BandwidthSchedule)
    notification: NotificationSettings = field(default_factory=NotificationSettings)
    schedule_cron: Optional[str] = None


def parse_rate(rate: str) -> Optional[int]:
    """
    Convert an rclone-style rate ('512k', '1.5M', 'off') to bytes per second.

    Raises:
        ConfigurationError: If the rate cannot be parsed
    """
    if rate is None or str(rate).strip().lower() == 'off':
        return None
    match = re.fullmatch(r'(\d+(?:\.\d+)?)\s*([bkmg]?)', str(rate).strip().lower())
    if not match:
        raise ConfigurationError(f"Invalid bandwidth rate: {rate}")
    return int(float(match.group(1)) * RATE_UNITS[match.group(2)])


def load_settings(path: str) -> BackupSettings:
    """
    Load and validate backup settings from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Backup settings file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Backup settings file is not valid JSON ({path}): {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read backup settings file {path}: {e}") from e

    return parse_settings(document)


def parse_settings(document: Dict[str, Any]) -> BackupSettings:
    """
    Validate a settings document into BackupSettings.

    Raises:
        ConfigurationError: On any missing or invalid value
    """
    if not isinstance(document, dict):
        raise ConfigurationError("Backup settings must be a JSON object")

    try:
        return BackupSettings(
            policies=_parse_policies(document.get('vms', [])),
            local=_parse_local(_require(document, 'local')),
            archive=_parse_archive(_require(document, 'archive')),
            applications=_parse_applications(document.get('applications', {})),
            remotes=_parse_remotes(document.get('remotes', [])),
            bandwidth=_parse_bandwidth(document.get('bandwidth_schedule', [])),
            notification=_parse_notification(document.get('notification', {})),
            schedule_cron=_parse_cron(document.get('schedule_cron')),
        )
    except SecretError as e:
        raise ConfigurationError(str(e)) from e
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid backup settings: {e}") from e


def _require(section: Dict[str, Any], key: str, where: str = 'settings') -> Any:
    if key not in section or section[key] in (None, ''):
        raise ConfigurationError(f"Missing required key '{key}' in {where}")
    return section[key]


def _text(section: Dict[str, Any], key: str, default: str, where: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise ConfigurationError(f"'{key}' in {where} must be a string, got {value!r}")
    return value


def _flag(entry: Dict[str, Any], key: str, default: Optional[bool]) -> Optional[bool]:
    value = entry.get(key, default)
    if value is not None and not isinstance(value, bool):
        raise ConfigurationError(f"VM policy flag '{key}' must be true or false")
    return value


def _retention(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"Retention for {where} must be a non-negative integer, got {value!r}")
    return value


def _parse_policies(entries: List[Dict[str, Any]]) -> PolicySet:
    defaults = None
    overrides = {}

    for entry in entries:
        vm_id = str(_require(entry, 'id', 'vms entry')).strip()

        if vm_id.lower() == WILDCARD_VM_ID:
            if defaults is not None:
                raise ConfigurationError("Only one 'all' VM policy entry is allowed")
            defaults = VMPolicy(
                WILDCARD_VM_ID,
                exclude=_flag(entry, 'exclude', False),
                skip_local_checksum=_flag(entry, 'skip_local_checksum', False),
                skip_remote_verification=_flag(entry, 'skip_remote_verification', False),
                running_only=_flag(entry, 'running_only', False),
            )
        else:
            if 'running_only' in entry:
                raise ConfigurationError(f"running_only is only allowed on the 'all' entry (found on {vm_id})")
            overrides[vm_id.lower()] = VMPolicy(
                vm_id,
                exclude=_flag(entry, 'exclude', None),
                skip_local_checksum=_flag(entry, 'skip_local_checksum', None),
                skip_remote_verification=_flag(entry, 'skip_remote_verification', None),
            )

    if defaults is None:
        return PolicySet(overrides=overrides)
    return PolicySet(defaults=defaults, overrides=overrides)


def _parse_local(section: Dict[str, Any]) -> LocalTarget:
    export_path = _require(section, 'export_path', 'local')
    archive_path = _require(section, 'archive_path', 'local')
    log_path = section.get('log_path') or os.path.join(archive_path, 'logs')

    # The export root is removed after every run
    export_root = os.path.abspath(export_path)
    for key, path in (('archive_path', archive_path), ('log_path', log_path)):
        path = os.path.abspath(path)
        if os.path.commonpath([export_root, path]) == export_root:
            raise ConfigurationError(
                f"local export_path {export_path} must not be or contain {key} {path}"
            )

    return LocalTarget(
        export_path=export_path,
        archive_path=archive_path,
        retention=_retention(section.get('retention', 0), 'local target'),
        log_path=log_path,
    )


def _parse_archive(section: Dict[str, Any]) -> ArchiveOptions:
    level = section.get('compression_level', 9)
    if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 9:
        raise ConfigurationError(f"compression_level must be between 0 and 9, got {level!r}")

    return ArchiveOptions(
        password=crypto_manager.resolve_secret(_require(section, 'password', 'archive')),
        extension=_text(section, 'extension', '7z', 'archive').lstrip('.'),
        compression_level=level,
        encrypt_headers=bool(section.get('encrypt_headers', True)),
    )


def _parse_applications(section: Dict[str, Any]) -> ApplicationPaths:
    defaults = ApplicationPaths()
    algorithm = _text(section, 'hash_algorithm', defaults.hash_algorithm, 'applications').lower()
    if algorithm not in hashlib.algorithms_available:
        raise ConfigurationError(f"Unsupported hash algorithm: {algorithm}")

    return ApplicationPaths(
        powershell=_text(section, 'powershell', defaults.powershell, 'applications'),
        archiver=_text(section, 'archiver', defaults.archiver, 'applications'),
        sync=_text(section, 'sync', defaults.sync, 'applications'),
        hash_algorithm=algorithm,
    )


def _parse_remotes(entries: List[Dict[str, Any]]) -> Tuple[RemoteTarget, ...]:
    remotes = tuple(_parse_remote(entry) for entry in entries)

    seen = set()
    for remote in remotes:
        location = (remote.type, remote.name, remote.bucket, remote.path)
        if location in seen:
            raise ConfigurationError(f"Remote {remote.name}:{remote.path} is configured more than once")
        seen.add(location)

    return remotes


def _parse_remote(entry: Dict[str, Any]) -> RemoteTarget:
    name = _require(entry, 'name', 'remotes entry')
    remote_type = entry.get('type', 'rclone')
    if remote_type not in REMOTE_TYPES:
        raise ConfigurationError(f"Unknown remote type for {name}: {remote_type}. Valid options: {list(REMOTE_TYPES)}")

    if remote_type == 's3':
        _require(entry, 'bucket', f"remote {name}")

    return RemoteTarget(
        name=name,
        path=str(entry.get('path', '')).strip('/'),
        retention=_retention(entry.get('retention', 0), f"remote {name}"),
        type=remote_type,
        bucket=entry.get('bucket'),
        region=entry.get('region'),
        access_key=crypto_manager.resolve_secret(entry.get('access_key')),
        secret_key=crypto_manager.resolve_secret(entry.get('secret_key')),
    )


def _parse_bandwidth(entries: List[Dict[str, Any]]) -> BandwidthSchedule:
    parsed = []
    for entry in entries:
        _require(entry, 'start', 'bandwidth_schedule entry')
        start = _text(entry, 'start', '', 'bandwidth_schedule entry')
        rate = str(_require(entry, 'rate', 'bandwidth_schedule entry'))
        try:
            hours, minutes = (int(part) for part in start.split(':'))
            start_time = time(hours, minutes)
        except ValueError as e:
            raise ConfigurationError(f"Invalid bandwidth window start: {start}") from e
        parse_rate(rate)
        parsed.append((start_time, rate))

    return BandwidthSchedule(tuple(sorted(parsed, key=lambda item: item[0])))


def _parse_cron(expression: Optional[str]) -> Optional[str]:
    if expression is None:
        return None
    if not isinstance(expression, str):
        raise ConfigurationError(f"schedule_cron must be a crontab string, got {expression!r}")

    try:
        CronTrigger.from_crontab(expression, timezone='UTC')
    except ValueError as e:
        raise ConfigurationError(f"Invalid schedule_cron '{expression}': {e}") from e
    return expression


def _parse_notification(section: Dict[str, Any]) -> NotificationSettings:
    enabled = bool(section.get('enabled', False))
    if not enabled:
        return NotificationSettings()

    recipients = section.get('recipients') or []
    if isinstance(recipients, str):
        recipients = [recipients]
    if not recipients:
        raise ConfigurationError("Notification is enabled but no recipients are configured")

    return NotificationSettings(
        enabled=True,
        smtp_server=_require(section, 'smtp_server', 'notification'),
        smtp_port=int(section.get('smtp_port', 587)),
        use_tls=bool(section.get('use_tls', True)),
        username=section.get('username'),
        password=crypto_manager.resolve_secret(section.get('password')),
        sender=_require(section, 'sender', 'notification'),
        recipients=tuple(recipients),
    )
