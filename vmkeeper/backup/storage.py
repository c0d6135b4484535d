"""
Storage handlers for backup archives.

Supports:
- RcloneSync: Copy/list/check/purge on any rclone remote
- S3Sync: The same operations directly against an S3 bucket with boto3
- LocalStorage: The local archive root

Remote layout for both sync handlers: {remote path}/{run_id}/{archive}
"""

import os
import json
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError

from .checksum import compute_digest, ChecksumError
from .settings import ApplicationPaths, BandwidthSchedule, RemoteTarget
from .tools import run_command, ToolError


logger = logging.getLogger(__name__)

# rclone exit code for "directory not found"
RCLONE_DIR_NOT_FOUND = 3


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class SyncTool:
    """Interface for remote sync handlers bound to one remote target."""

    def __init__(self, remote: RemoteTarget):
        self.remote = remote

    def uri(self, *parts: str) -> str:
        raise NotImplementedError

    def copy(self, local_path: str, run_id: str, bandwidth: Optional[BandwidthSchedule] = None):
        raise NotImplementedError

    def list(self) -> List[str]:
        raise NotImplementedError

    def compare(self, local_path: str, run_id: str) -> bool:
        raise NotImplementedError

    def purge(self, entry_name: str):
        raise NotImplementedError

    def _join(self, *parts: str) -> str:
        return '/'.join(p.strip('/') for p in (self.remote.path, *parts) if p and p.strip('/'))


class RcloneSync(SyncTool):
    """
    Handler for rclone remotes.

    The remote target's name is the rclone remote name, so destinations look
    like ``{remote_name}:{remote_path}/{run_id}``.
    """

    def __init__(self, remote: RemoteTarget, executable: str = 'rclone',
                 on_output: Optional[Callable[[str], None]] = None):
        """
        Initialize rclone handler.

        Args:
            remote: Remote target configuration
            executable: Path to the rclone binary
            on_output: Optional callback receiving rclone progress lines
        """
        super().__init__(remote)
        self.executable = executable
        self.on_output = on_output

    def uri(self, *parts: str) -> str:
        return f"{self.remote.name}:{self._join(*parts)}"

    def _run(self, args: List[str], stream: bool = False):
        try:
            return run_command([self.executable, *args], on_line=self.on_output if stream else None)
        except ToolError as e:
            raise StorageError(str(e)) from e

    def copy(self, local_path: str, run_id: str, bandwidth: Optional[BandwidthSchedule] = None):
        """
        Copy a local archive into the run folder on the remote.

        Raises:
            StorageError: If rclone copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        args = ['copy', local_path, self.uri(run_id), '-v', '--stats-one-line', '--stats', '1m']
        timetable = bandwidth.to_rclone() if bandwidth else None
        if timetable:
            args.extend(['--bwlimit', timetable])

        result = self._run(args, stream=True)
        if not result.ok:
            raise StorageError(f"rclone copy to {self.uri(run_id)} failed (exit {result.returncode}): {result.summary()}")

    def list(self) -> List[str]:
        """
        List entry names directly under the remote's base path.

        Raises:
            StorageError: If listing fails
        """
        result = self._run(['lsjson', self.uri()])
        if result.returncode == RCLONE_DIR_NOT_FOUND:
            return []
        if not result.ok:
            raise StorageError(f"rclone lsjson {self.uri()} failed (exit {result.returncode}): {result.summary()}")

        try:
            return [entry['Name'] for entry in json.loads(result.stdout or '[]')]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise StorageError(f"Unexpected rclone lsjson output: {e}") from e

    def compare(self, local_path: str, run_id: str) -> bool:
        """
        Check the local archive against its remote copy.

        Returns:
            True if rclone check reports no differences

        Raises:
            StorageError: If rclone cannot be started
        """
        result = self._run(['check', local_path, self.uri(run_id), '--one-way'])
        if not result.ok:
            logger.info(f"rclone check {self.uri(run_id)} exit {result.returncode}: {result.summary()}")
        return result.ok

    def purge(self, entry_name: str):
        """
        Recursively delete an entry under the remote's base path.

        Raises:
            StorageError: If rclone purge fails
        """
        result = self._run(['purge', self.uri(entry_name)])
        if not result.ok:
            raise StorageError(f"rclone purge {self.uri(entry_name)} failed (exit {result.returncode}): {result.summary()}")


class S3Sync(SyncTool):
    """
    Handler for S3 remotes.

    Objects are stored under {path}/{run_id}/{filename} with the archive's
    SHA-256 in the object metadata, which compare() checks along with size.
    """

    METADATA_DIGEST = 'sha256'

    def __init__(self, remote: RemoteTarget):
        """
        Initialize S3 handler.

        Args:
            remote: Remote target with bucket, region and optional credentials
        """
        super().__init__(remote)
        self.bucket_name = remote.bucket

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=remote.access_key,
                aws_secret_access_key=remote.secret_key,
                region_name=remote.region or 'us-east-1'
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def uri(self, *parts: str) -> str:
        return f"s3://{self.bucket_name}/{self._join(*parts)}"

    def _key(self, run_id: str, local_path: str) -> str:
        return self._join(run_id, os.path.basename(local_path))

    def _prefix(self, *parts: str) -> str:
        prefix = self._join(*parts)
        return f"{prefix}/" if prefix else ''

    def copy(self, local_path: str, run_id: str, bandwidth: Optional[BandwidthSchedule] = None):
        """
        Upload a local archive into the run folder of the bucket.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        limit = bandwidth.bytes_per_second(datetime.now().time()) if bandwidth else None
        config = TransferConfig(max_bandwidth=limit) if limit else TransferConfig()

        try:
            digest = compute_digest(local_path, self.METADATA_DIGEST)
            self.s3_client.upload_file(
                local_path,
                self.bucket_name,
                self._key(run_id, local_path),
                ExtraArgs={'Metadata': {self.METADATA_DIGEST: digest}},
                Config=config
            )
        except ChecksumError as e:
            raise StorageError(f"Failed to hash {local_path} for upload: {e}") from e
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}") from e
        except (BotoCoreError, S3UploadFailedError) as e:
            raise StorageError(f"S3 upload failed: {e}") from e

    def list(self) -> List[str]:
        """
        List entry names (run folders and loose objects) under the base path.

        Raises:
            StorageError: If listing fails
        """
        prefix = self._prefix()
        names = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for common in page.get('CommonPrefixes', []):
                    names.append(common['Prefix'][len(prefix):].rstrip('/'))
                for obj in page.get('Contents', []):
                    names.append(obj['Key'][len(prefix):])
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e

        return [name for name in names if name]

    def compare(self, local_path: str, run_id: str) -> bool:
        """
        Compare size and SHA-256 of the local archive with the uploaded object.

        Returns:
            True if the object exists and matches

        Raises:
            StorageError: If the local file cannot be hashed or S3 cannot be reached
        """
        key = self._key(run_id, local_path)

        try:
            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                logger.info(f"Remote object missing: {self.uri(run_id, os.path.basename(local_path))}")
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to read S3 object metadata: {e}") from e

        if head.get('ContentLength') != os.path.getsize(local_path):
            return False

        try:
            local_digest = compute_digest(local_path, self.METADATA_DIGEST)
        except ChecksumError as e:
            raise StorageError(str(e)) from e

        return head.get('Metadata', {}).get(self.METADATA_DIGEST) == local_digest

    def purge(self, entry_name: str):
        """
        Delete every object under an entry of the base path.

        Raises:
            StorageError: If deletion fails
        """
        prefix = self._prefix(entry_name)
        single_key = self._join(entry_name)

        try:
            keys = [single_key] if self._exists(single_key) else []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))

            for batch in _batches(keys, 1000):
                self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}") from e

    def _exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError:
            return False


class LocalStorage:
    """
    Handler for the local archive root.

    Entries are the run folders {base_path}/{run_id} plus anything else kept
    beside them; reserved folder names are never listed.
    """

    def __init__(self, base_path: str, reserved: Iterable[str] = ()):
        """
        Initialize local storage handler.

        Args:
            base_path: Local archive root
            reserved: Entry names excluded from listing (export/log folders)
        """
        self.base_path = Path(base_path)
        self.reserved = frozenset(reserved)

    def list_entries(self) -> List[str]:
        """
        List entry names under the archive root.

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            return []

        try:
            return [p.name for p in self.base_path.iterdir() if p.name not in self.reserved]
        except OSError as e:
            raise StorageError(f"Failed to list local archives: {e}") from e

    def delete(self, entry_name: str):
        """
        Delete an entry (folder recursively, or file).

        Raises:
            StorageError: If deletion fails
        """
        if entry_name in self.reserved:
            raise StorageError(f"Refusing to delete reserved folder: {entry_name}")

        full_path = self.base_path / entry_name

        try:
            if full_path.is_dir():
                shutil.rmtree(full_path)
            elif full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to delete local entry {full_path}: {e}") from e


def create_sync(remote: RemoteTarget, applications: ApplicationPaths,
                on_output: Optional[Callable[[str], None]] = None) -> SyncTool:
    """
    Factory function to create the sync handler for a remote target.

    Raises:
        ValueError: If the remote type is invalid
    """
    if remote.type == 'rclone':
        return RcloneSync(remote, applications.sync, on_output=on_output)
    elif remote.type == 's3':
        return S3Sync(remote)
    else:
        raise ValueError(f"Invalid remote type: {remote.type}")


def _batches(items: List[str], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]
