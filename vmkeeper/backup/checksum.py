"""
Archive checksums.

A digest is stored beside each archive as ``{archive}.txt`` containing
``{ALGO}: {hex} {archive_name}``.
"""

import os
import hashlib


CHUNK_SIZE = 1024 * 1024


class ChecksumError(Exception):
    """Raised when a digest cannot be computed or written."""
    pass


def compute_digest(file_path: str, algorithm: str = 'sha256') -> str:
    """
    Compute the hex digest of a file.

    Raises:
        ChecksumError: If the algorithm is unknown or the file cannot be read
    """
    try:
        digest = hashlib.new(algorithm)
    except ValueError as e:
        raise ChecksumError(f"Unsupported hash algorithm: {algorithm}") from e

    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
    except OSError as e:
        raise ChecksumError(f"Failed to read {file_path}: {e}") from e

    return digest.hexdigest()


def format_checksum_line(algorithm: str, hex_digest: str, archive_name: str) -> str:
    return f"{algorithm.upper()}: {hex_digest} {archive_name}"


def write_checksum_file(archive_path: str, algorithm: str = 'sha256', checksum_path: str = None) -> str:
    """
    Compute an archive's digest and persist it beside the archive.

    Args:
        archive_path: Archive to hash
        algorithm: hashlib algorithm name
        checksum_path: Sidecar file (default ``{archive_path}.txt``)

    Returns:
        The hex digest

    Raises:
        ChecksumError: If hashing or writing fails
    """
    hex_digest = compute_digest(archive_path, algorithm)
    line = format_checksum_line(algorithm, hex_digest, os.path.basename(archive_path))

    try:
        with open(checksum_path or f"{archive_path}.txt", 'w', encoding='utf-8') as f:
            f.write(line + '\n')
    except OSError as e:
        raise ChecksumError(f"Failed to write checksum file for {archive_path}: {e}") from e

    return hex_digest
