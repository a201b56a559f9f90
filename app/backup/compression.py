"""
Archive packing for exported snapshots.

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import os
import uuid
import tarfile
import zipfile
from pathlib import Path
from typing import List, Optional
from datetime import datetime, timezone


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


def validate_format(compression_format: str) -> str:
    """
    Check a compression format name.

    Raises:
        ValueError: If compression_format is not supported
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )
    return compression_format


def create_archive(
    source_paths: List[str],
    output_base: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Create an archive from files, each stored under its basename.

    Args:
        source_paths: Files to include
        output_base: Archive path without extension
        compression_format: One of EXTENSIONS

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails (no partial archive is left)
        ValueError: If compression_format is invalid
    """
    validate_format(compression_format)

    if not source_paths:
        raise CompressionError("No source paths provided")

    archive_path = f"{output_base}.{EXTENSIONS[compression_format]}"

    try:
        for source_path in source_paths:
            if not Path(source_path).is_file():
                raise CompressionError(f"Not a file: {source_path}")

        if compression_format == 'zip':
            with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
                for source_path in source_paths:
                    zipf.write(source_path, os.path.basename(source_path))
        else:
            with tarfile.open(archive_path, TAR_MODES[compression_format]) as tar:
                for source_path in source_paths:
                    tar.add(source_path, arcname=os.path.basename(source_path))

        return archive_path

    except Exception as e:
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def generate_archive_basename(label: str, when: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive name without extension.

    Format: finance-{label}-{YYYYMMDD_HHMMSS}-{suffix}
    (suffix: 8 random hex digits, unique per call)

    Args:
        label: Backup tier or other label
        when: Timestamp to embed (default: now, UTC)
    """
    when = when or datetime.now(timezone.utc)
    timestamp = when.strftime('%Y%m%d_%H%M%S')

    safe_label = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in label
    )

    return f"finance-{safe_label}-{timestamp}-{uuid.uuid4().hex[:8]}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
