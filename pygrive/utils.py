"""Utility functions for pygrive."""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants for file operations
# =============================================================================

# Read size for hashing and transfers (256 KB)
DEFAULT_CHUNK_SIZE: int = 256 * 1024

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 2.0  # seconds

# Parallel workers for hashing and transfers
DEFAULT_MAX_WORKERS: int = 4

# Reserved names at the sync root, never synced
CONFIG_FILE_NAME: str = ".grive"
STATE_FILE_NAME: str = ".grive_state"
TRASH_DIR_NAME: str = ".trash"

RESERVED_NAMES: frozenset = frozenset({CONFIG_FILE_NAME, STATE_FILE_NAME, TRASH_DIR_NAME})


def is_temp_name(name: str) -> bool:
    """Check whether a name is a temporary file left by an atomic write.

    Examples:
        >>> is_temp_name(".grive-a1b2.tmp")
        True
        >>> is_temp_name("notes.tmp")
        False
    """
    return name.startswith(".grive") and name.endswith(".tmp")


def is_reserved_name(name: str) -> bool:
    """Check whether a root-level name belongs to pygrive itself.

    Temporary files left by atomic writes (``.grive*.tmp``) count as reserved.
    """
    if name in RESERVED_NAMES:
        return True
    return is_temp_name(name)


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[float]:
    """Parse an RFC 3339 timestamp from the Drive API.

    Args:
        timestamp_str: Timestamp string (e.g., "2025-01-15T10:30:00.000Z")

    Returns:
        Unix timestamp or None if parsing fails

    Examples:
        >>> parse_iso_timestamp("1970-01-01T00:00:10.000Z")
        10.0
        >>> parse_iso_timestamp(None) is None
        True
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"
        return datetime.fromisoformat(timestamp_str).timestamp()
    except (ValueError, AttributeError):
        return None


def format_timestamp(timestamp: float) -> str:
    """Format a Unix timestamp as an RFC 3339 UTC string for the Drive API."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def calculate_md5(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Calculate the MD5 hex digest of a file.

    Drive reports ``md5Checksum`` for binary content, so the same digest is
    used locally to compare both sides.

    Args:
        file_path: File to hash
        chunk_size: Read size in bytes

    Returns:
        Lowercase hex digest
    """
    digest = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


# =============================================================================
# Path utilities
# =============================================================================


def normalize_scope(scope: Optional[str]) -> str:
    """Normalize a scope subdirectory to a slash-separated relative path.

    Examples:
        >>> normalize_scope("/docs/work/")
        'docs/work'
        >>> normalize_scope(None)
        ''
        >>> normalize_scope("./a//b")
        'a/b'
    """
    if not scope:
        return ""
    parts = [p for p in scope.replace("\\", "/").split("/") if p and p != "."]
    return "/".join(parts)


def is_within_scope(path: str, scope: str) -> bool:
    """Check whether ``path`` equals ``scope`` or lies beneath it.

    Examples:
        >>> is_within_scope("sub/a.txt", "sub")
        True
        >>> is_within_scope("subway/a.txt", "sub")
        False
        >>> is_within_scope("anything", "")
        True
    """
    if not scope:
        return True
    return path == scope or path.startswith(scope + "/")


def parent_path(path: str) -> str:
    """Return the parent of a slash-separated relative path ('' for top level)."""
    return path.rsplit("/", 1)[0] if "/" in path else ""


def path_distance(a: str, b: str) -> int:
    """Number of path segments separating two relative paths.

    Counts the segments of both paths that lie below their common prefix.

    Examples:
        >>> path_distance("docs/a.txt", "docs/b.txt")
        2
        >>> path_distance("a.txt", "x/y/a.txt")
        4
    """
    parts_a = a.split("/")
    parts_b = b.split("/")
    common = 0
    for seg_a, seg_b in zip(parts_a, parts_b):
        if seg_a != seg_b:
            break
        common += 1
    return len(parts_a) + len(parts_b) - 2 * common
