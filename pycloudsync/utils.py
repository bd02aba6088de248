"""Utility functions shared by adapters, the differ and the job engine."""

import posixpath
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

# =============================================================================
# Constants for job execution
# =============================================================================

# Bounded worker pool size per running job
DEFAULT_MAX_WORKERS: int = 4

# Jobs the engine runs at the same time
DEFAULT_MAX_CONCURRENT_JOBS: int = 4

# Retry configuration for transient errors (attempts per item)
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Per adapter call timeout
DEFAULT_REQUEST_TIMEOUT: float = 30.0  # seconds

# Chunk size used when streaming between providers (1 MB)
DEFAULT_CHUNK_SIZE: int = 1024 * 1024

# Scheduler sweep interval
DEFAULT_SCHEDULER_TICK: float = 30.0  # seconds

# Per-subscriber event buffer
DEFAULT_EVENT_BUFFER_SIZE: int = 1000

# Recursion bound when listing trees
DEFAULT_MAX_SCAN_DEPTH: int = 32

# Cached session lifetime when the provider does not report one
DEFAULT_SESSION_TTL: float = 3600.0  # seconds

# Two timestamps closer than this are treated as equal
MTIME_TOLERANCE: float = 2.0  # seconds


# =============================================================================
# Path utilities
# =============================================================================


def normalize_path(path: Optional[str]) -> str:
    """Normalize a provider path to posix form.

    The result always starts with ``/``, has no duplicate slashes and no
    trailing slash (except for the root itself).

    Args:
        path: Raw path, possibly relative or with backslashes

    Returns:
        Normalized path

    Raises:
        ValueError: If the path contains ``..`` segments

    Examples:
        >>> normalize_path("docs//reports/")
        '/docs/reports'
        >>> normalize_path("")
        '/'
    """
    path = (path or "").strip().replace("\\", "/")
    segments = [s for s in path.split("/") if s not in ("", ".")]
    if ".." in segments:
        raise ValueError(f"Path cannot contain '..' segments: {path}")
    return "/" + "/".join(segments)


def join_path(base: str, *parts: str) -> str:
    """Join path segments and normalize the result."""
    joined = "/".join([base, *parts])
    return normalize_path(joined)


def parent_path(path: str) -> str:
    """Return the normalized parent directory of ``path``."""
    return normalize_path(posixpath.dirname(normalize_path(path)))


def base_name(path: str) -> str:
    """Return the last segment of ``path`` ('' for the root)."""
    return posixpath.basename(normalize_path(path))


def relative_to(path: str, root: str) -> str:
    """Return ``path`` relative to ``root`` as a normalized path.

    Examples:
        >>> relative_to("/src/a/b.txt", "/src")
        '/a/b.txt'
    """
    path = normalize_path(path)
    root = normalize_path(root)
    if root == "/":
        return path
    if path == root:
        return "/"
    if not path.startswith(root + "/"):
        raise ValueError(f"{path} is not below {root}")
    return path[len(root) :]


def path_depth(path: str) -> int:
    """Number of segments in a normalized path ('/' has depth 0)."""
    path = normalize_path(path)
    return 0 if path == "/" else path.count("/")


def is_hidden_path(path: str) -> bool:
    """True if any segment of ``path`` starts with a dot."""
    return any(seg.startswith(".") for seg in normalize_path(path).split("/") if seg)


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 1123 date (as used by WebDAV ``getlastmodified``).

    Returns:
        Timezone-aware UTC datetime or None if parsing fails
    """
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp into an aware UTC datetime.

    Args:
        timestamp_str: ISO format timestamp (e.g., "2025-01-15T10:30:00.000000Z")

    Returns:
        datetime in UTC or None if parsing fails
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, AttributeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


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
