"""File selection for transfer jobs."""

import fnmatch
import logging
from typing import Optional

from .models import FileEntry, FilterSpec
from .utils import normalize_path

logger = logging.getLogger(__name__)


def _matches_pattern(entry: FileEntry, relative_path: str, pattern: str) -> bool:
    """Match a glob against the entry name or its relative path.

    Patterns without a slash match the file name (like gitignore),
    patterns with a slash match the path relative to the job root.
    Matching is case-insensitive.
    """
    pattern = pattern.strip()
    if not pattern:
        return False
    if "/" in pattern:
        target = relative_path.lstrip("/").lower()
        return fnmatch.fnmatchcase(target, pattern.lstrip("/").lower())
    return fnmatch.fnmatchcase(entry.name.lower(), pattern.lower())


def _matches_mime(mime_type: Optional[str], allowed: list[str]) -> bool:
    if not mime_type:
        return False
    mime_type = mime_type.lower()
    for candidate in allowed:
        candidate = candidate.lower().strip()
        if candidate.endswith("/*"):
            if mime_type.startswith(candidate[:-1]):
                return True
        elif mime_type == candidate:
            return True
    return False


def matches_filter(
    entry: FileEntry, spec: Optional[FilterSpec], relative_path: Optional[str] = None
) -> bool:
    """Check whether a file passes a filter spec.

    Folders always pass; they are created on demand for the files below them.

    Args:
        entry: Entry to check
        spec: Filter spec (None accepts everything)
        relative_path: Path relative to the job root (defaults to entry.path)

    Returns:
        True if the entry should be transferred
    """
    if spec is None or entry.is_folder:
        return True

    rel = normalize_path(relative_path or entry.path)

    includes = [p for p in spec.include_patterns if p.strip()]
    if includes and not any(_matches_pattern(entry, rel, p) for p in includes):
        return False

    if any(_matches_pattern(entry, rel, p) for p in spec.exclude_patterns):
        return False

    if spec.min_size is not None and entry.size < spec.min_size:
        return False
    if spec.max_size is not None and entry.size > spec.max_size:
        return False

    if spec.mime_types and not _matches_mime(entry.mime_type, spec.mime_types):
        return False

    if entry.modified_at is not None:
        if spec.modified_after and entry.modified_at < spec.modified_after:
            return False
        if spec.modified_before and entry.modified_at > spec.modified_before:
            return False

    return True


def apply_filter(
    entries: list[tuple[FileEntry, str]], spec: Optional[FilterSpec]
) -> list[tuple[FileEntry, str]]:
    """Filter (entry, relative_path) pairs, keeping folders."""
    kept = [(e, rel) for e, rel in entries if matches_filter(e, spec, rel)]
    dropped = len(entries) - len(kept)
    if dropped:
        logger.debug(f"Filter excluded {dropped} of {len(entries)} entries")
    return kept
