"""Recursive tree listing for transfers and sync runs."""

import logging
import time

from ..exceptions import NotFoundError
from ..models import FileEntry
from ..providers.base import ProviderAdapter
from ..utils import DEFAULT_MAX_SCAN_DEPTH, join_path, normalize_path

logger = logging.getLogger(__name__)


class TreeScanner:
    """Lists a provider subtree into ``(FileEntry, relative_path)`` pairs.

    Relative paths start with ``/`` and are relative to the scanned root,
    so two snapshots of different roots can be compared path by path.
    Folders are included in the snapshot; recursion stops at ``max_depth``.

    Examples:
        >>> scanner = TreeScanner(adapter, skip_hidden=True)
        >>> for entry, rel in scanner.scan("/photos"):
        ...     print(rel, entry.size)
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        max_depth: int = DEFAULT_MAX_SCAN_DEPTH,
        skip_hidden: bool = False,
    ):
        """Initialize tree scanner.

        Args:
            adapter: Provider adapter to list from
            max_depth: Maximum folder depth below the root to descend into
            skip_hidden: Drop entries whose name starts with a dot
                (including everything below a hidden folder)
        """
        self.adapter = adapter
        self.max_depth = max_depth
        self.skip_hidden = skip_hidden

    def scan(self, root: str, missing_ok: bool = False) -> list[tuple[FileEntry, str]]:
        """Recursively list ``root``.

        Args:
            root: Directory to scan
            missing_ok: Return an empty snapshot instead of raising when the
                root does not exist

        Returns:
            List of (FileEntry, relative_path) tuples, parents before children

        Raises:
            NotFoundError: If root does not exist and missing_ok is False
        """
        root = normalize_path(root)
        start = time.time()
        try:
            result = self._scan_folder(root, "/", 0, set())
        except NotFoundError:
            if not missing_ok:
                raise
            logger.debug(f"Scan root {root} does not exist, treating as empty")
            return []
        logger.debug(
            f"Scanned {root} on {self.adapter.provider_type}: "
            f"{len(result)} entries in {time.time() - start:.2f}s"
        )
        return result

    def _scan_folder(
        self,
        folder: str,
        rel_prefix: str,
        depth: int,
        visited: set[str],
    ) -> list[tuple[FileEntry, str]]:
        # Prevent infinite recursion on providers that expose links
        if folder in visited:
            return []
        visited.add(folder)

        result: list[tuple[FileEntry, str]] = []
        subfolders: list[tuple[str, str]] = []

        for entry in self.adapter.list_files(folder):
            if self.skip_hidden and entry.name.startswith("."):
                continue
            rel_path = join_path(rel_prefix, entry.name)
            result.append((entry.with_path(join_path(folder, entry.name)), rel_path))
            if entry.is_folder:
                subfolders.append((join_path(folder, entry.name), rel_path))

        if subfolders and depth >= self.max_depth:
            logger.warning(
                f"Maximum scan depth {self.max_depth} reached at {folder}, "
                f"not descending into {len(subfolders)} folder(s)"
            )
            return result

        for sub_path, sub_rel in subfolders:
            try:
                result.extend(self._scan_folder(sub_path, sub_rel, depth + 1, visited))
            except NotFoundError:
                # Folder removed between listing its parent and listing it
                logger.warning(f"Folder disappeared during scan: {sub_path}")
        return result


def files_only(
    snapshot: list[tuple[FileEntry, str]],
) -> list[tuple[FileEntry, str]]:
    return [(e, rel) for e, rel in snapshot if not e.is_folder]


def snapshot_map(
    snapshot: list[tuple[FileEntry, str]],
) -> dict[str, FileEntry]:
    """Index a snapshot by relative path."""
    return {rel: entry for entry, rel in snapshot}

