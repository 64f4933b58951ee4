"""
File walker for the project Knowledge Base.

Enumerates every regular file under a project root, pruning dependency
caches, VCS metadata, build output and editor directories so their
contents are never visited.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory exclusion rules
# ---------------------------------------------------------------------------

IGNORE_DIRS: frozenset[str] = frozenset({
    # dependency caches
    "node_modules", "vendor",
    ".venv", "venv", ".tox", ".eggs",
    # version control
    ".git", ".github", ".hg", ".svn",
    # build output
    "dist", "build", "out", "coverage",
    ".next", ".vite", ".turbo", "public",
    "__pycache__", ".mypy_cache", ".pytest_cache",
    # editor config
    ".vscode", ".idea",
    # temp / logs
    ".cache", "logs", "tmp", "temp",
    # our own data directory
    "dev-data",
})


@dataclass
class FileRecord:
    """A candidate file discovered by the walker."""
    path: str   # absolute path
    size: int   # bytes


def walk_directory(
    root: str,
    ignore_dirs: Optional[Iterable[str]] = None,
    follow_symlinks: bool = False,
    exclude_paths: Optional[Iterable[str]] = None,
) -> list[FileRecord]:
    """
    Depth-first walk of *root* returning every regular file found.

    Parameters
    ----------
    root:
        Directory to scan.
    ignore_dirs:
        Directory names pruned wherever they appear.  Defaults to
        :data:`IGNORE_DIRS`.
    follow_symlinks:
        Descend into symlinked directories.  Real paths already visited are
        never entered again, so symlink cycles terminate.
    exclude_paths:
        Specific directories (compared by real path) that are never entered,
        such as the KB data directory.

    Returns
    -------
    list[FileRecord]
        Files in traversal order.  Unreadable directories and files whose
        ``stat`` fails are logged and skipped.
    """
    skip = frozenset(IGNORE_DIRS if ignore_dirs is None else ignore_dirs)
    root = os.path.abspath(root)
    results: list[FileRecord] = []
    visited: set[str] = set()
    excluded = frozenset(os.path.realpath(p) for p in (exclude_paths or ()))

    def _is_excluded(path: str) -> bool:
        return bool(excluded) and os.path.realpath(path) in excluded

    def _on_error(exc: OSError) -> None:
        logger.warning("Skipping unreadable directory %s: %s", exc.filename, exc)

    for dirpath, dirnames, filenames in os.walk(
        root, topdown=True, onerror=_on_error, followlinks=follow_symlinks
    ):
        if follow_symlinks:
            real = os.path.realpath(dirpath)
            if real in visited:
                logger.debug("Already visited %s (via %s), skipping", real, dirpath)
                dirnames[:] = []
                continue
            visited.add(real)

        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in skip and not _is_excluded(os.path.join(dirpath, d))
        )

        for fname in sorted(filenames):
            abs_path = os.path.join(dirpath, fname)
            try:
                st = os.stat(abs_path)
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", abs_path, exc)
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            results.append(FileRecord(path=abs_path, size=st.st_size))

    return results
