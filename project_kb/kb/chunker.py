"""
Chunker — file eligibility filter, reader and fixed-size line splitter.

Each eligible file is read as UTF-8 and cut into contiguous windows of at
most ``window`` lines.  Chunks are the unit of embedding and retrieval.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional

from .walker import FileRecord, walk_directory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CHUNK_LINES = 80
MAX_FILE_BYTES = 2 * 1024 * 1024

# ── Extension → Language mapping ──

EXTENSION_TO_LANGUAGE = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".json": "json",
    ".md": "markdown",
    ".mdx": "markdown",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".toml": "toml",
    ".py": "python",
    ".html": "html",
    ".css": "css",
}

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({
    ".ts", ".tsx", ".js", ".jsx",
    ".json", ".md", ".mdx", ".txt",
    ".yml", ".yaml", ".toml",
    ".py", ".html", ".css",
})

BINARY_EXTENSIONS: frozenset[str] = frozenset({
    # images
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".bmp", ".webp", ".tiff",
    # documents
    ".pdf", ".docx", ".doc", ".xlsx", ".pptx", ".odt", ".epub",
    # archives
    ".zip", ".gz", ".tar", ".tgz", ".bz2", ".xz", ".7z", ".rar",
    # fonts / media / binaries
    ".woff", ".woff2", ".ttf", ".otf", ".mp3", ".mp4", ".wav", ".mov",
    ".exe", ".dll", ".so", ".dylib", ".pyc", ".class", ".jar",
})


@dataclass(frozen=True)
class Chunk:
    """A contiguous, 1-indexed inclusive line range of one file."""
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def detect_language(file_path: str) -> str:
    """Map *file_path*'s extension to a language tag (``"text"`` if unknown)."""
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_TO_LANGUAGE.get(ext, "text")


def is_eligible(
    record: FileRecord,
    max_bytes: int = MAX_FILE_BYTES,
    allowed_extensions: Iterable[str] = ALLOWED_EXTENSIONS,
) -> bool:
    """Return True if *record* should be read and chunked."""
    ext = os.path.splitext(record.path)[1].lower()
    if ext in BINARY_EXTENSIONS:
        return False
    if ext not in allowed_extensions:
        return False
    return record.size <= max_bytes


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

def split_lines(text: str, file_path: str, window: int = CHUNK_LINES) -> list[Chunk]:
    """
    Split *text* into windows of at most *window* lines.

    A single trailing newline terminates the last line rather than opening
    an empty one, so ``"a\\nb\\n"`` has two lines.  Empty text yields no
    chunks.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if not text:
        return []

    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()

    language = detect_language(file_path)
    chunks: list[Chunk] = []
    for start in range(0, len(lines), window):
        end = min(start + window, len(lines))
        chunks.append(
            Chunk(
                file_path=file_path,
                start_line=start + 1,
                end_line=end,
                content="\n".join(lines[start:end]),
                language=language,
            )
        )
    return chunks


def chunk_file(file_path: str, window: int = CHUNK_LINES) -> list[Chunk]:
    """
    Read *file_path* as UTF-8 and split it into line windows.

    Raises
    ------
    OSError
        If the file cannot be read.
    UnicodeDecodeError
        If the file is not valid UTF-8.
    """
    with open(file_path, encoding="utf-8", newline="") as fh:
        text = fh.read()
    return split_lines(text, file_path, window)


def scan_project(
    root: str,
    window: int = CHUNK_LINES,
    max_bytes: int = MAX_FILE_BYTES,
    ignore_dirs: Optional[Iterable[str]] = None,
    follow_symlinks: bool = False,
    exclude_paths: Optional[Iterable[str]] = None,
) -> list[Chunk]:
    """
    Walk *root* and return the ordered chunk list of every eligible file.

    A file that cannot be read or decoded is logged and skipped.
    """
    records = walk_directory(root, ignore_dirs=ignore_dirs,
                             follow_symlinks=follow_symlinks,
                             exclude_paths=exclude_paths)
    all_chunks: list[Chunk] = []
    for record in records:
        if not is_eligible(record, max_bytes=max_bytes):
            continue
        try:
            chunks = chunk_file(record.path, window)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping unreadable file %s: %s", record.path, exc)
            continue
        all_chunks.extend(chunks)

    logger.info("Scanned %s: %d files, %d chunks", root, len(records), len(all_chunks))
    return all_chunks
