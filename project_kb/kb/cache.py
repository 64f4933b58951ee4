"""
Content-hash embedding cache.

Maps each indexed file's absolute path to the SHA-256 of its raw bytes and
the ordered embeddings of its chunks, so unchanged files are never
re-embedded.  The whole map is rewritten after every build; entries for
files that disappeared are dropped simply by not being carried over.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_READ_BLOCK = 1024 * 1024


class CacheError(Exception):
    """Raised when the cache file exists but cannot be read or written."""


def hash_file(path: str) -> str:
    """Return the SHA-256 hex digest of the raw bytes of *path*."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


@dataclass
class CacheEntry:
    """Cached embeddings for one file, aligned index-for-index with its chunks."""
    hash: str
    embeddings: list[list[float]]
    models: list[str] = field(default_factory=list)

    def is_valid_for(
        self, content_hash: str, chunk_count: int, model_tag: str = "",
    ) -> bool:
        """
        True when the file is byte-identical, chunked the same way and, if
        *model_tag* is given, embedded by that model.

        Untagged vectors are accepted for any model.
        """
        if self.hash != content_hash or len(self.embeddings) != chunk_count:
            return False
        if model_tag and any(m and m != model_tag for m in self.models):
            return False
        return True

    def model_at(self, index: int) -> str:
        return self.models[index] if index < len(self.models) else ""

    def to_dict(self) -> dict:
        return {"hash": self.hash, "embeddings": self.embeddings, "models": self.models}

    @classmethod
    def from_dict(cls, data: Any) -> "CacheEntry":
        if not isinstance(data, dict):
            raise ValueError("cache entry is not an object")
        content_hash = data.get("hash")
        embeddings = data.get("embeddings")
        if not isinstance(content_hash, str) or not isinstance(embeddings, list):
            raise ValueError("cache entry is missing hash or embeddings")
        models = data.get("models")
        if not isinstance(models, list):
            models = []
        return cls(hash=content_hash, embeddings=embeddings, models=models)


def write_json_atomic(path: str, data: Any) -> None:
    """Write *data* as JSON to *path* via a temp file and ``os.replace``."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class EmbeddingCache:
    """
    JSON-file backed :class:`CacheEntry` map.

    Parameters
    ----------
    path:
        Location of the cache document.  Its directory is created on save.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> dict[str, CacheEntry]:
        """
        Return the persisted cache.

        A missing or corrupt document yields an empty map (every file gets
        re-embedded).  Individual malformed entries are dropped.

        Raises
        ------
        CacheError
            If the document exists but cannot be read.
        """
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Embedding cache %s is corrupt, starting empty: %s", self.path, exc)
            return {}
        except OSError as exc:
            raise CacheError(f"Cannot read embedding cache {self.path}: {exc}") from exc

        if not isinstance(raw, dict):
            logger.warning("Embedding cache %s has unexpected shape, starting empty", self.path)
            return {}

        cache: dict[str, CacheEntry] = {}
        for file_path, entry in raw.items():
            try:
                cache[file_path] = CacheEntry.from_dict(entry)
            except ValueError as exc:
                logger.debug("Dropping cache entry for %s: %s", file_path, exc)
        return cache

    def save(self, cache: dict[str, CacheEntry]) -> None:
        """
        Replace the persisted cache with *cache*.

        Raises
        ------
        CacheError
            If the document cannot be written.
        """
        payload = {path: entry.to_dict() for path, entry in cache.items()}
        try:
            write_json_atomic(self.path, payload)
        except OSError as exc:
            raise CacheError(f"Cannot write embedding cache {self.path}: {exc}") from exc
        logger.debug("Saved embedding cache with %d files to %s", len(cache), self.path)
