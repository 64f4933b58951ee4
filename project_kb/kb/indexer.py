"""
Indexer — orchestrates Knowledge Base builds.

Build:
  1. Walk the project directory and chunk every eligible file
  2. Group chunks by file
  3. Load the content-hash cache
  4. Per file: reuse cached embeddings if the file is unchanged, otherwise
     embed each chunk through the configured provider
  5. Persist the new cache map (files no longer present drop out)
  6. Assemble records from every non-empty embedding
  7. Persist the fresh KB, replacing any previous one

Nothing is written until every file has been processed, so a failed or
cancelled build leaves the previous cache and store untouched.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import Config
from .cache import CacheEntry, EmbeddingCache, hash_file
from .chunker import Chunk, scan_project
from .embedder import EmbeddingError, EmbeddingProvider, make_embedder
from .store import KbData, KbStore, KbStoreError, create_kb
from .walker import IGNORE_DIRS

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

# ---------------------------------------------------------------------------
# Build serialisation (one build per data directory at a time)
# ---------------------------------------------------------------------------

_build_locks: dict[str, threading.Lock] = {}
_build_locks_guard = threading.Lock()


def _build_lock(data_dir: str) -> threading.Lock:
    key = os.path.realpath(data_dir)
    with _build_locks_guard:
        lock = _build_locks.get(key)
        if lock is None:
            lock = _build_locks[key] = threading.Lock()
        return lock


class BuildCancelled(Exception):
    """Raised when a build is aborted by its caller; nothing was persisted."""


@dataclass
class BuildSummary:
    """Counters describing one build."""
    root: str = ""
    file_count: int = 0
    chunk_count: int = 0
    cached_files: int = 0
    embedded_files: int = 0
    embedded_chunks: int = 0
    failed_chunks: int = 0
    skipped_files: int = 0
    record_count: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class _FileResult:
    file_path: str
    entry: Optional[CacheEntry]
    pairs: list[tuple[Chunk, list[float], str]] = field(default_factory=list)
    reused: bool = False
    embedded: int = 0
    failed: int = 0
    skipped: bool = False


def group_by_file(chunks: list[Chunk]) -> dict[str, list[Chunk]]:
    """Group *chunks* by file path, keeping first-seen file order and chunk order."""
    by_file: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        by_file.setdefault(chunk.file_path, []).append(chunk)
    return by_file


class KbIndexer:
    """
    Builds and loads the project Knowledge Base.

    Parameters
    ----------
    config:
        Settings snapshot.  Defaults to :meth:`Config.load`.
    embedder:
        Embedding provider.  Defaults to :func:`make_embedder` on first use.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ) -> None:
        self.config = config or Config.load()
        self._embedder = embedder
        self.store = KbStore(self.config.store_path)
        self.cache = EmbeddingCache(self.config.cache_path)
        self.last_summary: Optional[BuildSummary] = None

    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = make_embedder(self.config)
        return self._embedder

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        root: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> KbData:
        """
        Rebuild the KB from *root* and persist it.

        Parameters
        ----------
        root:
            Project directory.  Defaults to ``config.PROJECT_ROOT``.
        cancel_event:
            Checked between files; when set the build stops with
            :class:`BuildCancelled` and nothing is saved.
        progress_callback:
            Called with ``(current, total, file_path)`` after each file.

        Returns
        -------
        KbData
            The freshly persisted KB.

        Raises
        ------
        BuildCancelled
            If *cancel_event* was set.
        EmbeddingError
            In strict mode, on the first chunk that cannot be embedded.
        CacheError, KbStoreError
            If the cache or store cannot be persisted.
        """
        root = os.path.abspath(root or self.config.PROJECT_ROOT)
        if not os.path.isdir(root):
            raise NotADirectoryError(f"KB root is not a directory: {root}")

        with _build_lock(self.config.DATA_DIR):
            return self._build_locked(root, cancel_event, progress_callback)

    def _build_locked(
        self,
        root: str,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
    ) -> KbData:
        start_time = time.time()
        summary = BuildSummary(root=root)
        logger.info("Building KB from root: %s", root)

        chunks = scan_project(
            root,
            window=self.config.CHUNK_LINES,
            max_bytes=self.config.MAX_FILE_BYTES,
            ignore_dirs=IGNORE_DIRS,
            exclude_paths=[self.config.DATA_DIR],
            follow_symlinks=self.config.FOLLOW_SYMLINKS,
        )
        by_file = group_by_file(chunks)
        summary.file_count = len(by_file)
        summary.chunk_count = len(chunks)

        previous = self.cache.load()
        results = self._process_files(by_file, previous, cancel_event, progress_callback)
        self._check_cancel(cancel_event)

        new_cache: dict[str, CacheEntry] = {}
        pairs: list[tuple[Chunk, list[float], str]] = []
        # Assemble in scan order so the store is deterministic regardless of
        # which worker finished first.
        for file_path in by_file:
            result = results[file_path]
            if result.skipped:
                summary.skipped_files += 1
                continue
            if result.entry is not None:
                new_cache[file_path] = result.entry
            pairs.extend(result.pairs)
            if result.reused:
                summary.cached_files += 1
            else:
                summary.embedded_files += 1
            summary.embedded_chunks += result.embedded
            summary.failed_chunks += result.failed

        self.cache.save(new_cache)
        kb = self.store.save(create_kb(pairs, root))

        summary.record_count = len(kb.records)
        summary.elapsed_seconds = round(time.time() - start_time, 2)
        self.last_summary = summary
        logger.info(
            "KB built with %d records: %d files (%d cached, %d embedded), "
            "%d chunks embedded, %d failed in %.1fs",
            summary.record_count, summary.file_count, summary.cached_files,
            summary.embedded_files, summary.embedded_chunks,
            summary.failed_chunks, summary.elapsed_seconds,
        )
        return kb

    def _process_files(
        self,
        by_file: dict[str, list[Chunk]],
        previous: dict[str, CacheEntry],
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
    ) -> dict[str, _FileResult]:
        """Run :meth:`_process_file` for every file, optionally in parallel."""
        total = len(by_file)
        results: dict[str, _FileResult] = {}
        workers = self.config.BUILD_WORKERS

        if workers <= 1 or total <= 1:
            for idx, (file_path, file_chunks) in enumerate(by_file.items(), 1):
                self._check_cancel(cancel_event)
                results[file_path] = self._process_file(
                    file_path, file_chunks, previous.get(file_path)
                )
                if progress_callback:
                    progress_callback(idx, total, file_path)
            return results

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kb-build")
        try:
            pending = {
                executor.submit(
                    self._process_file, file_path, file_chunks, previous.get(file_path)
                ): file_path
                for file_path, file_chunks in by_file.items()
            }
            done_count = 0
            while pending:
                self._check_cancel(cancel_event)
                done, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                for future in done:
                    file_path = pending.pop(future)
                    results[file_path] = future.result()
                    done_count += 1
                    if progress_callback:
                        progress_callback(done_count, total, file_path)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return results

    def _process_file(
        self,
        file_path: str,
        chunks: list[Chunk],
        cached: Optional[CacheEntry],
    ) -> _FileResult:
        """Reuse or compute the embeddings of one file's chunks."""
        try:
            content_hash = hash_file(file_path)
        except OSError as exc:
            logger.warning("Skipping %s, cannot hash: %s", file_path, exc)
            return _FileResult(file_path=file_path, entry=None, skipped=True)

        if cached is not None and cached.is_valid_for(
            content_hash, len(chunks), self.embedder.model_tag
        ):
            logger.debug("Cached file: %s (%d chunks reused)", file_path, len(chunks))
            pairs = [
                (chunk, cached.embeddings[idx], cached.model_at(idx))
                for idx, chunk in enumerate(chunks)
            ]
            return _FileResult(file_path=file_path, entry=cached, pairs=pairs, reused=True)

        logger.debug("Embedding file: %s (%d chunks)", file_path, len(chunks))
        embeddings: list[list[float]] = []
        models: list[str] = []
        embedded = 0
        failed = 0
        for chunk in chunks:
            try:
                vector, model = self.embedder.embed_tagged(chunk.content)
            except EmbeddingError as exc:
                if self.config.STRICT:
                    raise
                logger.warning(
                    "Embedding failed for %s:%d-%d, chunk dropped: %s",
                    file_path, chunk.start_line, chunk.end_line, exc,
                )
                vector, model = [], ""
                failed += 1
            else:
                if vector:
                    embedded += 1
            embeddings.append(vector)
            models.append(model)

        # A file with failed chunks is left out of the cache so the next
        # build retries it instead of reusing the gaps.
        entry = None if failed else CacheEntry(content_hash, embeddings, models)
        pairs = list(zip(chunks, embeddings, models))
        return _FileResult(
            file_path=file_path, entry=entry, pairs=pairs,
            embedded=embedded, failed=failed,
        )

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("KB build cancelled; nothing persisted")
            raise BuildCancelled("KB build cancelled")

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------

    def is_built(self) -> bool:
        """Return True if a KB document has been persisted."""
        return self.store.exists()

    def load(self) -> Optional[KbData]:
        """Return the persisted KB or None.  Raises :class:`KbStoreError` if corrupt."""
        return self.store.load()

    def get_or_build(self, root: Optional[str] = None) -> KbData:
        """
        Return the persisted KB, building it first if absent.

        A corrupt store is logged and rebuilt rather than raised.
        """
        try:
            kb = self.store.load()
        except KbStoreError as exc:
            logger.warning("KB store unreadable, rebuilding: %s", exc)
            kb = None
        if kb is None:
            kb = self.build(root)
        return kb
