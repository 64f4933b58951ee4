"""
KB store — the persisted, versioned collection of embedded chunk records.

Storage: a single JSON document (``project-kb.json``) in the data
directory, rewritten wholesale on every build.  Ranking is a linear scan
with cosine similarity; ties keep insertion order.
"""

from __future__ import annotations

import json
import logging
import math
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .cache import write_json_atomic
from .chunker import Chunk

logger = logging.getLogger(__name__)

KB_VERSION = 1


class KbStoreError(Exception):
    """Raised when the persisted store cannot be read or written."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class KbRecord:
    """One embedded chunk."""
    id: str
    file_path: str
    rel_path: Optional[str]
    start_line: int
    end_line: int
    content: str
    language: str
    embedding: list[float]
    model: str = ""     # "<backend>:<model>" that produced the embedding

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filePath": self.file_path,
            "relPath": self.rel_path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "content": self.content,
            "language": self.language,
            "embedding": self.embedding,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KbRecord":
        return cls(
            id=str(data["id"]),
            file_path=data["filePath"],
            rel_path=data.get("relPath"),
            start_line=int(data.get("startLine", 0)),
            end_line=int(data.get("endLine", 0)),
            content=data.get("content", ""),
            language=data.get("language", "text"),
            embedding=list(data.get("embedding") or []),
            model=data.get("model") or "",
        )


@dataclass
class KbData:
    """The whole knowledge base."""
    version: int = KB_VERSION
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    records: list[KbRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KbData":
        return cls(
            version=int(data.get("version", KB_VERSION)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            records=[KbRecord.from_dict(r) for r in data.get("records", [])],
        )


@dataclass
class SearchResult:
    """A record and its similarity to the query.  *record* is not copied."""
    record: KbRecord
    score: float


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    Cosine similarity of *a* and *b* over their common prefix.

    Vectors of different lengths are compared on the first
    ``min(len(a), len(b))`` components.  Empty input or a zero magnitude
    yields exactly ``0.0``.
    """
    if not a or not b:
        return 0.0
    n = min(len(a), len(b))
    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for i in range(n):
        va = a[i]
        vb = b[i]
        dot += va * vb
        mag_a += va * va
        mag_b += vb * vb
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0
    score = dot / (math.sqrt(mag_a) * math.sqrt(mag_b))
    if not math.isfinite(score):
        return 0.0
    return score


def rank(
    kb: KbData,
    query_vector: list[float],
    top_k: int = 8,
    model: Optional[str] = None,
) -> list[SearchResult]:
    """
    Score every record against *query_vector* and return the best *top_k*.

    Parameters
    ----------
    kb:
        Store to search.
    query_vector:
        Embedded query.
    top_k:
        Maximum number of results.
    model:
        When given, records tagged with a different model are skipped.
        Untagged records are always compared.

    Returns
    -------
    list[SearchResult]
        Non-increasing score order; equal scores keep insertion order.
    """
    if top_k <= 0:
        return []
    scored = [
        SearchResult(record=rec, score=cosine_similarity(query_vector, rec.embedding))
        for rec in kb.records
        if not model or not rec.model or rec.model == model
    ]
    # sorted() is stable, and reverse=True keeps equal items in input order
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored[:top_k]


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def make_record_id(rel_path: str, start_line: int, end_line: int) -> str:
    """Deterministic UUID5 for a chunk position; stable across rebuilds."""
    key = f"{rel_path}:{start_line}:{end_line}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def create_kb(
    pairs: Iterable[tuple[Chunk, list[float], str]],
    root: Optional[str] = None,
) -> KbData:
    """
    Build a fresh :class:`KbData` from ``(chunk, embedding, model)`` triples.

    Triples with an empty embedding are dropped.  ``rel_path`` is computed
    against *root* when given.
    """
    records: list[KbRecord] = []
    for chunk, embedding, model in pairs:
        if not embedding:
            continue
        rel_path = (
            os.path.relpath(chunk.file_path, root).replace(os.sep, "/")
            if root else None
        )
        records.append(
            KbRecord(
                id=make_record_id(rel_path or chunk.file_path,
                                  chunk.start_line, chunk.end_line),
                file_path=chunk.file_path,
                rel_path=rel_path,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                content=chunk.content,
                language=chunk.language,
                embedding=embedding,
                model=model,
            )
        )
    return KbData(records=records)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class KbStore:
    """
    Reads and writes the KB document.

    Parameters
    ----------
    path:
        Location of ``project-kb.json``.  Its directory is created on save.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Optional[KbData]:
        """
        Return the persisted KB, or None if it has not been built.

        Raises
        ------
        KbStoreError
            If the document exists but is unreadable or malformed.
        """
        if not self.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw: Any = json.load(fh)
        except (OSError, ValueError) as exc:
            raise KbStoreError(f"Cannot load KB store {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise KbStoreError(f"KB store {self.path} is not a JSON object")
        try:
            return KbData.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise KbStoreError(f"KB store {self.path} is malformed: {exc}") from exc

    def save(self, kb: KbData) -> KbData:
        """Stamp ``updated_at`` and replace the persisted document with *kb*."""
        kb.updated_at = _now_iso()
        try:
            write_json_atomic(self.path, kb.to_dict())
        except OSError as exc:
            raise KbStoreError(f"Cannot write KB store {self.path}: {exc}") from exc
        logger.debug("Saved KB with %d records to %s", len(kb.records), self.path)
        return kb

    def clear(self) -> None:
        """Delete the persisted document if present."""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
