"""
Programmatic API for the project Knowledge Base — the functions the
surrounding application calls.

Example usage::

    from project_kb import search_kb

    payload = search_kb("where is the chapter exporter?", top_k=5)
    if payload["ok"]:
        for hit in payload["results"]:
            print(hit["score"], hit["relPath"], hit["startLine"])
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import Config
from .kb.indexer import BuildCancelled, KbIndexer
from .kb.searcher import InvalidQueryError, clamp_top_k, search
from .kb.store import SearchResult

_logger = logging.getLogger(__name__)


def _result_payload(result: SearchResult, snippet_chars: int) -> dict:
    record = result.record
    return {
        "score": result.score,
        "id": record.id,
        "filePath": record.file_path,
        "relPath": record.rel_path,
        "startLine": record.start_line,
        "endLine": record.end_line,
        "language": record.language,
        "content": record.content[:snippet_chars],
    }


def search_kb(
    query: Optional[str],
    top_k: Optional[int] = None,
    *,
    config: Optional[Config] = None,
    indexer: Optional[KbIndexer] = None,
) -> dict:
    """Answer a KB query with a structured payload.

    Args:
        query: Free-text query.  Empty or missing is a client error.
        top_k: Requested result count (default ``config.TOP_K``, capped at
            ``config.MAX_TOP_K``).
        config: Settings snapshot (default: :meth:`Config.load`).
        indexer: Pre-built indexer, mainly for reuse across calls.

    Returns:
        ``{"ok": True, "results": [...]}`` on success, otherwise
        ``{"ok": False, "status": 400 | 500, "error": message}``.
    """
    indexer = indexer or KbIndexer(config)
    cfg = indexer.config
    try:
        k = clamp_top_k(top_k, default=cfg.TOP_K, maximum=cfg.MAX_TOP_K)
        results = search(query or "", k, indexer=indexer)
    except InvalidQueryError as exc:
        return {"ok": False, "status": 400, "error": str(exc)}
    except Exception as exc:
        _logger.exception("KB search failed")
        return {"ok": False, "status": 500, "error": str(exc) or "KB search failed"}

    return {
        "ok": True,
        "results": [_result_payload(r, cfg.SNIPPET_CHARS) for r in results],
    }


def build_kb(
    root: Optional[str] = None,
    *,
    config: Optional[Config] = None,
    indexer: Optional[KbIndexer] = None,
    cancel_event=None,
) -> dict:
    """Run a build as a background operation: errors are logged, not raised.

    Returns:
        ``{"ok": True, "records": n, "summary": {...}}`` or
        ``{"ok": False, "error": message}``.
    """
    indexer = indexer or KbIndexer(config)
    try:
        kb = indexer.build(root, cancel_event=cancel_event)
    except BuildCancelled as exc:
        _logger.info("KB build cancelled")
        return {"ok": False, "error": str(exc)}
    except Exception as exc:
        _logger.exception("Failed to build KB")
        return {"ok": False, "error": str(exc)}

    summary = indexer.last_summary
    return {
        "ok": True,
        "records": len(kb.records),
        "summary": dict(vars(summary)) if summary else {},
    }
