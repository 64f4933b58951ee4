"""
Semantic search over the project Knowledge Base.

Embeds a free-text query with the same provider used for indexing and
ranks every stored record by cosine similarity.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from .embedder import EmbeddingError
from .store import KbData, SearchResult, rank

if TYPE_CHECKING:
    from .indexer import KbIndexer

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 8
MAX_TOP_K = 32


class InvalidQueryError(ValueError):
    """The query was rejected before any work was done (client error)."""


class SearchError(Exception):
    """The query could not be answered (internal failure, no partial results)."""


def clamp_top_k(
    value: Optional[int],
    default: int = DEFAULT_TOP_K,
    maximum: int = MAX_TOP_K,
) -> int:
    """Resolve a requested result count: missing or < 1 gives *default*, capped at *maximum*."""
    if value is None:
        return min(default, maximum)
    try:
        value = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidQueryError(f"topK must be an integer, got {value!r}") from exc
    if value < 1:
        value = default
    return min(value, maximum)


def search(
    query: str,
    top_k: int = DEFAULT_TOP_K,
    kb: Optional[KbData] = None,
    *,
    indexer: "KbIndexer",
) -> list[SearchResult]:
    """
    Return up to *top_k* records most similar to *query*.

    Parameters
    ----------
    query:
        Natural-language search string.
    top_k:
        Maximum number of results.
    kb:
        Store to search.  Loaded (or built) through *indexer* if omitted.
    indexer:
        Supplies the embedding provider, config and persisted store.

    Raises
    ------
    InvalidQueryError
        If *query* is empty or blank.
    SearchError
        If the query cannot be embedded.
    """
    query = (query or "").strip()
    if not query:
        raise InvalidQueryError("Missing 'query' parameter")

    if kb is None:
        kb = indexer.get_or_build()
    if not kb.records:
        return []

    try:
        query_vector, model = indexer.embedder.embed_tagged(query)
    except EmbeddingError as exc:
        raise SearchError(f"Could not embed query: {exc}") from exc
    if not query_vector:
        raise SearchError("Query embedding is empty")

    strict = indexer.config.STRICT_MODEL_MATCH
    if not strict:
        mismatched = sum(1 for r in kb.records if r.model and r.model != model)
        if mismatched:
            logger.warning(
                "%d of %d records were embedded by a different model than %s; "
                "rebuild the KB to compare like with like",
                mismatched, len(kb.records), model,
            )

    results = rank(kb, query_vector, top_k, model=model if strict else None)
    logger.debug("Query %r -> %d result(s)", query, len(results))
    return results
