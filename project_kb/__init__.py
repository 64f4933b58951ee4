"""
project_kb — project knowledge-base indexer and semantic search.

Public API for library usage::

    from project_kb import build_kb, search_kb

    build_kb("/path/to/project")
    payload = search_kb("chapter export", top_k=5)
"""

from .api import build_kb, search_kb

__all__ = ["build_kb", "search_kb"]
