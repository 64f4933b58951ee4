"""
`project-kb` command line.

Commands
--------
project-kb build                       -- rebuild the KB of the current project
project-kb build --root PATH           -- rebuild the KB of PATH
project-kb build --strict              -- abort on the first embedding failure
project-kb build --workers 4           -- embed files in parallel
project-kb search "<query>"            -- semantic search
project-kb search "<query>" --top-k 5
project-kb search "<query>" --json     -- machine-readable output
project-kb status                      -- show what is persisted
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from collections import Counter
from typing import Optional

from tqdm import tqdm

from ..config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_config(args: argparse.Namespace) -> Config:
    """Load config and apply CLI overrides (CLI > env > YAML > defaults)."""
    cfg = Config.load(getattr(args, "config", None))
    if getattr(args, "root", None):
        cfg.PROJECT_ROOT = os.path.abspath(args.root)
    if getattr(args, "strict", False):
        cfg.STRICT = True
    if getattr(args, "workers", None):
        cfg.BUILD_WORKERS = max(1, args.workers)
    return cfg


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_build(args: argparse.Namespace) -> None:
    """Rebuild the knowledge base."""
    from .indexer import KbIndexer

    cfg = _load_config(args)
    indexer = KbIndexer(cfg)
    print(f"Building KB from: {cfg.PROJECT_ROOT}")

    pbar = tqdm(total=None, unit="file", desc="Embedding")

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    try:
        kb = indexer.build(progress_callback=_progress)
    except Exception as exc:
        pbar.close()
        print(f"Failed to build KB: {exc}", file=sys.stderr)
        sys.exit(1)
    pbar.close()

    s = indexer.last_summary
    print(
        f"\nKB built:\n"
        f"  Records        : {len(kb.records)}\n"
        f"  Files          : {s.file_count} ({s.cached_files} cached, "
        f"{s.embedded_files} embedded, {s.skipped_files} skipped)\n"
        f"  Chunks         : {s.chunk_count}\n"
        f"  Embedded       : {s.embedded_chunks}\n"
        f"  Failed         : {s.failed_chunks}\n"
        f"  Time           : {s.elapsed_seconds:.1f}s\n"
        f"  Store          : {cfg.store_path}"
    )


def _cmd_search(args: argparse.Namespace) -> None:
    """Semantic search over the knowledge base."""
    from ..api import search_kb
    from .indexer import KbIndexer

    cfg = _load_config(args)
    t0 = time.perf_counter()
    payload = search_kb(args.query, args.top_k, indexer=KbIndexer(cfg))
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if args.json:
        print(json.dumps(payload, indent=2))
        if not payload["ok"]:
            sys.exit(1)
        return

    if not payload["ok"]:
        print(f"Search failed: {payload['error']}", file=sys.stderr)
        sys.exit(1)

    results = payload["results"]
    if not results:
        print(f"No results found for: {args.query!r}")
        return

    print(f"\nSearch results for: {args.query!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        location = r["relPath"] or r["filePath"]
        print(f"\n  [{i}] {location}:{r['startLine']}-{r['endLine']}  ({r['language']})")
        print(f"       Score  : {r['score']:.4f}")
        snippet_lines = r["content"].splitlines()
        if snippet_lines:
            preview = "\n         ".join(snippet_lines[:5])
            if len(snippet_lines) > 5:
                preview += f"\n         ... ({len(snippet_lines) - 5} more lines)"
            print(f"       Text   :\n         {preview}")

    print(f"\n  Search time: {elapsed_ms:.1f}ms")


def _cmd_status(args: argparse.Namespace) -> None:
    """Show what the persisted KB contains."""
    from .indexer import KbIndexer
    from .store import KbStoreError

    cfg = _load_config(args)
    indexer = KbIndexer(cfg)
    print(f"Store file : {cfg.store_path}")
    print(f"Cache file : {cfg.cache_path}")
    try:
        kb = indexer.load()
    except KbStoreError as exc:
        print(f"Status     : CORRUPT ({exc})")
        sys.exit(1)
    if kb is None:
        print("Status     : NOT BUILT\n\nRun `project-kb build` to create it.")
        return

    files = {r.file_path for r in kb.records}
    models = Counter(r.model or "(untagged)" for r in kb.records)
    print(f"Status     : BUILT (schema v{kb.version})")
    print(f"Created    : {kb.created_at}")
    print(f"Updated    : {kb.updated_at}")
    print(f"Records    : {len(kb.records)} from {len(files)} file(s)")
    for model, count in models.most_common():
        print(f"  {model:<50} {count}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="project-kb",
        description="Project knowledge-base indexer and semantic search",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to a .projectkb.yaml file",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="More log output (-v info, -vv debug)",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # --- build ---
    build_p = subparsers.add_parser("build", help="Rebuild the knowledge base")
    build_p.add_argument("--root", default=None, help="Project directory (default: CWD)")
    build_p.add_argument(
        "--strict", action="store_true",
        help="Abort on the first chunk that cannot be embedded",
    )
    build_p.add_argument(
        "--workers", type=int, default=None,
        help="Number of files embedded in parallel",
    )
    build_p.set_defaults(func=_cmd_build)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Semantic search over the knowledge base")
    search_p.add_argument("query", help="Natural-language search query")
    search_p.add_argument(
        "--top-k", dest="top_k", type=int, default=None,
        help="Number of results to return (default: 8, max: 32)",
    )
    search_p.add_argument("--root", default=None, help="Project directory (default: CWD)")
    search_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    search_p.set_defaults(func=_cmd_search)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show the persisted KB summary")
    status_p.set_defaults(func=_cmd_status)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `project-kb` command.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to sys.argv if None.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging if not already configured
    if not logging.root.handlers:
        level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
        logging.basicConfig(
            level=level,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
