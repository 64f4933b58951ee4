"""
Integration tests for project_kb.kb.indexer

Builds run against a temporary project with the letter-count
FakeEmbedder, so every scenario is deterministic and offline.
"""

from __future__ import annotations

import json
import pathlib
import threading
import time
from unittest.mock import patch

import pytest

from conftest import FakeEmbedder


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _lines(n, prefix="line"):
    return "\n".join(f"{prefix} {i}" for i in range(1, n + 1))


class TestBuild:
    def test_empty_project(self, indexer, project_dir):
        kb = indexer.build()
        assert kb.records == []
        assert indexer.store.exists()
        assert indexer.last_summary.file_count == 0

    def test_single_small_file(self, indexer, project_dir, fake_embedder):
        _write(project_dir / "ch1.md", "Chapter 1\nHello\nWorld")
        kb = indexer.build()
        (rec,) = kb.records
        assert rec.rel_path == "ch1.md"
        assert (rec.start_line, rec.end_line) == (1, 3)
        assert rec.language == "markdown"
        assert rec.model == "fake:letters"
        assert fake_embedder.calls == ["Chapter 1\nHello\nWorld"]

    def test_long_file_is_windowed(self, indexer, project_dir):
        _write(project_dir / "big.ts", _lines(200))
        kb = indexer.build()
        assert [(r.start_line, r.end_line) for r in kb.records] == [
            (1, 80), (81, 160), (161, 200),
        ]

    def test_binary_and_ignored_files_excluded(self, indexer, project_dir):
        _write(project_dir / "keep.md", "keep me")
        (project_dir / "cover.png").write_bytes(b"\x89PNG\r\n")
        _write(project_dir / "node_modules" / "lib" / "index.js", "ignored")
        kb = indexer.build()
        assert [r.rel_path for r in kb.records] == ["keep.md"]

    def test_data_dir_inside_project_is_not_indexed(self, make_config, project_dir,
                                                    fake_embedder):
        from project_kb.kb.indexer import KbIndexer

        cfg = make_config(data_dir=str(project_dir / "kbdata"))
        idx = KbIndexer(cfg, embedder=fake_embedder)
        _write(project_dir / "a.md", "alpha")
        idx.build()
        kb = idx.build()
        assert [r.rel_path for r in kb.records] == ["a.md"]

    def test_second_build_uses_cache(self, indexer, project_dir, fake_embedder):
        _write(project_dir / "a.md", "alpha")
        _write(project_dir / "b.md", _lines(100))
        first = indexer.build()
        fake_embedder.calls.clear()

        second = indexer.build()
        assert fake_embedder.calls == []
        assert [r.to_dict() for r in second.records] == [r.to_dict() for r in first.records]
        assert indexer.last_summary.cached_files == 2
        assert indexer.last_summary.embedded_files == 0

    def test_only_changed_file_is_reembedded(self, indexer, project_dir, fake_embedder):
        _write(project_dir / "a.md", "alpha")
        _write(project_dir / "b.md", "bravo")
        indexer.build()
        fake_embedder.calls.clear()

        _write(project_dir / "b.md", "bravo changed")
        kb = indexer.build()
        assert fake_embedder.calls == ["bravo changed"]
        assert {r.content for r in kb.records} == {"alpha", "bravo changed"}

    def test_deleted_file_drops_out(self, indexer, project_dir):
        _write(project_dir / "a.md", "alpha")
        _write(project_dir / "b.md", "bravo")
        indexer.build()

        (project_dir / "b.md").unlink()
        kb = indexer.build()
        assert [r.rel_path for r in kb.records] == ["a.md"]
        cache = json.loads(open(indexer.config.cache_path, encoding="utf-8").read())
        assert list(cache) == [str(project_dir / "a.md")]

    def test_whitespace_only_chunk_gets_no_record(self, indexer, project_dir,
                                                  fake_embedder):
        _write(project_dir / "blank.md", "   \n\t\n  ")
        kb = indexer.build()
        assert kb.records == []
        assert fake_embedder.calls == []
        assert indexer.last_summary.failed_chunks == 0

    def test_failed_chunk_is_dropped_and_retried_next_build(
        self, make_config, project_dir, caplog,
    ):
        from project_kb.kb.indexer import KbIndexer

        flaky = FakeEmbedder(fail_on="BOOM")
        idx = KbIndexer(make_config(chunk_lines=1), embedder=flaky)
        _write(project_dir / "a.md", "fine\nBOOM\nalso fine")
        kb = idx.build()
        assert [r.start_line for r in kb.records] == [1, 3]
        assert idx.last_summary.failed_chunks == 1
        assert "chunk dropped" in caplog.text

        cache = json.loads(open(idx.config.cache_path, encoding="utf-8").read())
        assert str(project_dir / "a.md") not in cache

        flaky.fail_on = None
        flaky.calls.clear()
        kb = idx.build()
        assert [r.start_line for r in kb.records] == [1, 2, 3]
        assert len(flaky.calls) == 3

    def test_strict_mode_aborts_without_persisting(self, make_config, project_dir):
        from project_kb.kb.embedder import EmbeddingError
        from project_kb.kb.indexer import KbIndexer

        idx = KbIndexer(make_config(strict=True), embedder=FakeEmbedder(fail_on="BOOM"))
        _write(project_dir / "a.md", "BOOM")
        with pytest.raises(EmbeddingError):
            idx.build()
        assert not idx.store.exists()

    def test_strict_failure_keeps_previous_store(self, make_config, project_dir):
        from project_kb.kb.embedder import EmbeddingError
        from project_kb.kb.indexer import KbIndexer

        emb = FakeEmbedder()
        idx = KbIndexer(make_config(strict=True), embedder=emb)
        _write(project_dir / "a.md", "alpha")
        before = idx.build()

        emb.fail_on = "BOOM"
        _write(project_dir / "a.md", "BOOM")
        with pytest.raises(EmbeddingError):
            idx.build()
        assert [r.content for r in idx.load().records] == [r.content for r in before.records]

    def test_root_must_be_directory(self, indexer, tmp_path):
        with pytest.raises(NotADirectoryError):
            indexer.build(str(tmp_path / "nope"))

    def test_explicit_root(self, indexer, tmp_path):
        other = tmp_path / "other"
        _write(other / "x.md", "x-ray")
        kb = indexer.build(str(other))
        assert [r.rel_path for r in kb.records] == ["x.md"]

    def test_progress_callback(self, indexer, project_dir):
        _write(project_dir / "a.md", "alpha")
        _write(project_dir / "b.md", "bravo")
        seen = []
        indexer.build(progress_callback=lambda i, n, f: seen.append((i, n)))
        assert seen == [(1, 2), (2, 2)]


class TestCancellation:
    def test_preset_event_cancels(self, indexer, project_dir, fake_embedder):
        from project_kb.kb.indexer import BuildCancelled

        _write(project_dir / "a.md", "alpha")
        event = threading.Event()
        event.set()
        with pytest.raises(BuildCancelled):
            indexer.build(cancel_event=event)
        assert fake_embedder.calls == []
        assert not indexer.store.exists()

    def test_cancel_between_files(self, indexer, project_dir, fake_embedder):
        from project_kb.kb.indexer import BuildCancelled

        for name in ("a.md", "b.md", "c.md"):
            _write(project_dir / name, name)
        event = threading.Event()
        with pytest.raises(BuildCancelled):
            indexer.build(cancel_event=event,
                          progress_callback=lambda i, n, f: event.set())
        assert len(fake_embedder.calls) == 1
        assert not indexer.store.exists()
        assert not indexer.cache.load()


class TestParallelBuild:
    def test_workers_produce_same_store(self, tmp_path, project_dir, make_config):
        from project_kb.kb.indexer import KbIndexer

        for i in range(12):
            _write(project_dir / f"doc{i:02d}.md", _lines(90, prefix=f"doc {i}"))

        serial = KbIndexer(make_config(data_dir=str(tmp_path / "serial")),
                           embedder=FakeEmbedder()).build()
        parallel = KbIndexer(make_config(data_dir=str(tmp_path / "parallel"),
                                         build_workers=4),
                             embedder=FakeEmbedder()).build()
        assert [r.to_dict() for r in parallel.records] == [r.to_dict() for r in serial.records]

    def test_parallel_cancel(self, tmp_path, project_dir, make_config):
        from project_kb.kb.indexer import BuildCancelled, KbIndexer

        for i in range(6):
            _write(project_dir / f"doc{i}.md", f"doc {i}")
        idx = KbIndexer(make_config(build_workers=3), embedder=FakeEmbedder())
        event = threading.Event()
        with pytest.raises(BuildCancelled):
            idx.build(cancel_event=event, progress_callback=lambda i, n, f: event.set())
        assert not idx.store.exists()


class TestGetOrBuild:
    def test_builds_when_absent(self, indexer, project_dir):
        _write(project_dir / "a.md", "alpha")
        assert not indexer.is_built()
        kb = indexer.get_or_build()
        assert len(kb.records) == 1
        assert indexer.is_built()

    def test_returns_persisted_without_building(self, indexer, project_dir, fake_embedder):
        _write(project_dir / "a.md", "alpha")
        indexer.build()
        fake_embedder.calls.clear()
        _write(project_dir / "b.md", "bravo")
        kb = indexer.get_or_build()
        assert [r.rel_path for r in kb.records] == ["a.md"]
        assert fake_embedder.calls == []

    def test_rebuilds_corrupt_store(self, indexer, project_dir, caplog):
        _write(project_dir / "a.md", "alpha")
        _write(pathlib.Path(indexer.store.path), "{broken")
        kb = indexer.get_or_build()
        assert [r.rel_path for r in kb.records] == ["a.md"]
        assert "rebuilding" in caplog.text


class TestProviderChange:
    def test_new_model_reembeds_cached_files(self, make_config, project_dir):
        from project_kb.kb.indexer import KbIndexer
        from project_kb.kb.searcher import search

        _write(project_dir / "a.md", "alpha")
        KbIndexer(make_config(), embedder=FakeEmbedder(tag="ollama:old")).build()

        new = FakeEmbedder(tag="local:new")
        idx = KbIndexer(make_config(strict_model_match=True), embedder=new)
        kb = idx.build()
        assert new.calls == ["alpha"]
        assert [r.model for r in kb.records] == ["local:new"]
        assert [r.record.rel_path for r in search("alpha", kb=kb, indexer=idx)] == ["a.md"]

    def test_same_model_still_reuses_cache(self, make_config, project_dir):
        from project_kb.kb.indexer import KbIndexer

        _write(project_dir / "a.md", "alpha")
        KbIndexer(make_config(), embedder=FakeEmbedder(tag="ollama:m")).build()
        again = FakeEmbedder(tag="ollama:m")
        KbIndexer(make_config(), embedder=again).build()
        assert again.calls == []

    def test_untagged_entries_are_reused(self, make_config, project_dir, tmp_path):
        from project_kb.kb.cache import hash_file
        from project_kb.kb.indexer import KbIndexer

        path = project_dir / "a.md"
        _write(path, "alpha")
        cache_file = tmp_path / "dev-data" / "kb-cache.json"
        _write(cache_file, json.dumps({
            str(path): {"hash": hash_file(str(path)), "embeddings": [[1.0, 0.0]]},
        }))
        emb = FakeEmbedder(tag="local:new")
        kb = KbIndexer(make_config(), embedder=emb).build()
        assert emb.calls == []
        assert [r.embedding for r in kb.records] == [[1.0, 0.0]]


class TestDataDirectory:
    def test_same_named_project_directory_is_scanned(self, make_config, project_dir,
                                                     tmp_path, fake_embedder):
        from project_kb.kb.indexer import KbIndexer

        _write(project_dir / "docs" / "ch1.md", "chapter one")
        cfg = make_config(data_dir=str(tmp_path / "elsewhere" / "docs"))
        kb = KbIndexer(cfg, embedder=fake_embedder).build()
        assert [r.rel_path for r in kb.records] == ["docs/ch1.md"]


class TestCacheFailures:
    def test_unreadable_cache_aborts_build(self, indexer, project_dir, tmp_path):
        from project_kb.kb.cache import CacheError

        _write(project_dir / "a.md", "alpha")
        (tmp_path / "dev-data" / "kb-cache.json").mkdir(parents=True)
        with pytest.raises(CacheError):
            indexer.build()
        assert not indexer.store.exists()

    def test_cache_write_failure_aborts_build(self, indexer, project_dir):
        from project_kb.kb.cache import CacheError

        _write(project_dir / "a.md", "alpha")
        with patch.object(indexer.cache, "save", side_effect=CacheError("disk full")):
            with pytest.raises(CacheError, match="disk full"):
                indexer.build()
        assert not indexer.store.exists()


class _GatedEmbedder(FakeEmbedder):
    """Signals *started* on its first call, then blocks until *gate* opens."""

    def __init__(self, started, gate, **kwargs):
        super().__init__(**kwargs)
        self.started = started
        self.gate = gate

    def _embed(self, text):
        self.started.set()
        self.gate.wait(5)
        return super()._embed(text)


class TestBuildLock:
    def test_builds_on_one_data_dir_are_serialized(self, make_config, project_dir):
        from project_kb.kb.indexer import KbIndexer

        _write(project_dir / "a.md", "alpha")
        started, gate = threading.Event(), threading.Event()
        first = KbIndexer(make_config(), embedder=_GatedEmbedder(started, gate))
        second_emb = FakeEmbedder(tag="fake:second")
        second = KbIndexer(make_config(), embedder=second_emb)

        t1 = threading.Thread(target=first.build)
        t2 = threading.Thread(target=second.build)
        t1.start()
        assert started.wait(5)
        t2.start()
        time.sleep(0.2)
        assert second_emb.calls == []

        gate.set()
        t1.join(5)
        t2.join(5)
        assert second_emb.calls == ["alpha"]
        assert [r.model for r in second.load().records] == ["fake:second"]
