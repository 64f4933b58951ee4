"""
Unit tests for project_kb.kb.cache
"""

from __future__ import annotations

import hashlib
import json
import logging
import os

import pytest

from project_kb.kb.cache import (
    CacheEntry, CacheError, EmbeddingCache, hash_file, write_json_atomic,
)


class TestHashFile:
    def test_sha256_of_raw_bytes(self, tmp_path):
        p = tmp_path / "a.md"
        p.write_bytes(b"Chapter 1\r\nHello")
        assert hash_file(str(p)) == hashlib.sha256(b"Chapter 1\r\nHello").hexdigest()

    def test_any_byte_change_changes_hash(self, tmp_path):
        p = tmp_path / "a.md"
        p.write_bytes(b"hello")
        before = hash_file(str(p))
        p.write_bytes(b"hello ")
        assert hash_file(str(p)) != before


class TestCacheEntry:
    def test_valid_only_for_same_hash_and_count(self):
        entry = CacheEntry("abc", [[1.0], [2.0]])
        assert entry.is_valid_for("abc", 2)
        assert not entry.is_valid_for("abd", 2)
        assert not entry.is_valid_for("abc", 3)

    def test_valid_only_for_matching_model(self):
        entry = CacheEntry("abc", [[1.0], [2.0]], ["ollama:m", ""])
        assert entry.is_valid_for("abc", 2, "ollama:m")
        assert not entry.is_valid_for("abc", 2, "local:m")
        assert entry.is_valid_for("abc", 2)

    def test_untagged_entry_valid_for_any_model(self):
        assert CacheEntry("abc", [[1.0]]).is_valid_for("abc", 1, "local:m")

    def test_model_at_tolerates_missing_tags(self):
        entry = CacheEntry("abc", [[1.0], [2.0]], ["ollama:m"])
        assert entry.model_at(0) == "ollama:m"
        assert entry.model_at(1) == ""

    def test_from_dict_rejects_malformed(self):
        with pytest.raises(ValueError):
            CacheEntry.from_dict({"hash": "abc"})
        with pytest.raises(ValueError):
            CacheEntry.from_dict(["not", "a", "dict"])

    def test_from_dict_without_models(self):
        entry = CacheEntry.from_dict({"hash": "h", "embeddings": [[0.5]]})
        assert entry.models == []


class TestEmbeddingCache:
    def test_missing_file_is_empty(self, tmp_path):
        assert EmbeddingCache(str(tmp_path / "kb-cache.json")).load() == {}

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "dev-data" / "kb-cache.json"
        cache = EmbeddingCache(str(path))
        cache.save({"/p/a.md": CacheEntry("h1", [[0.1, 0.2]], ["fake:m"])})

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk == {
            "/p/a.md": {"hash": "h1", "embeddings": [[0.1, 0.2]], "models": ["fake:m"]}
        }
        loaded = cache.load()
        assert loaded["/p/a.md"].hash == "h1"
        assert loaded["/p/a.md"].embeddings == [[0.1, 0.2]]

    def test_reads_entries_without_model_tags(self, tmp_path):
        path = tmp_path / "kb-cache.json"
        path.write_text(json.dumps({"/p/a.md": {"hash": "h", "embeddings": [[1.0]]}}),
                        encoding="utf-8")
        assert EmbeddingCache(str(path)).load()["/p/a.md"].embeddings == [[1.0]]

    def test_corrupt_file_is_empty(self, tmp_path, caplog):
        path = tmp_path / "kb-cache.json"
        path.write_text("{not json", encoding="utf-8")
        with caplog.at_level(logging.WARNING, logger="project_kb.kb.cache"):
            assert EmbeddingCache(str(path)).load() == {}
        assert "corrupt" in caplog.text

    def test_non_object_document_is_empty(self, tmp_path):
        path = tmp_path / "kb-cache.json"
        path.write_text("[1, 2]", encoding="utf-8")
        assert EmbeddingCache(str(path)).load() == {}

    def test_malformed_entries_are_dropped(self, tmp_path):
        path = tmp_path / "kb-cache.json"
        path.write_text(json.dumps({
            "/p/good.md": {"hash": "h", "embeddings": [[1.0]]},
            "/p/bad.md": {"embeddings": "nope"},
        }), encoding="utf-8")
        assert list(EmbeddingCache(str(path)).load()) == ["/p/good.md"]

    def test_unreadable_file_raises(self, tmp_path):
        path = tmp_path / "kb-cache.json"
        path.mkdir()
        with pytest.raises(CacheError):
            EmbeddingCache(str(path)).load()

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        cache = EmbeddingCache(str(blocker / "kb-cache.json"))
        with pytest.raises(CacheError):
            cache.save({})


class TestWriteJsonAtomic:
    def test_replaces_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json_atomic(str(path), {"v": 1})
        write_json_atomic(str(path), {"v": 2})
        assert json.loads(path.read_text(encoding="utf-8")) == {"v": 2}
        assert os.listdir(tmp_path) == ["doc.json"]

    def test_failed_write_keeps_previous_document(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json_atomic(str(path), {"v": 1})
        with pytest.raises(TypeError):
            write_json_atomic(str(path), {"v": object()})
        assert json.loads(path.read_text(encoding="utf-8")) == {"v": 1}
        assert os.listdir(tmp_path) == ["doc.json"]
