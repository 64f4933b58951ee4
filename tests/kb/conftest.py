"""
Shared fixtures for the Knowledge Base tests.

No test talks to a real embedding backend: :class:`FakeEmbedder` produces
deterministic letter-count vectors and records every text it embeds.
"""

from __future__ import annotations

import pytest

from project_kb.kb.embedder import EmbeddingError, EmbeddingProvider

_CONFIG_ENV = (
    "EMBED_PROVIDER", "REMOTE_EMBED_BACKEND", "OLLAMA_BASE_URL",
    "OLLAMA_EMBED_MODEL", "OPENAI_API_KEY", "OPENAI_BASE_URL",
    "OPENAI_EMBED_MODEL", "LOCAL_EMBED_MODEL", "KB_PROJECT_ROOT",
    "KB_DATA_DIR", "KB_CHUNK_LINES", "KB_MAX_FILE_BYTES", "KB_TOP_K",
    "KB_MAX_TOP_K", "KB_SNIPPET_CHARS", "KB_EMBED_DELAY", "KB_EMBED_TIMEOUT",
    "KB_EMBED_MAX_RETRIES", "KB_BUILD_WORKERS", "KB_STRICT",
    "KB_STRICT_MODEL_MATCH", "KB_FOLLOW_SYMLINKS",
)


class FakeEmbedder(EmbeddingProvider):
    """Bag-of-letters embedder; raises for any text containing *fail_on*."""

    def __init__(self, tag: str = "fake:letters", fail_on: str | None = None) -> None:
        self.tag = tag
        self.fail_on = fail_on
        self.calls: list[str] = []

    @property
    def model_tag(self) -> str:
        return self.tag

    def _embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError(f"refusing to embed {self.fail_on!r}")
        vec = [0.0] * 26
        for ch in text.lower():
            if "a" <= ch <= "z":
                vec[ord(ch) - ord("a")] += 1.0
        return vec


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every config environment variable for the test."""
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_dir(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, project_dir, clean_env):
    """Factory building a Config rooted in tmp_path with YAML-style overrides."""
    from project_kb.config import Config

    def _make(**overrides):
        data = {
            "project_root": str(project_dir),
            "data_dir": str(tmp_path / "dev-data"),
            "embed_delay": 0,
        }
        data.update(overrides)
        return Config(data)

    return _make


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def indexer(make_config, fake_embedder):
    from project_kb.kb.indexer import KbIndexer

    return KbIndexer(make_config(), embedder=fake_embedder)
