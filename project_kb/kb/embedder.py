"""
Embedding providers for the project Knowledge Base.

Every provider exposes one capability, ``embed(text) -> list[float]``.
Variants:

* :class:`OllamaEmbedder`  — remote HTTP service (``/api/embeddings``)
* :class:`OpenAIEmbedder`  — remote OpenAI-compatible Embeddings API
* :class:`LocalEmbedder`   — in-process sentence-transformers model
* :class:`FallbackEmbedder` — try a primary provider, fall back on failure

Remote providers send one request per text (no batching) and share a
:class:`Throttle` so concurrent workers respect the politeness delay in
aggregate.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

import requests

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_DELAY = 0.02
DEFAULT_TIMEOUT = 60.0
CONNECT_TIMEOUT = 10.0


class EmbeddingError(Exception):
    """Raised when a backend cannot produce an embedding for a text."""


# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------

class Throttle:
    """
    Enforce a minimum interval between consecutive calls across threads.

    Parameters
    ----------
    min_interval:
        Seconds that must separate two calls to :meth:`wait`.
    """

    def __init__(self, min_interval: float = DEFAULT_DELAY) -> None:
        self.min_interval = max(0.0, min_interval)
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> None:
        """Block until the caller may issue its request."""
        if self.min_interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            delay = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.min_interval
        if delay > 0:
            time.sleep(delay)


# ---------------------------------------------------------------------------
# Provider abstraction
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """Turns text into a fixed-length vector."""

    @property
    @abstractmethod
    def model_tag(self) -> str:
        """``"<backend>:<model>"`` identifying the vectors this provider makes."""

    @abstractmethod
    def _embed(self, text: str) -> list[float]:
        """Backend call for a non-blank *text*.  Raises :class:`EmbeddingError`."""

    def embed_tagged(self, text: str) -> tuple[list[float], str]:
        """
        Embed *text* and report which model produced the vector.

        Blank text short-circuits to ``([], "")`` without calling the
        backend; callers must drop such results before storing.
        """
        if not text or not text.strip():
            return [], ""
        return self._embed(text), self.model_tag

    def embed(self, text: str) -> list[float]:
        """Embed *text*; blank text returns an empty vector."""
        return self.embed_tagged(text)[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Sequentially embed *texts*, preserving order."""
        return [self.embed(t) for t in texts]


def _validate_vector(raw: Any, source: str) -> list[float]:
    """Coerce *raw* into a non-empty list of floats or raise."""
    if not isinstance(raw, (list, tuple)) or not raw:
        raise EmbeddingError(f"{source} returned no embedding")
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError) as exc:
        raise EmbeddingError(f"{source} returned a malformed embedding") from exc


# ---------------------------------------------------------------------------
# Remote backends
# ---------------------------------------------------------------------------

class RemoteEmbedder(EmbeddingProvider):
    """
    Common retry / throttle handling for network backends.

    Parameters
    ----------
    model:
        Model identifier sent with each request.
    timeout:
        Per-request read timeout in seconds.
    max_retries:
        Attempts per text before giving up (1 = no retry).
    throttle:
        Shared :class:`Throttle`.  A private one is created if omitted.
    """

    backend = "remote"

    def __init__(
        self,
        model: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 1,
        throttle: Optional[Throttle] = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.throttle = throttle or Throttle()

    @property
    def model_tag(self) -> str:
        return f"{self.backend}:{self.model}"

    @abstractmethod
    def _request(self, text: str) -> list[float]:
        """Issue one request.  Raises :class:`EmbeddingError`."""

    def _embed(self, text: str) -> list[float]:
        attempt = 1
        while True:
            self.throttle.wait()
            try:
                return self._request(text)
            except EmbeddingError as exc:
                if attempt >= self.max_retries:
                    raise
                wait = 2 ** (attempt - 1)
                logger.warning(
                    "[%s] Embedding error (attempt %d/%d): %s; retrying in %ds",
                    self.backend, attempt, self.max_retries, exc, wait,
                )
            time.sleep(wait)
            attempt += 1


class OllamaEmbedder(RemoteEmbedder):
    """Embeds through an Ollama server's ``POST /api/embeddings`` endpoint."""

    backend = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        **kwargs,
    ) -> None:
        super().__init__(model, **kwargs)
        # Accept either the server root or a full endpoint URL
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    @property
    def url(self) -> str:
        return f"{self._api_root}/api/embeddings"

    def _request(self, text: str) -> list[float]:
        payload = {"model": self.model, "prompt": text}
        try:
            response = requests.post(
                self.url, json=payload, timeout=(CONNECT_TIMEOUT, self.timeout)
            )
        except requests.exceptions.RequestException as exc:
            raise EmbeddingError(f"Ollama request failed: {exc}") from exc

        if not response.ok:
            raise EmbeddingError(
                f"Ollama error: {response.status_code} {response.reason} – "
                f"{response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Ollama returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise EmbeddingError("Ollama returned an unexpected payload")

        raw = data.get("embedding")
        if raw is None:
            # Newer /api/embed style: {"embeddings": [[...]]}
            embeddings = data.get("embeddings")
            if isinstance(embeddings, list) and embeddings:
                raw = embeddings[0]
        return _validate_vector(raw, "Ollama")


class OpenAIEmbedder(RemoteEmbedder):
    """Embeds through the OpenAI (or compatible) Embeddings API."""

    backend = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(model, **kwargs)
        self._api_key = api_key
        self._base_url = base_url
        self._client = None  # lazy init

    def _get_client(self):
        """Return an ``openai.OpenAI`` client, raising if unavailable."""
        if self._client is not None:
            return self._client
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise EmbeddingError(
                "openai package is required for the OpenAI backend. "
                "Install it with: pip install 'project_kb[semantic]'"
            ) from exc
        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY is not set.")
        self._client = openai.OpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self.timeout,
            max_retries=0,
        )
        return self._client

    def _request(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = client.embeddings.create(model=self.model, input=[text])
        except Exception as exc:
            raise EmbeddingError(f"OpenAI embeddings failed: {exc}") from exc
        if not response.data:
            raise EmbeddingError("OpenAI returned no embedding")
        return _validate_vector(response.data[0].embedding, "OpenAI")


# ---------------------------------------------------------------------------
# Local in-process backend
# ---------------------------------------------------------------------------

_local_models: dict[str, Any] = {}
_local_models_lock = threading.Lock()


def _load_sentence_transformer(model_id: str):
    try:
        from sentence_transformers import SentenceTransformer  # type: ignore
    except ImportError as exc:
        raise EmbeddingError(
            "sentence-transformers is required for local embeddings. "
            "Install it with: pip install 'project_kb[local]'"
        ) from exc
    logger.info("[KB] Loading local embedding model: %s", model_id)
    try:
        return SentenceTransformer(model_id)
    except Exception as exc:
        raise EmbeddingError(f"Could not load local model {model_id!r}: {exc}") from exc


def get_local_model(model_id: str):
    """
    Return the process-wide model instance for *model_id*.

    The model is loaded at most once, even when several threads ask for it
    at the same time.  A failed load is not cached, so a later call retries.
    """
    model = _local_models.get(model_id)
    if model is not None:
        return model
    with _local_models_lock:
        model = _local_models.get(model_id)
        if model is None:
            model = _load_sentence_transformer(model_id)
            _local_models[model_id] = model
    return model


class LocalEmbedder(EmbeddingProvider):
    """Mean-pooled, L2-normalised vectors from a local sentence-transformers model."""

    def __init__(self, model_id: str = "sentence-transformers/all-MiniLM-L6-v2") -> None:
        self.model_id = model_id

    @property
    def model_tag(self) -> str:
        return f"local:{self.model_id}"

    def _embed(self, text: str) -> list[float]:
        model = get_local_model(self.model_id)
        try:
            vec = model.encode(text, normalize_embeddings=True, show_progress_bar=False)
        except Exception as exc:
            raise EmbeddingError(f"Local embedding failed: {exc}") from exc
        if hasattr(vec, "tolist"):
            vec = vec.tolist()
        return _validate_vector(vec, "Local model")


# ---------------------------------------------------------------------------
# Fallback policy
# ---------------------------------------------------------------------------

class FallbackEmbedder(EmbeddingProvider):
    """Use *primary*; on any :class:`EmbeddingError` retry with *secondary*."""

    def __init__(self, primary: EmbeddingProvider, secondary: EmbeddingProvider) -> None:
        self.primary = primary
        self.secondary = secondary

    @property
    def model_tag(self) -> str:
        return self.primary.model_tag

    def _embed(self, text: str) -> list[float]:
        return self.embed_tagged(text)[0]

    def embed_tagged(self, text: str) -> tuple[list[float], str]:
        if not text or not text.strip():
            return [], ""
        try:
            return self.primary.embed_tagged(text)
        except EmbeddingError as exc:
            logger.warning(
                "[KB] %s failed, falling back to %s: %s",
                self.primary.model_tag, self.secondary.model_tag, exc,
            )
            return self.secondary.embed_tagged(text)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_remote_embedder(config: "Config", backend: Optional[str] = None) -> RemoteEmbedder:
    """Create the configured remote backend (``ollama`` or ``openai``)."""
    backend = (backend or config.REMOTE_BACKEND).lower()
    common = {
        "timeout": config.EMBED_TIMEOUT,
        "max_retries": config.EMBED_MAX_RETRIES,
        "throttle": Throttle(config.EMBED_DELAY),
    }
    if backend == "ollama":
        return OllamaEmbedder(
            base_url=config.OLLAMA_BASE_URL,
            model=config.OLLAMA_EMBED_MODEL,
            **common,
        )
    if backend == "openai":
        return OpenAIEmbedder(
            api_key=config.OPENAI_API_KEY,
            model=config.OPENAI_EMBED_MODEL,
            base_url=config.OPENAI_BASE_URL,
            **common,
        )
    raise ValueError(f"Unknown remote embedding backend: {backend!r}")


def make_embedder(config: "Config") -> EmbeddingProvider:
    """
    Build the provider selected by ``config.EMBED_PROVIDER``.

    ``remote`` and ``local`` select a single backend; ``auto`` tries the
    remote backend first and falls back to the local model.  ``ollama`` and
    ``openai`` are accepted as shorthands for ``remote`` with that backend.
    """
    mode = config.EMBED_PROVIDER
    if mode in ("ollama", "openai"):
        return make_remote_embedder(config, backend=mode)
    if mode == "remote":
        return make_remote_embedder(config)
    if mode == "local":
        return LocalEmbedder(config.LOCAL_EMBED_MODEL)
    if mode == "auto":
        return FallbackEmbedder(
            make_remote_embedder(config),
            LocalEmbedder(config.LOCAL_EMBED_MODEL),
        )
    raise ValueError(
        f"Unknown EMBED_PROVIDER {mode!r} (expected remote, local or auto)"
    )
