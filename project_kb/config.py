"""
Configuration — loads settings from .projectkb.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "embed_provider": "auto",
    "remote_backend": "ollama",
    "ollama_base_url": "http://localhost:11434",
    "ollama_embed_model": "nomic-embed-text",
    "openai_api_key": "",
    "openai_base_url": None,
    "openai_embed_model": "text-embedding-3-small",
    "local_embed_model": "sentence-transformers/all-MiniLM-L6-v2",
    "project_root": None,
    "data_dir": "dev-data",
    "chunk_lines": 80,
    "max_file_bytes": 2 * 1024 * 1024,
    "top_k": 8,
    "max_top_k": 32,
    "snippet_chars": 400,
    "embed_delay": 0.02,
    "embed_timeout": 60.0,
    "embed_max_retries": 1,
    "build_workers": 1,
    "strict": False,
    "strict_model_match": False,
    "follow_symlinks": False,
}

# Config file search locations
_CONFIG_FILENAMES = [".projectkb.yaml", ".projectkb.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Knowledge-base configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .projectkb.yaml config file
    4. Built-in defaults

    Values are read once here; a running build never re-reads them.
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None and env_val != "":
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None and env_val != "":
                return env_val.strip().lower() in ("1", "true", "yes", "on")
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        # Embedding provider selection
        self.EMBED_PROVIDER = _get("EMBED_PROVIDER", "embed_provider",
                                   _DEFAULTS["embed_provider"]).strip().lower()
        self.REMOTE_BACKEND = _get("REMOTE_EMBED_BACKEND", "remote_backend",
                                   _DEFAULTS["remote_backend"]).strip().lower()

        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])
        self.OLLAMA_EMBED_MODEL = _get("OLLAMA_EMBED_MODEL", "ollama_embed_model",
                                       _DEFAULTS["ollama_embed_model"])

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])
        self.OPENAI_EMBED_MODEL = _get("OPENAI_EMBED_MODEL", "openai_embed_model",
                                       _DEFAULTS["openai_embed_model"])

        self.LOCAL_EMBED_MODEL = _get("LOCAL_EMBED_MODEL", "local_embed_model",
                                      _DEFAULTS["local_embed_model"])

        # Paths
        self.PROJECT_ROOT = os.path.abspath(
            _get("KB_PROJECT_ROOT", "project_root", None) or os.getcwd()
        )
        self.DATA_DIR = os.path.abspath(
            _get("KB_DATA_DIR", "data_dir", _DEFAULTS["data_dir"])
        )

        # Scanning
        self.CHUNK_LINES = _get("KB_CHUNK_LINES", "chunk_lines",
                                _DEFAULTS["chunk_lines"], cast=int)
        self.MAX_FILE_BYTES = _get("KB_MAX_FILE_BYTES", "max_file_bytes",
                                   _DEFAULTS["max_file_bytes"], cast=int)
        self.FOLLOW_SYMLINKS = _get_bool("KB_FOLLOW_SYMLINKS", "follow_symlinks",
                                         _DEFAULTS["follow_symlinks"])

        # Search
        self.TOP_K = _get("KB_TOP_K", "top_k", _DEFAULTS["top_k"], cast=int)
        self.MAX_TOP_K = _get("KB_MAX_TOP_K", "max_top_k",
                              _DEFAULTS["max_top_k"], cast=int)
        self.SNIPPET_CHARS = _get("KB_SNIPPET_CHARS", "snippet_chars",
                                  _DEFAULTS["snippet_chars"], cast=int)
        self.STRICT_MODEL_MATCH = _get_bool("KB_STRICT_MODEL_MATCH",
                                            "strict_model_match",
                                            _DEFAULTS["strict_model_match"])

        # Embedding calls
        self.EMBED_DELAY = _get("KB_EMBED_DELAY", "embed_delay",
                                _DEFAULTS["embed_delay"], cast=float)
        self.EMBED_TIMEOUT = _get("KB_EMBED_TIMEOUT", "embed_timeout",
                                  _DEFAULTS["embed_timeout"], cast=float)
        self.EMBED_MAX_RETRIES = max(1, _get("KB_EMBED_MAX_RETRIES",
                                             "embed_max_retries",
                                             _DEFAULTS["embed_max_retries"],
                                             cast=int))

        # Build
        self.BUILD_WORKERS = max(1, _get("KB_BUILD_WORKERS", "build_workers",
                                         _DEFAULTS["build_workers"], cast=int))
        self.STRICT = _get_bool("KB_STRICT", "strict", _DEFAULTS["strict"])

    @property
    def store_path(self) -> str:
        """Path of the persisted KB document."""
        return os.path.join(self.DATA_DIR, "project-kb.json")

    @property
    def cache_path(self) -> str:
        """Path of the persisted per-file embedding cache."""
        return os.path.join(self.DATA_DIR, "kb-cache.json")

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
