"""
Configuration: loads settings from .project_memory.yaml, environment
variables, and built-in defaults (in that priority order: CLI args > env >
YAML > defaults).
"""

import os

import yaml

from .errors import ValidationError


_DEFAULTS = {
    "data_dir": ".project_memory",
    "default_project": "default",
    "embedding_model": "nomic-embed-text",
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "distance_metric": "cosine",
    "similarity_thresholds": {
        "decisions": 0.3,
        "progress": 0.3,
        "code_patterns": 0.7,
    },
    "hybrid_min_similarity": 0.2,
    "keyword_weight": 0.5,
    "vector_weight": 0.5,
    "dual_match_boost": 1.2,
    "keyword_boost_top_k": 5,
    "default_limit": 10,
    "max_limit": 50,
    "embed_max_retries": 3,
    "embed_retry_delay": 1.0,
    "query_expansion": False,
    "migration_batch_size": 100,
    "log_dir": "",
    "log_level": "WARNING",
    "embedding_models": {},
}

_DISTANCE_METRICS = ("cosine", "l2")

# Config file search locations
_CONFIG_FILENAMES = [".project_memory.yaml", ".project_memory.yml"]


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
    """Memory store configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .project_memory.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key) if env_key else None
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val.lower() == "true"
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        self.DATA_DIR = _get("MEMORY_DATA_DIR", "data_dir", _DEFAULTS["data_dir"])
        self.DEFAULT_PROJECT = _get("MEMORY_PROJECT", "default_project",
                                    _DEFAULTS["default_project"])
        self.EMBEDDING_MODEL = _get("MEMORY_EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])

        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        # Retrieval tuning
        self.DISTANCE_METRIC = _get("MEMORY_DISTANCE_METRIC", "distance_metric",
                                    _DEFAULTS["distance_metric"]).lower()
        self.HYBRID_MIN_SIMILARITY = _get("MEMORY_HYBRID_MIN_SIMILARITY",
                                          "hybrid_min_similarity",
                                          _DEFAULTS["hybrid_min_similarity"], cast=float)
        self.KEYWORD_WEIGHT = _get("MEMORY_KEYWORD_WEIGHT", "keyword_weight",
                                   _DEFAULTS["keyword_weight"], cast=float)
        self.VECTOR_WEIGHT = _get("MEMORY_VECTOR_WEIGHT", "vector_weight",
                                  _DEFAULTS["vector_weight"], cast=float)
        self.DUAL_MATCH_BOOST = _get("MEMORY_DUAL_MATCH_BOOST", "dual_match_boost",
                                     _DEFAULTS["dual_match_boost"], cast=float)
        self.KEYWORD_BOOST_TOP_K = _get("MEMORY_KEYWORD_BOOST_TOP_K",
                                        "keyword_boost_top_k",
                                        _DEFAULTS["keyword_boost_top_k"], cast=int)
        self.DEFAULT_LIMIT = _get("", "default_limit", _DEFAULTS["default_limit"], cast=int)
        self.MAX_LIMIT = _get("", "max_limit", _DEFAULTS["max_limit"], cast=int)
        self.QUERY_EXPANSION = _get_bool("MEMORY_QUERY_EXPANSION", "query_expansion",
                                         _DEFAULTS["query_expansion"])

        # Per-table similarity thresholds (partial overrides allowed)
        self.SIMILARITY_THRESHOLDS: dict[str, float] = dict(
            _DEFAULTS["similarity_thresholds"])
        thresholds_section = yd.get("similarity_thresholds", {})
        if isinstance(thresholds_section, dict):
            for table, value in thresholds_section.items():
                self.SIMILARITY_THRESHOLDS[str(table)] = float(value)

        # Embedding calls
        self.EMBED_MAX_RETRIES = _get("MEMORY_EMBED_MAX_RETRIES", "embed_max_retries",
                                      _DEFAULTS["embed_max_retries"], cast=int)
        self.EMBED_RETRY_DELAY = _get("MEMORY_EMBED_RETRY_DELAY", "embed_retry_delay",
                                      _DEFAULTS["embed_retry_delay"], cast=float)

        self.MIGRATION_BATCH_SIZE = _get("", "migration_batch_size",
                                         _DEFAULTS["migration_batch_size"], cast=int)

        # Logging
        self.LOG_DIR = _get("MEMORY_LOG_DIR", "log_dir", _DEFAULTS["log_dir"]) or \
            os.path.join(self.DATA_DIR, "logs")
        self.LOG_LEVEL = _get("MEMORY_LOG_LEVEL", "log_level",
                              _DEFAULTS["log_level"]).upper()

        # Custom embedding models: model_id -> {dimension, backend, name}
        self.EMBEDDING_MODELS: dict[str, dict] = {}
        models_section = yd.get("embedding_models", {})
        if isinstance(models_section, dict):
            for model_id, spec in models_section.items():
                if isinstance(spec, dict):
                    self.EMBEDDING_MODELS[str(model_id)] = dict(spec)

        self._validate()

    def _validate(self) -> None:
        for name in ("KEYWORD_WEIGHT", "VECTOR_WEIGHT", "HYBRID_MIN_SIMILARITY"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name.lower()} must be within [0, 1], got {value}")
        for table, value in self.SIMILARITY_THRESHOLDS.items():
            if not 0.0 <= value <= 1.0:
                raise ValidationError(
                    f"similarity threshold for '{table}' must be within [0, 1], got {value}")
        if self.DUAL_MATCH_BOOST < 1.0:
            raise ValidationError(
                f"dual_match_boost must be >= 1.0, got {self.DUAL_MATCH_BOOST}")
        if self.DISTANCE_METRIC not in _DISTANCE_METRICS:
            raise ValidationError(
                f"distance_metric must be one of {_DISTANCE_METRICS}, "
                f"got '{self.DISTANCE_METRIC}'")
        if self.DEFAULT_LIMIT < 1 or self.MAX_LIMIT < self.DEFAULT_LIMIT:
            raise ValidationError("default_limit must be >= 1 and <= max_limit")

    def threshold_for(self, table: str) -> float:
        """Return the default minimum similarity for *table*."""
        return self.SIMILARITY_THRESHOLDS.get(table, 0.3)

    @property
    def relational_db_path(self) -> str:
        return os.path.join(self.DATA_DIR, "memory.db")

    @property
    def vector_db_path(self) -> str:
        return os.path.join(self.DATA_DIR, "vectors.db")

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
