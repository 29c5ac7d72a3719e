"""
Shared fixtures.

``ConceptEmbeddingBackend`` stands in for model inference: every word
that belongs to a concept bucket (storage, transactions, auth, ...) adds
weight to that bucket's axis, so texts about the same topic embed close
together even when they share no words.
"""

from __future__ import annotations

import logging
import re

import pytest

from project_memory.api import MemoryService
from project_memory.config import Config
from project_memory.embeddings import EmbeddingBackend, EmbeddingProvider, ModelSpec

CONCEPTS: tuple[tuple[str, frozenset], ...] = (
    ("db", frozenset({"postgresql", "postgres", "database", "databases", "storage",
                      "sql", "mysql", "sqlite", "persistence", "schema"})),
    ("txn", frozenset({"acid", "transaction", "transactions", "consistency", "atomic"})),
    ("auth", frozenset({"auth", "authentication", "login", "jwt", "oauth", "token",
                        "tokens", "password"})),
    ("ui", frozenset({"frontend", "ui", "react", "component", "components", "button"})),
    ("test", frozenset({"test", "tests", "testing", "pytest", "coverage"})),
    ("deploy", frozenset({"deploy", "deployment", "docker", "kubernetes", "release"})),
    ("cache", frozenset({"cache", "caching", "redis", "memcached"})),
)

# concept axes + one axis for unknown words + a constant bias axis
BASE_DIM = len(CONCEPTS) + 2
WIDE_DIM = BASE_DIM + 3

_WORD_RE = re.compile(r"\w+")

_ENV_KEYS = (
    "MEMORY_DATA_DIR", "MEMORY_PROJECT", "MEMORY_EMBEDDING_MODEL", "OLLAMA_BASE_URL",
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "MEMORY_DISTANCE_METRIC",
    "MEMORY_HYBRID_MIN_SIMILARITY", "MEMORY_KEYWORD_WEIGHT", "MEMORY_VECTOR_WEIGHT",
    "MEMORY_DUAL_MATCH_BOOST", "MEMORY_KEYWORD_BOOST_TOP_K", "MEMORY_EMBED_MAX_RETRIES",
    "MEMORY_EMBED_RETRY_DELAY", "MEMORY_QUERY_EXPANSION", "MEMORY_LOG_DIR",
    "MEMORY_LOG_LEVEL",
)


class ConceptEmbeddingBackend(EmbeddingBackend):
    """Deterministic topic-axis embeddings for tests."""

    name = "concept"

    def __init__(self, dimension: int = BASE_DIM, poison: str | None = None):
        super().__init__(max_retries=1, retry_delay=0.0)
        self.dimension = dimension
        self.poison = poison
        self.fail = False
        self.calls = 0
        # Called once, before the next embedding
        self.hook = None

    def _embed(self, text, model_name):
        self.calls += 1
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        if self.fail:
            raise ConnectionError("concept backend offline")
        words = _WORD_RE.findall(text.lower())
        if self.poison and self.poison in words:
            raise ValueError(f"cannot embed text mentioning '{self.poison}'")

        vec = [0.0] * self.dimension
        for word in words:
            for axis, (_, vocabulary) in enumerate(CONCEPTS):
                if word in vocabulary:
                    vec[axis] += 1.0
                    break
            else:
                vec[len(CONCEPTS)] += 0.1
        vec[len(CONCEPTS) + 1] = 0.5
        return vec


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep the developer's MEMORY_* settings out of the tests."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    pkg_logger = logging.getLogger("project_memory")
    for handler in list(pkg_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            pkg_logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def config(tmp_path):
    return Config({
        "data_dir": str(tmp_path / "memory"),
        "embedding_model": "concept-v1",
        "embed_max_retries": 1,
        "embed_retry_delay": 0,
    })


@pytest.fixture
def backends():
    return {
        "concept": ConceptEmbeddingBackend(),
        "concept-wide": ConceptEmbeddingBackend(dimension=WIDE_DIM),
        "concept-picky": ConceptEmbeddingBackend(dimension=WIDE_DIM, poison="poison"),
    }


@pytest.fixture
def provider(config, backends):
    provider = EmbeddingProvider(config)
    for name, backend in backends.items():
        provider.register_backend(name, backend)
    provider.register(ModelSpec("concept-v1", BASE_DIM, "concept"))
    provider.register(ModelSpec("concept-v2", WIDE_DIM, "concept-wide"))
    provider.register(ModelSpec("concept-picky-v1", WIDE_DIM, "concept-picky"))
    return provider


@pytest.fixture
def memory(config, provider):
    service = MemoryService(config, provider=provider)
    yield service
    service.close()
