"""
Unit tests for project_memory.embeddings.provider
"""

from __future__ import annotations

import numpy as np
import pytest

from project_memory.config import Config
from project_memory.embeddings import (
    BUILTIN_MODELS,
    EmbeddingBackend,
    EmbeddingProvider,
    ModelSpec,
)
from project_memory.errors import EmbeddingUnavailable, ValidationError


class _ConstantBackend(EmbeddingBackend):
    name = "constant"

    def __init__(self, vector):
        super().__init__(max_retries=1, retry_delay=0.0)
        self.vector = vector
        self.models_seen = []

    def _embed(self, text, model_name):
        self.models_seen.append(model_name)
        return list(self.vector)


class TestRegistry:

    def test_builtin_models(self):
        provider = EmbeddingProvider()
        assert provider.dimension("nomic-embed-text") == 768
        assert provider.get_model("text-embedding-3-small").backend == "openai"
        assert {m.model_id for m in provider.models()} >= set(BUILTIN_MODELS)

    def test_unknown_model(self):
        with pytest.raises(ValidationError, match="Unknown embedding model"):
            EmbeddingProvider().get_model("word2vec")

    def test_models_from_config(self, tmp_path):
        config = Config({
            "data_dir": str(tmp_path),
            "embedding_models": {"local-hash": {"dimension": 64, "backend": "hashing"}},
        })
        provider = EmbeddingProvider(config)
        vector, dimension = provider.embed("cache invalidation", "local-hash")
        assert dimension == 64
        assert len(vector) == 64

    def test_register_rejects_bad_models(self):
        provider = EmbeddingProvider()
        with pytest.raises(ValidationError):
            provider.register(ModelSpec("m", 0, "hashing"))
        with pytest.raises(ValidationError):
            provider.register(ModelSpec("m", 8, "carrier-pigeon"))

    def test_backend_model_name(self):
        provider = EmbeddingProvider()
        backend = _ConstantBackend([1.0, 2.0])
        provider.register_backend("constant", backend)
        provider.register(ModelSpec("alias", 2, "constant", name="vendor/model-v3"))
        provider.embed("hello", "alias")
        assert backend.models_seen == ["vendor/model-v3"]


class TestEmbed:

    def test_vectors_are_normalised(self):
        vector, dimension = EmbeddingProvider().embed("Use PostgreSQL for storage", "hash-256")
        assert dimension == 256
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_deterministic(self):
        provider = EmbeddingProvider()
        assert provider.embed("same text", "hash-384") == provider.embed("same text", "hash-384")

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_text(self, text):
        with pytest.raises(ValidationError):
            EmbeddingProvider().embed(text, "hash-256")

    def test_wrong_dimension(self):
        provider = EmbeddingProvider()
        provider.register_backend("constant", _ConstantBackend([1.0, 2.0, 3.0]))
        provider.register(ModelSpec("short", 2, "constant"))
        with pytest.raises(EmbeddingUnavailable, match="expected 2"):
            provider.embed("hello", "short")

    def test_degenerate_vector(self):
        provider = EmbeddingProvider()
        provider.register_backend("constant", _ConstantBackend([0.0, 0.0]))
        provider.register(ModelSpec("zero", 2, "constant"))
        with pytest.raises(EmbeddingUnavailable, match="degenerate"):
            provider.embed("hello", "zero")

    def test_backend_failure_surfaces_as_unavailable(self, provider, backends):
        backends["concept"].fail = True
        with pytest.raises(EmbeddingUnavailable):
            provider.embed("hello", "concept-v1")
