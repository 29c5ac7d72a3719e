"""
Embedding provider: resolves a model id to a backend and returns
L2-normalised vectors of the model's declared dimension.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np

from ..errors import EmbeddingUnavailable, ValidationError
from .base import EmbeddingBackend
from .hashing import HashingEmbeddingBackend
from .ollama import OllamaEmbeddingBackend
from .openai_client import OpenAIEmbeddingBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """A registered embedding model.

    ``name`` is the model name sent to the backend; it defaults to
    ``model_id``.
    """

    model_id: str
    dimension: int
    backend: str
    name: str = ""

    @property
    def backend_model(self) -> str:
        return self.name or self.model_id


BUILTIN_MODELS: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec("nomic-embed-text", 768, "ollama"),
        ModelSpec("mxbai-embed-large", 1024, "ollama"),
        ModelSpec("all-minilm", 384, "ollama"),
        ModelSpec("text-embedding-3-small", 1536, "openai"),
        ModelSpec("text-embedding-3-large", 3072, "openai"),
        ModelSpec("hash-256", 256, "hashing"),
        ModelSpec("hash-384", 384, "hashing"),
    )
}


class EmbeddingProvider:
    """Turns text into vectors under a named model.

    Parameters
    ----------
    config:
        A :class:`~project_memory.config.Config`; supplies backend
        endpoints, retry settings and extra models from the
        ``embedding_models`` section.
    """

    def __init__(self, config=None):
        self._config = config
        self._models: dict[str, ModelSpec] = dict(BUILTIN_MODELS)
        self._backends: dict[object, EmbeddingBackend] = {}
        self._factories: dict[str, Callable[[ModelSpec], EmbeddingBackend]] = {
            "ollama": self._make_ollama,
            "openai": self._make_openai,
            "hashing": self._make_hashing,
        }
        if config is not None:
            for model_id, spec in config.EMBEDDING_MODELS.items():
                self.register(ModelSpec(
                    model_id=model_id,
                    dimension=int(spec.get("dimension", 0)),
                    backend=str(spec.get("backend", "ollama")),
                    name=str(spec.get("name", "")),
                ))

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, spec: ModelSpec) -> None:
        """Add (or replace) a model definition."""
        if spec.dimension <= 0:
            raise ValidationError(f"Model '{spec.model_id}' needs a positive dimension")
        if spec.backend not in self._factories and spec.backend not in self._backends:
            raise ValidationError(
                f"Model '{spec.model_id}' uses unknown backend '{spec.backend}'")
        self._models[spec.model_id] = spec
        logger.debug("Registered embedding model %s (%s, %dd)",
                     spec.model_id, spec.backend, spec.dimension)

    def register_backend(self, name: str, backend: EmbeddingBackend) -> None:
        """Install a ready-made backend under *name*, replacing any factory."""
        self._backends[name] = backend
        self._factories.pop(name, None)

    def models(self) -> list[ModelSpec]:
        return sorted(self._models.values(), key=lambda s: s.model_id)

    def get_model(self, model_id: str) -> ModelSpec:
        spec = self._models.get(model_id)
        if spec is None:
            raise ValidationError(
                f"Unknown embedding model '{model_id}'. "
                f"Known: {', '.join(sorted(self._models))}")
        return spec

    def dimension(self, model_id: str) -> int:
        return self.get_model(model_id).dimension

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def embed(self, text: str, model_id: str) -> tuple[list[float], int]:
        """
        Embed *text* under *model_id*.

        Returns
        -------
        tuple[list[float], int]
            The L2-normalised vector and its dimension.

        Raises
        ------
        ValidationError
            Empty text or unknown model.
        EmbeddingUnavailable
            The backend failed after retries or returned a vector of the
            wrong size.
        """
        if text is None or not str(text).strip():
            raise ValidationError("Cannot embed empty text")
        spec = self.get_model(model_id)
        backend = self._backend_for(spec)
        raw = backend.embed(str(text), spec.backend_model)
        if len(raw) != spec.dimension:
            raise EmbeddingUnavailable(
                f"Model '{model_id}' returned {len(raw)} dimensions, expected {spec.dimension}")
        vec = np.asarray(raw, dtype=np.float64)
        norm = np.linalg.norm(vec)
        if not np.isfinite(norm) or norm == 0:
            raise EmbeddingUnavailable(f"Model '{model_id}' returned a degenerate vector")
        return (vec / norm).tolist(), spec.dimension

    def _backend_for(self, spec: ModelSpec) -> EmbeddingBackend:
        if spec.backend in self._backends:
            return self._backends[spec.backend]
        key = (spec.backend, spec.dimension) if spec.backend == "hashing" else spec.backend
        backend = self._backends.get(key)
        if backend is None:
            factory = self._factories.get(spec.backend)
            if factory is None:
                raise ValidationError(f"Unknown embedding backend '{spec.backend}'")
            backend = factory(spec)
            self._backends[key] = backend
        return backend

    # ------------------------------------------------------------------
    # Backend factories
    # ------------------------------------------------------------------

    def _retry_kwargs(self) -> dict:
        if self._config is None:
            return {}
        return {
            "max_retries": self._config.EMBED_MAX_RETRIES,
            "retry_delay": self._config.EMBED_RETRY_DELAY,
        }

    def _make_ollama(self, spec: ModelSpec) -> EmbeddingBackend:
        base_url = self._config.OLLAMA_BASE_URL if self._config else "http://localhost:11434"
        return OllamaEmbeddingBackend(base_url=base_url, **self._retry_kwargs())

    def _make_openai(self, spec: ModelSpec) -> EmbeddingBackend:
        kwargs = self._retry_kwargs()
        if self._config is not None:
            kwargs.update(api_key=self._config.OPENAI_API_KEY,
                          base_url=self._config.OPENAI_BASE_URL)
        return OpenAIEmbeddingBackend(**kwargs)

    def _make_hashing(self, spec: ModelSpec) -> EmbeddingBackend:
        return HashingEmbeddingBackend(dimension=spec.dimension, max_retries=1)
