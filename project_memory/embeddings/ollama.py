import logging
from typing import List

import requests

from .base import EmbeddingBackend

logger = logging.getLogger(__name__)


class OllamaEmbeddingBackend(EmbeddingBackend):
    """Embeddings from a local Ollama server (``/api/embed``)."""

    name = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", timeout: float = 30.0,
                 **kwargs):
        super().__init__(**kwargs)
        # Derive the API root for endpoints like /api/embed
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.timeout = timeout

    def _embed(self, text: str, model_name: str) -> List[float]:
        url = f"{self._api_root}/api/embed"
        payload = {"model": model_name, "input": text}
        logger.debug("[Ollama] Embedding %d chars with %s", len(text), model_name)
        response = requests.post(url, json=payload, timeout=(10, self.timeout))
        response.raise_for_status()
        data = response.json()
        embeddings = data.get("embeddings") or [[]]
        return embeddings[0]
