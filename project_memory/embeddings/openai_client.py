import logging
from typing import List

from ..errors import EmbeddingUnavailable
from .base import EmbeddingBackend

logger = logging.getLogger(__name__)


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """Embeddings from the OpenAI (or a compatible) ``/embeddings`` endpoint.

    Needs the optional ``openai`` package:
    ``pip install 'project-memory[openai]'``.
    """

    name = "openai"

    def __init__(self, api_key: str = "", base_url: str = "https://api.openai.com/v1",
                 **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = None

    def _get_client(self):
        """Return a cached ``openai.OpenAI`` client."""
        if self._client is not None:
            return self._client
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise EmbeddingUnavailable(
                "openai package is required for OpenAI embeddings. "
                "Install it with: pip install 'project-memory[openai]'"
            ) from exc
        if not self.api_key:
            raise EmbeddingUnavailable(
                "OPENAI_API_KEY is not set (env or 'openai.api_key' in config)")
        self._client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def _embed(self, text: str, model_name: str) -> List[float]:
        client = self._get_client()
        logger.debug("[OpenAI] Embedding %d chars with %s", len(text), model_name)
        response = client.embeddings.create(model=model_name, input=[text])
        if not response.data:
            return []
        return list(response.data[0].embedding)
