from .base import EmbeddingBackend
from .hashing import HashingEmbeddingBackend
from .ollama import OllamaEmbeddingBackend
from .openai_client import OpenAIEmbeddingBackend
from .provider import BUILTIN_MODELS, EmbeddingProvider, ModelSpec
