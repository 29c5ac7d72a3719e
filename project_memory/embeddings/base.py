import logging
import random
import time
from abc import ABC, abstractmethod
from typing import List

from ..errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)


class EmbeddingBackend(ABC):
    """A service (or local function) that turns text into a vector."""

    name = "base"

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0):
        self.max_retries = max(1, int(max_retries))
        self.retry_delay = retry_delay

    # ── Public entry point ──

    def embed(self, text: str, model_name: str) -> List[float]:
        """Embed *text* with automatic retry and exponential backoff.

        Raises :class:`EmbeddingUnavailable` after all retries are
        exhausted.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                vector = self._embed(text, model_name)
                if vector is not None and len(vector) > 0:
                    return [float(x) for x in vector]
                last_error = EmbeddingUnavailable(f"{self.name} returned an empty embedding")
                logger.warning(
                    "[%s] Empty embedding on attempt %d/%d",
                    self.name, attempt, self.max_retries)
            except EmbeddingUnavailable:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    "[%s] Embedding error on attempt %d/%d: %s",
                    self.name, attempt, self.max_retries, e)

            if attempt < self.max_retries:
                # Jittered exponential backoff
                wait = self.retry_delay * (2 ** (attempt - 1))
                jitter = wait * 0.1 * random.random()
                if "429" in str(last_error):
                    wait *= 2
                    logger.info("[%s] Rate limit detected (429). Backing off for %.1fs",
                                self.name, wait)
                time.sleep(wait + jitter)

        raise EmbeddingUnavailable(
            f"{self.name} embedding failed after {self.max_retries} attempt(s): {last_error}")

    # ── Subclass hook ──

    @abstractmethod
    def _embed(self, text: str, model_name: str) -> List[float]:
        """Return the raw embedding of *text* under *model_name*."""
