"""
Local feature-hashing embeddings.

Maps word unigrams and bigrams into a fixed number of buckets with a
signed hash.  Needs no network or model download, so it is the backend of
choice for offline use and for tests; texts sharing vocabulary land close
together, but there is no notion of synonyms.
"""

from __future__ import annotations

import hashlib
import re
from typing import List

import numpy as np

from .base import EmbeddingBackend

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# Bigram features count for less than unigrams
_BIGRAM_WEIGHT = 0.5


def _bucket(feature: str, dimension: int) -> tuple[int, float]:
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "little")
    sign = 1.0 if value & 1 else -1.0
    return (value >> 1) % dimension, sign


class HashingEmbeddingBackend(EmbeddingBackend):
    """Deterministic bag-of-words hashing into ``dimension`` buckets."""

    name = "hashing"

    def __init__(self, dimension: int = 256, **kwargs):
        super().__init__(**kwargs)
        self.dimension = int(dimension)

    def _embed(self, text: str, model_name: str) -> List[float]:
        dimension = self.dimension
        vec = np.zeros(dimension, dtype=np.float64)
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            tokens = [text.strip() or text]
        for token in tokens:
            idx, sign = _bucket(token, dimension)
            vec[idx] += sign
        for left, right in zip(tokens, tokens[1:]):
            idx, sign = _bucket(f"{left} {right}", dimension)
            vec[idx] += sign * _BIGRAM_WEIGHT

        if not np.any(vec):
            # Features cancelled out; fall back to a fixed axis
            vec[_bucket(text, dimension)[0]] = 1.0
        return vec.tolist()
