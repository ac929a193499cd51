"""Hash-based local embeddings for offline use and testing (no external API needed)."""

from __future__ import annotations

import hashlib
import math
import re

EMBEDDING_DIM = 256

_TOKEN = re.compile(r"\w+", re.UNICODE)


class LocalEmbeddings:
    """Deterministic bag-of-words embeddings via feature hashing.

    Each token is hashed into one of ``dim`` buckets with a signed weight, so
    texts sharing vocabulary land close together under cosine similarity.
    Implements EmbeddingProvider protocol.
    """

    provider_name: str = "local"
    model_id: str = "local-hash-v1"

    def __init__(self, dim: int = EMBEDDING_DIM):
        if dim < 1:
            raise ValueError("dim must be positive")
        self.dim = dim

    async def embed(self, text: str) -> list[float]:
        return self._hash_embed(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._hash_embed(t) for t in texts]

    def _hash_embed(self, text: str) -> list[float]:
        vec = [0.0] * self.dim
        for token in _TOKEN.findall(text.lower()):
            h = hashlib.sha256(token.encode()).digest()
            bucket = int.from_bytes(h[:4], "big") % self.dim
            sign = 1.0 if h[4] & 1 else -1.0
            vec[bucket] += sign

        # L2 normalize; empty text stays the zero vector
        norm = math.sqrt(sum(x * x for x in vec))
        if norm == 0:
            return vec
        return [x / norm for x in vec]
