"""Test doubles for the memory system."""
import hashlib
from typing import Dict, List, Optional, Sequence

import numpy as np

from hybrid_memory.memory.errors import EmbeddingProviderError

TEST_DIM = 64


class HashEmbeddings:
    """Deterministic embeddings: identical text gives identical vectors.

    Different texts get unrelated pseudo-random vectors, so their similarity
    score stays far below any realistic threshold.
    """

    def __init__(self, dim: int = TEST_DIM, overrides: Optional[Dict[str, List[float]]] = None):
        self.dim = dim
        self.overrides = dict(overrides or {})
        self.calls: List[str] = []
        self.fail = False

    def vector_for(self, text: str) -> List[float]:
        if text in self.overrides:
            return list(self.overrides[text])
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
        return np.random.default_rng(seed).random(self.dim).tolist()

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("embedding service unavailable")
        return self.vector_for(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms
