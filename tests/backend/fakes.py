"""Deterministic stand-ins used by the backend tests."""

import os
import sys
import zlib

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from embedder import Embedder
from tokenizer import Tokenizer


class KeywordEmbedder(Embedder):
    """Hashes tokens into a small bag-of-words vector; no model download."""

    def __init__(self, embedding_dim: int = 64):
        super().__init__(model_name="keyword-test-model", embedding_dim=embedding_dim)
        self.model = object()
        self.tokenize = Tokenizer()
        self.calls = 0

    def embed_batch(self, texts):
        self.calls += 1
        result = []
        for text in texts:
            vector = np.zeros(self.embedding_dim, dtype=np.float32)
            for token in self.tokenize(self.prepare(text or "")):
                vector[zlib.crc32(token.encode("utf-8")) % self.embedding_dim] += 1.0
            norm = np.linalg.norm(vector)
            if norm > 0:
                vector = vector / norm
            result.append(vector.tolist())
        return result


class FailingEmbedder(KeywordEmbedder):
    """Raises for any text containing ``boom``."""

    def embed_batch(self, texts):
        if any("boom" in (t or "") for t in texts):
            raise RuntimeError("embedding backend unavailable")
        return super().embed_batch(texts)
