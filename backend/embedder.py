"""
Embedding module for noteloom.

Uses sentence-transformers to turn note text into L2-normalised vectors.
"""

import threading
from typing import List, Optional, Sequence

import numpy as np
import structlog

from errors import EmbeddingModelError, VectorDimensionError
from tokenizer import normalize_text

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_DIM = 384
MAX_INPUT_CHARS = 8000


class Embedder:
    """Handles text embedding using sentence-transformers."""

    def __init__(self, model_name: Optional[str] = None, embedding_dim: int = EMBEDDING_DIM):
        """
        Initialize the embedder.

        Args:
            model_name: Name of the sentence-transformers model to use.
                       Defaults to `sentence-transformers/all-MiniLM-L6-v2`.
            embedding_dim: Expected vector size; refined after the model loads.
        """
        self.model_name = model_name or DEFAULT_MODEL
        self.model = None
        self.embedding_dim = embedding_dim
        self._load_lock = threading.Lock()

    def load_model(self):
        """Lazy load the sentence-transformers model exactly once.

        Concurrent callers wait on the lock (no timeout) until the in-flight
        load finishes. A failed load leaves ``model`` unset so the next call
        retries.
        """
        if self.model is not None:
            return
        with self._load_lock:
            if self.model is not None:
                return
            logger.info("embedding_model_loading", model=self.model_name)
            try:
                from sentence_transformers import SentenceTransformer

                model = SentenceTransformer(self.model_name)
                dim = model.get_sentence_embedding_dimension()
                if dim:
                    self.embedding_dim = int(dim)
            except Exception as e:
                raise EmbeddingModelError(
                    f"Failed to load sentence-transformers model '{self.model_name}': {e}"
                ) from e
            self.model = model
            logger.info("embedding_model_loaded", model=self.model_name, dim=self.embedding_dim)

    @staticmethod
    def prepare(text: str) -> str:
        return normalize_text(text)[:MAX_INPUT_CHARS]

    def embed(self, text: str) -> List[float]:
        """
        Convert text to a unit-length embedding vector.

        Args:
            text: Text to embed

        Returns:
            List of floats; all zeros for blank text
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Convert multiple texts to embedding vectors.

        Blank entries map to zero vectors so positions line up with ``texts``.
        """
        self.load_model()

        if not texts:
            return []

        prepared = [self.prepare(text or "") for text in texts]
        valid = [text for text in prepared if text]
        if not valid:
            return [[0.0] * self.embedding_dim for _ in texts]

        try:
            embeddings = self.model.encode(
                valid,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise EmbeddingModelError(f"Embedding failed: {e}") from e

        result = []
        idx = 0
        for text in prepared:
            if text:
                result.append(np.asarray(embeddings[idx], dtype=np.float32).tolist())
                idx += 1
            else:
                result.append([0.0] * self.embedding_dim)
        return result

    def get_embedding_dim(self) -> int:
        """Get the dimension of embedding vectors."""
        self.load_model()
        return self.embedding_dim


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Raises:
        VectorDimensionError: if the vectors differ in length.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero norm.
    """
    if len(vec1) != len(vec2):
        raise VectorDimensionError(len(vec1), len(vec2))

    v1 = np.asarray(vec1, dtype=np.float64)
    v2 = np.asarray(vec2, dtype=np.float64)
    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(v1, v2) / (norm1 * norm2))


def semantic_change_score(old_vector: Sequence[float], new_vector: Sequence[float]) -> float:
    """``1 - cosine``: 0 for identical meaning, up to 2 for opposite vectors."""
    return 1.0 - cosine_similarity(old_vector, new_vector)


def normalize_vector(vector: Sequence[float]) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float32)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v
    return v / norm
