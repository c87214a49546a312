"""
Embedding Service

On-device embedding generation using fastembed, used by the semantic tier of
the duplicate detector. A primary model is tried first; if it cannot be
loaded or fails at inference time, the fallback model is used.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger("parabrain.common.embedding_service")


class EmbeddingService:
    """
    Embedding service with a primary and a fallback fastembed model.

    Vectors are L2 normalized so the dot product equals cosine similarity.
    """

    def __init__(
        self,
        model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
        fallback_model: Optional[str] = "BAAI/bge-small-en-v1.5",
    ):
        self._model_names = [m for m in (model, fallback_model) if m]
        self._models = {}
        self._failed = set()

    def _load(self, name: str):
        if name in self._models:
            return self._models[name]
        if name in self._failed:
            return None
        try:
            from fastembed import TextEmbedding

            self._models[name] = TextEmbedding(model_name=name)
            logger.info("Loaded embedding model %s", name)
            return self._models[name]
        except Exception as e:
            logger.warning("Could not load embedding model %s: %s", name, e)
            self._failed.add(name)
            return None

    @property
    def is_available(self) -> bool:
        """Check if any configured model is usable"""
        return any(self._load(name) is not None for name in self._model_names)

    @property
    def active_model(self) -> Optional[str]:
        for name in self._model_names:
            if name in self._models:
                return name
        return None

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors (L2 normalized)
        """
        if not texts:
            return []

        last_error: Optional[Exception] = None
        for name in self._model_names:
            model = self._load(name)
            if model is None:
                continue
            try:
                vectors = np.array(list(model.embed(texts)), dtype=float)
            except Exception as e:
                logger.warning("Embedding with %s failed: %s", name, e)
                last_error = e
                continue
            norms = np.linalg.norm(vectors, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            return (vectors / norms).tolist()

        raise RuntimeError(f"No embedding model available: {last_error}")

    def embed_single(self, text: str) -> List[float]:
        """Generate embedding for a single text."""
        if not text:
            raise ValueError("Cannot embed empty text")
        return self.embed([text])[0]


def batch_cosine_similarity(query_vec: Sequence[float], vectors: Sequence[Sequence[float]]) -> List[float]:
    """
    Cosine similarity between a query and each of ``vectors``.

    Scores are clamped to 0.0 - 1.0. Vectors whose dimension differs from the
    query, and zero vectors, score 0.0.
    """
    query = np.array(query_vec, dtype=float)
    query_norm = np.linalg.norm(query)
    scores = []
    for vec in vectors:
        v = np.array(vec, dtype=float)
        norm = np.linalg.norm(v) if v.shape == query.shape else 0.0
        if query_norm == 0 or norm == 0:
            scores.append(0.0)
            continue
        scores.append(float(np.dot(v, query) / (norm * query_norm)))
    return np.clip(np.array(scores, dtype=float), 0.0, 1.0).tolist()


# Module-level singleton getter
_service_instance: Optional[EmbeddingService] = None


def get_embedding_service(
    model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
    fallback_model: Optional[str] = "BAAI/bge-small-en-v1.5",
) -> EmbeddingService:
    """Get the shared EmbeddingService instance."""
    global _service_instance

    if _service_instance is None:
        _service_instance = EmbeddingService(model=model, fallback_model=fallback_model)

    return _service_instance
