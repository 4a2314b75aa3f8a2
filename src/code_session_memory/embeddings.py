"""Embeddings generation using sentence-transformers."""

import logging
import os
from functools import lru_cache
from typing import Any

from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

MODEL_NAME = os.environ.get("CODE_SESSION_MEMORY_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_DIM = 384

# Per-request ceilings for one encode call
BATCH_SIZE = 64
MAX_EMBEDDING_CHARS = 32764


class EmbeddingError(RuntimeError):
    """Raised when the model returns an unusable response."""


@lru_cache(maxsize=4)
def get_model(model_name: str = MODEL_NAME) -> SentenceTransformer:
    """Get the sentence transformer model (cached)."""
    logger.debug("Loading embedding model %s", model_name)
    return SentenceTransformer(model_name)


class Embedder:
    """Order-preserving batched embedding client.

    Texts are sent in sub-batches of at most ``batch_size`` items, each text
    truncated to ``max_chars``. Errors from the model propagate to the caller.
    """

    def __init__(
        self,
        model: Any = None,
        model_name: str = MODEL_NAME,
        batch_size: int = BATCH_SIZE,
        max_chars: int = MAX_EMBEDDING_CHARS,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._model = model
        self.model_name = model_name
        self.batch_size = batch_size
        self.max_chars = max_chars

    @property
    def model(self) -> Any:
        if self._model is None:
            self._model = get_model(self.model_name)
        return self._model

    @property
    def embedding_dim(self) -> int:
        """Vector size produced by the model."""
        return self.model.get_sentence_embedding_dimension() or EMBEDDING_DIM

    def _truncate(self, text: str) -> str:
        return text[: self.max_chars] if len(text) > self.max_chars else text

    def _encode(self, texts: list[str]) -> list[list[float]]:
        vectors = self.model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings from {self.model_name}, got {len(vectors)}"
            )
        return [[float(x) for x in vector] for vector in vectors]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, returning one vector per input in input order."""
        if not texts:
            return []

        results: list[list[float]] = []
        requests = 0
        for start in range(0, len(texts), self.batch_size):
            batch = [self._truncate(t) for t in texts[start : start + self.batch_size]]
            results.extend(self._encode(batch))
            requests += 1

        logger.debug("Embedded %d texts in %d request(s)", len(texts), requests)
        return results

    def embed_text(self, text: str) -> list[float]:
        """Embed a single text (used for queries)."""
        return self._encode([self._truncate(text)])[0]
