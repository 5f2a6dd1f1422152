"""
Sentence-transformer vectorizer.

Uses ``all-MiniLM-L6-v2`` (384-dimensional, normalised) to embed
vocabulary words.  The model is loaded lazily on first use and held by
the vectorizer instance, so one engine handle owns one model.
"""

import logging
from typing import Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class EmbeddingError(Exception):
    """Raised when a single word cannot be embedded.

    Attributes:
        word: The word that failed.
        original: The underlying exception (may be ``None``).
    """

    def __init__(self, word: str, original: Optional[Exception] = None) -> None:
        self.word = word
        self.original = original
        super().__init__(f"embedding failed for {word!r}: {original}")


class Vectorizer(Protocol):
    def embed(self, text: str) -> np.ndarray: ...


class SentenceTransformerVectorizer:
    """``Vectorizer`` backed by ``sentence_transformers.SentenceTransformer``."""

    def __init__(self, model_name: str = DEFAULT_MODEL, model: Optional[object] = None):
        self.model_name = model_name
        self._model = model

    def _get_model(self):
        """Load the sentence-transformer model (lazy, one-time)."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading sentence-transformer model: %s …", self.model_name)
            self._model = SentenceTransformer(self.model_name)
            logger.info("Model loaded.")
        return self._model

    def embed(self, text: str) -> np.ndarray:
        """Embed one string into a normalised float32 vector.

        Raises:
            EmbeddingError: if the model cannot be loaded or encoding fails.
        """
        try:
            m = self._get_model()
            arr = m.encode(
                [text],
                show_progress_bar=False,
                normalize_embeddings=True,
            )
        except Exception as exc:
            raise EmbeddingError(text, exc) from exc
        return np.asarray(arr, dtype=np.float32)[0]
