from lexigraph.embeddings.embedder import (
    EmbeddingError,
    SentenceTransformerVectorizer,
    Vectorizer,
)

__all__ = ["EmbeddingError", "SentenceTransformerVectorizer", "Vectorizer"]
