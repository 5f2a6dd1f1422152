"""
FAISS index builder and batched top-k query.

Uses ``IndexFlatIP`` (inner-product on L2-normalised vectors = cosine
similarity) wrapped in ``IndexIDMap`` so results come back as row
positions of the matrix the index was built from. The flat index is
exact, which is all the bounded working sets here need.
"""

import logging
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def build_index(
    embeddings: np.ndarray,
    ids: Optional[np.ndarray] = None,
) -> "faiss.Index":
    """Build a FAISS inner-product index with ID mapping.

    Args:
        embeddings: ``(N, D)`` float32, L2-normalised.
        ids: ``(N,)`` int64 IDs; defaults to row positions ``0..N-1``.

    Returns:
        A FAISS index ready for ``search()``.
    """
    import faiss

    n, dim = embeddings.shape
    if ids is None:
        ids = np.arange(n, dtype=np.int64)
    logger.debug("Building FAISS index: N=%d, D=%d.", n, dim)

    index = faiss.IndexIDMap(faiss.IndexFlatIP(dim))
    if n:
        index.add_with_ids(
            np.ascontiguousarray(embeddings, dtype=np.float32),
            np.ascontiguousarray(ids, dtype=np.int64),
        )
    return index


def query_topk(
    index: "faiss.Index",
    queries: np.ndarray,
    k: int = 20,
) -> Tuple[np.ndarray, np.ndarray]:
    """Batched top-k nearest-neighbor query.

    Args:
        index: Built FAISS index.
        queries: ``(M, D)`` float32 query vectors.
        k: Number of neighbors per query.

    Returns:
        Tuple of:
        - ``similarities``: ``(M, k')`` float32 cosine similarities
        - ``neighbor_ids``: ``(M, k')`` int64 IDs (``-1`` for padding)

        where ``k' = min(k, index.ntotal)``.
    """
    actual_k = min(k, index.ntotal)
    m = len(queries)
    if actual_k <= 0 or m == 0:
        return (
            np.empty((m, 0), dtype=np.float32),
            np.empty((m, 0), dtype=np.int64),
        )
    similarities, neighbor_ids = index.search(
        np.ascontiguousarray(queries, dtype=np.float32),
        actual_k,
    )
    return similarities.astype(np.float32), neighbor_ids.astype(np.int64)
