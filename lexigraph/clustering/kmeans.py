"""
Deterministic cosine k-means.

Vectors are L2-normalised, so ``1 - dot`` is the cosine distance.
Centroids are seeded with the first *k* input vectors: no random
restarts, so identical inputs always give identical groups. Oversized
inputs are bisected before they reach here, which keeps the seeding
simplification acceptable.
"""

import logging
from typing import List

import numpy as np

from lexigraph.utils import cooperative_yield

logger = logging.getLogger(__name__)


async def kmeans(vectors: np.ndarray, k: int, max_iter: int = 10) -> List[List[int]]:
    """Partition row indices of *vectors* into at most *k* groups.

    Args:
        vectors: ``(N, D)`` float32, L2-normalised.
        k: Number of centroids (clamped to ``N``).
        max_iter: Iteration cap; stops earlier once no point moves.

    Returns:
        Non-empty groups of row indices, ordered by centroid, each group
        in ascending row order. Empty input yields ``[]``.
    """
    n = len(vectors)
    if n == 0 or k <= 0:
        return []
    k = min(k, n)

    data = np.asarray(vectors, dtype=np.float32)
    centroids = data[:k].copy()
    assignment = np.full(n, -1, dtype=np.int64)

    for iteration in range(max_iter):
        await cooperative_yield()

        # argmin returns the lowest centroid index on ties
        distances = 1.0 - data @ centroids.T
        new_assignment = np.argmin(distances, axis=1)
        if np.array_equal(new_assignment, assignment):
            logger.debug("k-means converged after %d iteration(s).", iteration)
            break
        assignment = new_assignment

        for c in range(k):
            members = data[assignment == c]
            if len(members):
                centroids[c] = members.mean(axis=0)

    groups = [np.flatnonzero(assignment == c).tolist() for c in range(k)]
    return [g for g in groups if g]
