"""
Thematic partitioning of a word set into bounded-size clusters.

Pipeline:
1. Resolve vectors and build a *strong* similarity graph
   (``strong_threshold``, no forced connections).
2. Find connected components, in input order, each listed in BFS order.
3. Oversized components (> ``max_cluster_size``) are bisected with
   2-means until every group fits; small ones (< ``small_component_size``)
   go to a shared pool; the rest are accepted as they are.
4. The pool is rebalanced with k-means, ``k = ceil(pool / pool_target_size)``.
   Words without any vector form explicit "unembedded" clusters.
5. Label each cluster by its member with the most in-cluster strong edges.
6. Sort clusters by size, largest first.

With the defaults a corpus made only of small components (a short deck,
or several tight groups of fewer than ten words) goes entirely through
the pool, where ``k`` may be 1 and unrelated groups end up merged.
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import networkx as nx
import numpy as np

from lexigraph.clustering.kmeans import kmeans
from lexigraph.config import ClusterConfig
from lexigraph.graph_builder import SimilarityGraphBuilder
from lexigraph.models import UNEMBEDDED_LABEL, Cluster, SimilarityEdge
from lexigraph.utils import normalize_words, timed

logger = logging.getLogger(__name__)


# =========================================================================
# Graph helpers
# =========================================================================


def _strong_graph(keys: List[str], edges: List[SimilarityEdge]) -> nx.Graph:
    """Undirected graph over *keys*; insertion order fixes traversal order."""
    graph = nx.Graph()
    graph.add_nodes_from(keys)
    graph.add_edges_from((e.a, e.b, {"weight": e.similarity}) for e in edges)
    return graph


def _connected_components(graph: nx.Graph, keys: List[str]) -> List[List[str]]:
    """Components in order of their first word in *keys*, members in BFS order."""
    visited = set()
    components: List[List[str]] = []
    for word in keys:
        if word in visited:
            continue
        component = [word] + [v for _, v in nx.bfs_edges(graph, word)]
        visited.update(component)
        components.append(component)
    return components


def _choose_label(members: List[str], graph: nx.Graph) -> str:
    """Member with the highest in-cluster degree; ties go to the earliest."""
    member_set = set(members)
    label = members[0]
    best = -1
    for w in members:
        degree = sum(1 for n in graph.neighbors(w) if n in member_set)
        if degree > best:
            best = degree
            label = w
    return label


# =========================================================================
# Engine
# =========================================================================


class ClusterEngine:
    """Partitions word sets into clusters of 1..``max_cluster_size`` words."""

    def __init__(
        self,
        graph_builder: SimilarityGraphBuilder,
        config: Optional[ClusterConfig] = None,
    ) -> None:
        self.graph_builder = graph_builder
        self.config = config or ClusterConfig()

    async def _bisect(
        self,
        items: List[str],
        vectors: Dict[str, np.ndarray],
    ) -> List[List[str]]:
        """Split *items* with 2-means until every group fits the size cap.

        A split that cannot separate the group (e.g. identical vectors)
        falls back to cutting it in half, so every step shrinks the group.
        """
        cap = self.config.max_cluster_size
        result: List[List[str]] = []
        stack = [items]

        while stack:
            group = stack.pop()
            if not group:
                continue
            if len(group) <= cap:
                result.append(group)
                continue

            mat = np.stack([vectors[w] for w in group])
            halves = await kmeans(mat, 2, max_iter=self.config.kmeans_max_iter)
            if len(halves) < 2:
                mid = len(group) // 2
                parts = [group[:mid], group[mid:]]
            else:
                parts = [[group[i] for i in h] for h in halves]
            stack.extend(reversed(parts))

        return result

    async def _rebalance_pool(
        self,
        pool: List[str],
        vectors: Dict[str, np.ndarray],
    ) -> Tuple[List[List[str]], List[str]]:
        """k-means the pooled words. Returns ``(groups, words_without_vectors)``."""
        with_vec = [w for w in pool if w in vectors]
        without = [w for w in pool if w not in vectors]
        if not with_vec:
            return [], without

        k = max(1, math.ceil(len(pool) / self.config.pool_target_size))
        k = min(k, len(with_vec))
        mat = np.stack([vectors[w] for w in with_vec])
        index_groups = await kmeans(mat, k, max_iter=self.config.kmeans_max_iter)

        groups: List[List[str]] = []
        for idx in index_groups:
            members = [with_vec[i] for i in idx]
            if len(members) > self.config.max_cluster_size:
                groups.extend(await self._bisect(members, vectors))
            else:
                groups.append(members)

        logger.info(
            "Pool of %d word(s) rebalanced into %d group(s) (k=%d); %d without vectors.",
            len(pool), len(groups), k, len(without),
        )
        return groups, without

    async def cluster(self, words: Iterable[str]) -> List[Cluster]:
        """Partition *words* into labelled clusters.

        Every normalised input word appears in exactly one cluster.

        Returns:
            Clusters sorted by descending size.
        """
        cfg = self.config
        keys = normalize_words(words)
        if not keys:
            return []

        with timed("Vector resolution"):
            vectors = await self.graph_builder.resolve_vectors(keys)

        with timed("Strong graph"):
            edges = await self.graph_builder.edges_from_vectors(
                keys, vectors, threshold=cfg.strong_threshold, min_connections=0
            )
            graph = _strong_graph(keys, edges)
            components = _connected_components(graph, keys)

        groups: List[List[str]] = []
        pool: List[str] = []

        for component in components:
            if len(component) > cfg.max_cluster_size:
                with_vec = [w for w in component if w in vectors]
                pool.extend(w for w in component if w not in vectors)
                groups.extend(await self._bisect(with_vec, vectors))
            elif len(component) < cfg.small_component_size:
                pool.extend(component)
            else:
                groups.append(component)

        unembedded: List[str] = []
        if pool:
            pooled, unembedded = await self._rebalance_pool(pool, vectors)
            groups.extend(pooled)

        clusters = [
            Cluster(label=_choose_label(g, graph), items=g) for g in groups if g
        ]
        for start in range(0, len(unembedded), cfg.max_cluster_size):
            clusters.append(Cluster(
                label=UNEMBEDDED_LABEL,
                items=unembedded[start:start + cfg.max_cluster_size],
                unembedded=True,
            ))

        clusters.sort(key=lambda c: len(c.items), reverse=True)

        logger.info(
            "Clustered %d word(s) into %d cluster(s) from %d component(s); "
            "%d unembedded.",
            len(keys), len(clusters), len(components), len(unembedded),
        )
        return clusters
