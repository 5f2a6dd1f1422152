"""
Engine handle: the single object callers hold.

``LexiconEngine`` is built once with its collaborators (vector store,
vectorizer, optional card provider) and configuration, and owns the
graph builder, cluster engine, sequencer and cluster cache, including
the cache's in-flight map. Pass it by reference; there is no module-level
state.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from lexigraph import graph_views
from lexigraph.cluster_cache import ClusterCache, LiveRecordsFn
from lexigraph.clustering.clusterer import ClusterEngine
from lexigraph.config import EngineConfig
from lexigraph.db import CardProvider, SQLiteCardProvider, SQLiteVectorStore, VectorStore, get_connection
from lexigraph.embeddings.embedder import SentenceTransformerVectorizer, Vectorizer
from lexigraph.graph_builder import ProgressCallback, SimilarityGraphBuilder
from lexigraph.models import (
    BatchSummary,
    Cluster,
    Connection,
    GraphView,
    HydratedCluster,
    Neighbor,
    SimilarityEdge,
)
from lexigraph.sequencer import ChainSequencer

logger = logging.getLogger(__name__)


class LexiconEngine:
    """Public operations over one store, one vectorizer and one config."""

    def __init__(
        self,
        store: VectorStore,
        vectorizer: Vectorizer,
        cards: Optional[CardProvider] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.cards = cards
        self.graph_builder = SimilarityGraphBuilder(store, vectorizer, self.config.edges)
        self.cluster_engine = ClusterEngine(self.graph_builder, self.config.clusters)
        self.sequencer = ChainSequencer(self.graph_builder, self.config.chain)
        self.cluster_cache = ClusterCache(self.cluster_engine, store)

    @classmethod
    def open(
        cls,
        db_path: str,
        config: Optional[EngineConfig] = None,
        vectorizer: Optional[Vectorizer] = None,
    ) -> "LexiconEngine":
        """Engine over a SQLite database holding both vectors and cards."""
        config = config or EngineConfig()
        conn = get_connection(db_path)
        logger.info("Engine opened on %s (model=%s).", db_path, config.model_name)
        return cls(
            store=SQLiteVectorStore(conn),
            vectorizer=vectorizer or SentenceTransformerVectorizer(config.model_name),
            cards=SQLiteCardProvider(conn),
            config=config,
        )

    # =====================================================================
    # Similarity graph
    # =====================================================================

    async def build_edges(
        self,
        words: Iterable[str],
        threshold: Optional[float] = None,
        min_connections: Optional[int] = None,
    ) -> List[SimilarityEdge]:
        return await self.graph_builder.build_edges(words, threshold, min_connections)

    async def batch_process(
        self,
        words: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchSummary:
        return await self.graph_builder.batch_process(words, on_progress)

    def update_connections(self, word: str) -> List[Connection]:
        return self.graph_builder.update_connections(word)

    async def find_context_words(
        self,
        target_words: Iterable[str],
        count: int,
        candidates: Iterable[str],
    ) -> List[str]:
        return await self.graph_builder.find_context_words(target_words, count, candidates)

    # =====================================================================
    # Clustering & sequencing
    # =====================================================================

    async def cluster(self, words: Iterable[str]) -> List[Cluster]:
        return await self.cluster_engine.cluster(words)

    async def sequence(self, words: Sequence[str]) -> List[str]:
        return await self.sequencer.sequence(words)

    async def get_clusters(
        self,
        key: str,
        force_refresh: bool = False,
        live_records_fn: Optional[LiveRecordsFn] = None,
    ) -> List[HydratedCluster]:
        """Cached clusters for deck *key*, joined against its current cards.

        Cards come from *live_records_fn* if given, else from the
        engine's card provider.
        """
        if live_records_fn is None:
            cards = self._require_cards()
            live_records_fn = lambda: cards.list_cards(key)  # noqa: E731
        return await self.cluster_cache.get(key, live_records_fn, force_refresh)

    # =====================================================================
    # Projections
    # =====================================================================

    def get_neighbors(self, word: str, limit: Optional[int] = None) -> List[Neighbor]:
        if limit is None:
            limit = self.config.graph.neighbor_limit
        return graph_views.get_neighbors(self.store, word, limit, self.cards)

    def get_network(self, word: str) -> List[Connection]:
        return graph_views.get_network(self.store, word)

    def global_graph(self, max_links_per_node: Optional[int] = None) -> GraphView:
        if max_links_per_node is None:
            max_links_per_node = self.config.graph.max_links_per_node
        return graph_views.global_graph(self.store, max_links_per_node)

    def graph_for_subset(self, words: Iterable[str]) -> GraphView:
        return graph_views.graph_for_subset(self.store, words)

    def graph_for_deck(self, deck_id: str) -> GraphView:
        cards = self._require_cards()
        return graph_views.graph_for_subset(
            self.store, [c.word for c in cards.list_cards(deck_id)]
        )

    def graph_metrics(self, view: GraphView) -> Dict[str, Any]:
        return graph_views.compute_metrics(view)

    def _require_cards(self) -> CardProvider:
        if self.cards is None:
            raise RuntimeError("No card provider configured for this engine.")
        return self.cards
