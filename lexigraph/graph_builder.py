"""
Similarity graph construction.

Resolves a vector per word (store first, vectorizer for the rest, each new
vector persisted before it is used), scores every pair by cosine
similarity, and selects edges per word: everything at or above the
threshold, topped up with the best remaining neighbours until the word
has ``min_connections`` edges.

Also maintains the persisted per-word connection lists
(``SemanticConnections``) that the graph projections read:
``batch_process`` for a whole word list, ``update_connections`` for one
word.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from lexigraph.config import EdgeConfig
from lexigraph.db import VectorStore
from lexigraph.embeddings.embedder import Vectorizer
from lexigraph.faiss_index import build_index, query_topk
from lexigraph.models import BatchSummary, Connection, ProgressStage, SimilarityEdge
from lexigraph.utils import cooperative_yield, l2_normalize, normalize_words, timed, word_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, ProgressStage], None]


class SimilarityGraphBuilder:
    """Builds similarity edges over word sets and maintains stored connections."""

    def __init__(
        self,
        store: VectorStore,
        vectorizer: Vectorizer,
        config: Optional[EdgeConfig] = None,
    ) -> None:
        self.store = store
        self.vectorizer = vectorizer
        self.config = config or EdgeConfig()

    # =====================================================================
    # Vector resolution
    # =====================================================================

    def _embed_and_store(self, word: str) -> Optional[np.ndarray]:
        """Embed one word and persist it. Returns ``None`` on failure.

        This method **never** raises for a per-word failure: the error is
        logged and the word is left out of the current pass.
        """
        try:
            vec = l2_normalize(self.vectorizer.embed(word))
        except Exception as exc:
            logger.error("Failed to embed %r: %s", word, exc, exc_info=True)
            return None
        try:
            self.store.put_vector(word, vec)
        except Exception as exc:
            logger.warning("Embedding for %r not persisted: %s", word, exc)
        return vec

    async def resolve_vectors(self, words: Iterable[str]) -> Dict[str, np.ndarray]:
        """Return ``{word_key: vector}`` for *words*, in input order.

        Words whose vector is neither stored nor producible are absent.
        """
        keys = normalize_words(words)
        found = self.store.get_vectors(keys)
        missing = [k for k in keys if k not in found]
        if missing:
            logger.info("Generating %d missing embedding(s).", len(missing))

        for i, w in enumerate(missing, 1):
            vec = self._embed_and_store(w)
            if vec is not None:
                found[w] = vec
            if i % self.config.embed_chunk_size == 0:
                await cooperative_yield()

        return {k: found[k] for k in keys if k in found}

    # =====================================================================
    # Edge selection
    # =====================================================================

    async def edges_from_vectors(
        self,
        keys: List[str],
        vectors: Dict[str, np.ndarray],
        threshold: float,
        min_connections: int,
    ) -> List[SimilarityEdge]:
        """Select edges among *keys* given already-resolved *vectors*.

        Per word: every neighbour with similarity ``>= threshold``, or the
        top ``min_connections`` neighbours if that is more. Neighbours are
        ranked by similarity with ties broken by input order. Pairs are
        deduplicated and non-positive similarities are never emitted.
        """
        embedded = [k for k in keys if k in vectors]
        n = len(embedded)
        if n < 2:
            return []

        mat = np.stack([vectors[k] for k in embedded]).astype(np.float32)
        chunk = self.config.edge_chunk_size
        edges: List[SimilarityEdge] = []
        seen = set()

        for start in range(0, n, chunk):
            block = mat[start:start + chunk] @ mat.T
            for offset in range(block.shape[0]):
                i = start + offset
                row = block[offset].astype(np.float64)
                row[i] = -np.inf
                order = np.argsort(-row, kind="stable")
                above = int(np.count_nonzero(row >= threshold))
                take = min(n - 1, max(above, min_connections))

                src = embedded[i]
                for j in order[:take]:
                    sim = float(row[j])
                    if sim <= 0.0:
                        break
                    tgt = embedded[j]
                    pair = (src, tgt) if src < tgt else (tgt, src)
                    if pair in seen:
                        continue
                    seen.add(pair)
                    edges.append(
                        SimilarityEdge(a=pair[0], b=pair[1], similarity=min(sim, 1.0))
                    )
            await cooperative_yield()

        return edges

    async def build_edges(
        self,
        words: Iterable[str],
        threshold: Optional[float] = None,
        min_connections: Optional[int] = None,
    ) -> List[SimilarityEdge]:
        """Compute similarity edges among *words*.

        Args:
            words: Words to connect (case-insensitive, duplicates ignored).
            threshold: Minimum similarity for a regular edge
                       (default ``EdgeConfig.threshold``).
            min_connections: Minimum edges per word regardless of the
                             threshold (default ``EdgeConfig.min_connections``).

        Returns:
            Deduplicated undirected edges, in discovery order.
        """
        threshold = self.config.threshold if threshold is None else threshold
        min_connections = (
            self.config.min_connections if min_connections is None else min_connections
        )
        keys = normalize_words(words)
        vectors = await self.resolve_vectors(keys)
        edges = await self.edges_from_vectors(keys, vectors, threshold, min_connections)
        logger.info(
            "Built %d edge(s) over %d word(s) (%d embedded, threshold=%.2f, min=%d).",
            len(edges), len(keys), len(vectors), threshold, min_connections,
        )
        return edges

    # =====================================================================
    # Stored connections
    # =====================================================================

    def _corpus_index(self) -> Tuple[List[str], np.ndarray, Optional["faiss.Index"]]:
        """Load every stored embedding and index it for neighbour search."""
        corpus = self.store.all_vectors()
        words = list(corpus.keys())
        if not words:
            return words, np.empty((0, 0), dtype=np.float32), None
        mat = np.stack([corpus[w] for w in words]).astype(np.float32)
        return words, mat, build_index(mat)

    def _select_connections(
        self,
        source: str,
        sims: np.ndarray,
        nids: np.ndarray,
        corpus_words: List[str],
    ) -> List[Connection]:
        threshold = self.config.threshold
        conns: List[Connection] = []
        for sim, nid in zip(sims, nids):
            if nid < 0:
                continue
            target = corpus_words[int(nid)]
            sim = float(sim)
            if target == source or sim < threshold or sim <= 0.0:
                continue
            conns.append(Connection(target=target, similarity=min(sim, 1.0)))
            if len(conns) >= self.config.max_connections:
                break
        return conns

    async def batch_process(
        self,
        words: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchSummary:
        """Embed *words* and persist each one's connections to the whole corpus.

        Stage 1 embeds every word not yet stored, persisting each vector
        immediately. Stage 2 searches all stored embeddings for each
        word's neighbours and writes the best ``max_connections`` at or
        above the threshold.
        """
        keys = normalize_words(words)
        summary = BatchSummary(total=len(keys))

        found = self.store.get_vectors(keys)
        missing = [k for k in keys if k not in found]
        logger.info("Found %d missing embedding(s).", len(missing))

        with timed("Embedding generation"):
            for i, w in enumerate(missing, 1):
                if self._embed_and_store(w) is None:
                    summary.failed += 1
                    summary.errors.append(w)
                else:
                    summary.embedded += 1
                if on_progress is not None:
                    on_progress(i, len(missing), "embedding")
                if i % self.config.embed_chunk_size == 0:
                    await cooperative_yield()

        corpus_words, corpus_mat, index = self._corpus_index()
        if index is None:
            logger.warning("No embeddings stored; no connections computed.")
            return summary

        corpus_set = set(corpus_words)
        sources = [k for k in keys if k in corpus_set]
        summary.with_vectors = len(sources)
        position = {w: i for i, w in enumerate(corpus_words)}
        chunk = self.config.edge_chunk_size

        with timed("Connection search"):
            for start in range(0, len(sources), chunk):
                batch = sources[start:start + chunk]
                queries = corpus_mat[[position[w] for w in batch]]
                sims, nids = query_topk(
                    index, queries, k=self.config.max_connections + 1
                )
                for row, w in enumerate(batch):
                    conns = self._select_connections(w, sims[row], nids[row], corpus_words)
                    self.store.put_edges(w, conns)
                    summary.connections_written += 1
                if on_progress is not None:
                    on_progress(min(start + chunk, len(sources)), len(sources), "connection")
                await cooperative_yield()

        logger.info(
            "Batch complete — total=%d embedded=%d failed=%d connected=%d",
            summary.total, summary.embedded, summary.failed,
            summary.connections_written,
        )
        return summary

    def update_connections(self, word: str) -> List[Connection]:
        """Recompute and persist one word's connections, plus reverse links.

        Each target that does not already list *word* gets it inserted,
        keeping its list sorted by similarity. Returns the word's new
        connection list (empty if it cannot be embedded).
        """
        key = word_key(word)
        vec = self.store.get_vector(key)
        if vec is None:
            vec = self._embed_and_store(key)
        if vec is None:
            return []

        corpus_words, _, index = self._corpus_index()
        if index is None:
            return []
        query = np.asarray(vec, dtype=np.float32).reshape(1, -1)
        sims, nids = query_topk(index, query, k=self.config.max_connections + 1)
        conns = self._select_connections(key, sims[0], nids[0], corpus_words)
        self.store.put_edges(key, conns)

        for conn in conns:
            existing = self.store.get_edges(conn.target)
            if any(c.target == key for c in existing):
                continue
            existing.append(Connection(target=key, similarity=conn.similarity))
            existing.sort(key=lambda c: c.similarity, reverse=True)
            self.store.put_edges(conn.target, existing)

        logger.info("Updated connections for %r: found %d link(s).", key, len(conns))
        return conns

    async def find_context_words(
        self,
        target_words: Iterable[str],
        count: int,
        candidates: Iterable[str],
    ) -> List[str]:
        """Candidates closest to the centroid of *target_words*, best first.

        Used to pick related, not-yet-studied words to accompany a study
        group. Returns ``[]`` if no target has a vector.
        """
        targets = await self.resolve_vectors(target_words)
        if not targets or count <= 0:
            return []
        centroid = l2_normalize(np.stack(list(targets.values())).mean(axis=0))

        cand_vectors = await self.resolve_vectors(candidates)
        cand_words = list(cand_vectors.keys())
        if not cand_words:
            return []

        index = build_index(np.stack([cand_vectors[w] for w in cand_words]))
        _, nids = query_topk(index, centroid.reshape(1, -1), k=count)
        return [cand_words[int(i)] for i in nids[0] if i >= 0]
