"""
pytest suite for the similarity graph: edge selection, vector resolution
and stored connections.

Vectors come from a dict-backed fake vectorizer, so no model download is
needed.
"""

import asyncio
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from lexigraph.config import EdgeConfig
from lexigraph.db import SQLiteVectorStore
from lexigraph.embeddings.embedder import EmbeddingError, SentenceTransformerVectorizer
from lexigraph.faiss_index import build_index, query_topk
from lexigraph.graph_builder import SimilarityGraphBuilder


# =========================================================================
# Helpers
# =========================================================================


class FakeVectorizer:
    """Dict-backed vectorizer; unknown words fail like a model error."""

    def __init__(self, vectors):
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in vectors.items()}
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if text not in self.vectors:
            raise EmbeddingError(text, KeyError(text))
        return self.vectors[text]


def _group_vectors(groups):
    """Unit vectors where words of one group have cosine similarity *sim*.

    *groups* is a list of ``(words, sim)``; words of different groups are
    orthogonal.
    """
    n_words = sum(len(ws) for ws, _ in groups)
    dim = len(groups) + n_words
    out = {}
    axis = len(groups)
    for g, (words, sim) in enumerate(groups):
        for w in words:
            v = np.zeros(dim, dtype=np.float32)
            v[g] = np.sqrt(sim)
            v[axis] = np.sqrt(1.0 - sim)
            axis += 1
            out[w] = v
    return out


def _pair(sim):
    """Two unit vectors ``x``, ``y`` with cosine similarity *sim*."""
    return {
        "x": np.array([1.0, 0.0], dtype=np.float32),
        "y": np.array([sim, np.sqrt(1.0 - sim ** 2)], dtype=np.float32),
    }


# =========================================================================
# Fixtures
# =========================================================================


@pytest.fixture()
def store(tmp_path):
    """Vector store in a temporary SQLite database."""
    s = SQLiteVectorStore.open(str(tmp_path / "test_lexigraph.db"))
    yield s
    s.close()


def _builder(store, vectors, **config):
    return SimilarityGraphBuilder(store, FakeVectorizer(vectors), EdgeConfig(**config))


# =========================================================================
# FAISS index
# =========================================================================


class TestFaissIndex:
    """Tests for FAISS index construction and query."""

    def test_similar_vectors_found(self):
        """The nearest neighbour of a vector is itself, then its twin."""
        vecs = _group_vectors([(["a", "b"], 0.9), (["c"], 0.5)])
        mat = np.stack([vecs["a"], vecs["b"], vecs["c"]])
        index = build_index(mat)
        sims, ids = query_topk(index, mat[:1], k=3)
        assert ids[0].tolist()[:2] == [0, 1]
        assert sims[0][1] == pytest.approx(0.9, abs=1e-5)

    def test_empty_index(self):
        """Empty embedding array should work without crash."""
        index = build_index(np.empty((0, 8), dtype=np.float32))
        sims, ids = query_topk(index, np.zeros((2, 8), dtype=np.float32), k=5)
        assert sims.shape == (2, 0)
        assert ids.shape == (2, 0)


# =========================================================================
# Edge selection
# =========================================================================


class TestBuildEdges:
    """Threshold, connectivity guarantee and edge shape."""

    def test_connectivity_forces_sub_threshold_edge(self, store):
        """A pair below the threshold is still linked when min_connections=1."""
        builder = _builder(store, _pair(0.5))
        edges = asyncio.run(builder.build_edges(["x", "y"], threshold=0.9, min_connections=1))
        assert len(edges) == 1
        assert (edges[0].a, edges[0].b) == ("x", "y")
        assert edges[0].similarity == pytest.approx(0.5, abs=1e-5)

    def test_threshold_only_without_min_connections(self, store):
        """min_connections=0 leaves only edges at or above the threshold."""
        builder = _builder(store, _pair(0.5))
        edges = asyncio.run(builder.build_edges(["x", "y"], threshold=0.9, min_connections=0))
        assert edges == []

    def test_no_self_edges_and_pairs_unique(self, store):
        """Four mutually similar words give exactly the six unordered pairs."""
        words = ["w1", "w2", "w3", "w4"]
        builder = _builder(store, _group_vectors([(words, 0.8)]))
        edges = asyncio.run(builder.build_edges(words, threshold=0.5))
        pairs = [e.pair_key for e in edges]
        assert len(pairs) == 6
        assert len(set(pairs)) == 6
        for e in edges:
            assert e.a < e.b

    def test_every_embedded_word_connected(self, store):
        """With positive similarities every word appears in some edge."""
        rng = np.random.default_rng(7)
        mat = rng.random((8, 16)).astype(np.float32)
        mat /= np.linalg.norm(mat, axis=1, keepdims=True)
        vectors = {f"w{i}": mat[i] for i in range(8)}
        builder = _builder(store, vectors)
        edges = asyncio.run(builder.build_edges(list(vectors), threshold=0.999, min_connections=1))
        touched = {e.a for e in edges} | {e.b for e in edges}
        assert touched == set(vectors)

    def test_non_positive_similarity_never_emitted(self, store):
        """Opposite vectors stay unlinked even with a forced connection."""
        vectors = {"x": [1.0, 0.0], "y": [-1.0, 0.0]}
        builder = _builder(store, vectors)
        edges = asyncio.run(builder.build_edges(["x", "y"], threshold=0.0, min_connections=1))
        assert edges == []

    def test_identical_vectors_clamped(self, store):
        """Float noise never pushes a similarity above 1."""
        vectors = {"a": [0.6, 0.8], "b": [0.6, 0.8]}
        builder = _builder(store, vectors)
        edges = asyncio.run(builder.build_edges(["a", "b"]))
        assert len(edges) == 1
        assert 0.99 <= edges[0].similarity <= 1.0

    def test_case_insensitive_words(self, store):
        """Words are keyed lowercase and embedded once."""
        vectors = _group_vectors([(["apple", "pear"], 0.9)])
        builder = _builder(store, vectors)
        edges = asyncio.run(builder.build_edges(["Apple", "apple ", "PEAR"]))
        assert [e.pair_key for e in edges] == [("apple", "pear")]
        assert builder.vectorizer.calls == ["apple", "pear"]

    def test_chunking_does_not_change_edges(self, store):
        """Edge selection is identical whatever the row chunk size."""
        words = [f"w{i}" for i in range(7)]
        vectors = _group_vectors([(words[:4], 0.8), (words[4:], 0.7)])
        small = _builder(store, vectors, edge_chunk_size=2)
        large = _builder(store, vectors, edge_chunk_size=50)
        a = asyncio.run(small.build_edges(words))
        b = asyncio.run(large.build_edges(words))
        assert [e.pair_key for e in a] == [e.pair_key for e in b]


# =========================================================================
# Vector resolution
# =========================================================================


class TestVectorResolution:
    """Store-first lookup, persistence and failure isolation."""

    def test_new_vectors_persisted(self, store):
        """Generated vectors are stored and reused without re-embedding."""
        builder = _builder(store, _pair(0.5))
        asyncio.run(builder.resolve_vectors(["x", "y"]))
        assert store.get_vector("x") is not None

        again = _builder(store, {})
        found = asyncio.run(again.resolve_vectors(["x", "y"]))
        assert set(found) == {"x", "y"}
        assert again.vectorizer.calls == []

    def test_failed_word_excluded(self, store):
        """An unembeddable word is skipped; the rest still connect."""
        builder = _builder(store, _pair(0.8))
        edges = asyncio.run(builder.build_edges(["x", "ghost", "y"]))
        assert [e.pair_key for e in edges] == [("x", "y")]
        assert store.get_vector("ghost") is None

    def test_result_in_input_order(self, store):
        vectors = _group_vectors([(["c", "a", "b"], 0.5)])
        store.put_vector("b", vectors["b"])
        builder = _builder(store, vectors)
        found = asyncio.run(builder.resolve_vectors(["c", "a", "b"]))
        assert list(found) == ["c", "a", "b"]


# =========================================================================
# Stored connections
# =========================================================================


class TestBatchProcess:
    """Two-stage embedding + connection search."""

    def test_summary_and_connections(self, store):
        """Counts reflect failures; connections respect the threshold."""
        vectors = _group_vectors([(["a", "b"], 0.9), (["c"], 0.5)])
        builder = _builder(store, vectors)
        progress = []
        summary = asyncio.run(builder.batch_process(
            ["a", "b", "c", "ghost"],
            on_progress=lambda done, total, stage: progress.append((done, total, stage)),
        ))

        assert summary.total == 4
        assert summary.embedded == 3
        assert summary.failed == 1
        assert summary.errors == ["ghost"]
        assert summary.with_vectors == 3
        assert summary.connections_written == 3

        conns = store.get_edges("a")
        assert [c.target for c in conns] == ["b"]
        assert conns[0].similarity == pytest.approx(0.9, abs=1e-5)
        assert store.get_edges("c") == []

        assert progress[-1] == (3, 3, "connection")
        assert (4, 4, "embedding") in progress

    def test_stored_vectors_not_reembedded(self, store):
        vectors = _group_vectors([(["a", "b"], 0.9)])
        builder = _builder(store, vectors)
        asyncio.run(builder.batch_process(["a", "b"]))
        summary = asyncio.run(builder.batch_process(["a", "b"]))
        assert summary.embedded == 0
        assert builder.vectorizer.calls == ["a", "b"]

    def test_max_connections_respected(self, store):
        words = [f"w{i}" for i in range(6)]
        builder = _builder(store, _group_vectors([(words, 0.9)]), max_connections=2)
        asyncio.run(builder.batch_process(words))
        for w in words:
            assert len(store.get_edges(w)) == 2

    def test_empty_store(self, store):
        """Nothing embeddable → nothing connected, no crash."""
        builder = _builder(store, {})
        summary = asyncio.run(builder.batch_process(["ghost"]))
        assert summary.failed == 1
        assert summary.connections_written == 0


class TestUpdateConnections:
    """Single-word recompute with reverse links."""

    def test_reverse_link_inserted(self, store):
        vectors = _group_vectors([(["a", "b"], 0.9), (["c"], 0.5)])
        builder = _builder(store, vectors)
        asyncio.run(builder.batch_process(["a", "c"]))
        assert store.get_edges("a") == []

        conns = builder.update_connections("B")
        assert [c.target for c in conns] == ["a"]
        assert [c.target for c in store.get_edges("b")] == ["a"]
        assert [c.target for c in store.get_edges("a")] == ["b"]

    def test_unembeddable_word(self, store):
        builder = _builder(store, {})
        assert builder.update_connections("ghost") == []


class TestFindContextWords:
    """Centroid search over candidate words."""

    def test_nearest_candidates_first(self, store):
        vectors = _group_vectors([(["a", "b"], 0.9), (["c"], 0.5)])
        builder = _builder(store, vectors)
        assert asyncio.run(builder.find_context_words(["a"], 1, ["c", "b"])) == ["b"]
        assert asyncio.run(builder.find_context_words(["a"], 2, ["c", "b"])) == ["b", "c"]

    def test_no_target_vectors(self, store):
        builder = _builder(store, _pair(0.5))
        assert asyncio.run(builder.find_context_words(["ghost"], 3, ["x", "y"])) == []


# =========================================================================
# Scheduling
# =========================================================================


def _run_with_ticker(make_coro):
    """Run ``make_coro()`` beside a ticker task; return (result, ticks during)."""

    async def _run():
        ticks = 0
        stop = False

        async def ticker():
            nonlocal ticks
            while not stop:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.ensure_future(ticker())
        await asyncio.sleep(0)
        before = ticks
        result = await make_coro()
        during = ticks - before
        stop = True
        await task
        return result, during

    return asyncio.run(_run())


def _random_vectors(n, dim=16, seed=5):
    rng = np.random.default_rng(seed)
    mat = rng.standard_normal((n, dim)).astype(np.float32)
    mat /= np.linalg.norm(mat, axis=1, keepdims=True)
    return {f"w{i:03d}": mat[i] for i in range(n)}


class TestCooperativeScheduling:
    """Long loops hand control back to the event loop between chunks."""

    def test_edge_loop_yields_per_chunk(self, store):
        vectors = _random_vectors(300)
        builder = _builder(store, vectors, edge_chunk_size=50)
        keys = list(vectors)
        edges, ticks = _run_with_ticker(
            lambda: builder.edges_from_vectors(keys, vectors, threshold=0.65, min_connections=1)
        )
        assert edges
        assert ticks >= 300 // 50

    def test_build_edges_lets_other_tasks_run(self, store):
        vectors = _random_vectors(300)
        builder = _builder(store, vectors)
        edges, ticks = _run_with_ticker(lambda: builder.build_edges(list(vectors)))
        assert edges
        assert ticks > 0


# =========================================================================
# Vectorizer
# =========================================================================


class _StubModel:
    """Minimal stand-in for ``SentenceTransformer.encode``."""

    def __init__(self, fail=False):
        self.fail = fail

    def encode(self, texts, show_progress_bar=False, normalize_embeddings=True):
        if self.fail:
            raise RuntimeError("encoder crashed")
        return np.array([[0.6, 0.8]] * len(texts), dtype=np.float64)


class TestSentenceTransformerVectorizer:
    """Injected-model vectorizer behaviour."""

    def test_embed_returns_float32_row(self):
        vec = SentenceTransformerVectorizer(model=_StubModel()).embed("apple")
        assert vec.dtype == np.float32
        assert vec.tolist() == pytest.approx([0.6, 0.8])

    def test_encoder_failure_wrapped(self):
        vectorizer = SentenceTransformerVectorizer(model=_StubModel(fail=True))
        with pytest.raises(EmbeddingError) as exc_info:
            vectorizer.embed("apple")
        assert exc_info.value.word == "apple"
        assert isinstance(exc_info.value.original, RuntimeError)
