"""
Read-only projections over stored connections.

Nothing here computes similarities: every view is assembled from the
per-word connection lists persisted by ``SimilarityGraphBuilder``.
Links are undirected; each unordered pair is emitted once with
``source < target``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import networkx as nx

from lexigraph.db import CardProvider, VectorStore
from lexigraph.models import Connection, GraphLink, GraphNode, GraphView, Neighbor
from lexigraph.utils import normalize_words, word_key

logger = logging.getLogger(__name__)


def _add_link(links: List[GraphLink], seen: set, u: str, v: str, value: float) -> None:
    if u == v:
        return
    pair = (u, v) if u < v else (v, u)
    if pair in seen:
        return
    seen.add(pair)
    links.append(GraphLink(source=pair[0], target=pair[1], value=value))


def get_network(store: VectorStore, word: str) -> List[Connection]:
    """Raw stored connection list for *word*."""
    return store.get_edges(word_key(word))


def get_neighbors(
    store: VectorStore,
    word: str,
    limit: int = 20,
    cards: Optional[CardProvider] = None,
) -> List[Neighbor]:
    """Top *limit* stored neighbours of *word*, best first.

    When a card provider is given each neighbour carries its card (or
    ``None`` if the word has no card).
    """
    conns = sorted(get_network(store, word), key=lambda c: c.similarity, reverse=True)
    neighbors: List[Neighbor] = []
    for conn in conns[:limit]:
        card = cards.get_card_by_word(conn.target) if cards is not None else None
        neighbors.append(Neighbor(word=conn.target, similarity=conn.similarity, card=card))
    return neighbors


def global_graph(store: VectorStore, max_links_per_node: int = 2) -> GraphView:
    """Whole-corpus view keeping each word's *max_links_per_node* best links."""
    nodes: Dict[str, None] = {}
    links: List[GraphLink] = []
    seen: set = set()

    for source, conns in store.all_edges().items():
        nodes.setdefault(source)
        top = sorted(conns, key=lambda c: c.similarity, reverse=True)[:max_links_per_node]
        for conn in top:
            nodes.setdefault(conn.target)
            _add_link(links, seen, source, conn.target, conn.similarity)

    logger.info("Global graph: %d node(s), %d link(s).", len(nodes), len(links))
    return GraphView(nodes=[GraphNode(id=n) for n in nodes], links=links)


def graph_for_subset(store: VectorStore, words: Iterable[str]) -> GraphView:
    """Sub-graph induced by *words*; isolated words are kept as nodes."""
    keys = normalize_words(words)
    members = set(keys)
    links: List[GraphLink] = []
    seen: set = set()

    for key in keys:
        for conn in store.get_edges(key):
            if conn.target in members:
                _add_link(links, seen, key, conn.target, conn.similarity)

    return GraphView(nodes=[GraphNode(id=k) for k in keys], links=links)


def compute_metrics(view: GraphView) -> Dict[str, Any]:
    """Summary metrics of a graph view.

    Returns dict with: total_nodes, total_links, avg_degree,
    component_count, isolated_nodes_count.
    """
    G = nx.Graph()
    G.add_nodes_from(n.id for n in view.nodes)
    G.add_edges_from((l.source, l.target) for l in view.links)

    n_nodes = G.number_of_nodes()
    n_links = G.number_of_edges()
    return {
        "total_nodes": n_nodes,
        "total_links": n_links,
        "avg_degree": round(2 * n_links / n_nodes, 4) if n_nodes else 0.0,
        "component_count": nx.number_connected_components(G) if n_nodes else 0,
        "isolated_nodes_count": nx.number_of_isolates(G),
    }
