"""
Semantic chain ordering for study sessions.

Turns an unordered word list into a path where consecutive words tend to
be related:

1. Score every pair (dense graph: threshold 0, one forced link per peer).
2. Weighted degree centrality = sum of a word's edge similarities.
3. Start from the most central word and walk depth-first, always moving
   to the most similar unvisited neighbour, backtracking at dead ends.
4. When the walk is exhausted with words left over, jump to the
   unvisited word that best matches the recent path::

       score(c) = Σ_{k<min(L, |path|)} sim(c, path[-1-k]) · decay^k
                  + centrality_weight · centrality(c)

5. Words without a vector are appended last, in their original order.

This is a greedy heuristic, not an optimal path. Ties are always broken
by input order, so the same input gives the same path.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from lexigraph.config import ChainConfig
from lexigraph.graph_builder import SimilarityGraphBuilder
from lexigraph.utils import normalize_words, word_key

logger = logging.getLogger(__name__)


class ChainSequencer:
    """Orders a word subset into a semantically continuous path."""

    def __init__(
        self,
        graph_builder: SimilarityGraphBuilder,
        config: Optional[ChainConfig] = None,
    ) -> None:
        self.graph_builder = graph_builder
        self.config = config or ChainConfig()

    def _jump_target(
        self,
        candidates: List[str],
        visited: set,
        path: List[str],
        sims: Dict[Tuple[str, str], float],
        centrality: Dict[str, float],
    ) -> Optional[str]:
        cfg = self.config
        lookback = min(cfg.lookback_depth, len(path))
        best: Optional[str] = None
        best_score = 0.0
        for c in candidates:
            if c in visited:
                continue
            score = 0.0
            for k in range(lookback):
                prev = path[-1 - k]
                score += sims.get((c, prev), 0.0) * cfg.decay ** k
            score += cfg.centrality_weight * centrality[c]
            if best is None or score > best_score:
                best, best_score = c, score
        return best

    async def sequence(self, words: Sequence[str]) -> List[str]:
        """Return *words* reordered along a semantic chain.

        The result is always a permutation of *words*: original spelling
        is kept, and case-insensitive duplicates are emitted together.
        """
        words = list(words)
        if len(words) <= 1:
            return words

        originals: Dict[str, List[str]] = {}
        for w in words:
            originals.setdefault(word_key(w), []).append(w)
        keys = normalize_words(words)
        rank = {k: i for i, k in enumerate(keys)}

        vectors = await self.graph_builder.resolve_vectors(keys)
        edges = await self.graph_builder.edges_from_vectors(
            keys, vectors, threshold=0.0, min_connections=len(keys)
        )

        embedded = [k for k in keys if k in vectors]
        adj: Dict[str, List[Tuple[str, float]]] = {k: [] for k in embedded}
        centrality: Dict[str, float] = {k: 0.0 for k in embedded}
        sims: Dict[Tuple[str, str], float] = {}
        for e in edges:
            adj[e.a].append((e.b, e.similarity))
            adj[e.b].append((e.a, e.similarity))
            centrality[e.a] += e.similarity
            centrality[e.b] += e.similarity
            sims[(e.a, e.b)] = sims[(e.b, e.a)] = e.similarity
        for neighbours in adj.values():
            neighbours.sort(key=lambda t: (-t[1], rank[t[0]]))

        path: List[str] = []
        visited = set()
        stack: List[str] = []
        jumps = 0

        def visit(word: str) -> None:
            visited.add(word)
            stack.append(word)
            path.append(word)

        if embedded:
            start = embedded[0]
            for k in embedded:
                if centrality[k] > centrality[start]:
                    start = k
            visit(start)

        while len(path) < len(embedded):
            if not stack:
                target = self._jump_target(embedded, visited, path, sims, centrality)
                if target is None:
                    break
                jumps += 1
                visit(target)
                continue

            current = stack[-1]
            nxt = next((t for t, _ in adj[current] if t not in visited), None)
            if nxt is None:
                stack.pop()
            else:
                visit(nxt)

        path.extend(k for k in keys if k not in visited)

        ordered = [w for k in path for w in originals[k]]
        ordered.extend(originals.get("", []))

        logger.info(
            "Sequenced %d word(s): %d embedded, %d jump(s).",
            len(ordered), len(embedded), jumps,
        )
        return ordered
