"""
Pydantic models for Lexigraph.

Graph: similarity edges, stored per-word connections, graph views.
Clustering: word-key clusters, cache entries, hydrated clusters.
Deck: the card records used for rehydration and neighbour lookups.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

CACHE_SCHEMA_VERSION = 1
UNEMBEDDED_LABEL = "unembedded"

ProgressStage = Literal["embedding", "connection"]


# =========================================================================
# Graph models
# =========================================================================


class SimilarityEdge(BaseModel):
    """Undirected edge between two word keys, stored with ``a < b``."""

    a: str
    b: str
    similarity: float = Field(gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_pair(self) -> "SimilarityEdge":
        if self.a == self.b:
            raise ValueError(f"self-edge on {self.a!r}")
        if self.a > self.b:
            self.a, self.b = self.b, self.a
        return self

    @property
    def pair_key(self) -> tuple:
        return (self.a, self.b)


class Connection(BaseModel):
    """One entry of a word's stored (directed) connection list."""

    target: str
    similarity: float


class GraphNode(BaseModel):
    id: str
    group: int = 1


class GraphLink(BaseModel):
    source: str
    target: str
    value: float


class GraphView(BaseModel):
    """``{nodes, links}`` projection for visualisation consumers."""

    nodes: List[GraphNode] = Field(default_factory=list)
    links: List[GraphLink] = Field(default_factory=list)


# =========================================================================
# Deck models
# =========================================================================


class Card(BaseModel):
    """Live card record as returned by the card provider."""

    id: str
    word: str
    learning_state: int = 0
    is_familiar: bool = False
    deck_id: Optional[str] = None

    @property
    def has_progress(self) -> bool:
        """True once the card left the initial state or was marked familiar."""
        return self.learning_state != 0 or self.is_familiar


class Neighbor(BaseModel):
    word: str
    similarity: float
    card: Optional[Card] = None


# =========================================================================
# Clustering models
# =========================================================================


class Cluster(BaseModel):
    """A thematic group of word keys with a representative label."""

    label: str
    items: List[str] = Field(min_length=1)
    unembedded: bool = False


class HydratedCluster(BaseModel):
    """A cluster joined against current card records."""

    label: str
    items: List[Card] = Field(default_factory=list)
    unembedded: bool = False


class CacheEntry(BaseModel):
    """Persisted clustering result for one key. Word keys only."""

    key: str
    clusters: List[Cluster] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_size: int = 0
    schema_version: int = CACHE_SCHEMA_VERSION


class BatchSummary(BaseModel):
    """Outcome of ``SimilarityGraphBuilder.batch_process``."""

    total: int = 0
    embedded: int = 0
    failed: int = 0
    with_vectors: int = 0
    connections_written: int = 0
    errors: List[str] = Field(default_factory=list)
