"""
Engine configuration.

All tunables live in one ``EngineConfig`` tree of pydantic models so they
can be saved to, and re-applied from, a JSON file::

    python -m lexigraph.cli save-config ./data/lexigraph.json
    python -m lexigraph.cli --config ./data/lexigraph.json cluster --deck d1

The chain-sequencer jump constants are exposed here rather than fixed in
code; the defaults are inherited values, not tuned ones.
"""

import json
import logging
import os
from typing import Any, Dict

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EdgeConfig(BaseModel):
    """Similarity-edge selection and chunking."""

    threshold: float = Field(default=0.65, ge=0.0, le=1.0)
    min_connections: int = Field(default=1, ge=0)
    max_connections: int = Field(default=20, ge=1)
    edge_chunk_size: int = Field(default=50, ge=1)
    embed_chunk_size: int = Field(default=100, ge=1)


class ClusterConfig(BaseModel):
    """Partitioning bounds for ``ClusterEngine``."""

    strong_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_cluster_size: int = Field(default=30, ge=2)
    small_component_size: int = Field(default=10, ge=1)
    pool_target_size: int = Field(default=20, ge=1)
    kmeans_max_iter: int = Field(default=10, ge=1)


class ChainConfig(BaseModel):
    """Global-jump scoring for ``ChainSequencer``."""

    lookback_depth: int = Field(default=5, ge=1)
    decay: float = Field(default=0.6, gt=0.0, le=1.0)
    centrality_weight: float = Field(default=0.05, ge=0.0)


class GraphConfig(BaseModel):
    """Defaults for graph projections."""

    neighbor_limit: int = Field(default=20, ge=1)
    max_links_per_node: int = Field(default=2, ge=1)


class EngineConfig(BaseModel):
    model_name: str = "all-MiniLM-L6-v2"
    edges: EdgeConfig = Field(default_factory=EdgeConfig)
    clusters: ClusterConfig = Field(default_factory=ClusterConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)


def load_config(path: str) -> EngineConfig:
    """Load an ``EngineConfig`` from JSON; missing keys take defaults."""
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    config = EngineConfig.model_validate(data)
    logger.info("Config loaded ← %s", path)
    return config


def save_config(config: EngineConfig, path: str) -> None:
    """Write *config* to *path* as indented JSON."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(config.model_dump_json(indent=2))
    logger.info("Config saved → %s", path)


def update_config(config: EngineConfig, **sections: Dict[str, Any]) -> EngineConfig:
    """Return a validated copy of *config* with per-section overrides.

    Example: ``update_config(cfg, edges={"threshold": 0.7})``.
    """
    data = config.model_dump()
    for name, overrides in sections.items():
        if name not in data:
            raise KeyError(f"Unknown config section: {name}")
        if isinstance(data[name], dict):
            data[name].update(overrides)
        else:
            data[name] = overrides
    return EngineConfig.model_validate(data)
