"""
Per-key clustering cache with single-flight computation.

Cache entries hold word keys only. Every read joins those keys against
the *current* card records, so progress made after the clusters were
computed is always reflected. Concurrent requests for the same key share
one computation; different keys compute independently.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Union

from lexigraph.clustering.clusterer import ClusterEngine
from lexigraph.db import CacheSchemaError, VectorStore
from lexigraph.models import CacheEntry, Card, Cluster, HydratedCluster
from lexigraph.utils import word_key

logger = logging.getLogger(__name__)

LiveRecordsFn = Callable[[], Union[List[Card], Awaitable[List[Card]]]]


# =========================================================================
# Rehydration
# =========================================================================


def pick_live_records(records: Iterable[Card]) -> Dict[str, Card]:
    """Map word key → card, preferring cards with learning progress.

    Among cards for the same word, the first card with progress wins;
    if none has progress, the first card wins.
    """
    chosen: Dict[str, Card] = {}
    for card in records:
        key = word_key(card.word)
        existing = chosen.get(key)
        if existing is None or (card.has_progress and not existing.has_progress):
            chosen[key] = card
    return chosen


def rehydrate(clusters: List[Cluster], records: Iterable[Card]) -> List[HydratedCluster]:
    """Join word-key clusters against live *records*.

    Words with no live record are dropped, as are clusters left empty.
    """
    by_word = pick_live_records(records)
    hydrated: List[HydratedCluster] = []
    for c in clusters:
        items = [by_word[w] for w in c.items if w in by_word]
        if items:
            hydrated.append(
                HydratedCluster(label=c.label, items=items, unembedded=c.unembedded)
            )
    return hydrated


async def _load_records(live_records_fn: LiveRecordsFn) -> List[Card]:
    result = live_records_fn()
    if inspect.isawaitable(result):
        result = await result
    return list(result)


# =========================================================================
# Cache
# =========================================================================


class ClusterCache:
    """Cached, single-flight front for ``ClusterEngine.cluster``."""

    def __init__(self, engine: ClusterEngine, store: VectorStore) -> None:
        self.engine = engine
        self.store = store
        self._in_flight: Dict[str, "asyncio.Task[List[HydratedCluster]]"] = {}

    def is_computing(self, key: str) -> bool:
        return key in self._in_flight

    def _read(self, key: str):
        """Cached entry for *key*, or ``None`` on miss or unreadable entry."""
        try:
            return self.store.get_cluster_cache(key)
        except CacheSchemaError as exc:
            logger.warning("Discarding cache entry for %r: %s", key, exc)
        except Exception as exc:
            logger.warning("Cache read failed for %r, recomputing: %s", key, exc)
        return None

    async def _compute(self, key: str, live_records_fn: LiveRecordsFn) -> List[HydratedCluster]:
        try:
            logger.info("Calculating new clusters for %r.", key)
            records = await _load_records(live_records_fn)
            clusters = await self.engine.cluster([c.word for c in records])

            entry = CacheEntry(key=key, clusters=clusters, source_size=len(records))
            try:
                self.store.put_cluster_cache(key, entry)
            except Exception as exc:
                logger.warning("Cache write failed for %r: %s", key, exc)

            return rehydrate(clusters, records)
        finally:
            self._in_flight.pop(key, None)

    async def get(
        self,
        key: str,
        live_records_fn: LiveRecordsFn,
        force_refresh: bool = False,
    ) -> List[HydratedCluster]:
        """Clusters for *key*, rehydrated against ``live_records_fn()``.

        Args:
            key: Cache key, typically a deck ID.
            live_records_fn: Returns (or resolves to) the current cards.
            force_refresh: Skip the cache read and recompute. A computation
                           already running for *key* is still joined.
        """
        if not force_refresh:
            entry = self._read(key)
            if entry is not None:
                logger.info("Using cached clusters for %r.", key)
                records = await _load_records(live_records_fn)
                return rehydrate(entry.clusters, records)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute(key, live_records_fn))
            self._in_flight[key] = task
        else:
            logger.info("Joining in-flight clustering for %r.", key)
        return await asyncio.shield(task)
