"""
Utility helpers for Lexigraph.

Provides:
- Structured logging configuration with timestamps.
- Wall-clock timing of pipeline stages.
- Cooperative yield points for long-running loops.
- Word-key normalisation.
- Embedding ↔ BLOB serialisation helpers.
"""

import asyncio
import contextlib
import logging
import time
from typing import Generator, Iterable, List

import numpy as np

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(
    level: int = logging.INFO,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%dT%H:%M:%S%z",
) -> None:
    """Configure the root logger with timestamped structured output."""
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, force=True)


@contextlib.contextmanager
def timed(label: str) -> Generator[None, None, None]:
    """Context manager that logs elapsed wall-clock time for *label*."""
    t0 = time.monotonic()
    yield
    elapsed = time.monotonic() - t0
    logger.info("⏱  %s completed in %.2fs.", label, elapsed)


# ---------------------------------------------------------------------------
# Cooperative scheduling
# ---------------------------------------------------------------------------


async def cooperative_yield() -> None:
    """Hand control back to the event loop between bounded chunks of work."""
    await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Word keys
# ---------------------------------------------------------------------------


def word_key(word: str) -> str:
    """Canonical lookup key for *word*: stripped and lowercased."""
    return word.strip().lower()


def normalize_words(words: Iterable[str]) -> List[str]:
    """Lowercase and dedupe *words*, keeping first-occurrence order.

    Empty strings are dropped.
    """
    seen = set()
    keys: List[str] = []
    for w in words:
        k = word_key(w)
        if k and k not in seen:
            seen.add(k)
            keys.append(k)
    return keys


# ---------------------------------------------------------------------------
# Embedding serialisation
# ---------------------------------------------------------------------------


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    """Return *vec* as float32 with unit L2 norm (zero vectors unchanged)."""
    arr = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm < 1e-12:
        return arr
    return arr / norm


def embedding_to_blob(arr: np.ndarray) -> bytes:
    """Serialise a numpy float32 array to raw bytes for SQLite BLOB."""
    return np.asarray(arr, dtype=np.float32).tobytes()


def blob_to_embedding(blob: bytes) -> np.ndarray:
    """Deserialise a SQLite BLOB back to a numpy float32 array."""
    return np.frombuffer(blob, dtype=np.float32).copy()
