"""
SQLite persistence for Lexigraph.

Tables:
- ``Embeddings``           word → float32 vector BLOB.
- ``SemanticConnections``  word → JSON list of stored connections.
- ``DeckClusters``         cache key → JSON ``CacheEntry`` (word keys only).
- ``Cards``                deck card records (reference card provider).

``SQLiteVectorStore`` and ``SQLiteCardProvider`` implement the
``VectorStore`` / ``CardProvider`` protocols the engine depends on; any
other backend satisfying the protocols can be injected instead.
"""

import json
import logging
import os
import sqlite3
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol

import numpy as np
from pydantic import ValidationError

from lexigraph.models import CACHE_SCHEMA_VERSION, CacheEntry, Card, Connection
from lexigraph.utils import blob_to_embedding, embedding_to_blob, word_key

logger = logging.getLogger(__name__)


class CacheSchemaError(Exception):
    """Raised when a stored cache payload cannot be decoded.

    Attributes:
        key: The cache key whose payload was rejected.
        original: The underlying decode/validation error (may be ``None``).
    """

    def __init__(self, key: str, original: Optional[Exception] = None) -> None:
        self.key = key
        self.original = original
        super().__init__(f"cache entry {key!r} unreadable: {original}")


# =========================================================================
# Collaborator protocols
# =========================================================================


class VectorStore(Protocol):
    def get_vector(self, word: str) -> Optional[np.ndarray]: ...

    def get_vectors(self, words: Iterable[str]) -> Dict[str, np.ndarray]: ...

    def put_vector(self, word: str, vector: np.ndarray) -> None: ...

    def all_vectors(self) -> Dict[str, np.ndarray]: ...

    def get_edges(self, word: str) -> List[Connection]: ...

    def put_edges(self, word: str, edges: List[Connection]) -> None: ...

    def all_edges(self) -> Dict[str, List[Connection]]: ...

    def get_cluster_cache(self, key: str) -> Optional[CacheEntry]: ...

    def put_cluster_cache(self, key: str, entry: CacheEntry) -> None: ...


class CardProvider(Protocol):
    def list_cards(self, deck_id: str) -> List[Card]: ...

    def get_card_by_word(self, word: str) -> Optional[Card]: ...


# =========================================================================
# Schema constants
# =========================================================================

_CREATE_EMBEDDINGS = """\
CREATE TABLE IF NOT EXISTS Embeddings (
    word        TEXT PRIMARY KEY,
    vector      BLOB    NOT NULL,
    dim         INTEGER NOT NULL,
    created_at  TIMESTAMP
);
"""

_CREATE_SEMANTIC_CONNECTIONS = """\
CREATE TABLE IF NOT EXISTS SemanticConnections (
    source       TEXT PRIMARY KEY,
    connections  TEXT NOT NULL,
    updated_at   TIMESTAMP
);
"""

_CREATE_DECK_CLUSTERS = """\
CREATE TABLE IF NOT EXISTS DeckClusters (
    cache_key   TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    updated_at  TIMESTAMP
);
"""

_CREATE_CARDS = """\
CREATE TABLE IF NOT EXISTS Cards (
    id              TEXT PRIMARY KEY,
    deck_id         TEXT    NOT NULL,
    word            TEXT    NOT NULL,
    word_key        TEXT    NOT NULL,
    learning_state  INTEGER NOT NULL DEFAULT 0,
    is_familiar     INTEGER NOT NULL DEFAULT 0,
    created_at      TIMESTAMP
);
"""

_CREATE_IDX_CARDS_DECK = """\
CREATE INDEX IF NOT EXISTS idx_cards_deck ON Cards(deck_id);
"""

_CREATE_IDX_CARDS_WORD_KEY = """\
CREATE INDEX IF NOT EXISTS idx_cards_word_key ON Cards(word_key);
"""

# SQLite's default bound-parameter ceiling is 999 on older builds.
_IN_CLAUSE_CHUNK = 500


# =========================================================================
# Connection helper
# =========================================================================


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with WAL mode and row-factory enabled."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


# =========================================================================
# Migration
# =========================================================================


def migrate(conn: sqlite3.Connection) -> None:
    """Create (or verify) every Lexigraph table and index."""
    for ddl in (
        _CREATE_EMBEDDINGS,
        _CREATE_SEMANTIC_CONNECTIONS,
        _CREATE_DECK_CLUSTERS,
        _CREATE_CARDS,
        _CREATE_IDX_CARDS_DECK,
        _CREATE_IDX_CARDS_WORD_KEY,
    ):
        conn.execute(ddl)
    conn.commit()
    logger.info("Lexigraph migration OK.")


# =========================================================================
# Lock-retry helper
# =========================================================================

_SQLITE_LOCK_RETRIES = 5
_SQLITE_LOCK_BASE_DELAY = 0.1


def _retry_on_lock(fn, *args, **kwargs):  # type: ignore[no-untyped-def]
    """Wrap *fn* with SQLite-lock retry."""
    for attempt in range(1, _SQLITE_LOCK_RETRIES + 1):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() and attempt < _SQLITE_LOCK_RETRIES:
                delay = _SQLITE_LOCK_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "SQLite locked (attempt %d/%d) — retrying in %.2fs",
                    attempt, _SQLITE_LOCK_RETRIES, delay,
                )
                time.sleep(delay)
            else:
                raise


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# =========================================================================
# Codec helpers
# =========================================================================


def encode_connections(edges: List[Connection]) -> str:
    return json.dumps([e.model_dump() for e in edges])


def decode_connections(payload: str) -> List[Connection]:
    return [Connection.model_validate(d) for d in json.loads(payload)]


def decode_cache_entry(key: str, payload: str) -> CacheEntry:
    """Parse a ``DeckClusters`` payload, rejecting foreign schema versions."""
    try:
        entry = CacheEntry.model_validate_json(payload)
    except ValidationError as exc:
        raise CacheSchemaError(key, exc) from exc
    if entry.schema_version != CACHE_SCHEMA_VERSION:
        raise CacheSchemaError(
            key,
            ValueError(
                f"schema_version={entry.schema_version}, "
                f"expected {CACHE_SCHEMA_VERSION}"
            ),
        )
    return entry


# =========================================================================
# Vector store
# =========================================================================


class SQLiteVectorStore:
    """``VectorStore`` backed by a single SQLite connection.

    Every write commits before returning, so embeddings persisted during a
    batch survive an interrupted run.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        migrate(conn)

    @classmethod
    def open(cls, db_path: str) -> "SQLiteVectorStore":
        return cls(get_connection(db_path))

    def close(self) -> None:
        self.conn.close()

    # ---- vectors ----

    def get_vector(self, word: str) -> Optional[np.ndarray]:
        row = self.conn.execute(
            "SELECT vector FROM Embeddings WHERE word = ?", (word_key(word),)
        ).fetchone()
        return blob_to_embedding(row["vector"]) if row else None

    def get_vectors(self, words: Iterable[str]) -> Dict[str, np.ndarray]:
        """Batch lookup; absent words are simply missing from the result."""
        keys = [word_key(w) for w in words]
        found: Dict[str, np.ndarray] = {}
        for chunk in _chunks(keys, _IN_CLAUSE_CHUNK):
            placeholders = ",".join("?" * len(chunk))
            rows = self.conn.execute(
                f"SELECT word, vector FROM Embeddings WHERE word IN ({placeholders})",
                chunk,
            ).fetchall()
            for r in rows:
                found[r["word"]] = blob_to_embedding(r["vector"])
        return found

    def put_vector(self, word: str, vector: np.ndarray) -> None:
        arr = np.asarray(vector, dtype=np.float32)

        def _do_put() -> None:
            self.conn.execute(
                """INSERT OR REPLACE INTO Embeddings (word, vector, dim, created_at)
                   VALUES (?, ?, ?, ?)""",
                (word_key(word), embedding_to_blob(arr), int(arr.shape[0]), _now()),
            )
            self.conn.commit()

        _retry_on_lock(_do_put)

    def all_vectors(self) -> Dict[str, np.ndarray]:
        rows = self.conn.execute(
            "SELECT word, vector FROM Embeddings ORDER BY word"
        ).fetchall()
        return {r["word"]: blob_to_embedding(r["vector"]) for r in rows}

    # ---- stored connections ----

    def get_edges(self, word: str) -> List[Connection]:
        row = self.conn.execute(
            "SELECT connections FROM SemanticConnections WHERE source = ?",
            (word_key(word),),
        ).fetchone()
        return decode_connections(row["connections"]) if row else []

    def put_edges(self, word: str, edges: List[Connection]) -> None:
        def _do_put() -> None:
            self.conn.execute(
                """INSERT OR REPLACE INTO SemanticConnections
                       (source, connections, updated_at)
                   VALUES (?, ?, ?)""",
                (word_key(word), encode_connections(edges), _now()),
            )
            self.conn.commit()

        _retry_on_lock(_do_put)

    def all_edges(self) -> Dict[str, List[Connection]]:
        rows = self.conn.execute(
            "SELECT source, connections FROM SemanticConnections ORDER BY source"
        ).fetchall()
        return {r["source"]: decode_connections(r["connections"]) for r in rows}

    # ---- cluster cache ----

    def get_cluster_cache(self, key: str) -> Optional[CacheEntry]:
        """Return the cached entry for *key*, ``None`` if absent.

        Raises:
            CacheSchemaError: if the stored payload cannot be decoded.
        """
        row = self.conn.execute(
            "SELECT payload FROM DeckClusters WHERE cache_key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return decode_cache_entry(key, row["payload"])

    def put_cluster_cache(self, key: str, entry: CacheEntry) -> None:
        def _do_put() -> None:
            self.conn.execute(
                """INSERT OR REPLACE INTO DeckClusters (cache_key, payload, updated_at)
                   VALUES (?, ?, ?)""",
                (key, entry.model_dump_json(), entry.updated_at.isoformat()),
            )
            self.conn.commit()

        _retry_on_lock(_do_put)


# =========================================================================
# Card provider
# =========================================================================


def _row_to_card(row: sqlite3.Row) -> Card:
    return Card(
        id=row["id"],
        word=row["word"],
        learning_state=row["learning_state"],
        is_familiar=bool(row["is_familiar"]),
        deck_id=row["deck_id"],
    )


class SQLiteCardProvider:
    """Reference ``CardProvider`` over the ``Cards`` table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        migrate(conn)

    def insert_card(self, card: Card) -> None:
        """Insert or replace *card* (idempotent on ``id``)."""

        def _do_insert() -> None:
            self.conn.execute(
                """INSERT OR REPLACE INTO Cards
                       (id, deck_id, word, word_key, learning_state, is_familiar,
                        created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (card.id, card.deck_id or "", card.word, word_key(card.word),
                 card.learning_state, int(card.is_familiar), _now()),
            )
            self.conn.commit()

        _retry_on_lock(_do_insert)

    def list_cards(self, deck_id: str) -> List[Card]:
        rows = self.conn.execute(
            "SELECT * FROM Cards WHERE deck_id = ? ORDER BY rowid", (deck_id,)
        ).fetchall()
        return [_row_to_card(r) for r in rows]

    def get_card_by_word(self, word: str) -> Optional[Card]:
        """Most progressed card for *word* across decks, else the first one."""
        rows = self.conn.execute(
            "SELECT * FROM Cards WHERE word_key = ? ORDER BY rowid",
            (word_key(word),),
        ).fetchall()
        cards = [_row_to_card(r) for r in rows]
        for card in cards:
            if card.has_progress:
                return card
        return cards[0] if cards else None
