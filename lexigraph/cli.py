"""
Lexigraph CLI.

Usage::

    python -m lexigraph.cli --db ./data/lexigraph.db embed --input words.json
    python -m lexigraph.cli --db ./data/lexigraph.db import-cards \\
        --deck core --input words.json
    python -m lexigraph.cli --db ./data/lexigraph.db cluster --deck core
    python -m lexigraph.cli --db ./data/lexigraph.db sequence --input words.json
    python -m lexigraph.cli --db ./data/lexigraph.db neighbors apple --limit 10
    python -m lexigraph.cli --db ./data/lexigraph.db graph --max-links 2
    python -m lexigraph.cli save-config ./data/lexigraph.json

Word lists are JSON arrays of strings. Results are printed as JSON, or
written to ``--out``.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, List, Optional

from lexigraph.config import EngineConfig, load_config, save_config
from lexigraph.models import Card
from lexigraph.service import LexiconEngine
from lexigraph.utils import setup_logging, timed

logger = logging.getLogger(__name__)


# =========================================================================
# I/O helpers
# =========================================================================


def _load_words(path: str) -> List[str]:
    logger.info("Loading words from %s", path)
    with open(path, "r", encoding="utf-8") as fh:
        words = json.load(fh)
    if not isinstance(words, list) or not all(isinstance(w, str) for w in words):
        logger.error("Expected a JSON array of strings in %s", path)
        sys.exit(1)
    return words


def _emit(data: Any, out: Optional[str]) -> None:
    text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    if out is None:
        print(text)
        return
    os.makedirs(os.path.dirname(os.path.abspath(out)), exist_ok=True)
    with open(out, "w", encoding="utf-8") as fh:
        fh.write(text)
    logger.info("📄 Output → %s", out)


def _log_progress(done: int, total: int, stage: str) -> None:
    if done == total or done % 100 == 0:
        logger.info("  %s: %d/%d", stage, done, total)


# =========================================================================
# Commands
# =========================================================================


def _cmd_embed(engine: LexiconEngine, args: argparse.Namespace) -> None:
    words = _load_words(args.input)
    with timed("Batch processing"):
        summary = asyncio.run(engine.batch_process(words, on_progress=_log_progress))
    _emit(summary.model_dump(), args.out)


def _cmd_import_cards(engine: LexiconEngine, args: argparse.Namespace) -> None:
    words = _load_words(args.input)
    cards = engine._require_cards()
    for i, w in enumerate(words):
        cards.insert_card(Card(id=f"{args.deck}:{i}", word=w, deck_id=args.deck))
    logger.info("Imported %d card(s) into deck %r.", len(words), args.deck)


def _cmd_cluster(engine: LexiconEngine, args: argparse.Namespace) -> None:
    if args.deck:
        clusters = asyncio.run(engine.get_clusters(args.deck, force_refresh=args.force))
        data = [
            {"label": c.label, "unembedded": c.unembedded,
             "items": [card.word for card in c.items]}
            for c in clusters
        ]
    else:
        clusters = asyncio.run(engine.cluster(_load_words(args.input)))
        data = [c.model_dump() for c in clusters]
    _emit(data, args.out)


def _cmd_sequence(engine: LexiconEngine, args: argparse.Namespace) -> None:
    _emit(asyncio.run(engine.sequence(_load_words(args.input))), args.out)


def _cmd_neighbors(engine: LexiconEngine, args: argparse.Namespace) -> None:
    neighbors = engine.get_neighbors(args.word, limit=args.limit)
    _emit([{"word": n.word, "similarity": n.similarity} for n in neighbors], args.out)


def _cmd_graph(engine: LexiconEngine, args: argparse.Namespace) -> None:
    if args.deck:
        view = engine.graph_for_deck(args.deck)
    else:
        view = engine.global_graph(max_links_per_node=args.max_links)
    data = view.model_dump()
    data["metrics"] = engine.graph_metrics(view)
    _emit(data, args.out)


_COMMANDS = {
    "embed": _cmd_embed,
    "import-cards": _cmd_import_cards,
    "cluster": _cmd_cluster,
    "sequence": _cmd_sequence,
    "neighbors": _cmd_neighbors,
    "graph": _cmd_graph,
}


# =========================================================================
# CLI
# =========================================================================


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m lexigraph.cli",
        description="Semantic word graph, clustering and study ordering.",
    )
    parser.add_argument("--db", default="./data/lexigraph.db")
    parser.add_argument(
        "--config", default=None,
        help="Apply a saved EngineConfig JSON.",
    )
    parser.add_argument("--out", default=None, help="Write JSON output here.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("embed", help="Embed words and store their connections.")
    p.add_argument("--input", required=True)

    p = sub.add_parser("import-cards", help="Add words as cards of a deck.")
    p.add_argument("--deck", required=True)
    p.add_argument("--input", required=True)

    p = sub.add_parser("cluster", help="Partition words into thematic clusters.")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--input")
    src.add_argument("--deck")
    p.add_argument("--force", action="store_true", help="Bypass the cluster cache.")

    p = sub.add_parser("sequence", help="Order words along a semantic chain.")
    p.add_argument("--input", required=True)

    p = sub.add_parser("neighbors", help="Stored neighbours of one word.")
    p.add_argument("word")
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("graph", help="Graph projection with summary metrics.")
    p.add_argument("--max-links", type=int, default=None)
    p.add_argument("--deck", default=None)

    p = sub.add_parser("save-config", help="Write the effective config to a JSON file.")
    p.add_argument("path")

    return parser.parse_args(argv)


def main(argv=None):
    """CLI entry-point."""
    setup_logging()
    args = _parse_args(argv)

    config = load_config(args.config) if args.config else EngineConfig()

    if args.command == "save-config":
        save_config(config, args.path)
        return

    engine = LexiconEngine.open(args.db, config=config)
    try:
        _COMMANDS[args.command](engine, args)
    finally:
        engine.store.close()


if __name__ == "__main__":
    main()
