"""
Lexigraph
Semantic word-graph, thematic clustering and study-order sequencing
for vocabulary decks, built on per-word embedding vectors.
"""

__version__ = "0.1.0"
