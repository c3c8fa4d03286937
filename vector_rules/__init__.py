"""
vector-rules: store typed JSON rules and retrieve the ones most similar to
a set of natural-language queries.
"""

__version__ = "0.1.0"
