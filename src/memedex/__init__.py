"""
memedex: meme image index with semantic and hybrid search.

This package scans image directories into a SQLite item store, generates
vision-model descriptions and sentence embeddings for each image, and
serves hybrid vector/lexical search over the result.
"""

__version__ = "0.1.0"
