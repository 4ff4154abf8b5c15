"""Lexical index, embeddings and hybrid ranking."""
