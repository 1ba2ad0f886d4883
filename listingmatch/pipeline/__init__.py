"""Embedding providers used by the semantic signal."""
