"""Ingestion layer.

Key normalization, source-row cleanup and the one-shot bulk import of the
base layer.
"""

__all__: list[str] = []
