"""Ingestion and retrieval core for the voter / legislative chat assistant"""

__version__ = "0.1.0"
