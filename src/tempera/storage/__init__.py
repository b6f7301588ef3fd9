"""
Almacenamiento de Episodios
===========================

Tabla durable de episodios (SQLite) más índice de vecinos cercanos
intercambiable (ChromaDB o exacto).
"""

from tempera.storage.index_interface import VectorIndex, get_vector_index
from tempera.storage.exact_index import ExactIndex
from tempera.storage.store import EpisodeStore

__all__ = ["VectorIndex", "get_vector_index", "ExactIndex", "EpisodeStore"]
