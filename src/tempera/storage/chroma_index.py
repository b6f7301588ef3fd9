"""
Índice Vectorial - ChromaDB
===========================

Colección persistente de ChromaDB con espacio coseno. Solo guarda
el vector y el proyecto; el episodio completo vive en SQLite.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings

from tempera.config import get_chroma_dir
from tempera.storage.index_interface import VectorIndex

logger = logging.getLogger(__name__)

# Chroma no admite None en metadatos
_UNSCOPED = ""


class ChromaIndex(VectorIndex):
    """Índice HNSW de ChromaDB (aproximado, distancia coseno)."""

    def __init__(
        self,
        path: Optional[Path] = None,
        collection_name: str = "tempera_episodes"
    ):
        """
        Inicializar cliente y colección.

        Args:
            path: Directorio de persistencia de ChromaDB
            collection_name: Nombre de la colección
        """
        self.path = path or get_chroma_dir()
        self.client = chromadb.PersistentClient(
            path=str(self.path),
            settings=ChromaSettings(anonymized_telemetry=False)
        )
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={
                "hnsw:space": "cosine",
                "description": "Embeddings de episodios de Tempera"
            }
        )

    def add(self, episode_id: str, vector: Sequence[float], project: Optional[str] = None) -> str:
        self.collection.upsert(
            ids=[episode_id],
            embeddings=[list(vector)],
            metadatas=[{"project": project or _UNSCOPED}]
        )
        return episode_id

    def knn(
        self,
        vector: Sequence[float],
        k: int,
        projects: Optional[Sequence[Optional[str]]] = None
    ) -> list[tuple[str, float]]:
        total = self.collection.count()
        if total == 0:
            return []

        where = None
        if projects is not None:
            keys = sorted({p or _UNSCOPED for p in projects})
            if len(keys) == 1:
                where = {"project": keys[0]}
            else:
                where = {"project": {"$in": keys}}

        results = self.collection.query(
            query_embeddings=[list(vector)],
            n_results=min(k, total),
            where=where,
            include=["distances"]
        )

        hits = []
        if results["ids"] and results["ids"][0]:
            distances = results["distances"][0] if results["distances"] else []
            for i, episode_id in enumerate(results["ids"][0]):
                # Distancia coseno de Chroma = 1 - similitud
                distance = distances[i] if i < len(distances) else 1.0
                hits.append((episode_id, 1.0 - float(distance)))
        return hits

    def remove(self, episode_id: str) -> None:
        self.collection.delete(ids=[episode_id])

    def ids(self) -> set[str]:
        result = self.collection.get(include=[])
        return set(result["ids"])

    def count(self) -> int:
        return self.collection.count()
