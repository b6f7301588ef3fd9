"""
Índice Vectorial - Exacto en memoria
====================================

Búsqueda por fuerza bruta con numpy. Útil para almacenes pequeños,
tests y como referencia para validar el índice aproximado.
"""

import threading
from typing import Optional, Sequence

import numpy as np

from tempera.storage.index_interface import VectorIndex


def _normalize(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


class ExactIndex(VectorIndex):
    """Índice exacto (similitud coseno) sobre vectores normalizados."""

    def __init__(self):
        self._vectors: dict[str, np.ndarray] = {}
        self._projects: dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def add(self, episode_id: str, vector: Sequence[float], project: Optional[str] = None) -> str:
        with self._lock:
            self._vectors[episode_id] = _normalize(vector)
            self._projects[episode_id] = project
        return episode_id

    def knn(
        self,
        vector: Sequence[float],
        k: int,
        projects: Optional[Sequence[Optional[str]]] = None
    ) -> list[tuple[str, float]]:
        with self._lock:
            allowed = set(projects) if projects is not None else None
            ids = [
                episode_id for episode_id in self._vectors
                if allowed is None or self._projects[episode_id] in allowed
            ]
            if not ids:
                return []
            matrix = np.vstack([self._vectors[episode_id] for episode_id in ids])

        scores = matrix @ _normalize(vector)
        # Orden estable: a igualdad de score se respeta el orden de inserción
        order = np.argsort(-scores, kind="stable")[:k]
        return [(ids[i], float(scores[i])) for i in order]

    def remove(self, episode_id: str) -> None:
        with self._lock:
            self._vectors.pop(episode_id, None)
            self._projects.pop(episode_id, None)

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._vectors)

    def count(self) -> int:
        with self._lock:
            return len(self._vectors)
