"""
Interfaces de Índice Vectorial - Abstracción para múltiples backends
====================================================================

El almacén solo necesita tres primitivas del índice (añadir, kNN,
eliminar) más inventario para reconciliar con la tabla de episodios.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence


class VectorIndex(ABC):
    """
    Interfaz abstracta para índices de vecinos cercanos.

    Todos los backends (ChromaDB, exacto en memoria, etc.)
    deben implementar estos métodos. Los scores son similitud coseno.
    """

    @abstractmethod
    def add(self, episode_id: str, vector: Sequence[float], project: Optional[str] = None) -> str:
        """
        Indexar un vector (sobrescribe si el id ya existe).

        Returns:
            ID indexado
        """
        pass

    @abstractmethod
    def knn(
        self,
        vector: Sequence[float],
        k: int,
        projects: Optional[Sequence[Optional[str]]] = None
    ) -> list[tuple[str, float]]:
        """
        Buscar los k vecinos más cercanos.

        Args:
            vector: Vector de consulta
            k: Número máximo de resultados
            projects: Proyectos admitidos (None dentro de la lista = sin proyecto).
                      Si es None no se filtra.

        Returns:
            Lista de (id, similitud) ordenada de mayor a menor similitud
        """
        pass

    @abstractmethod
    def remove(self, episode_id: str) -> None:
        """Eliminar un vector (no falla si no existe)."""
        pass

    @abstractmethod
    def ids(self) -> set[str]:
        """IDs presentes en el índice."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Número de vectores indexados."""
        pass


def get_vector_index(
    backend_type: Optional[str] = None,
    chroma_path: Optional[Path] = None
) -> VectorIndex:
    """
    Factory para obtener el índice vectorial configurado.

    Args:
        backend_type: Tipo de índice. Si es None, se lee de configuración.
                     Opciones: "chroma", "exact"
        chroma_path: Directorio de persistencia para ChromaDB

    Returns:
        Instancia del índice configurado
    """
    from tempera.config import get_settings

    backend = backend_type or get_settings().index_backend

    if backend == "chroma":
        from tempera.storage.chroma_index import ChromaIndex
        return ChromaIndex(path=chroma_path)
    elif backend == "exact":
        from tempera.storage.exact_index import ExactIndex
        return ExactIndex()
    else:
        raise ValueError(
            f"Índice vectorial desconocido: '{backend}'. "
            f"Opciones válidas: 'chroma', 'exact'"
        )
