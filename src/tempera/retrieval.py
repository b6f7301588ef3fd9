"""
Retriever
=========

Convierte una consulta en texto libre en episodios ordenados:
búsqueda vectorial en el almacén, re-ranking por similitud + utilidad
y registro de uso de los episodios devueltos.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from tempera.config import get_settings
from tempera.embeddings import EmbeddingFunction
from tempera.errors import ValidationError
from tempera.models import Episode, SearchHit
from tempera.scoring import compute_combined_score
from tempera.storage import EpisodeStore

logger = logging.getLogger(__name__)


class Retriever:
    """Recuperación de episodios relevantes para una tarea."""

    def __init__(
        self,
        store: EpisodeStore,
        embed: EmbeddingFunction,
        similarity_weight: Optional[float] = None,
        utility_weight: Optional[float] = None,
        candidate_multiplier: Optional[int] = None
    ):
        """
        Args:
            store: Almacén de episodios
            embed: Función texto -> vector
            similarity_weight: Peso de la similitud en el score final
            utility_weight: Peso de la utilidad en el score final
            candidate_multiplier: Candidatos a pedir por cada resultado final
        """
        settings = get_settings()
        self.store = store
        self.embed = embed
        self.similarity_weight = (
            settings.similarity_weight if similarity_weight is None else similarity_weight
        )
        self.utility_weight = (
            settings.utility_weight if utility_weight is None else utility_weight
        )
        self.candidate_multiplier = candidate_multiplier or settings.candidate_multiplier

    def rank(self, hits: list[SearchHit]) -> list[SearchHit]:
        """Ordenar resultados por score combinado (desempate: similitud, recencia)."""
        return sorted(
            hits,
            key=lambda h: (
                -compute_combined_score(
                    h.similarity,
                    h.episode.utility,
                    self.similarity_weight,
                    self.utility_weight
                ),
                -h.similarity,
                -h.episode.created_at.timestamp()
            )
        )

    def retrieve(
        self,
        query_text: Optional[str] = None,
        limit: int = 5,
        project: Optional[str] = None,
        all: bool = False,
        now: Optional[datetime] = None
    ) -> list[Episode]:
        """
        Recuperar episodios para una consulta.

        Args:
            query_text: Descripción del problema (o un ID de episodio)
            limit: Máximo de episodios a devolver
            project: Filtrar por proyecto
            all: Listar por recencia ignorando la consulta
            now: Momento de uso a registrar (por defecto, ahora)

        Returns:
            Episodios ya marcados como usados (use_count / last_used_at)
        """
        if limit < 1:
            raise ValidationError(f"limit debe ser >= 1 (recibido {limit})")

        if all:
            episodes = self.store.list_all(project, limit=limit)
        else:
            episodes = self._search(query_text, limit, project)

        if not episodes:
            return []

        # Registrar uso antes de devolver: el feedback posterior ya ve el episodio tocado
        touched = self.store.touch(
            [ep.id for ep in episodes],
            now=now or datetime.now(timezone.utc)
        )
        logger.info(
            f"Recuperados {len(touched)} episodios "
            f"(modo={'all' if all else 'search'}, proyecto={project or 'todos'})"
        )
        return touched

    def _search(self, query_text: Optional[str], limit: int, project: Optional[str]) -> list[Episode]:
        query_text = (query_text or "").strip()
        if not query_text:
            raise ValidationError("Se requiere query (o all=true)")

        # Atajo: un ID de episodio también es una consulta válida
        if self.store.exists(query_text):
            episode = self.store.get(query_text)
            if self.store.is_visible(episode, project):
                return [episode]
            return []

        query_embedding = self.embed(query_text)
        hits = self.store.search(
            query_embedding,
            limit * self.candidate_multiplier,
            project
        )
        return [hit.episode for hit in self.rank(hits)[:limit]]
