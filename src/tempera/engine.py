"""
Motor de Memoria - Fachada de Tempera
=====================================

Expone las siete operaciones que consume la capa de herramientas
(MCP, CLI): retrieve, capture, feedback, stats, status, propagate
y review.

El proyecto siempre llega como parámetro explícito: la detección
automática por directorio de trabajo vive en las capas externas.
"""

import logging
import threading
from typing import Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from tempera.consolidation import Reviewer
from tempera.embeddings import EmbeddingFunction, SentenceTransformerEmbedder, TimedEmbedder
from tempera.errors import ValidationError
from tempera.feedback import FeedbackTracker
from tempera.models import (
    Episode,
    ErrorResolution,
    FeedbackResult,
    PropagationResult,
    ReviewAction,
    ReviewReport,
)
from tempera.observability import traced
from tempera.propagation import UtilityPropagator
from tempera.retrieval import Retriever
from tempera.stats import StatsReporter
from tempera.storage import EpisodeStore

logger = logging.getLogger(__name__)


class MemoryEngine:
    """
    Motor de memoria episódica.

    Coordina almacén, embedder y componentes (Retriever, FeedbackTracker,
    UtilityPropagator, Reviewer, StatsReporter).
    """

    def __init__(
        self,
        store: Optional[EpisodeStore] = None,
        embed: Optional[EmbeddingFunction] = None,
        embedding_timeout: Optional[float] = None
    ):
        """
        Inicializar el motor.

        Args:
            store: Almacén de episodios (se crea el configurado si no se provee)
            embed: Función texto -> vector (sentence-transformers por defecto)
            embedding_timeout: Timeout por llamada al embedder
        """
        self.store = store or EpisodeStore()
        self.embed = TimedEmbedder(embed or SentenceTransformerEmbedder(), embedding_timeout)

        self.retriever = Retriever(self.store, self.embed)
        self.feedback_tracker = FeedbackTracker(self.store)
        self.propagator = UtilityPropagator(self.store)
        self.reviewer = Reviewer(self.store)
        self.reporter = StatsReporter(self.store)

        logger.info("Motor de memoria Tempera inicializado")

    @traced("📥 Capturar Episodio")
    def capture(
        self,
        summary: str,
        task_type: str,
        outcome: str,
        project: Optional[str] = None,
        files_modified: Optional[list[str]] = None,
        tags: Optional[list[str]] = None,
        errors_resolved: Optional[list[Union[dict, ErrorResolution]]] = None
    ) -> str:
        """
        Capturar un insight reutilizable.

        Returns:
            ID del nuevo episodio

        Raises:
            ValidationError: campo requerido ausente o enum inválido
            DimensionMismatch: el embedder cambió de dimensión
        """
        try:
            episode = Episode(
                summary=summary,
                task_type=task_type,
                outcome=outcome,
                project=project,
                files_modified=files_modified or [],
                tags=tags or [],
                errors_resolved=errors_resolved or [],
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        episode.embedding = self.embed(episode.embedding_text())
        return self.store.insert(episode)

    @traced("🔍 Recuperar Episodios")
    def retrieve(
        self,
        query: Optional[str] = None,
        limit: int = 5,
        project: Optional[str] = None,
        all: bool = False
    ) -> list[Episode]:
        """Recuperar episodios relevantes (o listar todos con all=True)."""
        return self.retriever.retrieve(query, limit=limit, project=project, all=all)

    def get(self, episode_id: str) -> Episode:
        """Recuperar un episodio por ID sin registrar uso."""
        return self.store.get(episode_id)

    @traced("🔄 Registrar Feedback")
    def feedback(self, episode_ids: Iterable[str], helpful: bool) -> FeedbackResult:
        """Registrar si los episodios influyeron en la solución."""
        return self.feedback_tracker.record_feedback(episode_ids, helpful)

    def stats(self, project: Optional[str] = None) -> dict:
        """Estadísticas agregadas."""
        return self.reporter.stats(project)

    def status(self, project: Optional[str] = None) -> dict:
        """Salud de la memoria del proyecto."""
        return self.reporter.status(project)

    @traced("🔄 Propagar Utilidad")
    def propagate(
        self,
        temporal: bool = False,
        project: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> PropagationResult:
        """Difundir utilidad a episodios similares (y crédito temporal opcional)."""
        return self.propagator.propagate(
            temporal=temporal,
            project=project,
            cancel_event=cancel_event
        )

    @traced("🔄 Revisar Memoria")
    def review(
        self,
        project: Optional[str] = None,
        action: Union[ReviewAction, str] = ReviewAction.ANALYZE,
        cancel_event: Optional[threading.Event] = None
    ) -> ReviewReport:
        """Analizar duplicados/obsoletos o aplicar limpieza segura."""
        return self.reviewer.review(
            project=project,
            action=action,
            cancel_event=cancel_event
        )
