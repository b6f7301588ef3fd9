"""
Revisión y Consolidación de Memorias
====================================

Detecta episodios casi duplicados y episodios obsoletos, y aplica
una limpieza conservadora.

El proceso:
1. Agrupa episodios similares con DBSCAN sobre distancia coseno
   (eps = 1 - umbral de deduplicación)
2. En cada cluster elige un representante (mayor utilidad / uso)
3. Marca como obsoletos los episodios nunca usados y antiguos
4. cleanup elimina solo duplicados sin valor demostrado
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import numpy as np
from sklearn.cluster import DBSCAN

from tempera.config import get_settings
from tempera.errors import BatchPassError, NotFound, TemperaError, ValidationError
from tempera.models import (
    UTILITY_BASELINE,
    DuplicateCluster,
    Episode,
    ReviewAction,
    ReviewReport,
)
from tempera.storage import EpisodeStore

logger = logging.getLogger(__name__)


def representative_key(episode: Episode) -> tuple:
    """Clave de orden para elegir el representante de un cluster."""
    return (
        episode.utility,
        episode.use_count,
        episode.helpful_count,
        episode.created_at,
        episode.id,
    )


def cosine_similarity(a: list[float], b: list[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return float(va @ vb / (np.linalg.norm(va) * np.linalg.norm(vb) + 1e-10))


def is_safe_to_delete(episode: Episode) -> bool:
    """Un duplicado solo se elimina si no demostró valor."""
    return episode.utility <= UTILITY_BASELINE and episode.helpful_count == 0


class Reviewer:
    """
    Revisa la memoria: duplicados, obsoletos y limpieza segura.

    Usa clustering por embeddings para agrupar episodios casi idénticos.
    """

    def __init__(
        self,
        store: EpisodeStore,
        dedup_threshold: Optional[float] = None,
        stale_days: Optional[int] = None
    ):
        """
        Args:
            store: Almacén de episodios
            dedup_threshold: Similitud coseno mínima para considerar duplicados
            stale_days: Antigüedad a partir de la cual un episodio sin uso es obsoleto
        """
        settings = get_settings()
        self.store = store
        self.dedup_threshold = dedup_threshold or settings.dedup_threshold
        self.stale_days = stale_days or settings.stale_days

    def _cluster_episodes(self, episodes: list[Episode]) -> list[list[Episode]]:
        """
        Agrupar episodios por similitud usando DBSCAN.

        Con min_samples=2 cualquier par por encima del umbral forma
        cluster, y los clusters se unen transitivamente: un miembro puede
        quedar lejos del representante. analyze() solo marca como duplicado
        lo que supera el umbral contra el representante.
        """
        if len(episodes) < 2:
            return []

        embeddings = np.array([ep.embedding for ep in episodes], dtype=np.float64)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        normalized = embeddings / (norms + 1e-10)

        clustering = DBSCAN(
            eps=max(1e-6, 1.0 - self.dedup_threshold),
            min_samples=2,
            metric="cosine"
        ).fit(normalized)

        clusters: dict[int, list[Episode]] = {}
        for idx, label in enumerate(clustering.labels_):
            if label == -1:  # Outlier: episodio único
                continue
            clusters.setdefault(int(label), []).append(episodes[idx])

        return [clusters[label] for label in sorted(clusters)]

    def analyze(
        self,
        project: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ReviewReport:
        """
        Generar recomendaciones sin modificar nada.

        Args:
            project: Proyecto a revisar (None = todos)
            now: Referencia temporal para la antigüedad

        Returns:
            ReviewReport con clusters de duplicados y episodios obsoletos
        """
        now = now or datetime.now(timezone.utc)

        # Orden determinista para que dos análisis seguidos coincidan
        episodes = sorted(self.store.list_all(project), key=lambda e: (e.created_at, e.id))
        report = ReviewReport(
            action=ReviewAction.ANALYZE,
            project=project,
            total_episodes=len(episodes)
        )

        for members in self._cluster_episodes(episodes):
            representative = max(members, key=representative_key)
            duplicates = sorted(
                (
                    ep for ep in members
                    if ep.id != representative.id
                    and cosine_similarity(ep.embedding, representative.embedding)
                    >= self.dedup_threshold
                ),
                key=lambda e: (e.created_at, e.id)
            )
            if not duplicates:
                continue
            report.clusters.append(DuplicateCluster(
                representative_id=representative.id,
                duplicate_ids=[ep.id for ep in duplicates],
                summary=representative.summary[:120]
            ))

        cutoff = now - timedelta(days=self.stale_days)
        report.stale_ids = [
            ep.id for ep in episodes
            if ep.use_count == 0 and ep.created_at < cutoff
        ]

        report.recommendations = self._recommendations(report, {ep.id: ep for ep in episodes})
        logger.info(
            f"Revisión: {len(report.clusters)} clusters de duplicados, "
            f"{len(report.stale_ids)} obsoletos de {len(episodes)} episodios"
        )
        return report

    def _recommendations(self, report: ReviewReport, by_id: dict[str, Episode]) -> list[str]:
        recommendations = []
        for cluster in report.clusters:
            removable = [i for i in cluster.duplicate_ids if is_safe_to_delete(by_id[i])]
            recommendations.append(
                f"Cluster de {len(cluster.duplicate_ids) + 1} episodios similares "
                f"(representante {cluster.representative_id}: \"{cluster.summary}\"). "
                f"{len(removable)} duplicados sin utilidad pueden eliminarse con cleanup."
            )
        if report.stale_ids:
            recommendations.append(
                f"{len(report.stale_ids)} episodios sin uso en más de {self.stale_days} días. "
                "Revisar si siguen siendo relevantes."
            )
        if not recommendations:
            recommendations.append("La memoria está consolidada: no hay acciones recomendadas.")
        return recommendations

    def cleanup(
        self,
        project: Optional[str] = None,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ReviewReport:
        """
        Analizar y eliminar duplicados sin valor demostrado.

        Nunca elimina al representante de un cluster ni episodios con
        feedback útil. Cada eliminación queda auditada.

        Raises:
            BatchPassError: si falla a mitad (lo eliminado se mantiene eliminado)
        """
        report = self.analyze(project=project, now=now)
        report.action = ReviewAction.CLEANUP

        candidates = [dup for cluster in report.clusters for dup in cluster.duplicate_ids]
        current = self.store.get_many(candidates)
        processed = 0

        for cluster in report.clusters:
            for episode_id in cluster.duplicate_ids:
                if cancel_event is not None and cancel_event.is_set():
                    report.interrupted = True
                    logger.warning(f"Limpieza cancelada tras {processed} episodios")
                    return report

                episode = current.get(episode_id)
                if episode is not None and is_safe_to_delete(episode):
                    try:
                        entry = self.store.delete(
                            episode_id,
                            reason=f"duplicado de {cluster.representative_id}",
                            guard=is_safe_to_delete
                        )
                        if entry is not None:
                            report.deleted_ids.append(episode_id)
                    except NotFound:
                        # Ya eliminado por otra operación
                        pass
                    except TemperaError as e:
                        raise BatchPassError("review", processed, e) from e
                processed += 1

        logger.info(f"Limpieza completada: {len(report.deleted_ids)} episodios eliminados")
        return report

    def review(
        self,
        project: Optional[str] = None,
        action: Union[ReviewAction, str] = ReviewAction.ANALYZE,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ReviewReport:
        """Punto de entrada: analyze (por defecto) o cleanup."""
        try:
            action = ReviewAction(action)
        except ValueError:
            raise ValidationError(
                f"Acción de revisión desconocida: '{action}'. Opciones: analyze, cleanup"
            ) from None

        if action == ReviewAction.CLEANUP:
            return self.cleanup(project=project, now=now, cancel_event=cancel_event)
        return self.analyze(project=project, now=now)
