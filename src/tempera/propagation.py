"""
Propagación de Utilidad
=======================

Difunde la utilidad de los episodios valorados hacia sus vecinos en el
espacio de embeddings, y opcionalmente asigna crédito temporal a los
episodios que precedieron a un resultado.

Modelo (por pasada, sobre una instantánea del almacén):

    fuentes  = episodios con feedback directo y utilidad no neutral
    destinos = episodios sin feedback directo

    inyección(n) = Σ_s rate * (u_s - base) * sim(s, n) / |vecinos(s)|
                   (+ crédito temporal), acotada a ±max_injection
    u'(n)        = base + (1 - decay) * (u(n) - base) + inyección(n)

Como la inyección solo depende de utilidades ancladas por feedback,
pasadas repetidas convergen geométricamente (factor 1 - decay) y un
cluster nunca valorado vuelve a la línea base en lugar de derivar.
"""

import logging
import threading
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from tempera.config import get_settings
from tempera.errors import BatchPassError, NotFound, TemperaError
from tempera.models import Episode, Outcome, PropagationResult, clamp_utility
from tempera.scoring import decay_toward_baseline, utility_delta
from tempera.storage import EpisodeStore

logger = logging.getLogger(__name__)

# Cambios menores se consideran ruido numérico
EPSILON = 1e-9


class UtilityPropagator:
    """Difusión por similitud + asignación de crédito temporal."""

    def __init__(self, store: EpisodeStore, **overrides):
        """
        Args:
            store: Almacén de episodios
            **overrides: Sobrescribe constantes de configuración
                (propagation_neighbors, propagation_min_similarity,
                propagation_rate, propagation_decay, propagation_max_injection,
                temporal_window, temporal_window_hours, temporal_boost,
                temporal_penalty, temporal_discount)
        """
        settings = get_settings()
        self.store = store

        def option(name):
            return overrides.get(name, getattr(settings, name))

        self.neighbors = option("propagation_neighbors")
        self.min_similarity = option("propagation_min_similarity")
        self.rate = option("propagation_rate")
        self.decay = option("propagation_decay")
        self.max_injection = option("propagation_max_injection")

        self.temporal_window = option("temporal_window")
        self.temporal_window_hours = option("temporal_window_hours")
        self.temporal_boost = option("temporal_boost")
        self.temporal_penalty = option("temporal_penalty")
        self.temporal_discount = option("temporal_discount")

    # ------------------------------------------------------------------
    # Cálculo (sobre instantánea, sin escrituras)
    # ------------------------------------------------------------------

    def compute_similarity_injection(
        self,
        episodes: list[Episode],
        project: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> tuple[dict[str, float], int]:
        """
        Calcular la inyección por similitud para cada destino.

        Hace una búsqueda kNN por fuente; si `cancel_event` se activa se
        detiene entre fuentes y el resultado queda incompleto.

        Returns:
            (inyección por id de destino, número de fuentes)
        """
        in_scope = {ep.id for ep in episodes}
        injection: dict[str, float] = defaultdict(float)
        sources = 0

        for source in episodes:
            if cancel_event is not None and cancel_event.is_set():
                break
            delta = utility_delta(source.utility)
            if not source.is_rated or abs(delta) <= EPSILON:
                continue
            sources += 1

            hits = self.store.search(source.embedding, self.neighbors + 1, project)
            neighbors = [
                hit for hit in hits
                if hit.episode.id != source.id
                and hit.episode.id in in_scope
                and hit.similarity >= self.min_similarity
            ][:self.neighbors]
            if not neighbors:
                continue

            # Inyección total por fuente <= rate * |delta|
            share = self.rate * delta / len(neighbors)
            for hit in neighbors:
                if hit.episode.is_rated:
                    continue
                injection[hit.episode.id] += share * hit.similarity

        return dict(injection), sources

    def compute_temporal_credit(self, episodes: list[Episode]) -> dict[str, float]:
        """
        Crédito temporal: los episodios previos (mismo proyecto, dentro de
        la ventana) a un éxito suben; los previos a un fallo bajan.

        El crédito se calcula para todos los predecesores, pero plan() solo
        lo aplica a episodios sin feedback directo: la utilidad de un
        episodio valorado la fija únicamente su feedback.
        """
        credit: dict[str, float] = defaultdict(float)
        window = timedelta(hours=self.temporal_window_hours)

        by_project: dict[Optional[str], list[Episode]] = defaultdict(list)
        for ep in episodes:
            by_project[ep.project].append(ep)

        for group in by_project.values():
            group.sort(key=lambda e: (e.created_at, e.id))
            for i, outcome_ep in enumerate(group):
                if outcome_ep.outcome == Outcome.SUCCESS:
                    magnitude = self.temporal_boost
                elif outcome_ep.outcome == Outcome.FAILURE:
                    magnitude = -self.temporal_penalty
                else:
                    continue
                if magnitude == 0:
                    continue

                start = max(0, i - self.temporal_window)
                for j in range(i - 1, start - 1, -1):
                    previous = group[j]
                    if outcome_ep.created_at - previous.created_at > window:
                        break
                    distance = i - j
                    credit[previous.id] += magnitude * self.temporal_discount ** (distance - 1)

        return dict(credit)

    def plan(
        self,
        temporal: bool = False,
        project: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> tuple[dict[str, float], list[Episode], int]:
        """
        Calcular la utilidad objetivo de cada destino a partir de una
        instantánea consistente.

        Si `cancel_event` se activa durante el cálculo el plan queda
        incompleto y no debe aplicarse.

        Returns:
            (utilidad objetivo por id, instantánea, número de fuentes)
        """
        snapshot = self.store.list_all(project)
        injection, sources = self.compute_similarity_injection(snapshot, project, cancel_event)

        if temporal:
            for episode_id, credit in self.compute_temporal_credit(snapshot).items():
                injection[episode_id] = injection.get(episode_id, 0.0) + credit

        targets = {}
        for ep in snapshot:
            if ep.is_rated:
                continue
            incoming = injection.get(ep.id, 0.0)
            incoming = max(-self.max_injection, min(self.max_injection, incoming))
            targets[ep.id] = clamp_utility(decay_toward_baseline(ep.utility, self.decay) + incoming)

        return targets, snapshot, sources

    # ------------------------------------------------------------------
    # Aplicación
    # ------------------------------------------------------------------

    def propagate(
        self,
        temporal: bool = False,
        project: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> PropagationResult:
        """
        Ejecutar una pasada de propagación.

        Args:
            temporal: Incluir asignación de crédito temporal
            project: Limitar la pasada a un proyecto
            cancel_event: Si se activa, la pasada se detiene entre episodios

        Returns:
            PropagationResult con episodios ajustados y procesados

        Raises:
            BatchPassError: si falla a mitad de pasada (lo aplicado se mantiene)
        """
        try:
            targets, snapshot, sources = self.plan(
                temporal=temporal, project=project, cancel_event=cancel_event
            )
        except TemperaError as e:
            raise BatchPassError("propagate", 0, e) from e

        snapshot_utility = {ep.id: ep.utility for ep in snapshot}
        result = PropagationResult(sources=sources, temporal=temporal)

        if cancel_event is not None and cancel_event.is_set():
            result.interrupted = True
            logger.warning("Propagación cancelada antes de aplicar cambios")
            return result

        logger.info(
            f"Propagación: {sources} fuentes, {len(targets)} destinos "
            f"(temporal={temporal}, proyecto={project or 'todos'})"
        )

        for episode_id, target in targets.items():
            if cancel_event is not None and cancel_event.is_set():
                result.interrupted = True
                logger.warning(f"Propagación cancelada tras {result.processed} episodios")
                break

            if abs(target - snapshot_utility[episode_id]) > EPSILON:
                try:
                    updated = self.store.update_episode(
                        episode_id,
                        lambda ep, t=target: self._retarget(ep, t, snapshot_utility[ep.id])
                    )
                except NotFound:
                    # Eliminado entre la instantánea y la escritura
                    updated = None
                except TemperaError as e:
                    raise BatchPassError("propagate", result.processed, e) from e
                if updated is not None:
                    result.adjusted += 1

            result.processed += 1

        logger.info(f"Propagación completada: {result.adjusted} episodios ajustados")
        return result

    @staticmethod
    def _retarget(episode: Episode, target: float, seen: float) -> Optional[Episode]:
        """Aplicar el cambio como delta sobre el valor actual."""
        # Recibió feedback directo durante la pasada: su utilidad es suya
        if episode.is_rated:
            return None
        return episode.model_copy(update={
            "utility": clamp_utility(episode.utility + (target - seen))
        })
