"""
FeedbackTracker
===============

Registra si los episodios recuperados influyeron realmente en la
solución y ajusta su utilidad en consecuencia.
"""

import logging
from typing import Iterable, Optional

from tempera.config import get_settings
from tempera.errors import NotFound
from tempera.models import Episode, FeedbackResult
from tempera.scoring import nudge_utility
from tempera.storage import EpisodeStore

logger = logging.getLogger(__name__)


class FeedbackTracker:
    """Aplica señales útil / no útil a episodios."""

    def __init__(self, store: EpisodeStore, learning_rate: Optional[float] = None):
        self.store = store
        self.learning_rate = learning_rate or get_settings().learning_rate

    def _apply(self, episode: Episode, helpful: bool) -> Episode:
        helpful_count = episode.helpful_count + (1 if helpful else 0)
        return episode.model_copy(update={
            "utility": nudge_utility(episode.utility, helpful, self.learning_rate),
            "helpful_count": helpful_count,
            "feedback_count": episode.feedback_count + 1,
            # Feedback sobre un episodio nunca recuperado: use_count acompaña
            "use_count": max(episode.use_count, helpful_count),
        })

    def record_feedback(self, episode_ids: Iterable[str], helpful: bool) -> FeedbackResult:
        """
        Registrar feedback para un conjunto de episodios.

        use_count no se incrementa aquí (ya lo hizo la recuperación).
        Los ids desconocidos se omiten y se informan en el resultado.

        Args:
            episode_ids: IDs de episodios valorados
            helpful: Si los episodios cambiaron el enfoque de la solución

        Returns:
            FeedbackResult con ids actualizados y omitidos
        """
        result = FeedbackResult(helpful=helpful)

        # Cada id cuenta una sola vez por llamada
        for episode_id in dict.fromkeys(episode_ids):
            try:
                updated = self.store.update_episode(
                    episode_id,
                    lambda ep: self._apply(ep, helpful)
                )
            except NotFound:
                result.skipped_ids.append(episode_id)
                continue
            result.updated.append(episode_id)
            logger.debug(f"Feedback aplicado a {episode_id}: utilidad={updated.utility:.3f}")

        if result.skipped_ids:
            logger.warning(f"Feedback: {result.skipped} ids desconocidos omitidos")
        logger.info(
            f"Feedback {'útil' if helpful else 'no útil'} registrado "
            f"en {len(result.updated)} episodios"
        )
        return result
