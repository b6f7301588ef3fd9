"""
Estadísticas de Memoria
=======================

Agregados sobre el almacén, sin efectos secundarios.
"""

from datetime import datetime, timezone
from typing import Optional

from tempera.storage import EpisodeStore


class StatsReporter:
    """Conteos y salud de la memoria, por proyecto."""

    def __init__(self, store: EpisodeStore):
        self.store = store

    def stats(self, project: Optional[str] = None) -> dict:
        """
        Obtener estadísticas del almacenamiento.

        Returns:
            Dict con episode_count, avg_utility, last_capture_at,
            unused_count, by_task_type, by_outcome e index_count
        """
        return self.store.get_statistics(project)

    def status(self, project: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """Salud de la memoria de un proyecto: última captura y episodios sin uso."""
        now = now or datetime.now(timezone.utc)
        stats = self.stats(project)
        last_capture = stats["last_capture_at"]

        return {
            "project": project,
            "last_capture_at": last_capture,
            "days_since_last_capture": (now - last_capture).days if last_capture else None,
            "episode_count": stats["episode_count"],
            "unused_count": stats["unused_count"],
        }
