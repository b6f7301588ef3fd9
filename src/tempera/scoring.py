"""
Scoring de Tempera
==================

Funciones puras que comparten Retriever, FeedbackTracker y
UtilityPropagator. Todas las utilidades devueltas quedan acotadas
a [UTILITY_MIN, UTILITY_MAX].

Ranking:
    final_score = similarity_weight * similarity + utility_weight * utility

Con similarity_weight > utility_weight la similitud domina y la
utilidad desempata (o penaliza coincidencias de baja utilidad).
La fórmula es monótona creciente en ambos términos.

Feedback:
    utility += learning_rate * (target - utility)

Donde target = UTILITY_MAX si fue útil y UTILITY_MIN si no.
"""

from tempera.models import UTILITY_BASELINE, UTILITY_MAX, UTILITY_MIN, clamp_utility


# Constantes por defecto (la configuración puede sobrescribirlas)
DEFAULT_SIMILARITY_WEIGHT = 0.85
DEFAULT_UTILITY_WEIGHT = 0.15
DEFAULT_LEARNING_RATE = 0.2


def compute_combined_score(
    similarity: float,
    utility: float,
    similarity_weight: float = DEFAULT_SIMILARITY_WEIGHT,
    utility_weight: float = DEFAULT_UTILITY_WEIGHT
) -> float:
    """
    Combinar similitud semántica y utilidad en un score de ranking.

    Args:
        similarity: Similitud coseno entre query y episodio
        utility: Utilidad del episodio
        similarity_weight: Peso de la similitud (debe dominar)
        utility_weight: Peso de la utilidad

    Returns:
        Score combinado

    Example:
        >>> compute_combined_score(0.9, 0.5)
        0.84
    """
    return similarity_weight * similarity + utility_weight * utility


def nudge_utility(
    current: float,
    helpful: bool,
    learning_rate: float = DEFAULT_LEARNING_RATE
) -> float:
    """
    Mover la utilidad hacia el máximo (útil) o el mínimo (no útil).

    El paso es proporcional a la distancia al objetivo, así que la
    utilidad nunca sale del rango aunque se aplique muchas veces.
    """
    target = UTILITY_MAX if helpful else UTILITY_MIN
    return clamp_utility(current + learning_rate * (target - current))


def decay_toward_baseline(utility: float, decay: float) -> float:
    """
    Acercar una utilidad a la línea base neutral.

    decay=0 no cambia nada; decay=1 la deja en la línea base.
    """
    return UTILITY_BASELINE + (1.0 - decay) * (utility - UTILITY_BASELINE)


def utility_delta(utility: float) -> float:
    """Desviación de la utilidad respecto a la línea base."""
    return utility - UTILITY_BASELINE
