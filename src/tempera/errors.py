"""
Errores de Tempera
==================

Taxonomía de errores del motor. Las capas externas (MCP, CLI) los
traducen a respuestas para el usuario.
"""

from typing import Optional


class TemperaError(Exception):
    """Error base del motor de memoria."""


class ValidationError(TemperaError):
    """Campo requerido ausente o valor de enum inválido. No se reintenta."""


class NotFound(TemperaError):
    """ID de episodio desconocido."""

    def __init__(self, episode_id: str):
        super().__init__(f"Episodio no encontrado: {episode_id}")
        self.episode_id = episode_id


class DimensionMismatch(TemperaError):
    """
    Dimensión del embedding distinta de la del almacén.

    Suele indicar un cambio de modelo de embeddings.
    """

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Dimensión de embedding {actual} no coincide con la del almacén ({expected}). "
            "¿Cambió el modelo de embeddings?"
        )
        self.expected = expected
        self.actual = actual


class StoreUnavailable(TemperaError):
    """Índice, persistencia o embedder no disponible (o timeout). Reintentable."""


class BatchPassError(TemperaError):
    """
    Fallo a mitad de una pasada batch (propagate/review).

    Las actualizaciones ya aplicadas se mantienen; `processed` indica
    cuántos episodios se procesaron antes del fallo.
    """

    def __init__(self, operation: str, processed: int, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Pasada '{operation}' interrumpida tras {processed} episodios{detail}"
        )
        self.operation = operation
        self.processed = processed
        self.cause = cause
