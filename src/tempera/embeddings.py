"""
Embeddings
==========

El motor trata el modelo de embeddings como una función opaca
texto -> vector. Por defecto usa sentence-transformers; cualquier
callable con la misma firma puede inyectarse (tests, otros modelos).
"""

import logging
from typing import Callable, Optional

from tempera.config import get_settings
from tempera.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

EmbeddingFunction = Callable[[str], list[float]]


class SentenceTransformerEmbedder:
    """Embedder local con sentence-transformers (carga lazy del modelo)."""

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or get_settings().embedding_model
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Cargando modelo de embeddings: {self.model_name}")
            self._model = SentenceTransformer(self.model_name, device="cpu")
        return self._model

    def __call__(self, text: str) -> list[float]:
        return self._get_model().encode(text).tolist()


class TimedEmbedder:
    """Envuelve un embedder para que cada llamada tenga timeout acotado."""

    def __init__(self, embed: EmbeddingFunction, timeout: Optional[float] = None):
        self._embed = embed
        self.timeout = timeout or get_settings().embedding_timeout

    def __call__(self, text: str) -> list[float]:
        vector = call_with_timeout(
            self._embed,
            text,
            timeout=self.timeout,
            what="embedding"
        )
        return [float(v) for v in vector]
