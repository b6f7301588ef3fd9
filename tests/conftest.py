"""
Configuración global de pytest para Tempera.
"""
import hashlib
import os
import re
from datetime import datetime, timedelta, timezone

import pytest

# Desactivar Langfuse durante tests para evitar ruido en trazas de producción
os.environ["LANGFUSE_HOST"] = ""
os.environ["LANGFUSE_PUBLIC_KEY"] = ""
os.environ["LANGFUSE_SECRET_KEY"] = ""

from tempera.models import Episode  # noqa: E402

DIMENSION = 256


class HashingEmbedder:
    """
    Embedder determinista de bolsa de palabras.

    Textos con palabras en común tienen similitud coseno alta y
    textos sin palabras en común quedan prácticamente ortogonales.
    """

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def __call__(self, text: str) -> list[float]:
        self.calls += 1
        vector = [0.0] * self.dimension
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).hexdigest()
            vector[int(digest, 16) % self.dimension] += 1.0
        return vector


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def embedder_factory():
    return HashingEmbedder


@pytest.fixture
def make_store(tmp_path):
    """Factory de almacenes temporales con índice exacto."""
    from tempera.storage import EpisodeStore, ExactIndex

    def factory(name: str = "test.db", **kwargs):
        kwargs.setdefault("index", ExactIndex())
        return EpisodeStore(sqlite_path=tmp_path / name, **kwargs)

    return factory


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def engine(store, embedder):
    from tempera.engine import MemoryEngine
    return MemoryEngine(store=store, embed=embedder)


@pytest.fixture
def make_episode(embedder):
    """Factory de episodios con embedding calculado."""
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def factory(summary: str, minutes: int = 0, **fields) -> Episode:
        fields.setdefault("task_type", "bugfix")
        fields.setdefault("outcome", "success")
        fields.setdefault("created_at", base_time + timedelta(minutes=minutes))
        episode = Episode(summary=summary, **fields)
        if episode.embedding is None:
            episode.embedding = embedder(episode.embedding_text())
        return episode

    return factory
