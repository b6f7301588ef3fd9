"""
Configuración centralizada para Tempera
=======================================

Todas las constantes de política (pesos de ranking, tasa de aprendizaje,
propagación, revisión) se exponen como settings para poder ajustarlas
sin tocar código. Variables de entorno con prefijo TEMPERA_.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Cargar variables de entorno (llamada única para todo el proyecto)
load_dotenv()


class Settings(BaseSettings):
    """Configuración del sistema cargada desde variables de entorno.

    pydantic-settings carga automáticamente desde .env, no usar os.getenv().
    """

    # Database
    data_dir: str = Field(default="./data")
    chroma_persist_dir: str = Field(default="./data/chroma")
    sqlite_db_path: str = Field(default="./data/tempera.db")

    # Índice vectorial: "chroma" o "exact"
    index_backend: str = Field(default="chroma")

    # Embedding Config
    embedding_model: str = Field(default="all-MiniLM-L6-v2")
    # None = se fija con el primer episodio insertado
    embedding_dimension: Optional[int] = Field(default=None, ge=1)

    # Timeouts (segundos) para embedder e índice
    embedding_timeout: float = Field(default=30.0, gt=0)
    index_timeout: float = Field(default=10.0, gt=0)

    # Feedback (los límites de utilidad son fijos, ver models.py)
    learning_rate: float = Field(default=0.2, gt=0, le=1)

    # Retrieval
    similarity_weight: float = Field(default=0.85, ge=0)
    utility_weight: float = Field(default=0.15, ge=0)
    candidate_multiplier: int = Field(default=3, ge=1)
    include_unscoped: bool = Field(default=False)

    # Propagación
    propagation_neighbors: int = Field(default=5, ge=1)
    propagation_min_similarity: float = Field(default=0.6, ge=-1, le=1)
    propagation_rate: float = Field(default=0.3, ge=0, le=1)
    propagation_decay: float = Field(default=0.2, gt=0, le=1)
    propagation_max_injection: float = Field(default=0.1, ge=0)

    # Crédito temporal
    temporal_window: int = Field(default=3, ge=1)
    temporal_window_hours: float = Field(default=24.0, gt=0)
    temporal_boost: float = Field(default=0.05, ge=0)
    temporal_penalty: float = Field(default=0.02, ge=0)
    temporal_discount: float = Field(default=0.5, gt=0, le=1)

    # Revisión / consolidación
    dedup_threshold: float = Field(default=0.92, gt=0, le=1)
    stale_days: int = Field(default=30, ge=1)

    model_config = {
        "env_prefix": "TEMPERA_",
        "env_file": ".env",
        "extra": "ignore"
    }


@lru_cache()
def get_settings() -> Settings:
    """Obtener instancia singleton de configuración."""
    return Settings()


# Paths importantes
def get_data_dir() -> Path:
    """Obtener directorio de datos."""
    data_dir = Path(get_settings().data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_chroma_dir() -> Path:
    """Obtener directorio de ChromaDB."""
    chroma_dir = Path(get_settings().chroma_persist_dir)
    chroma_dir.mkdir(parents=True, exist_ok=True)
    return chroma_dir


def get_sqlite_path() -> Path:
    """Obtener path de SQLite."""
    sqlite_path = Path(get_settings().sqlite_db_path)
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path
