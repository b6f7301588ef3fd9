"""
Modelos de datos para Tempera
=============================

Define los esquemas Pydantic para episodios de memoria y los
resultados de las operaciones del motor.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# Rango de utilidad compartido por feedback y propagación
UTILITY_MIN = 0.0
UTILITY_MAX = 1.0
UTILITY_BASELINE = 0.5


def _utc_now() -> datetime:
    """Obtener datetime actual en UTC."""
    return datetime.now(timezone.utc)


def clamp_utility(value: float) -> float:
    """Acotar una utilidad al rango [UTILITY_MIN, UTILITY_MAX]."""
    return max(UTILITY_MIN, min(UTILITY_MAX, value))


class TaskType(str, Enum):
    """Tipo de tarea en la que se capturó el episodio."""

    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    TEST = "test"
    DOCS = "docs"
    RESEARCH = "research"
    DEBUG = "debug"
    SETUP = "setup"


class Outcome(str, Enum):
    """Resultado de la tarea."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class ReviewAction(str, Enum):
    """Acciones de revisión disponibles."""

    ANALYZE = "analyze"    # Solo recomendaciones
    CLEANUP = "cleanup"    # Elimina duplicados sin utilidad


class ErrorResolution(BaseModel):
    """Error encontrado y la estrategia usada para resolverlo."""

    error: str = Field(..., min_length=1)
    resolution: str = Field(default="")


class Episode(BaseModel):
    """
    Episodio de memoria - Unidad fundamental de conocimiento.

    Guarda un insight transferible (no una descripción del diff) junto
    con las señales que determinan cuánto vale conservarlo:
    - utility: estimación de valor, ajustada por feedback y propagación
    - use_count / helpful_count / feedback_count: contadores monotónicos
    - last_used_at: última vez que fue devuelto por el Retriever
    """

    id: Optional[str] = Field(
        default=None,
        description="Identificador único, se asigna al insertar si falta"
    )
    summary: str = Field(
        ...,
        min_length=1,
        description="Insight aprendido (no un mensaje de commit)"
    )
    task_type: TaskType
    outcome: Outcome
    project: Optional[str] = Field(
        default=None,
        description="Proyecto asociado; None = global"
    )
    files_modified: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    errors_resolved: list[ErrorResolution] = Field(default_factory=list)

    embedding: Optional[list[float]] = Field(
        default=None,
        description="Vector derivado de summary + tags"
    )

    utility: float = Field(
        default=UTILITY_BASELINE,
        ge=UTILITY_MIN,
        le=UTILITY_MAX
    )
    use_count: int = Field(default=0, ge=0)
    helpful_count: int = Field(default=0, ge=0)
    feedback_count: int = Field(
        default=0,
        ge=0,
        description="Señales de feedback recibidas (útiles o no)"
    )

    created_at: datetime = Field(default_factory=_utc_now)
    last_used_at: Optional[datetime] = None

    @field_validator("summary")
    @classmethod
    def _strip_summary(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("summary no puede estar vacío")
        return value

    @field_validator("project")
    @classmethod
    def _normalize_project(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        seen = []
        for tag in value:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @model_validator(mode="after")
    def _check_counters(self) -> "Episode":
        if self.helpful_count > self.use_count:
            raise ValueError("helpful_count no puede superar use_count")
        return self

    @property
    def is_rated(self) -> bool:
        """True si el episodio recibió feedback directo alguna vez."""
        return self.feedback_count > 0

    def embedding_text(self) -> str:
        """Texto a embeber: resumen + tags."""
        if self.tags:
            return f"{self.summary}\nTags: {', '.join(self.tags)}"
        return self.summary


class SearchHit(BaseModel):
    """Resultado de búsqueda vectorial en el almacén."""

    episode: Episode
    similarity: float


class FeedbackResult(BaseModel):
    """Resultado de registrar feedback."""

    updated: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)
    helpful: bool

    @property
    def skipped(self) -> int:
        return len(self.skipped_ids)


class PropagationResult(BaseModel):
    """Resultado de una pasada de propagación."""

    adjusted: int = 0
    processed: int = 0
    sources: int = 0
    temporal: bool = False
    interrupted: bool = False


class DuplicateCluster(BaseModel):
    """Cluster de episodios casi duplicados."""

    representative_id: str
    duplicate_ids: list[str]
    summary: str = Field(default="", description="Resumen del representante")


class ReviewReport(BaseModel):
    """Recomendaciones (analyze) o resultado de limpieza (cleanup)."""

    action: ReviewAction
    project: Optional[str] = None
    total_episodes: int = 0
    clusters: list[DuplicateCluster] = Field(default_factory=list)
    stale_ids: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    deleted_ids: list[str] = Field(default_factory=list)
    interrupted: bool = False

    @property
    def duplicate_ids(self) -> list[str]:
        return [dup for cluster in self.clusters for dup in cluster.duplicate_ids]


class AuditEntry(BaseModel):
    """Registro de auditoría de un episodio eliminado."""

    episode_id: str
    summary: str
    project: Optional[str] = None
    reason: str
    deleted_at: datetime = Field(default_factory=_utc_now)
