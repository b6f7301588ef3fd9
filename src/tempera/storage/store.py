"""
Almacenamiento de Episodios - SQLite + Índice Vectorial
=======================================================

Gestiona el almacenamiento dual:
- SQLite (SQLAlchemy) como tabla durable de episodios y auditoría
- Un VectorIndex (ChromaDB por defecto) para búsqueda por similitud

La tabla es la fuente de verdad: guarda también el embedding, de modo
que el índice siempre puede reconstruirse con reconcile_index().
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    func,
    or_,
)
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tempera.config import get_settings, get_sqlite_path
from tempera.errors import DimensionMismatch, NotFound, StoreUnavailable, ValidationError
from tempera.models import AuditEntry, Episode, ErrorResolution, SearchHit, clamp_utility
from tempera.storage.index_interface import VectorIndex, get_vector_index
from tempera.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

Base = declarative_base()

READ_RETRY_ATTEMPTS = 3

# Reintentos solo para lecturas; las escrituras fallan cerradas
read_retry = retry(
    stop=stop_after_attempt(READ_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(StoreUnavailable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class EpisodeRecord(Base):
    """Modelo SQLAlchemy para episodios de memoria."""

    __tablename__ = "episodes"

    id = Column(String(36), primary_key=True)
    summary = Column(Text, nullable=False)
    task_type = Column(String(20), nullable=False, index=True)
    outcome = Column(String(20), nullable=False, index=True)
    project = Column(String(200), nullable=True, index=True)

    files_modified_json = Column(Text, default="[]")  # JSON array
    tags_json = Column(Text, default="[]")  # JSON array
    errors_resolved_json = Column(Text, default="[]")  # JSON array de {error, resolution}
    embedding_json = Column(Text, nullable=False)  # JSON array

    utility = Column(Float, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)
    helpful_count = Column(Integer, default=0, nullable=False)
    feedback_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, nullable=False, index=True)
    last_used_at = Column(DateTime, nullable=True)


class StoreMeta(Base):
    """Metadatos del almacén (dimensión del embedding, etc.)."""

    __tablename__ = "store_meta"

    key = Column(String(50), primary_key=True)
    value = Column(Text, nullable=False)


class AuditRecord(Base):
    """Registro de episodios eliminados por la revisión."""

    __tablename__ = "episode_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    episode_id = Column(String(36), nullable=False, index=True)
    summary = Column(Text, nullable=False)
    project = Column(String(200), nullable=True)
    reason = Column(Text, nullable=False)
    deleted_at = Column(DateTime, nullable=False)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite no guarda zona horaria: se persiste UTC naive."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class EpisodeStore:
    """
    Almacenamiento dual de episodios.
    Combina SQLite (tabla + auditoría) y un VectorIndex (vecinos cercanos).

    Las mutaciones se serializan con un lock de escritura del almacén;
    las lecturas usan sesiones independientes y no lo toman.
    """

    def __init__(
        self,
        sqlite_path: Optional[Path] = None,
        index: Optional[VectorIndex] = None,
        dimension: Optional[int] = None,
        include_unscoped: Optional[bool] = None,
        index_timeout: Optional[float] = None
    ):
        """
        Inicializar almacenamiento.

        Args:
            sqlite_path: Path al archivo SQLite
            index: Índice vectorial (se crea el configurado si no se provee)
            dimension: Dimensión fija del embedding (si None, la del primer insert)
            include_unscoped: Si los episodios sin proyecto son visibles al filtrar por proyecto
            index_timeout: Timeout en segundos para llamadas al índice
        """
        settings = get_settings()

        self.sqlite_path = sqlite_path or get_sqlite_path()
        self.index = index or get_vector_index()
        self.include_unscoped = (
            settings.include_unscoped if include_unscoped is None else include_unscoped
        )
        self.index_timeout = index_timeout or settings.index_timeout

        self._write_lock = threading.RLock()

        self._init_sqlite()
        self._dimension = self._load_dimension(dimension or settings.embedding_dimension)

        # Mantener tabla e índice consistentes desde el arranque
        self.reconcile_index()

    def _init_sqlite(self):
        """Inicializar base de datos SQLite."""
        engine = create_engine(
            f"sqlite:///{self.sqlite_path}",
            connect_args={"check_same_thread": False}
        )
        Base.metadata.create_all(engine)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Sesión que traduce errores de SQLite a StoreUnavailable."""
        session = self.SessionLocal()
        try:
            yield session
        except OperationalError as e:
            session.rollback()
            raise StoreUnavailable(f"SQLite no disponible: {e}") from e
        finally:
            session.close()

    def _index_call(self, call: Callable, *args, what: str, on_late: Optional[Callable] = None):
        return call_with_timeout(
            call, *args, timeout=self.index_timeout, what=what, on_late=on_late
        )

    def _index_write(
        self,
        call: Callable,
        episode_id: str,
        *args,
        what: str,
        embedding: list[float],
        project: Optional[str]
    ):
        """Escritura en el índice que, si vence el timeout, se resincroniza al terminar."""
        return self._index_call(
            call, episode_id, *args, what=what,
            on_late=lambda: self._resync_vector(episode_id, embedding, project)
        )

    def _resync_vector(
        self,
        episode_id: str,
        embedding: list[float],
        project: Optional[str]
    ) -> None:
        """Dejar el vector de un episodio alineado con la tabla."""
        with self._write_lock:
            with self._session() as session:
                present = session.get(EpisodeRecord, episode_id) is not None
            if present:
                self.index.add(episode_id, embedding, project)
            else:
                self.index.remove(episode_id)
        logger.warning(
            f"Vector de {episode_id} resincronizado tras timeout "
            f"({'restaurado' if present else 'eliminado'})"
        )

    # ------------------------------------------------------------------
    # Dimensión del embedding
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> Optional[int]:
        """Dimensión de embedding del almacén (None si aún no se fijó)."""
        return self._dimension

    def _load_dimension(self, configured: Optional[int]) -> Optional[int]:
        with self._session() as session:
            meta = session.get(StoreMeta, "embedding_dimension")
            stored = int(meta.value) if meta else None
            if stored is not None and configured is not None and stored != configured:
                raise DimensionMismatch(expected=stored, actual=configured)
            if stored is None and configured is not None:
                session.add(StoreMeta(key="embedding_dimension", value=str(configured)))
                session.commit()
            return stored if stored is not None else configured

    def _ensure_dimension(self, size: int) -> None:
        """Validar (o fijar, en el primer insert) la dimensión."""
        if self._dimension is None:
            with self._session() as session:
                session.merge(StoreMeta(key="embedding_dimension", value=str(size)))
                session.commit()
            self._dimension = size
            logger.info(f"Dimensión de embedding fijada en {size}")
        elif size != self._dimension:
            raise DimensionMismatch(expected=self._dimension, actual=size)

    # ------------------------------------------------------------------
    # Conversión
    # ------------------------------------------------------------------

    def _record_to_episode(self, record: EpisodeRecord) -> Episode:
        """Convertir registro SQLite a Episode."""
        return Episode(
            id=record.id,
            summary=record.summary,
            task_type=record.task_type,
            outcome=record.outcome,
            project=record.project,
            files_modified=json.loads(record.files_modified_json or "[]"),
            tags=json.loads(record.tags_json or "[]"),
            errors_resolved=[
                ErrorResolution(**item)
                for item in json.loads(record.errors_resolved_json or "[]")
            ],
            embedding=json.loads(record.embedding_json),
            utility=record.utility,
            use_count=record.use_count,
            helpful_count=record.helpful_count,
            feedback_count=record.feedback_count,
            created_at=_from_db_time(record.created_at),
            last_used_at=_from_db_time(record.last_used_at),
        )

    def _project_keys(self, project: Optional[str]) -> Optional[list[Optional[str]]]:
        """Proyectos visibles bajo un filtro (None = sin filtro)."""
        if project is None:
            return None
        keys: list[Optional[str]] = [project]
        if self.include_unscoped:
            keys.append(None)
        return keys

    def _filter_project(self, query, project: Optional[str]):
        if project is None:
            return query
        if self.include_unscoped:
            return query.filter(or_(
                EpisodeRecord.project == project,
                EpisodeRecord.project.is_(None)
            ))
        return query.filter(EpisodeRecord.project == project)

    def is_visible(self, episode: Episode, project: Optional[str]) -> bool:
        """Si un episodio es visible bajo el filtro de proyecto."""
        if project is None:
            return True
        if episode.project == project:
            return True
        return self.include_unscoped and episode.project is None

    # ------------------------------------------------------------------
    # Escrituras
    # ------------------------------------------------------------------

    def insert(self, episode: Episode) -> str:
        """
        Almacenar un episodio en la tabla y el índice de forma atómica.

        Args:
            episode: Episodio con embedding ya calculado

        Returns:
            ID del episodio almacenado

        Raises:
            ValidationError: esquema inválido o id duplicado
            DimensionMismatch: embedding con dimensión distinta a la del almacén
        """
        if not isinstance(episode, Episode):
            raise ValidationError(f"Se esperaba Episode, recibido {type(episode).__name__}")
        try:
            episode = Episode.model_validate(episode.model_dump())
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        if not episode.embedding:
            raise ValidationError("El episodio no tiene embedding")
        if not any(episode.embedding):
            raise ValidationError("El embedding no puede ser el vector nulo")
        if episode.id is None:
            episode = episode.model_copy(update={"id": str(uuid4())})

        with self._write_lock:
            self._ensure_dimension(len(episode.embedding))

            with self._session() as session:
                if session.get(EpisodeRecord, episode.id) is not None:
                    raise ValidationError(f"Ya existe un episodio con id {episode.id}")

                session.add(EpisodeRecord(
                    id=episode.id,
                    summary=episode.summary,
                    task_type=episode.task_type.value,
                    outcome=episode.outcome.value,
                    project=episode.project,
                    files_modified_json=json.dumps(episode.files_modified),
                    tags_json=json.dumps(episode.tags),
                    errors_resolved_json=json.dumps(
                        [item.model_dump() for item in episode.errors_resolved]
                    ),
                    embedding_json=json.dumps(episode.embedding),
                    utility=clamp_utility(episode.utility),
                    use_count=episode.use_count,
                    helpful_count=episode.helpful_count,
                    feedback_count=episode.feedback_count,
                    created_at=_to_db_time(episode.created_at),
                    last_used_at=_to_db_time(episode.last_used_at),
                ))
                session.flush()

                # Si el índice falla, la sesión se cierra sin commit (rollback)
                self._index_write(
                    self.index.add, episode.id, episode.embedding, episode.project,
                    what="index.add",
                    embedding=episode.embedding,
                    project=episode.project
                )
                try:
                    session.commit()
                except SQLAlchemyError:
                    self._index_call(self.index.remove, episode.id, what="index.remove")
                    raise

        logger.info(f"Episodio insertado: {episode.id} (proyecto: {episode.project or 'global'})")
        return episode.id

    def update_episode(
        self,
        episode_id: str,
        mutate: Callable[[Episode], Optional[Episode]]
    ) -> Optional[Episode]:
        """
        Leer-modificar-escribir un episodio bajo el lock de escritura.

        `mutate` recibe el estado actual y devuelve el nuevo (o None para
        no escribir). Solo se persisten los campos mutables: utilidad
        (acotada), contadores (monotónicos) y last_used_at.

        Returns:
            Episodio actualizado, o None si `mutate` decidió no escribir

        Raises:
            NotFound: si el id no existe
        """
        with self._write_lock:
            with self._session() as session:
                record = session.get(EpisodeRecord, episode_id)
                if record is None:
                    raise NotFound(episode_id)

                current = self._record_to_episode(record)
                updated = mutate(current)
                if updated is None:
                    return None

                for counter in ("use_count", "helpful_count", "feedback_count"):
                    if getattr(updated, counter) < getattr(current, counter):
                        raise ValidationError(f"{counter} no puede decrecer")
                if updated.helpful_count > updated.use_count:
                    raise ValidationError("helpful_count no puede superar use_count")

                record.utility = clamp_utility(updated.utility)
                record.use_count = updated.use_count
                record.helpful_count = updated.helpful_count
                record.feedback_count = updated.feedback_count
                record.last_used_at = _to_db_time(updated.last_used_at)
                session.commit()

                return self._record_to_episode(record)

    def update_utility(self, episode_id: str, new_value: float) -> Episode:
        """Fijar la utilidad de un episodio (acotada al rango válido)."""
        return self.update_episode(
            episode_id,
            lambda ep: ep.model_copy(update={"utility": clamp_utility(new_value)})
        )

    def touch(self, episode_ids: Iterable[str], now: Optional[datetime] = None) -> list[Episode]:
        """
        Registrar uso: use_count += 1 y last_used_at = now.

        Los ids desconocidos se ignoran. Devuelve los episodios actualizados
        en el orden recibido.
        """
        now = now or datetime.now(timezone.utc)
        touched = []
        with self._write_lock:
            with self._session() as session:
                for episode_id in episode_ids:
                    record = session.get(EpisodeRecord, episode_id)
                    if record is None:
                        continue
                    record.use_count = (record.use_count or 0) + 1
                    record.last_used_at = _to_db_time(now)
                    touched.append(record)
                session.commit()
                return [self._record_to_episode(r) for r in touched]

    def delete(
        self,
        episode_id: str,
        reason: str = "manual",
        guard: Optional[Callable[[Episode], bool]] = None
    ) -> Optional[AuditEntry]:
        """
        Eliminar un episodio de la tabla y del índice, dejando auditoría.

        `guard` se evalúa bajo el lock de escritura sobre el estado actual;
        si devuelve False no se elimina nada y se devuelve None.

        Raises:
            NotFound: si el id no existe
        """
        with self._write_lock:
            with self._session() as session:
                record = session.get(EpisodeRecord, episode_id)
                if record is None:
                    raise NotFound(episode_id)

                if guard is not None and not guard(self._record_to_episode(record)):
                    return None

                entry = AuditEntry(
                    episode_id=record.id,
                    summary=record.summary,
                    project=record.project,
                    reason=reason,
                )
                embedding = json.loads(record.embedding_json)
                project = record.project

                # Si vence el timeout la fila se conserva y el vector se restaura
                self._index_write(
                    self.index.remove, episode_id,
                    what="index.remove",
                    embedding=embedding,
                    project=project
                )
                session.delete(record)
                session.add(AuditRecord(
                    episode_id=entry.episode_id,
                    summary=entry.summary,
                    project=entry.project,
                    reason=entry.reason,
                    deleted_at=_to_db_time(entry.deleted_at),
                ))
                try:
                    session.commit()
                except SQLAlchemyError:
                    # Restaurar el vector para no dejar la fila sin índice
                    self._index_call(
                        self.index.add, episode_id, embedding, project, what="index.add"
                    )
                    raise

        logger.info(f"Episodio eliminado: {episode_id} ({reason})")
        return entry

    def reconcile_index(self) -> dict:
        """
        Sincronizar índice con la tabla: elimina vectores huérfanos y
        reindexa episodios sin vector.
        """
        with self._write_lock:
            with self._session() as session:
                rows = session.query(
                    EpisodeRecord.id, EpisodeRecord.embedding_json, EpisodeRecord.project
                ).all()

            table_ids = {row.id for row in rows}
            index_ids = self._index_call(self.index.ids, what="index.ids")

            orphans = index_ids - table_ids
            for episode_id in orphans:
                self._index_call(self.index.remove, episode_id, what="index.remove")

            missing = [row for row in rows if row.id not in index_ids]
            for row in missing:
                self._index_call(
                    self.index.add, row.id, json.loads(row.embedding_json), row.project,
                    what="index.add"
                )

        if orphans or missing:
            logger.warning(
                f"Índice reconciliado: {len(orphans)} huérfanos eliminados, "
                f"{len(missing)} episodios reindexados"
            )
        return {"removed": len(orphans), "added": len(missing)}

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------

    @read_retry
    def get(self, episode_id: str) -> Episode:
        """
        Recuperar un episodio por su ID.

        Raises:
            NotFound: si el id no existe
        """
        with self._session() as session:
            record = session.get(EpisodeRecord, episode_id)
            if record is None:
                raise NotFound(episode_id)
            return self._record_to_episode(record)

    @read_retry
    def exists(self, episode_id: str) -> bool:
        with self._session() as session:
            return session.get(EpisodeRecord, episode_id) is not None

    @read_retry
    def get_many(self, episode_ids: Iterable[str]) -> dict[str, Episode]:
        """Recuperar varios episodios (los ids desconocidos se omiten)."""
        ids = list(episode_ids)
        if not ids:
            return {}
        with self._session() as session:
            records = session.query(EpisodeRecord).filter(
                EpisodeRecord.id.in_(ids)
            ).all()
            return {r.id: self._record_to_episode(r) for r in records}

    @read_retry
    def search(
        self,
        query_embedding: list[float],
        k: int,
        project_filter: Optional[str] = None
    ) -> list[SearchHit]:
        """
        Buscar los k episodios más similares (coseno).

        Empates: mayor utilidad primero, luego el más reciente.

        Raises:
            ValidationError: si k < 1
            DimensionMismatch: si el vector no tiene la dimensión del almacén
        """
        if k < 1:
            raise ValidationError(f"k debe ser >= 1 (recibido {k})")
        if self._dimension is None:
            return []
        if len(query_embedding) != self._dimension:
            raise DimensionMismatch(expected=self._dimension, actual=len(query_embedding))

        # Margen extra para que los empates en el corte se resuelvan bien
        raw_hits = self._index_call(
            self.index.knn, query_embedding, k * 2, self._project_keys(project_filter),
            what="index.knn"
        )
        episodes = self.get_many(episode_id for episode_id, _ in raw_hits)

        hits = []
        for episode_id, similarity in raw_hits:
            episode = episodes.get(episode_id)
            if episode is None:
                logger.warning(f"Vector huérfano en el índice: {episode_id}")
                continue
            if not self.is_visible(episode, project_filter):
                continue
            hits.append(SearchHit(episode=episode, similarity=similarity))

        hits.sort(key=lambda h: (
            -h.similarity,
            -h.episode.utility,
            -h.episode.created_at.timestamp()
        ))
        return hits[:k]

    @read_retry
    def list_all(
        self,
        project_filter: Optional[str] = None,
        limit: Optional[int] = None
    ) -> list[Episode]:
        """Listar episodios ordenados por created_at descendente."""
        with self._session() as session:
            query = self._filter_project(session.query(EpisodeRecord), project_filter)
            query = query.order_by(EpisodeRecord.created_at.desc(), EpisodeRecord.id)
            if limit is not None:
                query = query.limit(limit)
            return [self._record_to_episode(r) for r in query.all()]

    @read_retry
    def count(self, project_filter: Optional[str] = None) -> int:
        with self._session() as session:
            return self._filter_project(session.query(EpisodeRecord), project_filter).count()

    @read_retry
    def get_statistics(self, project_filter: Optional[str] = None) -> dict:
        """Agregados crudos para el StatsReporter."""
        with self._session() as session:
            base = self._filter_project(session.query(EpisodeRecord), project_filter)

            total = base.count()
            avg_utility = base.with_entities(func.avg(EpisodeRecord.utility)).scalar()
            last_capture = base.with_entities(func.max(EpisodeRecord.created_at)).scalar()
            unused = base.filter(EpisodeRecord.use_count == 0).count()

            by_task_type = dict(
                base.with_entities(EpisodeRecord.task_type, func.count(EpisodeRecord.id))
                .group_by(EpisodeRecord.task_type).all()
            )
            by_outcome = dict(
                base.with_entities(EpisodeRecord.outcome, func.count(EpisodeRecord.id))
                .group_by(EpisodeRecord.outcome).all()
            )

        return {
            "episode_count": total,
            "avg_utility": float(avg_utility) if avg_utility is not None else 0.0,
            "last_capture_at": _from_db_time(last_capture),
            "unused_count": unused,
            "by_task_type": by_task_type,
            "by_outcome": by_outcome,
            "index_count": self._index_call(self.index.count, what="index.count"),
        }

    @read_retry
    def audit_log(self, limit: int = 100) -> list[AuditEntry]:
        """Últimas eliminaciones registradas."""
        with self._session() as session:
            records = session.query(AuditRecord).order_by(
                AuditRecord.deleted_at.desc()
            ).limit(limit).all()
            return [
                AuditEntry(
                    episode_id=r.episode_id,
                    summary=r.summary,
                    project=r.project,
                    reason=r.reason,
                    deleted_at=_from_db_time(r.deleted_at),
                )
                for r in records
            ]
