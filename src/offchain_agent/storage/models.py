"""
ORM-модели базы данных.

Назначение:
- Медиа-артефакты и эмбеддинги (аналитические таблицы)
- Снапшоты реплик
- Состояние заданий пайплайна и под-задач модальностей (fan-out/fan-in)
- Перцептивные подписи видео (поиск почти-дубликатов)

Ключи идемпотентности закреплены уникальными ограничениями:
- media_artifacts (source_id, artifact_kind, content_hash)
- embeddings      (source_id, modality, model_version)
- snapshots       (replica_id, version)
- modality_tasks  (job_id, modality)
- media_signatures (source_id)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from offchain_agent.common.time import utc_now
from offchain_agent.domain.enums import (
    ArtifactKind,
    JobStage,
    Modality,
    ReplicaKind,
    TaskStatus,
)


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# MEDIA ARTIFACTS
# =============================================================================
class MediaArtifact(Base):
    __tablename__ = "media_artifacts"
    __table_args__ = (
        UniqueConstraint("source_id", "artifact_kind", "content_hash", name="uq_media_artifacts_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    artifact_kind: Mapped[ArtifactKind] = mapped_column(Enum(ArtifactKind), nullable=False)
    storage_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


# =============================================================================
# EMBEDDINGS
# =============================================================================
class Embedding(Base):
    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("source_id", "modality", "model_version", name="uq_embeddings_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    modality: Mapped[Modality] = mapped_column(Enum(Modality), nullable=False)
    model_version: Mapped[str] = mapped_column(String(64), nullable=False)
    vector: Mapped[list] = mapped_column(JSON, nullable=False)
    vector_id: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


# =============================================================================
# MEDIA SIGNATURES
# =============================================================================
class MediaSignature(Base):
    """
    Перцептивная подпись источника: dHash нескольких кадров (hex), одна строка на source_id.
    """

    __tablename__ = "media_signatures"

    source_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    frame_hashes: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


# =============================================================================
# SNAPSHOTS
# =============================================================================
class Snapshot(Base):
    __tablename__ = "snapshots"
    __table_args__ = (UniqueConstraint("replica_id", "version", name="uq_snapshots_replica_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    replica_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    replica_kind: Mapped[ReplicaKind] = mapped_column(Enum(ReplicaKind), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    taken_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


# =============================================================================
# PIPELINE JOBS (fan-out/fan-in)
# =============================================================================
class PipelineJob(Base):
    """
    Родительское задание обработки медиа-источника.
    """

    __tablename__ = "pipeline_jobs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    trace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    stage: Mapped[JobStage] = mapped_column(Enum(JobStage), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    report: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


class ModalityTask(Base):
    """
    Под-задача одной модальности. Переход pending -> done|failed ровно один раз.
    """

    __tablename__ = "modality_tasks"
    __table_args__ = (UniqueConstraint("job_id", "modality", name="uq_modality_tasks_job_modality"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    modality: Mapped[Modality] = mapped_column(Enum(Modality), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(Enum(TaskStatus), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    vector: Mapped[list | None] = mapped_column(JSON, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
