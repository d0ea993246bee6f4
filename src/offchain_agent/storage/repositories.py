"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики
- Только CRUD и запросы
- Переходы состояний - условными UPDATE (rowcount == 1 означает «мы победили»)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from offchain_agent.common.time import utc_now
from offchain_agent.domain.enums import ArtifactKind, JobStage, Modality, TaskStatus

from .models import Embedding, MediaArtifact, MediaSignature, ModalityTask, PipelineJob, Snapshot


# =============================================================================
# MEDIA ARTIFACTS
# =============================================================================
class MediaArtifactRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find(self, *, source_id: str, kind: ArtifactKind, content_hash: str) -> MediaArtifact | None:
        return self.session.scalars(
            select(MediaArtifact).where(
                MediaArtifact.source_id == source_id,
                MediaArtifact.artifact_kind == kind,
                MediaArtifact.content_hash == content_hash,
            )
        ).one_or_none()

    def add(self, artifact: MediaArtifact) -> None:
        self.session.add(artifact)

    def list_for_source(self, source_id: str) -> list[MediaArtifact]:
        return list(
            self.session.scalars(
                select(MediaArtifact).where(MediaArtifact.source_id == source_id).order_by(MediaArtifact.id)
            )
        )


# =============================================================================
# EMBEDDINGS
# =============================================================================
class EmbeddingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find(self, *, source_id: str, modality: Modality, model_version: str) -> Embedding | None:
        return self.session.scalars(
            select(Embedding).where(
                Embedding.source_id == source_id,
                Embedding.modality == modality,
                Embedding.model_version == model_version,
            )
        ).one_or_none()

    def add(self, embedding: Embedding) -> None:
        self.session.add(embedding)

    def list_for_source(self, source_id: str) -> list[Embedding]:
        return list(
            self.session.scalars(select(Embedding).where(Embedding.source_id == source_id).order_by(Embedding.id))
        )


# =============================================================================
# MEDIA SIGNATURES
# =============================================================================
class MediaSignatureRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, source_id: str) -> MediaSignature | None:
        return self.session.get(MediaSignature, source_id)

    def add(self, signature: MediaSignature) -> None:
        self.session.add(signature)

    def page_after(self, source_id: str, *, limit: int) -> list[MediaSignature]:
        """Keyset-пагинация по source_id (полный просмотр без OFFSET)."""
        return list(
            self.session.scalars(
                select(MediaSignature)
                .where(MediaSignature.source_id > source_id)
                .order_by(MediaSignature.source_id)
                .limit(limit)
            )
        )


# =============================================================================
# SNAPSHOTS
# =============================================================================
class SnapshotRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def latest_version(self, replica_id: str) -> int:
        value = self.session.scalar(select(func.max(Snapshot.version)).where(Snapshot.replica_id == replica_id))
        return int(value or 0)

    def add(self, snapshot: Snapshot) -> None:
        self.session.add(snapshot)

    def list_for_replica(self, replica_id: str) -> list[Snapshot]:
        return list(
            self.session.scalars(
                select(Snapshot).where(Snapshot.replica_id == replica_id).order_by(Snapshot.version)
            )
        )

    def list_expired(self, *, cutoff: datetime, limit: int = 1000) -> list[Snapshot]:
        """
        Снапшоты старше cutoff, кроме последней версии каждой реплики.
        """
        latest = (
            select(Snapshot.replica_id, func.max(Snapshot.version).label("max_version"))
            .group_by(Snapshot.replica_id)
            .subquery()
        )
        stmt = (
            select(Snapshot)
            .join(latest, latest.c.replica_id == Snapshot.replica_id)
            .where(Snapshot.taken_at < cutoff, Snapshot.version < latest.c.max_version)
            .order_by(Snapshot.taken_at)
            .limit(max(1, limit))
        )
        return list(self.session.scalars(stmt))

    def delete_ids(self, ids: list[int]) -> int:
        if not ids:
            return 0
        return int(self.session.execute(delete(Snapshot).where(Snapshot.id.in_(ids))).rowcount or 0)


# =============================================================================
# PIPELINE JOBS
# =============================================================================
class PipelineJobRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, job_id: str) -> PipelineJob | None:
        return self.session.get(PipelineJob, job_id)

    def add(self, job: PipelineJob) -> None:
        self.session.add(job)

    def transition(self, job_id: str, *, expected: JobStage, target: JobStage, attempt: int | None = None) -> bool:
        """
        Условный переход expected -> target. True - переход выполнен этим вызовом.
        """
        values: dict = {"stage": target, "updated_at": utc_now()}
        if attempt is not None:
            values["attempt"] = attempt
        res = self.session.execute(
            update(PipelineJob)
            .where(PipelineJob.job_id == job_id, PipelineJob.stage == expected)
            .values(**values)
        )
        return (res.rowcount or 0) == 1

    def fail(self, job_id: str, *, reason: str, report: dict | None = None) -> bool:
        """Перевести в failed из любой незавершённой стадии."""
        res = self.session.execute(
            update(PipelineJob)
            .where(
                PipelineJob.job_id == job_id,
                PipelineJob.stage.not_in([JobStage.completed, JobStage.failed]),
            )
            .values(stage=JobStage.failed, failure_reason=reason, report=report, updated_at=utc_now())
        )
        return (res.rowcount or 0) == 1

    def save_report(self, job_id: str, *, report: dict, partial: bool) -> None:
        self.session.execute(
            update(PipelineJob)
            .where(PipelineJob.job_id == job_id)
            .values(report=report, partial=partial, updated_at=utc_now())
        )


# =============================================================================
# MODALITY TASKS
# =============================================================================
class ModalityTaskRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, job_id: str, modality: Modality) -> ModalityTask | None:
        return self.session.scalars(
            select(ModalityTask).where(ModalityTask.job_id == job_id, ModalityTask.modality == modality)
        ).one_or_none()

    def add(self, task: ModalityTask) -> None:
        self.session.add(task)

    def list_for_job(self, job_id: str) -> list[ModalityTask]:
        return list(
            self.session.scalars(select(ModalityTask).where(ModalityTask.job_id == job_id).order_by(ModalityTask.id))
        )

    def pending_count(self, job_id: str) -> int:
        value = self.session.scalar(
            select(func.count())
            .select_from(ModalityTask)
            .where(ModalityTask.job_id == job_id, ModalityTask.status == TaskStatus.pending)
        )
        return int(value or 0)

    def settle(
        self,
        job_id: str,
        modality: Modality,
        *,
        status: TaskStatus,
        attempts: int,
        vector: list[float] | None = None,
        model_version: str | None = None,
        error_kind: str | None = None,
        error: str | None = None,
    ) -> bool:
        """
        pending -> done|failed ровно один раз. False - задача уже закрыта кем-то ещё.
        """
        res = self.session.execute(
            update(ModalityTask)
            .where(
                ModalityTask.job_id == job_id,
                ModalityTask.modality == modality,
                ModalityTask.status == TaskStatus.pending,
            )
            .values(
                status=status,
                attempts=attempts,
                vector=vector,
                model_version=model_version,
                error_kind=error_kind,
                error=(error or None) and error[:2000],
            )
        )
        return (res.rowcount or 0) == 1
