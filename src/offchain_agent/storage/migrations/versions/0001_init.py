"""
Инициальная миграция.

Создаёт таблицы:
- media_artifacts
- embeddings
- snapshots
- pipeline_jobs
- modality_tasks
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_ARTIFACT_KIND = sa.Enum("video", "audio", "frame", "embedding", name="artifactkind")
_MODALITY = sa.Enum("video", "audio", "metadata", name="modality")
_REPLICA_KIND = sa.Enum("user", "subnet_orchestrator", "platform_orchestrator", name="replicakind")
_JOB_STAGE = sa.Enum(
    "received", "fetching", "extracting", "embedding", "persisting", "completed", "failed", name="jobstage"
)
_TASK_STATUS = sa.Enum("pending", "done", "failed", name="taskstatus")


def upgrade() -> None:
    op.create_table(
        "media_artifacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("artifact_kind", _ARTIFACT_KIND, nullable=False),
        sa.Column("storage_uri", sa.String(length=512), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_id", "artifact_kind", "content_hash", name="uq_media_artifacts_key"),
    )
    op.create_index("ix_media_artifacts_source_id", "media_artifacts", ["source_id"])

    op.create_table(
        "embeddings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("modality", _MODALITY, nullable=False),
        sa.Column("model_version", sa.String(length=64), nullable=False),
        sa.Column("vector", sa.JSON(), nullable=False),
        sa.Column("vector_id", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_id", "modality", "model_version", name="uq_embeddings_key"),
    )
    op.create_index("ix_embeddings_source_id", "embeddings", ["source_id"])

    op.create_table(
        "snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("replica_id", sa.String(length=128), nullable=False),
        sa.Column("replica_kind", _REPLICA_KIND, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("storage_uri", sa.String(length=512), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("replica_id", "version", name="uq_snapshots_replica_version"),
    )
    op.create_index("ix_snapshots_replica_id", "snapshots", ["replica_id"])

    op.create_table(
        "pipeline_jobs",
        sa.Column("job_id", sa.String(length=36), primary_key=True),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("payload_ref", sa.String(length=1024), nullable=False),
        sa.Column("trace_id", sa.String(length=36), nullable=False),
        sa.Column("stage", _JOB_STAGE, nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("partial", sa.Boolean(), nullable=False),
        sa.Column("report", sa.JSON(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pipeline_jobs_source_id", "pipeline_jobs", ["source_id"])

    op.create_table(
        "modality_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("modality", _MODALITY, nullable=False),
        sa.Column("status", _TASK_STATUS, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_kind", sa.String(length=32), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("vector", sa.JSON(), nullable=True),
        sa.Column("model_version", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("job_id", "modality", name="uq_modality_tasks_job_modality"),
    )
    op.create_index("ix_modality_tasks_job_id", "modality_tasks", ["job_id"])


def downgrade() -> None:
    op.drop_index("ix_modality_tasks_job_id", table_name="modality_tasks")
    op.drop_table("modality_tasks")
    op.drop_index("ix_pipeline_jobs_source_id", table_name="pipeline_jobs")
    op.drop_table("pipeline_jobs")
    op.drop_index("ix_snapshots_replica_id", table_name="snapshots")
    op.drop_table("snapshots")
    op.drop_index("ix_embeddings_source_id", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_index("ix_media_artifacts_source_id", table_name="media_artifacts")
    op.drop_table("media_artifacts")
