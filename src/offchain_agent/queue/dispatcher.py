"""
Диспетчер очередей.

Назначение:
- Единые имена очередей
- Упаковка задач в конверт (contracts/envelope.py)
- Удобные функции enqueue_* для всех типов задач
"""

from __future__ import annotations

from offchain_agent.common.ids import derived_job_id
from offchain_agent.common.logging import get_project_logger
from offchain_agent.contracts.envelope import JobEnvelope
from offchain_agent.domain.enums import JobType, Modality

from .base import PublishAck
from .factory import get_queue_client

log = get_project_logger()

# =============================================================================
# ИМЕНА ОЧЕРЕДЕЙ
# =============================================================================
Q_MEDIA = "q:media"
Q_EMBED = "q:embed"
Q_BACKUP = "q:backup"

QUEUE_BY_JOB_TYPE = {
    JobType.extract_media: Q_MEDIA,
    JobType.generate_embedding: Q_EMBED,
    JobType.backup: Q_BACKUP,
}


def _publish(envelope: JobEnvelope, *, delay_sec: int = 0) -> PublishAck:
    queue = QUEUE_BY_JOB_TYPE[envelope.job_type]
    ack = get_queue_client().publish(queue, envelope, delay_sec=delay_sec)
    log.info(
        f"enqueue_{envelope.job_type.value}",
        extra={
            "payload": {
                "queue": queue,
                "job_id": envelope.job_id,
                "trace_id": envelope.trace_id,
                "payload_ref": envelope.payload_ref,
            }
        },
    )
    return ack


def enqueue_extract_media(
    *,
    source_id: str,
    payload_ref: str,
    modalities: list[str] | None = None,
    trace_id: str | None = None,
) -> JobEnvelope:
    """
    Поставить задачу обработки медиа-источника.
    """
    params: dict = {"source_id": source_id}
    if modalities:
        params["modalities"] = list(modalities)
    envelope = JobEnvelope.new(JobType.extract_media, payload_ref, params=params, trace_id=trace_id)
    _publish(envelope)
    return envelope


def enqueue_embedding(
    *,
    parent: JobEnvelope,
    source_id: str,
    modality: Modality,
    payload_ref: str,
) -> JobEnvelope:
    """
    Поставить под-задачу эмбеддинга одной модальности (fan-out).
    trace_id наследуется от родителя, job_id выводится из (родитель, модальность).
    """
    envelope = JobEnvelope.new(
        JobType.generate_embedding,
        payload_ref,
        params={"parent_job_id": parent.job_id, "source_id": source_id, "modality": modality.value},
        trace_id=parent.trace_id,
        job_id=derived_job_id(parent.job_id, f"embedding:{modality.value}"),
    )
    _publish(envelope)
    return envelope


def enqueue_backup(
    *,
    kinds: list[str] | None = None,
    limit: int | None = None,
    trigger: str = "api",
) -> JobEnvelope:
    """
    Поставить задачу бэкапа реплик.
    """
    params: dict = {"trigger": trigger}
    if kinds:
        params["kinds"] = list(kinds)
    if limit is not None:
        params["limit"] = int(limit)
    envelope = JobEnvelope.new(JobType.backup, "registry://replicas", params=params)
    _publish(envelope)
    return envelope
