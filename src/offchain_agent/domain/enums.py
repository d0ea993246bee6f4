"""
Доменные перечисления (enum).

Используются во всей системе:
- типы задач очереди
- стадии медиа-пайплайна
- виды артефактов и модальности эмбеддингов
- типы реплик для бэкапа
"""

from __future__ import annotations

import enum


class JobType(str, enum.Enum):
    """
    Тип задачи в конверте очереди.
    """

    extract_media = "extract_media"
    generate_embedding = "generate_embedding"
    backup = "backup"


class JobStage(str, enum.Enum):
    """
    Стадии обработки медиа-задачи.
    """

    received = "received"
    fetching = "fetching"
    extracting = "extracting"
    embedding = "embedding"
    persisting = "persisting"
    completed = "completed"
    failed = "failed"


class ArtifactKind(str, enum.Enum):
    video = "video"
    audio = "audio"
    frame = "frame"
    embedding = "embedding"
    signature = "signature"  # перцептивная подпись видео (dHash кадров)


class Modality(str, enum.Enum):
    video = "video"
    audio = "audio"
    metadata = "metadata"


class TaskStatus(str, enum.Enum):
    """
    Статус под-задачи модальности (fan-out/fan-in).
    """

    pending = "pending"
    done = "done"
    failed = "failed"


class ReplicaKind(str, enum.Enum):
    user = "user"
    subnet_orchestrator = "subnet_orchestrator"
    platform_orchestrator = "platform_orchestrator"


class QueueMode(str, enum.Enum):
    streams = "streams"  # pull: Redis Streams + consumer group
    push = "push"  # push: брокер доставляет на callback
    inline = "inline"  # dev/тесты: in-process
