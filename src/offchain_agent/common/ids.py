"""
Генерация идентификаторов.

Назначение:
- job_id / trace_id (UUID) для конвертов очереди
- run_id для запусков бэкапа
- worker_id для владения партициями
"""

from __future__ import annotations

import os
import secrets
import socket
import uuid
from datetime import UTC, datetime


def new_uuid() -> str:
    """UUIDv4 строкой."""
    return str(uuid.uuid4())


def new_job_id() -> str:
    return new_uuid()


def new_trace_id() -> str:
    return new_uuid()


def new_run_id(prefix: str = "bkp") -> str:
    """
    Идентификатор запуска.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(5)
    return f"{prefix}_{ts}_{rnd}"


def default_worker_id() -> str:
    """<hostname>-<pid>-<rand>: уникален для процесса, читаем в логах."""
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


def derived_job_id(parent_job_id: str, part: str) -> str:
    """
    Детерминированный job_id дочерней задачи: одна и та же пара (родитель, часть)
    всегда даёт один и тот же UUID, повторная публикация не плодит новых задач.
    """
    return str(uuid.uuid5(uuid.UUID(parent_job_id), part))
